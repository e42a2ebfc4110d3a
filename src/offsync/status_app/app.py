"""
Status App - Local HTTP front end for the offline sync engine

This FastAPI application lets a local operator (or a UI running on the
same device) inspect and drive the engine:
- Connectivity, queue and cache status
- Manual sync requests
- The offline fallback page

Serve on port 8001 (the WebSocket bridge listens on 8002)
"""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse

from ..services.engine import OfflineEngine
from ..services.errors import LockContention, NotOnline, StorageError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("StatusApp")


def create_app(engine: OfflineEngine) -> FastAPI:
    """Build the status app around an already opened engine."""
    app = FastAPI(title="offsync status")
    app.state.engine = engine

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "mode": "online" if engine.monitor.is_online() else "offline",
        }

    @app.get("/api/status")
    async def get_status():
        """Network, queue, sync and cache status in one document."""
        return await engine.get_status()

    @app.post("/api/sync")
    async def sync_now():
        """Run one drain pass and return its stats."""
        try:
            stats = await engine.coordinator.manual_sync()
        except NotOnline:
            raise HTTPException(status_code=503, detail="Device is offline")
        except LockContention:
            raise HTTPException(status_code=409, detail="Sync already in progress")
        except StorageError as e:
            logger.error(f"Manual sync failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return stats.to_dict()

    @app.get("/api/queue")
    async def get_queue():
        """Queued and dead-lettered mutations."""
        return await engine.queue.export()

    @app.get("/api/cache")
    async def get_cache():
        return await engine.interceptor.cache_status()

    @app.get("/offline", response_class=HTMLResponse)
    async def offline_page():
        """
        Serve the offline fallback page.
        This is the cached application shell when there is one.
        """
        response = await engine.interceptor.offline_shell()
        return HTMLResponse(content=response.body, status_code=response.status)

    return app


def start_status_app(engine: OfflineEngine, port: int = 8001):
    """Build an uvicorn server for the status app. Run it with ``await server.serve()``."""
    import uvicorn
    logger.info(f"Starting Status App on http://0.0.0.0:{port}")
    config = uvicorn.Config(create_app(engine), host="0.0.0.0", port=port, log_level="info")
    return uvicorn.Server(config)
