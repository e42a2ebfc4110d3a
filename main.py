import asyncio
import os
import signal
import sys
from pathlib import Path

# Add src/ to path so the script also runs from a plain checkout
sys.path.append(os.path.join(os.path.dirname(__file__), "src"))

from offsync import __version__
from offsync.network.ws_local import LocalBridge
from offsync.services.config import SyncConfig
from offsync.services.engine import OfflineEngine
from offsync.status_app.app import start_status_app


def load_env_file(path):
    """Simple replacement for load_dotenv to avoid external dependency."""
    if not os.path.exists(path): return
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if '=' in line and not line.startswith('#'):
                key, val = line.split('=', 1)
                os.environ[key] = val

# Constants
BASE_DIR = Path(__file__).parent
CONFIG_DIR = BASE_DIR / "config"
SECRETS_PATH = CONFIG_DIR / "secrets.env"
STATUS_PORT = int(os.getenv("OFFSYNC_STATUS_PORT", "8001"))
BRIDGE_PORT = int(os.getenv("OFFSYNC_BRIDGE_PORT", "8002"))


async def run():
    print(f"=== offsync v{__version__} ===")

    # 1. Load configuration
    load_env_file(SECRETS_PATH)
    try:
        config = SyncConfig.from_env()
    except ValueError as e:
        print(f"[!] Invalid configuration: {e}")
        sys.exit(1)

    if not config.endpoints:
        print("[!] No endpoints configured (set OFFSYNC_ENDPOINTS). Writes will stay queued.")

    print(f"[*] Database: {config.db_path}")
    print(f"[*] Endpoints: {', '.join(config.endpoints) or '-'}")

    # 2. Boot the engine
    engine = OfflineEngine(config)
    await engine.start()

    # 3. Local surfaces
    print(f"[*] Starting Local WebSocket Bridge on port {BRIDGE_PORT}...")
    bridge = LocalBridge(engine)
    bridge_task = asyncio.create_task(bridge.serve(port=BRIDGE_PORT))

    print(f"[*] Starting Status App on port {STATUS_PORT}...")
    server = start_status_app(engine, STATUS_PORT)
    server_task = asyncio.create_task(server.serve())

    # 4. Main loop: wait for a termination signal
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    print("[*] Entering Main Loop...")
    await stop.wait()

    print("\n[!] Shutting down...")
    flushed = await engine.on_terminate()
    if flushed:
        print(f"[*] Urgent flush sent for {flushed} mutations")

    server.should_exit = True
    bridge_task.cancel()
    await asyncio.gather(server_task, bridge_task, return_exceptions=True)
    await engine.stop()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
