"""Pytest configuration and fixtures for offsync tests.

Every test gets its own SQLite file under tmp_path and a fake clock. The
fake sleep advances that clock instead of waiting, so backoff and TTL
behaviour runs instantly.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from offsync.services.api_client import RemoteEndpoint
from offsync.services.config import SyncConfig
from offsync.services.engine import OfflineEngine
from offsync.services.errors import TransientNetworkError
from offsync.services.interceptor import Request, Response
from offsync.services.local_db import LocalDatabase
from offsync.services.mutation_queue import MutationQueue
from offsync.services.offline_mode import NetworkMonitor
from offsync.services.sync_manager import SyncCoordinator

START_MS = 1_700_000_000_000.0


class FakeClock:
    def __init__(self, start: float = START_MS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


class FakeSleep:
    """Records requested delays (seconds) and moves the clock forward."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds * 1000)
        await asyncio.sleep(0)


class FakeRemote(RemoteEndpoint):
    """
    Scriptable remote service.

    Outcomes queued with script() are consumed per action in order; an
    Exception outcome is raised, anything else returned. With no script
    left, the action's persistent outcome (if any) or a plain success is used.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.scripts: Dict[str, List[Any]] = {}
        self.persistent: Dict[str, Any] = {}
        self.healthy = True

    def script(self, action: str, *outcomes):
        self.scripts.setdefault(action, []).extend(outcomes)

    def always(self, action: str, outcome):
        self.persistent[action] = outcome

    @property
    def actions(self) -> List[str]:
        return [request["action"] for request in self.sent]

    async def send(self, endpoint: str, request: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(request)
        outcomes = self.scripts.get(request["action"])
        outcome = outcomes.pop(0) if outcomes else self.persistent.get(request["action"])
        if outcome is None:
            return {"success": True}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def ping(self) -> bool:
        return self.healthy


class FakeFetcher:
    """Serves canned Responses by URL; unknown URLs fail like a dropped connection."""

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.calls: List[Request] = []

    def route(self, url: str, body: str = "", status: int = 200, error: Optional[Exception] = None):
        self.routes[url] = error or Response(url=url, status=status, body=body)

    async def __call__(self, request: Request) -> Response:
        self.calls.append(request)
        outcome = self.routes.get(request.url)
        if outcome is None:
            raise TransientNetworkError(f"Connection refused: {request.url}")
        if isinstance(outcome, Exception):
            raise outcome
        return Response(url=outcome.url, status=outcome.status, body=outcome.body)


class FakeBeacon:
    def __init__(self):
        self.payloads: List[Dict[str, Any]] = []

    def send(self, payload: Dict[str, Any]):
        self.payloads.append(payload)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def config(tmp_path) -> SyncConfig:
    return SyncConfig(db_path=str(tmp_path / "offsync.db"))


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def beacon() -> FakeBeacon:
    return FakeBeacon()


@pytest_asyncio.fixture
async def db(config):
    database = LocalDatabase(config.db_path)
    await database.open()
    yield database
    await database.close()


@pytest.fixture
def queue(db, config, clock) -> MutationQueue:
    return MutationQueue(db, config, clock)


@pytest.fixture
def monitor(config, clock) -> NetworkMonitor:
    return NetworkMonitor(online=False, config=config, clock=clock)


@pytest_asyncio.fixture
async def coordinator(queue, remote, monitor, config, clock, fake_sleep, beacon):
    coordinator = SyncCoordinator(
        queue, remote, monitor, config, beacon=beacon, clock=clock, sleep=fake_sleep
    )
    yield coordinator
    await coordinator.stop()


@pytest_asyncio.fixture
async def engine(config, remote, fetcher, beacon, clock, fake_sleep):
    engine = OfflineEngine(
        config, remote=remote, fetcher=fetcher, beacon=beacon,
        online=False, clock=clock, sleep=fake_sleep,
    )
    await engine.open()
    yield engine
    await engine.stop()


def next_event(channel) -> asyncio.Future:
    """Future resolved with the next event published on an EventChannel."""
    received = asyncio.get_running_loop().create_future()

    def handler(event):
        if not received.done():
            received.set_result(event)

    channel.subscribe(handler)
    return received
