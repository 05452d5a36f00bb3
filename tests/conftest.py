import asyncio
import fnmatch
import time
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from verified_programs.core.database import Base
from verified_programs.core.errors import BuildError
from verified_programs.core.metrics import MetricsCollector
from verified_programs.services.build_executor import BuildOutcome
from verified_programs.services.hash_store import HashStore
from verified_programs.services.orchestrator import Orchestrator
from verified_programs.services.single_flight import SingleFlightCoordinator
from verified_programs.services.verifier import Verifier

PROGRAM_ID = "Prog1111111111111111111111111111111111111"
OTHER_PROGRAM_ID = "Tther111111111111111111111111111111111111"


class FakeRedisClient:
    """In-memory stand-in for RedisClient with the same sentinel semantics."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.down = False

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.store

    def _put(self, key: str, value: Any, ex: Optional[int]):
        self.store[key] = value
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ex: int) -> Optional[bool]:
        if self.down:
            return None
        if self._alive(key):
            return False
        self._put(key, value, ex)
        return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self.down:
            return False
        if self._alive(key) and self.store[key] == value:
            del self.store[key]
            self.expiry.pop(key, None)
            return True
        return False

    async def expire_if_equals(self, key: str, value: str, ex: int) -> bool:
        if self.down:
            return False
        if self._alive(key) and self.store[key] == value:
            self.expiry[key] = time.monotonic() + ex
            return True
        return False

    async def incr_with_expiry(self, key: str, ex: int) -> Optional[int]:
        if self.down:
            return None
        if not self._alive(key):
            self._put(key, 0, ex)
        self.store[key] += 1
        return self.store[key]

    async def decr(self, key: str) -> Optional[int]:
        if self.down:
            return None
        if not self._alive(key):
            self._put(key, 0, None)
        self.store[key] -= 1
        return self.store[key]

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        if self.down:
            return False
        self._put(key, value, ex)
        return True

    async def get_json(self, key: str) -> Optional[Any]:
        if self.down:
            return None
        return self.store.get(key) if self._alive(key) else None

    async def exists(self, key: str) -> bool:
        if self.down:
            return False
        return self._alive(key)

    async def delete(self, key: str) -> bool:
        if self.down:
            return False
        self.expiry.pop(key, None)
        return self.store.pop(key, None) is not None

    async def ping(self) -> bool:
        return not self.down

    async def close(self):
        pass

    def keys(self, pattern: str = "*") -> List[str]:
        return [k for k in list(self.store) if self._alive(k) and fnmatch.fnmatch(k, pattern)]


class FakeExecutor:
    """Build executor double returning a fixed hash or raising an injected error."""

    def __init__(self, executable_hash: str = "H1", error: Optional[Exception] = None):
        self.executable_hash = executable_hash
        self.error = error
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def run(self, build) -> BuildOutcome:
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return BuildOutcome(
            executable_hash=self.executable_hash,
            exit_code=0,
            log_excerpt="Finished release",
            duration_seconds=0.01,
            hashes=[self.executable_hash],
        )


class SlowExecutor(FakeExecutor):
    """Build that exceeds its wall-clock limit and reports a timeout."""

    def __init__(self, limit: float = 0.05):
        super().__init__()
        self.limit = limit

    async def run(self, build) -> BuildOutcome:
        self.calls += 1
        self.started.set()
        try:
            await asyncio.wait_for(asyncio.sleep(3600), timeout=self.limit)
        except asyncio.TimeoutError:
            raise BuildError(BuildError.TIMEOUT, f"Build exceeded the {self.limit}s limit")
        raise AssertionError("unreachable")


class FakeChainClient:
    def __init__(self, deployed_hash: str = "H1", error: Optional[Exception] = None):
        self.deployed_hash = deployed_hash
        self.error = error
        self.calls = 0
        self.hold: Optional[asyncio.Event] = None
        self.held = asyncio.Event()

    async def get_deployed_executable_hash(self, program_id: str) -> str:
        self.calls += 1
        if self.hold is not None:
            # One-shot: only the next lookup waits
            hold, self.hold = self.hold, None
            self.held.set()
            await hold.wait()
        if self.error is not None:
            raise self.error
        return self.deployed_hash

    async def close(self):
        pass


@pytest.fixture
def build_request() -> Dict[str, Any]:
    return {
        "program_id": PROGRAM_ID,
        "repository": "github.com/example/prog",
        "commit_hash": "abc123",
    }


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def cache() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'verified_programs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def hash_store(session_factory) -> HashStore:
    return HashStore(session_factory)


@pytest.fixture
def coordinator(cache, metrics) -> SingleFlightCoordinator:
    return SingleFlightCoordinator(cache, lock_ttl=60, state_ttl=60, metrics=metrics)


@pytest.fixture
def make_orchestrator(hash_store, coordinator, chain_client, metrics):
    def factory(executor, wait_timeout: float = 2.0) -> Orchestrator:
        return Orchestrator(
            hash_store=hash_store,
            coordinator=coordinator,
            executor=executor,
            verifier=Verifier(chain_client, hash_store, metrics=metrics),
            chain_client=chain_client,
            wait_timeout=wait_timeout,
            poll_interval=0.01,
            shutdown_grace=1.0,
            metrics=metrics,
        )
    return factory


@pytest.fixture
def orchestrator(make_orchestrator, executor) -> Orchestrator:
    return make_orchestrator(executor)
