import os
import pathlib
import sys
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import echocache`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow concurrency tests (skipped unless ECHOCACHE_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('ECHOCACHE_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set ECHOCACHE_RUN_SLOW=1 to enable'))


class _StoreState:
    """State shared by a MemoryStore and every scope descended from it."""

    def __init__(self, wait_timeout: float):
        self.lock = threading.Lock()
        self.entries: Dict[str, Tuple[Any, float]] = {}
        self.writers: Dict[str, threading.Event] = {}
        self.calls: List[Tuple[str, str]] = []
        self.wait_timeout = wait_timeout


class MemoryStore:
    """
    In-process reference store for tests.

    TTL entries keyed by full namespace path, one writer per path, waiters
    block on the writer's event until ``set`` or the wait timeout.
    """

    def __init__(self, prefix: str = "", wait_timeout: float = 2.0, state: Optional[_StoreState] = None):
        self.prefix = prefix
        self.state = state or _StoreState(wait_timeout)

    def _key(self, path: str) -> str:
        return f"{self.prefix}/{path}" if self.prefix else path

    def _fresh(self, key: str) -> Optional[Any]:
        entry = self.state.entries.get(key)
        if entry is not None and time.monotonic() < entry[1]:
            return entry[0]
        return None

    def get_if_fresh(self, path: str) -> Optional[Any]:
        key = self._key(path)
        with self.state.lock:
            self.state.calls.append(("get_if_fresh", key))
            return self._fresh(key)

    def get(self, path: str) -> Optional[Any]:
        key = self._key(path)
        with self.state.lock:
            self.state.calls.append(("get", key))
            entry = self.state.entries.get(key)
            return entry[0] if entry else None

    def set(self, path: str, value: Any, ttl: float) -> None:
        key = self._key(path)
        with self.state.lock:
            self.state.calls.append(("set", key))
            self.state.entries[key] = (value, time.monotonic() + ttl)
            writer = self.state.writers.pop(key, None)
        if writer is not None:
            writer.set()

    def lock(self, path: str) -> bool:
        key = self._key(path)
        with self.state.lock:
            self.state.calls.append(("lock", key))
            if key in self.state.writers or self._fresh(key) is not None:
                return False
            self.state.writers[key] = threading.Event()
            return True

    def wait(self, path: str) -> bool:
        key = self._key(path)
        with self.state.lock:
            self.state.calls.append(("wait", key))
            writer = self.state.writers.get(key)
            if writer is None:
                return self._fresh(key) is not None
        return writer.wait(self.state.wait_timeout)

    def descend(self, path: str) -> "MemoryStore":
        return MemoryStore(prefix=self._key(path), state=self.state)

    def calls_to(self, primitive: str) -> List[str]:
        with self.state.lock:
            return [key for name, key in self.state.calls if name == primitive]


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def impatient_store() -> MemoryStore:
    return MemoryStore(wait_timeout=0.05)


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Restore sys.stdout and configuration after every test."""
    from echocache.config import get_config_manager

    original_stdout = sys.stdout
    yield
    sys.stdout = original_stdout
    get_config_manager().reset()
