import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from toolgate.config import reset_settings_cache  # noqa: E402
from toolgate.service.registry import ToolRegistry  # noqa: E402
from toolgate.service.usage import UsageCounters  # noqa: E402
from toolgate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable wall clock and monotonic clock for deterministic tests."""

    def __init__(self, start: datetime) -> None:
        self.current = start
        self.mono = 1000.0

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, **delta) -> None:
        step = timedelta(**delta)
        self.current += step
        self.mono += step.total_seconds()


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 17, 12, 0, 30))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def registry(memory_store, clock):
    return ToolRegistry(
        memory_store,
        cache_ttl_seconds=60.0,
        counters=UsageCounters(clock=clock),
        monotonic=clock.monotonic,
    )
