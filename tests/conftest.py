import pytest

from server_time_sync.clock import ServerClock
from server_time_sync.configuration import SyncConfig

TEST_ENDPOINT = "http://time.test/api/time"
# 2024-03-05T07:08:09Z
WALL_CLOCK_MS = 1_709_622_489_000
SERVER_TIMESTAMP_MS = 1_700_000_000_000


class FakeMonotonic:
    """Monotonic clock in milliseconds that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class ScriptedFetcher:
    """
    Replays (latency_ms, response) pairs. The latency is added to the fake
    monotonic clock during the request. Exceptions are raised instead of returned.
    The last pair is repeated once the script runs out.
    """

    def __init__(self, monotonic: FakeMonotonic, responses):
        self.monotonic = monotonic
        self.responses = list(responses)
        self.calls = []

    async def fetch(self, endpoint, method):
        self.calls.append((endpoint, method))
        if len(self.responses) > 1:
            latency, response = self.responses.pop(0)
        else:
            latency, response = self.responses[0]
        self.monotonic.advance(latency)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(scope="function")
def monotonic():
    return FakeMonotonic()


@pytest.fixture(scope="function")
def make_clock(monotonic):
    def _make_clock(responses, name="test_clock", **config_kwargs):
        config_kwargs.setdefault("endpoint", TEST_ENDPOINT)
        config_kwargs.setdefault("interval_ms", 50)
        fetcher = ScriptedFetcher(monotonic, responses)
        return ServerClock(
            config=SyncConfig(**config_kwargs),
            fetcher=fetcher,
            name=name,
            monotonic=monotonic,
            wall_clock=lambda: WALL_CLOCK_MS,
        )

    return _make_clock
