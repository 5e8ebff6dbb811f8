import asyncio
import sys
import time
from pathlib import Path

import pytest_asyncio


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from mulebridge.errors import ProtocolError  # noqa: E402
from mulebridge.history import DownloadHistoryStore  # noqa: E402


HASH_A = "a" * 32
HASH_B = "b" * 32
HASH_C = "c" * 32


class FakeSession:
    """In-memory protocol session that records every invocation window."""

    def __init__(self, responses=None, delay=0.005):
        self.responses = dict(responses or {})
        self.fail = set()
        self.delay = delay
        self.alive = True
        self.connects = 0
        self.calls = []
        self.windows = []
        self.in_flight = 0
        self.max_in_flight = 0

    def is_alive(self):
        return self.alive

    async def connect(self):
        self.connects += 1
        self.alive = True
        return True

    async def disconnect(self):
        self.alive = False

    async def invoke(self, operation, *args):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        start = time.perf_counter()
        self.calls.append((operation, args))
        try:
            await asyncio.sleep(self.delay)
            if operation in self.fail:
                raise ProtocolError("daemon said no", operation)
            response = self.responses.get(operation, True)
            return response(*args) if callable(response) else response
        finally:
            self.windows.append((start, time.perf_counter()))
            self.in_flight -= 1


class RecordingSink:
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)

    def of_type(self, name):
        return [e for e in self.events if e.event == name]


@pytest_asyncio.fixture
async def store(tmp_path):
    s = await DownloadHistoryStore.open(str(tmp_path / "history.sqlite3"))
    yield s
    await s.close()
