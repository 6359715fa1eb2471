import asyncio
from collections import deque

import orjson
import websockets


def position_frame(mmsi=316001234, *, sog=10.0, time_utc="20230808152257"):
    return orjson.dumps(
        {
            "MessageType": "PositionReport",
            "Message": {
                "PositionReport": {
                    "UserID": mmsi,
                    "Latitude": 49.0,
                    "Longitude": -123.0,
                    "TrueHeading": 180,
                    "Sog": sog,
                }
            },
            "MetaData": {"ShipName": f"SHIP {mmsi}", "time_utc": time_utc},
        }
    )


def closed_ok():
    return websockets.exceptions.ConnectionClosedOK(None, None)


def closed_error():
    return websockets.exceptions.ConnectionClosedError(None, None)


class FakeWebSocket:
    """Replays ``recv_events``; then raises ``end`` or blocks until closed."""

    def __init__(self, recv_events, *, end=None):
        self._recv_events = deque(recv_events)
        self._end = end
        self._closed = asyncio.Event()
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def recv(self):
        if self._recv_events:
            event = self._recv_events.popleft()
            if isinstance(event, Exception):
                raise event
            return event
        if self._end is not None:
            raise self._end
        await self._closed.wait()
        raise closed_ok()

    async def close(self):
        self.closed = True
        self._closed.set()


class FakeConnect:
    def __init__(self, ws):
        self._ws = ws

    async def __aenter__(self):
        return self._ws

    async def __aexit__(self, exc_type, exc, tb):
        await self._ws.close()
        return False


class HangingHandshake:
    """Connect context whose opening handshake never completes."""

    def __init__(self):
        self.cancelled = False

    async def __aenter__(self):
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def __aexit__(self, exc_type, exc, tb):
        return False


class ConnectScript:
    """Stand-in for ``websockets.connect``; each call consumes one scripted outcome.

    Entries are FakeWebSocket instances, connect contexts such as
    HangingHandshake, or exceptions to raise. Once the script runs out
    every call fails with ConnectionRefusedError.
    """

    def __init__(self, outcomes=()):
        self._outcomes = deque(outcomes)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if not self._outcomes:
            raise ConnectionRefusedError("connection refused")
        outcome = self._outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FakeWebSocket):
            return FakeConnect(outcome)
        return outcome


async def wait_until(predicate, timeout_seconds=1.0):
    deadline = asyncio.get_running_loop().time() + timeout_seconds
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("timed out waiting for condition")
        await asyncio.sleep(0.005)
