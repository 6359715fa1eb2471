from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import Any, Sequence
from zoneinfo import ZoneInfo

import orjson
import websockets

from .aisstream import build_subscribe_payload
from .config import Config
from .runlog import RunLog, _error_payload
from .state import VesselStateStore
from .ws_decode import handle_frame
from .ws_primitives import ReconnectPolicy, SessionStats, normalize_ws_keepalive

STATE_CONNECTING = "connecting"
STATE_OPEN = "open"
STATE_CLOSED = "closed"
STATE_ERRORED = "errored"
STATE_RECONNECTING = "reconnecting"
STATE_EXHAUSTED = "exhausted"
STATE_CLOSED_BY_OPERATOR = "closed_by_operator"
TERMINAL_STATES = frozenset({STATE_CLOSED, STATE_EXHAUSTED, STATE_CLOSED_BY_OPERATOR})

_CONNECT_PARAMS = inspect.signature(websockets.connect).parameters
CONNECT_SUPPORTS_CLOSE_TIMEOUT = "close_timeout" in _CONNECT_PARAMS
CONNECT_SUPPORTS_OPEN_TIMEOUT = "open_timeout" in _CONNECT_PARAMS
DEFAULT_WS_CLOSE_TIMEOUT_SECONDS = 5.0


def _extract_close_details(exc: Exception) -> tuple[int | None, str | None]:
    if not isinstance(exc, websockets.exceptions.ConnectionClosed):
        return None, None
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is None:
        return None, None
    return getattr(rcvd, "code", None), getattr(rcvd, "reason", None)


def _classify_failure(exc: Exception) -> str:
    if isinstance(exc, websockets.exceptions.ConnectionClosed):
        return "unclean_close"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "connect_timeout"
    return "transport_error"


class ConnectionSession:
    """One websocket connection subscribed to one group of MMSI identifiers.

    ``attempt_count`` counts transport failures over the whole session and,
    unless ``reset_on_open`` is set on the policy, is never reset by a later
    successful connect. Reaching the policy limit ends the session in
    ``exhausted``; the group then stays dark until the process restarts.
    """

    def __init__(
        self,
        session_id: int,
        mmsi_ids: Sequence[int],
        *,
        config: Config,
        store: VesselStateStore,
        runlog: RunLog,
        tz: ZoneInfo,
        bounding_boxes: Sequence[Sequence[Sequence[float]]],
        policy: ReconnectPolicy | None = None,
    ) -> None:
        self.session_id = session_id
        self.mmsi_ids = list(mmsi_ids)
        self.config = config
        self.store = store
        self.runlog = runlog
        self.tz = tz
        self.bounding_boxes = bounding_boxes
        self.policy = policy or ReconnectPolicy.from_config(config)
        self.state = STATE_CONNECTING
        self.attempt_count = 0
        self.stats = SessionStats()
        self._stop_event = asyncio.Event()
        self._ws: Any | None = None
        self._attempt: asyncio.Task | None = None
        self._attempt_cancelled = False

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _set_state(self, state: str) -> None:
        self.state = state

    def _connect_kwargs(self) -> dict[str, Any]:
        ping_interval, ping_timeout, connect_timeout = normalize_ws_keepalive(self.config)
        connect_kwargs: dict[str, Any] = {
            "ping_interval": ping_interval,
            "ping_timeout": ping_timeout,
        }
        if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
            connect_kwargs["close_timeout"] = DEFAULT_WS_CLOSE_TIMEOUT_SECONDS
        if CONNECT_SUPPORTS_OPEN_TIMEOUT and connect_timeout is not None:
            connect_kwargs["open_timeout"] = connect_timeout
        return connect_kwargs

    def _handle_raw(self, raw: Any) -> None:
        self.stats.frames += 1
        try:
            result = handle_frame(self.store, raw, self.tz)
        except Exception:
            self.stats.decode_errors += 1
            return
        if result.record is not None:
            self.stats.position_reports += 1
        elif result.json_error or result.malformed:
            self.stats.decode_errors += 1
        else:
            self.stats.discarded += 1

    async def _subscribe(self, ws: Any) -> None:
        payload = build_subscribe_payload(
            self.config.api_key, self.bounding_boxes, self.mmsi_ids
        )
        payload_bytes = orjson.dumps(payload)
        await ws.send(payload_bytes.decode("utf-8"))
        self.runlog.write(
            {
                "record_type": "subscribe_sent",
                "session_id": self.session_id,
                "mmsi_count": len(self.mmsi_ids),
                "payload_bytes": len(payload_bytes),
            }
        )

    async def _connect_and_receive(self) -> None:
        """Returns on a clean close; transport failures propagate."""
        async with websockets.connect(self.config.ws_url, **self._connect_kwargs()) as ws:
            self._ws = ws
            try:
                if self.stopped:
                    await ws.close()
                    return
                self.stats.connects += 1
                self._set_state(STATE_OPEN)
                self.runlog.write(
                    {
                        "record_type": "ws_connect",
                        "session_id": self.session_id,
                        "ws_url": self.config.ws_url,
                        "attempt_count": self.attempt_count,
                    }
                )
                await self._subscribe(ws)
                if self.policy.reset_on_open:
                    self.attempt_count = 0
                while True:
                    try:
                        raw = await ws.recv()
                    except websockets.exceptions.ConnectionClosedOK as exc:
                        close_code, close_reason = _extract_close_details(exc)
                        self.runlog.write(
                            {
                                "record_type": "ws_closed",
                                "session_id": self.session_id,
                                "close_code": close_code,
                                "close_reason": close_reason,
                                "by_operator": self.stopped,
                            }
                        )
                        return
                    self._handle_raw(raw)
            finally:
                self._ws = None

    async def _wait_for_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> str:
        while not self.stopped:
            self._set_state(STATE_CONNECTING)
            self._attempt = asyncio.ensure_future(self._connect_and_receive())
            try:
                await self._attempt
            except asyncio.CancelledError:
                # stop() cancels a connect that is still in its handshake.
                if not self._attempt_cancelled:
                    raise
                break
            except Exception as exc:
                if self.stopped:
                    break
                self._set_state(STATE_ERRORED)
                self.attempt_count += 1
                close_code, close_reason = _extract_close_details(exc)
                self.runlog.write(
                    {
                        "record_type": "reconnect",
                        "session_id": self.session_id,
                        "trigger": _classify_failure(exc),
                        "close_code": close_code,
                        "close_reason": close_reason,
                        "attempt_count": self.attempt_count,
                        "max_attempts": self.policy.max_attempts,
                        **_error_payload(exc),
                    }
                )
                if not self.policy.can_reconnect(self.attempt_count):
                    self._set_state(STATE_EXHAUSTED)
                    self.runlog.alert(
                        {
                            "record_type": "session_exhausted",
                            "session_id": self.session_id,
                            "attempt_count": self.attempt_count,
                            "mmsi_ids": self.mmsi_ids,
                        },
                        f"session {self.session_id}: max retries exceeded, "
                        f"{len(self.mmsi_ids)} vessels no longer tracked",
                    )
                    return self.state
                self._set_state(STATE_RECONNECTING)
                if await self._wait_for_stop(self.policy.delay()):
                    break
                continue
            if self.stopped:
                break
            self._set_state(STATE_CLOSED)
            return self.state
        self._set_state(STATE_CLOSED_BY_OPERATOR)
        self.runlog.write(
            {
                "record_type": "session_stopped",
                "session_id": self.session_id,
                "stats": self.stats.as_dict(),
            }
        )
        return self.state

    async def stop(self) -> None:
        """Close the transport now; cancel a pending handshake or reconnect delay."""
        self._stop_event.set()
        ws = self._ws
        if ws is None:
            attempt = self._attempt
            if attempt is not None and not attempt.done():
                self._attempt_cancelled = True
                attempt.cancel()
            return
        with contextlib.suppress(Exception):
            await ws.close()

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "attempt_count": self.attempt_count,
            "mmsi_count": len(self.mmsi_ids),
            **self.stats.as_dict(),
        }
