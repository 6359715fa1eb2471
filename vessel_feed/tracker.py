from __future__ import annotations

import asyncio
import contextlib
import signal
from dataclasses import dataclass, field
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .aisstream import parse_bounding_boxes
from .config import Config
from .partition import load_mmsi_list, split_groups
from .runlog import RunLog
from .session import ConnectionSession
from .snapshot import FlushResult, PersistenceWriter
from .state import VesselStateStore

DEFAULT_STOP_GRACE_SECONDS = 5.0


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone: {name}") from exc


@dataclass
class TrackerState:
    config: Config
    store: VesselStateStore
    runlog: RunLog
    writer: PersistenceWriter
    sessions: list[ConnectionSession] = field(default_factory=list)
    session_tasks: list[asyncio.Task] = field(default_factory=list)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: str | None = None

    def request_stop(self, reason: str) -> None:
        if self.stop_event.is_set():
            return
        self.stop_reason = reason
        self.runlog.write({"record_type": "shutdown_requested", "reason": reason})
        self.stop_event.set()


def build_sessions(
    config: Config,
    mmsi_ids: Sequence[int],
    store: VesselStateStore,
    runlog: RunLog,
) -> list[ConnectionSession]:
    tz = load_timezone(config.target_timezone)
    bounding_boxes = parse_bounding_boxes(config.bounding_boxes_json)
    return [
        ConnectionSession(
            session_id,
            group,
            config=config,
            store=store,
            runlog=runlog,
            tz=tz,
            bounding_boxes=bounding_boxes,
        )
        for session_id, group in enumerate(split_groups(list(mmsi_ids), config.group_size))
    ]


class ShutdownCoordinator:
    """Stops every session, then runs exactly one final flush.

    Safe to call more than once; later callers wait for the first teardown.
    The final flush queues behind any periodic flush already in flight.
    """

    def __init__(
        self,
        state: TrackerState,
        *,
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
    ) -> None:
        self.state = state
        self.stop_grace_seconds = stop_grace_seconds
        self.final_flush: FlushResult | None = None
        self._started = False
        self._done = asyncio.Event()

    async def shutdown(self, reason: str = "shutdown") -> FlushResult | None:
        if self._started:
            await self._done.wait()
            return self.final_flush
        self._started = True
        state = self.state
        state.request_stop(reason)
        try:
            await asyncio.gather(*(session.stop() for session in state.sessions))
            pending_tasks = [task for task in state.session_tasks if not task.done()]
            if pending_tasks:
                _done, pending = await asyncio.wait(
                    pending_tasks, timeout=self.stop_grace_seconds
                )
                for task in pending:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            self.final_flush = await state.writer.flush(reason="shutdown")
            state.runlog.write(
                {
                    "record_type": "tracker_stop",
                    "reason": state.stop_reason or reason,
                    "vessels": len(state.store),
                    "final_flush_ok": self.final_flush.ok,
                    "sessions": [session.summary() for session in state.sessions],
                }
            )
        finally:
            self._done.set()
        return self.final_flush


async def _flush_loop(state: TrackerState) -> None:
    interval = max(0.0, state.config.flush_interval_seconds)
    while not state.stop_event.is_set():
        try:
            await asyncio.wait_for(state.stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        if state.stop_event.is_set():
            break
        await state.writer.flush(reason="periodic")


async def _heartbeat_loop(state: TrackerState) -> None:
    interval = state.config.heartbeat_interval_seconds
    if interval <= 0:
        return
    while not state.stop_event.is_set():
        try:
            await asyncio.wait_for(state.stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        if state.stop_event.is_set():
            break
        state.runlog.write(
            {
                "record_type": "heartbeat",
                "vessels": len(state.store),
                "upserts": state.store.upserts,
                "flushes": state.writer.flush_count,
                "flush_failures": state.writer.failure_count,
                "sessions": [session.summary() for session in state.sessions],
            }
        )


def _install_signal_handlers(state: TrackerState) -> list[signal.Signals]:
    """Returns the signals registered on the loop, for _remove_signal_handlers."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _request_stop(sig: signal.Signals) -> None:
        loop.call_soon_threadsafe(state.request_stop, sig.name)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue
    return installed


def _remove_signal_handlers(installed: Sequence[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def build_tracker_state(config: Config, mmsi_ids: Sequence[int]) -> TrackerState:
    if not config.api_key:
        raise ValueError("api_key is required (set AIS_STREAM_API_KEY)")
    runlog = RunLog(config.runlog_path)
    store = VesselStateStore()
    writer = PersistenceWriter(
        store, config.snapshot_path, runlog, fsync=config.snapshot_fsync
    )
    state = TrackerState(config=config, store=store, runlog=runlog, writer=writer)
    state.sessions = build_sessions(config, mmsi_ids, store, runlog)
    return state


async def run_tracker_async(
    config: Config,
    *,
    duration_seconds: float | None = None,
    install_signals: bool = True,
) -> int:
    mmsi_ids = load_mmsi_list(config.mmsi_config_path)
    state = build_tracker_state(config, mmsi_ids)
    coordinator = ShutdownCoordinator(state)
    installed = _install_signal_handlers(state) if install_signals else []
    state.runlog.write(
        {
            "record_type": "tracker_start",
            "ws_url": config.ws_url,
            "mmsi_count": len(mmsi_ids),
            "sessions": len(state.sessions),
            "snapshot_path": config.snapshot_path,
            "flush_interval_seconds": config.flush_interval_seconds,
        }
    )

    state.session_tasks = [
        asyncio.create_task(session.run(), name=f"session-{session.session_id}")
        for session in state.sessions
    ]
    background = [
        asyncio.create_task(_flush_loop(state), name="flush-loop"),
        asyncio.create_task(_heartbeat_loop(state), name="heartbeat-loop"),
    ]
    if duration_seconds is not None and duration_seconds > 0:
        async def _stop_after_duration() -> None:
            await asyncio.sleep(duration_seconds)
            state.request_stop("duration")

        background.append(asyncio.create_task(_stop_after_duration()))

    try:
        await state.stop_event.wait()
        await coordinator.shutdown(state.stop_reason or "shutdown")
        for task in background:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    finally:
        _remove_signal_handlers(installed)
    return 0


def run_tracker(config: Config, *, duration_seconds: float | None = None) -> int:
    try:
        return asyncio.run(run_tracker_async(config, duration_seconds=duration_seconds))
    except KeyboardInterrupt:
        return 0
