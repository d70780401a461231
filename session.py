"""
session.py — Voice Conversation Engine · Live Voice Session
===========================================================
One VoiceSession per WebSocket connection.  It owns the channel, the
conversation, the utterance buffer and the keep-alive timer, and drives the
pipeline for every utterance the boundary policy seals.

State machine
-------------
    IDLE ──utterance sealed──▶ PIPELINE_RUNNING ──result emitted──▶ IDLE
      └──────────── channel closed / error (any state) ──────────▶ CLOSED

Concurrency
-----------
The dispatch loop (``run``) keeps receiving while a pipeline awaits an
engine, so chunks for the *next* utterance are buffered meanwhile.  Sealed
utterances are handed to a single drain task that runs them strictly one at
a time; busy_policy decides whether utterances sealed mid-run queue up or
are dropped.  Closing the session never cancels an in-flight run: its
final emit sees the closed channel and becomes a no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Optional, Protocol

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from boundary import Boundary, BoundaryDetector, UtteranceBuffer
from config import BusyPolicy, VoiceEngineConfig
from conversation import Conversation
from messages import Binary, Control, Incoming, Malformed, PipelineResult, connection_event, decode_frame
from pipeline import VoicePipeline
from registry import SessionRegistry

log = logging.getLogger("voice_engine.session")


class SessionState(str, Enum):
    IDLE = "idle"
    PIPELINE_RUNNING = "pipeline_running"
    CLOSED = "closed"


class ChannelClosed(Exception):
    """The peer went away; no further frames can be received."""


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class Channel(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def remote(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def receive(self) -> Incoming: ...

    async def send_bytes(self, data: bytes) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> bool: ...

    async def ping(self, timeout: float) -> bool: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketChannel:
    """Channel over a websockets server connection."""

    def __init__(self, ws: ServerConnection) -> None:
        self._ws = ws

    @property
    def id(self) -> str:
        return str(self._ws.id)

    @property
    def remote(self) -> str:
        addr = self._ws.remote_address
        if isinstance(addr, tuple) and len(addr) >= 2:
            return f"{addr[0]}:{addr[1]}"
        return str(addr)

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    async def receive(self) -> Incoming:
        try:
            frame = await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelClosed(str(exc)) from exc
        return decode_frame(frame)

    async def send_bytes(self, data: bytes) -> bool:
        return await self._send(data)

    async def send_json(self, payload: dict[str, Any]) -> bool:
        return await self._send(json.dumps(payload))

    async def _send(self, message: bytes | str) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send(message)
        except ConnectionClosed:
            return False
        return True

    async def ping(self, timeout: float) -> bool:
        """Send one ping; True when the pong arrives within ``timeout``."""
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        except ConnectionClosed as exc:
            raise ChannelClosed(str(exc)) from exc
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code, reason)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class VoiceSession:
    def __init__(
        self,
        channel: Channel,
        pipeline: VoicePipeline,
        registry: SessionRegistry,
        config: VoiceEngineConfig,
    ) -> None:
        self._channel = channel
        self._pipeline = pipeline
        self._registry = registry
        self._config = config
        self._policy = config.session

        self.session_id = channel.id
        self.remote = channel.remote
        self.started_at = time.monotonic()
        self.state = SessionState.IDLE
        self.conversation: Optional[Conversation] = None

        self._buffer = UtteranceBuffer()
        self._detector = BoundaryDetector(self._policy)
        self._pending: deque[bytes] = deque()

        self._drain_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None

        self.missed_pings = 0
        self.stale = False

        # counters for the teardown summary
        self.utterances = 0
        self.replies = 0
        self.errors = 0
        self.dropped = 0

    # -- introspection ---------------------------------------------------------

    @property
    def in_flight(self) -> bool:
        return self.state is SessionState.PIPELINE_RUNNING

    @property
    def turn_count(self) -> int:
        return len(self.conversation) if self.conversation is not None else 0

    @property
    def pending_utterances(self) -> int:
        return len(self._pending)

    # -- lifecycle -------------------------------------------------------------

    async def run(self) -> None:
        """Dispatch loop for the whole connection; always tears down."""
        try:
            await self.open()
            while self.state is not SessionState.CLOSED:
                try:
                    incoming = await self._channel.receive()
                except ChannelClosed:
                    log.info("event=channel_closed id=%s", self.session_id)
                    break
                self.dispatch(incoming)
        finally:
            await self.close()

    async def open(self) -> None:
        self.conversation = Conversation(self._config.system_prompt, self._policy.max_history_turns)
        self._registry.add(self)
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(), name=f"keepalive_{self.session_id}",
        )
        log.info(
            "event=session_open id=%s remote=%s boundary=%s busy_policy=%s",
            self.session_id, self.remote, self._policy.boundary.value, self._policy.busy_policy.value,
        )
        await self._channel.send_json(connection_event("connected"))

    async def close(self) -> None:
        """Release timers, channel and registry entry.  Idempotent."""
        if self.state is SessionState.CLOSED:
            return
        was_running = self.in_flight
        self.state = SessionState.CLOSED
        try:
            _cancel(self._idle_task)
            await _cancel_and_wait(self._keepalive_task)
            self._idle_task = None
            self._keepalive_task = None
            self._buffer.clear()
            self._pending.clear()
            if self._channel.is_open:
                await self._channel.close()
        finally:
            if self._registry.get(self.session_id) is self:
                self._registry.remove(self.session_id)
            self.conversation = None
            log.info(
                "event=session_closed id=%s utterances=%d replies=%d errors=%d dropped=%d "
                "in_flight=%s duration_sec=%.1f",
                self.session_id, self.utterances, self.replies, self.errors, self.dropped,
                was_running, time.monotonic() - self.started_at,
            )

    # -- inbound ---------------------------------------------------------------

    def dispatch(self, incoming: Incoming) -> None:
        if self.state is SessionState.CLOSED:
            return
        if isinstance(incoming, Binary):
            self.on_chunk(incoming.data)
        elif isinstance(incoming, Control):
            log.debug("event=control_ignored id=%s type=%s", self.session_id, incoming.type)
        elif isinstance(incoming, Malformed):
            log.warning("event=malformed_ignored id=%s reason=%s", self.session_id, incoming.reason)

    def on_chunk(self, data: bytes) -> None:
        self._buffer.append(data)
        decision = self._detector.after_chunk(self._buffer)
        if decision is Boundary.FLUSH:
            self._seal()
        elif decision is Boundary.ARM_TIMER:
            self._arm_idle_timer()

    def _arm_idle_timer(self) -> None:
        _cancel(self._idle_task)
        self._idle_task = asyncio.create_task(
            self._flush_after_idle(), name=f"idle_flush_{self.session_id}",
        )

    async def _flush_after_idle(self) -> None:
        await asyncio.sleep(self._detector.idle_gap_sec)
        self._idle_task = None
        log.debug("event=idle_gap_elapsed id=%s gap=%.2fs", self.session_id, self._detector.idle_gap_sec)
        self._seal()

    def _seal(self) -> None:
        """Close the current utterance and schedule it."""
        utterance = self._buffer.take()
        if not utterance or self.state is SessionState.CLOSED:
            return

        busy = self.in_flight or bool(self._pending)
        if busy and self._policy.busy_policy is BusyPolicy.DROP:
            self.dropped += 1
            log.warning("event=utterance_dropped id=%s reason=busy bytes=%d", self.session_id, len(utterance))
            return
        if len(self._pending) >= self._policy.max_pending_utterances:
            self.dropped += 1
            log.warning(
                "event=utterance_dropped id=%s reason=queue_full pending=%d",
                self.session_id, len(self._pending),
            )
            return

        self._pending.append(utterance)
        self.utterances += 1
        log.debug("event=utterance_sealed id=%s bytes=%d pending=%d", self.session_id, len(utterance), len(self._pending))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(
                self._drain(), name=f"pipeline_{self.session_id}",
            )
            self._drain_task.add_done_callback(_log_task_failure)

    # -- pipeline --------------------------------------------------------------

    async def _drain(self) -> None:
        while self._pending and self.state is not SessionState.CLOSED:
            await self.run_pipeline(self._pending.popleft())

    async def run_pipeline(self, utterance: bytes) -> Optional[PipelineResult]:
        """Run one utterance through the pipeline and emit its result."""
        if self.in_flight:
            raise RuntimeError(f"pipeline already in flight for session {self.session_id}")
        if self.state is SessionState.CLOSED or self.conversation is None:
            return None

        self.state = SessionState.PIPELINE_RUNNING
        try:
            result = await self._pipeline.run(utterance, self.conversation)
            if result is not None:
                await self._emit(result)
            return result
        finally:
            if self.state is SessionState.PIPELINE_RUNNING:
                self.state = SessionState.IDLE

    async def _emit(self, result: PipelineResult) -> None:
        if result.is_ok:
            self.replies += 1
            sent = await self._channel.send_bytes(result.audio or b"")
        else:
            self.errors += 1
            sent = await self._channel.send_json(result.error_payload())
        if not sent:
            log.info("event=emit_skipped id=%s reason=channel_closed ok=%s", self.session_id, result.is_ok)

    async def wait_idle(self) -> None:
        """Wait until every queued utterance has been processed."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    # -- liveness --------------------------------------------------------------

    async def _keepalive_loop(self) -> None:
        interval = self._policy.keepalive_interval_sec
        while self.state is not SessionState.CLOSED:
            await asyncio.sleep(interval)
            if not self._channel.is_open:
                return
            try:
                answered = await self._channel.ping(self._policy.keepalive_timeout_sec)
            except ChannelClosed:
                return

            if answered:
                if self.missed_pings:
                    log.info("event=keepalive_recovered id=%s missed=%d", self.session_id, self.missed_pings)
                self.missed_pings = 0
                self.stale = False
                continue

            self.missed_pings += 1
            log.warning(
                "event=keepalive_missed id=%s missed=%d/%d",
                self.session_id, self.missed_pings, self._policy.max_missed_pings,
            )
            if self.missed_pings >= self._policy.max_missed_pings:
                self.stale = True
                log.warning("event=session_stale id=%s close=%s", self.session_id, self._policy.close_when_stale)
                if self._policy.close_when_stale:
                    await self._channel.close(1011, "keepalive timeout")
                    return


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is not None and not task.done():
        task.cancel()


async def _cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    if task is None or task is asyncio.current_task():
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        log.exception("event=task_failed name=%s", task.get_name())


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("event=task_failed name=%s error=%s", task.get_name(), exc, exc_info=exc)
