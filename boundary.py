"""
boundary.py — Voice Conversation Engine · Utterance Boundaries
==============================================================
The wire protocol carries no end-of-utterance marker, so the session asks
an explicit, configurable policy whether the chunks buffered so far form
a complete utterance:

  message      every binary message is one utterance (record-then-send clients)
  idle         flush once no chunk has arrived for idle_gap_sec
  chunk_count  flush every N chunks (fixed duration for fixed-timeslice clients)
"""

from __future__ import annotations

from enum import Enum, auto

from config import BoundaryPolicy, SessionConfig


class Boundary(Enum):
    """Decision returned after each chunk."""
    CONTINUE = auto()     # keep buffering
    FLUSH = auto()        # utterance complete now
    ARM_TIMER = auto()    # (re)start the idle flush timer


class UtteranceBuffer:
    """Chunks of the utterance currently being received."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._size = 0

    def append(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(chunk)
            self._size += len(chunk)

    def take(self) -> bytes:
        """Return the buffered utterance and reset the buffer."""
        data = b"".join(self._chunks)
        self.clear()
        return data

    def clear(self) -> None:
        self._chunks = []
        self._size = 0

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def __len__(self) -> int:
        return self._size

    def __bool__(self) -> bool:
        return self._size > 0


class BoundaryDetector:
    def __init__(self, config: SessionConfig) -> None:
        self.policy = config.boundary
        self.idle_gap_sec = config.idle_gap_sec
        self.chunks_per_utterance = config.chunks_per_utterance

    def after_chunk(self, buffer: UtteranceBuffer) -> Boundary:
        if not buffer:
            return Boundary.CONTINUE
        if self.policy is BoundaryPolicy.MESSAGE:
            return Boundary.FLUSH
        if self.policy is BoundaryPolicy.CHUNK_COUNT:
            if buffer.chunk_count >= self.chunks_per_utterance:
                return Boundary.FLUSH
            return Boundary.CONTINUE
        return Boundary.ARM_TIMER
