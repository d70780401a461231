"""
registry.py — Voice Conversation Engine · Session Registry
==========================================================
Live sessions keyed by connection id.  Owned by the gateway in server.py
and handed to each session, which adds itself on open and removes itself
on teardown.  Accounting only: nothing routes through it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from session import VoiceSession

log = logging.getLogger("voice_engine.registry")


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    remote: str
    state: str
    turns: int
    uptime_sec: float


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, "VoiceSession"] = {}

    def add(self, session: "VoiceSession") -> None:
        if session.session_id in self._sessions:
            raise KeyError(f"session {session.session_id} already registered")
        self._sessions[session.session_id] = session
        log.info("event=session_registered id=%s active=%d", session.session_id, len(self._sessions))

    def remove(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            log.info("event=session_deregistered id=%s active=%d", session_id, len(self._sessions))
        return removed

    def get(self, session_id: str) -> Optional["VoiceSession"]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator["VoiceSession"]:
        return iter(list(self._sessions.values()))

    def snapshot(self) -> list[SessionInfo]:
        now = time.monotonic()
        return [
            SessionInfo(
                session_id=s.session_id,
                remote=s.remote,
                state=s.state.value,
                turns=s.turn_count,
                uptime_sec=round(now - s.started_at, 1),
            )
            for s in self._sessions.values()
        ]
