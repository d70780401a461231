"""
conversation.py — Voice Conversation Engine · Conversation State
================================================================
Ordered, role-tagged turn log for one connection.  The first turn is the
system persona and can never be removed; everything after it is appended
by the pipeline as transcriptions and completions finish.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

log = logging.getLogger("voice_engine.conversation")


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str

    def as_message(self) -> dict[str, str]:
        """Chat-completion message dict for this turn."""
        return {"role": self.role.value, "content": self.content}


class Conversation:
    """Turn log seeded with an immutable system turn.

    ``max_turns`` bounds the number of non-system turns.  ``trim()`` drops
    the oldest exchanges when it is exceeded (the system turn always stays).
    """

    def __init__(self, system_prompt: str, max_turns: Optional[int] = None) -> None:
        if not system_prompt.strip():
            raise ValueError("system prompt must not be blank")
        self._turns: list[Turn] = [Turn(Role.SYSTEM, system_prompt)]
        self._max_turns = max_turns

    # -- read access -----------------------------------------------------------

    @property
    def system(self) -> Turn:
        return self._turns[0]

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def messages(self) -> list[dict[str, str]]:
        """Full ordered context for the chat engine."""
        return [t.as_message() for t in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    # -- mutation --------------------------------------------------------------

    def add_user(self, text: str) -> Turn:
        return self._append(Turn(Role.USER, text))

    def add_assistant(self, text: str) -> Turn:
        return self._append(Turn(Role.ASSISTANT, text))

    def discard_last(self, count: int) -> None:
        """Drop the newest ``count`` turns (used to roll back a failed run)."""
        count = min(count, len(self._turns) - 1)
        if count > 0:
            del self._turns[-count:]
            log.info("event=history_rollback dropped=%d turns=%d", count, len(self._turns))

    def trim(self) -> int:
        """Enforce ``max_turns`` by dropping the oldest exchanges.

        Called once a run has settled, never between its appends, so a
        rollback only ever removes turns of the run that failed.  After
        trimming the history again starts on a user turn.  Returns the
        number of turns dropped.
        """
        if self._max_turns is None:
            return 0
        dropped = 0
        while len(self._turns) - 1 > self._max_turns:
            del self._turns[1]
            dropped += 1
            while len(self._turns) > 1 and self._turns[1].role is not Role.USER:
                del self._turns[1]
                dropped += 1
        if dropped:
            log.debug("event=history_trimmed dropped=%d turns=%d", dropped, len(self._turns))
        return dropped

    def _append(self, turn: Turn) -> Turn:
        self._turns.append(turn)
        return turn
