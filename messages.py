"""
messages.py — Voice Conversation Engine · Wire Types
====================================================
Inbound frames are decoded exactly once at the channel boundary into a
tagged union::

    Binary(data)       raw compressed audio chunk
    Control(payload)   JSON object sent as a text frame (ignored by the core)
    Malformed(raw)     text frame that is not a JSON object

Outbound JSON payloads and the per-utterance ``PipelineResult`` also live
here so session.py, pipeline.py and server.py share one vocabulary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

GENERIC_ERROR = "Error processing audio."
NO_AUDIO_ERROR = "No audio file uploaded."


class ErrorKind(str, Enum):
    TRANSCODE_FAILED = "transcode_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    COMPLETION_FAILED = "completion_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    NO_AUDIO_UPLOADED = "no_audio_uploaded"


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Binary:
    data: bytes


@dataclass(frozen=True)
class Control:
    payload: dict[str, Any]

    @property
    def type(self) -> Optional[str]:
        value = self.payload.get("type")
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class Malformed:
    raw: str
    reason: str


Incoming = Union[Binary, Control, Malformed]


def decode_frame(frame: Union[bytes, bytearray, memoryview, str]) -> Incoming:
    """Classify one received WebSocket frame."""
    if isinstance(frame, (bytes, bytearray, memoryview)):
        return Binary(bytes(frame))
    try:
        payload = json.loads(frame)
    except ValueError as exc:
        return Malformed(frame, f"invalid JSON: {exc}")
    if not isinstance(payload, dict):
        return Malformed(frame, f"expected JSON object, got {type(payload).__name__}")
    return Control(payload)


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

def connection_event(status: str = "connected") -> dict[str, Any]:
    return {"type": "connection", "status": status}


def error_event(kind: ErrorKind, details: Optional[str] = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "error", "error": GENERIC_ERROR, "code": kind.value}
    if details:
        event["details"] = details
    return event


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one utterance: reply audio, or a classified error."""
    audio: Optional[bytes] = field(default=None, repr=False)
    media_type: Optional[str] = None
    error: Optional[ErrorKind] = None
    details: Optional[str] = None

    @classmethod
    def ok(cls, audio: bytes, media_type: str) -> "PipelineResult":
        return cls(audio=audio, media_type=media_type)

    @classmethod
    def failed(cls, kind: ErrorKind, details: str) -> "PipelineResult":
        return cls(error=kind, details=details)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def error_payload(self) -> dict[str, Any]:
        if self.error is None:
            raise ValueError("successful result has no error payload")
        return error_event(self.error, self.details)
