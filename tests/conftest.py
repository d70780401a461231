"""Shared in-memory fakes for the engines, transcoder and channel."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from config import SessionConfig, VoiceEngineConfig
from messages import decode_frame
from pipeline import VoicePipeline
from registry import SessionRegistry
from session import ChannelClosed, VoiceSession
from transcoder import TranscodeError

_HANG_UP = object()


class FakeEngines:
    """Scripted speech engines that record calls and concurrency."""

    def __init__(
        self,
        transcripts: Optional[list[str]] = None,
        replies: Optional[list[str]] = None,
        audio: bytes = b"RIFF-reply-audio",
        fail: Optional[dict[str, Exception]] = None,
        delay: float = 0.0,
    ) -> None:
        self.transcripts = list(transcripts or [])
        self.replies = list(replies or [])
        self.audio = audio
        self.fail = dict(fail or {})
        self.delay = delay
        self.configured = True

        self.transcribe_calls: list[bytes] = []
        self.complete_calls: list[list[dict[str, str]]] = []
        self.synthesize_calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def _step(self, stage: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if stage in self.fail:
                raise self.fail[stage]
        finally:
            self.active -= 1

    async def transcribe(self, wav: bytes) -> str:
        self.transcribe_calls.append(wav)
        await self._step("transcription")
        return self.transcripts.pop(0) if self.transcripts else "hello"

    async def complete(self, messages: list[dict[str, str]]) -> str:
        self.complete_calls.append([dict(m) for m in messages])
        await self._step("completion")
        return self.replies.pop(0) if self.replies else f"reply {len(self.complete_calls)}"

    async def synthesize(self, text: str) -> bytes:
        self.synthesize_calls.append(text)
        await self._step("synthesis")
        return self.audio


class FakeTranscoder:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.inputs: list[bytes] = []
        self.available = True

    async def to_pcm_wav(self, audio: bytes) -> bytes:
        self.inputs.append(audio)
        if self.fail:
            raise TranscodeError("ffmpeg exited with code 1: Invalid data found when processing input")
        return b"WAV:" + audio


class FakeChannel:
    """In-memory Channel: feed frames in, inspect what the session sent."""

    def __init__(self, channel_id: str = "conn-1") -> None:
        self.id = channel_id
        self.remote = "127.0.0.1:50000"
        self.is_open = True
        self.sent: list[Any] = []
        self.pings = 0
        self.answer_pings = True
        self.closed_with: Optional[tuple[int, str]] = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, frame: bytes | str) -> None:
        self._inbox.put_nowait(decode_frame(frame))

    def hang_up(self) -> None:
        self._inbox.put_nowait(_HANG_UP)

    async def receive(self):
        item = await self._inbox.get()
        if item is _HANG_UP:
            self.is_open = False
            raise ChannelClosed("peer closed")
        return item

    async def send_bytes(self, data: bytes) -> bool:
        if not self.is_open:
            return False
        self.sent.append(data)
        return True

    async def send_json(self, payload: dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        self.sent.append(payload)
        return True

    async def ping(self, timeout: float) -> bool:
        if not self.is_open:
            raise ChannelClosed("closed")
        self.pings += 1
        return self.answer_pings

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = (code, reason)
        self.is_open = False
        self._inbox.put_nowait(_HANG_UP)

    @property
    def audio_replies(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]

    @property
    def events(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if isinstance(m, dict)]


def make_config(**session_overrides: Any) -> VoiceEngineConfig:
    session = {"keepalive_interval_sec": 60.0, **session_overrides}
    return VoiceEngineConfig(session=SessionConfig(**session), system_prompt="You are a test persona.")


@pytest.fixture
def engines() -> FakeEngines:
    return FakeEngines()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def make_session(engines, transcoder, channel, registry):
    def _make(config: Optional[VoiceEngineConfig] = None, **session_overrides: Any) -> VoiceSession:
        config = config or make_config(**session_overrides)
        pipeline = VoicePipeline(engines, transcoder, config)
        return VoiceSession(channel, pipeline, registry, config)

    return _make
