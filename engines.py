"""
engines.py — Voice Conversation Engine · Speech Engines Facade
==============================================================
The three remote capabilities the pipeline depends on, behind one async
interface:

    transcribe(wav_bytes)  → transcript text        (Groq Whisper)
    complete(messages)     → assistant reply text   (Groq chat completions)
    synthesize(text)       → encoded reply audio    (Groq text-to-speech)

Every call is bounded by asyncio.wait_for; SDK errors and timeouts surface
as ``EngineError`` tagged with the stage that failed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Optional, Protocol

from groq import AsyncGroq

from config import VoiceEngineConfig

log = logging.getLogger("voice_engine.engines")


class EngineError(RuntimeError):
    """A remote engine call failed or timed out."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class SpeechEngines(Protocol):
    async def transcribe(self, wav: bytes) -> str: ...

    async def complete(self, messages: list[dict[str, str]]) -> str: ...

    async def synthesize(self, text: str) -> bytes: ...


class GroqSpeechEngines:
    """SpeechEngines backed by a single lazily-created AsyncGroq client."""

    def __init__(
        self,
        config: VoiceEngineConfig,
        api_key: Optional[str] = None,
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self._api_key or os.getenv("GROQ_API_KEY"))

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            api_key = self._api_key or os.getenv("GROQ_API_KEY")
            if not api_key:
                raise EngineError("client", "GROQ_API_KEY is not set")
            self._client = AsyncGroq(api_key=api_key)
        return self._client

    async def _call(self, stage: str, coro: Any, timeout: float) -> Any:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            log.warning("event=timeout scope=%s limit=%.1fs", stage, timeout)
            raise EngineError(stage, f"{stage} timed out after {timeout:.1f}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=engine_error scope=%s error=%s", stage, exc)
            raise EngineError(stage, str(exc) or type(exc).__name__) from exc
        log.info("event=engine_call scope=%s duration_ms=%.1f", stage, (time.perf_counter() - start) * 1000.0)
        return result

    # -- speech-to-text --------------------------------------------------------

    async def transcribe(self, wav: bytes) -> str:
        cfg = self._config.transcription
        kwargs: dict[str, Any] = {
            "file": ("utterance.wav", wav),
            "model": cfg.model,
            "response_format": "json",
            "temperature": 0.0,
        }
        if cfg.language:
            kwargs["language"] = cfg.language
        if cfg.prompt:
            kwargs["prompt"] = cfg.prompt

        response = await self._call(
            "transcription",
            self._get_client().audio.transcriptions.create(**kwargs),
            cfg.timeout_sec,
        )
        return (getattr(response, "text", None) or "").strip()

    # -- chat completion -------------------------------------------------------

    async def complete(self, messages: list[dict[str, str]]) -> str:
        cfg = self._config.groq
        kwargs: dict[str, Any] = {"model": cfg.model, "messages": messages, "stream": False}
        for name in ("temperature", "top_p", "max_tokens"):
            value = getattr(cfg, name)
            if value is not None:
                kwargs[name] = value

        response = await self._call(
            "completion",
            self._get_client().chat.completions.create(**kwargs),
            cfg.timeout_sec,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    # -- text-to-speech --------------------------------------------------------

    async def synthesize(self, text: str) -> bytes:
        cfg = self._config.speech

        async def _speak() -> bytes:
            response = await self._get_client().audio.speech.create(
                model=cfg.model,
                voice=cfg.voice,
                input=text[: cfg.max_input_chars],
                response_format=cfg.response_format,
            )
            return await response.read()

        audio = await self._call("synthesis", _speak(), cfg.timeout_sec)
        if not audio:
            raise EngineError("synthesis", "synthesis returned no audio")
        return audio
