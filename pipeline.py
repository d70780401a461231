"""
pipeline.py — Voice Conversation Engine · Utterance Pipeline
============================================================
One utterance in, at most one result out:

    transcode → transcribe → (user turn) → complete → (assistant turn)
              → synthesize → PipelineResult.ok(audio)

Every failure is caught here and classified into a single
PipelineResult.failed(kind, details); nothing but cancellation escapes.
Returns ``None`` when there is nothing to answer (empty audio, blank
transcript) so the caller emits nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol

from config import HistoryPolicy, VoiceEngineConfig
from conversation import Conversation
from engines import SpeechEngines
from messages import ErrorKind, PipelineResult

log = logging.getLogger("voice_engine.pipeline")


class Transcoder(Protocol):
    async def to_pcm_wav(self, audio: bytes) -> bytes: ...


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class VoicePipeline:
    def __init__(
        self,
        engines: SpeechEngines,
        transcoder: Transcoder,
        config: VoiceEngineConfig,
    ) -> None:
        self._engines = engines
        self._transcoder = transcoder
        self._config = config

    @property
    def config(self) -> VoiceEngineConfig:
        return self._config

    async def run(self, audio: bytes, conversation: Conversation) -> Optional[PipelineResult]:
        if not audio:
            log.debug("event=pipeline_skip reason=empty_buffer")
            return None

        start = time.perf_counter()
        appended = 0

        def _fail(kind: ErrorKind, exc: BaseException) -> PipelineResult:
            log.error("event=pipeline_failed kind=%s error=%s", kind.value, exc)
            if appended and self._config.session.history_policy is HistoryPolicy.ROLLBACK:
                conversation.discard_last(appended)
            else:
                conversation.trim()
            return PipelineResult.failed(kind, _describe(exc))

        # -- 1. transcode ------------------------------------------------------
        try:
            wav = await self._transcoder.to_pcm_wav(audio)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _fail(ErrorKind.TRANSCODE_FAILED, exc)

        # -- 2. transcribe -----------------------------------------------------
        try:
            transcript = (await self._engines.transcribe(wav)).strip()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _fail(ErrorKind.TRANSCRIPTION_FAILED, exc)

        if not transcript:
            log.info("event=pipeline_skip reason=blank_transcript")
            return None

        log.info("event=transcript text=%.80s", transcript)
        conversation.add_user(transcript)
        appended += 1

        # -- 3. complete -------------------------------------------------------
        try:
            reply = (await self._engines.complete(conversation.messages())).strip()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _fail(ErrorKind.COMPLETION_FAILED, exc)

        if not reply:
            log.warning("event=empty_completion fallback=true")
            reply = self._config.fallback_reply
        conversation.add_assistant(reply)
        appended += 1
        log.info("event=reply text=%.80s", reply)

        # -- 4. synthesize -----------------------------------------------------
        try:
            speech = await self._engines.synthesize(reply)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return _fail(ErrorKind.SYNTHESIS_FAILED, exc)

        conversation.trim()
        log.info(
            "event=pipeline_complete audio_bytes=%d turns=%d duration_ms=%.1f",
            len(speech), len(conversation), (time.perf_counter() - start) * 1000.0,
        )
        return PipelineResult.ok(speech, self._config.speech.media_type)
