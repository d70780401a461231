"""
transcoder.py — Voice Conversation Engine · Transcoding Filter
==============================================================
Converts one compressed utterance (webm/opus, ogg, mp4, wav …) into
canonical linear PCM (16-bit WAV, mono, 16 kHz by default) with an external
``ffmpeg`` process spawned via asyncio.create_subprocess_exec.

Input and output go through files in a private TemporaryDirectory so they
are removed on every exit path, including timeouts and ffmpeg crashes.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from pathlib import Path

from config import TranscoderConfig

log = logging.getLogger("voice_engine.transcoder")

_STDERR_TAIL_CHARS = 400


class TranscodeError(RuntimeError):
    """ffmpeg is missing, crashed, timed out or produced no audio."""


class FfmpegTranscoder:
    """Black-box compressed-audio → WAV filter."""

    def __init__(self, config: TranscoderConfig | None = None) -> None:
        self._config = config or TranscoderConfig()

    @property
    def available(self) -> bool:
        return shutil.which(self._config.ffmpeg_path) is not None

    async def to_pcm_wav(self, audio: bytes) -> bytes:
        if not audio:
            raise TranscodeError("empty input")

        cfg = self._config
        start = time.perf_counter()
        with tempfile.TemporaryDirectory(prefix="voice-utt-") as tmp:
            src = Path(tmp) / "input.bin"
            dst = Path(tmp) / "output.wav"
            src.write_bytes(audio)

            try:
                proc = await asyncio.create_subprocess_exec(
                    cfg.ffmpeg_path,
                    "-hide_banner", "-loglevel", "error", "-nostdin", "-y",
                    "-i", str(src),
                    "-vn",
                    "-ac", str(cfg.channels),
                    "-ar", str(cfg.sample_rate),
                    "-acodec", "pcm_s16le",
                    "-f", "wav",
                    str(dst),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise TranscodeError(f"ffmpeg not found: {cfg.ffmpeg_path}") from exc

            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=cfg.timeout_sec)
            except asyncio.TimeoutError as exc:
                log.warning("event=transcode_timeout limit=%.1fs", cfg.timeout_sec)
                _kill(proc)
                await proc.wait()
                raise TranscodeError(f"ffmpeg timed out after {cfg.timeout_sec:.1f}s") from exc
            except asyncio.CancelledError:
                _kill(proc)
                await asyncio.shield(proc.wait())
                raise

            if proc.returncode != 0:
                tail = (stderr or b"").decode(errors="replace").strip()[-_STDERR_TAIL_CHARS:]
                raise TranscodeError(f"ffmpeg exited with code {proc.returncode}: {tail or 'no output'}")

            if not dst.exists() or dst.stat().st_size == 0:
                raise TranscodeError("ffmpeg produced no audio")

            wav = dst.read_bytes()

        log.info(
            "event=transcode_complete in_bytes=%d out_bytes=%d duration_ms=%.1f",
            len(audio), len(wav), (time.perf_counter() - start) * 1000.0,
        )
        return wav


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
