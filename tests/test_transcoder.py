from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

import transcoder as transcoder_mod
from config import TranscoderConfig
from transcoder import FfmpegTranscoder, TranscodeError


class _FakeProcess:
    def __init__(self, args, returncode=0, stderr=b"", write_output=True, hang=False):
        self.args = args
        self.returncode = None
        self.killed = False
        self.waited = False
        self._rc = returncode
        self._stderr = stderr
        self._write_output = write_output
        self._hang = hang

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        if self._write_output:
            Path(self.args[-1]).write_bytes(b"RIFF\x00\x00\x00\x00WAVEfmt ")
        self.returncode = self._rc
        return b"", self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        self.waited = True
        return self.returncode


@pytest.fixture
def spawned(monkeypatch):
    """Patch subprocess creation; records every fake process spawned."""
    spawn = SimpleNamespace(procs=[], behaviour={})

    async def fake_exec(*args, **kwargs):
        if spawn.behaviour.get("missing"):
            raise FileNotFoundError(args[0])
        proc = _FakeProcess(args, **{k: v for k, v in spawn.behaviour.items() if k != "missing"})
        spawn.procs.append(proc)
        return proc

    monkeypatch.setattr(transcoder_mod.asyncio, "create_subprocess_exec", fake_exec)
    return spawn


def _input_path(proc: _FakeProcess) -> Path:
    return Path(proc.args[proc.args.index("-i") + 1])


@pytest.mark.asyncio
async def test_converts_to_mono_16k_wav_and_cleans_up(spawned):
    wav = await FfmpegTranscoder(TranscoderConfig(ffmpeg_path="/usr/bin/ffmpeg")).to_pcm_wav(b"webm-bytes")

    assert wav.startswith(b"RIFF")
    proc = spawned.procs[0]
    assert proc.args[0] == "/usr/bin/ffmpeg"
    assert proc.args[proc.args.index("-ar") + 1] == "16000"
    assert proc.args[proc.args.index("-ac") + 1] == "1"
    assert proc.args[proc.args.index("-acodec") + 1] == "pcm_s16le"
    assert not _input_path(proc).parent.exists()


@pytest.mark.asyncio
async def test_nonzero_exit_raises_with_stderr_and_cleans_up(spawned):
    spawned.behaviour.update(returncode=1, stderr=b"input.bin: Invalid data found when processing input\n")

    with pytest.raises(TranscodeError, match="Invalid data found"):
        await FfmpegTranscoder().to_pcm_wav(b"garbage")

    assert not _input_path(spawned.procs[0]).parent.exists()


@pytest.mark.asyncio
async def test_missing_output_raises(spawned):
    spawned.behaviour.update(write_output=False)

    with pytest.raises(TranscodeError, match="no audio"):
        await FfmpegTranscoder().to_pcm_wav(b"audio")


@pytest.mark.asyncio
async def test_timeout_kills_process_and_cleans_up(spawned):
    spawned.behaviour.update(hang=True)

    with pytest.raises(TranscodeError, match="timed out"):
        await FfmpegTranscoder(TranscoderConfig(timeout_sec=0.01)).to_pcm_wav(b"audio")

    assert spawned.procs[0].killed
    assert not _input_path(spawned.procs[0]).parent.exists()


@pytest.mark.asyncio
async def test_cancellation_kills_and_reaps_process(spawned):
    spawned.behaviour.update(hang=True)
    task = asyncio.create_task(FfmpegTranscoder().to_pcm_wav(b"audio"))
    while not spawned.procs:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    proc = spawned.procs[0]
    assert proc.killed
    assert proc.waited
    assert not _input_path(proc).parent.exists()


@pytest.mark.asyncio
async def test_missing_binary_raises(spawned):
    spawned.behaviour.update(missing=True)

    with pytest.raises(TranscodeError, match="not found"):
        await FfmpegTranscoder(TranscoderConfig(ffmpeg_path="no-such-ffmpeg")).to_pcm_wav(b"audio")


@pytest.mark.asyncio
async def test_empty_input_rejected_without_spawning(spawned):
    with pytest.raises(TranscodeError):
        await FfmpegTranscoder().to_pcm_wav(b"")

    assert spawned.procs == []


def test_available_reflects_path_lookup(monkeypatch):
    monkeypatch.setattr(transcoder_mod.shutil, "which", lambda name: None)
    assert FfmpegTranscoder().available is False

    monkeypatch.setattr(transcoder_mod.shutil, "which", lambda name: "/usr/bin/" + name)
    assert FfmpegTranscoder().available is True
