import pytest
from pydantic import ValidationError

from config import BusyPolicy, DEFAULT_SYSTEM_PROMPT, VoiceEngineConfig


def test_defaults():
    config = VoiceEngineConfig()

    assert config.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert config.session.keepalive_interval_sec == 30.0
    assert config.session.busy_policy is BusyPolicy.QUEUE
    assert config.session.max_history_turns is None
    assert config.speech.media_type == "audio/wav"


def test_load_missing_file_returns_defaults(tmp_path):
    assert VoiceEngineConfig.load(tmp_path / "nope.json") == VoiceEngineConfig()


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"session": {"max_missed_pings": 0}}', encoding="utf-8")

    assert VoiceEngineConfig.load(path) == VoiceEngineConfig()


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config.json"
    config = VoiceEngineConfig().merge_patch({"groq": {"temperature": 0.3}, "speech": {"voice": "nova"}})
    config.save(path)

    loaded = VoiceEngineConfig.load(path)
    assert loaded.groq.temperature == 0.3
    assert loaded.speech.voice == "nova"


def test_merge_patch_is_partial():
    base = VoiceEngineConfig()
    patched = base.merge_patch({"session": {"busy_policy": "drop"}})

    assert patched.session.busy_policy is BusyPolicy.DROP
    assert patched.session.keepalive_interval_sec == base.session.keepalive_interval_sec
    assert base.session.busy_policy is BusyPolicy.QUEUE


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        VoiceEngineConfig().merge_patch({"session": {"boundary": "telepathy"}})
