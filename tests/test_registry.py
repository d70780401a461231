import pytest

from registry import SessionRegistry


@pytest.mark.asyncio
async def test_add_remove_and_snapshot(make_session, registry):
    session = make_session()
    await session.open()

    assert len(registry) == 1
    assert registry.get(session.session_id) is session
    (info,) = registry.snapshot()
    assert info.session_id == "conn-1"
    assert info.state == "idle"
    assert info.turns == 1

    await session.close()
    assert registry.snapshot() == []
    assert registry.remove("conn-1") is False


def test_duplicate_id_rejected():
    class _Stub:
        session_id = "same"

    registry = SessionRegistry()
    registry.add(_Stub())
    with pytest.raises(KeyError):
        registry.add(_Stub())
    assert list(registry)[0].session_id == "same"
