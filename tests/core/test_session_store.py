import pytest

from workshop_relay.core import SessionState, TenantConfig


def _session(token="abc123"):
    return SessionState.create(TenantConfig(session_token=token, student_name="Ada"))


@pytest.mark.asyncio
async def test_add_get_remove(session_store):
    session = _session()
    await session_store.add(session)

    assert await session_store.get("abc123") is session
    assert session_store.count() == 1
    assert await session_store.remove(session) is True
    assert await session_store.get("abc123") is None


@pytest.mark.asyncio
async def test_remove_ignores_replaced_session(session_store):
    old = _session()
    new = _session()
    await session_store.add(old)
    await session_store.add(new)

    assert await session_store.remove(old) is False
    assert await session_store.get("abc123") is new


def test_build_messages_prepends_system_turn():
    session = _session()
    session.metadata.apply_setup({"callSid": "CA1", "from": "+15550001", "to": "+15550002"})

    messages = session.build_messages("Be brief.")

    assert messages == [{"role": "system", "content": "Be brief."}]
    assert session.metadata.call_sid == "CA1"
    assert session.metadata.from_number == "+15550001"
    assert session.metadata.student_name == "Ada"
