import pytest

from events import TypingSignal


@pytest.mark.asyncio
async def test_typing_reaches_others_but_not_sender(hub, users, group, connect):
    alice_conn = await connect(users["Alice"])
    bob_conn = await connect(users["Bob"])
    carol_conn = await connect(users["Carol"])
    for conn in (alice_conn, bob_conn, carol_conn):
        conn.websocket.clear()

    relayed = await hub.typing.relay(alice_conn, TypingSignal(conversationId=group["_id"], isTyping=True))

    assert relayed is True
    assert alice_conn.websocket.events("typing") == []
    for conn in (bob_conn, carol_conn):
        [frame] = conn.websocket.events("typing")
        assert frame["data"] == {
            "conversationId": group["_id"],
            "userId": users["Alice"]["_id"],
            "userName": "Alice",
            "isTyping": True,
        }


@pytest.mark.asyncio
async def test_typing_is_not_persisted(hub, store, users, direct, connect):
    alice_conn = await connect(users["Alice"])

    await hub.typing.relay(alice_conn, TypingSignal(conversationId=direct["_id"], isTyping=False))

    assert store.messages == {}


@pytest.mark.asyncio
async def test_typing_from_non_member_is_dropped(hub, users, direct, connect):
    carol_conn = await connect(users["Carol"])
    bob_conn = await connect(users["Bob"])
    bob_conn.websocket.clear()

    relayed = await hub.typing.relay(carol_conn, TypingSignal(conversationId=direct["_id"], isTyping=True))

    assert relayed is False
    assert bob_conn.websocket.events("typing") == []
