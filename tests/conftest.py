import copy
import itertools
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId

from broadcast import Connection
from config import Settings
from errors import TransientStorageFailure
from hub import build_hub
from schemas import Conversation, Message, User, direct_key, utcnow
from store import DuplicateConversation


class InMemoryChatStore:
    """ChatStore double with the same write rules as MongoChatStore.

    Add a method name to ``fail_on`` to simulate a storage outage for it.
    """

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.fail_on: set = set()
        self._seq = itertools.count()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise TransientStorageFailure("Storage is temporarily unavailable")

    def add_user(self, name: str, online: bool = False) -> Dict[str, Any]:
        user_id = str(ObjectId())
        doc = User(name=name, email=f"{name.lower()}@example.com", online=online).model_dump()
        doc["_id"] = user_id
        self.users[user_id] = doc
        return copy.deepcopy(doc)

    def add_conversation(self, conversation: Conversation) -> Dict[str, Any]:
        doc = conversation.model_dump()
        doc["_id"] = str(ObjectId())
        doc["_seq"] = next(self._seq)
        self.conversations[doc["_id"]] = doc
        return self._out(doc)

    @staticmethod
    def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        out = copy.deepcopy(doc)
        out.pop("_seq", None)
        return out

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._check("get_user")
        return self._out(self.users.get(str(user_id)))

    async def get_users(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        self._check("get_users")
        return [self._out(self.users[u]) for u in user_ids if u in self.users]

    async def set_presence(self, user_id: str, online: bool, last_seen: datetime) -> None:
        self._check("set_presence")
        if user_id in self.users:
            self.users[user_id].update(online=online, last_seen=last_seen)

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        self._check("list_conversations")
        found = [c for c in self.conversations.values() if user_id in c["participants"]]
        found.sort(key=lambda c: (c["updated_at"], c["_seq"]), reverse=True)
        return [self._out(c) for c in found]

    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        self._check("get_conversation_for")
        conversation = self.conversations.get(conversation_id)
        if conversation is None or user_id not in conversation["participants"]:
            return None
        return self._out(conversation)

    async def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        self._check("find_direct_conversation")
        key = direct_key(user_a, user_b)
        for conversation in self.conversations.values():
            if not conversation["is_group"] and conversation["direct_key"] == key:
                return self._out(conversation)
        return None

    async def create_conversation(self, conversation: Conversation) -> Dict[str, Any]:
        self._check("create_conversation")
        if not conversation.is_group:
            for existing in self.conversations.values():
                if not existing["is_group"] and existing["direct_key"] == conversation.direct_key:
                    raise DuplicateConversation(conversation.direct_key)
        return self.add_conversation(conversation)

    async def insert_message(self, message: Message) -> Dict[str, Any]:
        self._check("insert_message")
        doc = message.model_dump()
        doc["_id"] = str(ObjectId())
        doc["_seq"] = next(self._seq)
        self.messages[doc["_id"]] = doc
        return self._out(doc)

    async def record_message_sent(
        self, conversation_id: str, sender_id: str, message_id: str, participants: List[str]
    ) -> None:
        self._check("record_message_sent")
        conversation = self.conversations[conversation_id]
        for participant in participants:
            if participant != sender_id:
                conversation["unread_counts"][participant] = conversation["unread_counts"].get(participant, 0) + 1
        conversation["last_message_id"] = message_id
        conversation["updated_at"] = utcnow()

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        self._check("get_message")
        return self._out(self.messages.get(message_id))

    async def delete_message(self, message_id: str) -> bool:
        self._check("delete_message")
        return self.messages.pop(message_id, None) is not None

    def _in_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        found = [m for m in self.messages.values() if m["conversation_id"] == conversation_id]
        found.sort(key=lambda m: (m["created_at"], m["_seq"]), reverse=True)
        return found

    async def latest_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        self._check("latest_message")
        found = self._in_conversation(conversation_id)
        return self._out(found[0]) if found else None

    async def set_last_message(self, conversation_id: str, message_id: Optional[str]) -> None:
        self._check("set_last_message")
        self.conversations[conversation_id]["last_message_id"] = message_id

    async def list_messages(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        self._check("list_messages")
        return [self._out(m) for m in self._in_conversation(conversation_id)[skip:skip + limit]]

    async def mark_delivered(self, conversation_id: str, user_id: str) -> int:
        self._check("mark_delivered")
        count = 0
        for message in self._in_conversation(conversation_id):
            if message["sender_id"] != user_id and not message["delivered"]:
                message["delivered"] = True
                count += 1
        return count

    async def mark_read(
        self, conversation_id: str, user_id: str, read_at: datetime, message_id: Optional[str] = None
    ) -> int:
        self._check("mark_read")
        if message_id is not None:
            candidates = [m for m in self._in_conversation(conversation_id) if m["_id"] == message_id]
        else:
            candidates = [m for m in self._in_conversation(conversation_id) if m["sender_id"] != user_id]
        count = 0
        for message in candidates:
            if any(entry["user"] == user_id for entry in message["read_by"]):
                continue
            message["read"] = True
            message["delivered"] = True
            message["read_by"].append({"user": user_id, "read_at": read_at})
            count += 1
        return count

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        self._check("reset_unread")
        conversation = self.conversations.get(conversation_id)
        if conversation is not None and user_id in conversation["participants"]:
            conversation["unread_counts"][user_id] = 0

    async def delete_conversation(self, conversation_id: str) -> int:
        self._check("delete_conversation")
        doomed = [m["_id"] for m in self._in_conversation(conversation_id)]
        for message_id in doomed:
            del self.messages[message_id]
        self.conversations.pop(conversation_id, None)
        return len(doomed)

    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        self._check("remove_participant")
        conversation = self.conversations.get(conversation_id)
        if conversation is not None:
            conversation["participants"] = [p for p in conversation["participants"] if p != user_id]
            conversation["unread_counts"].pop(user_id, None)

    async def search_messages(self, conversation_ids: List[str], text: str, limit: int) -> List[Dict[str, Any]]:
        self._check("search_messages")
        pattern = re.compile(re.escape(text), re.IGNORECASE)
        found = [
            m
            for conversation_id in conversation_ids
            for m in self._in_conversation(conversation_id)
            if pattern.search(m["content"])
        ]
        found.sort(key=lambda m: (m["created_at"], m["_seq"]), reverse=True)
        return [self._out(m) for m in found[:limit]]


class FakeSocket:
    """Records frames the server pushes to one client."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.broken = False

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if name is None or m["event"] == name]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def chat_settings() -> Settings:
    return Settings(database_url=None, presence_reference_counted=False)


@pytest.fixture
def hub(store, chat_settings):
    return build_hub(store, chat_settings)


@pytest.fixture
def connect(hub):
    """Open an authenticated connection for a user against the hub."""

    async def _connect(user: Dict[str, Any]) -> Connection:
        connection = Connection(FakeSocket(), user)
        await hub.open(connection)
        return connection

    return _connect


@pytest.fixture
def users(store):
    return {name: store.add_user(name) for name in ("Alice", "Bob", "Carol", "Dave")}


@pytest.fixture
def direct(store, users):
    alice, bob = users["Alice"]["_id"], users["Bob"]["_id"]
    return store.add_conversation(Conversation(participants=sorted([alice, bob])))


@pytest.fixture
def group(store, users):
    members = [users[n]["_id"] for n in ("Alice", "Bob", "Carol")]
    return store.add_conversation(
        Conversation(participants=members, is_group=True, name="Weekend", admin=users["Alice"]["_id"])
    )
