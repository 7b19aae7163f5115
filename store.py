"""
Data-access layer

Every component talks to storage through the ``ChatStore`` protocol. The Mongo
implementation keeps the write rules the messaging core depends on:

- the unread increment and the last-message pointer change on send are one
  single-document update, so concurrent senders never lose an increment;
- conversation lookups for a user are scoped to ``participants`` so that a
  non-member gets the same answer as for a missing conversation;
- a reader is appended to ``read_by`` at most once per message.

Reads return plain dicts with ``_id`` as a string.
"""

import functools
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from errors import TransientStorageFailure
from schemas import Conversation, Message, direct_key, utcnow

logger = logging.getLogger(__name__)

_NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


class DuplicateConversation(Exception):
    """A direct conversation for this pair already exists."""


class ChatStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def get_users(self, user_ids: List[str]) -> List[Dict[str, Any]]: ...

    async def set_presence(self, user_id: str, online: bool, last_seen: datetime) -> None: ...

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]: ...

    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]: ...

    async def create_conversation(self, conversation: Conversation) -> Dict[str, Any]: ...

    async def insert_message(self, message: Message) -> Dict[str, Any]: ...

    async def record_message_sent(
        self, conversation_id: str, sender_id: str, message_id: str, participants: List[str]
    ) -> None: ...

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]: ...

    async def delete_message(self, message_id: str) -> bool: ...

    async def latest_message(self, conversation_id: str) -> Optional[Dict[str, Any]]: ...

    async def set_last_message(self, conversation_id: str, message_id: Optional[str]) -> None: ...

    async def list_messages(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]: ...

    async def mark_delivered(self, conversation_id: str, user_id: str) -> int: ...

    async def mark_read(
        self, conversation_id: str, user_id: str, read_at: datetime, message_id: Optional[str] = None
    ) -> int: ...

    async def reset_unread(self, conversation_id: str, user_id: str) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> int: ...

    async def remove_participant(self, conversation_id: str, user_id: str) -> None: ...

    async def search_messages(self, conversation_ids: List[str], text: str, limit: int) -> List[Dict[str, Any]]: ...


def _oid(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])
    return doc


def storage_call(func):
    """Translate driver errors into TransientStorageFailure."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            logger.error(f"Storage error in {func.__name__}: {exc}")
            raise TransientStorageFailure("Storage is temporarily unavailable") from exc

    return wrapper


class MongoChatStore:
    def __init__(self, db) -> None:
        self.db = db
        self.users = db["user"]
        self.conversations = db["conversation"]
        self.messages = db["message"]

    @storage_call
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(user_id)
        if oid is None:
            return None
        return _out(await self.users.find_one({"_id": oid}))

    @storage_call
    async def get_users(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        oids = [oid for oid in (_oid(u) for u in user_ids) if oid is not None]
        docs = await database.get_documents("user", {"_id": {"$in": oids}}, handle=self.db)
        by_id = {str(d["_id"]): _out(d) for d in docs}
        return [by_id[u] for u in user_ids if u in by_id]

    @storage_call
    async def set_presence(self, user_id: str, online: bool, last_seen: datetime) -> None:
        oid = _oid(user_id)
        if oid is None:
            return
        await self.users.update_one({"_id": oid}, {"$set": {"online": online, "last_seen": last_seen}})

    @storage_call
    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        docs = await database.get_documents(
            "conversation", {"participants": user_id}, sort=[("updated_at", DESCENDING)], handle=self.db
        )
        return [_out(d) for d in docs]

    @storage_call
    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(conversation_id)
        if oid is None:
            return None
        return _out(await self.conversations.find_one({"_id": oid, "participants": user_id}))

    @storage_call
    async def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        return _out(await self.conversations.find_one({"direct_key": direct_key(user_a, user_b), "is_group": False}))

    @storage_call
    async def create_conversation(self, conversation: Conversation) -> Dict[str, Any]:
        doc = conversation.model_dump()
        if doc["direct_key"] is None:
            doc.pop("direct_key")
        try:
            doc["_id"] = await database.create_document("conversation", doc, handle=self.db)
        except DuplicateKeyError as exc:
            raise DuplicateConversation(conversation.direct_key) from exc
        return doc

    @storage_call
    async def insert_message(self, message: Message) -> Dict[str, Any]:
        doc = message.model_dump()
        doc["_id"] = await database.create_document("message", doc, handle=self.db)
        return doc

    @storage_call
    async def record_message_sent(
        self, conversation_id: str, sender_id: str, message_id: str, participants: List[str]
    ) -> None:
        increments = {f"unread_counts.{p}": 1 for p in participants if p != sender_id}
        update: Dict[str, Any] = {"$set": {"last_message_id": message_id, "updated_at": utcnow()}}
        if increments:
            update["$inc"] = increments
        await self.conversations.update_one({"_id": _oid(conversation_id)}, update)

    @storage_call
    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(message_id)
        if oid is None:
            return None
        return _out(await self.messages.find_one({"_id": oid}))

    @storage_call
    async def delete_message(self, message_id: str) -> bool:
        result = await self.messages.delete_one({"_id": _oid(message_id)})
        return result.deleted_count == 1

    @storage_call
    async def latest_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.messages.find_one({"conversation_id": conversation_id}, sort=_NEWEST_FIRST)
        return _out(doc)

    @storage_call
    async def set_last_message(self, conversation_id: str, message_id: Optional[str]) -> None:
        await self.conversations.update_one({"_id": _oid(conversation_id)}, {"$set": {"last_message_id": message_id}})

    @storage_call
    async def list_messages(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        docs = await database.get_documents(
            "message",
            {"conversation_id": conversation_id},
            sort=_NEWEST_FIRST,
            skip=skip,
            limit=limit,
            handle=self.db,
        )
        return [_out(d) for d in docs]

    @storage_call
    async def mark_delivered(self, conversation_id: str, user_id: str) -> int:
        result = await self.messages.update_many(
            {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "delivered": False},
            {"$set": {"delivered": True}},
        )
        return result.modified_count

    @storage_call
    async def mark_read(
        self, conversation_id: str, user_id: str, read_at: datetime, message_id: Optional[str] = None
    ) -> int:
        # Filtering on the reader keeps read_by to one entry per user.
        receipt = {"user": user_id, "read_at": read_at}
        update = {"$set": {"read": True, "delivered": True}, "$push": {"read_by": receipt}}
        if message_id is not None:
            result = await self.messages.update_one(
                {"_id": _oid(message_id), "conversation_id": conversation_id, "read_by.user": {"$ne": user_id}},
                update,
            )
        else:
            result = await self.messages.update_many(
                {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "read_by.user": {"$ne": user_id}},
                update,
            )
        return result.modified_count

    @storage_call
    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        await self.conversations.update_one(
            {"_id": _oid(conversation_id), "participants": user_id},
            {"$set": {f"unread_counts.{user_id}": 0}},
        )

    @storage_call
    async def delete_conversation(self, conversation_id: str) -> int:
        """Delete a conversation and every message in it. Returns the number of messages removed."""
        result = await self.messages.delete_many({"conversation_id": conversation_id})
        await self.conversations.delete_one({"_id": _oid(conversation_id)})
        return result.deleted_count

    @storage_call
    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        await self.conversations.update_one(
            {"_id": _oid(conversation_id)},
            {"$pull": {"participants": user_id}, "$unset": {f"unread_counts.{user_id}": ""}},
        )

    @storage_call
    async def search_messages(self, conversation_ids: List[str], text: str, limit: int) -> List[Dict[str, Any]]:
        filt = {
            "conversation_id": {"$in": conversation_ids},
            "content": {"$regex": re.escape(text), "$options": "i"},
        }
        docs = await database.get_documents("message", filt, sort=_NEWEST_FIRST, limit=limit, handle=self.db)
        return [_out(d) for d in docs]
