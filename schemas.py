"""
Database Schemas

MongoDB collection schemas as Pydantic models. They validate documents before
they are written; reads come back as plain dicts with ``_id`` as a string.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Conversation -> "conversation" collection
- Message -> "message" collection

All references between documents (participants, sender, conversation) are
stored as user/document id strings.
"""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent identity of a two-person conversation."""
    first, second = sorted([str(user_a), str(user_b)])
    return f"{first}:{second}"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Name shown in conversations")
    email: str = Field(..., description="Login email")
    avatar: str = Field("", description="Avatar image URL")
    online: bool = Field(False, description="Is the user currently online")
    last_seen: Optional[datetime] = Field(None, description="Last presence transition")


class Conversation(BaseModel):
    """
    Conversations collection schema
    Collection name: "conversation"

    Direct conversations carry ``direct_key``; a unique partial index on it
    (only where ``is_group`` is false) keeps one direct conversation per pair.
    """
    participants: List[str] = Field(..., description="Array of user ids (as strings)")
    is_group: bool = Field(False, description="Group (multi-party) or direct conversation")
    name: Optional[str] = Field(None, description="Display name, required for groups")
    description: str = Field("", description="Group description")
    avatar: str = Field("", description="Group avatar URL")
    admin: Optional[str] = Field(None, description="User id of the group admin")
    last_message_id: Optional[str] = Field(None, description="Most recent message in the conversation")
    unread_counts: Dict[str, int] = Field(default_factory=dict, description="Unread messages per participant")
    direct_key: Optional[str] = Field(None, description="Sorted participant pair for direct conversations")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> "Conversation":
        if self.is_group:
            if not self.name:
                raise ValueError("Group conversations need a name")
            if not self.admin:
                raise ValueError("Group conversations need an admin")
            self.direct_key = None
        else:
            if len(set(self.participants)) != 2:
                raise ValueError("Direct conversations have exactly two participants")
            self.direct_key = direct_key(*self.participants)
        # One counter per participant, starting at zero.
        self.unread_counts = {p: self.unread_counts.get(p, 0) for p in self.participants}
        return self


class ReadReceipt(BaseModel):
    user: str = Field(..., description="Reader user id")
    read_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """
    Messages collection schema
    Collection name: "message"
    """
    conversation_id: str = Field(..., description="ID of the conversation this message belongs to")
    sender_id: str = Field(..., description="User ID of the sender")
    content: str = Field(..., description="Message text content or caption")
    type: Literal["text", "image", "video", "document"] = Field("text", description="Message kind")
    file: str = Field("", description="Optional file reference for media messages")
    encrypted_content: str = Field("", description="Obfuscated copy of the content")
    delivered: bool = Field(False, description="Whether a recipient has received the message")
    read: bool = Field(False, description="Whether a recipient has read the message")
    read_by: List[ReadReceipt] = Field(default_factory=list, description="One entry per reader")
    reactions: List[Dict[str, str]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
