"""
Real-time event protocol

Frames on the socket are JSON objects shaped ``{"event": <name>, "data": {...}}``.
Inbound frames are validated here, before dispatch, into one tagged model per
event name. Outbound payloads are built here too so the wire format (camelCase
keys) lives in one place.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from errors import ValidationFailure

MessageType = Literal["text", "image", "video", "document"]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SendMessage(_Payload):
    """
    A new message from a client.

    ``conversation_id`` may be omitted when ``to`` names a recipient; the
    direct conversation between the two users is then created or reused.
    The sender is never taken from the payload.
    """

    conversation_id: Optional[str] = Field(None, alias="conversationId")
    to: Optional[str] = Field(None, description="Recipient user id for a first direct message")
    content: str = Field(..., min_length=1)
    type: MessageType = "text"
    file: Optional[str] = None
    encrypted_content: Optional[str] = Field(None, alias="encryptedContent")

    @field_validator("conversation_id", "to", "file", "encrypted_content")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @model_validator(mode="after")
    def _needs_target(self) -> "SendMessage":
        if not self.conversation_id and not self.to:
            raise ValueError("conversationId or to is required")
        return self


class TypingSignal(_Payload):
    conversation_id: str = Field(..., alias="conversationId", min_length=1)
    is_typing: bool = Field(..., alias="isTyping")


class ReadRequest(_Payload):
    conversation_id: str = Field(..., alias="conversationId", min_length=1)
    message_id: Optional[str] = Field(None, alias="messageId")


class DeliveredAck(_Payload):
    conversation_id: str = Field(..., alias="conversationId", min_length=1)


class DeleteRequest(_Payload):
    message_id: str = Field(..., alias="messageId", min_length=1)


class SendMessageFrame(BaseModel):
    event: Literal["send-message", "message"]
    data: SendMessage


class TypingFrame(BaseModel):
    event: Literal["typing"]
    data: TypingSignal


class ReadFrame(BaseModel):
    event: Literal["read"]
    data: ReadRequest


class DeliveredFrame(BaseModel):
    event: Literal["delivered"]
    data: DeliveredAck


class DeleteFrame(BaseModel):
    event: Literal["delete-message"]
    data: DeleteRequest


InboundFrame = Annotated[
    Union[SendMessageFrame, TypingFrame, ReadFrame, DeliveredFrame, DeleteFrame],
    Field(discriminator="event"),
]

_inbound = TypeAdapter(InboundFrame)


def parse_inbound(frame: Any) -> Union[SendMessageFrame, TypingFrame, ReadFrame, DeliveredFrame, DeleteFrame]:
    """Validate a decoded client frame, raising ValidationFailure when malformed."""
    if not isinstance(frame, dict):
        raise ValidationFailure("Event frame must be a JSON object")
    try:
        return _inbound.validate_python(frame)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationFailure(f"Invalid event payload at {where}: {first.get('msg')}")


def parse_send_message(payload: Any) -> SendMessage:
    """Validate an HTTP send body with the same rules as the socket path."""
    try:
        return SendMessage.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationFailure(f"Invalid message at {where}: {first.get('msg')}")


# Outbound payloads

def frame(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "_id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "avatar": user.get("avatar") or "",
    }


def serialize_message(message: Dict[str, Any], sender: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Full message object with the sender profile populated."""
    return {
        "_id": str(message["_id"]),
        "conversationId": message["conversation_id"],
        "sender": public_user(sender) or {"_id": message["sender_id"]},
        "content": message["content"],
        "type": message.get("type", "text"),
        "file": message.get("file") or "",
        "encryptedContent": message.get("encrypted_content") or "",
        "delivered": bool(message.get("delivered")),
        "read": bool(message.get("read")),
        "readBy": [
            {"user": entry["user"], "readAt": entry["read_at"]}
            for entry in message.get("read_by", [])
        ],
        "createdAt": message.get("created_at"),
    }


def serialize_conversation(
    conversation: Dict[str, Any],
    viewer_id: str,
    participants: Optional[List[Dict[str, Any]]] = None,
    last_message: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    counts = conversation.get("unread_counts") or {}
    return {
        "_id": str(conversation["_id"]),
        "participants": participants if participants is not None else list(conversation["participants"]),
        "isGroup": bool(conversation.get("is_group")),
        "name": conversation.get("name"),
        "description": conversation.get("description") or "",
        "avatar": conversation.get("avatar") or "",
        "admin": conversation.get("admin"),
        "lastMessage": last_message,
        "unreadCount": int(counts.get(viewer_id, 0)),
        "createdAt": conversation.get("created_at"),
        "updatedAt": conversation.get("updated_at"),
    }


def presence_payload(conversation_id: str, user_id: str, last_seen: datetime) -> Dict[str, Any]:
    return {"conversationId": conversation_id, "userId": user_id, "lastSeen": last_seen}
