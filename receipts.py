import logging
from typing import Any, Dict, Optional

from broadcast import Broadcaster
from conversations import ConversationService
from errors import NotFound
from schemas import utcnow
from store import ChatStore

logger = logging.getLogger(__name__)


class ReceiptTracker:
    """
    Delivered and read transitions plus the per-participant unread counter.

    Both flags only ever move from false to true. Lookups are scoped to the
    requester as participant, so a conversation the requester is not in is
    reported as not found.
    """

    def __init__(self, store: ChatStore, broadcaster: Broadcaster, conversations: ConversationService) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.conversations = conversations

    async def mark_delivered(self, conversation_id: str, user_id: str) -> int:
        user_id = str(user_id)
        await self.conversations.require_participant(conversation_id, user_id)
        count = await self.store.mark_delivered(conversation_id, user_id)
        await self.broadcaster.emit_to_conversation(
            conversation_id, "messages-delivered", {"conversationId": conversation_id, "userId": user_id}
        )
        return count

    async def mark_read(self, conversation_id: str, user_id: str, message_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Mark one message, or every message from others, as read by ``user_id``
        and reset their unread counter. Repeating the call changes nothing.
        """
        user_id = str(user_id)
        await self.conversations.require_participant(conversation_id, user_id)
        if message_id:
            message = await self.store.get_message(message_id)
            if not message or message["conversation_id"] != conversation_id:
                raise NotFound("Message not found")

        count = await self.store.mark_read(conversation_id, user_id, utcnow(), message_id or None)
        await self.store.reset_unread(conversation_id, user_id)

        payload: Dict[str, Any] = {"conversationId": conversation_id, "userId": user_id}
        if message_id:
            payload["messageId"] = message_id
        await self.broadcaster.emit_to_conversation(conversation_id, "messages-read", payload)
        logger.debug(f"User {user_id} read {count} messages in {conversation_id}")
        return {"success": True, "count": count}
