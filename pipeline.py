"""
Message send and delete.

A send is one linear coroutine: load the sender, persist, update the
conversation, broadcast, then sweep offline recipients. Nothing is broadcast
unless the message and the conversation update were stored first, and a
message whose conversation update failed is removed again.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from broadcast import Broadcaster
from conversations import ConversationService
from errors import ChatError, NotAuthorized, NotFound
from events import SendMessage, serialize_message
from membership import RoomMembershipManager
from obfuscation import ContentObfuscator
from presence import PresenceTracker
from schemas import Message
from store import ChatStore

logger = logging.getLogger(__name__)


class OfflineNotifier(Protocol):
    async def notify(self, recipient: Dict[str, Any], message: Dict[str, Any]) -> None: ...


class LoggingOfflineNotifier:
    """Stands where push delivery would go; only logs."""

    async def notify(self, recipient: Dict[str, Any], message: Dict[str, Any]) -> None:
        logger.info(
            f"Would send notification to offline user: {recipient.get('name')} "
            f"for message {message['_id']} in conversation {message['conversationId']}"
        )


class MessagePipeline:
    def __init__(
        self,
        store: ChatStore,
        broadcaster: Broadcaster,
        conversations: ConversationService,
        membership: RoomMembershipManager,
        presence: PresenceTracker,
        notifier: Optional[OfflineNotifier] = None,
        obfuscator: Optional[ContentObfuscator] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.conversations = conversations
        self.membership = membership
        self.presence = presence
        self.notifier = notifier or LoggingOfflineNotifier()
        # Set only when content should be obfuscated server-side for clients that did not.
        self.obfuscator = obfuscator

    async def send(self, sender_id: str, request: SendMessage) -> Dict[str, Any]:
        """
        Store and fan out a new message from ``sender_id``.

        Raises NotFound when the conversation does not exist or the sender is not
        in it, ValidationFailure for a bad first-message target, and
        TransientStorageFailure when storage fails before the broadcast.

        Returns the populated message as broadcast.
        """
        sender_id = str(sender_id)
        conversation_id = request.conversation_id
        if not conversation_id:
            conversation, created = await self.conversations.create_or_get_direct(sender_id, request.to)
            conversation_id = conversation["_id"]
            if created:
                self.membership.join_conversation(conversation_id, conversation["participants"])

        conversation = await self.conversations.require_participant(conversation_id, sender_id)

        sender = await self.store.get_user(sender_id)

        encrypted = request.encrypted_content or ""
        if not encrypted and self.obfuscator is not None:
            encrypted = self.obfuscator.obfuscate(request.content)

        stored = await self.store.insert_message(
            Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=request.content,
                type=request.type,
                file=request.file or "",
                encrypted_content=encrypted,
            )
        )
        try:
            await self.store.record_message_sent(
                conversation_id, sender_id, stored["_id"], conversation["participants"]
            )
        except ChatError:
            await self._discard(stored["_id"])
            raise

        message = serialize_message(stored, sender)
        await self.broadcaster.emit_to_conversation(conversation_id, "new-message", message)

        await self._notify_offline(conversation, sender_id, message)
        return message

    async def delete(self, requester_id: str, message_id: str) -> Dict[str, Any]:
        requester_id = str(requester_id)
        message = await self.store.get_message(message_id)
        if not message:
            raise NotFound("Message not found")
        conversation = await self.store.get_conversation_for(message["conversation_id"], requester_id)
        if not conversation:
            raise NotFound("Message not found")
        if message["sender_id"] != requester_id:
            raise NotAuthorized("Not authorized to delete this message")

        await self.store.delete_message(message["_id"])

        if conversation.get("last_message_id") == message["_id"]:
            latest = await self.store.latest_message(message["conversation_id"])
            await self.store.set_last_message(message["conversation_id"], latest["_id"] if latest else None)

        payload = {"conversationId": message["conversation_id"], "messageId": message["_id"]}
        await self.broadcaster.emit_to_conversation(message["conversation_id"], "message-deleted", payload)
        logger.info(f"User {requester_id} deleted message {message['_id']}")
        return payload

    async def _discard(self, message_id: str) -> None:
        """Remove a message whose conversation update failed, so the send leaves no trace."""
        try:
            await self.store.delete_message(message_id)
        except ChatError as exc:
            logger.error(f"Could not discard message {message_id} after failed send: {exc.message}")

    async def _notify_offline(self, conversation: Dict[str, Any], sender_id: str, message: Dict[str, Any]) -> None:
        try:
            recipients = [p for p in conversation["participants"] if p != sender_id]
            for recipient in await self.presence.offline_users(recipients):
                await self.notifier.notify(recipient, message)
        except Exception:
            logger.exception(f"Error sending offline notifications for message {message['_id']}")
