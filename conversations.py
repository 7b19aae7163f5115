import logging
from typing import Any, Dict, List, Optional, Tuple

from errors import NotFound, ValidationFailure
from events import public_user, serialize_conversation, serialize_message
from membership import RoomMembershipManager
from schemas import Conversation
from store import ChatStore, DuplicateConversation

logger = logging.getLogger(__name__)


class ConversationService:
    """Conversation creation, removal, and participant-scoped reads."""

    def __init__(self, store: ChatStore, membership: Optional[RoomMembershipManager] = None) -> None:
        self.store = store
        self.membership = membership

    async def require_participant(self, conversation_id: Optional[str], user_id: str) -> Dict[str, Any]:
        if not conversation_id:
            raise ValidationFailure("conversationId is required")
        conversation = await self.store.get_conversation_for(conversation_id, user_id)
        if not conversation:
            raise NotFound("Conversation not found")
        return conversation

    async def create_or_get_direct(self, user_id: str, other_user_id: str) -> Tuple[Dict[str, Any], bool]:
        """
        Return the direct conversation between two users, creating it if needed.

        The second element is True when a new conversation was created. Two
        concurrent creators race on the unique pair index; the loser re-reads.
        """
        if not other_user_id:
            raise ValidationFailure("Please provide a user ID")
        user_id, other_user_id = str(user_id), str(other_user_id)
        if user_id == other_user_id:
            raise ValidationFailure("Cannot create conversation with yourself")

        existing = await self.store.find_direct_conversation(user_id, other_user_id)
        if existing:
            return existing, False
        if not await self.store.get_user(other_user_id):
            raise NotFound("User not found")

        participants = sorted([user_id, other_user_id])
        try:
            created = await self.store.create_conversation(Conversation(participants=participants, is_group=False))
        except DuplicateConversation:
            logger.info(f"Duplicate conversation detected for {participants[0]} and {participants[1]}, re-reading")
            existing = await self.store.find_direct_conversation(user_id, other_user_id)
            if not existing:
                raise
            return existing, False
        logger.info(f"Created new conversation between users {participants[0]} and {participants[1]}")
        return created, True

    async def create_group(
        self, admin_id: str, name: Optional[str], participants: List[str], description: str = ""
    ) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValidationFailure("Please provide a name and participants array")
        others = {str(p) for p in participants if p} - {str(admin_id)}
        if len(others) < 2:
            raise ValidationFailure("Group must have at least 2 participants")
        members = sorted(others | {str(admin_id)})
        known = await self.store.get_users(members)
        if len(known) != len(members):
            raise NotFound("User not found")

        conversation = Conversation(
            participants=members,
            is_group=True,
            name=name.strip(),
            description=description or "",
            admin=str(admin_id),
        )
        created = await self.store.create_conversation(conversation)
        logger.info(f"Created group conversation {created['_id']} with {len(members)} participants")
        return created

    async def describe(self, conversation: Dict[str, Any], viewer_id: str) -> Dict[str, Any]:
        """Conversation with participants and last message populated."""
        participants = [public_user(u) | _presence(u) for u in await self.store.get_users(conversation["participants"])]
        last_message = None
        if conversation.get("last_message_id"):
            message = await self.store.get_message(conversation["last_message_id"])
            if message:
                last_message = serialize_message(message)
        return serialize_conversation(conversation, viewer_id, participants, last_message)

    async def list_for(self, user_id: str) -> List[Dict[str, Any]]:
        conversations = await self.store.list_conversations(user_id)
        return [await self.describe(c, user_id) for c in conversations]

    async def get_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        return await self.describe(await self.require_participant(conversation_id, user_id), user_id)

    async def delete_or_leave(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        """
        Delete a conversation, or leave it.

        A group member who is not the admin only leaves: they are removed from
        the participants and their live sockets stop receiving the room. The
        admin of a group, or either side of a direct conversation, deletes it
        together with its messages.
        """
        user_id = str(user_id)
        conversation = await self.require_participant(conversation_id, user_id)
        if conversation["is_group"] and conversation.get("admin") != user_id:
            await self.store.remove_participant(conversation["_id"], user_id)
            if self.membership is not None:
                self.membership.leave_conversation(conversation["_id"], [user_id])
            logger.info(f"User {user_id} left group {conversation['_id']}")
            return {"success": True, "message": "You have left the group"}

        removed = await self.store.delete_conversation(conversation["_id"])
        if self.membership is not None:
            self.membership.leave_conversation(conversation["_id"])
        logger.info(f"User {user_id} deleted conversation {conversation['_id']} with {removed} messages")
        return {"success": True, "message": "Conversation deleted"}

    async def search_messages(
        self, user_id: str, text: Optional[str], conversation_id: Optional[str] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Case-insensitive content search over the caller's own conversations, newest first."""
        if not text or not text.strip():
            raise ValidationFailure("Please provide a search query")
        user_id = str(user_id)
        if conversation_id:
            conversation_ids = [(await self.require_participant(conversation_id, user_id))["_id"]]
        else:
            conversation_ids = [c["_id"] for c in await self.store.list_conversations(user_id)]
        if not conversation_ids:
            return []

        messages = await self.store.search_messages(conversation_ids, text.strip(), limit)
        senders = {u["_id"]: u for u in await self.store.get_users(list({m["sender_id"] for m in messages}))}
        return [serialize_message(m, senders.get(m["sender_id"])) for m in messages]


def _presence(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"isOnline": bool(user.get("online")), "lastSeen": user.get("last_seen")}
