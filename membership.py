import logging
from typing import Iterable, List, Optional

from broadcast import Connection, ConnectionManager, user_group
from errors import ChatError
from store import ChatStore

logger = logging.getLogger(__name__)


class RoomMembershipManager:
    """Subscribes live connections to their conversation groups."""

    def __init__(self, store: ChatStore, connections: ConnectionManager) -> None:
        self.store = store
        self.connections = connections

    async def join_rooms(self, connection: Connection) -> List[str]:
        """
        Join every conversation group the user belongs to, plus the private
        per-user group. Safe to call again for the same connection.

        If the conversation list cannot be loaded the connection keeps only its
        private group until it reconnects.
        """
        self.connections.join(connection, user_group(connection.user_id))
        try:
            conversations = await self.store.list_conversations(connection.user_id)
        except ChatError as exc:
            logger.error(f"Error joining rooms for user {connection.user_id}: {exc.message}")
            return []

        joined = []
        for conversation in conversations:
            if self.connections.join(connection, conversation["_id"]):
                joined.append(conversation["_id"])
        logger.info(f"Connection {connection.id} joined {len(joined)} conversation rooms")
        return joined

    def join_conversation(self, conversation_id: str, user_ids: Iterable[str]) -> int:
        """Subscribe every live connection of these users to a new conversation."""
        count = 0
        for connection in self.connections.connections_for(user_ids):
            if self.connections.join(connection, str(conversation_id)):
                count += 1
        return count

    def leave_conversation(self, conversation_id: str, user_ids: Optional[Iterable[str]] = None) -> int:
        """Unsubscribe live connections from a conversation group; all of them when ``user_ids`` is None."""
        group = str(conversation_id)
        members = self.connections.members(group)
        if user_ids is not None:
            wanted = {str(u) for u in user_ids}
            members = [c for c in members if c.user_id in wanted]
        for connection in members:
            self.connections.leave(connection, group)
        return len(members)

    def leave_all(self, connection: Connection) -> None:
        self.connections.leave_all(connection)
