import logging

from broadcast import Connection, ConnectionManager
from events import TypingSignal

logger = logging.getLogger(__name__)


class TypingRelay:
    """Forwards typing start/stop to the rest of a conversation. Never stored."""

    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections

    async def relay(self, connection: Connection, signal: TypingSignal) -> bool:
        if not self.connections.is_member(connection, signal.conversation_id):
            return False
        try:
            await self.connections.emit_to_conversation(
                signal.conversation_id,
                "typing",
                {
                    "conversationId": signal.conversation_id,
                    "userId": connection.user_id,
                    "userName": connection.user_name,
                    "isTyping": signal.is_typing,
                },
                exclude=connection.id,
            )
        except Exception as exc:
            logger.debug(f"Dropped typing signal from {connection.user_id}: {exc}")
            return False
        return True
