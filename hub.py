"""
Connection lifecycle hub.

Each socket goes connecting -> authenticated -> active -> closed. Rooms are
joined before the user is announced online, so the announcement reaches the
groups that were just joined. Frames from one socket are handled one at a
time, in the order received.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from auth import authenticate, bearer_from_header
from broadcast import ACTIVE, AUTHENTICATED, CLOSED, Connection, ConnectionManager
from config import Settings
from conversations import ConversationService
from errors import ChatError, ValidationFailure
from events import DeleteFrame, DeliveredFrame, ReadFrame, SendMessageFrame, TypingFrame, parse_inbound
from membership import RoomMembershipManager
from obfuscation import ContentObfuscator
from pipeline import MessagePipeline, OfflineNotifier
from presence import PresenceTracker
from receipts import ReceiptTracker
from store import ChatStore
from typing_relay import TypingRelay

logger = logging.getLogger(__name__)

AUTH_FAILED_CLOSE_CODE = 4401


class ConnectionHub:
    def __init__(
        self,
        store: ChatStore,
        connections: ConnectionManager,
        conversations: ConversationService,
        membership: RoomMembershipManager,
        presence: PresenceTracker,
        pipeline: MessagePipeline,
        receipts: ReceiptTracker,
        typing: TypingRelay,
    ) -> None:
        self.store = store
        self.connections = connections
        self.conversations = conversations
        self.membership = membership
        self.presence = presence
        self.pipeline = pipeline
        self.receipts = receipts
        self.typing = typing

    async def serve(self, websocket: WebSocket) -> None:
        token = websocket.query_params.get("token") or bearer_from_header(websocket.headers.get("authorization"))
        try:
            user = await authenticate(token, self.store)
        except ChatError as exc:
            logger.error(f"Socket authentication error: {exc.message}")
            await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=exc.message)
            return

        await websocket.accept()
        connection = Connection(websocket, user)
        connection.state = AUTHENTICATED
        try:
            await self.open(connection)
            while True:
                raw = await websocket.receive_text()
                await self.handle_raw(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception(f"Connection {connection.id} failed")
        finally:
            await self.close(connection)

    async def open(self, connection: Connection) -> None:
        self.connections.register(connection)
        logger.info(f"New socket connection: {connection.id}, User: {connection.user_id}")
        await self.membership.join_rooms(connection)
        await self.presence.connected(connection.user_id)
        connection.state = ACTIVE

    async def close(self, connection: Connection) -> None:
        if connection.state == CLOSED:
            return
        connection.state = CLOSED
        logger.info(f"Socket disconnected: {connection.id}, User: {connection.user_id}")
        self.membership.leave_all(connection)
        self.connections.disconnect(connection)
        await self.presence.disconnected(connection.user_id)

    async def handle_raw(self, connection: Connection, raw: str) -> None:
        try:
            decoded = json.loads(raw)
        except ValueError:
            await self._reply_error(connection, ValidationFailure("Event frame is not valid JSON"))
            return
        await self.dispatch(connection, decoded)

    async def dispatch(self, connection: Connection, decoded: Any) -> None:
        """Validate one client frame and route it. Errors go back to this connection only."""
        try:
            inbound = parse_inbound(decoded)
            if isinstance(inbound, SendMessageFrame):
                await self.pipeline.send(connection.user_id, inbound.data)
            elif isinstance(inbound, TypingFrame):
                await self.typing.relay(connection, inbound.data)
            elif isinstance(inbound, ReadFrame):
                await self.receipts.mark_read(
                    inbound.data.conversation_id, connection.user_id, inbound.data.message_id
                )
            elif isinstance(inbound, DeliveredFrame):
                await self.receipts.mark_delivered(inbound.data.conversation_id, connection.user_id)
            elif isinstance(inbound, DeleteFrame):
                await self.pipeline.delete(connection.user_id, inbound.data.message_id)
        except ChatError as exc:
            await self._reply_error(connection, exc)
        except Exception:
            logger.exception(f"Unhandled error processing event from {connection.user_id}")
            await self._reply_error(connection, ChatError("Failed to process event"))

    async def _reply_error(self, connection: Connection, error: ChatError) -> None:
        payload: Dict[str, Any] = error.to_event()
        await self.connections.emit_to_connection(connection.id, payload["event"], payload["data"])


def build_hub(store: ChatStore, settings: Settings, notifier: Optional[OfflineNotifier] = None) -> ConnectionHub:
    """Wire every component around one store and one connection registry."""
    connections = ConnectionManager()
    membership = RoomMembershipManager(store, connections)
    conversations = ConversationService(store, membership)
    presence = PresenceTracker(store, connections, reference_counted=settings.presence_reference_counted)
    obfuscator = ContentObfuscator(settings.content_obfuscation_key) if settings.obfuscate_at_rest else None
    pipeline = MessagePipeline(store, connections, conversations, membership, presence, notifier, obfuscator)
    receipts = ReceiptTracker(store, connections, conversations)
    typing = TypingRelay(connections)
    return ConnectionHub(store, connections, conversations, membership, presence, pipeline, receipts, typing)
