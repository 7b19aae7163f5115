"""
Live connection registry and group fan-out.

``ConnectionManager`` is the single hub per process. It is created once at
startup and handed to every component that needs to push events, through the
``Broadcaster`` protocol, instead of being reached as a module global.

Groups are plain strings: a conversation id, or ``user:<id>`` for the private
per-user group every connection joins.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from events import frame

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
AUTHENTICATED = "authenticated"
ACTIVE = "active"
CLOSED = "closed"


def user_group(user_id: str) -> str:
    return f"user:{user_id}"


class Connection:
    """One open socket and the user it authenticated as."""

    def __init__(self, websocket: WebSocket, user: Optional[Dict[str, Any]] = None) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user = user
        self.state = CONNECTING
        self.groups: Set[str] = set()

    @property
    def user_id(self) -> str:
        return str(self.user["_id"])

    @property
    def user_name(self) -> str:
        return self.user.get("name") or ""


class Broadcaster(Protocol):
    async def emit_to_conversation(
        self, conversation_id: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None
    ) -> None: ...

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None: ...

    async def emit_to_connection(self, connection_id: str, event: str, data: Dict[str, Any]) -> None: ...


class ConnectionManager:
    def __init__(self) -> None:
        self.active: Dict[str, Connection] = {}
        self.groups: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> None:
        self.active[connection.id] = connection

    def disconnect(self, connection: Connection) -> None:
        self.leave_all(connection)
        self.active.pop(connection.id, None)

    def join(self, connection: Connection, group: str) -> bool:
        """Subscribe a connection to a group. Returns False if it already was."""
        if group in connection.groups:
            return False
        connection.groups.add(group)
        self.groups.setdefault(group, set()).add(connection.id)
        return True

    def leave(self, connection: Connection, group: str) -> None:
        connection.groups.discard(group)
        members = self.groups.get(group)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.groups[group]

    def leave_all(self, connection: Connection) -> None:
        for group in list(connection.groups):
            self.leave(connection, group)

    def is_member(self, connection: Connection, group: str) -> bool:
        return connection.id in self.groups.get(group, ())

    def members(self, group: str) -> List[Connection]:
        return [self.active[cid] for cid in list(self.groups.get(group, ())) if cid in self.active]

    def connections_for(self, user_ids: Iterable[str]) -> List[Connection]:
        wanted = {str(u) for u in user_ids}
        return [c for c in list(self.active.values()) if c.user is not None and c.user_id in wanted]

    async def emit_to_conversation(
        self, conversation_id: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None
    ) -> None:
        await self._broadcast(self.members(str(conversation_id)), event, data, exclude)

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        await self._broadcast(self.members(user_group(user_id)), event, data)

    async def emit_to_connection(self, connection_id: str, event: str, data: Dict[str, Any]) -> None:
        connection = self.active.get(connection_id)
        if connection is not None:
            await self._broadcast([connection], event, data)

    async def _broadcast(
        self, targets: List[Connection], event: str, data: Dict[str, Any], exclude: Optional[str] = None
    ) -> None:
        message = jsonable_encoder(frame(event, data))
        await asyncio.gather(*(self._send(c, message) for c in targets if c.id != exclude))

    async def _send(self, connection: Connection, message: Dict[str, Any]) -> None:
        try:
            await connection.websocket.send_json(message)
        except Exception as exc:
            # A dead socket never fails the sender; its own receive loop cleans up.
            logger.warning(f"Dropping connection {connection.id} after send failure: {exc}")
            self.disconnect(connection)
