"""
Presence tracking

Online/offline is persisted on the user document and announced to every
conversation the user belongs to, and to no other group.

By default any single disconnect takes the user offline, even when another
socket for the same user is still open. With ``reference_counted`` the user
stays online until the last socket closes.
"""

import logging
from collections import Counter
from typing import Any, Dict, List

from broadcast import Broadcaster
from events import presence_payload
from schemas import utcnow
from store import ChatStore

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, store: ChatStore, broadcaster: Broadcaster, reference_counted: bool = False) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.reference_counted = reference_counted
        self._open = Counter()

    async def connected(self, user_id: str) -> None:
        self._open[user_id] += 1
        if self.reference_counted and self._open[user_id] > 1:
            return
        await self.go_online(user_id)

    async def disconnected(self, user_id: str) -> None:
        if self._open[user_id] > 0:
            self._open[user_id] -= 1
        remaining = self._open[user_id]
        if remaining == 0:
            del self._open[user_id]
        if self.reference_counted and remaining > 0:
            return
        await self.go_offline(user_id)

    def open_connections(self, user_id: str) -> int:
        return self._open.get(user_id, 0)

    async def go_online(self, user_id: str) -> None:
        await self._transition(user_id, online=True)

    async def go_offline(self, user_id: str) -> None:
        await self._transition(user_id, online=False)

    async def offline_users(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        """User records among ``user_ids`` whose persisted flag is offline."""
        return [u for u in await self.store.get_users(user_ids) if not u.get("online")]

    async def _transition(self, user_id: str, online: bool) -> None:
        last_seen = utcnow()
        event = "user-online" if online else "user-offline"
        try:
            await self.store.set_presence(user_id, online, last_seen)
            conversations = await self.store.list_conversations(user_id)
            for conversation in conversations:
                await self.broadcaster.emit_to_conversation(
                    conversation["_id"], event, presence_payload(conversation["_id"], user_id, last_seen)
                )
        except Exception:
            # Presence is a side channel; it never fails connect or disconnect.
            logger.exception(f"Error updating user {'online' if online else 'offline'} status for {user_id}")
            return
        logger.info(f"User {user_id} is now {'online' if online else 'offline'}")
