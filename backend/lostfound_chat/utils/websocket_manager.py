import asyncio
import json
import uuid
from typing import Any, Dict, List, Optional, Set

import structlog
from fastapi import WebSocket

from lostfound_chat import config
from lostfound_chat.schemas.user import Principal


logger = structlog.get_logger(__name__)


class Connection:
    """One open websocket of an authenticated principal.

    Outbound events go through a bounded queue drained by a single writer task,
    so pushes never block and arrive in the order they were pushed. A client
    that lets the queue fill up is dropped.
    """

    def __init__(self, websocket: WebSocket, principal: Principal, queue_size: int = config.CONNECTION_QUEUE_SIZE) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.principal = principal
        self.rooms: Set[str] = set()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._pump())

    def push(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("connection_queue_full", connection_id=self.id, principal_id=self.principal.id)
            self.closed = True
            return False
        return True

    async def flush(self) -> None:
        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if not self.closed:
                    await self.websocket.send_text(json.dumps(event, default=str))
            except Exception:
                # peer went away; the receive loop notices and cleans up
                logger.info("connection_send_failed", connection_id=self.id)
                self.closed = True
            finally:
                self._queue.task_done()


class ConnectionManager:
    """Process-local routing table of rooms and personal channels.

    Nothing here is authoritative or persisted; it can be dropped and rebuilt
    from reconnects. Mutations contain no await, so each one is atomic on the
    event loop. Membership checks happen before ``join`` is called.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, Set[Connection]] = {}
        self.rooms: Dict[str, Dict[str, Set[Connection]]] = {}

    def register(self, conn: Connection) -> None:
        self.active_connections.setdefault(conn.principal.id, set()).add(conn)

    def unregister(self, conn: Connection) -> None:
        conns = self.active_connections.get(conn.principal.id)
        if conns is None:
            return
        conns.discard(conn)
        if not conns:
            del self.active_connections[conn.principal.id]

    def join(self, conversation_id: str, principal_id: str, conn: Connection) -> bool:
        """Adds the handle to the room; True when the principal just came online there."""
        room = self.rooms.setdefault(conversation_id, {})
        handles = room.get(principal_id)
        came_online = not handles
        if handles is None:
            handles = room[principal_id] = set()
        handles.add(conn)
        conn.rooms.add(conversation_id)
        return came_online

    def leave(self, conversation_id: str, principal_id: str, conn: Connection) -> bool:
        """Removes only this handle; True when it was the principal's last one in the room."""
        conn.rooms.discard(conversation_id)
        room = self.rooms.get(conversation_id)
        if not room or principal_id not in room:
            return False
        handles = room[principal_id]
        if conn not in handles:
            return False
        handles.discard(conn)
        if handles:
            return False
        del room[principal_id]
        if not room:
            del self.rooms[conversation_id]
        return True

    def leave_all(self, conn: Connection) -> List[str]:
        """Drops the handle from every room; returns rooms where its principal went offline."""
        went_offline = []
        for conversation_id in list(conn.rooms):
            if self.leave(conversation_id, conn.principal.id, conn):
                went_offline.append(conversation_id)
        return went_offline

    def connections_for(self, conversation_id: str) -> Set[Connection]:
        room = self.rooms.get(conversation_id, {})
        return {conn for handles in room.values() for conn in handles}

    def connections_of(self, principal_id: str) -> Set[Connection]:
        return set(self.active_connections.get(principal_id, set()))

    def is_online(self, conversation_id: str, principal_id: str) -> bool:
        return bool(self.rooms.get(conversation_id, {}).get(principal_id))

    def online_principals(self, conversation_id: str) -> List[str]:
        return sorted(self.rooms.get(conversation_id, {}))

    def is_joined(self, conversation_id: str, conn: Connection) -> bool:
        return conversation_id in conn.rooms
