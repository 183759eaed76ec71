from fastapi import WebSocket, WebSocketDisconnect
from typing import Callable, Dict, List, Optional, Set
import json
import time
import uuid
import logging

import config
from room_manager import (
    Room, RoomManager, ValidationError, UnknownRoom, UnknownPlayer, to_snapshot,
)

logger = logging.getLogger(__name__)


class SocketManager:
    """Websocket gateway: turns client frames into room operations and fans results out to rooms."""

    def __init__(self, room_manager: Optional[RoomManager] = None,
                 id_factory: Optional[Callable[[], str]] = None):
        self.room_manager = room_manager or RoomManager()
        self.room_manager.on_round_advanced = self._on_round_advanced
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.connections: Dict[str, WebSocket] = {}  # client_id -> ws
        self.subscribers: Dict[str, Set[str]] = {}  # room_id -> client_ids
        self.allowed_origins: List[str] = []
        # WS rate limiting: client_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}

    def reset(self):
        """Drop all rooms and connections (used on shutdown and by tests)."""
        self.room_manager.close()
        self.room_manager.rooms.clear()
        self.connections.clear()
        self.subscribers.clear()
        self.msg_timestamps.clear()

    async def connect(self, websocket: WebSocket):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        client_id = self.id_factory()
        self.connections[client_id] = websocket
        logger.info("Client %s connected", client_id)
        await websocket.send_json({"type": "session:ready", "userId": client_id})

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "room:error", "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "room:error", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    message = None
                if not isinstance(message, dict):
                    logger.warning("Malformed frame from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "room:error", "message": "Invalid message format"})
                    continue

                await self.handle_message(client_id, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            await self.disconnect(client_id)

    async def handle_message(self, client_id: str, message: dict):
        msg_type = message.get("type")

        if msg_type == "room:join":
            await self.handle_join(client_id, message.get("roomId"), message.get("username"))
        elif msg_type == "chat:send":
            await self.handle_chat(client_id, message.get("roomId"), message.get("content"))
        else:
            logger.debug("Ignoring unknown event %r from client %s", msg_type, client_id)

    async def handle_join(self, client_id: str, room_id, username):
        try:
            room = self.room_manager.join_room(room_id, client_id, username)
        except ValidationError as e:
            await self.send_to(client_id, {"type": "room:error", "message": str(e)})
            return

        async with room.lock:
            # Subscribe under the lock so no in-flight broadcast reaches us before our snapshot
            self.subscribers.setdefault(room.room_id, set()).add(client_id)
            snapshot = to_snapshot(room)
            await self.send_to(client_id, {"type": "room:snapshot", "snapshot": snapshot})
            await self.broadcast(room.room_id, {"type": "room:snapshot", "snapshot": snapshot})

    async def handle_chat(self, client_id: str, room_id, content):
        if not isinstance(content, str):
            return
        content = content[:config.MAX_CHAT_LENGTH]
        try:
            room = self.room_manager.get_room(room_id)
            async with room.lock:
                mark = len(room.messages)
                self.room_manager.submit_answer(room, client_id, content)
                # System messages from a win come before the chat message itself
                await self.broadcast_messages(room, room.messages[mark:])
        except (UnknownRoom, UnknownPlayer) as e:
            logger.debug("Dropped chat from client %s: %s %s", client_id, type(e).__name__, e)

    async def disconnect(self, client_id: str):
        self.connections.pop(client_id, None)
        self.msg_timestamps.pop(client_id, None)
        for room_id in list(self.subscribers):
            members = self.subscribers[room_id]
            members.discard(client_id)
            if not members:
                del self.subscribers[room_id]

        for room in self.room_manager.leave_all(client_id):
            async with room.lock:
                await self.broadcast(room.room_id, {"type": "room:snapshot", "snapshot": to_snapshot(room)})

    async def _on_round_advanced(self, room: Room, new_messages: List[dict]):
        # Runs inside the timer callback, which already holds room.lock
        await self.broadcast_messages(room, new_messages)

    async def broadcast_messages(self, room: Room, messages: List[dict]):
        """Send each message as chat:message, then the room snapshot."""
        for msg in messages:
            await self.broadcast(room.room_id, {"type": "chat:message", "message": msg})
        await self.broadcast(room.room_id, {"type": "room:snapshot", "snapshot": to_snapshot(room)})

    async def send_to(self, client_id: str, message: dict):
        ws = self.connections.get(client_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception:
                self._drop_connection(client_id)

    async def broadcast(self, room_id: str, message: dict):
        disconnected = []
        for client_id in list(self.subscribers.get(room_id, ())):
            ws = self.connections.get(client_id)
            if ws is None:
                disconnected.append(client_id)
                continue
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        for client_id in disconnected:
            self._drop_connection(client_id)

    def _drop_connection(self, client_id: str):
        """Stop sending to a dead connection. Its receive loop does the room cleanup."""
        self.connections.pop(client_id, None)
        for members in self.subscribers.values():
            members.discard(client_id)


socket_manager = SocketManager()
