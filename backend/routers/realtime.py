# routers/realtime.py — WebSocket gateway: presence, channel rooms, typing, call signalling
"""
Clients open ``/ws?workspace_id=...`` with the same credential the REST API
accepts (``token`` query parameter, Bearer value or cookie) and exchange JSON
events. Writes still go through the REST routes; those routes publish what
changed to the sockets listening on the affected channel or user.
"""
import json
import logging
from typing import Dict, Set, Optional, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from access import get_membership, get_channel_membership, require_workspace_member, require_workspace_admin
from auth import get_credential_strategy, get_current_user, CurrentUser
from database import get_db_session
from models import Channel, User, utcnow, iso

router = APIRouter(tags=["Realtime"])
logger = logging.getLogger("huddle.realtime")

USER_STATUSES = ("online", "away", "busy", "offline")
SIGNAL_TYPES = ("offer", "answer", "ice_candidate")

# Close codes in the application range
CLOSE_REPLACED = 4000
CLOSE_UNAUTHORIZED = 4001
CLOSE_FORBIDDEN = 4003


def _now() -> str:
    return iso(utcnow())


class ConnectionManager:
    """Live sockets per workspace, and the channel rooms each user listens to"""

    def __init__(self):
        self._connections: Dict[str, Dict[str, WebSocket]] = {}  # workspace_id -> {user_id -> ws}
        self._rooms: Dict[Tuple[str, str], Set[str]] = {}  # (workspace_id, channel_id) -> {user_ids}

    async def connect(self, websocket: WebSocket, user_id: str, workspace_id: str):
        await websocket.accept()
        # One socket per user and workspace; a newer one takes over
        conns = self._connections.setdefault(workspace_id, {})
        previous = conns.get(user_id)
        conns[user_id] = websocket
        if previous is not None and previous is not websocket:
            await self._close(previous, CLOSE_REPLACED, "Replaced by a newer connection")
        logger.info(f"WS connected: user={user_id[:8]} ws={workspace_id[:8]}")

    def disconnect(self, user_id: str, workspace_id: str, websocket: Optional[WebSocket] = None) -> bool:
        """Forget the user's socket; False when ``websocket`` was already replaced"""
        conns = self._connections.get(workspace_id)
        if not conns or user_id not in conns:
            return False
        if websocket is not None and conns[user_id] is not websocket:
            return False
        del conns[user_id]
        if not conns:
            del self._connections[workspace_id]
        for key in [k for k in self._rooms if k[0] == workspace_id]:
            self._rooms[key].discard(user_id)
            if not self._rooms[key]:
                del self._rooms[key]
        logger.info(f"WS disconnected: user={user_id[:8]} ws={workspace_id[:8]}")
        return True

    async def _close(self, websocket: WebSocket, code: int, reason: str):
        try:
            await websocket.close(code=code, reason=reason)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.info(f"Socket already closed: {e}")

    async def evict(self, user_id: str, workspace_id: str) -> bool:
        """Close the user's socket in a workspace they no longer belong to"""
        websocket = self._connections.get(workspace_id, {}).get(user_id)
        if websocket is None:
            return False
        self.disconnect(user_id, workspace_id, websocket)
        await self._close(websocket, CLOSE_FORBIDDEN, "No longer a member of this workspace")
        return True

    def is_online(self, user_id: str, workspace_id: str) -> bool:
        return user_id in self._connections.get(workspace_id, {})

    def join_room(self, workspace_id: str, channel_id: str, user_id: str):
        self._rooms.setdefault((workspace_id, channel_id), set()).add(user_id)

    def leave_room(self, workspace_id: str, channel_id: str, user_id: str):
        members = self._rooms.get((workspace_id, channel_id))
        if members is None:
            return
        members.discard(user_id)
        if not members:
            del self._rooms[(workspace_id, channel_id)]

    def in_room(self, workspace_id: str, channel_id: str, user_id: str) -> bool:
        return user_id in self._rooms.get((workspace_id, channel_id), set())

    async def _send(self, workspace_id: str, user_id: str, message: dict) -> bool:
        websocket = self._connections.get(workspace_id, {}).get(user_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.info(f"Dropping dead socket user={user_id[:8]}: {e}")
            self.disconnect(user_id, workspace_id, websocket)
            return False
        return True

    async def send_to_user(self, user_id: str, message: dict, workspace_id: Optional[str] = None) -> int:
        """Deliver to the user's socket in one workspace, or in every workspace they are connected to"""
        targets = [workspace_id] if workspace_id else [w for w, conns in self._connections.items() if user_id in conns]
        delivered = 0
        for target in targets:
            if await self._send(target, user_id, message):
                delivered += 1
        return delivered

    async def broadcast_to_workspace(self, workspace_id: str, message: dict, exclude_user: Optional[str] = None):
        for user_id in list(self._connections.get(workspace_id, {})):
            if user_id != exclude_user:
                await self._send(workspace_id, user_id, message)

    async def broadcast_to_room(self, workspace_id: str, channel_id: str, message: dict, exclude_user: Optional[str] = None):
        for user_id in list(self._rooms.get((workspace_id, channel_id), set())):
            if user_id != exclude_user:
                await self._send(workspace_id, user_id, message)

    def get_online_users(self, workspace_id: str) -> list:
        return sorted(self._connections.get(workspace_id, {}))

    def get_stats(self, workspace_id: str) -> dict:
        return {
            "connections": len(self._connections.get(workspace_id, {})),
            "rooms": sum(1 for key in self._rooms if key[0] == workspace_id),
        }


# Global connection manager
manager = ConnectionManager()


# ============================================================
# PUBLISHING (called by the REST routers after a commit)
# ============================================================

async def publish_to_channel(channel: Channel, event_type: str, payload: dict, exclude_user: Optional[str] = None):
    await manager.broadcast_to_room(channel.workspace_id, channel.id, {
        "type": event_type,
        "channel_id": channel.id,
        **payload,
        "timestamp": _now(),
    }, exclude_user=exclude_user)


async def publish_to_user(user_id: str, event_type: str, payload: dict, workspace_id: Optional[str] = None):
    await manager.send_to_user(user_id, {"type": event_type, **payload, "timestamp": _now()}, workspace_id)


def drop_from_channel(channel: Channel, user_id: str):
    """Stop delivering a channel's events to someone who left it"""
    manager.leave_room(channel.workspace_id, channel.id, user_id)


async def evict_from_workspace(user_id: str, workspace_id: str):
    if await manager.evict(user_id, workspace_id):
        await manager.broadcast_to_workspace(workspace_id, {
            "type": "user.offline", "user_id": user_id, "timestamp": _now(),
        })


# ============================================================
# CLIENT EVENTS
# ============================================================

class RealtimeError(Exception):
    """Rejected client event; reported back to the sender only."""


def _error(message: str) -> dict:
    return {"type": "error", "message": message, "timestamp": _now()}


def _field(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise RealtimeError(f"{name} is required")
    return value


def _joined_channel(workspace_id: str, user: CurrentUser, data: dict) -> str:
    channel_id = _field(data, "channel_id")
    if not manager.in_room(workspace_id, channel_id, user.id):
        raise RealtimeError("Join the channel first")
    return channel_id


async def _ping(db, user, workspace_id, data):
    return {"type": "pong", "timestamp": _now()}


async def _join_channel(db: AsyncSession, user: CurrentUser, workspace_id: str, data: dict):
    channel_id = _field(data, "channel_id")
    channel = await db.get(Channel, channel_id)
    if (
        channel is None
        or channel.workspace_id != workspace_id
        or await get_channel_membership(db, channel_id, user.id) is None
    ):
        raise RealtimeError("Access denied to this channel")
    manager.join_room(workspace_id, channel_id, user.id)
    await publish_to_channel(channel, "user.joined", {"user_id": user.id, "name": user.name}, exclude_user=user.id)
    return {"type": "channel.joined", "channel_id": channel_id}


async def _leave_channel(db, user: CurrentUser, workspace_id: str, data: dict):
    channel_id = _joined_channel(workspace_id, user, data)
    manager.leave_room(workspace_id, channel_id, user.id)
    await manager.broadcast_to_room(workspace_id, channel_id, {
        "type": "user.left", "channel_id": channel_id, "user_id": user.id, "timestamp": _now(),
    })
    return {"type": "channel.left", "channel_id": channel_id}


async def _typing(user: CurrentUser, workspace_id: str, data: dict, is_typing: bool):
    channel_id = _joined_channel(workspace_id, user, data)
    await manager.broadcast_to_room(workspace_id, channel_id, {
        "type": "typing",
        "channel_id": channel_id,
        "user_id": user.id,
        "name": user.name,
        "is_typing": is_typing,
        "timestamp": _now(),
    }, exclude_user=user.id)


async def _typing_start(db, user, workspace_id, data):
    await _typing(user, workspace_id, data, True)


async def _typing_stop(db, user, workspace_id, data):
    await _typing(user, workspace_id, data, False)


async def _call_presence(user: CurrentUser, workspace_id: str, data: dict, event_type: str):
    channel_id = _joined_channel(workspace_id, user, data)
    await manager.broadcast_to_room(workspace_id, channel_id, {
        "type": event_type, "channel_id": channel_id, "user_id": user.id, "name": user.name, "timestamp": _now(),
    }, exclude_user=user.id)
    return {"type": event_type, "channel_id": channel_id, "user_id": user.id}


async def _call_join(db, user, workspace_id, data):
    return await _call_presence(user, workspace_id, data, "call.joined")


async def _call_leave(db, user, workspace_id, data):
    return await _call_presence(user, workspace_id, data, "call.left")


async def _call_signal(db, user: CurrentUser, workspace_id: str, data: dict):
    """Relay a WebRTC offer, answer or ICE candidate to one peer"""
    target = _field(data, "to")
    signal_type = data.get("signal_type")
    if signal_type not in SIGNAL_TYPES:
        raise RealtimeError(f"signal_type must be one of {', '.join(SIGNAL_TYPES)}")
    delivered = await manager.send_to_user(target, {
        "type": "call.signal",
        "signal_type": signal_type,
        "from": user.id,
        "channel_id": data.get("channel_id"),
        "payload": data.get("payload", {}),
        "timestamp": _now(),
    }, workspace_id)
    if not delivered:
        raise RealtimeError("User is not connected")


async def _update_status(db: AsyncSession, user: CurrentUser, workspace_id: str, data: dict):
    status = data.get("status")
    if status not in USER_STATUSES:
        raise RealtimeError(f"status must be one of {', '.join(USER_STATUSES)}")
    record = await db.get(User, user.id)
    record.status = status
    await db.commit()
    await manager.broadcast_to_workspace(workspace_id, {
        "type": "user.status", "user_id": user.id, "status": status, "timestamp": _now(),
    }, exclude_user=user.id)
    return {"type": "status.updated", "status": status}


EVENT_HANDLERS = {
    "ping": _ping,
    "channel.join": _join_channel,
    "channel.leave": _leave_channel,
    "typing.start": _typing_start,
    "typing.stop": _typing_stop,
    "call.join": _call_join,
    "call.leave": _call_leave,
    "call.signal": _call_signal,
    "status.update": _update_status,
}


async def handle_event(db: AsyncSession, user: CurrentUser, workspace_id: str, data) -> Optional[dict]:
    """Apply one client event; returns the reply for the sender, if any"""
    if not isinstance(data, dict):
        return _error("Events must be JSON objects")
    handler = EVENT_HANDLERS.get(data.get("type"))
    if handler is None:
        return _error(f"Unknown event type: {data.get('type')}")
    try:
        return await handler(db, user, workspace_id, data)
    except RealtimeError as e:
        return _error(str(e))


# ============================================================
# ENDPOINTS
# ============================================================

@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    workspace_id: str = Query(...),
    token: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
):
    bearer = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token) if token else None
    try:
        user = await get_credential_strategy().resolve(websocket, bearer, db)
    except HTTPException as e:
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason=str(e.detail))
        return
    if await get_membership(db, user.id, workspace_id) is None:
        await websocket.close(code=CLOSE_FORBIDDEN, reason="Not a member of this workspace")
        return
    # Hand the pooled connection back while the socket idles
    await db.rollback()

    await manager.connect(websocket, user.id, workspace_id)
    await websocket.send_json({
        "type": "connected",
        "user_id": user.id,
        "workspace_id": workspace_id,
        "online_users": manager.get_online_users(workspace_id),
        "timestamp": _now(),
    })
    await manager.broadcast_to_workspace(workspace_id, {
        "type": "user.online", "user_id": user.id, "timestamp": _now(),
    }, exclude_user=user.id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                reply = _error("Invalid JSON")
            else:
                reply = await handle_event(db, user, workspace_id, data)
                await db.rollback()
            if reply:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        if manager.disconnect(user.id, workspace_id, websocket):
            await manager.broadcast_to_workspace(workspace_id, {
                "type": "user.offline", "user_id": user.id, "timestamp": _now(),
            })


@router.get("/api/v1/realtime/presence")
async def presence(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    return {"workspace_id": workspace_id, "online_users": manager.get_online_users(workspace_id)}


@router.get("/api/v1/realtime/stats")
async def realtime_stats(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, workspace_id)
    return {"workspace_id": workspace_id, **manager.get_stats(workspace_id)}
