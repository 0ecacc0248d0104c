"""Server side of the trip room protocol.

The hub tracks which connections sit in which trip room, keeps per-user
presence and rebroadcasts client messages to the other members of a room.
It is transport agnostic: each connection only supplies an async ``send``
callable, so the same hub serves websocket clients and in-process channels.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from terravoyage.collaboration.events import (
    CollaborationEvent,
    CursorNotice,
    EventType,
    RoomBroadcast,
    RoomMessage,
    TypingNotice,
    UserPresence,
    room_name,
    utcnow,
)
from terravoyage.collaboration.exceptions import InvalidEventError

logger = structlog.get_logger()

ConnectionSender = Callable[[str, Any], Awaitable[None]]
AccessChecker = Callable[[str, str], Union[bool, Awaitable[bool]]]

_EDIT_MESSAGES: Dict[str, EventType] = {
    RoomMessage.ACTIVITY_UPDATED.value: EventType.ACTIVITY_UPDATED,
    RoomMessage.TRIP_UPDATED.value: EventType.TRIP_UPDATED,
    RoomMessage.COMMENT_ADDED.value: EventType.COMMENT_ADDED,
    RoomMessage.VOTE_ADDED.value: EventType.VOTE_ADDED,
}


@dataclass
class HubConnection:
    """One client connection attached to the hub."""
    connection_id: str
    user_id: str
    send: ConnectionSender
    user_name: Optional[str] = None
    user_image: Optional[str] = None
    trips: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)


def _trip_id_from(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        trip_id = data.get("tripId")
        return str(trip_id) if trip_id else None
    return None


class CollaborationHub:
    """Room membership, presence and broadcast for trip collaboration."""

    def __init__(self, access_checker: Optional[AccessChecker] = None):
        self.logger = logger.bind(component="collaboration_hub")
        self._access_checker = access_checker
        self._connections: Dict[str, HubConnection] = {}
        self._rooms: Dict[str, Set[str]] = {}  # trip_id -> connection ids
        self._presence: Dict[str, UserPresence] = {}

    @property
    def active_trips(self) -> List[str]:
        """Trips with at least one connection in their room."""
        return list(self._rooms.keys())

    @property
    def connection_count(self) -> int:
        """Number of attached connections."""
        return len(self._connections)

    async def connect(self, connection: HubConnection) -> None:
        """Attach a connection."""
        self._connections[connection.connection_id] = connection
        self.logger.info(
            "Client connected",
            connection_id=connection.connection_id,
            user_id=connection.user_id,
        )

    async def disconnect(self, connection_id: str) -> None:
        """Detach a connection, leaving every room it was in."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        for trip_id in list(connection.trips):
            await self._leave_room(connection, trip_id)

        # Presence is only kept for users with a live connection
        if not any(c.user_id == connection.user_id for c in self._connections.values()):
            self._presence.pop(connection.user_id, None)

        self.logger.info(
            "Client disconnected",
            connection_id=connection_id,
            user_id=connection.user_id,
        )

    async def handle(self, connection_id: str, event: str, data: Any) -> None:
        """Handle one message received from a connection."""
        connection = self._connections.get(connection_id)
        if connection is None:
            self.logger.warning("Message from unknown connection", connection_id=connection_id)
            return

        if event == RoomMessage.JOIN_TRIP.value:
            await self._handle_join_trip(connection, data)
        elif event == RoomMessage.LEAVE_TRIP.value:
            await self._handle_leave_trip(connection, data)
        elif event in _EDIT_MESSAGES:
            await self._handle_edit(connection, _EDIT_MESSAGES[event], data)
        elif event in (RoomMessage.TYPING_START.value, RoomMessage.TYPING_STOP.value):
            await self._handle_typing(connection, event == RoomMessage.TYPING_START.value, data)
        elif event == RoomMessage.CURSOR_MOVE.value:
            await self._handle_cursor_move(connection, data)
        else:
            self.logger.warning("Unknown room message", room_message=event, connection_id=connection_id)
            await self._send_error(connection, f"Unknown event: {event}")

    async def emit_to_trip(
        self,
        trip_id: str,
        event: str,
        data: Any,
        exclude_connection: Optional[str] = None,
    ) -> int:
        """Send a message to every connection in a trip room."""
        connection_ids = [
            cid for cid in self._rooms.get(trip_id, set()) if cid != exclude_connection
        ]
        return await self._deliver(connection_ids, event, data)

    def get_online_users(self, trip_id: str) -> List[UserPresence]:
        """Online presence for users in a trip room."""
        users: List[UserPresence] = []
        for user_id in self._room_users(trip_id):
            presence = self._presence.get(user_id)
            if presence is not None and presence.is_online:
                users.append(presence)
        return users

    def is_user_online(self, user_id: str) -> bool:
        """Check if a user is online anywhere."""
        presence = self._presence.get(user_id)
        return presence is not None and presence.is_online

    def get_user_presence(self, user_id: str) -> Optional[UserPresence]:
        """Get the presence of a connected user."""
        return self._presence.get(user_id)

    def cleanup(self) -> None:
        """Forget all rooms, presence and connections."""
        self._connections.clear()
        self._rooms.clear()
        self._presence.clear()

    # Message handlers

    async def _handle_join_trip(self, connection: HubConnection, data: Any) -> None:
        trip_id = _trip_id_from(data)
        if trip_id is None:
            await self._send_error(connection, "Missing trip id")
            return

        if not await self._has_access(trip_id, connection.user_id):
            self.logger.warning(
                "Access denied to trip",
                trip_id=trip_id,
                user_id=connection.user_id,
            )
            await self._send_error(connection, "Access denied to trip")
            return

        self._rooms.setdefault(trip_id, set()).add(connection.connection_id)
        connection.trips.add(trip_id)

        presence = UserPresence(
            user_id=connection.user_id,
            user_name=connection.user_name,
            user_image=connection.user_image,
            is_online=True,
            last_seen=utcnow(),
            current_page=room_name(trip_id),
        )
        self._presence[connection.user_id] = presence

        await self.emit_to_trip(
            trip_id,
            RoomBroadcast.USER_PRESENCE_UPDATED.value,
            presence.to_wire(),
            exclude_connection=connection.connection_id,
        )
        await self._deliver(
            [connection.connection_id],
            RoomBroadcast.ONLINE_USERS.value,
            [user.to_wire() for user in self.get_online_users(trip_id)],
        )
        self.logger.info("User joined trip", trip_id=trip_id, user_id=connection.user_id)

    async def _handle_leave_trip(self, connection: HubConnection, data: Any) -> None:
        trip_id = _trip_id_from(data)
        if trip_id is None or trip_id not in connection.trips:
            return
        await self._leave_room(connection, trip_id)
        self.logger.info("User left trip", trip_id=trip_id, user_id=connection.user_id)

    async def _handle_edit(
        self,
        connection: HubConnection,
        event_type: EventType,
        data: Any,
    ) -> None:
        trip_id = await self._require_membership(connection, data)
        if trip_id is None:
            return

        payload = {k: v for k, v in data.items() if k != "tripId"}
        try:
            event = CollaborationEvent.from_wire(
                {
                    "type": event_type.value,
                    "userId": connection.user_id,
                    "userName": connection.user_name,
                    "tripId": trip_id,
                    "data": payload,
                    "timestamp": utcnow(),
                }
            )
        except InvalidEventError as e:
            self.logger.warning(
                "Rejected invalid update",
                event_type=event_type.value,
                reason=e.details.get("reason"),
            )
            await self._send_error(connection, f"Invalid {event_type.value} payload")
            return

        await self.emit_to_trip(
            trip_id,
            RoomBroadcast.COLLABORATION_EVENT.value,
            event.to_wire(),
            exclude_connection=connection.connection_id,
        )

    async def _handle_typing(self, connection: HubConnection, is_typing: bool, data: Any) -> None:
        trip_id = await self._require_membership(connection, data)
        if trip_id is None:
            return

        notice = TypingNotice(
            user_id=connection.user_id,
            user_name=connection.user_name,
            is_typing=is_typing,
            location=data.get("location") if is_typing else None,
        )
        await self.emit_to_trip(
            trip_id,
            RoomBroadcast.USER_TYPING.value,
            notice.to_wire(),
            exclude_connection=connection.connection_id,
        )

    async def _handle_cursor_move(self, connection: HubConnection, data: Any) -> None:
        trip_id = await self._require_membership(connection, data)
        if trip_id is None:
            return

        try:
            notice = CursorNotice(
                user_id=connection.user_id,
                user_name=connection.user_name,
                position=data.get("position"),
                element=data.get("element"),
            )
        except PydanticValidationError:
            await self._send_error(connection, "Invalid cursor position")
            return

        await self.emit_to_trip(
            trip_id,
            RoomBroadcast.USER_CURSOR.value,
            notice.to_wire(),
            exclude_connection=connection.connection_id,
        )

    # Private helper methods

    async def _leave_room(self, connection: HubConnection, trip_id: str) -> None:
        room = self._rooms.get(trip_id)
        connection.trips.discard(trip_id)
        if room is None:
            return

        room.discard(connection.connection_id)
        if not room:
            del self._rooms[trip_id]

        # The user may still be in the room from another tab
        if connection.user_id in self._room_users(trip_id):
            return

        presence = self._presence.get(connection.user_id)
        if presence is None:
            return
        presence.is_online = False
        presence.last_seen = utcnow()
        presence.current_page = None

        await self.emit_to_trip(
            trip_id,
            RoomBroadcast.USER_PRESENCE_UPDATED.value,
            presence.to_wire(),
        )

    def _room_users(self, trip_id: str) -> List[str]:
        users: List[str] = []
        for cid in self._rooms.get(trip_id, set()):
            connection = self._connections.get(cid)
            if connection is not None and connection.user_id not in users:
                users.append(connection.user_id)
        return users

    async def _require_membership(self, connection: HubConnection, data: Any) -> Optional[str]:
        """Trip id of a room payload, or None after reporting why it is unusable."""
        if not isinstance(data, dict):
            await self._send_error(connection, "Payload must be an object")
            return None
        trip_id = _trip_id_from(data)
        if trip_id is None:
            await self._send_error(connection, "Missing trip id")
            return None
        if trip_id not in connection.trips:
            await self._send_error(connection, "Join the trip before sending updates")
            return None
        return trip_id

    async def _has_access(self, trip_id: str, user_id: str) -> bool:
        if self._access_checker is None:
            return True
        allowed = self._access_checker(trip_id, user_id)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        return bool(allowed)

    async def _send_error(self, connection: HubConnection, message: str) -> None:
        await self._deliver([connection.connection_id], RoomBroadcast.ERROR.value, {"message": message})

    async def _deliver(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        delivered = 0
        broken: List[str] = []

        for cid in connection_ids:
            connection = self._connections.get(cid)
            if connection is None:
                continue
            try:
                await connection.send(event, data)
                delivered += 1
            except Exception as e:
                self.logger.warning(
                    "Failed to deliver message",
                    connection_id=cid,
                    room_message=event,
                    error=str(e),
                )
                broken.append(cid)

        for cid in broken:
            await self.disconnect(cid)

        return delivered
