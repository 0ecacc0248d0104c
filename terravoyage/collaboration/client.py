"""Per-trip collaboration client.

A ``CollaborationClient`` holds one logical connection to a trip room. It
joins the room when started and leaves it when closed, keeps the online
roster, turns inbound broadcasts into typed callbacks and exposes one emit
method per room message. Transport failures never raise out of the client:
they are recorded in ``connection_error`` and retried with exponential
backoff until ``max_reconnect_attempts`` consecutive failures, after which
only :meth:`CollaborationClient.retry_connection` connects again.

Example::

    channel = WebSocketChannel(settings.collaboration_server_url, user_id="u1")
    async with CollaborationClient("trip-42", channel, user_id="u1") as client:
        await client.emit_activity_update("act-1", {"name": "Museum"})
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from terravoyage.collaboration.channel import DuplexChannel
from terravoyage.collaboration.conflicts import ConflictEvent
from terravoyage.collaboration.events import (
    CollaborationEvent,
    CursorNotice,
    CursorPosition,
    EventType,
    RoomBroadcast,
    RoomMessage,
    TypingNotice,
    UserPresence,
    parse_event,
    utcnow,
)
from terravoyage.collaboration.exceptions import ChannelError
from terravoyage.collaboration.monitor import ConflictMonitor
from terravoyage.collaboration.presence import PresenceTracker
from terravoyage.collaboration.typing_indicator import TypingIndicator
from terravoyage.config import settings

logger = structlog.get_logger()

_roster_adapter = TypeAdapter(List[UserPresence])


class CollaborationClient:
    """Event bus client scoped to one trip room."""

    def __init__(
        self,
        trip_id: str,
        channel: DuplexChannel,
        user_id: str,
        user_name: Optional[str] = None,
        enabled: bool = True,
        on_collaboration_event: Optional[Callable[[CollaborationEvent], Any]] = None,
        on_user_presence_update: Optional[Callable[[UserPresence], Any]] = None,
        on_user_typing: Optional[Callable[[TypingNotice], Any]] = None,
        on_user_cursor: Optional[Callable[[CursorNotice], Any]] = None,
        on_conflict: Optional[Callable[[ConflictEvent], Any]] = None,
        monitor: Optional[ConflictMonitor] = None,
        max_reconnect_attempts: Optional[int] = None,
        reconnect_base_delay: Optional[float] = None,
        typing_debounce_ms: Optional[int] = None,
    ):
        self.trip_id = trip_id
        self.channel = channel
        self.user_id = user_id
        self.user_name = user_name
        self.enabled = enabled
        self.monitor = monitor

        self.on_collaboration_event = on_collaboration_event
        self.on_user_presence_update = on_user_presence_update
        self.on_user_typing = on_user_typing
        self.on_user_cursor = on_user_cursor
        self.on_conflict = on_conflict

        self.max_reconnect_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else settings.max_reconnect_attempts
        )
        self.reconnect_base_delay = (
            reconnect_base_delay
            if reconnect_base_delay is not None
            else settings.reconnect_base_delay_seconds
        )

        self.logger = logger.bind(component="collaboration_client", trip_id=trip_id)
        self.presence = PresenceTracker()
        self.typing = TypingIndicator(
            self.emit_typing_start,
            self.emit_typing_stop,
            debounce_ms=typing_debounce_ms or settings.typing_debounce_ms,
        )

        self._is_connected = False
        self._connection_error: Optional[str] = None
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = True

        self._handlers: Dict[str, Callable[[Any], Any]] = {
            RoomBroadcast.COLLABORATION_EVENT.value: self._on_collaboration_event,
            RoomBroadcast.USER_PRESENCE_UPDATED.value: self._on_presence_updated,
            RoomBroadcast.ONLINE_USERS.value: self._on_online_users,
            RoomBroadcast.USER_TYPING.value: self._on_user_typing,
            RoomBroadcast.USER_CURSOR.value: self._on_user_cursor,
            RoomBroadcast.ERROR.value: self._on_server_error,
        }

        channel.on_message(self._handle_message)
        channel.on_error(self._handle_channel_error)
        channel.on_close(self._handle_channel_close)

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def connection_error(self) -> Optional[str]:
        return self._connection_error

    @property
    def online_users(self) -> List[UserPresence]:
        return self.presence.online_users

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed connection attempts."""
        return self._reconnect_attempts

    def reconnect_delay(self, failures: int) -> float:
        """Backoff before the next attempt after ``failures`` consecutive failures."""
        return self.reconnect_base_delay * (2 ** max(failures - 1, 0))

    async def start(self) -> None:
        """Connect and join the trip room."""
        if not self.enabled:
            self.logger.debug("Collaboration disabled, not connecting")
            return

        self._closed = False
        if not await self._connect():
            self._schedule_reconnect()

    async def close(self) -> None:
        """Leave the trip room and close the connection."""
        self._closed = True
        await self._cancel_reconnect()
        self.typing.close()

        if self._is_connected:
            try:
                await self.channel.send(RoomMessage.LEAVE_TRIP.value, self.trip_id)
            except ChannelError as e:
                self.logger.debug("Could not send leave-trip", error=str(e))

        await self.channel.disconnect()
        self._is_connected = False
        self.presence.clear()
        self.logger.info("Left trip room")

    async def retry_connection(self) -> bool:
        """Reset the backoff counter and connect now."""
        if self._is_connected:
            return True

        await self._cancel_reconnect()
        self._closed = False
        self._reconnect_attempts = 0
        self.logger.info("Manual reconnect requested")

        connected = await self._connect()
        if not connected:
            self._schedule_reconnect()
        return connected

    async def __aenter__(self) -> "CollaborationClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Emitters

    async def emit_activity_update(self, activity_id: str, changes: Mapping[str, Any]) -> bool:
        """Announce changes to an activity."""
        data = {"activityId": activity_id, "changes": dict(changes)}
        sent = await self._emit(RoomMessage.ACTIVITY_UPDATED, data)
        if sent:
            await self._record_local_edit(EventType.ACTIVITY_UPDATED, data)
        return sent

    async def emit_trip_update(self, changes: Mapping[str, Any]) -> bool:
        """Announce changes to the trip."""
        data = {"changes": dict(changes)}
        sent = await self._emit(RoomMessage.TRIP_UPDATED, data)
        if sent:
            await self._record_local_edit(EventType.TRIP_UPDATED, data)
        return sent

    async def emit_comment_added(self, comment_id: str, comment: Mapping[str, Any]) -> bool:
        """Announce a comment persisted by the comment service."""
        return await self._emit(
            RoomMessage.COMMENT_ADDED, {"commentId": comment_id, "comment": dict(comment)}
        )

    async def emit_vote_added(self, activity_id: str, vote: Mapping[str, Any]) -> bool:
        """Announce a vote on an activity."""
        return await self._emit(
            RoomMessage.VOTE_ADDED, {"activityId": activity_id, "vote": dict(vote)}
        )

    async def emit_typing_start(self, location: Optional[str] = None) -> bool:
        data = {"location": location} if location else {}
        return await self._emit(RoomMessage.TYPING_START, data)

    async def emit_typing_stop(self) -> bool:
        return await self._emit(RoomMessage.TYPING_STOP, {})

    async def emit_cursor_move(
        self,
        position: Union[CursorPosition, Mapping[str, float]],
        element: Optional[str] = None,
    ) -> bool:
        """Share the local cursor position."""
        position = CursorPosition.model_validate(position)
        data: Dict[str, Any] = {"position": position.to_wire()}
        if element:
            data["element"] = element
        return await self._emit(RoomMessage.CURSOR_MOVE, data)

    # Connection management

    async def _connect(self) -> bool:
        try:
            await self.channel.connect()
            self._connection_error = None
            await self.channel.send(RoomMessage.JOIN_TRIP.value, self.trip_id)
        except ChannelError as e:
            # The join may fail after the channel opened
            await self.channel.disconnect()
            self._is_connected = False
            self._connection_error = str(e)
            self._reconnect_attempts += 1
            self.logger.warning(
                "Failed to connect to collaboration server",
                error=str(e),
                attempts=self._reconnect_attempts,
            )
            return False

        self._is_connected = True
        self._reconnect_attempts = 0
        self.logger.info("Joined trip room", user_id=self.user_id)
        return True

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self.logger.warning(
                "Reconnect attempts exhausted",
                attempts=self._reconnect_attempts,
            )
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closed and self._reconnect_attempts < self.max_reconnect_attempts:
            delay = self.reconnect_delay(self._reconnect_attempts)
            self.logger.info(
                "Scheduling reconnect",
                attempt=self._reconnect_attempts + 1,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)
            if self._closed:
                return
            if await self._connect():
                return

        if not self._closed:
            self.logger.warning(
                "Reconnect attempts exhausted",
                attempts=self._reconnect_attempts,
            )

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _handle_channel_error(self, error: Exception) -> None:
        self._is_connected = False
        self._connection_error = str(error)
        self._reconnect_attempts += 1
        self.presence.clear()
        self.typing.close()
        self.logger.warning("Collaboration connection error", error=str(error))
        self._schedule_reconnect()

    async def _handle_channel_close(self) -> None:
        self._is_connected = False
        self.presence.clear()
        self.typing.close()
        self.logger.info("Collaboration server closed the connection")

    # Inbound broadcasts

    async def _handle_message(self, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            self.logger.debug("Ignoring unknown broadcast", room_message=event)
            return
        await handler(data)

    async def _on_collaboration_event(self, data: Any) -> None:
        event = parse_event(data)
        if event is None:
            return
        if event.is_edit:
            await self._record_edit(event)
        await self._notify(self.on_collaboration_event, event)

    async def _on_presence_updated(self, data: Any) -> None:
        try:
            presence = UserPresence.model_validate(data)
        except PydanticValidationError as e:
            self.logger.warning("Ignoring malformed presence update", error=str(e))
            return
        self.presence.apply_presence(presence)
        await self._notify(self.on_user_presence_update, presence)

    async def _on_online_users(self, data: Any) -> None:
        try:
            users = _roster_adapter.validate_python(data)
        except PydanticValidationError as e:
            self.logger.warning("Ignoring malformed roster", error=str(e))
            return
        self.presence.apply_roster(users)

    async def _on_user_typing(self, data: Any) -> None:
        try:
            notice = TypingNotice.model_validate(data)
        except PydanticValidationError as e:
            self.logger.warning("Ignoring malformed typing notice", error=str(e))
            return
        await self._notify(self.on_user_typing, notice)

    async def _on_user_cursor(self, data: Any) -> None:
        try:
            notice = CursorNotice.model_validate(data)
        except PydanticValidationError as e:
            self.logger.warning("Ignoring malformed cursor notice", error=str(e))
            return
        await self._notify(self.on_user_cursor, notice)

    async def _on_server_error(self, data: Any) -> None:
        message = data.get("message") if isinstance(data, dict) else None
        self._connection_error = message or "Collaboration server error"
        self.logger.warning("Collaboration server reported an error", message=message)

    # Private helper methods

    async def _emit(self, message: RoomMessage, data: Dict[str, Any]) -> bool:
        if not self._is_connected:
            self.logger.debug("Dropping emit while disconnected", message=message.value)
            return False

        try:
            await self.channel.send(message.value, {"tripId": self.trip_id, **data})
        except ChannelError as e:
            self.logger.warning("Failed to emit", message=message.value, error=str(e))
            return False
        return True

    async def _record_local_edit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.monitor is None:
            return
        event = CollaborationEvent(
            type=event_type,
            trip_id=self.trip_id,
            user_id=self.user_id,
            user_name=self.user_name,
            timestamp=utcnow(),
            data=data,
        )
        await self._record_edit(event)

    async def _record_edit(self, event: CollaborationEvent) -> None:
        if self.monitor is None:
            return
        for conflict in self.monitor.record(event):
            await self._notify(self.on_conflict, conflict)

    async def _notify(self, callback: Optional[Callable[[Any], Any]], value: Any) -> None:
        if callback is None:
            return
        result = callback(value)
        if inspect.isawaitable(result):
            await result
