"""Duplex channels between a collaboration client and a trip room server."""

import asyncio
import inspect
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional
from urllib.parse import urlencode

import structlog
from websockets import ConnectionClosed, ConnectionClosedError, WebSocketException, connect

from terravoyage.collaboration.events import decode_frame, encode_frame
from terravoyage.collaboration.exceptions import (
    ChannelClosedError,
    ChannelError,
    InvalidEventError,
)
from terravoyage.collaboration.hub import CollaborationHub, HubConnection

logger = structlog.get_logger()

MessageHandler = Callable[[str, Any], Any]
ErrorHandler = Callable[[Exception], Any]
CloseHandler = Callable[[], Any]


class DuplexChannel(ABC):
    """Bidirectional message channel with named events.

    Handlers may be plain functions or coroutine functions. ``on_close``
    handlers only run when the remote side ends the connection; a local
    :meth:`disconnect` is silent.
    """

    def __init__(self):
        self.logger = logger.bind(component=type(self).__name__)
        self._message_handlers: List[MessageHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._close_handlers: List[CloseHandler] = []

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether messages can be sent."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel, raising ChannelError on failure."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the channel."""
        pass

    @abstractmethod
    async def send(self, event: str, data: Any = None) -> None:
        """Send a named message, raising ChannelClosedError when closed."""
        pass

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def _dispatch_message(self, event: str, data: Any) -> None:
        for handler in list(self._message_handlers):
            await self._call(handler, event, data)

    async def _dispatch_error(self, error: Exception) -> None:
        for handler in list(self._error_handlers):
            await self._call(handler, error)

    async def _dispatch_close(self) -> None:
        for handler in list(self._close_handlers):
            await self._call(handler)

    async def _call(self, handler: Callable[..., Any], *args: Any) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(
                "Channel handler failed",
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(e),
            )


class InMemoryChannel(DuplexChannel):
    """Channel wired directly to an in-process :class:`CollaborationHub`.

    Frames are JSON encoded in both directions so payloads behave exactly
    as they would over a socket. ``fail_next_connects`` and :meth:`drop`
    simulate an unreachable server and a lost connection.
    """

    def __init__(
        self,
        hub: CollaborationHub,
        user_id: str,
        user_name: Optional[str] = None,
        user_image: Optional[str] = None,
    ):
        super().__init__()
        self.hub = hub
        self.user_id = user_id
        self.user_name = user_name
        self.user_image = user_image
        self.connection_id: Optional[str] = None
        self.fail_next_connects = 0
        self.connect_attempts = 0
        self.sent: List[tuple] = []

    @property
    def is_open(self) -> bool:
        return self.connection_id is not None

    async def connect(self) -> None:
        self.connect_attempts += 1
        if self.fail_next_connects > 0:
            self.fail_next_connects -= 1
            raise ChannelError("Collaboration server unreachable")

        self.connection_id = f"mem_{uuid.uuid4().hex[:12]}"
        await self.hub.connect(
            HubConnection(
                connection_id=self.connection_id,
                user_id=self.user_id,
                send=self._receive,
                user_name=self.user_name,
                user_image=self.user_image,
            )
        )

    async def disconnect(self) -> None:
        connection_id, self.connection_id = self.connection_id, None
        if connection_id is not None:
            await self.hub.disconnect(connection_id)

    async def send(self, event: str, data: Any = None) -> None:
        if not self.is_open:
            raise ChannelClosedError(event)
        event, data = decode_frame(encode_frame(event, data))
        self.sent.append((event, data))
        await self.hub.handle(self.connection_id, event, data)

    async def drop(self, error: Optional[Exception] = None) -> None:
        """Lose the connection from the server side.

        With ``error`` the loss is reported to error handlers, otherwise it
        is reported as a clean remote close.
        """
        await self.disconnect()
        if error is not None:
            await self._dispatch_error(error)
        else:
            await self._dispatch_close()

    async def _receive(self, event: str, data: Any) -> None:
        event, data = decode_frame(encode_frame(event, data))
        await self._dispatch_message(event, data)


class WebSocketChannel(DuplexChannel):
    """Channel over a websocket carrying ``{"event", "data"}`` JSON frames."""

    def __init__(
        self,
        url: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_image: Optional[str] = None,
        open_timeout: float = 10.0,
    ):
        super().__init__()
        self.url = url
        self.user_id = user_id
        self.user_name = user_name
        self.user_image = user_image
        self.open_timeout = open_timeout
        self._websocket = None
        self._reader: Optional[asyncio.Task] = None
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def uri(self) -> str:
        """Server URL with the identity query string."""
        params = {
            "userId": self.user_id,
            "userName": self.user_name,
            "userImage": self.user_image,
        }
        query = urlencode({k: v for k, v in params.items() if v})
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{query}"

    async def connect(self) -> None:
        try:
            self._websocket = await connect(self.uri, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.warning("Failed to open websocket", url=self.url, error=str(e))
            raise ChannelError(f"Failed to connect to {self.url}: {e}") from e

        self._open = True
        self._closing = False
        self._reader = asyncio.create_task(self._read_messages())
        self.logger.info("Websocket opened", url=self.url)

    async def disconnect(self) -> None:
        self._closing = True
        self._open = False
        if self._websocket is not None:
            await self._websocket.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            await reader

    async def send(self, event: str, data: Any = None) -> None:
        if not self._open:
            raise ChannelClosedError(event)
        try:
            await self._websocket.send(encode_frame(event, data))
        except ConnectionClosed as e:
            self._open = False
            raise ChannelClosedError(event) from e

    async def _read_messages(self) -> None:
        try:
            async for message in self._websocket:
                try:
                    event, data = decode_frame(message)
                except InvalidEventError as e:
                    self.logger.warning("Ignoring malformed frame", reason=e.details.get("reason"))
                    continue
                await self._dispatch_message(event, data)
        except ConnectionClosedError as e:
            self._open = False
            if not self._closing:
                self.logger.warning("Websocket connection lost", error=str(e))
                await self._dispatch_error(ChannelError(f"Connection lost: {e}"))
            return

        self._open = False
        if not self._closing:
            self.logger.info("Websocket closed by server")
            await self._dispatch_close()
