"""Action Cable consumer used as the push source for conversation updates."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from styleslot.services.exceptions import NetworkError

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]

CONVERSATION_CHANNEL = "ConversationChannel"


class PushSubscription(Protocol):
    @property
    def active(self) -> bool: ...

    async def close(self) -> None: ...


class PushChannel(Protocol):
    async def subscribe(
        self, conversation_id: str, on_event: EventCallback
    ) -> PushSubscription: ...


@dataclass
class CableFrame:
    kind: str
    identifier: Optional[str] = None
    message: Any = None


def conversation_identifier(conversation_id: str, channel: str = CONVERSATION_CHANNEL) -> str:
    return json.dumps({"channel": channel, "conversation_id": str(conversation_id)})


def parse_cable_frame(raw: str | bytes) -> CableFrame:
    """Classify one Action Cable frame.

    Control frames carry a ``type`` (welcome, ping, confirm_subscription,
    reject_subscription, disconnect); broadcasts carry an ``identifier`` and a
    ``message``. Anything unreadable is reported as ``unknown``.
    """

    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return CableFrame(kind="unknown")
    if not isinstance(data, dict):
        return CableFrame(kind="unknown")

    frame_type = data.get("type")
    identifier = data.get("identifier")
    if frame_type:
        return CableFrame(kind=str(frame_type), identifier=identifier, message=data.get("message"))
    if identifier is not None and "message" in data:
        return CableFrame(kind="message", identifier=identifier, message=data["message"])
    return CableFrame(kind="unknown", identifier=identifier)


async def _dispatch(callback: EventCallback, event: Dict[str, Any]) -> None:
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class CableSubscription:
    """One websocket connection subscribed to a single conversation stream."""

    def __init__(self, connection, identifier: str, on_event: EventCallback) -> None:
        self._connection = connection
        self._identifier = identifier
        self._on_event = on_event
        self._reader: Optional[asyncio.Task] = None
        self.confirmed = False
        self.closed = False
        self.ended = False

    @property
    def active(self) -> bool:
        """False once the stream has stopped delivering events."""

        return not (self.closed or self.ended)

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def _deliver(self, event: Dict[str, Any]) -> None:
        try:
            await _dispatch(self._on_event, event)
        except Exception:
            logger.exception("Push event handler failed for %s", self._identifier)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._connection:
                frame = parse_cable_frame(raw)
                if frame.kind == "confirm_subscription" and frame.identifier == self._identifier:
                    self.confirmed = True
                    logger.info("Push subscription confirmed for %s", self._identifier)
                elif frame.kind == "reject_subscription" and frame.identifier == self._identifier:
                    logger.warning("Push subscription rejected for %s", self._identifier)
                    break
                elif frame.kind == "disconnect":
                    logger.info("Cable server requested disconnect: %s", frame.message)
                    break
                elif frame.kind == "message" and frame.identifier == self._identifier:
                    if isinstance(frame.message, dict):
                        await self._deliver(frame.message)
        except ConnectionClosed as exc:
            logger.info("Cable connection closed: %s", exc)
        finally:
            self.ended = True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        try:
            await self._connection.send(
                json.dumps({"command": "unsubscribe", "identifier": self._identifier})
            )
        except WebSocketException:
            logger.debug("Cable connection already gone while unsubscribing")
        await self._connection.close()


class ActionCableChannel:
    """Opens Action Cable subscriptions authenticated with the viewer's token."""

    def __init__(
        self,
        url: str,
        token: str | None,
        *,
        channel: str = CONVERSATION_CHANNEL,
        open_timeout: float = 10.0,
        connect=None,
    ) -> None:
        self._url = url
        self._token = token
        self._channel = channel
        self._open_timeout = open_timeout
        self._connect = connect or websockets.connect

    def _connection_url(self) -> str:
        if not self._token:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode({'token': self._token})}"

    async def subscribe(
        self, conversation_id: str, on_event: EventCallback
    ) -> CableSubscription:
        if not self._token:
            raise NetworkError("No token available for the cable connection")
        identifier = conversation_identifier(conversation_id, self._channel)
        try:
            connection = await self._connect(
                self._connection_url(), open_timeout=self._open_timeout
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("Unable to connect to cable at %s: %s", self._url, exc)
            raise NetworkError("Unable to connect to cable", cause=exc) from exc

        try:
            await connection.send(json.dumps({"command": "subscribe", "identifier": identifier}))
        except (OSError, WebSocketException) as exc:
            logger.warning("Unable to subscribe to %s: %s", identifier, exc)
            await connection.close()
            raise NetworkError("Unable to subscribe to conversation", cause=exc) from exc

        subscription = CableSubscription(connection, identifier, on_event)
        subscription.start()
        logger.info("Subscribed to conversation %s over cable", conversation_id)
        return subscription
