"""Conversation reads, message sends and the dual-channel sync session.

A :class:`ConversationSession` keeps one thread current from two sources: a
fixed-interval poll of the full conversation and, where available, a push
subscription delivering single ``new_message`` events. Both feed the same
:class:`MessageLog`, whose merge is keyed by message id, so the two channels
can overlap or arrive in any order and still converge on the same list.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from styleslot.clients.api import BackendClient
from styleslot.clients.cable import PushChannel, PushSubscription
from styleslot.schemas.conversation import (
    Conversation,
    ConversationListResponse,
    Message,
    Participant,
    SendMessageRequest,
)
from styleslot.schemas.viewer import Viewer
from styleslot.services.exceptions import ServiceError
from styleslot.services.mock_store import ConversationRepository, get_mock_store

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0

UpdateListener = Callable[[List[Message]], None]


def _order_key(message: Message) -> tuple[datetime, str]:
    created_at = message.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.astimezone(timezone.utc), message.id


class MessageLog:
    """Deduplicated, ascending-by-``created_at`` list of a thread's messages.

    The first copy of an id wins; later copies (from either source) are
    ignored. Display layers that want newest-first reverse it themselves.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._by_id: Dict[str, Message] = {}
        self._ordered: List[Message] = []
        self.merge(messages)

    def merge(self, messages: Iterable[Message]) -> List[Message]:
        """Merge ``messages`` and return the ones that were not already present."""

        added: List[Message] = []
        for message in messages:
            if message.id in self._by_id:
                continue
            self._by_id[message.id] = message
            added.append(message)
        if added:
            self._ordered = sorted(self._by_id.values(), key=_order_key)
            added.sort(key=_order_key)
        return added

    @property
    def messages(self) -> List[Message]:
        return list(self._ordered)

    @property
    def ids(self) -> List[str]:
        return [message.id for message in self._ordered]

    @property
    def latest(self) -> Optional[Message]:
        return self._ordered[-1] if self._ordered else None

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id


def _conversation_from(data: Dict[str, Any]) -> Conversation:
    payload = data.get("conversation") if isinstance(data.get("conversation"), dict) else data
    return Conversation(**payload)


def _message_from(data: Dict[str, Any]) -> Message:
    payload = data.get("message") if isinstance(data.get("message"), dict) else data
    return Message(**payload)


class ConversationService:
    def __init__(
        self,
        client: BackendClient,
        *,
        repository: ConversationRepository | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        if self._client.use_mock_data:
            self._repository = repository or get_mock_store().conversations

    def _mock_repository(self) -> ConversationRepository:
        if not self._repository:
            raise RuntimeError("Mock conversation repository not configured")
        return self._repository

    async def list_conversations(self, viewer: Viewer) -> ConversationListResponse:
        logger.info("Listing conversations for %s", viewer.id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().list(viewer)

        data = await self._client.get("/conversations")
        return self._parse(lambda payload: ConversationListResponse(**payload), data,
                           "Failed to fetch conversations")

    async def get(self, conversation_id: str, viewer: Viewer) -> Conversation:
        logger.debug("Fetching conversation %s", conversation_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().get(conversation_id, viewer)

        data = await self._client.get(f"/conversations/{conversation_id}")
        return self._parse(_conversation_from, data, "Failed to fetch conversation")

    async def create_for_appointment(self, appointment_id: str, viewer: Viewer) -> Conversation:
        logger.info("Opening conversation for appointment %s", appointment_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().create_for_appointment(appointment_id, viewer)

        data = await self._client.post(f"/appointments/{appointment_id}/conversations")
        return self._parse(_conversation_from, data, "Failed to create conversation")

    async def send_message(self, conversation_id: str, viewer: Viewer, content: str) -> Message:
        request = SendMessageRequest(content=content)
        logger.info("Sending message to conversation %s", conversation_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().send(conversation_id, viewer, request.content)

        data = await self._client.post(
            f"/conversations/{conversation_id}/messages",
            {"message": {"content": request.content}},
        )
        return self._parse(_message_from, data, "Failed to send message")

    @staticmethod
    def _parse(parser, data, failure_message: str):
        try:
            return parser(data)
        except ValidationError as exc:
            logger.exception("Booking service returned an unexpected payload")
            raise ServiceError(failure_message, cause=exc) from exc


class ConversationSession:
    """Keeps one conversation's messages current while it is open."""

    def __init__(
        self,
        service: ConversationService,
        conversation_id: str,
        viewer: Viewer,
        *,
        push: PushChannel | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._service = service
        self.conversation_id = str(conversation_id)
        self._viewer = viewer
        self._push = push
        self._poll_interval = poll_interval
        self._log = MessageLog()
        self._listeners: List[UpdateListener] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._subscription: Optional[PushSubscription] = None
        self._generation = 0
        self._running = False
        self.other_user: Optional[Participant] = None
        self.unread_count = 0
        self.poll_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def push_active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def messages(self) -> List[Message]:
        return self._log.messages

    def on_update(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> "ConversationSession":
        if self._running:
            return self
        self._running = True
        self._generation += 1
        generation = self._generation
        logger.info("Opening sync session for conversation %s", self.conversation_id)

        await self._poll_once(generation)
        await self._connect_push(generation)
        if self._running and generation == self._generation:
            self._poll_task = asyncio.create_task(self._poll_loop(generation))
        return self

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        # Anything still in flight for the old generation is discarded.
        self._generation += 1
        logger.info("Closing sync session for conversation %s", self.conversation_id)

        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except (ServiceError, OSError) as exc:
                logger.warning(
                    "Error releasing push subscription for %s: %s", self.conversation_id, exc
                )

    async def refresh(self) -> List[Message]:
        """Fetch the full conversation once and merge it. Errors propagate."""

        generation = self._generation
        conversation = await self._service.get(self.conversation_id, self._viewer)
        self._apply_snapshot(generation, conversation)
        return self.messages

    async def send(self, text: str) -> Message:
        """Submit a message, then refresh so the server's copy is what appears."""

        if not text or not text.strip():
            raise ValueError("message text must not be blank")
        message = await self._service.send_message(self.conversation_id, self._viewer, text)
        generation = self._generation
        try:
            conversation = await self._service.get(self.conversation_id, self._viewer)
        except ServiceError as exc:
            logger.warning(
                "Refresh after send failed for conversation %s: %s", self.conversation_id, exc
            )
        else:
            self._apply_snapshot(generation, conversation)
        return message

    async def _poll_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if generation != self._generation:
                return
            await self._poll_once(generation)

    async def _poll_once(self, generation: int) -> None:
        self.poll_count += 1
        try:
            conversation = await self._service.get(self.conversation_id, self._viewer)
        except ServiceError as exc:
            logger.warning("Poll failed for conversation %s: %s", self.conversation_id, exc)
            return
        self._apply_snapshot(generation, conversation)

    async def _connect_push(self, generation: int) -> None:
        if self._push is None:
            return
        try:
            subscription = await self._push.subscribe(self.conversation_id, self._on_push_event)
        except ServiceError as exc:
            logger.warning(
                "Push unavailable for conversation %s, continuing with polling only: %s",
                self.conversation_id,
                exc,
            )
            return
        if generation != self._generation:
            await subscription.close()
            return
        self._subscription = subscription

    def _on_push_event(self, event: Dict[str, Any]) -> None:
        if not self._running or event.get("type") != "new_message":
            return
        payload = event.get("message")
        if not isinstance(payload, dict):
            return
        try:
            message = Message(**payload)
        except ValidationError:
            logger.warning("Ignoring malformed push message for %s", self.conversation_id)
            return
        if message.sender_id is not None:
            message = message.model_copy(update={"sent_by_me": message.sender_id == self._viewer.id})
        self._merge([message])

    def _apply_snapshot(self, generation: int, conversation: Conversation) -> None:
        if not self._running or generation != self._generation:
            logger.debug("Discarding stale result for conversation %s", self.conversation_id)
            return
        self.other_user = conversation.other_user or self.other_user
        self.unread_count = conversation.unread_count
        self._merge(conversation.messages)

    def _merge(self, messages: Iterable[Message]) -> None:
        added = self._log.merge(messages)
        if not added:
            return
        for listener in list(self._listeners):
            try:
                listener(added)
            except Exception:
                logger.exception(
                    "Update listener failed for conversation %s", self.conversation_id
                )


class ConversationSync:
    """Owns the open sync sessions of one screen or controller.

    At most one session exists per conversation; subscribing again returns the
    session that is already running.
    """

    def __init__(
        self,
        service: ConversationService,
        viewer: Viewer,
        *,
        push: PushChannel | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._service = service
        self._viewer = viewer
        self._push = push
        self._poll_interval = poll_interval
        self._sessions: Dict[str, ConversationSession] = {}

    def session(self, conversation_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(str(conversation_id))

    async def subscribe(self, conversation_id: str) -> ConversationSession:
        key = str(conversation_id)
        existing = self._sessions.get(key)
        if existing is not None:
            return existing
        session = ConversationSession(
            self._service,
            key,
            self._viewer,
            push=self._push,
            poll_interval=self._poll_interval,
        )
        self._sessions[key] = session
        await session.start()
        return session

    async def unsubscribe(self, conversation_id: str) -> None:
        session = self._sessions.pop(str(conversation_id), None)
        if session is not None:
            await session.stop()

    async def close(self) -> None:
        for conversation_id in list(self._sessions):
            await self.unsubscribe(conversation_id)

    async def __aenter__(self) -> "ConversationSync":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
