import asyncio
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from styleslot.schemas.conversation import Conversation, Message
from styleslot.schemas.viewer import Role, Viewer
from styleslot.services.appointment import AppointmentService
from styleslot.services.conversation import (
    ConversationService,
    ConversationSession,
    ConversationSync,
)
from styleslot.services.exceptions import NetworkError
from styleslot.services.mock_store import get_mock_store, reset_mock_store

VIEWER = Viewer(id="201", role=Role.CUSTOMER)
STYLIST = Viewer(id="101", role=Role.STYLIST)
START = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
POLL = 0.01


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_mock_store()
    yield
    reset_mock_store()


class FakeConversationService:
    """Serves the server-side message list and records every fetch."""

    def __init__(self, messages=None) -> None:
        self.server_messages = list(messages or [])
        self.get_calls = 0
        self.failures_remaining = 0
        self.gate: asyncio.Event | None = None
        self.sent = []
        self._ids = itertools.count(100)

    async def get(self, conversation_id, viewer):
        self.get_calls += 1
        snapshot = list(self.server_messages)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise NetworkError("Unable to reach booking service")
        return Conversation(id=conversation_id, messages=snapshot, unread_count=0)

    async def send_message(self, conversation_id, viewer, content):
        self.sent.append(content)
        message = Message(
            id=f"srv-{next(self._ids)}",
            content=content,
            created_at=START + timedelta(minutes=len(self.server_messages)),
            sent_by_me=True,
        )
        self.server_messages.append(message)
        return message


class FakePushChannel:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.callback = None
        self.closed = False

    async def subscribe(self, conversation_id, on_event):
        if self.fail:
            raise NetworkError("Unable to connect to cable")
        self.callback = on_event
        return self

    @property
    def active(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        self.closed = True

    def emit(self, payload) -> None:
        self.callback({"type": "new_message", "message": payload})


def message(message_id: str, minute: int) -> Message:
    return Message(
        id=message_id,
        content=f"message {message_id}",
        created_at=START + timedelta(minutes=minute),
    )


def test_poll_and_push_copies_are_deduplicated() -> None:
    service = FakeConversationService([message("m1", 0)])
    push = FakePushChannel()

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, push=push, poll_interval=60)
        await session.start()
        push.emit({"id": "m1", "content": "message m1", "created_at": START.isoformat()})
        push.emit({
            "id": "m2",
            "content": "pushed",
            "created_at": (START + timedelta(minutes=1)).isoformat(),
            "sender_id": "101",
        })
        service.server_messages.append(message("m2", 1))
        await session.refresh()
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert [item.id for item in session.messages] == ["m1", "m2"]
    assert session.messages[1].sent_by_me is False
    assert push.closed is True


def test_unsubscribe_stops_polling() -> None:
    service = FakeConversationService([message("m1", 0)])

    async def scenario():
        sync = ConversationSync(service, VIEWER, poll_interval=POLL)
        session = await sync.subscribe("12")
        await asyncio.sleep(POLL * 4)
        assert service.get_calls >= 2
        await sync.unsubscribe("12")

        calls_at_stop = service.get_calls
        messages_at_stop = session.messages
        service.server_messages.append(message("m2", 1))
        await asyncio.sleep(POLL * 3)
        return session, calls_at_stop, messages_at_stop

    session, calls_at_stop, messages_at_stop = asyncio.run(scenario())
    assert service.get_calls == calls_at_stop
    assert session.messages == messages_at_stop
    assert session.running is False


def test_failed_polls_are_retried_on_next_tick() -> None:
    service = FakeConversationService([message("m1", 0)])
    service.failures_remaining = 2

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, poll_interval=POLL)
        await session.start()
        assert session.messages == []
        for _ in range(50):
            if session.messages:
                break
            await asyncio.sleep(POLL)
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert [item.id for item in session.messages] == ["m1"]
    assert service.get_calls >= 3


def test_push_connect_failure_falls_back_to_polling() -> None:
    service = FakeConversationService()
    push = FakePushChannel(fail=True)

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, push=push, poll_interval=POLL)
        await session.start()
        assert session.push_active is False
        service.server_messages.append(message("m1", 0))
        for _ in range(50):
            if session.messages:
                break
            await asyncio.sleep(POLL)
        await session.stop()
        return session

    session = asyncio.run(scenario())
    assert [item.id for item in session.messages] == ["m1"]


def test_send_shows_server_copy_exactly_once() -> None:
    service = FakeConversationService([message("m1", 0)])
    push = FakePushChannel()

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, push=push, poll_interval=60)
        await session.start()
        sent = await session.send("On my way")
        # The push echo of the same message arrives after the refresh.
        push.emit(sent.model_dump(mode="json"))
        await session.refresh()
        await session.stop()
        return session, sent

    session, sent = asyncio.run(scenario())
    ids = [item.id for item in session.messages]
    assert ids == ["m1", sent.id]
    assert ids.count(sent.id) == 1
    assert service.sent == ["On my way"]


def test_blank_message_is_rejected_before_sending() -> None:
    service = FakeConversationService()
    session = ConversationSession(service, "12", VIEWER)

    with pytest.raises(ValueError):
        asyncio.run(session.send("   "))
    assert service.sent == []


def test_resubscribe_returns_existing_session() -> None:
    service = FakeConversationService([message("m1", 0)])

    async def scenario():
        async with ConversationSync(service, VIEWER, poll_interval=60) as sync:
            first = await sync.subscribe("12")
            second = await sync.subscribe("12")
            calls = service.get_calls
        return first, second, calls

    first, second, calls = asyncio.run(scenario())
    assert first is second
    assert calls == 1
    assert first.running is False


def test_in_flight_poll_result_is_discarded_after_stop() -> None:
    service = FakeConversationService()

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, poll_interval=60)
        await session.start()
        service.gate = asyncio.Event()
        service.server_messages.append(message("late", 0))
        pending = asyncio.create_task(session.refresh())
        await asyncio.sleep(0)
        await session.stop()
        service.gate.set()
        await pending
        return session

    session = asyncio.run(scenario())
    assert session.messages == []


def test_update_listener_receives_only_new_messages() -> None:
    service = FakeConversationService([message("m1", 0)])
    received = []

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, poll_interval=60)
        session.on_update(lambda added: received.append([item.id for item in added]))
        await session.start()
        await session.refresh()
        service.server_messages.append(message("m2", 1))
        await session.refresh()
        await session.stop()

    asyncio.run(scenario())
    assert received == [["m1"], ["m2"]]


def test_push_delivers_between_participants_on_mock_backend() -> None:
    appointments = AppointmentService(_MockClient())
    conversations = ConversationService(_MockClient())
    push = get_mock_store().push

    async def scenario():
        customer_view = await appointments.open("APT-00001", VIEWER)
        await customer_view.book("Haircut")
        conversation = await conversations.create_for_appointment("APT-00001", VIEWER)

        customer_sync = ConversationSync(conversations, VIEWER, push=push, poll_interval=60)
        stylist_sync = ConversationSync(conversations, STYLIST, push=push, poll_interval=60)
        customer_session = await customer_sync.subscribe(conversation.id)
        stylist_session = await stylist_sync.subscribe(conversation.id)
        assert customer_session.push_active and stylist_session.push_active

        await stylist_session.send("Confirmed for tomorrow")
        customer_messages = customer_session.messages
        stylist_messages = stylist_session.messages

        await customer_sync.close()
        await stylist_sync.close()
        return customer_messages, stylist_messages, push.subscriber_count(conversation.id)

    customer_messages, stylist_messages, remaining = asyncio.run(scenario())
    assert [item.content for item in customer_messages] == ["Confirmed for tomorrow"]
    assert customer_messages[0].sent_by_me is False
    assert len(stylist_messages) == 1
    assert stylist_messages[0].sent_by_me is True
    assert remaining == 0


class _MockClient:
    use_mock_data = True

    async def simulate_latency(self) -> None:
        return None


def test_failing_listener_does_not_stop_polling() -> None:
    service = FakeConversationService([message("m1", 0)])
    received = []

    def flaky_listener(added):
        received.append([item.id for item in added])
        if len(received) == 1:
            raise RuntimeError("render failed")

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, poll_interval=POLL)
        session.on_update(flaky_listener)
        await session.start()
        service.server_messages.append(message("m2", 1))
        for _ in range(50):
            if len(session.messages) == 2:
                break
            await asyncio.sleep(POLL)
        running_before_stop = session.running
        await session.stop()
        return session, running_before_stop

    session, running_before_stop = asyncio.run(scenario())
    assert running_before_stop is True
    assert [item.id for item in session.messages] == ["m1", "m2"]
    assert received == [["m1"], ["m2"]]


def test_push_inactive_once_subscription_ends() -> None:
    service = FakeConversationService()
    push = FakePushChannel()

    async def scenario():
        session = ConversationSession(service, "12", VIEWER, push=push, poll_interval=60)
        await session.start()
        assert session.push_active is True
        push.closed = True
        active_after_end = session.push_active
        await session.stop()
        return active_after_end

    assert asyncio.run(scenario()) is False
