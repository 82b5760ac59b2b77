from __future__ import annotations

import inspect
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from styleslot.schemas.appointment import (
    Appointment,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentStatus,
    AvailabilityRequest,
    MyAppointmentsFilters,
)
from styleslot.schemas.conversation import (
    Conversation,
    ConversationListResponse,
    ConversationSummary,
    Message,
    Participant,
)
from styleslot.schemas.review import Review, ReviewListResponse, ReviewRequest
from styleslot.schemas.viewer import Role, Viewer
from styleslot.services import eligibility
from styleslot.services.exceptions import (
    DownstreamServiceError,
    PermissionDeniedError,
    ServiceError,
)
from styleslot.services.lifecycle import Action, check_permission, next_status

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _reject(reason: str, status_code: int = 422) -> DownstreamServiceError:
    return DownstreamServiceError(reason, status_code=status_code, reason=reason)


def _not_found(kind: str, record_id: str) -> DownstreamServiceError:
    return _reject(f"{kind} {record_id} not found", status_code=404)


class _BaseRepository:
    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def _next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter):05d}"


class UserRecord:
    def __init__(
        self,
        *,
        user_id: str,
        name: str,
        username: str,
        role: Role,
        location: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.name = name
        self.username = username
        self.role = role
        self.location = location

    def as_viewer(self) -> Viewer:
        return Viewer(id=self.user_id, role=self.role, name=self.name)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.user_id,
            "name": self.name,
            "username": self.username,
        }
        if self.role is Role.STYLIST:
            data["location"] = self.location
        return data


class UserRepository:
    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._seed_users()

    def _seed_users(self) -> None:
        for record in (
            UserRecord(
                user_id="101",
                name="Maya Chen",
                username="mayacuts",
                role=Role.STYLIST,
                location="Mission District, San Francisco",
            ),
            UserRecord(
                user_id="102",
                name="Diego Alvarez",
                username="diegofades",
                role=Role.STYLIST,
                location="Williamsburg, Brooklyn",
            ),
            UserRecord(user_id="201", name="Priya Nair", username="priya", role=Role.CUSTOMER),
            UserRecord(user_id="202", name="Sam Okafor", username="samo", role=Role.CUSTOMER),
        ):
            self.add(record)

    def add(self, record: UserRecord) -> None:
        self._users[record.user_id] = record

    def get(self, user_id: str) -> Optional[UserRecord]:
        return self._users.get(str(user_id))

    def require(self, user_id: str) -> UserRecord:
        record = self.get(user_id)
        if record is None:
            raise PermissionDeniedError(
                "You need to sign in before continuing",
                status_code=401,
                reason="You need to sign in before continuing",
            )
        return record

    def iter_users(self) -> Iterable[UserRecord]:
        return self._users.values()


class ReviewRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("REV")
        self._reviews: Dict[str, Dict[str, Any]] = {}

    async def create(
        self,
        *,
        appointment_id: str,
        stylist_id: str,
        customer: UserRecord,
        request: ReviewRequest,
    ) -> Review:
        review_id = self._next_id()
        record = {
            "id": review_id,
            "appointment_id": appointment_id,
            "stylist_id": stylist_id,
            "customer_name": customer.name,
            "rating": request.rating,
            "comment": request.comment,
            "created_at": _utc_now().isoformat(),
        }
        self._reviews[review_id] = record
        return Review(**record)

    async def list(self, stylist_id: Optional[str] = None) -> ReviewListResponse:
        reviews = [
            Review(**record)
            for record in self._reviews.values()
            if stylist_id is None or record["stylist_id"] == str(stylist_id)
        ]
        average = None
        if reviews:
            average = round(sum(review.rating for review in reviews) / len(reviews), 2)
        return ReviewListResponse(reviews=reviews, average_rating=average)

    async def get(self, review_id: str) -> Optional[Dict[str, Any]]:
        record = self._reviews.get(review_id)
        return dict(record) if record is not None else None


class AppointmentRepository(_BaseRepository):
    """In-memory stand-in for the backend's appointment endpoints.

    It enforces the same transition rules the real backend does and answers
    rejected requests with 422/403/404 errors carrying a reason string.
    """

    def __init__(self, users: UserRepository, reviews: ReviewRepository) -> None:
        super().__init__("APT")
        self._users = users
        self._reviews = reviews
        self._appointments: Dict[str, Dict[str, Any]] = {}
        self._seed_defaults()

    def _seed_defaults(self) -> None:
        tomorrow = (_utc_now() + timedelta(days=1)).replace(
            hour=17, minute=0, second=0, microsecond=0
        )
        seeds = [
            {"stylist_id": "101", "offset_hours": 0, "services": "Haircut, Blowout"},
            {"stylist_id": "101", "offset_hours": 2, "services": "Haircut, Color"},
            {"stylist_id": "102", "offset_hours": 1, "services": "Fade, Beard Trim"},
            {
                "stylist_id": "102",
                "offset_hours": 3,
                "services": "Fade",
                "customer_id": "202",
                "selected_service": "Fade",
                "status": AppointmentStatus.BOOKED.value,
            },
        ]
        for seed in seeds:
            stylist = self._users.get(seed["stylist_id"])
            if stylist is None:
                continue
            appointment_id = self._next_id()
            self._appointments[appointment_id] = {
                "id": appointment_id,
                "status": seed.get("status", AppointmentStatus.PENDING.value),
                "time": (tomorrow + timedelta(hours=seed["offset_hours"])).isoformat(),
                "location": stylist.location,
                "services": seed["services"],
                "selected_service": seed.get("selected_service"),
                "stylist_id": stylist.user_id,
                "customer_id": seed.get("customer_id"),
                "review_id": None,
            }

    def _to_model(self, record: Dict[str, Any]) -> Appointment:
        stylist = self._users.get(record["stylist_id"])
        customer = self._users.get(record["customer_id"]) if record["customer_id"] else None
        review = None
        if record["review_id"]:
            review = {"id": record["review_id"]}
        return Appointment(
            id=record["id"],
            status=record["status"],
            time=record["time"],
            location=record["location"],
            services=record["services"],
            selected_service=record["selected_service"],
            stylist=stylist.as_dict() if stylist else {"id": record["stylist_id"]},
            customer=customer.as_dict() if customer else None,
            review=review,
        )

    def _require(self, appointment_id: str) -> Dict[str, Any]:
        record = self._appointments.get(str(appointment_id))
        if record is None:
            raise _not_found("Appointment", appointment_id)
        return record

    @staticmethod
    def _paginate(
        items: List[Appointment], page: Optional[int], per_page: Optional[int]
    ) -> AppointmentListResponse:
        page = page or 1
        per_page = per_page or 20
        start = (page - 1) * per_page
        return AppointmentListResponse(
            appointments=items[start:start + per_page],
            total=len(items),
            page=page,
            per_page=per_page,
        )

    def _transition(
        self, appointment_id: str, viewer: Viewer, action: Action
    ) -> Dict[str, Any]:
        record = self._require(appointment_id)
        appointment = self._to_model(record)
        try:
            status = next_status(appointment, action)
            check_permission(appointment, viewer, action)
        except PermissionDeniedError as exc:
            raise PermissionDeniedError(str(exc), status_code=403, reason=str(exc)) from exc
        except ServiceError as exc:
            raise _reject(str(exc)) from exc
        record["status"] = status.value
        return record

    async def list_open(self, filters: AppointmentFilters) -> AppointmentListResponse:
        items: List[Appointment] = []
        for record in self._appointments.values():
            appointment = self._to_model(record)
            if not eligibility.can_book(appointment):
                continue
            if filters.location and filters.location.lower() not in (appointment.location or "").lower():
                continue
            if filters.date and appointment.time.date().isoformat() != filters.date:
                continue
            items.append(appointment)
        items.sort(key=lambda item: item.time)
        return self._paginate(items, filters.page, filters.per_page)

    async def get(self, appointment_id: str) -> Appointment:
        return self._to_model(self._require(appointment_id))

    async def book(
        self, appointment_id: str, viewer: Viewer, selected_service: Optional[str]
    ) -> Appointment:
        self._users.require(viewer.id)
        record = self._transition(appointment_id, viewer, Action.BOOK)
        record["customer_id"] = viewer.id
        record["selected_service"] = selected_service
        return self._to_model(record)

    async def list_for_customer(
        self, viewer: Viewer, filters: MyAppointmentsFilters
    ) -> AppointmentListResponse:
        items = [
            self._to_model(record)
            for record in self._appointments.values()
            if record["customer_id"] == viewer.id
            and (filters.status is None or record["status"] == filters.status.value)
        ]
        items.sort(key=lambda item: item.time)
        return self._paginate(items, filters.page, filters.per_page)

    async def list_for_stylist(
        self, viewer: Viewer, filters: MyAppointmentsFilters
    ) -> AppointmentListResponse:
        if not viewer.is_stylist:
            raise PermissionDeniedError(
                "Only stylists can view this page", status_code=403,
                reason="Only stylists can view this page",
            )
        items = [
            self._to_model(record)
            for record in self._appointments.values()
            if record["stylist_id"] == viewer.id
            and (filters.status is None or record["status"] == filters.status.value)
        ]
        items.sort(key=lambda item: item.time)
        return self._paginate(items, filters.page, filters.per_page)

    async def create(self, viewer: Viewer, request: AvailabilityRequest) -> Appointment:
        stylist = self._users.require(viewer.id)
        if stylist.role is not Role.STYLIST:
            raise PermissionDeniedError(
                "Only stylists can create availability", status_code=403,
                reason="Only stylists can create availability",
            )
        appointment_id = self._next_id()
        record = {
            "id": appointment_id,
            "status": AppointmentStatus.PENDING.value,
            "time": request.time.isoformat(),
            "location": request.location,
            "services": request.services,
            "selected_service": None,
            "stylist_id": stylist.user_id,
            "customer_id": None,
            "review_id": None,
        }
        self._appointments[appointment_id] = record
        return self._to_model(record)

    async def accept(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return self._to_model(self._transition(appointment_id, viewer, Action.ACCEPT))

    async def decline(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return self._to_model(self._transition(appointment_id, viewer, Action.DECLINE))

    async def cancel(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return self._to_model(self._transition(appointment_id, viewer, Action.CANCEL))

    async def complete(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return self._to_model(self._transition(appointment_id, viewer, Action.COMPLETE))

    async def review(
        self, appointment_id: str, viewer: Viewer, request: ReviewRequest
    ) -> Review:
        record = self._require(appointment_id)
        appointment = self._to_model(record)
        if not eligibility.is_booked_by_viewer(appointment, viewer):
            raise PermissionDeniedError(
                "You can only review your own appointments", status_code=403,
                reason="You can only review your own appointments",
            )
        if not eligibility.can_review(appointment, viewer):
            raise _reject("Appointment cannot be reviewed")
        review = await self._reviews.create(
            appointment_id=appointment.id,
            stylist_id=appointment.stylist.id,
            customer=self._users.require(viewer.id),
            request=request,
        )
        record["review_id"] = review.id
        return review

    async def delete(self, appointment_id: str) -> bool:
        return self._appointments.pop(appointment_id, None) is not None

    def participants(self, appointment_id: str) -> tuple[str, Optional[str]]:
        record = self._require(appointment_id)
        return record["stylist_id"], record["customer_id"]


class InMemoryPushChannel:
    """Push channel that delivers ``new_message`` events inside the process."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List["InMemorySubscription"]] = {}

    async def subscribe(
        self, conversation_id: str, on_event: EventCallback
    ) -> "InMemorySubscription":
        subscription = InMemorySubscription(self, str(conversation_id), on_event)
        self._subscribers.setdefault(subscription.conversation_id, []).append(subscription)
        logger.info("Push subscriber added for conversation %s", conversation_id)
        return subscription

    def _remove(self, subscription: "InMemorySubscription") -> None:
        subscribers = self._subscribers.get(subscription.conversation_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(str(conversation_id), []))

    async def publish(self, conversation_id: str, event: Dict[str, Any]) -> None:
        for subscription in list(self._subscribers.get(str(conversation_id), [])):
            try:
                result = subscription.on_event(dict(event))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Push subscriber failed for conversation %s", conversation_id)


class InMemorySubscription:
    def __init__(
        self, channel: InMemoryPushChannel, conversation_id: str, on_event: EventCallback
    ) -> None:
        self._channel = channel
        self.conversation_id = conversation_id
        self.on_event = on_event
        self.closed = False

    @property
    def active(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        if not self.closed:
            self._channel._remove(self)
            self.closed = True


class ConversationRepository(_BaseRepository):
    def __init__(
        self,
        users: UserRepository,
        appointments: AppointmentRepository,
        push: InMemoryPushChannel,
    ) -> None:
        super().__init__("CNV")
        self._users = users
        self._appointments = appointments
        self._push = push
        self._message_ids = itertools.count(1)
        self._conversations: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, List[Dict[str, Any]]] = {}
        self._last_read: Dict[tuple[str, str], int] = {}

    def _require(self, conversation_id: str, viewer: Viewer) -> Dict[str, Any]:
        record = self._conversations.get(str(conversation_id))
        if record is None:
            raise _not_found("Conversation", conversation_id)
        if viewer.id not in record["participant_ids"]:
            raise PermissionDeniedError(
                "You are not part of this conversation", status_code=403,
                reason="You are not part of this conversation",
            )
        return record

    def _other_user(self, record: Dict[str, Any], viewer: Viewer) -> Participant:
        other_id = next(
            (user_id for user_id in record["participant_ids"] if user_id != viewer.id),
            viewer.id,
        )
        other = self._users.get(other_id)
        if other is None:
            return Participant(id=other_id)
        return Participant(id=other.user_id, name=other.name, username=other.username)

    @staticmethod
    def _message_for(record: Dict[str, Any], viewer_id: str) -> Message:
        return Message(
            id=record["id"],
            content=record["content"],
            created_at=record["created_at"],
            sent_by_me=record["sender_id"] == viewer_id,
            sender_id=record["sender_id"],
        )

    def _unread_count(self, conversation_id: str, viewer_id: str) -> int:
        messages = self._messages.get(conversation_id, [])
        read_upto = self._last_read.get((conversation_id, viewer_id), 0)
        return sum(
            1
            for index, message in enumerate(messages, start=1)
            if index > read_upto and message["sender_id"] != viewer_id
        )

    async def list(self, viewer: Viewer) -> ConversationListResponse:
        summaries: List[ConversationSummary] = []
        for conversation_id, record in self._conversations.items():
            if viewer.id not in record["participant_ids"]:
                continue
            messages = self._messages.get(conversation_id, [])
            summaries.append(
                ConversationSummary(
                    id=conversation_id,
                    other_user=self._other_user(record, viewer),
                    last_message=self._message_for(messages[-1], viewer.id) if messages else None,
                    unread_count=self._unread_count(conversation_id, viewer.id),
                )
            )
        return ConversationListResponse(conversations=summaries)

    async def get(self, conversation_id: str, viewer: Viewer) -> Conversation:
        record = self._require(conversation_id, viewer)
        messages = self._messages.get(record["id"], [])
        conversation = Conversation(
            id=record["id"],
            other_user=self._other_user(record, viewer),
            appointment_id=record["appointment_id"],
            messages=[self._message_for(message, viewer.id) for message in messages],
            unread_count=self._unread_count(record["id"], viewer.id),
        )
        # Reading the thread marks it read, as the backend does.
        self._last_read[(record["id"], viewer.id)] = len(messages)
        return conversation

    async def create_for_appointment(self, appointment_id: str, viewer: Viewer) -> Conversation:
        stylist_id, customer_id = self._appointments.participants(appointment_id)
        if customer_id is None:
            raise _reject("Conversations open once the appointment is booked")
        if viewer.id not in (stylist_id, customer_id):
            raise PermissionDeniedError(
                "You are not part of this appointment", status_code=403,
                reason="You are not part of this appointment",
            )
        for record in self._conversations.values():
            if record["appointment_id"] == str(appointment_id):
                return await self.get(record["id"], viewer)
        conversation_id = self._next_id()
        self._conversations[conversation_id] = {
            "id": conversation_id,
            "appointment_id": str(appointment_id),
            "participant_ids": (stylist_id, customer_id),
        }
        self._messages[conversation_id] = []
        return await self.get(conversation_id, viewer)

    async def send(self, conversation_id: str, viewer: Viewer, content: str) -> Message:
        record = self._require(conversation_id, viewer)
        if not content.strip():
            raise _reject("Content can't be blank")
        message_id = f"MSG-{next(self._message_ids):05d}"
        message = {
            "id": message_id,
            "content": content,
            "created_at": _utc_now().isoformat(),
            "sender_id": viewer.id,
        }
        self._messages[record["id"]].append(message)
        await self._push.publish(
            record["id"],
            {
                "type": "new_message",
                "message": {
                    "id": message["id"],
                    "content": message["content"],
                    "created_at": message["created_at"],
                    "sender_id": message["sender_id"],
                },
            },
        )
        return self._message_for(message, viewer.id)

    async def delete(self, conversation_id: str) -> bool:
        self._messages.pop(conversation_id, None)
        return self._conversations.pop(conversation_id, None) is not None

    def message_rows(self) -> List[Dict[str, Any]]:
        return [
            {"conversation_id": conversation_id, **message}
            for conversation_id, messages in self._messages.items()
            for message in messages
        ]


@dataclass
class MockDataStore:
    users: UserRepository
    appointments: AppointmentRepository
    reviews: ReviewRepository
    conversations: ConversationRepository
    push: InMemoryPushChannel


_mock_store: Optional[MockDataStore] = None


def get_mock_store() -> MockDataStore:
    global _mock_store
    if _mock_store is None:
        users = UserRepository()
        reviews = ReviewRepository()
        appointments = AppointmentRepository(users, reviews)
        push = InMemoryPushChannel()
        conversations = ConversationRepository(users, appointments, push)
        _mock_store = MockDataStore(
            users=users,
            appointments=appointments,
            reviews=reviews,
            conversations=conversations,
            push=push,
        )
    return _mock_store


def reset_mock_store() -> None:
    global _mock_store
    _mock_store = None
