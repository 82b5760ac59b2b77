import asyncio
import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from styleslot.schemas.appointment import Appointment, AppointmentStatus, CustomerRef
from styleslot.schemas.viewer import Role, Viewer
from styleslot.services.appointment import AppointmentService
from styleslot.services.exceptions import (
    IneligibleBookingError,
    InvalidStateTransitionError,
    NetworkError,
    PermissionDeniedError,
)
from styleslot.services.lifecycle import Action, AppointmentLifecycle, next_status
from styleslot.services.mock_store import reset_mock_store

STYLIST = Viewer(id="101", role=Role.STYLIST, name="Maya Chen")
CUSTOMER = Viewer(id="201", role=Role.CUSTOMER, name="Priya Nair")
OTHER_CUSTOMER = Viewer(id="202", role=Role.CUSTOMER, name="Sam Okafor")


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_mock_store()
    yield
    reset_mock_store()


class MockLatencyClient:
    """Client stub that records simulate_latency calls."""

    def __init__(self) -> None:
        self.use_mock_data = True
        self.latency_called = False

    async def simulate_latency(self) -> None:
        self.latency_called = True


def make_appointment(status="pending", customer_id=None, review=None) -> Appointment:
    return Appointment(
        id="7",
        status=status,
        time=datetime(2030, 5, 1, 17, 0, tzinfo=timezone.utc),
        location="Mission District",
        services="Haircut",
        stylist={"id": "101", "name": "Maya Chen"},
        customer={"id": customer_id} if customer_id else None,
        review=review,
    )


class StubAppointmentService:
    """Records proposed transitions; each call returns or raises what was queued."""

    def __init__(self, snapshot: Appointment) -> None:
        self.snapshot = snapshot
        self.calls = []
        self.get_calls = 0
        self.error = None

    async def get(self, appointment_id, viewer=None):
        self.get_calls += 1
        return self.snapshot

    async def _respond(self, name, **changes):
        self.calls.append(name)
        if self.error is not None:
            raise self.error
        self.snapshot = self.snapshot.model_copy(update=changes)
        return self.snapshot

    async def book(self, appointment_id, viewer, selected_service=None):
        return await self._respond("book", customer=CustomerRef(id=viewer.id), selected_service=selected_service)

    async def accept(self, appointment_id, viewer):
        return await self._respond("accept", status=AppointmentStatus.BOOKED)

    async def decline(self, appointment_id, viewer):
        return await self._respond("decline", status=AppointmentStatus.CANCELLED)

    async def cancel(self, appointment_id, viewer):
        return await self._respond("cancel", status=AppointmentStatus.CANCELLED)

    async def complete(self, appointment_id, viewer):
        return await self._respond("complete", status=AppointmentStatus.COMPLETED)


def test_next_status_table() -> None:
    slot = make_appointment()
    request = make_appointment("pending", "201")
    booked = make_appointment("booked", "201")

    assert next_status(slot, Action.BOOK) is AppointmentStatus.PENDING
    assert next_status(request, Action.ACCEPT) is AppointmentStatus.BOOKED
    assert next_status(request, Action.DECLINE) is AppointmentStatus.CANCELLED
    assert next_status(request, Action.CANCEL) is AppointmentStatus.CANCELLED
    assert next_status(booked, Action.CANCEL) is AppointmentStatus.CANCELLED
    assert next_status(booked, Action.COMPLETE) is AppointmentStatus.COMPLETED

    with pytest.raises(IneligibleBookingError):
        next_status(request, Action.BOOK)
    with pytest.raises(InvalidStateTransitionError):
        next_status(booked, Action.ACCEPT)
    with pytest.raises(InvalidStateTransitionError):
        next_status(request, Action.COMPLETE)
    with pytest.raises(InvalidStateTransitionError):
        next_status(slot, Action.CANCEL)


@pytest.mark.parametrize("status", ["completed", "cancelled"])
@pytest.mark.parametrize("action", [Action.ACCEPT, Action.DECLINE, Action.CANCEL, Action.COMPLETE])
def test_terminal_status_rejects_every_transition(status, action) -> None:
    with pytest.raises(InvalidStateTransitionError):
        next_status(make_appointment(status, "201"), action)


def test_accept_on_completed_fails_without_calling_backend() -> None:
    completed = make_appointment("completed", "201")
    service = StubAppointmentService(completed)
    tracker = AppointmentLifecycle(service, completed, STYLIST)

    with pytest.raises(InvalidStateTransitionError):
        asyncio.run(tracker.accept())

    assert tracker.status is AppointmentStatus.COMPLETED
    assert service.calls == []
    # A rejected transition forces a fresh snapshot.
    assert service.get_calls == 1


def test_server_rejection_leaves_snapshot_unchanged() -> None:
    slot = make_appointment()
    service = StubAppointmentService(slot)
    service.error = IneligibleBookingError(
        "rejected", status_code=422, reason="This appointment is no longer available"
    )
    tracker = AppointmentLifecycle(service, slot, CUSTOMER)

    with pytest.raises(IneligibleBookingError) as excinfo:
        asyncio.run(tracker.book("Haircut"))

    assert str(excinfo.value) == "This appointment is no longer available"
    assert tracker.appointment is slot
    assert service.calls == ["book"]


def test_network_failure_is_not_retried() -> None:
    request = make_appointment("pending", "201")
    service = StubAppointmentService(request)
    service.error = NetworkError("Unable to reach booking service")
    tracker = AppointmentLifecycle(service, request, STYLIST)

    with pytest.raises(NetworkError):
        asyncio.run(tracker.accept())

    assert service.calls == ["accept"]
    assert tracker.status is AppointmentStatus.PENDING


def test_local_gating_rejects_non_owner() -> None:
    request = make_appointment("pending", "201")
    service = StubAppointmentService(request)
    tracker = AppointmentLifecycle(service, request, CUSTOMER)

    with pytest.raises(PermissionDeniedError):
        asyncio.run(tracker.accept())
    assert service.calls == []


def test_booking_taken_slot_is_ineligible() -> None:
    request = make_appointment("pending", "201")
    service = StubAppointmentService(request)
    tracker = AppointmentLifecycle(service, request, OTHER_CUSTOMER)

    with pytest.raises(IneligibleBookingError):
        asyncio.run(tracker.book())
    assert service.calls == []


def test_full_lifecycle_against_mock_backend() -> None:
    client = MockLatencyClient()
    service = AppointmentService(client)

    async def scenario():
        customer_view = await service.open("APT-00001", CUSTOMER)
        assert customer_view.appointment.is_open_slot

        booked = await customer_view.book("Haircut")
        assert booked.status is AppointmentStatus.PENDING
        assert booked.customer is not None and booked.customer.id == CUSTOMER.id
        assert booked.selected_service == "Haircut"

        stylist_view = await service.open("APT-00001", STYLIST)
        assert stylist_view.permissions().can_accept_or_decline is True
        accepted = await stylist_view.accept()
        assert accepted.status is AppointmentStatus.BOOKED

        completed = await stylist_view.complete()
        assert completed.status is AppointmentStatus.COMPLETED

        with pytest.raises(InvalidStateTransitionError):
            await stylist_view.accept()
        with pytest.raises(InvalidStateTransitionError):
            await stylist_view.cancel()
        assert stylist_view.status is AppointmentStatus.COMPLETED

        await customer_view.refresh()
        assert customer_view.permissions().can_review is True
        reviewed = await customer_view.leave_review(5, "  Great cut ")
        assert reviewed.review is not None
        assert customer_view.permissions().can_review is False

        reviews = await service.stylist_reviews(STYLIST.id)
        return reviews

    reviews = asyncio.run(scenario())
    assert client.latency_called is True
    assert len(reviews.reviews) == 1
    assert reviews.reviews[0].comment == "Great cut"
    assert reviews.average_rating == 5


def test_double_booking_is_rejected_by_backend() -> None:
    service = AppointmentService(MockLatencyClient())

    async def scenario():
        first = await service.open("APT-00003", CUSTOMER)
        second = await service.open("APT-00003", OTHER_CUSTOMER)
        await first.book("Fade")
        # The second viewer still holds the stale open-slot snapshot.
        assert second.permissions().can_book is True
        with pytest.raises(IneligibleBookingError):
            await second.book("Fade")
        return second

    second = asyncio.run(scenario())
    assert second.appointment.is_open_slot


def test_decline_cancels_request() -> None:
    service = AppointmentService(MockLatencyClient())

    async def scenario():
        customer_view = await service.open("APT-00002", CUSTOMER)
        await customer_view.book()
        stylist_view = await service.open("APT-00002", STYLIST)
        return await stylist_view.decline()

    declined = asyncio.run(scenario())
    assert declined.status is AppointmentStatus.CANCELLED


def test_customer_cancels_booked_appointment_and_lists_it() -> None:
    service = AppointmentService(MockLatencyClient())

    async def scenario():
        tracker = await service.open("APT-00004", OTHER_CUSTOMER)
        assert tracker.permissions().can_cancel is True
        await tracker.cancel()
        return await service.my_appointments(OTHER_CUSTOMER)

    mine = asyncio.run(scenario())
    assert [item.status for item in mine.appointments] == [AppointmentStatus.CANCELLED]


def test_stylist_availability_must_be_in_future() -> None:
    from styleslot.schemas.appointment import AvailabilityRequest

    service = AppointmentService(MockLatencyClient())
    past = AvailabilityRequest(
        time=datetime(2020, 1, 1, 9, 0, tzinfo=timezone.utc),
        location="Studio",
        services="Haircut",
    )
    with pytest.raises(ValueError):
        asyncio.run(service.create_availability(STYLIST, past))

    future = AvailabilityRequest(
        time=datetime(2099, 1, 1, 9, 0, tzinfo=timezone.utc),
        location="  Studio 4 ",
        services="Haircut",
    )
    created = asyncio.run(service.create_availability(STYLIST, future))
    assert created.is_open_slot
    assert created.location == "Studio 4"

    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.create_availability(CUSTOMER, future))


def test_reviews_come_from_injected_repositories() -> None:
    from styleslot.services.mock_store import (
        AppointmentRepository,
        ReviewRepository,
        UserRepository,
        get_mock_store,
    )

    reviews = ReviewRepository()
    repository = AppointmentRepository(UserRepository(), reviews)
    service = AppointmentService(MockLatencyClient(), repository=repository, reviews=reviews)
    stylist = Viewer(id="102", role=Role.STYLIST)

    async def scenario():
        await (await service.open("APT-00004", stylist)).complete()
        await (await service.open("APT-00004", OTHER_CUSTOMER)).leave_review(3, "Fine")
        return await service.stylist_reviews("102")

    listed = asyncio.run(scenario())
    assert [review.rating for review in listed.reviews] == [3]
    assert asyncio.run(get_mock_store().reviews.list("102")).reviews == []
