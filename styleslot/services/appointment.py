from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type

from pydantic import ValidationError

from styleslot.clients.api import BackendClient
from styleslot.schemas.appointment import (
    Appointment,
    AppointmentFilters,
    AppointmentListResponse,
    AvailabilityRequest,
    BookingRequest,
    MyAppointmentsFilters,
)
from styleslot.schemas.review import Review, ReviewListResponse, ReviewRequest
from styleslot.schemas.viewer import Viewer
from styleslot.services.exceptions import (
    DownstreamServiceError,
    IneligibleBookingError,
    InvalidStateTransitionError,
    NetworkError,
    PermissionDeniedError,
    ServiceError,
)
from styleslot.services.lifecycle import AppointmentLifecycle
from styleslot.services.mock_store import (
    AppointmentRepository,
    ReviewRepository,
    get_mock_store,
)

logger = logging.getLogger(__name__)

# Status codes the backend uses to reject a request that conflicts with the
# appointment's current state.
_STATE_CONFLICT_CODES = frozenset({409, 422})


def _translate(
    exc: DownstreamServiceError, error_cls: Type[DownstreamServiceError]
) -> DownstreamServiceError:
    if isinstance(exc, (NetworkError, PermissionDeniedError)):
        return exc
    if exc.status_code in _STATE_CONFLICT_CODES:
        return error_cls(
            exc.reason, status_code=exc.status_code, reason=exc.reason, cause=exc
        )
    return exc


def _appointment_from(data: Dict[str, Any]) -> Optional[Appointment]:
    payload = data.get("appointment") if isinstance(data.get("appointment"), dict) else data
    if not isinstance(payload, dict) or "id" not in payload or "status" not in payload:
        return None
    return Appointment(**payload)


def _list_from(data: Dict[str, Any]) -> AppointmentListResponse:
    items = data.get("appointments")
    if items is None:
        items = data.get("data", [])
    meta = data.get("meta") or {}
    return AppointmentListResponse(
        appointments=items,
        total=meta.get("total_count", meta.get("total")),
        page=meta.get("current_page", meta.get("page")),
        per_page=meta.get("per_page"),
    )


class AppointmentService:
    """Reads appointment snapshots and proposes status transitions to the backend."""

    def __init__(
        self,
        client: BackendClient,
        *,
        repository: AppointmentRepository | None = None,
        reviews: ReviewRepository | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._reviews = reviews
        if self._client.use_mock_data:
            self._repository = repository or get_mock_store().appointments
            self._reviews = reviews or get_mock_store().reviews

    def _mock_repository(self) -> AppointmentRepository:
        if not self._repository:
            raise RuntimeError("Mock appointment repository not configured")
        return self._repository

    def _mock_reviews(self) -> ReviewRepository:
        if self._reviews is None:
            raise RuntimeError("Mock review repository not configured")
        return self._reviews

    def track(self, appointment: Appointment, viewer: Viewer) -> AppointmentLifecycle:
        return AppointmentLifecycle(self, appointment, viewer)

    async def open(self, appointment_id: str, viewer: Viewer) -> AppointmentLifecycle:
        return self.track(await self.get(appointment_id, viewer), viewer)

    async def browse(self, filters: AppointmentFilters | None = None) -> AppointmentListResponse:
        filters = filters or AppointmentFilters()
        logger.info("Browsing open slots with filters %s", filters.model_dump(exclude_none=True))
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().list_open(filters)

        data = await self._client.get("/appointments", params=filters.model_dump(exclude_none=True))
        return self._parse(_list_from, data, "Failed to fetch appointments")

    async def get(self, appointment_id: str, viewer: Viewer | None = None) -> Appointment:
        logger.debug("Fetching appointment %s", appointment_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().get(appointment_id)

        data = await self._client.get(f"/appointments/{appointment_id}")
        appointment = self._parse(_appointment_from, data, "Failed to fetch appointment")
        if appointment is None:
            raise ServiceError("Failed to fetch appointment")
        return appointment

    async def my_appointments(
        self, viewer: Viewer, filters: MyAppointmentsFilters | None = None
    ) -> AppointmentListResponse:
        filters = filters or MyAppointmentsFilters()
        logger.info("Listing appointments booked by %s", viewer.id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().list_for_customer(viewer, filters)

        data = await self._client.get(
            "/appointments/my_appointments",
            params=filters.model_dump(mode="json", exclude_none=True),
        )
        return self._parse(_list_from, data, "Failed to fetch your appointments")

    async def stylist_appointments(
        self, viewer: Viewer, filters: MyAppointmentsFilters | None = None
    ) -> AppointmentListResponse:
        filters = filters or MyAppointmentsFilters()
        logger.info("Listing appointments owned by stylist %s", viewer.id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().list_for_stylist(viewer, filters)

        data = await self._client.get(
            "/stylist/appointments",
            params=filters.model_dump(mode="json", exclude_none=True),
        )
        return self._parse(_list_from, data, "Failed to fetch appointments")

    async def create_availability(
        self, viewer: Viewer, request: AvailabilityRequest
    ) -> Appointment:
        if request.time <= datetime.now(timezone.utc):
            raise ValueError("Please select a future date and time")
        logger.info("Stylist %s is opening a slot at %s", viewer.id, request.time.isoformat())
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_repository().create(viewer, request)

        data = await self._client.post(
            "/stylist/appointments",
            {"appointment": request.model_dump(mode="json")},
        )
        appointment = self._parse(_appointment_from, data, "Failed to create availability")
        if appointment is None:
            raise ServiceError("Failed to create availability")
        return appointment

    async def book(
        self, appointment_id: str, viewer: Viewer, selected_service: Optional[str] = None
    ) -> Appointment:
        logger.info("Customer %s is booking appointment %s", viewer.id, appointment_id)
        request = BookingRequest(selected_service=selected_service)
        return await self._propose(
            IneligibleBookingError,
            appointment_id,
            viewer,
            mock=lambda repo: repo.book(appointment_id, viewer, request.selected_service),
            method="post",
            path=f"/appointments/{appointment_id}/book",
            payload=request.model_dump(exclude_none=True),
        )

    async def accept(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return await self._propose(
            InvalidStateTransitionError,
            appointment_id,
            viewer,
            mock=lambda repo: repo.accept(appointment_id, viewer),
            method="patch",
            path=f"/stylist/appointments/{appointment_id}/accept",
        )

    async def decline(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return await self._propose(
            InvalidStateTransitionError,
            appointment_id,
            viewer,
            mock=lambda repo: repo.decline(appointment_id, viewer),
            method="delete",
            path=f"/stylist/appointments/{appointment_id}",
        )

    async def cancel(self, appointment_id: str, viewer: Viewer) -> Appointment:
        # Stylists and customers cancel through different endpoints.
        path = (
            f"/stylist/appointments/{appointment_id}"
            if viewer.is_stylist
            else f"/appointments/{appointment_id}/cancel"
        )
        return await self._propose(
            InvalidStateTransitionError,
            appointment_id,
            viewer,
            mock=lambda repo: repo.cancel(appointment_id, viewer),
            method="delete",
            path=path,
        )

    async def complete(self, appointment_id: str, viewer: Viewer) -> Appointment:
        return await self._propose(
            InvalidStateTransitionError,
            appointment_id,
            viewer,
            mock=lambda repo: repo.complete(appointment_id, viewer),
            method="patch",
            path=f"/stylist/appointments/{appointment_id}/complete",
        )

    async def submit_review(
        self, appointment_id: str, viewer: Viewer, request: ReviewRequest
    ) -> Review | None:
        logger.info("Customer %s is reviewing appointment %s", viewer.id, appointment_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            try:
                return await self._mock_repository().review(appointment_id, viewer, request)
            except DownstreamServiceError as exc:
                raise _translate(exc, InvalidStateTransitionError) from exc

        try:
            data = await self._client.post(
                f"/appointments/{appointment_id}/review",
                {"review": request.model_dump(exclude_none=True)},
            )
        except DownstreamServiceError as exc:
            raise _translate(exc, InvalidStateTransitionError) from exc
        review = data.get("review")
        if isinstance(review, dict):
            return self._parse(lambda payload: Review(**payload), review, "Failed to submit review")
        return None

    async def stylist_reviews(self, stylist_id: str) -> ReviewListResponse:
        logger.info("Listing reviews for stylist %s", stylist_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_reviews().list(stylist_id)

        data = await self._client.get("/reviews", params={"stylist_id": stylist_id})
        return self._parse(lambda payload: ReviewListResponse(**payload), data, "Failed to fetch reviews")

    async def _propose(
        self,
        error_cls: Type[DownstreamServiceError],
        appointment_id: str,
        viewer: Viewer,
        *,
        mock,
        method: str,
        path: str,
        payload: Dict[str, Any] | None = None,
    ) -> Appointment:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            try:
                return await mock(self._mock_repository())
            except DownstreamServiceError as exc:
                raise _translate(exc, error_cls) from exc

        try:
            if method == "delete":
                data = await self._client.delete(path)
            else:
                data = await getattr(self._client, method)(path, payload)
        except DownstreamServiceError as exc:
            raise _translate(exc, error_cls) from exc

        appointment = self._parse(_appointment_from, data, "Unexpected appointment payload")
        if appointment is None:
            # Some endpoints only acknowledge; read back the committed snapshot.
            appointment = await self.get(appointment_id, viewer)
        return appointment

    @staticmethod
    def _parse(parser, data, failure_message: str):
        try:
            return parser(data)
        except ValidationError as exc:
            logger.exception("Booking service returned an unexpected payload")
            raise ServiceError(failure_message, cause=exc) from exc
