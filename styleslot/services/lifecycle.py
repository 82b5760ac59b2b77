"""Appointment status state machine and the per-appointment lifecycle tracker."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from styleslot.schemas.appointment import Appointment, AppointmentStatus
from styleslot.schemas.review import ReviewRequest
from styleslot.schemas.viewer import Viewer
from styleslot.services import eligibility
from styleslot.services.exceptions import (
    IneligibleBookingError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ServiceError,
)

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from styleslot.services.appointment import AppointmentService

logger = logging.getLogger(__name__)


class Action(str, Enum):
    BOOK = "book"
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    COMPLETE = "complete"


def next_status(appointment: Appointment, action: Action) -> AppointmentStatus:
    """Return the status ``action`` moves ``appointment`` to.

    Booking leaves the status at ``pending`` (a customer gets attached). Raises
    ``IneligibleBookingError`` for a booking outside an open slot and
    ``InvalidStateTransitionError`` for any other disallowed move.
    """

    status = appointment.status
    if action is Action.BOOK:
        if not eligibility.can_book(appointment):
            raise IneligibleBookingError(
                "This time slot is no longer available",
                status_code=None,
            )
        return AppointmentStatus.PENDING

    if status.is_terminal:
        raise InvalidStateTransitionError(
            f"Cannot {action.value} an appointment that is already {status.value}",
            status_code=None,
        )

    if action in (Action.ACCEPT, Action.DECLINE):
        if not appointment.awaiting_confirmation:
            raise InvalidStateTransitionError(
                f"Cannot {action.value} an appointment that is not awaiting confirmation",
                status_code=None,
            )
        return AppointmentStatus.BOOKED if action is Action.ACCEPT else AppointmentStatus.CANCELLED

    if action is Action.CANCEL:
        if appointment.customer is None:
            raise InvalidStateTransitionError(
                "Cannot cancel an open slot that nobody has booked",
                status_code=None,
            )
        return AppointmentStatus.CANCELLED

    if action is Action.COMPLETE:
        if status is not AppointmentStatus.BOOKED:
            raise InvalidStateTransitionError(
                "Only booked appointments can be completed",
                status_code=None,
            )
        return AppointmentStatus.COMPLETED

    raise InvalidStateTransitionError(f"Unknown action {action!r}", status_code=None)


def check_permission(appointment: Appointment, viewer: Viewer, action: Action) -> None:
    """Raise ``PermissionDeniedError`` when the viewer may not perform ``action``."""

    if action is Action.BOOK:
        allowed = viewer.is_customer
    elif action in (Action.ACCEPT, Action.DECLINE, Action.COMPLETE):
        allowed = eligibility.is_owner(appointment, viewer)
    else:
        allowed = eligibility.is_participant(appointment, viewer)
    if not allowed:
        raise PermissionDeniedError(
            f"You are not allowed to {action.value} this appointment",
            status_code=None,
        )


class AppointmentLifecycle:
    """Tracks one appointment snapshot on behalf of a viewer.

    The snapshot is only ever replaced by what the backend acknowledges, so a
    failed action leaves ``appointment`` exactly as it was.
    """

    def __init__(
        self,
        service: "AppointmentService",
        appointment: Appointment,
        viewer: Viewer,
    ) -> None:
        self._service = service
        self._appointment = appointment
        self._viewer = viewer

    @property
    def appointment(self) -> Appointment:
        return self._appointment

    @property
    def viewer(self) -> Viewer:
        return self._viewer

    @property
    def status(self) -> AppointmentStatus:
        return self._appointment.status

    def permissions(self):
        return eligibility.permissions(self._appointment, self._viewer)

    async def refresh(self) -> Appointment:
        self._appointment = await self._service.get(self._appointment.id, self._viewer)
        return self._appointment

    async def book(self, selected_service: Optional[str] = None) -> Appointment:
        return await self._apply(
            Action.BOOK,
            lambda: self._service.book(self._appointment.id, self._viewer, selected_service),
        )

    async def accept(self) -> Appointment:
        return await self._apply(
            Action.ACCEPT, lambda: self._service.accept(self._appointment.id, self._viewer)
        )

    async def decline(self) -> Appointment:
        return await self._apply(
            Action.DECLINE, lambda: self._service.decline(self._appointment.id, self._viewer)
        )

    async def cancel(self) -> Appointment:
        return await self._apply(
            Action.CANCEL, lambda: self._service.cancel(self._appointment.id, self._viewer)
        )

    async def complete(self) -> Appointment:
        return await self._apply(
            Action.COMPLETE, lambda: self._service.complete(self._appointment.id, self._viewer)
        )

    async def leave_review(self, rating: int, comment: Optional[str] = None) -> Appointment:
        if not eligibility.can_review(self._appointment, self._viewer):
            if eligibility.is_booked_by_viewer(self._appointment, self._viewer):
                error = InvalidStateTransitionError(
                    "Only completed appointments without a review can be reviewed",
                    status_code=None,
                )
                await self._refresh_after(error)
                raise error
            raise PermissionDeniedError(
                "Only the customer who booked this appointment can review it",
                status_code=None,
            )
        request = ReviewRequest(rating=rating, comment=comment)
        try:
            await self._service.submit_review(self._appointment.id, self._viewer, request)
        except InvalidStateTransitionError as exc:
            await self._refresh_after(exc)
            raise
        return await self.refresh()

    async def _apply(
        self,
        action: Action,
        call: Callable[[], Awaitable[Appointment]],
    ) -> Appointment:
        logger.info(
            "Viewer %s requested %s on appointment %s (status %s)",
            self._viewer.id,
            action.value,
            self._appointment.id,
            self._appointment.status.value,
        )
        try:
            next_status(self._appointment, action)
        except InvalidStateTransitionError as exc:
            await self._refresh_after(exc)
            raise
        check_permission(self._appointment, self._viewer, action)

        try:
            updated = await call()
        except InvalidStateTransitionError as exc:
            await self._refresh_after(exc)
            raise

        self._appointment = updated
        logger.info(
            "Appointment %s is now %s", updated.id, updated.status.value
        )
        return updated

    async def _refresh_after(self, error: InvalidStateTransitionError) -> None:
        logger.info(
            "Refreshing appointment %s after rejected transition: %s",
            self._appointment.id,
            error,
        )
        try:
            await self.refresh()
        except ServiceError as exc:
            logger.warning("Unable to refresh appointment %s: %s", self._appointment.id, exc)
