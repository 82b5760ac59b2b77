"""Action eligibility for an appointment, as seen by a particular viewer.

Every function here is a pure function of ``(appointment, viewer)``. Callers
use them to decide which actions to offer; the backend still has the final
word on whether an action is allowed.
"""

from __future__ import annotations

from styleslot.schemas.appointment import (
    Appointment,
    AppointmentPermissions,
    AppointmentStatus,
)
from styleslot.schemas.viewer import Viewer

_CANCELLABLE = frozenset({AppointmentStatus.PENDING, AppointmentStatus.BOOKED})


def can_book(appointment: Appointment) -> bool:
    return appointment.status is AppointmentStatus.PENDING and appointment.customer is None


def is_booked_by_viewer(appointment: Appointment, viewer: Viewer) -> bool:
    return appointment.customer is not None and appointment.customer.id == viewer.id


def is_owner(appointment: Appointment, viewer: Viewer) -> bool:
    """True when the viewer is the stylist who created the slot."""

    return viewer.is_stylist and appointment.stylist.id == viewer.id


def is_participant(appointment: Appointment, viewer: Viewer) -> bool:
    return is_booked_by_viewer(appointment, viewer) or is_owner(appointment, viewer)


def can_review(appointment: Appointment, viewer: Viewer) -> bool:
    return (
        appointment.status is AppointmentStatus.COMPLETED
        and appointment.review is None
        and is_booked_by_viewer(appointment, viewer)
    )


def can_cancel(appointment: Appointment, viewer: Viewer) -> bool:
    # Open slots have no cancel transition.
    return (
        appointment.status in _CANCELLABLE
        and appointment.customer is not None
        and is_participant(appointment, viewer)
    )


def can_accept_or_decline(appointment: Appointment, viewer: Viewer) -> bool:
    return (
        appointment.status is AppointmentStatus.PENDING
        and appointment.customer is not None
        and is_owner(appointment, viewer)
    )


def can_complete(appointment: Appointment, viewer: Viewer) -> bool:
    return appointment.status is AppointmentStatus.BOOKED and is_owner(appointment, viewer)


def permissions(appointment: Appointment, viewer: Viewer) -> AppointmentPermissions:
    return AppointmentPermissions(
        can_book=can_book(appointment),
        is_booked_by_viewer=is_booked_by_viewer(appointment, viewer),
        is_owner=is_owner(appointment, viewer),
        can_review=can_review(appointment, viewer),
        can_cancel=can_cancel(appointment, viewer),
        can_accept_or_decline=can_accept_or_decline(appointment, viewer),
        can_complete=can_complete(appointment, viewer),
        display_status=appointment.display_status,
    )
