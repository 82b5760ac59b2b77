from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from styleslot.dependencies.services import get_appointment_service, get_viewer
from styleslot.schemas.appointment import (
    Appointment,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentPermissions,
    AppointmentStatus,
    AvailabilityRequest,
    BookingRequest,
    MyAppointmentsFilters,
)
from styleslot.schemas.review import ReviewListResponse, ReviewRequest
from styleslot.schemas.viewer import Viewer
from styleslot.services import AppointmentService
from styleslot.services import eligibility
from styleslot.services.exceptions import ServiceError
from styleslot.services.lifecycle import AppointmentLifecycle
from styleslot.tools.errors import http_error

router = APIRouter()


class AppointmentView(BaseModel):
    appointment: Appointment
    permissions: AppointmentPermissions


def _view(appointment: Appointment, viewer: Viewer) -> AppointmentView:
    return AppointmentView(
        appointment=appointment,
        permissions=eligibility.permissions(appointment, viewer),
    )


async def _open(
    service: AppointmentService, appointment_id: str, viewer: Viewer
) -> AppointmentLifecycle:
    try:
        return await service.open(appointment_id, viewer)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("", response_model=AppointmentListResponse)
async def browse_appointments(
    location: Optional[str] = None,
    date: Optional[str] = None,
    service_id: Optional[int] = None,
    page: Optional[int] = Query(default=None, ge=1),
    per_page: Optional[int] = Query(default=None, ge=1, le=100),
    service: AppointmentService = Depends(get_appointment_service),
):
    filters = AppointmentFilters(
        location=location, date=date, service_id=service_id, page=page, per_page=per_page
    )
    try:
        return await service.browse(filters)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/mine", response_model=AppointmentListResponse)
async def my_appointments(
    status: Optional[AppointmentStatus] = None,
    page: Optional[int] = Query(default=None, ge=1),
    per_page: Optional[int] = Query(default=None, ge=1, le=100),
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    filters = MyAppointmentsFilters(status=status, page=page, per_page=per_page)
    try:
        if viewer.is_stylist:
            return await service.stylist_appointments(viewer, filters)
        return await service.my_appointments(viewer, filters)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/availability", response_model=AppointmentView)
async def create_availability(
    req: AvailabilityRequest,
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    try:
        appointment = await service.create_availability(viewer, req)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ServiceError as exc:
        raise http_error(exc) from exc
    return _view(appointment, viewer)


@router.get("/reviews", response_model=ReviewListResponse)
async def stylist_reviews(
    stylist_id: str,
    service: AppointmentService = Depends(get_appointment_service),
):
    try:
        return await service.stylist_reviews(stylist_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/{appointment_id}", response_model=AppointmentView)
async def get_appointment(
    appointment_id: str,
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    tracker = await _open(service, appointment_id, viewer)
    return _view(tracker.appointment, viewer)


@router.post("/{appointment_id}/book", response_model=AppointmentView)
async def book_appointment(
    appointment_id: str,
    req: BookingRequest,
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    tracker = await _open(service, appointment_id, viewer)
    try:
        appointment = await tracker.book(req.selected_service)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return _view(appointment, viewer)


@router.post("/{appointment_id}/review", response_model=AppointmentView)
async def review_appointment(
    appointment_id: str,
    req: ReviewRequest,
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    tracker = await _open(service, appointment_id, viewer)
    try:
        appointment = await tracker.leave_review(req.rating, req.comment)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return _view(appointment, viewer)


@router.post("/{appointment_id}/{action}", response_model=AppointmentView)
async def transition_appointment(
    appointment_id: str,
    action: str,
    viewer: Viewer = Depends(get_viewer),
    service: AppointmentService = Depends(get_appointment_service),
):
    tracker = await _open(service, appointment_id, viewer)
    handlers = {
        "accept": tracker.accept,
        "decline": tracker.decline,
        "cancel": tracker.cancel,
        "complete": tracker.complete,
    }
    handler = handlers.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unsupported action {action!r}")
    try:
        appointment = await handler()
    except ServiceError as exc:
        raise http_error(exc) from exc
    return _view(appointment, viewer)
