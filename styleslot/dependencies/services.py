from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException

from styleslot.clients.api import BackendClient
from styleslot.clients.cable import ActionCableChannel, PushChannel
from styleslot.config import Settings, get_settings
from styleslot.schemas.viewer import Role, Viewer
from styleslot.services import AppointmentService, ConversationService, ConversationSync
from styleslot.services.mock_store import get_mock_store


@lru_cache(maxsize=1)
def get_backend_client_cached() -> BackendClient:
    settings = get_settings()
    return BackendClient(
        settings.api_base_url,
        timeout=settings.api_timeout,
        use_mock_data=settings.use_mock_data,
        token=settings.api_token,
    )


def get_backend_client(settings: Settings = Depends(get_settings)) -> BackendClient:
    return get_backend_client_cached()


def build_push_channel(settings: Settings, client: BackendClient) -> PushChannel | None:
    """Return the push source for this deployment, or ``None`` for poll-only."""

    if not settings.push_enabled:
        return None
    if client.use_mock_data:
        return get_mock_store().push
    if not settings.cable_url:
        return None
    return ActionCableChannel(settings.cable_url, client.token)


def build_conversation_sync(viewer: Viewer, settings: Settings | None = None) -> ConversationSync:
    """Create a session owner for a screen or controller that shows conversations."""

    settings = settings or get_settings()
    client = get_backend_client_cached()
    return ConversationSync(
        ConversationService(client),
        viewer,
        push=build_push_channel(settings, client),
        poll_interval=settings.poll_interval,
    )


def get_appointment_service(
    client: BackendClient = Depends(get_backend_client),
) -> AppointmentService:
    return AppointmentService(client)


def get_conversation_service(
    client: BackendClient = Depends(get_backend_client),
) -> ConversationService:
    return ConversationService(client)


def get_viewer(
    x_viewer_id: str | None = Header(default=None),
    x_viewer_role: str | None = Header(default=None),
) -> Viewer:
    if not x_viewer_id or not x_viewer_role:
        raise HTTPException(status_code=401, detail="X-Viewer-Id and X-Viewer-Role headers are required")
    try:
        role = Role(x_viewer_role.strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown viewer role {x_viewer_role!r}") from exc
    return Viewer(id=x_viewer_id.strip(), role=role)
