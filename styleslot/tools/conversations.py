from fastapi import APIRouter, Depends

from styleslot.dependencies.services import get_conversation_service, get_viewer
from styleslot.schemas.conversation import (
    Conversation,
    ConversationListResponse,
    SendMessageRequest,
)
from styleslot.schemas.viewer import Viewer
from styleslot.services import ConversationService, MessageLog
from styleslot.services.exceptions import ServiceError
from styleslot.tools.errors import http_error

router = APIRouter()


def _ordered(conversation: Conversation) -> Conversation:
    log = MessageLog(conversation.messages)
    return conversation.model_copy(update={"messages": log.messages})


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    viewer: Viewer = Depends(get_viewer),
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        return await service.list_conversations(viewer)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/for-appointment/{appointment_id}", response_model=Conversation)
async def open_conversation(
    appointment_id: str,
    viewer: Viewer = Depends(get_viewer),
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        return _ordered(await service.create_for_appointment(appointment_id, viewer))
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    viewer: Viewer = Depends(get_viewer),
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        return _ordered(await service.get(conversation_id, viewer))
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{conversation_id}/messages", response_model=Conversation)
async def send_message(
    conversation_id: str,
    req: SendMessageRequest,
    viewer: Viewer = Depends(get_viewer),
    service: ConversationService = Depends(get_conversation_service),
):
    # The sent message comes back through a fresh read, never a local echo.
    try:
        await service.send_message(conversation_id, viewer, req.content)
        return _ordered(await service.get(conversation_id, viewer))
    except ServiceError as exc:
        raise http_error(exc) from exc
