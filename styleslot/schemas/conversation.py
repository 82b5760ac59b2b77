from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator


class Message(BaseModel):
    id: str
    content: str
    created_at: datetime
    sent_by_me: bool = False
    sender_id: Optional[str] = None

    @field_validator("id", "sender_id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class Participant(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class Conversation(BaseModel):
    id: str
    other_user: Optional[Participant] = None
    appointment_id: Optional[str] = None
    messages: List[Message] = []
    unread_count: int = 0

    @field_validator("id", "appointment_id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class ConversationSummary(BaseModel):
    id: str
    other_user: Participant
    last_message: Optional[Message] = None
    unread_count: int = 0

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class SendMessageRequest(BaseModel):
    content: str

    @field_validator("content")
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message content must not be blank")
        return value
