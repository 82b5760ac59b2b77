from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None

    @field_validator("comment")
    def _strip_comment(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class Review(BaseModel):
    id: str
    rating: int
    comment: Optional[str] = None
    appointment_id: Optional[str] = None
    customer_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("id", "appointment_id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class ReviewListResponse(BaseModel):
    reviews: List[Review]
    average_rating: Optional[float] = None
