from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class Role(str, Enum):
    CUSTOMER = "customer"
    STYLIST = "stylist"


class Viewer(BaseModel):
    """The authenticated actor whose role and identity drive eligibility."""

    id: str
    role: Role
    name: Optional[str] = None

    @field_validator("id", mode="before")
    def _coerce_id(cls, value):
        return str(value) if value is not None else value

    @property
    def is_stylist(self) -> bool:
        return self.role is Role.STYLIST

    @property
    def is_customer(self) -> bool:
        return self.role is Role.CUSTOMER
