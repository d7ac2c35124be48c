from __future__ import annotations
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, FrozenSet
from uuid import uuid4
from enum import Enum
from pydantic import Field, field_validator

from core.MongoORJSONResponse import MongoModel
from utils.date_helper import ensure_date, utcnow


class SessionStatus(str, Enum):
    open = "open"
    paid = "paid"
    past_due = "past_due"
    expired = "expired"
    canceled = "canceled"


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.paid, SessionStatus.expired, SessionStatus.canceled}
)

# Allowed forward moves. Terminal states have none.
ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.open: frozenset(
        {SessionStatus.paid, SessionStatus.past_due, SessionStatus.expired, SessionStatus.canceled}
    ),
    SessionStatus.past_due: frozenset(
        {SessionStatus.paid, SessionStatus.expired, SessionStatus.canceled}
    ),
    SessionStatus.paid: frozenset(),
    SessionStatus.expired: frozenset(),
    SessionStatus.canceled: frozenset(),
}


class StatusChange(MongoModel):
    at: datetime = Field(default_factory=utcnow)
    from_status: SessionStatus
    to_status: SessionStatus


class CollectionSession(MongoModel):
    id: str = Field(default_factory=lambda: str(uuid4()), alias="_id")
    property_id: str
    tenant_email: Optional[str] = None
    tenant_phone: Optional[str] = None
    description: Optional[str] = None

    amount: Decimal
    currency: str = "usd"
    is_recurring: bool = False
    due_date: Optional[date] = None
    status: SessionStatus = SessionStatus.open

    external_reference: Optional[str] = None
    checkout_url: Optional[str] = None

    status_history: List[StatusChange] = Field(default_factory=list)
    reconciled_at: Optional[datetime] = None
    reconciled_period: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, v):
        if v is None:
            return v
        return ensure_date(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def ledger_period(self) -> tuple[int, int]:
        """Ledger month this payment belongs to: the due date's, else the creation month."""
        anchor = self.due_date or self.created_at
        return anchor.year, anchor.month
