from __future__ import annotations
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Literal, List, Union, Annotated
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from core.MongoORJSONResponse import MongoModel, PyObjectId
from utils.date_helper import ensure_date, utcnow


class LedgerStatus(str, Enum):
    paid = "paid"
    unpaid = "unpaid"
    partial = "partial"


# ---------------- Mutation source (who wrote the entry) ----------------
class ManualSource(BaseModel):
    kind: Literal["manual"] = "manual"

    def describe(self) -> str:
        return "manual entry"


class ReconciliationSource(BaseModel):
    kind: Literal["reconciliation"] = "reconciliation"
    session_id: str
    invoice_id: Optional[str] = None

    def describe(self) -> str:
        if self.invoice_id:
            return f"collection session {self.session_id} invoice {self.invoice_id}"
        return f"collection session {self.session_id}"


LedgerMutationSource = Annotated[
    Union[ManualSource, ReconciliationSource], Field(discriminator="kind")
]


class LedgerMutation(MongoModel):
    at: datetime = Field(default_factory=utcnow)
    action: Literal["paid", "unpaid"]
    source: LedgerMutationSource = Field(default_factory=ManualSource)
    prior_status: Optional[LedgerStatus] = None
    prior_amount: Optional[Decimal] = None
    new_status: LedgerStatus
    new_amount: Decimal


# ---------------- RentLedgerEntry ----------------
class RentLedgerEntry(MongoModel):
    """One property-month of rent. Unique on (property_id, year, month)."""

    id: Optional[PyObjectId] = Field(None, alias="_id")

    property_id: str
    year: int = Field(..., ge=1, le=9999)
    month: int = Field(..., ge=1, le=12)

    amount: Decimal = Decimal("0.00")
    status: LedgerStatus = LedgerStatus.unpaid
    paid_date: Optional[date] = None

    # proration metadata
    days_covered: Optional[int] = Field(None, ge=1, le=31)
    move_in_date: Optional[date] = None
    move_out_date: Optional[date] = None

    notes: Optional[str] = None

    # audit
    source: LedgerMutationSource = Field(default_factory=ManualSource)
    history: List[LedgerMutation] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("paid_date", "move_in_date", "move_out_date", mode="before")
    @classmethod
    def normalize_date(cls, v):
        if v is None:
            return v
        return ensure_date(v)

    @property
    def period(self) -> tuple[int, int]:
        return self.year, self.month

    @property
    def has_proration(self) -> bool:
        return any(
            v is not None for v in (self.days_covered, self.move_in_date, self.move_out_date)
        )

    @property
    def is_paid(self) -> bool:
        return self.status == LedgerStatus.paid

    def references_session(self, session_id: str) -> bool:
        """True when this session has already written to the entry."""
        sources = [self.source] + [m.source for m in self.history]
        return any(
            isinstance(s, ReconciliationSource) and s.session_id == session_id
            for s in sources
        )
