from __future__ import annotations
from decimal import Decimal
from typing import Optional
from pydantic import Field, model_validator, field_validator

from core.MongoORJSONResponse import MongoModel


class PropertyRef(MongoModel):
    """Read-only view of a property, as far as rent is concerned."""

    id: str = Field(..., alias="_id")
    owner_id: Optional[str] = None
    address: Optional[str] = None
    nickname: Optional[str] = None
    tenant_name: Optional[str] = None
    tenant_email: Optional[str] = None

    monthly_rent: Decimal = Decimal("0")
    # None when the owner never set one; such rent is never reported overdue
    rent_due_day: Optional[int] = Field(None, ge=1, le=31)
    tenant_present: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v) if v is not None else v

    @model_validator(mode="before")
    @classmethod
    def derive_tenant_present(cls, data):
        # older documents only record the tenant's name
        if isinstance(data, dict) and data.get("tenant_present") is None:
            data = dict(data)
            data["tenant_present"] = bool(data.get("tenant_name"))
        return data

    @property
    def label(self) -> str:
        return self.nickname or self.address or self.id
