import orjson
from fastapi.responses import ORJSONResponse
from bson import ObjectId, Decimal128
from datetime import datetime, date
from dataclasses import is_dataclass
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, ConfigDict, field_serializer, field_validator
from typing import Any
from pydantic_core import core_schema
import structlog

logger = structlog.get_logger(__name__)


class PyObjectId(ObjectId):
    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.no_info_after_validator_function(
            cls.validate,
            core_schema.union_schema([
                core_schema.str_schema(),
                core_schema.is_instance_schema(ObjectId)
            ])
        )

    @classmethod
    def validate(cls, v: Any, info: Any = None) -> ObjectId:
        if isinstance(v, ObjectId):
            return v
        if isinstance(v, str) and ObjectId.is_valid(v):
            return ObjectId(v)
        raise ValueError("Invalid ObjectId")

    @classmethod
    def __get_pydantic_json_schema__(cls, schema, handler):
        return {"type": "string"}


def to_bson(obj):
    """Recursively convert python values MongoDB cannot store (Decimal, date, Enum)."""
    if isinstance(obj, dict):
        return {k: to_bson(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_bson(i) for i in obj]
    if isinstance(obj, Decimal):
        return Decimal128(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, date) and not isinstance(obj, datetime):
        return datetime(obj.year, obj.month, obj.day)
    return obj


class MongoModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        extra="ignore",
    )

    @field_validator("*", mode="before")
    @classmethod
    def decimal128_to_decimal(cls, value):
        if isinstance(value, Decimal128):
            return value.to_decimal()
        return value

    @field_serializer("*", when_used="json", check_fields=False)
    def serialize_objectid(cls, value):
        if isinstance(value, ObjectId):
            return str(value)
        return value

    def to_mongo(self, **kwargs) -> dict:
        return to_bson(self.model_dump(by_alias=True, **kwargs))

    @classmethod
    def from_mongo(cls, doc):
        if doc is None:
            return None
        return cls.model_validate(doc)


BSON_ENCODERS = (
    (ObjectId, str),
    (Decimal128, lambda v: str(v.to_decimal())),
    # money stays a string so no float rounding reaches the client
    (Decimal, str),
    (Enum, lambda v: v.value),
    ((datetime, date), lambda v: v.isoformat()),
)


def bson_default(obj: Any) -> Any:
    """Recursively turn models, dataclasses and BSON values into orjson-native types."""
    if obj is None or isinstance(obj, (bool, int, float)):
        return obj
    for types, encode in BSON_ENCODERS:
        if isinstance(obj, types):
            return encode(obj)
    if isinstance(obj, str):
        return obj
    if isinstance(obj, dict):
        return {str(k): bson_default(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [bson_default(i) for i in obj]
    if isinstance(obj, BaseModel):
        return bson_default(obj.model_dump(by_alias=True))
    if is_dataclass(obj):
        return bson_default(vars(obj))
    logger.debug("bson_default_fallback", type=type(obj).__name__)
    return str(obj)


# -------------------------------------------------------------------
# ORJSONResponse for FastAPI that supports MongoDB / Decimal data
# -------------------------------------------------------------------
class MongoORJSONResponse(ORJSONResponse):
    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return orjson.dumps(bson_default(content))
