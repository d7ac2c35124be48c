from typing import Dict, Iterable, List
from motor.motor_asyncio import AsyncIOMotorDatabase
import structlog

from plugins.rent.models.property import PropertyRef
from utils.exceptions import NotFound

logger = structlog.get_logger(__name__)

PROPERTY_COLL = "properties"

_FIELDS = {
    "owner_id": 1, "address": 1, "nickname": 1, "tenant_name": 1, "tenant_email": 1,
    "monthly_rent": 1, "rent_due_day": 1, "tenant_present": 1,
}


class PropertyDirectory:
    """Read-only property provider. Properties are owned by the property module."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_property(self, property_id: str) -> PropertyRef:
        doc = await self.db[PROPERTY_COLL].find_one({"_id": property_id}, _FIELDS)
        if not doc:
            raise NotFound(f"Property {property_id} not found", property_id=property_id)
        return PropertyRef.from_mongo(doc)

    async def get_properties(self, property_ids: Iterable[str]) -> Dict[str, PropertyRef]:
        ids = list(dict.fromkeys(property_ids))
        if not ids:
            return {}
        docs = await self.db[PROPERTY_COLL].find({"_id": {"$in": ids}}, _FIELDS).to_list(None)
        return {str(d["_id"]): PropertyRef.from_mongo(d) for d in docs}

    async def list_for_owner(self, owner_id: str) -> List[PropertyRef]:
        docs = await (
            self.db[PROPERTY_COLL]
            .find({"owner_id": owner_id}, _FIELDS)
            .sort("_id", 1)
            .to_list(None)
        )
        logger.debug("properties_listed", owner_id=owner_id, count=len(docs))
        return [PropertyRef.from_mongo(d) for d in docs]
