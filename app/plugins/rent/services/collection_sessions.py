from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Union

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument, DESCENDING

from core.MongoORJSONResponse import to_bson
from plugins.rent.models.collection_session import (
    CollectionSession, SessionStatus, StatusChange, ALLOWED_TRANSITIONS,
)
from plugins.rent.utils.prorate import to_cents
from utils.date_helper import utcnow
from utils.exceptions import InvalidAmount, InvalidTransition, NotFound, UnsupportedCurrency

logger = structlog.get_logger(__name__)

SESSION_COLL = "rent_collection_sessions"

SESSION_INDEXES = [
    {"keys": [("property_id", 1), ("created_at", -1)], "name": "property_recent"},
    {"keys": [("external_reference", 1)], "name": "external_reference", "sparse": True},
]

SUPPORTED_CURRENCIES = {"usd"}

# concurrent webhook deliveries can race on one session; each loser re-reads
_MAX_TRANSITION_ATTEMPTS = 5


@dataclass
class SessionTransition:
    session: CollectionSession
    previous_status: SessionStatus
    changed: bool


class CollectionSessionTracker:
    """Checkout attempts raised against a property. Never reads or writes the ledger."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[SESSION_COLL]

    async def create_session(
        self,
        property_id: str,
        amount,
        currency: str = "usd",
        tenant_email: Optional[str] = None,
        due_date: Optional[date] = None,
        is_recurring: bool = False,
        description: Optional[str] = None,
        tenant_phone: Optional[str] = None,
    ) -> CollectionSession:
        amount = to_cents(amount)
        if amount <= 0:
            raise InvalidAmount(f"Amount must be greater than 0, got {amount}")
        currency = (currency or "usd").lower()
        if currency not in SUPPORTED_CURRENCIES:
            raise UnsupportedCurrency(f"Currency {currency} is not supported")

        session = CollectionSession(
            property_id=property_id,
            amount=amount,
            currency=currency,
            tenant_email=tenant_email,
            tenant_phone=tenant_phone,
            description=description,
            due_date=due_date,
            is_recurring=is_recurring,
        )
        await self.collection.insert_one(session.to_mongo())
        logger.info(
            "collection_session_created",
            session_id=session.id, property_id=property_id, amount=str(amount), recurring=is_recurring,
        )
        return session

    async def get(self, session_id: str) -> CollectionSession:
        doc = await self.collection.find_one({"_id": session_id})
        if not doc:
            raise NotFound(f"Collection session {session_id} not found", session_id=session_id)
        return CollectionSession.from_mongo(doc)

    async def find_by_external_reference(self, external_reference: str) -> Optional[CollectionSession]:
        doc = await self.collection.find_one({"external_reference": external_reference})
        return CollectionSession.from_mongo(doc)

    async def list_for_property(self, property_id: str, limit: int = 20) -> List[CollectionSession]:
        cursor = (
            self.collection.find({"property_id": property_id})
            .sort("created_at", DESCENDING)
            .limit(limit)
        )
        return [CollectionSession.from_mongo(d) for d in await cursor.to_list(limit)]

    async def attach_checkout(
        self, session_id: str, external_reference: str, checkout_url: Optional[str] = None
    ) -> CollectionSession:
        doc = await self.collection.find_one_and_update(
            {"_id": session_id},
            {"$set": {
                "external_reference": external_reference,
                "checkout_url": checkout_url,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound(f"Collection session {session_id} not found", session_id=session_id)
        return CollectionSession.from_mongo(doc)

    async def transition(
        self, session_id: str, new_status: Union[SessionStatus, str]
    ) -> SessionTransition:
        """
        Move a session to `new_status`.

        Repeating the current status is a no-op (changed=False). Leaving a
        terminal status raises InvalidTransition. The write is conditional on
        the status read, so of two racing deliveries only one reports changed.
        """
        try:
            new_status = SessionStatus(new_status)
        except ValueError as e:
            raise InvalidTransition(f"Unknown session status: {new_status}", session_id=session_id) from e

        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            session = await self.get(session_id)
            current = session.status
            if current == new_status:
                return SessionTransition(session, current, False)
            if new_status not in ALLOWED_TRANSITIONS[current]:
                reason = "it is already final" if session.is_terminal else "that move is not allowed"
                raise InvalidTransition(
                    f"Session {session_id} cannot move from {current.value} to {new_status.value}: {reason}",
                    session_id=session_id, current=current.value, requested=new_status.value,
                )

            now = utcnow()
            if now <= session.updated_at:
                now = session.updated_at + timedelta(milliseconds=1)
            change = StatusChange(at=now, from_status=current, to_status=new_status)
            doc = await self.collection.find_one_and_update(
                {"_id": session_id, "status": current.value},
                {
                    "$set": {"status": new_status.value, "updated_at": now},
                    "$push": {"status_history": change.to_mongo()},
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                logger.info(
                    "collection_session_status_changed",
                    session_id=session_id, from_status=current.value, to_status=new_status.value,
                )
                return SessionTransition(CollectionSession.from_mongo(doc), current, True)

        raise InvalidTransition(
            f"Session {session_id} kept changing while moving to {new_status.value}",
            session_id=session_id,
        )

    async def update_status(self, session_id: str, new_status: Union[SessionStatus, str]) -> CollectionSession:
        return (await self.transition(session_id, new_status)).session

    async def mark_reconciled(self, session_id: str, year: int, month: int) -> CollectionSession:
        doc = await self.collection.find_one_and_update(
            {"_id": session_id},
            {"$set": to_bson({
                "reconciled_at": utcnow(),
                "reconciled_period": f"{year}-{month:02d}",
            })},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound(f"Collection session {session_id} not found", session_id=session_id)
        return CollectionSession.from_mongo(doc)
