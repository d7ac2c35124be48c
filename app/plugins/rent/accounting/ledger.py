from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import DuplicateKeyError

from core.config import settings
from core.MongoORJSONResponse import to_bson
from plugins.rent.models.ledger_entry import (
    RentLedgerEntry, LedgerStatus, LedgerMutation, ManualSource
)
from plugins.rent.services.properties import PropertyDirectory
from plugins.rent.utils.prorate import (
    to_cents, to_decimal, days_in_month, covered_days, coverage_from_fields, is_consistent,
    prorated_amount,
)
from utils.date_helper import utcnow, validate_period
from utils.exceptions import InvalidAmount, InvalidCoverage, StaleWrite

logger = structlog.get_logger(__name__)

LEDGER_COLL = "rent_ledger_entries"

LEDGER_INDEXES = [
    {"keys": [("property_id", 1), ("year", 1), ("month", 1)], "unique": True, "name": "uniq_property_period"},
    {"keys": [("year", 1), ("month", 1), ("status", 1)], "name": "period_status"},
]

# builds (fields to set, audit record) from the entry as it is now
Builder = Callable[[Optional[RentLedgerEntry]], Tuple[dict, LedgerMutation]]


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RentLedgerStore:
    """
    Per-(property, year, month) rent records.

    Every write reads the current row and applies a compare-and-set on its
    `version`, so concurrent writers to one period are linearized and each
    write's audit record sees the true prior state. Without an expectation the
    write retries until it wins (last write wins); with `expected_updated_at`
    a mismatch raises StaleWrite instead.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        properties: Optional[PropertyDirectory] = None,
        today: Optional[Callable[[], date]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.collection = db[LEDGER_COLL]
        self.properties = properties
        self._today = today or date.today
        self.max_attempts = max_attempts or settings.LEDGER_WRITE_ATTEMPTS

    @staticmethod
    def _key(property_id: str, year: int, month: int) -> dict:
        return {"property_id": property_id, "year": year, "month": month}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, property_id: str, year: int, month: int) -> Optional[RentLedgerEntry]:
        year, month = validate_period(year, month)
        doc = await self.collection.find_one(self._key(property_id, year, month))
        return RentLedgerEntry.from_mongo(doc)

    async def get_period_status_for_all(
        self, property_ids: Iterable[str], year: int, month: int
    ) -> Dict[str, Optional[RentLedgerEntry]]:
        """One query for every property; properties without a row map to None."""
        year, month = validate_period(year, month)
        ids = list(dict.fromkeys(property_ids))
        status: Dict[str, Optional[RentLedgerEntry]] = {pid: None for pid in ids}
        if not ids:
            return status
        cursor = self.collection.find({"property_id": {"$in": ids}, "year": year, "month": month})
        for doc in await cursor.to_list(None):
            entry = RentLedgerEntry.from_mongo(doc)
            status[entry.property_id] = entry
        return status

    async def get_current_month_status_for_all(
        self, property_ids: Iterable[str], today: Optional[date] = None
    ) -> Dict[str, Optional[RentLedgerEntry]]:
        today = today or self._today()
        return await self.get_period_status_for_all(property_ids, today.year, today.month)

    async def list_for_property(self, property_id: str, year: Optional[int] = None) -> List[RentLedgerEntry]:
        query = {"property_id": property_id}
        if year is not None:
            query["year"] = year
        cursor = self.collection.find(query).sort([("year", DESCENDING), ("month", DESCENDING)])
        return [RentLedgerEntry.from_mongo(d) for d in await cursor.to_list(None)]

    async def monthly_income(
        self, year: int, month: int, property_ids: Optional[Iterable[str]] = None
    ) -> Decimal:
        """Sum of paid amounts for the period. Unpaid periods contribute nothing."""
        year, month = validate_period(year, month)
        query = {"year": year, "month": month, "status": LedgerStatus.paid.value}
        if property_ids is not None:
            query["property_id"] = {"$in": list(property_ids)}
        docs = await self.collection.find(query, {"amount": 1}).to_list(None)
        return sum((to_decimal(d["amount"]) for d in docs), Decimal("0.00"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def mark_paid(
        self,
        property_id: str,
        year: int,
        month: int,
        amount,
        paid_date: Optional[date] = None,
        notes: Optional[str] = None,
        days_covered: Optional[int] = None,
        move_in: Optional[date] = None,
        move_out: Optional[date] = None,
        *,
        source=None,
        expected_updated_at: Optional[datetime] = None,
        expect_new: bool = False,
    ) -> RentLedgerEntry:
        year, month = validate_period(year, month)
        amount = to_cents(amount)
        if amount <= 0:
            raise InvalidAmount(f"Paid amount must be positive, got {amount}", property_id=property_id)

        if days_covered is not None and not 1 <= days_covered <= days_in_month(year, month):
            raise InvalidCoverage(
                f"Days covered must be between 1 and {days_in_month(year, month)}, got {days_covered}"
            )
        coverage = coverage_from_fields(days_covered, move_in, move_out)
        if coverage is not None:
            covered_days(year, month, coverage)
            if self.properties is not None:
                prop = await self.properties.get_property(property_id)
                if not is_consistent(amount, prop.monthly_rent, year, month, coverage):
                    expected = prorated_amount(prop.monthly_rent, year, month, coverage)
                    raise InvalidCoverage(
                        f"Amount {amount} does not match prorated rent {expected} for the days covered",
                        expected=str(expected),
                    )

        source = source or ManualSource()
        fields = {
            "status": LedgerStatus.paid,
            "amount": amount,
            "paid_date": paid_date or self._today(),
            "notes": notes,
            "days_covered": days_covered,
            "move_in_date": move_in,
            "move_out_date": move_out,
            "source": source.model_dump(),
        }

        def build(current: Optional[RentLedgerEntry]):
            return fields, LedgerMutation(
                action="paid",
                source=source,
                prior_status=current.status if current else None,
                prior_amount=current.amount if current else None,
                new_status=LedgerStatus.paid,
                new_amount=amount,
            )

        entry = await self._write(
            property_id, year, month, build,
            expected_updated_at=expected_updated_at, expect_new=expect_new,
        )
        logger.info(
            "ledger_marked_paid",
            property_id=property_id, year=year, month=month,
            amount=str(amount), source=source.kind, prorated=entry.has_proration,
        )
        return entry

    async def mark_unpaid(
        self,
        property_id: str,
        year: int,
        month: int,
        *,
        source=None,
        expected_updated_at: Optional[datetime] = None,
    ) -> RentLedgerEntry:
        year, month = validate_period(year, month)
        source = source or ManualSource()

        nominal = Decimal("0.00")
        if self.properties is not None:
            prop = await self.properties.get_property(property_id)
            nominal = to_cents(prop.monthly_rent)

        def build(current: Optional[RentLedgerEntry]):
            amount = current.amount if current else nominal
            fields = {
                "status": LedgerStatus.unpaid,
                "amount": amount,
                "paid_date": None,
                "days_covered": None,
                "move_in_date": None,
                "move_out_date": None,
                "source": source.model_dump(),
            }
            if current is None:
                fields["notes"] = None
            return fields, LedgerMutation(
                action="unpaid",
                source=source,
                prior_status=current.status if current else None,
                prior_amount=current.amount if current else None,
                new_status=LedgerStatus.unpaid,
                new_amount=amount,
            )

        entry = await self._write(property_id, year, month, build, expected_updated_at=expected_updated_at)
        logger.info("ledger_marked_unpaid", property_id=property_id, year=year, month=month, source=source.kind)
        return entry

    async def _write(
        self,
        property_id: str,
        year: int,
        month: int,
        build: Builder,
        expected_updated_at: Optional[datetime] = None,
        expect_new: bool = False,
    ) -> RentLedgerEntry:
        key = self._key(property_id, year, month)
        expected_updated_at = _naive_utc(expected_updated_at)
        guarded = expected_updated_at is not None or expect_new

        for attempt in range(1, self.max_attempts + 1):
            current = RentLedgerEntry.from_mongo(await self.collection.find_one(key))

            if expect_new and current is not None:
                raise StaleWrite(
                    f"Ledger entry for {year}-{month:02d} was created concurrently",
                    property_id=property_id,
                )
            if expected_updated_at is not None and (current is None or current.updated_at != expected_updated_at):
                raise StaleWrite(
                    f"Ledger entry for {year}-{month:02d} changed since {expected_updated_at.isoformat()}",
                    property_id=property_id,
                )

            fields, mutation = build(current)
            now = utcnow()
            if current is not None and now <= current.updated_at:
                now = current.updated_at + timedelta(milliseconds=1)
            mutation.at = now

            if current is None:
                entry = RentLedgerEntry(
                    **key, **fields, history=[mutation], version=1, created_at=now, updated_at=now
                )
                try:
                    result = await self.collection.insert_one(entry.to_mongo(exclude={"id"}))
                except DuplicateKeyError:
                    if guarded:
                        raise StaleWrite(
                            f"Ledger entry for {year}-{month:02d} was created concurrently",
                            property_id=property_id,
                        )
                    logger.debug("ledger_insert_race", property_id=property_id, year=year, month=month, attempt=attempt)
                    continue
                entry.id = result.inserted_id
                return entry

            update = {
                "$set": {**to_bson(fields), "updated_at": now, "version": current.version + 1},
                "$push": {"history": mutation.to_mongo()},
            }
            doc = await self.collection.find_one_and_update(
                {**key, "version": current.version},
                update,
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                return RentLedgerEntry.from_mongo(doc)
            if guarded:
                raise StaleWrite(
                    f"Ledger entry for {year}-{month:02d} changed during update",
                    property_id=property_id,
                )
            logger.debug("ledger_cas_retry", property_id=property_id, year=year, month=month, attempt=attempt)

        raise StaleWrite(
            f"Gave up writing {year}-{month:02d} after {self.max_attempts} attempts",
            property_id=property_id,
        )
