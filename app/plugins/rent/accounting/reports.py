from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from plugins.rent.accounting.ledger import RentLedgerStore
from plugins.rent.models.ledger_entry import RentLedgerEntry, LedgerStatus
from plugins.rent.models.property import PropertyRef
from plugins.rent.services.properties import PropertyDirectory
from utils.date_helper import validate_period

logger = structlog.get_logger(__name__)


class RentStatus(str, Enum):
    paid = "Paid"
    partial = "Partial"
    unpaid = "Unpaid"
    overdue = "Overdue"


def classify(prop: PropertyRef, entry: Optional[RentLedgerEntry], today: date) -> RentStatus:
    """Status of the current month's rent for one property."""
    if entry is not None and entry.status == LedgerStatus.paid:
        # prorated payments stay Paid in the ledger; Partial is a display label
        return RentStatus.partial if entry.has_proration else RentStatus.paid
    if entry is not None and entry.status == LedgerStatus.partial:
        return RentStatus.partial
    if prop.rent_due_day is not None and today.day > prop.rent_due_day:
        return RentStatus.overdue
    return RentStatus.unpaid


def classify_period(
    prop: PropertyRef, entry: Optional[RentLedgerEntry], year: int, month: int, today: date
) -> RentStatus:
    """Like classify, for any month: unpaid past months are overdue, future months never are."""
    status = classify(prop, entry, today)
    if status in (RentStatus.paid, RentStatus.partial) or prop.rent_due_day is None:
        return status
    selected, current = (year, month), (today.year, today.month)
    if selected < current:
        return RentStatus.overdue
    if selected > current:
        return RentStatus.unpaid
    return status


def monthly_income(entries: Iterable[Optional[RentLedgerEntry]], year: int, month: int) -> Decimal:
    """Income counts paid entries of the period only, never the nominal rent."""
    return sum(
        (e.amount for e in entries
         if e is not None and e.status == LedgerStatus.paid and (e.year, e.month) == (year, month)),
        Decimal("0.00"),
    )


def _percent(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int((Decimal(part) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PortfolioRow:
    property_id: str
    label: str
    tenant_name: Optional[str]
    status: RentStatus
    monthly_rent: Decimal
    amount: Decimal
    paid_date: Optional[date] = None
    rent_due_day: Optional[int] = None


@dataclass
class PortfolioSnapshot:
    year: int
    month: int
    as_of: date
    rows: List[PortfolioRow] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    percentages: Dict[str, int] = field(default_factory=dict)
    collection_rate: int = 0
    expected_rent: Decimal = Decimal("0.00")
    income: Decimal = Decimal("0.00")
    excluded: List[str] = field(default_factory=list)


class PortfolioStatusAggregator:
    """Read-side join of tenant-occupied properties against one month of the ledger."""

    def __init__(
        self,
        ledger: RentLedgerStore,
        properties: Optional[PropertyDirectory] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.ledger = ledger
        self.properties = properties
        self._today = today or date.today

    async def snapshot(
        self,
        properties: List[PropertyRef],
        today: Optional[date] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> PortfolioSnapshot:
        today = today or self._today()
        year, month = validate_period(year or today.year, month or today.month)

        occupied = [p for p in properties if p.tenant_present]
        snapshot = PortfolioSnapshot(
            year=year, month=month, as_of=today,
            excluded=[p.id for p in properties if not p.tenant_present],
        )
        entries = await self.ledger.get_period_status_for_all([p.id for p in occupied], year, month)

        for prop in occupied:
            entry = entries.get(prop.id)
            status = classify_period(prop, entry, year, month, today)
            snapshot.rows.append(PortfolioRow(
                property_id=prop.id,
                label=prop.label,
                tenant_name=prop.tenant_name,
                status=status,
                monthly_rent=prop.monthly_rent,
                amount=entry.amount if entry is not None else prop.monthly_rent,
                paid_date=entry.paid_date if entry is not None else None,
                rent_due_day=prop.rent_due_day,
            ))

        total = len(snapshot.rows)
        for status in RentStatus:
            count = sum(1 for r in snapshot.rows if r.status == status)
            snapshot.counts[status.value] = count
            snapshot.percentages[status.value] = _percent(count, total)
        collected = snapshot.counts[RentStatus.paid.value] + snapshot.counts[RentStatus.partial.value]
        snapshot.collection_rate = _percent(collected, total)
        snapshot.expected_rent = sum((p.monthly_rent for p in occupied), Decimal("0.00"))
        snapshot.income = monthly_income(entries.values(), year, month)

        logger.info(
            "portfolio_snapshot",
            year=year, month=month, properties=total, collection_rate=snapshot.collection_rate,
        )
        return snapshot

    async def snapshot_for_owner(
        self,
        owner_id: str,
        today: Optional[date] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> PortfolioSnapshot:
        if self.properties is None:
            raise RuntimeError("PortfolioStatusAggregator needs a PropertyDirectory to look up owners")
        props = await self.properties.list_for_owner(owner_id)
        return await self.snapshot(props, today=today, year=year, month=month)

    async def snapshot_for_properties(
        self,
        property_ids: Iterable[str],
        today: Optional[date] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> PortfolioSnapshot:
        if self.properties is None:
            raise RuntimeError("PortfolioStatusAggregator needs a PropertyDirectory to look up properties")
        ids = list(dict.fromkeys(property_ids))
        found = await self.properties.get_properties(ids)
        missing = [pid for pid in ids if pid not in found]
        if missing:
            logger.warning("portfolio_properties_missing", property_ids=missing)
        return await self.snapshot([found[pid] for pid in ids if pid in found], today=today, year=year, month=month)
