from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

import structlog
from pymongo.errors import PyMongoError

from plugins.rent.accounting.ledger import RentLedgerStore
from plugins.rent.models.ledger_entry import RentLedgerEntry
from plugins.rent.utils.prorate import to_cents
from utils.date_helper import Period, iter_months
from utils.exceptions import InvalidAmount, LedgerError

logger = structlog.get_logger(__name__)


@dataclass
class BulkFailure:
    year: int
    month: int
    error: str
    message: str


@dataclass
class BulkApplication:
    property_id: str
    requested: List[Period] = field(default_factory=list)
    applied: List[RentLedgerEntry] = field(default_factory=list)
    failures: List[BulkFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    @property
    def remaining(self) -> List[Period]:
        """Periods to resubmit. Re-applying a period is safe, entries are idempotent."""
        return [(f.year, f.month) for f in self.failures]


class BulkPaymentApplier:
    def __init__(self, ledger: RentLedgerStore):
        self.ledger = ledger

    async def apply_bulk(
        self,
        property_id: str,
        start_month: int,
        start_year: int,
        end_month: int,
        end_year: int,
        amount_per_month,
        paid_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> BulkApplication:
        """
        Mark every month from start to end (inclusive) as paid.

        There is no cross-month atomicity: each month is written on its own and
        stays written. A month that fails is recorded and the run moves on.
        """
        periods = list(iter_months((start_year, start_month), (end_year, end_month)))
        amount = to_cents(amount_per_month)
        if amount <= 0:
            raise InvalidAmount(f"Amount per month must be positive, got {amount}")

        result = BulkApplication(property_id=property_id, requested=periods)
        for year, month in periods:
            try:
                entry = await self.ledger.mark_paid(
                    property_id, year, month, amount, paid_date=paid_date, notes=notes
                )
            except LedgerError as e:
                result.failures.append(BulkFailure(year, month, e.kind, e.message))
                logger.warning("bulk_period_failed", property_id=property_id, year=year, month=month, error=e.kind)
                continue
            except PyMongoError as e:
                result.failures.append(BulkFailure(year, month, "storage_error", str(e)))
                logger.warning("bulk_period_failed", property_id=property_id, year=year, month=month, error="storage_error")
                continue
            result.applied.append(entry)

        logger.info(
            "bulk_payment_applied",
            property_id=property_id,
            months=len(periods),
            applied=len(result.applied),
            failed=len(result.failures),
        )
        return result
