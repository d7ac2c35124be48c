from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from plugins.rent.accounting.bulk import BulkPaymentApplier
from plugins.rent.accounting.ledger import RentLedgerStore
from plugins.rent.accounting.reconciliation import ReconciliationPolicy
from plugins.rent.accounting.reports import PortfolioStatusAggregator
from plugins.rent.services.checkout import StripeCheckout
from plugins.rent.services.collection_sessions import CollectionSessionTracker
from plugins.rent.services.payment_events import PaymentEventProcessor
from plugins.rent.services.properties import PropertyDirectory


@dataclass
class RentContext:
    """Everything the rent routes need, built once per database handle."""
    properties: PropertyDirectory
    ledger: RentLedgerStore
    bulk: BulkPaymentApplier
    sessions: CollectionSessionTracker
    reconciliation: ReconciliationPolicy
    events: PaymentEventProcessor
    reports: PortfolioStatusAggregator
    checkout: StripeCheckout
    today: Callable[[], date] = date.today


def build_context(
    db: AsyncIOMotorDatabase,
    today: Optional[Callable[[], date]] = None,
    checkout: Optional[StripeCheckout] = None,
) -> RentContext:
    properties = PropertyDirectory(db)
    ledger = RentLedgerStore(db, properties=properties, today=today)
    sessions = CollectionSessionTracker(db)
    reconciliation = ReconciliationPolicy(ledger, sessions, today=today)
    return RentContext(
        properties=properties,
        ledger=ledger,
        bulk=BulkPaymentApplier(ledger),
        sessions=sessions,
        reconciliation=reconciliation,
        events=PaymentEventProcessor(db, sessions, reconciliation),
        reports=PortfolioStatusAggregator(ledger, properties=properties, today=today),
        checkout=checkout or StripeCheckout(),
        today=today or date.today,
    )
