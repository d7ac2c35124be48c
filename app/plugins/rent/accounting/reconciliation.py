from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Tuple

import structlog

from plugins.rent.accounting.ledger import RentLedgerStore
from plugins.rent.models.collection_session import CollectionSession, SessionStatus
from plugins.rent.models.ledger_entry import RentLedgerEntry, ReconciliationSource
from plugins.rent.services.collection_sessions import CollectionSessionTracker
from plugins.rent.utils.prorate import to_cents
from utils.exceptions import StaleWrite

logger = structlog.get_logger(__name__)

NOTE_SEPARATOR = " | "


def target_period(session: CollectionSession) -> Tuple[int, int]:
    """The due date's month wins over the month the payment was captured in."""
    return session.ledger_period()


def build_note(
    session: CollectionSession,
    current: Optional[RentLedgerEntry],
    amount: Optional[Decimal] = None,
    invoice_id: Optional[str] = None,
) -> str:
    amount = session.amount if amount is None else amount
    note = f"Paid online via collection session {session.id}"
    if invoice_id:
        note += f" (invoice {invoice_id})"
    if current is not None and current.is_paid and current.amount != amount:
        note += (
            f"; replaced prior amount {current.amount} ({current.source.describe()}) "
            f"with processor-confirmed {amount}"
        )
    if current is not None and current.notes:
        return f"{current.notes}{NOTE_SEPARATOR}{note}"
    return note


class ReconciliationPolicy:
    """Applies a paid collection session onto the ledger. Data only flows session -> ledger."""

    def __init__(
        self,
        ledger: RentLedgerStore,
        sessions: CollectionSessionTracker,
        today: Optional[Callable[[], date]] = None,
        max_attempts: int = 3,
    ):
        self.ledger = ledger
        self.sessions = sessions
        self._today = today or date.today
        self.max_attempts = max_attempts

    async def reconcile(self, session: CollectionSession) -> Optional[RentLedgerEntry]:
        if session.status != SessionStatus.paid:
            logger.debug("reconciliation_skipped", session_id=session.id, status=session.status.value)
            return None

        year, month = target_period(session)
        return await self._apply(
            session, year, month, session.amount,
            ReconciliationSource(session_id=session.id), stamp_session=True,
        )

    async def reconcile_invoice(
        self,
        session: CollectionSession,
        invoice_id: str,
        year: int,
        month: int,
        amount=None,
    ) -> Optional[RentLedgerEntry]:
        """
        Record a later billing cycle of a paid recurring session.

        The invoice lands on its own billing month. The session itself is not
        changed: it stays paid and keeps the period it was first reconciled to.
        """
        if not session.is_recurring or session.status != SessionStatus.paid:
            logger.debug("invoice_reconciliation_skipped", session_id=session.id, invoice_id=invoice_id)
            return None

        amount = session.amount if amount is None else to_cents(amount)
        source = ReconciliationSource(session_id=session.id, invoice_id=invoice_id)
        return await self._apply(session, year, month, amount, source, stamp_session=False)

    async def _apply(
        self,
        session: CollectionSession,
        year: int,
        month: int,
        amount: Decimal,
        source: ReconciliationSource,
        stamp_session: bool,
    ) -> RentLedgerEntry:
        for attempt in range(1, self.max_attempts + 1):
            current = await self.ledger.get(session.property_id, year, month)
            if current is not None and current.references_session(session.id):
                logger.info(
                    "reconciliation_already_applied",
                    session_id=session.id, invoice_id=source.invoice_id, year=year, month=month,
                )
                # an earlier attempt may have written the ledger and then failed to stamp
                if stamp_session and session.reconciled_at is None:
                    await self.sessions.mark_reconciled(session.id, year, month)
                return current

            if current is not None and current.is_paid and current.amount != amount:
                logger.warning(
                    "reconciliation_overwrites_amount",
                    session_id=session.id, property_id=session.property_id, year=year, month=month,
                    prior_amount=str(current.amount), new_amount=str(amount),
                    prior_source=current.source.kind,
                )

            # write against the exact version read so a racing manual edit is re-read and noted
            try:
                entry = await self.ledger.mark_paid(
                    session.property_id, year, month, amount,
                    paid_date=self._today(),
                    notes=build_note(session, current, amount, source.invoice_id),
                    source=source,
                    expected_updated_at=current.updated_at if current else None,
                    expect_new=current is None,
                )
            except StaleWrite:
                logger.info("reconciliation_retry", session_id=session.id, attempt=attempt)
                continue

            if stamp_session:
                await self.sessions.mark_reconciled(session.id, year, month)
            logger.info(
                "reconciliation_applied",
                session_id=session.id, invoice_id=source.invoice_id, property_id=session.property_id,
                year=year, month=month, amount=str(amount),
            )
            return entry

        raise StaleWrite(
            f"Could not reconcile session {session.id} after {self.max_attempts} attempts",
            session_id=session.id,
        )
