"""
Webhook ingestion boundary for payment-processor events.

Events are deduplicated by id, mapped onto collection-session statuses, and a
session that ends up paid is handed to the reconciliation policy. Expected
conditions under at-least-once delivery (duplicates, regressions out of a
terminal status, sessions we never issued) are acknowledged, not raised.
Later invoices of a paid recurring session are written to their own billing
month without touching the session.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from plugins.rent.accounting.reconciliation import ReconciliationPolicy
from plugins.rent.models.collection_session import SessionStatus
from plugins.rent.models.ledger_entry import RentLedgerEntry
from plugins.rent.services.checkout import SESSION_METADATA_KEY
from plugins.rent.services.collection_sessions import CollectionSessionTracker
from utils.date_helper import utcnow
from utils.exceptions import InvalidTransition, NotFound

logger = structlog.get_logger(__name__)

EVENT_COLL = "rent_payment_events"

EVENT_STATUS: Dict[str, SessionStatus] = {
    "checkout.session.async_payment_succeeded": SessionStatus.paid,
    "invoice.payment_succeeded": SessionStatus.paid,
    "checkout.session.async_payment_failed": SessionStatus.past_due,
    "invoice.payment_failed": SessionStatus.past_due,
    "checkout.session.expired": SessionStatus.expired,
    "customer.subscription.deleted": SessionStatus.canceled,
}


def status_for_event(event: Dict[str, Any]) -> Optional[SessionStatus]:
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    if event_type == "checkout.session.completed":
        # delayed payment methods complete first and settle later
        if obj.get("payment_status") in ("paid", "no_payment_required"):
            return SessionStatus.paid
        return None
    return EVENT_STATUS.get(event_type)


def session_id_for_event(event: Dict[str, Any]) -> Optional[str]:
    obj = (event.get("data") or {}).get("object") or {}
    candidates = [
        obj.get("metadata"),
        (obj.get("subscription_details") or {}).get("metadata"),
        ((obj.get("parent") or {}).get("subscription_details") or {}).get("metadata"),
    ]
    for line in ((obj.get("lines") or {}).get("data") or []):
        candidates.append(line.get("metadata"))
    for metadata in candidates:
        if metadata and metadata.get(SESSION_METADATA_KEY):
            return metadata[SESSION_METADATA_KEY]
    return None


def invoice_period(invoice: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    """Billing month of a subscription invoice, from its first line's period start (UTC)."""
    lines = (invoice.get("lines") or {}).get("data") or []
    start = ((lines[0].get("period") or {}).get("start")) if lines else None
    if not start:
        return None
    started = datetime.fromtimestamp(int(start), tz=timezone.utc)
    return started.year, started.month


def invoice_amount(invoice: Dict[str, Any]) -> Optional[Decimal]:
    paid = invoice.get("amount_paid")
    if not paid:
        return None
    return Decimal(int(paid)) / 100


@dataclass
class EventOutcome:
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    changed: bool = False
    duplicate: bool = False
    ignored: Optional[str] = None
    ledger_entry: Optional[RentLedgerEntry] = None


class PaymentEventProcessor:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        sessions: CollectionSessionTracker,
        policy: ReconciliationPolicy,
    ):
        self.events = db[EVENT_COLL]
        self.sessions = sessions
        self.policy = policy

    async def apply_status(
        self,
        session_id: str,
        status: Union[SessionStatus, str],
        invoice: Optional[Dict[str, Any]] = None,
    ) -> EventOutcome:
        outcome = EventOutcome(session_id=session_id, status=SessionStatus(status))
        try:
            transition = await self.sessions.transition(session_id, status)
        except InvalidTransition as e:
            # a late or replayed event for a session that already settled
            logger.warning("session_transition_rejected", session_id=session_id, reason=e.message)
            outcome.ignored = e.kind
            return outcome

        outcome.changed = transition.changed
        session = transition.session
        if session.status == SessionStatus.paid and session.reconciled_at is None:
            outcome.ledger_entry = await self.policy.reconcile(session)
        if invoice is not None and session.status == SessionStatus.paid and session.is_recurring:
            entry = await self._reconcile_invoice(session, invoice)
            if entry is not None:
                outcome.ledger_entry = entry
        return outcome

    async def _reconcile_invoice(self, session, invoice: Dict[str, Any]) -> Optional[RentLedgerEntry]:
        # the first invoice is the checkout payment the session itself stands for
        if invoice.get("billing_reason") == "subscription_create":
            return None
        period = invoice_period(invoice)
        if period is None:
            logger.warning("invoice_without_period", session_id=session.id, invoice_id=invoice.get("id"))
            return None
        year, month = period
        return await self.policy.reconcile_invoice(
            session, invoice.get("id"), year, month, amount=invoice_amount(invoice)
        )

    async def _resolve_session_id(self, event: Dict[str, Any]) -> Optional[str]:
        session_id = session_id_for_event(event)
        if session_id is not None:
            return session_id
        # checkout sessions created before metadata was attached are found by their id
        obj = (event.get("data") or {}).get("object") or {}
        if obj.get("object") == "checkout.session" and obj.get("id"):
            session = await self.sessions.find_by_external_reference(obj["id"])
            if session is not None:
                return session.id
        return None

    async def handle_event(self, event: Dict[str, Any]) -> EventOutcome:
        event_id = event.get("id")
        event_type = event.get("type")
        status = status_for_event(event)
        session_id = await self._resolve_session_id(event) if status is not None else None

        if status is None or session_id is None:
            logger.info("payment_event_ignored", event_id=event_id, event_type=event_type)
            return EventOutcome(event_id=event_id, event_type=event_type, ignored="unhandled_event")

        if event_id and not await self._claim(event_id, event_type, session_id):
            logger.info("payment_event_duplicate", event_id=event_id, event_type=event_type)
            return EventOutcome(
                event_id=event_id, event_type=event_type, session_id=session_id,
                status=status, duplicate=True,
            )

        invoice = None
        if event_type == "invoice.payment_succeeded":
            invoice = (event.get("data") or {}).get("object") or {}

        try:
            outcome = await self.apply_status(session_id, status, invoice=invoice)
        except NotFound:
            logger.warning("payment_event_unknown_session", event_id=event_id, session_id=session_id)
            return EventOutcome(
                event_id=event_id, event_type=event_type, session_id=session_id,
                status=status, ignored=NotFound.kind,
            )
        except Exception:
            # let the processor redeliver
            if event_id:
                await self.events.delete_one({"_id": event_id})
            raise

        outcome.event_id = event_id
        outcome.event_type = event_type
        logger.info(
            "payment_event_processed",
            event_id=event_id, event_type=event_type, session_id=session_id,
            status=status.value, changed=outcome.changed,
            reconciled=outcome.ledger_entry is not None,
        )
        return outcome

    async def _claim(self, event_id: str, event_type: Optional[str], session_id: str) -> bool:
        try:
            await self.events.insert_one({
                "_id": event_id,
                "type": event_type,
                "session_id": session_id,
                "received_at": utcnow(),
            })
        except DuplicateKeyError:
            return False
        return True
