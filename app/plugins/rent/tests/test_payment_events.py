from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from plugins.rent.models.collection_session import SessionStatus
from plugins.rent.services.checkout import SESSION_METADATA_KEY
from plugins.rent.services.payment_events import (
    EVENT_COLL, PaymentEventProcessor, invoice_amount, invoice_period, session_id_for_event, status_for_event,
)


def checkout_event(event_id, session_id, event_type="checkout.session.completed", payment_status="paid"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "payment_status": payment_status,
            "metadata": {SESSION_METADATA_KEY: session_id},
        }},
    }


def invoice_event(event_id, session_id, event_type):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": "in_test_1",
            "subscription_details": {"metadata": {SESSION_METADATA_KEY: session_id}},
        }},
    }


def billing_start(year, month):
    return int(datetime(year, month, 1, tzinfo=timezone.utc).timestamp())


def cycle_invoice_event(event_id, session_id, invoice_id, period_start, billing_reason="subscription_cycle"):
    return {
        "id": event_id,
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "id": invoice_id,
            "object": "invoice",
            "billing_reason": billing_reason,
            "amount_paid": 150000,
            "subscription_details": {"metadata": {SESSION_METADATA_KEY: session_id}},
            "lines": {"data": [{"period": {"start": period_start}}]},
        }},
    }


@pytest.fixture
def processor(db, sessions, policy):
    return PaymentEventProcessor(db, sessions, policy)


@pytest.fixture
async def open_session(sessions, seed_property):
    await seed_property("prop-a")
    return await sessions.create_session("prop-a", "1500", due_date=date(2024, 5, 1))


@pytest.fixture
async def recurring_session(sessions, seed_property):
    await seed_property("prop-a")
    return await sessions.create_session("prop-a", "1500", due_date=date(2024, 5, 1), is_recurring=True)


class TestEventMapping:

    @pytest.mark.parametrize("event_type,expected", [
        ("checkout.session.async_payment_succeeded", SessionStatus.paid),
        ("invoice.payment_succeeded", SessionStatus.paid),
        ("checkout.session.async_payment_failed", SessionStatus.past_due),
        ("invoice.payment_failed", SessionStatus.past_due),
        ("checkout.session.expired", SessionStatus.expired),
        ("customer.subscription.deleted", SessionStatus.canceled),
        ("charge.refunded", None),
    ])
    def test_status_for_event(self, event_type, expected):
        assert status_for_event({"type": event_type, "data": {"object": {}}}) == expected

    def test_completed_checkout_only_counts_when_paid(self):
        assert status_for_event(checkout_event("evt_1", "s")) == SessionStatus.paid
        assert status_for_event(checkout_event("evt_1", "s", payment_status="unpaid")) is None

    def test_session_id_from_metadata_locations(self):
        assert session_id_for_event(checkout_event("evt_1", "sess-1")) == "sess-1"
        assert session_id_for_event(invoice_event("evt_2", "sess-2", "invoice.payment_failed")) == "sess-2"
        line_item = {"data": {"object": {"lines": {"data": [{"metadata": {SESSION_METADATA_KEY: "sess-3"}}]}}}}
        assert session_id_for_event(line_item) == "sess-3"
        assert session_id_for_event({"data": {"object": {"metadata": {}}}}) is None

    def test_invoice_billing_month_and_amount(self):
        invoice = cycle_invoice_event("evt_1", "s", "in_1", billing_start(2024, 6))["data"]["object"]
        assert invoice_period(invoice) == (2024, 6)
        assert invoice_amount(invoice) == Decimal("1500")
        assert invoice_period({"lines": {"data": []}}) is None
        assert invoice_amount({"amount_paid": 0}) is None


class TestHandleEvent:

    @pytest.mark.asyncio
    async def test_paid_checkout_reconciles_ledger(self, processor, open_session, ledger):
        outcome = await processor.handle_event(checkout_event("evt_1", open_session.id))

        assert outcome.changed
        assert outcome.ledger_entry is not None
        entry = await ledger.get("prop-a", 2024, 5)
        assert entry.references_session(open_session.id)

    @pytest.mark.asyncio
    async def test_duplicate_event_id_is_acknowledged(self, db, processor, open_session, ledger):
        await processor.handle_event(checkout_event("evt_1", open_session.id))
        outcome = await processor.handle_event(checkout_event("evt_1", open_session.id))

        assert outcome.duplicate
        assert (await ledger.get("prop-a", 2024, 5)).version == 1
        assert await db[EVENT_COLL].count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_two_paid_events_mutate_ledger_once(self, processor, open_session, ledger):
        await processor.handle_event(checkout_event("evt_1", open_session.id))
        outcome = await processor.handle_event(
            checkout_event("evt_2", open_session.id, "checkout.session.async_payment_succeeded")
        )

        assert not outcome.changed
        assert outcome.ledger_entry is None
        assert (await ledger.get("prop-a", 2024, 5)).version == 1

    @pytest.mark.asyncio
    async def test_late_expiry_after_payment_is_ignored(self, processor, open_session, sessions):
        await processor.handle_event(checkout_event("evt_1", open_session.id))
        outcome = await processor.handle_event(
            checkout_event("evt_2", open_session.id, "checkout.session.expired")
        )

        assert outcome.ignored == "invalid_transition"
        assert (await sessions.get(open_session.id)).status == SessionStatus.paid

    @pytest.mark.asyncio
    async def test_failed_invoice_marks_past_due_without_ledger(self, processor, open_session, ledger, sessions):
        outcome = await processor.handle_event(
            invoice_event("evt_1", open_session.id, "invoice.payment_failed")
        )

        assert outcome.status == SessionStatus.past_due
        assert (await sessions.get(open_session.id)).status == SessionStatus.past_due
        assert await ledger.get("prop-a", 2024, 5) is None

    @pytest.mark.asyncio
    async def test_unknown_session_is_acknowledged(self, processor):
        outcome = await processor.handle_event(checkout_event("evt_1", "never-issued"))
        assert outcome.ignored == "not_found"

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, db, processor):
        outcome = await processor.handle_event({"id": "evt_9", "type": "charge.refunded", "data": {"object": {}}})
        assert outcome.ignored == "unhandled_event"
        assert await db[EVENT_COLL].count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_failure_releases_event_for_redelivery(self, db, sessions, policy, open_session, ledger):
        broken_policy = MagicMock()
        broken_policy.reconcile = AsyncMock(side_effect=RuntimeError("ledger unavailable"))
        broken = PaymentEventProcessor(db, sessions, broken_policy)

        with pytest.raises(RuntimeError):
            await broken.handle_event(checkout_event("evt_1", open_session.id))
        assert await db[EVENT_COLL].count_documents({"_id": "evt_1"}) == 0

        # the session is already paid; redelivery still reconciles it
        outcome = await PaymentEventProcessor(db, sessions, policy).handle_event(
            checkout_event("evt_1", open_session.id)
        )
        assert not outcome.changed
        assert outcome.ledger_entry is not None
        assert (await ledger.get("prop-a", 2024, 5)).references_session(open_session.id)

    @pytest.mark.asyncio
    async def test_checkout_found_by_id_when_metadata_missing(self, processor, open_session, sessions, ledger):
        await sessions.attach_checkout(open_session.id, "cs_live_9", "https://checkout.example/cs_live_9")
        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_live_9", "object": "checkout.session", "payment_status": "paid", "metadata": {},
            }},
        }

        outcome = await processor.handle_event(event)

        assert outcome.session_id == open_session.id
        assert outcome.changed
        assert (await ledger.get("prop-a", 2024, 5)).references_session(open_session.id)

    @pytest.mark.asyncio
    async def test_redelivery_stamps_session_after_failed_stamp(
        self, monkeypatch, processor, open_session, sessions, ledger
    ):
        stamp = sessions.mark_reconciled
        calls = []

        async def flaky_stamp(session_id, year, month):
            calls.append(session_id)
            if len(calls) == 1:
                raise RuntimeError("write concern timeout")
            return await stamp(session_id, year, month)

        monkeypatch.setattr(sessions, "mark_reconciled", flaky_stamp)

        with pytest.raises(RuntimeError):
            await processor.handle_event(checkout_event("evt_1", open_session.id))
        assert (await ledger.get("prop-a", 2024, 5)).references_session(open_session.id)
        assert (await sessions.get(open_session.id)).reconciled_at is None

        await processor.handle_event(checkout_event("evt_1", open_session.id))

        session = await sessions.get(open_session.id)
        assert session.reconciled_at is not None
        assert session.reconciled_period == "2024-05"
        assert len(calls) == 2
        assert (await ledger.get("prop-a", 2024, 5)).version == 1


class TestRecurringInvoices:

    @pytest.mark.asyncio
    async def test_each_billing_month_reaches_the_ledger(self, processor, recurring_session, ledger, sessions):
        sid = recurring_session.id
        first = await processor.handle_event(
            cycle_invoice_event("evt_may", sid, "in_may", billing_start(2024, 5), "subscription_create")
        )
        second = await processor.handle_event(
            cycle_invoice_event("evt_june", sid, "in_june", billing_start(2024, 6))
        )

        assert first.changed
        assert not second.changed
        assert second.ledger_entry is not None
        entries = await ledger.list_for_property("prop-a")
        assert [(e.year, e.month, e.amount) for e in entries] == [
            (2024, 6, Decimal("1500.00")),
            (2024, 5, Decimal("1500.00")),
        ]
        june = await ledger.get("prop-a", 2024, 6)
        assert june.source.invoice_id == "in_june"
        assert "invoice in_june" in june.notes

        session = await sessions.get(sid)
        assert session.status == SessionStatus.paid
        assert session.reconciled_period == "2024-05"

    @pytest.mark.asyncio
    async def test_first_invoice_in_due_month_is_not_counted_twice(self, processor, recurring_session, ledger):
        sid = recurring_session.id
        await processor.handle_event(checkout_event("evt_1", sid))
        await processor.handle_event(cycle_invoice_event("evt_2", sid, "in_may", billing_start(2024, 5)))

        assert (await ledger.get("prop-a", 2024, 5)).version == 1
        assert len(await ledger.list_for_property("prop-a")) == 1

    @pytest.mark.asyncio
    async def test_same_invoice_under_new_event_id_writes_once(self, processor, recurring_session, ledger):
        sid = recurring_session.id
        await processor.handle_event(checkout_event("evt_1", sid))
        await processor.handle_event(cycle_invoice_event("evt_2", sid, "in_june", billing_start(2024, 6)))
        await processor.handle_event(cycle_invoice_event("evt_3", sid, "in_june", billing_start(2024, 6)))

        assert (await ledger.get("prop-a", 2024, 6)).version == 1

    @pytest.mark.asyncio
    async def test_one_off_session_ignores_cycle_invoices(self, processor, open_session, ledger):
        await processor.handle_event(checkout_event("evt_1", open_session.id))
        outcome = await processor.handle_event(
            cycle_invoice_event("evt_2", open_session.id, "in_june", billing_start(2024, 6))
        )

        assert outcome.ledger_entry is None
        assert await ledger.get("prop-a", 2024, 6) is None
