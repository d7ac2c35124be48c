from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import orjson
import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from core.config import settings
from core.MongoORJSONResponse import MongoORJSONResponse
from plugins.rent.accounting.bulk import BulkApplication
from plugins.rent.context import RentContext, build_context
from plugins.rent.models.collection_session import SessionStatus
from utils.date_helper import parse_month
from utils.exceptions import NotFound

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rent", tags=["Rent Ledger"])


# ===============================================================
# REQUEST MODELS
# ===============================================================

class MarkPaidRequest(BaseModel):
    amount: Decimal
    paid_date: Optional[date] = None
    notes: Optional[str] = None
    days_covered: Optional[int] = None
    move_in_date: Optional[date] = None
    move_out_date: Optional[date] = None
    expected_updated_at: Optional[datetime] = None


class MarkUnpaidRequest(BaseModel):
    expected_updated_at: Optional[datetime] = None


class BulkPaymentRequest(BaseModel):
    start_month: int = Field(..., ge=1, le=12)
    start_year: int
    end_month: int = Field(..., ge=1, le=12)
    end_year: int
    amount_per_month: Decimal
    paid_date: Optional[date] = None
    notes: Optional[str] = None


class CollectRentRequest(BaseModel):
    property_id: str
    amount: Optional[Decimal] = None
    currency: str = "usd"
    due_date: Optional[date] = None
    description: Optional[str] = None
    tenant_email: Optional[str] = None
    tenant_phone: Optional[str] = None
    is_recurring: bool = False
    stripe_account: Optional[str] = None


# ===============================================================
# UTILITIES
# ===============================================================

def get_rent_context(request: Request) -> RentContext:
    state = request.app.state
    return build_context(
        state.adb,
        today=getattr(state, "rent_today", None),
        checkout=getattr(state, "rent_checkout", None),
    )


def _json(content, status_code: int = 200) -> MongoORJSONResponse:
    # bypass jsonable_encoder so money keeps its exact decimal string
    return MongoORJSONResponse(content, status_code=status_code)


def _bulk_payload(result: BulkApplication) -> dict:
    return {
        "property_id": result.property_id,
        "requested": [f"{y}-{m:02d}" for y, m in result.requested],
        "applied": result.applied,
        "failures": result.failures,
        "remaining": [f"{y}-{m:02d}" for y, m in result.remaining],
        "complete": result.complete,
    }


# ===============================================================
# PORTFOLIO
# ===============================================================

@router.get("/status")
async def portfolio_status(
    owner_id: Optional[str] = None,
    property_id: Optional[List[str]] = Query(None),
    period: Optional[str] = Query(None, examples=["2025-10"]),
    ctx: RentContext = Depends(get_rent_context),
):
    """Paid / Partial / Unpaid / Overdue for an owner's tenant-occupied properties, or an explicit list."""
    today = ctx.today()
    year, month = parse_month(period, default=today)
    if property_id:
        snapshot = await ctx.reports.snapshot_for_properties(property_id, today=today, year=year, month=month)
    elif owner_id:
        snapshot = await ctx.reports.snapshot_for_owner(owner_id, today=today, year=year, month=month)
    else:
        raise HTTPException(422, "owner_id or property_id is required")
    return _json(snapshot)


@router.get("/income")
async def income(
    owner_id: Optional[str] = None,
    period: Optional[str] = Query(None, examples=["2025-10"]),
    ctx: RentContext = Depends(get_rent_context),
):
    year, month = parse_month(period, default=ctx.today())
    property_ids = None
    if owner_id:
        property_ids = [p.id for p in await ctx.properties.list_for_owner(owner_id)]
    total = await ctx.ledger.monthly_income(year, month, property_ids=property_ids)
    return _json({"year": year, "month": month, "income": total})


# ===============================================================
# COLLECTION SESSIONS
# ===============================================================

@router.post("/collect", status_code=201)
async def collect_rent(body: CollectRentRequest, ctx: RentContext = Depends(get_rent_context)):
    """Open a collection session and the hosted checkout page the tenant pays through."""
    if not ctx.checkout.configured:
        raise HTTPException(503, "Stripe not configured")

    prop = await ctx.properties.get_property(body.property_id)
    amount = body.amount if body.amount is not None else prop.monthly_rent
    tenant_email = body.tenant_email or prop.tenant_email
    if not tenant_email:
        raise HTTPException(422, "Tenant email is required to send the payment link")

    session = await ctx.sessions.create_session(
        prop.id,
        amount,
        currency=body.currency,
        tenant_email=tenant_email,
        due_date=body.due_date,
        is_recurring=body.is_recurring,
        description=body.description,
        tenant_phone=body.tenant_phone,
    )
    try:
        link = await ctx.checkout.create_checkout(session, prop, stripe_account=body.stripe_account)
    except stripe.StripeError as e:
        logger.error("checkout_failed", session_id=session.id, error=str(e))
        await ctx.sessions.transition(session.id, SessionStatus.canceled)
        raise HTTPException(502, "Could not create checkout session") from e

    session = await ctx.sessions.attach_checkout(session.id, link.external_reference, link.url)
    return _json({"session": session, "url": link.url}, status_code=201)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, ctx: RentContext = Depends(get_rent_context)):
    return _json(await ctx.sessions.get(session_id))


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, ctx: RentContext = Depends(get_rent_context)):
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(500, "Webhook secret not configured")

    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError:
        raise HTTPException(400, "Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("webhook_signature_rejected")
        raise HTTPException(400, "Invalid signature")

    # handled as plain dicts, like every other document in the service
    outcome = await ctx.events.handle_event(orjson.loads(payload))
    return _json({
        "received": True,
        "event_type": outcome.event_type,
        "session_id": outcome.session_id,
        "status": outcome.status,
        "changed": outcome.changed,
        "duplicate": outcome.duplicate,
        "ignored": outcome.ignored,
        "reconciled": outcome.ledger_entry is not None,
    })


# ===============================================================
# LEDGER
# ===============================================================

@router.get("/{property_id}/ledger")
async def property_ledger(
    property_id: str,
    year: Optional[int] = None,
    ctx: RentContext = Depends(get_rent_context),
):
    return _json(await ctx.ledger.list_for_property(property_id, year=year))


@router.get("/{property_id}/sessions")
async def property_sessions(
    property_id: str,
    limit: int = Query(20, ge=1, le=100),
    ctx: RentContext = Depends(get_rent_context),
):
    return _json(await ctx.sessions.list_for_property(property_id, limit=limit))


@router.post("/{property_id}/bulk")
async def bulk_payment(
    property_id: str, body: BulkPaymentRequest, ctx: RentContext = Depends(get_rent_context)
):
    """Mark a range of months paid. Months that fail are listed under `remaining`."""
    result = await ctx.bulk.apply_bulk(
        property_id,
        body.start_month, body.start_year,
        body.end_month, body.end_year,
        body.amount_per_month,
        paid_date=body.paid_date,
        notes=body.notes,
    )
    return _json(_bulk_payload(result), status_code=200 if result.complete else 207)


@router.get("/{property_id}/{year}/{month}")
async def get_entry(property_id: str, year: int, month: int, ctx: RentContext = Depends(get_rent_context)):
    entry = await ctx.ledger.get(property_id, year, month)
    if entry is None:
        raise NotFound(f"No ledger entry for {year}-{month:02d}", property_id=property_id)
    return _json(entry)


@router.post("/{property_id}/{year}/{month}/paid")
async def mark_paid(
    property_id: str,
    year: int,
    month: int,
    body: MarkPaidRequest,
    ctx: RentContext = Depends(get_rent_context),
):
    entry = await ctx.ledger.mark_paid(
        property_id, year, month, body.amount,
        paid_date=body.paid_date,
        notes=body.notes,
        days_covered=body.days_covered,
        move_in=body.move_in_date,
        move_out=body.move_out_date,
        expected_updated_at=body.expected_updated_at,
    )
    return _json(entry)


@router.post("/{property_id}/{year}/{month}/unpaid")
async def mark_unpaid(
    property_id: str,
    year: int,
    month: int,
    body: Optional[MarkUnpaidRequest] = None,
    ctx: RentContext = Depends(get_rent_context),
):
    expected = body.expected_updated_at if body else None
    entry = await ctx.ledger.mark_unpaid(property_id, year, month, expected_updated_at=expected)
    return _json(entry)


def init_plugin(app):
    return {"router": router}
