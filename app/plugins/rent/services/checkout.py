import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
import structlog

from core.config import settings
from plugins.rent.models.collection_session import CollectionSession
from plugins.rent.models.property import PropertyRef

logger = structlog.get_logger(__name__)

SESSION_METADATA_KEY = "rent_collection_session_id"


class CheckoutUnavailable(RuntimeError):
    pass


@dataclass
class CheckoutLink:
    external_reference: str
    url: Optional[str]


class StripeCheckout:
    """Creates the hosted checkout page a tenant pays through."""

    def __init__(self, api_key: Optional[str] = None, app_url: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.app_url = (app_url or settings.APP_URL).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_params(self, session: CollectionSession, prop: PropertyRef) -> Dict[str, Any]:
        name = f"Rent for {prop.label}"
        if session.due_date:
            name += f" ({session.due_date.strftime('%B')} {session.due_date.day}, {session.due_date.year})"
        metadata = {SESSION_METADATA_KEY: session.id, "property_id": session.property_id}

        price_data: Dict[str, Any] = {
            "currency": session.currency,
            "unit_amount": int(session.amount * 100),
            "product_data": {"name": name},
        }
        if session.is_recurring:
            price_data["recurring"] = {"interval": "month"}

        params: Dict[str, Any] = {
            "mode": "subscription" if session.is_recurring else "payment",
            "payment_method_types": ["card"],
            "metadata": metadata,
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "success_url": f"{self.app_url}/rent-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.app_url}/properties?collectCancelled=true",
            "phone_number_collection": {"enabled": bool(session.tenant_phone)},
        }
        if session.tenant_email:
            params["customer_email"] = session.tenant_email
        if session.is_recurring:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}
        return params

    async def create_checkout(
        self, session: CollectionSession, prop: PropertyRef, stripe_account: Optional[str] = None
    ) -> CheckoutLink:
        if not self.configured:
            raise CheckoutUnavailable("Stripe is not configured")
        params = self.build_params(session, prop)
        checkout = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self.api_key,
            stripe_account=stripe_account,
            **params,
        )
        logger.info("checkout_created", session_id=session.id, checkout_id=checkout.id)
        return CheckoutLink(external_reference=checkout.id, url=checkout.url)
