from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from core.config import settings
from plugins.rent.models.collection_session import CollectionSession
from plugins.rent.models.property import PropertyRef
from plugins.rent.services.checkout import SESSION_METADATA_KEY, CheckoutUnavailable, StripeCheckout


@pytest.fixture
def prop():
    return PropertyRef.model_validate({
        "_id": "prop-a", "address": "12 Main St", "nickname": "Blue House",
        "monthly_rent": "1500.00", "tenant_name": "Jane",
    })


def make_session(**kwargs):
    return CollectionSession(property_id="prop-a", amount=Decimal("1500.00"), **kwargs)


def test_one_off_payment_params(prop):
    session = make_session(tenant_email="jane@example.com", due_date=date(2024, 5, 1))
    params = StripeCheckout(api_key="sk_test", app_url="https://app.example/").build_params(session, prop)

    assert params["mode"] == "payment"
    line = params["line_items"][0]["price_data"]
    assert line["unit_amount"] == 150000
    assert line["product_data"]["name"] == "Rent for Blue House (May 1, 2024)"
    assert "recurring" not in line
    assert params["customer_email"] == "jane@example.com"
    assert params["metadata"][SESSION_METADATA_KEY] == session.id
    assert params["payment_intent_data"]["metadata"][SESSION_METADATA_KEY] == session.id
    assert params["success_url"].startswith("https://app.example/rent-success")


def test_recurring_params(prop):
    session = make_session(is_recurring=True)
    params = StripeCheckout(api_key="sk_test", app_url="https://app.example").build_params(session, prop)

    assert params["mode"] == "subscription"
    assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}
    assert params["subscription_data"]["metadata"][SESSION_METADATA_KEY] == session.id
    assert "customer_email" not in params


@pytest.mark.asyncio
async def test_create_checkout_calls_stripe(prop):
    session = make_session()
    created = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")

    with patch("stripe.checkout.Session.create", return_value=created) as create:
        link = await StripeCheckout(api_key="sk_test", app_url="https://app.example").create_checkout(
            session, prop, stripe_account="acct_1"
        )

    assert link.external_reference == "cs_test_1"
    assert link.url == "https://checkout.stripe.com/c/cs_test_1"
    kwargs = create.call_args.kwargs
    assert kwargs["api_key"] == "sk_test"
    assert kwargs["stripe_account"] == "acct_1"


@pytest.mark.asyncio
async def test_unconfigured_checkout(prop, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    checkout = StripeCheckout(app_url="https://app.example")
    assert not checkout.configured
    with pytest.raises(CheckoutUnavailable):
        await checkout.create_checkout(make_session(), prop)
