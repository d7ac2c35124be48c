from datetime import date
from decimal import Decimal

import pytest
from bson import Decimal128
from mongomock_motor import AsyncMongoMockClient

from core.database import create_indexes
from plugins.rent.accounting.ledger import LEDGER_COLL, LEDGER_INDEXES, RentLedgerStore
from plugins.rent.accounting.reconciliation import ReconciliationPolicy
from plugins.rent.services.collection_sessions import (
    SESSION_COLL, SESSION_INDEXES, CollectionSessionTracker,
)
from plugins.rent.services.properties import PROPERTY_COLL, PropertyDirectory

TODAY = date(2024, 5, 15)


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["rent_ledger_test"]
    await create_indexes(database, {LEDGER_COLL: LEDGER_INDEXES, SESSION_COLL: SESSION_INDEXES})
    return database


@pytest.fixture
def seed_property(db):
    """Insert a property document the way the property module stores them."""

    async def _seed(
        property_id,
        monthly_rent="1500.00",
        rent_due_day=1,
        tenant_name="Jane Tenant",
        owner_id="owner-1",
        tenant_email="jane@example.com",
        **extra,
    ):
        doc = {
            "_id": property_id,
            "owner_id": owner_id,
            "address": f"{property_id} Main St",
            "monthly_rent": Decimal128(Decimal(monthly_rent)),
            "rent_due_day": rent_due_day,
            "tenant_name": tenant_name,
            "tenant_email": tenant_email,
            **extra,
        }
        await db[PROPERTY_COLL].insert_one(doc)
        return doc

    return _seed


@pytest.fixture
def properties(db):
    return PropertyDirectory(db)


@pytest.fixture
def ledger(db, properties):
    return RentLedgerStore(db, properties=properties, today=lambda: TODAY)


@pytest.fixture
def bare_ledger(db):
    """A ledger without a property directory: no rent consistency checks."""
    return RentLedgerStore(db, today=lambda: TODAY)


@pytest.fixture
def sessions(db):
    return CollectionSessionTracker(db)


@pytest.fixture
def policy(ledger, sessions):
    return ReconciliationPolicy(ledger, sessions, today=lambda: TODAY)
