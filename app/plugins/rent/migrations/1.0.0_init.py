from core.database import create_indexes
from plugins.rent.accounting.ledger import LEDGER_COLL, LEDGER_INDEXES
from plugins.rent.services.collection_sessions import SESSION_COLL, SESSION_INDEXES
from plugins.rent.services.payment_events import EVENT_COLL


async def run(db):
    await create_indexes(db, {
        LEDGER_COLL: LEDGER_INDEXES,
        SESSION_COLL: SESSION_INDEXES,
        EVENT_COLL: [{"keys": [("received_at", -1)], "name": "received_recent"}],
    })


async def rollback(db):
    await db[LEDGER_COLL].drop_index("uniq_property_period")
    await db[LEDGER_COLL].drop_index("period_status")
    await db[SESSION_COLL].drop_index("property_recent")
    await db[SESSION_COLL].drop_index("external_reference")
    await db[EVENT_COLL].drop_index("received_recent")
