from typing import List, Optional

from utils.date_helper import utcnow

MIGRATIONS_COLL = "_migrations"


class MigrationTracker:
    """Which plugin migration files have run, one document per application."""

    def __init__(self, db):
        self.db = db
        self.collection = db[MIGRATIONS_COLL]

    @staticmethod
    def _active(plugin: str) -> dict:
        return {"plugin": plugin, "rolled_back": {"$ne": True}}

    async def record_migration(self, plugin: str, version: str, file_name: str) -> None:
        await self.collection.insert_one({
            "plugin": plugin,
            "version": version,
            "file": file_name,
            "applied_at": utcnow(),
        })

    async def mark_rollback(self, plugin: str, version: str) -> None:
        await self.collection.update_one(
            {**self._active(plugin), "version": version},
            {"$set": {"rolled_back": True, "rolled_back_at": utcnow()}},
        )

    async def get_applied(self, plugin: str) -> List[dict]:
        cursor = self.collection.find(self._active(plugin)).sort("applied_at", 1)
        return await cursor.to_list(None)

    async def get_last_applied(self, plugin: str) -> Optional[dict]:
        applied = await self.get_applied(plugin)
        return applied[-1] if applied else None
