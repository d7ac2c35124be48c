# database.py - Motor connection shared by the ledger, sessions and webhook dedup

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from core.config import settings

logger = structlog.get_logger(__name__)


@dataclass
class AsyncDatabaseConfig:
    mongo_uri: str
    database_name: str
    max_pool_size: int = 50
    min_pool_size: int = 5
    timeout_ms: int = 5000
    socket_timeout_ms: int = 20000

    @classmethod
    def from_env(cls) -> "AsyncDatabaseConfig":
        return cls(mongo_uri=settings.MONGO_URL, database_name=settings.MONGO_DATABASE)

    def validate(self) -> None:
        if not self.mongo_uri or not self.database_name:
            raise ValueError("MONGO_URI and MONGO_DATABASE must both be set")
        if self.max_pool_size < self.min_pool_size:
            raise ValueError("max_pool_size must be >= min_pool_size")

    def client_options(self) -> Dict[str, Any]:
        return {
            "maxPoolSize": self.max_pool_size,
            "minPoolSize": self.min_pool_size,
            "serverSelectionTimeoutMS": self.timeout_ms,
            "connectTimeoutMS": self.timeout_ms,
            "socketTimeoutMS": self.socket_timeout_ms,
            "retryWrites": True,
            "uuidRepresentation": "standard",
        }


class AsyncDatabaseManager:
    """
    Process-wide Motor client. `initialize()` runs once in the app lifespan;
    every request then reads `app.state.adb`.
    """

    _instance: Optional["AsyncDatabaseManager"] = None

    def __new__(cls) -> "AsyncDatabaseManager":
        if cls._instance is None:
            inst = super().__new__(cls)
            inst._lock = asyncio.Lock()
            inst._client = None
            inst._database = None
            cls._instance = inst
        return cls._instance

    @property
    def is_initialized(self) -> bool:
        return self._database is not None

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            raise RuntimeError("Database not initialized; await db_manager.initialize() first")
        return self._database

    async def initialize(self, config: Optional[AsyncDatabaseConfig] = None) -> None:
        async with self._lock:
            if self.is_initialized:
                return
            config = config or AsyncDatabaseConfig.from_env()
            config.validate()

            client = AsyncIOMotorClient(config.mongo_uri, **config.client_options())
            try:
                await asyncio.wait_for(client.server_info(), timeout=config.timeout_ms / 1000)
            except (ConnectionFailure, ServerSelectionTimeoutError, asyncio.TimeoutError) as e:
                client.close()
                logger.error("database_connect_failed", error=str(e) or type(e).__name__)
                raise ConnectionFailure(f"Could not connect to MongoDB: {e}") from e

            self._client = client
            self._database = client[config.database_name]
            logger.info("database_connected", database=config.database_name)

    async def health_check(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {"timestamp": datetime.now(timezone.utc).isoformat()}
        if not self.is_initialized:
            report.update(status="unhealthy", error="Database not initialized")
            return report

        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._database.command("ping"), timeout=5.0)
        except asyncio.TimeoutError:
            logger.error("database_health_timeout")
            report.update(status="unhealthy", error="Health check timeout")
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error("database_health_failed", error=str(e))
            report.update(status="unhealthy", error=f"Connection error: {e}")
        else:
            report.update(
                status="healthy",
                database=self._database.name,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        return report

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None
            self._database = None
            logger.info("database_closed")


async def create_indexes(db: AsyncIOMotorDatabase, indexes_config: Dict[str, List[dict]]) -> None:
    """
    Create indexes from `{collection: [{"keys": [...], **options}]}`.

    Re-running with identical definitions is a no-op on the server.
    """
    for collection_name, indexes in indexes_config.items():
        for index_def in indexes:
            options = {k: v for k, v in index_def.items() if k != "keys"}
            await db[collection_name].create_index(index_def["keys"], **options)
            logger.info("index_created", collection=collection_name, name=options.get("name"))


db_manager = AsyncDatabaseManager()
