import re
from copy import deepcopy
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic_settings import BaseSettings
from pymongo.errors import PyMongoError

from watchdog_service.errors import StorageError
from watchdog_service.models import NIL_PARTITION, CheckDefaults

# Logical tables
DEFINITIONS = "definitions"
SCHEDULE = "schedule"


class Settings(BaseSettings):
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "watchdog"
    storage_backend: str = "mongo"  # "mongo" or "memory"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    max_concurrent_probes: int = 10
    health_report_interval_seconds: int = 30

    # Applied to checks registered without timing values
    default_frequency_seconds: float = 60
    default_expected_duration_ms: float = 200
    default_maximum_duration_seconds: float = 5

    # Endpoint resolution for services that are not plain http(s) uris
    reverse_proxy_url: Optional[str] = "http://localhost:19081"
    static_endpoints: Dict[str, Dict[str, str]] = {}

    # The watchdog's own identity, used for health reports and self registration
    service_name: str = "fabric:/Watchdog/WatchdogService"
    self_check_service_uri: Optional[str] = None
    self_check_partition: str = NIL_PARTITION

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def check_defaults(self) -> CheckDefaults:
        return CheckDefaults(
            frequency=timedelta(seconds=self.default_frequency_seconds),
            expected_duration=timedelta(milliseconds=self.default_expected_duration_ms),
            maximum_duration=timedelta(seconds=self.default_maximum_duration_seconds),
        )


class KeyValueStore(Protocol):
    """Storage the registry and the schedule are built on"""

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def put(self, table: str, key: str, value: Dict[str, Any]) -> None: ...

    async def delete(self, table: str, key: str) -> None: ...

    async def scan(self, table: str, prefix: str = "") -> Dict[str, Dict[str, Any]]: ...


class MemoryKeyValueStore:
    """In-process store. Nothing survives a restart"""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        value = self._tables.get(table, {}).get(key)
        return deepcopy(value) if value is not None else None

    async def put(self, table: str, key: str, value: Dict[str, Any]) -> None:
        self._tables.setdefault(table, {})[key] = deepcopy(value)

    async def delete(self, table: str, key: str) -> None:
        self._tables.get(table, {}).pop(key, None)

    async def scan(self, table: str, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        return {
            key: deepcopy(value)
            for key, value in self._tables.get(table, {}).items()
            if key.startswith(prefix)
        }


class MongoKeyValueStore:
    """One collection per table, documents shaped {_id: key, value: {...}}"""

    def __init__(self, client: AsyncIOMotorClient, db_name: str):
        self.client = client
        self.db = client[db_name]

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            doc = await self.db[table].find_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to read {table}/{key}: {e}") from e
        return doc["value"] if doc else None

    async def put(self, table: str, key: str, value: Dict[str, Any]) -> None:
        try:
            await self.db[table].replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)
        except PyMongoError as e:
            raise StorageError(f"Failed to write {table}/{key}: {e}") from e

    async def delete(self, table: str, key: str) -> None:
        try:
            await self.db[table].delete_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to delete {table}/{key}: {e}") from e

    async def scan(self, table: str, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        query = {"_id": {"$regex": f"^{re.escape(prefix)}"}} if prefix else {}
        result = {}
        try:
            async for doc in self.db[table].find(query):
                result[doc["_id"]] = doc["value"]
        except PyMongoError as e:
            raise StorageError(f"Failed to scan {table}: {e}") from e
        return result


def create_store(settings: Settings) -> KeyValueStore:
    """Build the store selected by settings"""
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory storage, health checks will not survive a restart")
        return MemoryKeyValueStore()
    if settings.storage_backend != "mongo":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    logger.info(f"Using MongoDB storage at {settings.mongodb_url}/{settings.mongodb_db_name}")
    return MongoKeyValueStore(AsyncIOMotorClient(settings.mongodb_url), settings.mongodb_db_name)
