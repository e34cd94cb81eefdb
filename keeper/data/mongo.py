"""MongoDB connection manager and audit helpers.

Async connectivity via Motor, index setup, and audit-event persistence. The
keeper runs without MongoDB as well; this layer is only wired in when
MONGODB_URI is configured.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from .schemas import AUDIT_LOG, COLLECTION_SPECS


def utc_now() -> datetime:
    """UTC timestamp helper."""
    return datetime.now(timezone.utc)


def jsonify(value: Any) -> Any:
    """Best-effort conversion to JSON/BSON-safe types."""
    # pylint: disable=too-many-return-statements,broad-exception-caught
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        # BSON integers are 64-bit signed; larger lamport/unit totals go as strings.
        if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 2**63:
            return str(value)
        return value
    if isinstance(value, datetime):
        return value
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except Exception:
            return value.hex()
    if isinstance(value, (list, tuple, set)):
        return [jsonify(v) for v in value]
    if isinstance(value, dict):
        return {str(k): jsonify(v) for k, v in value.items()}
    # Pydantic v2
    if hasattr(value, "model_dump"):
        try:
            return jsonify(value.model_dump())
        except Exception:
            pass
    try:
        return jsonify(vars(value))
    except Exception:
        return str(value)


class MongoManager:
    """Async MongoDB manager using Motor."""

    def __init__(self, db_name: str = "treasury_keeper", uri: Optional[str] = None):
        self.uri = uri or os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")
        if not self.uri:
            raise RuntimeError("MONGODB_URI (or MONGODB_URL) is not set in env.")
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        """Connect (lazily) and return the database handle."""
        if self.client is None:
            self.client = AsyncIOMotorClient(self.uri)
            self.db = self.client[self.db_name]
        if self.db is None:
            raise RuntimeError("MongoManager failed to connect.")
        return self.db

    async def close(self) -> None:
        """Close client and clear handles."""
        if self.client is not None:
            self.client.close()
        self.client = None
        self.db = None

    def collection(self, name: str) -> AsyncIOMotorCollection:
        """Get a collection handle (requires connect)."""
        if self.db is None:
            raise RuntimeError("MongoManager not connected. Call await connect().")
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create indexes declared in schemas.py."""
        await self.connect()
        for spec in COLLECTION_SPECS.values():
            col = self.collection(spec.name)
            for idx in spec.indexes:
                try:
                    await col.create_index(list(idx))
                except PyMongoError:
                    # Index may already exist with different options.
                    continue

    async def insert_one(self, collection: str, doc: Dict[str, Any]) -> str:
        """Insert a document and return inserted id as str."""
        await self.connect()
        col = self.collection(collection)
        res = await col.insert_one(jsonify(doc))
        return str(res.inserted_id)

    async def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Find one document matching query."""
        await self.connect()
        return await self.collection(collection).find_one(query)

    async def log_audit_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Insert an audit event into audit_log."""
        # pylint: disable=too-many-arguments
        doc: Dict[str, Any] = {
            "timestamp": timestamp or utc_now(),
            "event_type": event_type,
            "payload": payload,
        }
        if run_id:
            doc["run_id"] = run_id
        if agent_id:
            doc["agent_id"] = agent_id
        if trace_id:
            doc["trace_id"] = trace_id
        if metadata:
            doc["metadata"] = metadata
        return await self.insert_one(AUDIT_LOG, doc)


__all__ = ["MongoManager", "jsonify", "utc_now"]
