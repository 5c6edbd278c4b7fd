from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Mapping, MutableMapping, Optional, Sequence

from fastapi.encoders import jsonable_encoder
from pymongo import ASCENDING, MongoClient

from .events import BlockingDelivery, EventKind
from .models import AuditRecord, utcnow

logger = logging.getLogger(__name__)


def _database(uri: Optional[str], database: str, client: Optional[MongoClient] = None):
    client = client or MongoClient(uri)
    return client[database]


def _audit_filter(
    identity_id: Optional[str],
    actions: Optional[Collection[str]],
    since: Optional[datetime],
    until: Optional[datetime],
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if identity_id is not None:
        query["identity_id"] = identity_id
    if actions is not None:
        query["action"] = {"$in": sorted(actions)}
    window: Dict[str, datetime] = {}
    if since is not None:
        window["$gte"] = since
    if until is not None:
        window["$lte"] = until
    if window:
        query["timestamp"] = window
    return query


class MongoAuditLog:
    """Audit-row reader over a MongoDB collection of ``{identity_id, action, timestamp, details}``."""

    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "threat_detection",
        collection: Any = None,
        collection_name: str = "audit_logs",
    ) -> None:
        self.collection = collection if collection is not None else _database(uri, database)[collection_name]

    async def query(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Collection[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        query = _audit_filter(identity_id, actions, since, until)
        documents = await asyncio.to_thread(lambda: list(self.collection.find(query)))
        return [self._to_record(document) for document in documents]

    async def count(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Collection[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        query = _audit_filter(identity_id, actions, since, until)
        return await asyncio.to_thread(self.collection.count_documents, query)

    def _to_record(self, document: Mapping[str, Any]) -> AuditRecord:
        return AuditRecord(
            identity_id=str(document.get("identity_id")),
            action=str(document.get("action", "")),
            timestamp=document["timestamp"],
            details=document.get("details") or {},
        )


class MongoIdentityDirectory:
    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "threat_detection",
        collection: Any = None,
        collection_name: str = "identities",
    ) -> None:
        self.collection = collection if collection is not None else _database(uri, database)[collection_name]

    async def display_name(self, identity_id: str) -> Optional[str]:
        document = await asyncio.to_thread(self.collection.find_one, {"identity_id": identity_id})
        if document is None:
            return None
        return document.get("display_name") or document.get("username")


def _identity_of(payload: Any) -> Optional[str]:
    for attribute in ("identity_id", "target"):
        value = getattr(payload, attribute, None)
        if value is None and isinstance(payload, Mapping):
            value = payload.get(attribute)
        if value is not None:
            return str(value)
    return None


class MongoEventSink:
    """Event-bus subscriber that writes engine events as audit rows.

    ``threat_detected`` rows written here are what the reputation sub-score
    counts on later passes.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "threat_detection",
        collection: Any = None,
        collection_name: str = "audit_logs",
        skip: Collection[EventKind] = (EventKind.ML_DATA_READY,),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.collection = collection if collection is not None else _database(uri, database)[collection_name]
        self.skip = frozenset(skip)
        self.clock = clock
        self.delivery = BlockingDelivery("audit sink")

    def __call__(self, kind: EventKind, payload: Any) -> None:
        if kind in self.skip:
            return
        self.delivery.submit(self.collection.insert_one, self.to_document(kind, payload))

    async def drain(self) -> None:
        await self.delivery.drain()

    def to_document(self, kind: EventKind, payload: Any) -> MutableMapping[str, Any]:
        return {
            "identity_id": _identity_of(payload),
            "action": kind.value,
            "timestamp": self.clock(),
            "details": jsonable_encoder(payload),
        }


class FeatureBatchRepository:
    """Stores flushed feature-vector batches for the offline training pipeline."""

    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "threat_detection",
        collection: Any = None,
        collection_name: str = "ml_feature_vectors",
    ) -> None:
        self.collection = collection if collection is not None else _database(uri, database)[collection_name]
        if collection is None:
            self.collection.create_index([("batch_id", ASCENDING)])

    def save_batch(self, batch_id: str, vectors: Sequence[Mapping[str, Any]]) -> int:
        if not vectors:
            return 0
        documents = [{"batch_id": batch_id, "created_at": utcnow(), **vector} for vector in vectors]
        self.collection.insert_many(documents)
        logger.info("Stored %d feature vectors in batch %s", len(documents), batch_id)
        return len(documents)
