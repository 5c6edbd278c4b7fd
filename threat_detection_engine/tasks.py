from __future__ import annotations

from typing import Any, Callable, List, Mapping, Optional
from uuid import uuid4

from celery import Celery
from fastapi.encoders import jsonable_encoder

from .config import broker_url, mongodb_database, mongodb_uri, result_backend
from .events import EventKind
from .persistence import FeatureBatchRepository

celery_app = Celery("threat_detection_engine", broker=broker_url(), backend=result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

_REPOSITORY: Optional[FeatureBatchRepository] = None


def _get_repository() -> FeatureBatchRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = FeatureBatchRepository(uri=mongodb_uri(), database=mongodb_database())
    return _REPOSITORY


@celery_app.task(name="threat_detection_engine.store_feature_batch")
def store_feature_batch(batch_id: str, vectors: List[Mapping[str, Any]]) -> int:
    return _get_repository().save_batch(batch_id, vectors)


def enqueue_feature_batch(batch_id: str, vectors: List[Mapping[str, Any]]) -> str:
    store_feature_batch.apply_async(args=[batch_id, vectors], task_id=batch_id)
    return batch_id


class FeatureBatchDispatcher:
    """Event-bus subscriber that hands flushed feature batches to the worker queue."""

    def __init__(self, enqueue: Callable[[str, List[Mapping[str, Any]]], Any] = enqueue_feature_batch):
        self.enqueue = enqueue

    def __call__(self, kind: EventKind, payload: Mapping[str, Any]) -> None:
        if kind is not EventKind.ML_DATA_READY:
            return
        vectors = jsonable_encoder(payload.get("data", []))
        self.enqueue(str(uuid4()), vectors)
