import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from django.conf import settings
from django.db import connection

from .blob_storage import BlobStore
from .feed_client import FeedClient
from .image_pipeline import ImagePipeline
from .job_runner import JobRunner
from .models import SyncJob
from .queue_config import SUPPLIER_SYNC
from .queue_service import QueueService
from .search_index import SearchIndex
from .semantic_store import GeminiFileSearchClient, SemanticSync
from .session_tracker import SessionTracker, new_session_id
from .workers import SyncWorkers

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    queue_service: QueueService
    tracker: SessionTracker
    feed_client: FeedClient
    image_pipeline: ImagePipeline
    search_index: SearchIndex
    semantic_sync: Optional[SemanticSync]
    workers: SyncWorkers
    runner: JobRunner


def _database_reachable() -> bool:
    connection.ensure_connection()
    return True


def _broker_reachable() -> bool:
    from config.celery import app

    with app.connection_for_write() as conn:
        conn.ensure_connection(max_retries=1)
    return True


def build_pipeline(queue_service: Optional[QueueService] = None, feed_client: Optional[FeedClient] = None,
                   image_pipeline: Optional[ImagePipeline] = None, search_index: Optional[SearchIndex] = None,
                   semantic_sync: Optional[SemanticSync] = None, semantic_enabled: Optional[bool] = None,
                   health_checks: Optional[dict] = None) -> Pipeline:
    """Wire the five stages together; every collaborator can be swapped out."""
    if semantic_enabled is None:
        semantic_enabled = settings.SEMANTIC_SYNC_ENABLED

    queue_service = queue_service or QueueService()
    feed_client = feed_client or FeedClient()
    image_pipeline = image_pipeline or ImagePipeline(BlobStore())
    search_index = search_index or SearchIndex()
    if semantic_enabled and semantic_sync is None:
        semantic_sync = SemanticSync(GeminiFileSearchClient(), search_index)
    elif not semantic_enabled:
        semantic_sync = None

    if health_checks is None:
        health_checks = {
            'database': _database_reachable,
            'broker': _broker_reachable,
            'search_index': search_index.is_healthy,
        }
        if semantic_sync is not None:
            health_checks['semantic_store'] = semantic_sync.is_healthy

    tracker = SessionTracker(
        semantic_enabled=semantic_sync is not None, search_index=search_index, health_checks=health_checks,
    )
    workers = SyncWorkers(
        queue_service, tracker, feed_client, image_pipeline, search_index,
        semantic_sync=semantic_sync, locales=settings.SYNC_LOCALES,
    )
    workers.register_hooks()
    runner = JobRunner(queue_service, tracker, workers.handlers())
    return Pipeline(queue_service, tracker, feed_client, image_pipeline, search_index, semantic_sync, workers, runner)


@lru_cache(maxsize=None)
def get_pipeline() -> Pipeline:
    logger.info("Building catalog sync pipeline.")
    return build_pipeline()


def trigger_supplier_sync(supplier_code: str, triggered_by: str = 'manual',
                          pipeline: Optional[Pipeline] = None) -> SyncJob:
    """Queue a full sync of one supplier and return its supplier-sync job."""
    pipeline = pipeline or get_pipeline()
    session_id = new_session_id(supplier_code)
    job = pipeline.queue_service.enqueue(
        SUPPLIER_SYNC,
        {'supplier_code': supplier_code, 'triggered_by': triggered_by},
        job_id=f"supplier-{supplier_code}-{session_id}",
        session_id=session_id,
        supplier_code=supplier_code,
    )
    logger.info("Queued sync of supplier %s (session %s).", supplier_code, session_id)
    return job
