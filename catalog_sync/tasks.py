import logging

from celery import shared_task
from django.conf import settings

from .models import Supplier
from .pipeline import get_pipeline, trigger_supplier_sync
from .queue_config import QUEUE_NAMES

logger = logging.getLogger(__name__)


@shared_task(bind=True, name='catalog_sync.run_sync_job', acks_late=True)
def run_sync_job(self, job_pk):
    """
    Run one queued SyncJob.

    The message only carries the row's primary key; the claim inside the
    runner decides whether this delivery actually executes the job, so
    redelivered or duplicated messages are harmless.
    """
    return get_pipeline().runner.run(job_pk)


@shared_task(bind=True, name='catalog_sync.auto_import_suppliers')
def auto_import_suppliers(self):
    """Queue a sync for every active supplier flagged for automatic import."""
    pipeline = get_pipeline()
    queued = skipped = 0
    for supplier in Supplier.objects.filter(is_active=True, auto_import=True).order_by('code'):
        if pipeline.tracker.get_active_session(supplier.code) is not None:
            logger.info("Supplier %s already has a running session – auto import skipped.", supplier.code)
            skipped += 1
            continue
        trigger_supplier_sync(supplier.code, triggered_by='schedule', pipeline=pipeline)
        queued += 1
    logger.info("Auto import: queued=%d, skipped=%d.", queued, skipped)
    return {'queued': queued, 'skipped': skipped}


@shared_task(bind=True, name='catalog_sync.sweep_queues')
def sweep_queues(self):
    """Recover stalled jobs and re-dispatch waiting or delayed ones that are due."""
    queue_service = get_pipeline().queue_service
    summary = {}
    for name in QUEUE_NAMES:
        recovered = queue_service.recover_stalled(name, settings.SYNC_STALLED_JOB_TIMEOUT)
        dispatched = queue_service.dispatch_due(name)
        summary[name] = {'recovered': recovered, 'dispatched': dispatched}
    return summary


@shared_task(bind=True, name='catalog_sync.expire_stale_sessions')
def expire_stale_sessions(self):
    expired = get_pipeline().tracker.expire_stale()
    return {'expired': expired}
