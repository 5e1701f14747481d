from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from catalog_sync.models import Supplier, SyncJob, SyncSession
from catalog_sync.queue_config import IMAGE_UPLOAD, PRODUCT_FAMILY, SUPPLIER_SYNC
from catalog_sync.tasks import auto_import_suppliers, expire_stale_sessions, run_sync_job, sweep_queues
from catalog_sync.worker_manager import MAINTENANCE_QUEUE, WorkerManager

pytestmark = pytest.mark.django_db


@pytest.fixture(autouse=True)
def use_test_pipeline(pipeline):
    with patch('catalog_sync.tasks.get_pipeline', return_value=pipeline):
        yield pipeline


# ---------------------------------------------------------------------------
# run_sync_job
# ---------------------------------------------------------------------------

def test_run_sync_job_runs_claimed_job(pipeline):
    job = pipeline.queue_service.enqueue(IMAGE_UPLOAD, {}, job_id='i1')
    pipeline.runner.handlers[IMAGE_UPLOAD] = lambda ctx: {'status': 'completed'}

    assert run_sync_job(job.pk) == SyncJob.STATE_COMPLETED
    assert run_sync_job(job.pk) is None


def test_run_sync_job_ignores_missing_job():
    assert run_sync_job(999999) is None


# ---------------------------------------------------------------------------
# Scheduled maintenance
# ---------------------------------------------------------------------------

def test_auto_import_queues_flagged_suppliers(pipeline, supplier):
    Supplier.objects.create(code='B200', auto_import=False)
    Supplier.objects.create(code='C300', auto_import=True, is_active=False)

    result = auto_import_suppliers()

    assert result == {'queued': 1, 'skipped': 0}
    job = SyncJob.objects.get(queue=SUPPLIER_SYNC)
    assert job.supplier_code == 'A113'
    assert job.payload == {'supplier_code': 'A113', 'triggered_by': 'schedule'}
    assert job.job_id == f'supplier-A113-{job.session_id}'


def test_auto_import_skips_supplier_with_running_session(pipeline, supplier):
    pipeline.tracker.start_session(supplier, session_id='A113-running')
    assert auto_import_suppliers() == {'queued': 0, 'skipped': 1}
    assert not SyncJob.objects.exists()


def test_sweep_recovers_and_redispatches(pipeline, dispatcher, django_capture_on_commit_callbacks):
    stalled = pipeline.queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='stalled')
    pipeline.queue_service.claim(stalled.pk)
    SyncJob.objects.filter(pk=stalled.pk).update(heartbeat_at=timezone.now() - timedelta(hours=1))
    pipeline.queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='later', delay=3600)

    with django_capture_on_commit_callbacks(execute=True):
        summary = sweep_queues()

    assert summary[PRODUCT_FAMILY] == {'recovered': 1, 'dispatched': 1}
    assert dispatcher.calls == [(PRODUCT_FAMILY, 'stalled', 0)]


def test_expire_stale_sessions(pipeline, supplier):
    session = pipeline.tracker.start_session(supplier, session_id='A113-old')
    SyncSession.objects.filter(pk=session.pk).update(started_at=timezone.now() - timedelta(days=1))

    assert expire_stale_sessions() == {'expired': 1}
    assert SyncSession.objects.get(pk=session.pk).status == SyncSession.STATUS_FAILED


# ---------------------------------------------------------------------------
# Worker processes
# ---------------------------------------------------------------------------

class TestWorkerManager:
    def test_one_pool_per_queue(self, settings):
        settings.SYNC_QUEUES = {'image-upload': {'concurrency': 4}}
        pools = dict(WorkerManager().pools())
        assert pools['image-upload'] == 4
        assert pools['supplier-sync'] == 1
        assert pools[MAINTENANCE_QUEUE] == 1
        assert len(pools) == 6

    def test_start_and_graceful_stop(self):
        with patch('catalog_sync.worker_manager.multiprocessing.Process') as process_cls:
            process = process_cls.return_value
            process.is_alive.side_effect = [True] * 5 + [False] * 5
            manager = WorkerManager(include_maintenance=False)
            manager.start()
            assert process_cls.call_count == 5
            assert process.start.call_count == 5

            manager.stop(timeout=1)

        assert process.terminate.call_count == 5
        process.kill.assert_not_called()
        assert manager.processes == {}
