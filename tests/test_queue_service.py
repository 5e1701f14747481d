from datetime import timedelta

import pytest
import requests
from django.utils import timezone

from catalog_sync.errors import FatalSyncError, TransientSyncError
from catalog_sync.job_runner import JobRunner
from catalog_sync.models import SyncJob
from catalog_sync.queue_config import (
    BACKOFF_EXPONENTIAL,
    BACKOFF_FIXED,
    IMAGE_UPLOAD,
    PRODUCT_FAMILY,
    SUPPLIER_SYNC,
    Backoff,
    get_queue_config,
)
from catalog_sync.session_tracker import SessionTracker

pytestmark = pytest.mark.django_db


def make_due(job):
    SyncJob.objects.filter(pk=job.pk).update(available_at=timezone.now())


def runner_with(queue_service, **handlers):
    return JobRunner(queue_service, SessionTracker(), handlers)


# ---------------------------------------------------------------------------
# Queue configuration
# ---------------------------------------------------------------------------

class TestQueueConfig:
    def test_defaults(self):
        config = get_queue_config(IMAGE_UPLOAD)
        assert config.concurrency == 10
        assert config.attempts == 5
        assert config.backoff == Backoff(BACKOFF_FIXED, 30.0)

    def test_settings_override(self, settings):
        settings.SYNC_QUEUES = {PRODUCT_FAMILY: {'concurrency': 7, 'attempts': 9}}
        config = get_queue_config(PRODUCT_FAMILY)
        assert (config.concurrency, config.attempts) == (7, 9)
        assert config.backoff.type == BACKOFF_EXPONENTIAL

    def test_unknown_queue(self):
        with pytest.raises(KeyError):
            get_queue_config('nope')

    def test_backoff_delays(self):
        assert [Backoff(BACKOFF_EXPONENTIAL, 10).delay_for(n) for n in (1, 2, 3)] == [10, 20, 40]
        assert Backoff(BACKOFF_FIXED, 30).delay_for(4) == 30


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

class TestEnqueue:
    def test_job_id_is_idempotent(self, queue_service):
        first = queue_service.enqueue(PRODUCT_FAMILY, {'n': 1}, job_id='s1:F1')
        second = queue_service.enqueue(PRODUCT_FAMILY, {'n': 2}, job_id='s1:F1')
        assert first.pk == second.pk
        assert SyncJob.objects.get(pk=first.pk).payload == {'n': 1}

    def test_queue_defaults_applied(self, queue_service):
        job = queue_service.enqueue(SUPPLIER_SYNC, {})
        assert job.max_attempts == 2
        assert (job.backoff_type, job.backoff_delay) == (BACKOFF_EXPONENTIAL, 30.0)
        assert job.state == SyncJob.STATE_WAITING

    def test_delayed_job(self, queue_service):
        job = queue_service.enqueue(PRODUCT_FAMILY, {}, delay=60)
        assert job.state == SyncJob.STATE_DELAYED
        assert job.available_at > timezone.now() + timedelta(seconds=50)

    def test_dispatched_on_commit(self, queue_service, dispatcher, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='s1:F1')
        assert dispatcher.calls == [(PRODUCT_FAMILY, 's1:F1', 0)]


# ---------------------------------------------------------------------------
# Claiming and running
# ---------------------------------------------------------------------------

class TestClaim:
    def test_claim_is_exclusive(self, queue_service):
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        claimed = queue_service.claim(job.pk)
        assert claimed.state == SyncJob.STATE_ACTIVE
        assert claimed.attempts_made == 1
        assert queue_service.claim(job.pk) is None

    def test_future_job_not_claimable(self, queue_service):
        job = queue_service.enqueue(PRODUCT_FAMILY, {}, delay=60)
        assert queue_service.claim(job.pk) is None

    def test_paused_queue_not_claimable(self, queue_service):
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        queue_service.pause(PRODUCT_FAMILY)
        assert queue_service.claim(job.pk) is None
        queue_service.resume(PRODUCT_FAMILY)
        assert queue_service.claim(job.pk) is not None

    def test_progress_recorded(self, queue_service):
        job = queue_service.claim(queue_service.enqueue(PRODUCT_FAMILY, {}).pk)
        queue_service.report_progress(job, 'variants', 140)
        assert SyncJob.objects.get(pk=job.pk).progress == {'step': 'variants', 'percentage': 100}


class TestRetries:
    def test_failed_after_max_attempts_without_fourth_attempt(self, queue_service):
        calls = []

        def flaky(ctx):
            calls.append(ctx.job.attempts_made)
            raise requests.ConnectionError('upstream down')

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: flaky})
        job = queue_service.enqueue(PRODUCT_FAMILY, {}, attempts=3)

        assert runner.run(job.pk) == SyncJob.STATE_DELAYED
        make_due(job)
        assert runner.run(job.pk) == SyncJob.STATE_DELAYED
        make_due(job)
        assert runner.run(job.pk) == SyncJob.STATE_FAILED
        make_due(job)
        assert runner.run(job.pk) is None

        job.refresh_from_db()
        assert calls == [1, 2, 3]
        assert job.attempts_made == 3
        assert 'upstream down' in job.error

    def test_backoff_schedules_next_attempt(self, queue_service):
        def flaky(ctx):
            raise TransientSyncError('later')

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: flaky})
        job = queue_service.enqueue(PRODUCT_FAMILY, {}, backoff={'type': BACKOFF_EXPONENTIAL, 'delay': 10})
        before = timezone.now()
        runner.run(job.pk)
        job.refresh_from_db()
        assert job.available_at >= before + timedelta(seconds=10)

    def test_fatal_error_fails_immediately(self, queue_service):
        def broken(ctx):
            raise FatalSyncError('no way')

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: broken})
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        assert runner.run(job.pk) == SyncJob.STATE_FAILED
        assert SyncJob.objects.get(pk=job.pk).attempts_made == 1

    def test_result_stored_on_success(self, queue_service):
        runner = runner_with(queue_service, **{PRODUCT_FAMILY: lambda ctx: {'status': 'completed'}})
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        assert runner.run(job.pk) == SyncJob.STATE_COMPLETED
        assert queue_service.get_job(PRODUCT_FAMILY, job.job_id).result == {'status': 'completed'}


# ---------------------------------------------------------------------------
# Parent / child dependencies
# ---------------------------------------------------------------------------

class TestDependencies:
    def test_parent_awaits_all_children(self, queue_service):
        resolved = []
        queue_service.on_resolved(PRODUCT_FAMILY, lambda job: resolved.append(job.job_id))

        def family(ctx):
            for index in range(3):
                ctx.enqueue_child(IMAGE_UPLOAD, {'index': index}, job_id=f'img-{index}')
            return {'status': 'completed'}

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: family, IMAGE_UPLOAD: lambda ctx: None})
        parent = queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='F1')

        assert runner.run(parent.pk) == SyncJob.STATE_AWAITING_DEPENDENTS
        children = list(SyncJob.objects.filter(parent=parent).order_by('pk'))
        assert len(children) == 3

        runner.run(children[0].pk)
        runner.run(children[1].pk)
        snapshot = queue_service.get_job(PRODUCT_FAMILY, 'F1')
        assert snapshot.state == SyncJob.STATE_AWAITING_DEPENDENTS
        assert snapshot.pending_children == 1
        assert resolved == []

        runner.run(children[2].pk)
        assert queue_service.get_job(PRODUCT_FAMILY, 'F1').state == SyncJob.STATE_COMPLETED
        assert resolved == ['F1']

    def test_failed_child_still_resolves_parent(self, queue_service):
        def family(ctx):
            ctx.enqueue_child(IMAGE_UPLOAD, {}, job_id='img-0')
            return {'status': 'completed'}

        def broken(ctx):
            raise FatalSyncError('bad image')

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: family, IMAGE_UPLOAD: broken})
        parent = queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='F1')
        runner.run(parent.pk)
        runner.run(SyncJob.objects.get(job_id='img-0').pk)
        assert queue_service.get_job(PRODUCT_FAMILY, 'F1').state == SyncJob.STATE_COMPLETED

    def test_resolution_hook_fires_once(self, queue_service):
        resolved = []
        queue_service.on_resolved(PRODUCT_FAMILY, lambda job: resolved.append(job.pk))
        runner = runner_with(queue_service, **{PRODUCT_FAMILY: lambda ctx: {}})
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        runner.run(job.pk)
        queue_service.settle(SyncJob.objects.get(pk=job.pk))
        queue_service.get_job(PRODUCT_FAMILY, job.job_id)
        assert resolved == [job.pk]


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

class TestAdministration:
    def test_stats(self, queue_service):
        queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='a')
        queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='b', delay=30)
        queue_service.claim(SyncJob.objects.get(job_id='a').pk)
        stats = queue_service.get_stats(PRODUCT_FAMILY)
        assert stats['active'] == 1
        assert stats['delayed'] == 1
        assert stats['total'] == 2
        assert stats['paused'] is False
        assert set(queue_service.get_all_stats()) == {
            'supplier-sync', 'product-family', 'image-upload', 'meilisearch-sync', 'gemini-sync',
        }

    def test_clean_removes_finished_jobs(self, queue_service):
        runner = runner_with(queue_service, **{PRODUCT_FAMILY: lambda ctx: {}})
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='still-waiting')
        runner.run(job.pk)
        assert queue_service.clean(PRODUCT_FAMILY) == 1
        assert list(SyncJob.objects.values_list('job_id', flat=True)) == ['still-waiting']

    def test_retry_failed(self, queue_service):
        def broken(ctx):
            raise FatalSyncError('no')

        runner = runner_with(queue_service, **{PRODUCT_FAMILY: broken})
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        runner.run(job.pk)
        assert queue_service.retry_failed(PRODUCT_FAMILY) == 1
        job.refresh_from_db()
        assert (job.state, job.attempts_made, job.error) == (SyncJob.STATE_WAITING, 0, '')

    def test_cancel_only_runnable(self, queue_service):
        queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='a')
        queue_service.enqueue(PRODUCT_FAMILY, {}, job_id='b')
        queue_service.claim(SyncJob.objects.get(job_id='b').pk)
        assert queue_service.cancel(PRODUCT_FAMILY, 'a') is True
        assert queue_service.cancel(PRODUCT_FAMILY, 'b') is False

    def test_recover_stalled(self, queue_service):
        job = queue_service.enqueue(PRODUCT_FAMILY, {})
        queue_service.claim(job.pk)
        SyncJob.objects.filter(pk=job.pk).update(heartbeat_at=timezone.now() - timedelta(hours=1))
        assert queue_service.recover_stalled(PRODUCT_FAMILY, timedelta(minutes=15)) == 1
        assert SyncJob.objects.get(pk=job.pk).state == SyncJob.STATE_WAITING

    def test_list_jobs_newest_first(self, queue_service):
        for job_id in ('a', 'b', 'c'):
            queue_service.enqueue(PRODUCT_FAMILY, {}, job_id=job_id)
        assert [j.job_id for j in queue_service.list_jobs(PRODUCT_FAMILY, limit=2)] == ['c', 'b']
