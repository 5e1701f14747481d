import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q
from django.utils import timezone

from .errors import TRANSIENT, classify_error, describe_error
from .models import QueueState, SyncJob
from .queue_config import QUEUE_NAMES, Backoff, get_queue_config

logger = logging.getLogger(__name__)

RESUME_BATCH = 500


@dataclass
class JobSnapshot:
    pk: int
    queue: str
    job_id: str
    state: str
    progress: dict
    result: Optional[dict]
    error: str
    attempts_made: int
    max_attempts: int
    children_count: int
    pending_children: int
    session_id: str
    created_at: object
    finished_at: object


def celery_dispatch(job: SyncJob, countdown: float = 0) -> None:
    from .tasks import run_sync_job

    run_sync_job.apply_async(args=[job.pk], queue=job.queue, countdown=max(countdown, 0))


def _as_timedelta(value) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


class QueueService:
    """
    Durable job queues on top of the SyncJob table.

    Rows are the source of truth; the Celery message sent on commit only
    carries the row's primary key. Claims and parent settling are
    compare-and-set updates so concurrent workers never double-run a job or
    fire a resolution hook twice.
    """

    def __init__(self, dispatcher: Optional[Callable] = None):
        self._dispatch = dispatcher or celery_dispatch
        self._resolution_hooks = {}
        self._failure_hooks = {}

    def on_resolved(self, queue_name: str, hook: Callable[[SyncJob], None]) -> None:
        """Register a callback fired once when a job of `queue_name` completes."""
        self._resolution_hooks.setdefault(queue_name, []).append(hook)

    def on_failed(self, queue_name: str, hook: Callable[[SyncJob], None]) -> None:
        """Register a callback fired when a job of `queue_name` fails permanently."""
        self._failure_hooks.setdefault(queue_name, []).append(hook)

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def enqueue(self, queue_name: str, payload: dict, job_id: Optional[str] = None,
                attempts: Optional[int] = None, backoff: Optional[dict] = None,
                parent: Optional[SyncJob] = None, delay: float = 0,
                session_id: str = '', supplier_code: str = '') -> SyncJob:
        config = get_queue_config(queue_name)
        backoff = backoff or {'type': config.backoff.type, 'delay': config.backoff.delay}
        job_id = job_id or uuid.uuid4().hex
        defaults = {
            'payload': payload,
            'max_attempts': attempts or config.attempts,
            'backoff_type': backoff['type'],
            'backoff_delay': float(backoff['delay']),
            'available_at': timezone.now() + timedelta(seconds=delay),
            'state': SyncJob.STATE_DELAYED if delay else SyncJob.STATE_WAITING,
            'parent': parent,
            'session_id': session_id,
            'supplier_code': supplier_code,
        }
        try:
            with transaction.atomic():
                job, created = SyncJob.objects.get_or_create(queue=queue_name, job_id=job_id, defaults=defaults)
        except IntegrityError:
            job, created = SyncJob.objects.get(queue=queue_name, job_id=job_id), False

        if not created:
            logger.debug("Job %s/%s already exists (%s) – not enqueued again.", queue_name, job_id, job.state)
            return job

        logger.debug("Enqueued %s/%s.", queue_name, job_id)
        transaction.on_commit(lambda: self._dispatch(job, delay))
        return job

    def get_job(self, queue_name: str, job_id: str) -> Optional[JobSnapshot]:
        job = SyncJob.objects.filter(queue=queue_name, job_id=job_id).first()
        if job is None:
            return None
        if job.state == SyncJob.STATE_AWAITING_DEPENDENTS:
            self.settle(job)
            job.refresh_from_db()
        return self._snapshot(job)

    def list_jobs(self, queue_name: str, state: Optional[str] = None,
                  offset: int = 0, limit: int = 50) -> list[JobSnapshot]:
        qs = SyncJob.objects.filter(queue=queue_name)
        if state:
            qs = qs.filter(state=state)
        qs = qs.order_by('-created_at', '-pk')[offset:offset + limit]
        return [self._snapshot(job) for job in qs]

    def get_stats(self, queue_name: str) -> dict:
        for job in SyncJob.objects.filter(queue=queue_name, state=SyncJob.STATE_AWAITING_DEPENDENTS):
            self.settle(job)
        counts = dict(
            SyncJob.objects.filter(queue=queue_name)
            .values_list('state')
            .annotate(n=Count('pk'))
        )
        stats = {state: counts.get(state, 0) for state, _ in SyncJob.STATE_CHOICES}
        stats['total'] = sum(counts.values())
        stats['paused'] = self.is_paused(queue_name)
        return stats

    def get_all_stats(self) -> dict:
        return {name: self.get_stats(name) for name in QUEUE_NAMES}

    def is_paused(self, queue_name: str) -> bool:
        return QueueState.objects.filter(queue=queue_name, is_paused=True).exists()

    def pause(self, queue_name: str) -> None:
        QueueState.objects.update_or_create(queue=queue_name, defaults={'is_paused': True})
        logger.info("Queue %s paused.", queue_name)

    def resume(self, queue_name: str) -> int:
        QueueState.objects.update_or_create(queue=queue_name, defaults={'is_paused': False})
        dispatched = self.dispatch_due(queue_name)
        logger.info("Queue %s resumed, %d jobs re-dispatched.", queue_name, dispatched)
        return dispatched

    def clean(self, queue_name: str, older_than=0, state: str = SyncJob.STATE_COMPLETED) -> int:
        cutoff = timezone.now() - _as_timedelta(older_than)
        qs = SyncJob.objects.filter(queue=queue_name, state=state)
        if state in SyncJob.TERMINAL_STATES:
            qs = qs.filter(finished_at__lte=cutoff)
        else:
            qs = qs.filter(created_at__lte=cutoff)
        deleted, _ = qs.delete()
        logger.info("Cleaned %d %s jobs from %s.", deleted, state, queue_name)
        return deleted

    def retry_failed(self, queue_name: str, limit: int = 100) -> int:
        pks = list(
            SyncJob.objects.filter(queue=queue_name, state=SyncJob.STATE_FAILED)
            .order_by('finished_at')
            .values_list('pk', flat=True)[:limit]
        )
        retried = SyncJob.objects.filter(pk__in=pks, state=SyncJob.STATE_FAILED).update(
            state=SyncJob.STATE_WAITING,
            attempts_made=0,
            error='',
            finished_at=None,
            available_at=timezone.now(),
        )
        for job in SyncJob.objects.filter(pk__in=pks, state=SyncJob.STATE_WAITING):
            transaction.on_commit(lambda job=job: self._dispatch(job, 0))
        logger.info("Retrying %d failed jobs in %s.", retried, queue_name)
        return retried

    def cancel(self, queue_name: str, job_id: str) -> bool:
        deleted, _ = SyncJob.objects.filter(
            queue=queue_name, job_id=job_id, state__in=SyncJob.RUNNABLE_STATES,
        ).delete()
        if deleted:
            logger.info("Cancelled %s/%s.", queue_name, job_id)
        return bool(deleted)

    def recover_stalled(self, queue_name: str, older_than) -> int:
        cutoff = timezone.now() - _as_timedelta(older_than)
        recovered = SyncJob.objects.filter(
            queue=queue_name, state=SyncJob.STATE_ACTIVE,
        ).filter(
            Q(heartbeat_at__lt=cutoff) | Q(heartbeat_at__isnull=True, started_at__lt=cutoff)
        ).update(state=SyncJob.STATE_WAITING, available_at=timezone.now())
        if recovered:
            logger.warning("Recovered %d stalled jobs in %s.", recovered, queue_name)
        return recovered

    def dispatch_due(self, queue_name: str) -> int:
        if self.is_paused(queue_name):
            return 0
        jobs = list(
            SyncJob.objects.filter(
                queue=queue_name, state__in=SyncJob.RUNNABLE_STATES, available_at__lte=timezone.now(),
            ).order_by('available_at')[:RESUME_BATCH]
        )
        for job in jobs:
            transaction.on_commit(lambda job=job: self._dispatch(job, 0))
        return len(jobs)

    # ------------------------------------------------------------------
    # Worker API
    # ------------------------------------------------------------------

    def claim(self, job_pk: int) -> Optional[SyncJob]:
        job = SyncJob.objects.filter(pk=job_pk).only('queue').first()
        if job is None or self.is_paused(job.queue):
            return None
        now = timezone.now()
        claimed = SyncJob.objects.filter(
            pk=job_pk, state__in=SyncJob.RUNNABLE_STATES, available_at__lte=now,
        ).update(
            state=SyncJob.STATE_ACTIVE,
            attempts_made=F('attempts_made') + 1,
            started_at=now,
            heartbeat_at=now,
        )
        if not claimed:
            return None
        return SyncJob.objects.get(pk=job_pk)

    def report_progress(self, job: SyncJob, step: str, percentage: int) -> None:
        job.progress = {'step': step, 'percentage': max(0, min(100, int(percentage)))}
        SyncJob.objects.filter(pk=job.pk).update(progress=job.progress, heartbeat_at=timezone.now())

    def complete(self, job: SyncJob, result=None) -> str:
        """Finish an active job; it waits for outstanding children before completing."""
        SyncJob.objects.filter(pk=job.pk, state=SyncJob.STATE_ACTIVE).update(
            state=SyncJob.STATE_AWAITING_DEPENDENTS, result=result, error='',
        )
        job.refresh_from_db()
        if job.state == SyncJob.STATE_AWAITING_DEPENDENTS and not self.settle(job):
            job.refresh_from_db()
            if job.state == SyncJob.STATE_AWAITING_DEPENDENTS:
                logger.debug(
                    "Job %s/%s awaiting %d dependents.",
                    job.queue, job.job_id, self.pending_children(job),
                )
        job.refresh_from_db()
        return job.state

    def fail_or_retry(self, job: SyncJob, exc: BaseException) -> str:
        message = describe_error(exc)
        if classify_error(exc) == TRANSIENT and job.attempts_made < job.max_attempts:
            delay = Backoff(job.backoff_type, job.backoff_delay).delay_for(job.attempts_made)
            SyncJob.objects.filter(pk=job.pk, state=SyncJob.STATE_ACTIVE).update(
                state=SyncJob.STATE_DELAYED,
                available_at=timezone.now() + timedelta(seconds=delay),
                error=message,
            )
            job.refresh_from_db()
            logger.warning(
                "Job %s/%s failed (attempt %d/%d), retrying in %.0fs: %s",
                job.queue, job.job_id, job.attempts_made, job.max_attempts, delay, message,
            )
            transaction.on_commit(lambda: self._dispatch(job, delay))
            return job.state

        SyncJob.objects.filter(pk=job.pk, state=SyncJob.STATE_ACTIVE).update(
            state=SyncJob.STATE_FAILED, error=message, finished_at=timezone.now(),
        )
        job.refresh_from_db()
        logger.error(
            "Job %s/%s failed permanently after %d attempts: %s",
            job.queue, job.job_id, job.attempts_made, message,
        )
        for hook in self._failure_hooks.get(job.queue, []):
            hook(job)
        self._settle_parent(job)
        return job.state

    def pending_children(self, job: SyncJob) -> int:
        return job.children.exclude(state__in=SyncJob.TERMINAL_STATES).count()

    def settle(self, job: SyncJob) -> bool:
        """
        Complete a job awaiting dependents once all of its children resolved.

        Returns True only for the caller whose compare-and-set won; that
        caller fires the resolution hooks and settles the next ancestor.
        """
        if self.pending_children(job):
            return False
        won = SyncJob.objects.filter(pk=job.pk, state=SyncJob.STATE_AWAITING_DEPENDENTS).update(
            state=SyncJob.STATE_COMPLETED, finished_at=timezone.now(),
        )
        if not won:
            return False
        job.refresh_from_db()
        logger.debug("Job %s/%s completed.", job.queue, job.job_id)
        for hook in self._resolution_hooks.get(job.queue, []):
            hook(job)
        self._settle_parent(job)
        return True

    def _settle_parent(self, job: SyncJob) -> None:
        if job.parent_id is None:
            return
        parent = SyncJob.objects.filter(pk=job.parent_id).first()
        if parent is not None and parent.state == SyncJob.STATE_AWAITING_DEPENDENTS:
            self.settle(parent)

    def _snapshot(self, job: SyncJob) -> JobSnapshot:
        children = job.children.aggregate(
            total=Count('pk'),
            pending=Count('pk', filter=~Q(state__in=SyncJob.TERMINAL_STATES)),
        )
        return JobSnapshot(
            pk=job.pk,
            queue=job.queue,
            job_id=job.job_id,
            state=job.state,
            progress=job.progress,
            result=job.result,
            error=job.error,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            children_count=children['total'],
            pending_children=children['pending'],
            session_id=job.session_id,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )
