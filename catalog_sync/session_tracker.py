import logging
import uuid
from datetime import timedelta
from typing import Callable, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F
from django.utils import timezone

from .models import ProductFamily, Supplier, SyncJob, SyncSession
from .queue_config import GEMINI_SYNC, IMAGE_UPLOAD, MEILISEARCH_SYNC, PRODUCT_FAMILY, SUPPLIER_SYNC

logger = logging.getLogger(__name__)

MAX_ERRORS = 100

STAGES = ('promidata', 'images', 'search', 'semantic')
UPSTREAM = {'images': 'promidata', 'search': 'images', 'semantic': 'search'}

# stage -> (total field, fields counted as done, fields counted as failed)
STAGE_COUNTERS = {
    'promidata': (
        'promidata_families_total',
        ('promidata_families_processed', 'promidata_families_skipped', 'promidata_families_invalid'),
        ('promidata_families_failed',),
    ),
    'images': ('images_total', ('images_uploaded', 'images_deduplicated'), ('images_failed',)),
    'search': ('search_total', ('search_indexed',), ('search_failed',)),
    'semantic': ('semantic_total', ('semantic_synced', 'semantic_skipped'), ('semantic_failed',)),
}

FAILURE_COUNTERS = {
    PRODUCT_FAMILY: 'promidata_families_failed',
    IMAGE_UPLOAD: 'images_failed',
    MEILISEARCH_SYNC: 'search_failed',
    GEMINI_SYNC: 'semantic_failed',
}

SKIP_COUNTERS = {
    IMAGE_UPLOAD: 'images_failed',
    GEMINI_SYNC: 'semantic_skipped',
}


def new_session_id(supplier_code: str) -> str:
    return f"{supplier_code}-{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


class SessionTracker:
    """
    Per-supplier sync session bookkeeping.

    Counters are bumped with F() expressions so concurrent workers never lose
    an update; stage settling runs after each bump under a row lock.
    """

    def __init__(self, semantic_enabled: bool = False, search_index=None,
                 health_checks: Optional[dict[str, Callable[[], bool]]] = None):
        self.semantic_enabled = semantic_enabled
        self.search_index = search_index
        self.health_checks = health_checks or {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(self, supplier: Supplier, session_id: Optional[str] = None,
                      triggered_by: str = 'manual') -> SyncSession:
        session, created = SyncSession.objects.get_or_create(
            session_id=session_id or new_session_id(supplier.code),
            defaults={'supplier': supplier, 'supplier_code': supplier.code, 'triggered_by': triggered_by},
        )
        if session.status == SyncSession.STATUS_PENDING:
            now = timezone.now()
            SyncSession.objects.filter(pk=session.pk, status=SyncSession.STATUS_PENDING).update(
                status=SyncSession.STATUS_RUNNING,
                promidata_status=SyncSession.STAGE_RUNNING,
                promidata_started_at=now,
            )
            session.refresh_from_db()
        if created:
            logger.info("Started sync session %s for supplier %s.", session.session_id, supplier.code)
        return session

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        return SyncSession.objects.filter(session_id=session_id).first()

    def get_active_session(self, supplier_code: str) -> Optional[SyncSession]:
        return (
            SyncSession.objects.filter(
                supplier_code=supplier_code,
                status__in=(SyncSession.STATUS_PENDING, SyncSession.STATUS_RUNNING),
            )
            .order_by('-started_at')
            .first()
        )

    def record_listing(self, session_id: str, products_found: int, families_total: int,
                       families_skipped: int = 0, families_invalid: int = 0,
                       families_removed: int = 0) -> None:
        """Record the outcome of manifest parsing and change detection."""
        SyncSession.objects.filter(session_id=session_id).update(
            promidata_products_found=products_found,
            promidata_families_total=families_total,
            promidata_families_skipped=families_skipped,
            promidata_families_invalid=families_invalid,
            promidata_families_removed=families_removed,
            promidata_listed=True,
        )
        self._maybe_settle(session_id)

    def increment(self, session_id: str, **counters) -> None:
        if not session_id or not counters:
            return
        SyncSession.objects.filter(session_id=session_id).update(
            **{name: F(name) + amount for name, amount in counters.items()}
        )
        self._maybe_settle(session_id)

    def record_error(self, session_id: str, message: str, context: Optional[dict] = None) -> None:
        if not session_id:
            return
        with transaction.atomic():
            session = SyncSession.objects.select_for_update().filter(session_id=session_id).first()
            if session is None:
                return
            entry = {'at': timezone.now().isoformat(), 'message': message}
            if context:
                entry.update(context)
            session.errors = (session.errors + [entry])[-MAX_ERRORS:]
            session.error_count = F('error_count') + 1
            session.last_error = message
            session.save(update_fields=['errors', 'error_count', 'last_error'])

    def record_job_failure(self, job: SyncJob, message: str) -> None:
        """Account for a job that failed permanently."""
        if not job.session_id:
            return
        self.record_error(job.session_id, message, {'queue': job.queue, 'job_id': job.job_id})
        if job.queue == SUPPLIER_SYNC:
            self.fail_session(job.session_id, message)
            return
        counters = {FAILURE_COUNTERS[job.queue]: 1}
        if job.queue == MEILISEARCH_SYNC and self.semantic_enabled:
            # the semantic job for this family will never be enqueued
            counters['semantic_skipped'] = 1
        self.increment(job.session_id, **counters)

    def record_job_skipped(self, job: SyncJob, reason: str) -> None:
        logger.info("Job %s/%s skipped: %s", job.queue, job.job_id, reason)
        if job.session_id and job.queue in SKIP_COUNTERS:
            self.increment(job.session_id, **{SKIP_COUNTERS[job.queue]: 1})

    def request_stop(self, session_id: str) -> bool:
        updated = SyncSession.objects.filter(
            session_id=session_id, status__in=(SyncSession.STATUS_PENDING, SyncSession.STATUS_RUNNING),
        ).update(stop_requested=True)
        if updated:
            logger.info("Stop requested for session %s.", session_id)
        return bool(updated)

    def stop_requested(self, session_id: str) -> bool:
        if not session_id:
            return False
        return SyncSession.objects.filter(session_id=session_id, stop_requested=True).exists()

    def mark_stopped(self, session_id: str) -> None:
        self._finish(session_id, SyncSession.STATUS_STOPPED)

    def fail_session(self, session_id: str, message: str = '') -> None:
        self._finish(session_id, SyncSession.STATUS_FAILED, message)

    def expire_stale(self, timeout: Optional[timedelta] = None) -> int:
        cutoff = timezone.now() - (timeout or settings.SYNC_SESSION_TIMEOUT)
        stale = SyncSession.objects.filter(
            status__in=(SyncSession.STATUS_PENDING, SyncSession.STATUS_RUNNING), started_at__lt=cutoff,
        ).values_list('session_id', flat=True)
        expired = 0
        for session_id in list(stale):
            self.fail_session(session_id, 'Session timed out.')
            expired += 1
        if expired:
            logger.warning("Expired %d stale sync sessions.", expired)
        return expired

    def _finish(self, session_id: str, status: str, message: str = '') -> None:
        fields = {'status': status, 'completed_at': timezone.now()}
        if message:
            fields['last_error'] = message
        updated = SyncSession.objects.filter(session_id=session_id).exclude(
            status__in=SyncSession.FINAL_STATUSES,
        ).update(**fields)
        if updated:
            logger.info("Sync session %s %s.", session_id, status)

    # ------------------------------------------------------------------
    # Stage settling
    # ------------------------------------------------------------------

    def _stage_settled(self, session: SyncSession, stage: str) -> bool:
        return getattr(session, f'{stage}_status') in SyncSession.SETTLED_STAGE_STATUSES

    def _maybe_settle(self, session_id: str) -> None:
        with transaction.atomic():
            session = SyncSession.objects.select_for_update().filter(session_id=session_id).first()
            if session is None or session.status in SyncSession.FINAL_STATUSES:
                return
            now = timezone.now()
            changed = []
            for stage in STAGES:
                if self._stage_settled(session, stage):
                    continue
                total_field, done_fields, failed_fields = STAGE_COUNTERS[stage]
                total = getattr(session, total_field)
                done = sum(getattr(session, name) for name in done_fields)
                failed = sum(getattr(session, name) for name in failed_fields)

                if total and getattr(session, f'{stage}_status') == SyncSession.STAGE_PENDING:
                    setattr(session, f'{stage}_status', SyncSession.STAGE_RUNNING)
                    setattr(session, f'{stage}_started_at', now)
                    changed += [f'{stage}_status', f'{stage}_started_at']

                upstream = UPSTREAM.get(stage)
                upstream_ready = session.promidata_listed if upstream is None else self._stage_settled(session, upstream)
                if not upstream_ready or done + failed < total:
                    break

                if total == 0:
                    status = SyncSession.STAGE_SKIPPED
                elif failed >= total:
                    status = SyncSession.STAGE_FAILED
                else:
                    status = SyncSession.STAGE_COMPLETED
                setattr(session, f'{stage}_status', status)
                setattr(session, f'{stage}_completed_at', now)
                changed += [f'{stage}_status', f'{stage}_completed_at']
                logger.info("Session %s stage %s %s.", session_id, stage, status)

            if all(self._stage_settled(session, stage) for stage in STAGES):
                session.status = SyncSession.STATUS_COMPLETED
                session.completed_at = now
                changed += ['status', 'completed_at']
                logger.info("Sync session %s completed.", session_id)
            if changed:
                session.save(update_fields=sorted(set(changed)))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def health(self) -> dict:
        since = timezone.now() - timedelta(days=7)
        finished = SyncSession.objects.filter(started_at__gte=since, status__in=SyncSession.FINAL_STATUSES)
        total = finished.count()
        succeeded = finished.filter(status=SyncSession.STATUS_COMPLETED).count()
        checks = {}
        for name, check in self.health_checks.items():
            try:
                checks[name] = bool(check())
            except Exception as exc:
                logger.warning("Health check %s failed: %s", name, exc)
                checks[name] = False
        return {
            'status': 'healthy' if all(checks.values()) else 'degraded',
            'active_sessions': SyncSession.objects.filter(
                status__in=(SyncSession.STATUS_PENDING, SyncSession.STATUS_RUNNING),
            ).count(),
            'success_rate_7d': round(100.0 * succeeded / total, 1) if total else None,
            'checks': checks,
        }

    def verify(self, session_id: str) -> Optional[dict]:
        """Compare a session's recorded counters with the job table and the search index."""
        session = self.get_session(session_id)
        if session is None:
            return None
        counts = {
            (queue, state): n
            for queue, state, n in SyncJob.objects.filter(session_id=session_id)
            .values_list('queue', 'state')
            .annotate(n=Count('pk'))
        }

        def jobs(queue, state):
            return counts.get((queue, state), 0)

        # a vanished image completes its job but counts as a failed image
        images_skipped = SyncJob.objects.filter(
            session_id=session_id, queue=IMAGE_UPLOAD, state=SyncJob.STATE_COMPLETED, result__status='skipped',
        ).count()

        # a failed search job skips its semantic job without enqueueing one
        semantic_skipped_by_jobs = session.semantic_skipped
        if self.semantic_enabled:
            semantic_skipped_by_jobs -= session.search_failed

        checks = [
            ('families_processed', session.promidata_families_processed, jobs(PRODUCT_FAMILY, SyncJob.STATE_COMPLETED)),
            ('families_failed', session.promidata_families_failed, jobs(PRODUCT_FAMILY, SyncJob.STATE_FAILED)),
            ('images_done', session.images_uploaded + session.images_deduplicated, jobs(IMAGE_UPLOAD, SyncJob.STATE_COMPLETED) - images_skipped),
            ('images_failed', session.images_failed, jobs(IMAGE_UPLOAD, SyncJob.STATE_FAILED) + images_skipped),
            ('search_indexed', session.search_indexed, jobs(MEILISEARCH_SYNC, SyncJob.STATE_COMPLETED)),
            ('semantic_done', session.semantic_synced + semantic_skipped_by_jobs, jobs(GEMINI_SYNC, SyncJob.STATE_COMPLETED)),
            ('semantic_failed', session.semantic_failed, jobs(GEMINI_SYNC, SyncJob.STATE_FAILED)),
        ]
        if self.search_index is not None:
            active = ProductFamily.objects.filter(supplier__code=session.supplier_code, is_active=True).count()
            checks.append(('search_documents', active, self.search_index.count(session.supplier_code)))

        mismatches = [
            {'check': name, 'recorded': recorded, 'actual': actual}
            for name, recorded, actual in checks
            if recorded != actual
        ]
        return {
            'session_id': session_id,
            'status': session.status,
            'ok': not mismatches,
            'checks': [{'check': n, 'recorded': r, 'actual': a} for n, r, a in checks],
            'mismatches': mismatches,
        }
