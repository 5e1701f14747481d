import logging
from typing import Callable, Optional

from .errors import NotFoundUpstream, describe_error
from .models import SyncJob

logger = logging.getLogger(__name__)


class JobContext:
    """What a stage handler sees of the job it is running."""

    def __init__(self, job: SyncJob, queue_service, tracker):
        self.job = job
        self.queue_service = queue_service
        self.tracker = tracker

    @property
    def payload(self) -> dict:
        return self.job.payload

    @property
    def session_id(self) -> str:
        return self.job.session_id

    @property
    def supplier_code(self) -> str:
        return self.job.supplier_code

    def progress(self, step: str, percentage: int) -> None:
        self.queue_service.report_progress(self.job, step, percentage)

    def enqueue_child(self, queue_name: str, payload: dict, job_id: str) -> SyncJob:
        return self.queue_service.enqueue(
            queue_name, payload, job_id=job_id, parent=self.job,
            session_id=self.job.session_id, supplier_code=self.job.supplier_code,
        )

    def stop_requested(self) -> bool:
        return self.tracker.stop_requested(self.job.session_id)


class JobRunner:
    """Claims one job, runs its stage handler and records the outcome."""

    def __init__(self, queue_service, tracker, handlers: dict[str, Callable[[JobContext], Optional[dict]]]):
        self.queue_service = queue_service
        self.tracker = tracker
        self.handlers = handlers

    def run(self, job_pk: int) -> Optional[str]:
        job = self.queue_service.claim(job_pk)
        if job is None:
            logger.debug("Job %s not claimable – skipping.", job_pk)
            return None

        handler = self.handlers[job.queue]
        logger.info("Running %s/%s (attempt %d/%d).", job.queue, job.job_id, job.attempts_made, job.max_attempts)
        try:
            result = handler(JobContext(job, self.queue_service, self.tracker))
        except NotFoundUpstream as exc:
            self.tracker.record_job_skipped(job, str(exc))
            return self.queue_service.complete(job, {'status': 'skipped', 'reason': str(exc)})
        except Exception as exc:
            state = self.queue_service.fail_or_retry(job, exc)
            if state == SyncJob.STATE_FAILED:
                self.tracker.record_job_failure(job, describe_error(exc))
            return state
        return self.queue_service.complete(job, result)
