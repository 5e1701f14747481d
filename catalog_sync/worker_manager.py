import logging
import multiprocessing
from typing import Optional

from django.conf import settings

from .queue_config import all_queue_configs

logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE = 'sync-maintenance'
SHUTDOWN_TIMEOUT = 60


def _run_worker(queue_name: str, concurrency: int, loglevel: str) -> None:
    from config.celery import app

    app.worker_main(argv=[
        'worker',
        '--queues', queue_name,
        '--concurrency', str(concurrency),
        '--hostname', f'{queue_name}@%h',
        '--loglevel', loglevel,
    ])


class WorkerManager:
    """
    One Celery worker process per queue.

    stop() sends SIGTERM, which Celery treats as a warm shutdown: jobs in
    progress finish before the process exits.
    """

    def __init__(self, include_maintenance: bool = True, shutdown_timeout: float = SHUTDOWN_TIMEOUT):
        self.include_maintenance = include_maintenance
        self.shutdown_timeout = shutdown_timeout
        self.processes = {}

    def pools(self) -> list[tuple[str, int]]:
        pools = [(config.name, config.concurrency) for config in all_queue_configs()]
        if self.include_maintenance:
            pools.append((MAINTENANCE_QUEUE, 1))
        return pools

    def start(self) -> None:
        for name, concurrency in self.pools():
            if name in self.processes and self.processes[name].is_alive():
                continue
            process = multiprocessing.Process(
                target=_run_worker, args=(name, concurrency, settings.LOG_LEVEL), name=f'worker-{name}',
            )
            process.start()
            self.processes[name] = process
            logger.info("Started worker for %s (concurrency=%d, pid=%s).", name, concurrency, process.pid)

    def stop(self, timeout: Optional[float] = None) -> None:
        timeout = self.shutdown_timeout if timeout is None else timeout
        for process in self.processes.values():
            if process.is_alive():
                process.terminate()
        for name, process in self.processes.items():
            process.join(timeout)
            if process.is_alive():
                logger.warning("Worker for %s did not drain within %ss – killing.", name, timeout)
                process.kill()
                process.join()
        logger.info("Stopped %d workers.", len(self.processes))
        self.processes = {}

    def wait(self) -> None:
        for process in self.processes.values():
            process.join()
