import signal

from django.core.management.base import BaseCommand

from catalog_sync.worker_manager import WorkerManager


class Command(BaseCommand):
    help = 'Start one Celery worker per sync queue and drain them on SIGINT/SIGTERM.'

    def add_arguments(self, parser):
        parser.add_argument('--no-maintenance', action='store_true',
                            help='Do not start a worker for the sync-maintenance queue.')

    def handle(self, *args, **options):
        manager = WorkerManager(include_maintenance=not options['no_maintenance'])

        def shutdown(signum, frame):
            self.stdout.write('Draining workers...')
            manager.stop()

        signal.signal(signal.SIGTERM, shutdown)
        signal.signal(signal.SIGINT, shutdown)

        manager.start()
        for name, process in manager.processes.items():
            self.stdout.write(f'{name}: pid {process.pid}')
        manager.wait()
        self.stdout.write(self.style.SUCCESS('All workers stopped.'))
