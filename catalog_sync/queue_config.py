from dataclasses import dataclass

from django.conf import settings

SUPPLIER_SYNC = 'supplier-sync'
PRODUCT_FAMILY = 'product-family'
IMAGE_UPLOAD = 'image-upload'
MEILISEARCH_SYNC = 'meilisearch-sync'
GEMINI_SYNC = 'gemini-sync'

QUEUE_NAMES = (SUPPLIER_SYNC, PRODUCT_FAMILY, IMAGE_UPLOAD, MEILISEARCH_SYNC, GEMINI_SYNC)

BACKOFF_EXPONENTIAL = 'exponential'
BACKOFF_FIXED = 'fixed'

DEFAULT_QUEUES = {
    SUPPLIER_SYNC: {'concurrency': 1, 'attempts': 2, 'backoff': {'type': BACKOFF_EXPONENTIAL, 'delay': 30}},
    PRODUCT_FAMILY: {'concurrency': 3, 'attempts': 3, 'backoff': {'type': BACKOFF_EXPONENTIAL, 'delay': 10}},
    IMAGE_UPLOAD: {'concurrency': 10, 'attempts': 5, 'backoff': {'type': BACKOFF_FIXED, 'delay': 30}},
    MEILISEARCH_SYNC: {'concurrency': 5, 'attempts': 3, 'backoff': {'type': BACKOFF_EXPONENTIAL, 'delay': 5}},
    GEMINI_SYNC: {'concurrency': 2, 'attempts': 3, 'backoff': {'type': BACKOFF_EXPONENTIAL, 'delay': 10}},
}


@dataclass(frozen=True)
class Backoff:
    type: str
    delay: float

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt after `attempts_made` failures."""
        if self.type == BACKOFF_FIXED:
            return self.delay
        return self.delay * 2 ** max(attempts_made - 1, 0)


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    attempts: int
    backoff: Backoff


def get_queue_config(name: str) -> QueueConfig:
    if name not in QUEUE_NAMES:
        raise KeyError(f"Unknown queue: {name}")
    merged = dict(DEFAULT_QUEUES[name])
    merged.update(getattr(settings, 'SYNC_QUEUES', {}).get(name, {}))
    backoff = merged['backoff']
    return QueueConfig(
        name=name,
        concurrency=int(merged['concurrency']),
        attempts=int(merged['attempts']),
        backoff=Backoff(type=backoff['type'], delay=float(backoff['delay'])),
    )


def all_queue_configs() -> list[QueueConfig]:
    return [get_queue_config(name) for name in QUEUE_NAMES]
