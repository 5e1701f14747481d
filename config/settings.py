import os
from datetime import timedelta
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_list(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'catalog-sync-dev-key')
DEBUG = env_bool('DJANGO_DEBUG', False)
ALLOWED_HOSTS = env_list('DJANGO_ALLOWED_HOSTS', ['localhost'])

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'catalog_sync',
]

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

# ---------------------------------------------------------------------------
# Blob storage for product images
# ---------------------------------------------------------------------------

MEDIA_ROOT = os.environ.get('MEDIA_ROOT', str(BASE_DIR / 'media'))
MEDIA_URL = os.environ.get('MEDIA_URL', '/media/')
STORAGES = {
    'default': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
    },
}
IMAGE_STORAGE_PREFIX = os.environ.get('IMAGE_STORAGE_PREFIX', 'products')

# ---------------------------------------------------------------------------
# Upstream feed and downstream indexes
# ---------------------------------------------------------------------------

PROMIDATA_BASE_URL = os.environ.get(
    'PROMIDATA_BASE_URL',
    'https://promi-dl.de/Profiles/Live/849c892e-b443-4f49-be3a-61a351cbdd23',
)

MEILISEARCH_URL = os.environ.get('MEILISEARCH_URL', 'http://localhost:7700')
MEILISEARCH_API_KEY = os.environ.get('MEILISEARCH_API_KEY', '')
MEILISEARCH_INDEX = os.environ.get('MEILISEARCH_INDEX', 'products')
SEARCH_TASK_MAX_POLLS = int(os.environ.get('SEARCH_TASK_MAX_POLLS', '20'))
SEARCH_TASK_POLL_INTERVAL = float(os.environ.get('SEARCH_TASK_POLL_INTERVAL', '0.5'))

GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY', '')
GEMINI_API_BASE_URL = os.environ.get('GEMINI_API_BASE_URL', 'https://generativelanguage.googleapis.com')
GEMINI_STORE_DISPLAY_NAME = os.environ.get('GEMINI_STORE_DISPLAY_NAME', 'product-catalog')
SEMANTIC_SYNC_ENABLED = env_bool('SEMANTIC_SYNC_ENABLED', bool(GEMINI_API_KEY))
SEMANTIC_POLL_INTERVAL = float(os.environ.get('SEMANTIC_POLL_INTERVAL', '3'))
SEMANTIC_MAX_POLLS = int(os.environ.get('SEMANTIC_MAX_POLLS', '20'))

# ---------------------------------------------------------------------------
# Pipeline tuning
# ---------------------------------------------------------------------------

SYNC_LOCALES = env_list('SYNC_LOCALES', ['en', 'de', 'fr', 'nl'])
SYNC_FEED_FETCH_CONCURRENCY = int(os.environ.get('SYNC_FEED_FETCH_CONCURRENCY', '5'))
SYNC_SESSION_TIMEOUT = timedelta(hours=int(os.environ.get('SYNC_SESSION_TIMEOUT_HOURS', '6')))
SYNC_STALLED_JOB_TIMEOUT = timedelta(minutes=int(os.environ.get('SYNC_STALLED_JOB_TIMEOUT_MINUTES', '15')))
SYNC_IMAGE_CLAIM_TIMEOUT = timedelta(minutes=int(os.environ.get('SYNC_IMAGE_CLAIM_TIMEOUT_MINUTES', '10')))

# Overrides merged over catalog_sync.queue_config.DEFAULT_QUEUES.
SYNC_QUEUES = {
    'supplier-sync': {'concurrency': int(os.environ.get('SUPPLIER_SYNC_CONCURRENCY', '1'))},
    'product-family': {'concurrency': int(os.environ.get('PRODUCT_FAMILY_CONCURRENCY', '3'))},
    'image-upload': {'concurrency': int(os.environ.get('IMAGE_UPLOAD_CONCURRENCY', '10'))},
    'meilisearch-sync': {'concurrency': int(os.environ.get('MEILISEARCH_SYNC_CONCURRENCY', '5'))},
    'gemini-sync': {'concurrency': int(os.environ.get('GEMINI_SYNC_CONCURRENCY', '2'))},
}

# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_DEFAULT_QUEUE = 'sync-maintenance'
CELERY_TASK_ROUTES = {
    'catalog_sync.auto_import_suppliers': {'queue': 'sync-maintenance'},
    'catalog_sync.sweep_queues': {'queue': 'sync-maintenance'},
    'catalog_sync.expire_stale_sessions': {'queue': 'sync-maintenance'},
}
CELERY_BEAT_SCHEDULE = {
    'auto-import-suppliers': {
        'task': 'catalog_sync.auto_import_suppliers',
        'schedule': crontab(minute=0, hour=2),
    },
    'sweep-queues': {
        'task': 'catalog_sync.sweep_queues',
        'schedule': timedelta(minutes=1),
    },
    'expire-stale-sessions': {
        'task': 'catalog_sync.expire_stale_sessions',
        'schedule': timedelta(minutes=30),
    },
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s [%(process)d] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'catalog_sync': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
