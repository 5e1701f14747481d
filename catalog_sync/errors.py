import requests
from django.core.exceptions import ImproperlyConfigured

TRANSIENT = 'transient'
FATAL = 'fatal'


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class TransientSyncError(SyncError):
    """Temporary condition; the job is retried with backoff."""


class ValidationSyncError(SyncError):
    """Input cannot be processed. Raised at job level it fails the job."""


class NotFoundUpstream(SyncError):
    """The record the job operates on no longer exists upstream."""


class FatalSyncError(SyncError):
    """Retrying cannot help; the job fails immediately."""


def _status_of(exc):
    response = getattr(exc, 'response', None)
    if response is None:
        return None
    return response.status_code


def classify_error(exc: BaseException) -> str:
    """Return TRANSIENT or FATAL for an exception raised inside a job."""
    if isinstance(exc, TransientSyncError):
        return TRANSIENT
    if isinstance(exc, (FatalSyncError, ValidationSyncError, ImproperlyConfigured)):
        return FATAL
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return TRANSIENT
    if isinstance(exc, requests.HTTPError):
        status = _status_of(exc)
        if status is None or status == 429 or status >= 500:
            return TRANSIENT
        return FATAL
    # Unknown failures are retried; max_attempts bounds them.
    return TRANSIENT


def describe_error(exc: BaseException) -> str:
    status = _status_of(exc)
    if status is not None:
        return f"{type(exc).__name__} (HTTP {status}): {exc}"
    return f"{type(exc).__name__}: {exc}"
