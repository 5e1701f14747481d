import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from threading import Lock
from typing import Optional

import requests

from .errors import TransientSyncError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RATE_LIMIT = 5  # requests per second
DEFAULT_TIMEOUT = 30


class RateLimiter:
    """
    Request budget of one upstream, shared by every thread calling it.

    Each ApiClient subclass owns one limiter sized by its `rate_limit` and
    `rate_period`, so the feed, the image CDN, Meilisearch and Gemini are
    throttled independently. A thread that finds the budget spent sleeps
    until the period ends and starts the next one.
    """

    def __init__(self, rate: int, period: float = 1.0, name: str = ''):
        self.name = name
        self._rate = rate
        self._period = period
        self._remaining = rate
        self._opened_at = None
        self._lock = Lock()

    def acquire(self):
        with self._lock:
            now = time.monotonic()
            if self._opened_at is None or now - self._opened_at >= self._period:
                self._opened_at, self._remaining = now, self._rate

            if self._remaining:
                self._remaining -= 1
                return

            wait = self._period - (now - self._opened_at)
            if wait > 0:
                logger.debug("Request budget of %s spent – waiting %.2fs.", self.name or 'client', wait)
                time.sleep(wait)
            self._opened_at, self._remaining = time.monotonic(), self._rate - 1


def parse_retry_after(response: requests.Response) -> Optional[float]:
    """Seconds requested by a Retry-After header (delta or HTTP date), None if unusable."""
    header = response.headers.get('Retry-After')
    if header is None:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class ApiClient:
    """
    Thin `requests.Session` wrapper used by every outbound integration.

    Subclasses pass their base URL and auth headers. 429 responses are retried
    up to `max_retries` times honoring Retry-After, other error statuses are
    raised as `requests.HTTPError` for the caller to classify.
    """

    rate_limit = RATE_LIMIT
    rate_period = 1.0
    max_retries = MAX_RETRIES

    def __init__(self, base_url: str, headers: Optional[dict] = None, timeout: float = DEFAULT_TIMEOUT):
        self._base_url = base_url.rstrip('/')
        self._session = requests.Session()
        if headers:
            self._session.headers.update(headers)
        self._timeout = timeout
        self._rate_limiter = RateLimiter(self.rate_limit, self.rate_period, name=type(self).__name__)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        kwargs.setdefault('timeout', self._timeout)
        delay = 1.0
        for attempt in range(1, self.max_retries + 1):
            self._rate_limiter.acquire()
            response = self._session.request(method, url, **kwargs)
            if response.status_code != 429:
                response.raise_for_status()
                return response

            retry_after = parse_retry_after(response)
            wait = delay if retry_after is None else retry_after
            logger.warning(
                "Rate limited by %s (attempt %d/%d) – retrying in %.1fs.",
                url, attempt, self.max_retries, wait,
            )
            time.sleep(wait)
            delay *= 2

        raise TransientSyncError(f"{method} {url} still rate limited after {self.max_retries} attempts.")


def is_not_found(exc: requests.HTTPError) -> bool:
    return exc.response is not None and exc.response.status_code == 404
