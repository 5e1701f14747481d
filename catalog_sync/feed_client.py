import hashlib
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import requests
from django.conf import settings

from .errors import SyncError, ValidationSyncError
from .http_client import ApiClient

logger = logging.getLogger(__name__)

IMPORT_PATH = 'Import/Import.txt'
SUPPLIER_CODE_RE = re.compile(r'/([A-Z]\d+)/')


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    hash: str
    sku: str
    supplier_code: str


@dataclass
class FetchResult:
    variants: list = field(default_factory=list)
    failed_urls: list = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_urls


def parse_manifest(text: str) -> list[ManifestEntry]:
    """Parse Import.txt: one `url|hash` per line, the category CSV line skipped."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line or 'CAT.csv' in line or '|' not in line:
            continue
        url, _, digest = line.partition('|')
        url, digest = url.strip(), digest.strip()
        if not url or not digest:
            continue
        match = SUPPLIER_CODE_RE.search(url)
        filename = url.rsplit('/', 1)[-1]
        entries.append(ManifestEntry(
            url=url,
            hash=digest,
            sku=filename[:-5] if filename.endswith('.json') else filename,
            supplier_code=match.group(1) if match else '',
        ))
    return entries


def manifest_digest(entries: list[ManifestEntry]) -> str:
    """Stable digest of a supplier's manifest lines, order-independent."""
    lines = sorted(f"{e.url}|{e.hash}" for e in entries)
    return hashlib.sha256('\n'.join(lines).encode('utf-8')).hexdigest()


def normalize_product_document(data) -> list[dict]:
    """
    Flatten one product document into its variant records.

    Accepts a list of products, `{"product": ...}`, `{"data": ...}` or a bare
    product object. A product carrying `ChildProducts` yields its children,
    each inheriting the parent's keys it does not override.
    """
    if isinstance(data, list):
        variants = []
        for item in data:
            variants.extend(normalize_product_document(item))
        return variants
    if not isinstance(data, dict):
        raise ValidationSyncError(f"Unexpected product document type: {type(data).__name__}")

    for wrapper in ('product', 'data'):
        if wrapper in data and isinstance(data[wrapper], (dict, list)) and len(data) == 1:
            return normalize_product_document(data[wrapper])

    children = data.get('ChildProducts')
    if isinstance(children, list) and children:
        parent = {k: v for k, v in data.items() if k != 'ChildProducts'}
        return [{**parent, **child} for child in children if isinstance(child, dict)]
    return [data]


class FeedClient(ApiClient):
    """Reads the supplier manifest and per-product JSON documents."""

    def __init__(self, base_url: Optional[str] = None):
        super().__init__(base_url or settings.PROMIDATA_BASE_URL)

    def manifest_url(self, feed_url: str = '') -> str:
        return feed_url or self._url(IMPORT_PATH)

    def fetch_manifest(self, feed_url: str = '') -> list[ManifestEntry]:
        response = self._request('GET', self.manifest_url(feed_url))
        entries = parse_manifest(response.text)
        logger.info("Parsed %d product entries from manifest.", len(entries))
        return entries

    def fetch_supplier_entries(self, supplier_code: str, feed_url: str = '') -> list[ManifestEntry]:
        entries = [e for e in self.fetch_manifest(feed_url) if e.supplier_code == supplier_code]
        logger.info("Found %d manifest entries for supplier %s.", len(entries), supplier_code)
        return entries

    def fetch_product(self, url: str) -> list[dict]:
        response = self._request('GET', url)
        try:
            data = response.json()
        except ValueError as exc:
            raise ValidationSyncError(f"Invalid JSON at {url}: {exc}") from exc
        return normalize_product_document(data)

    def fetch_products(self, entries: list[ManifestEntry], concurrency: Optional[int] = None) -> FetchResult:
        """
        Download all product documents with a bounded thread pool.

        A failing document is logged and recorded in `failed_urls`; the rest
        of the batch still completes.
        """
        workers = concurrency or settings.SYNC_FEED_FETCH_CONCURRENCY
        result = FetchResult()

        def _fetch(entry):
            try:
                return entry, self.fetch_product(entry.url), None
            except (requests.RequestException, SyncError) as exc:
                return entry, [], exc

        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            for entry, variants, exc in pool.map(_fetch, entries):
                if exc is not None:
                    logger.warning("Failed to fetch product %s: %s", entry.url, exc)
                    result.failed_urls.append(entry.url)
                    continue
                result.variants.extend(variants)

        logger.info(
            "Fetched %d variants from %d documents (%d failed).",
            len(result.variants), len(entries) - len(result.failed_urls), len(result.failed_urls),
        )
        return result
