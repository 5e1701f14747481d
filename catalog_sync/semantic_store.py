import json
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db.models import F

from .change_detector import compute_hash
from .errors import FatalSyncError, TransientSyncError
from .http_client import ApiClient, is_not_found
from .models import ProductFamily, SemanticDocument

logger = logging.getLogger(__name__)

SYNCED = 'synced'
UNCHANGED = 'unchanged'
SKIPPED = 'skipped'
DELETED = 'deleted'
LOCALIZED_FIELDS = ('name', 'description', 'short_description', 'material')


class GeminiFileSearchClient(ApiClient):
    """REST client for Gemini File Search stores."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        api_key = api_key or settings.GEMINI_API_KEY
        if not api_key:
            raise ImproperlyConfigured('GEMINI_API_KEY must be set when semantic sync is enabled.')
        super().__init__(base_url or settings.GEMINI_API_BASE_URL, headers={'x-goog-api-key': api_key})

    def list_stores(self) -> list[dict]:
        stores = []
        params = {'pageSize': 20}
        while True:
            data = self._request('GET', 'v1beta/fileSearchStores', params=params).json()
            stores.extend(data.get('fileSearchStores', []))
            token = data.get('nextPageToken')
            if not token:
                return stores
            params = {'pageSize': 20, 'pageToken': token}

    def create_store(self, display_name: str) -> dict:
        return self._request('POST', 'v1beta/fileSearchStores', json={'displayName': display_name}).json()

    def upload_file(self, store_name: str, file_name: str, content: bytes,
                    mime_type: str = 'application/json') -> dict:
        metadata = {'displayName': file_name, 'mimeType': mime_type}
        files = {
            'metadata': (None, json.dumps(metadata), 'application/json'),
            'file': (file_name, content, mime_type),
        }
        return self._request(
            'POST', f'upload/v1beta/{store_name}:uploadToFileSearchStore',
            params={'uploadType': 'multipart'}, files=files,
        ).json()

    def get_operation(self, operation_name: str) -> dict:
        return self._request('GET', f'v1beta/{operation_name}').json()

    def delete_document(self, document_name: str) -> None:
        try:
            self._request('DELETE', f'v1beta/{document_name}', params={'force': 'true'})
        except requests.HTTPError as exc:
            if not is_not_found(exc):
                raise
            logger.debug("Semantic document %s already gone.", document_name)

    def health(self) -> bool:
        try:
            self._request('GET', 'v1beta/fileSearchStores', params={'pageSize': 1})
            return True
        except (requests.RequestException, TransientSyncError):
            return False


class StoreResolver:
    """
    Find-or-create of the semantic store, shared by all threads of a process.

    The first caller runs the lookup; concurrent callers wait on the same
    Future. The in-flight slot is cleared on success and on failure so a
    failed creation can be retried by the next caller.
    """

    def __init__(self, client: GeminiFileSearchClient, display_name: Optional[str] = None):
        self._client = client
        self._display_name = display_name or settings.GEMINI_STORE_DISPLAY_NAME
        self._lock = Lock()
        self._store_name = None
        self._in_flight = None

    def resolve(self) -> str:
        with self._lock:
            if self._store_name:
                return self._store_name
            owner = self._in_flight is None
            if owner:
                self._in_flight = Future()
            future = self._in_flight

        if not owner:
            try:
                return future.result()
            except Exception as exc:
                raise FatalSyncError(f"Semantic store unavailable: {exc}") from exc

        try:
            store_name = self._find_or_create()
        except Exception as exc:
            with self._lock:
                self._in_flight = None
            future.set_exception(exc)
            raise FatalSyncError(f"Semantic store unavailable: {exc}") from exc

        with self._lock:
            self._store_name = store_name
            self._in_flight = None
        future.set_result(store_name)
        return store_name

    def _find_or_create(self) -> str:
        for store in self._client.list_stores():
            if store.get('displayName') == self._display_name:
                logger.info("Using semantic store %s.", store['name'])
                return store['name']
        store = self._client.create_store(self._display_name)
        logger.info("Created semantic store %s.", store['name'])
        return store['name']


def build_semantic_payload(search_document: dict, locales=None) -> dict:
    """Nested retrieval payload built from the flattened search document."""
    locales = locales or settings.SYNC_LOCALES
    payload = {
        'id': search_document['id'],
        'sku': search_document.get('sku'),
        'a_number': search_document.get('a_number'),
        'brand': search_document.get('brand'),
        'category': search_document.get('category'),
        'supplier': {
            'code': search_document.get('supplier_code'),
            'name': search_document.get('supplier_name'),
        },
        'colors': search_document.get('colors') or [],
        'sizes': search_document.get('sizes') or [],
        'hex_colors': search_document.get('hex_colors') or [],
        'pricing': {
            'min': search_document.get('price_min'),
            'max': search_document.get('price_max'),
            'currency': search_document.get('currency') or 'EUR',
        },
        'country_of_origin': search_document.get('country_of_origin'),
        'delivery_time': search_document.get('delivery_time'),
        'variants_count': search_document.get('total_variants_count') or 0,
        'is_active': search_document.get('is_active', True),
        'images': {'main': search_document.get('main_image_url')},
    }
    for field_name in LOCALIZED_FIELDS:
        payload[field_name] = {
            locale: search_document[f'{field_name}_{locale}']
            for locale in locales
            if search_document.get(f'{field_name}_{locale}')
        }
    return payload


@dataclass
class SemanticResult:
    status: str
    document_id: str
    document_name: str = ''
    reason: str = ''


class SemanticSync:
    """
    Pushes products into the semantic store.

    The search index is the only input: a product not yet indexed there is
    skipped rather than read from the database.
    """

    def __init__(self, client: GeminiFileSearchClient, search_index, resolver: Optional[StoreResolver] = None,
                 max_polls: Optional[int] = None, poll_interval: Optional[float] = None):
        self.client = client
        self.search_index = search_index
        self.resolver = resolver or StoreResolver(client)
        self._max_polls = max_polls or settings.SEMANTIC_MAX_POLLS
        self._poll_interval = settings.SEMANTIC_POLL_INTERVAL if poll_interval is None else poll_interval

    def sync(self, document_id: str) -> SemanticResult:
        search_document = self.search_index.get_document(document_id)
        if search_document is None:
            logger.info("Semantic sync of %s skipped – not in search index yet.", document_id)
            return SemanticResult(SKIPPED, document_id, reason='not-in-search-index')

        family = ProductFamily.objects.filter(document_id=document_id).first()
        if family is None:
            logger.warning("Semantic sync of %s skipped – no product family.", document_id)
            return SemanticResult(SKIPPED, document_id, reason='unknown-family')

        payload = build_semantic_payload(search_document)
        indexed_hash = search_document.get('content_hash') or ''
        digest = compute_hash(payload)
        store_name = self.resolver.resolve()

        tracked = SemanticDocument.objects.filter(family=family).first()
        if tracked is not None and tracked.synced_hash == digest and tracked.store_name == store_name:
            if tracked.product_hash != indexed_hash:
                tracked.product_hash = indexed_hash
                tracked.save(update_fields=['product_hash', 'synced_at'])
            logger.debug("Semantic document for %s unchanged.", document_id)
            return SemanticResult(UNCHANGED, document_id, tracked.document_name)

        if tracked is not None and tracked.document_name:
            self.client.delete_document(tracked.document_name)

        file_name = f"{document_id}.json"
        content = json.dumps(payload, ensure_ascii=False, indent=2).encode('utf-8')
        operation = self._wait(self.client.upload_file(store_name, file_name, content))
        response = operation.get('response') or {}
        document_name = response.get('documentName') or response.get('name') or f"{store_name}/documents/{file_name}"

        SemanticDocument.objects.update_or_create(
            family=family,
            defaults={
                'store_name': store_name,
                'document_name': document_name,
                'synced_hash': digest,
                'product_hash': indexed_hash,
            },
        )
        logger.info("Uploaded %s to semantic store %s.", file_name, store_name)
        return SemanticResult(SYNCED, document_id, document_name)

    def delete(self, document_id: str) -> SemanticResult:
        tracked = SemanticDocument.objects.filter(family__document_id=document_id).first()
        if tracked is None:
            return SemanticResult(SKIPPED, document_id, reason='not-tracked')
        if tracked.document_name:
            self.client.delete_document(tracked.document_name)
        tracked.delete()
        logger.info("Removed %s from semantic store.", document_id)
        return SemanticResult(DELETED, document_id, tracked.document_name)

    def stale_documents(self):
        return (
            ProductFamily.objects.filter(is_active=True, semantic_document__isnull=False)
            .exclude(semantic_document__product_hash=F('content_hash'))
            .order_by('pk')
        )

    def is_healthy(self) -> bool:
        return self.client.health()

    def _wait(self, operation: dict) -> dict:
        polls = 0
        while not operation.get('done'):
            if polls >= self._max_polls:
                raise TransientSyncError(
                    f"Semantic upload {operation.get('name')} not done after {self._max_polls} polls."
                )
            time.sleep(self._poll_interval)
            operation = self.client.get_operation(operation['name'])
            polls += 1
        if operation.get('error'):
            raise TransientSyncError(f"Semantic upload failed: {operation['error'].get('message', '')}")
        return operation
