import logging
import time
from typing import Optional

import requests
from django.conf import settings

from .errors import FatalSyncError, TransientSyncError
from .http_client import ApiClient, is_not_found
from .models import ImageLink, ProductFamily

logger = logging.getLogger(__name__)

TASK_SUCCEEDED = 'succeeded'
TASK_FAILED = 'failed'
TASK_CANCELED = 'canceled'
LOCALIZED_FIELDS = ('name', 'description', 'short_description', 'material')

INDEX_SETTINGS = {
    'searchableAttributes': ['name_en', 'name_de', 'name_fr', 'name_nl', 'sku', 'a_number', 'brand',
                             'description_en', 'description_de', 'description_fr', 'description_nl'],
    'filterableAttributes': ['supplier_code', 'brand', 'category', 'colors', 'sizes', 'is_active',
                             'price_min', 'price_max', 'country_of_origin'],
    'sortableAttributes': ['price_min', 'price_max', 'last_synced', 'total_variants_count'],
}


def build_search_document(family: ProductFamily, locales=None) -> dict:
    """Flatten a family and its active variants into one search document."""
    locales = locales or settings.SYNC_LOCALES
    variants = list(family.variants.filter(is_active=True).order_by('pk'))

    colors, sizes, hex_colors = [], [], []
    for variant in variants:
        if variant.color and variant.color not in colors:
            colors.append(variant.color)
        if variant.size and variant.size not in sizes:
            sizes.append(variant.size)
        if variant.hex_color and variant.hex_color not in hex_colors:
            hex_colors.append(variant.hex_color)

    selling = [t for t in family.price_tiers if t.get('price_type', 'selling') == 'selling' and t.get('price')]
    prices = [t['price'] for t in selling]
    currency = next((t['currency'] for t in selling if t.get('currency')), 'EUR')

    main_image = (
        ImageLink.objects.filter(
            entity_type=ImageLink.ENTITY_PRODUCT, entity_id=family.pk, field_name='main_image',
        ).select_related('asset').first()
    )

    document = {
        'id': family.document_id,
        'sku': variants[0].sku if variants else '',
        'a_number': family.family_key,
        'brand': family.brand,
        'supplier_name': family.supplier.name or family.supplier.code,
        'supplier_code': family.supplier.code,
        'category': family.category,
        'colors': colors,
        'sizes': sizes,
        'hex_colors': hex_colors,
        'price_min': min(prices) if prices else None,
        'price_max': max(prices) if prices else None,
        'currency': currency,
        'country_of_origin': family.country_of_origin,
        'delivery_time': family.delivery_time,
        'total_variants_count': len(variants),
        'is_active': family.is_active,
        'content_hash': family.content_hash,
        'main_image_url': main_image.asset.url if main_image else None,
        'last_synced': int(family.last_synced_at.timestamp()) if family.last_synced_at else None,
    }
    for field_name in LOCALIZED_FIELDS:
        values = getattr(family, field_name) or {}
        for locale in locales:
            document[f'{field_name}_{locale}'] = values.get(locale)
    return document


class MeilisearchClient(ApiClient):
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 index: Optional[str] = None):
        api_key = settings.MEILISEARCH_API_KEY if api_key is None else api_key
        headers = {'Authorization': f'Bearer {api_key}'} if api_key else {}
        super().__init__(base_url or settings.MEILISEARCH_URL, headers=headers)
        self.index = index or settings.MEILISEARCH_INDEX

    def add_documents(self, documents: list[dict]) -> dict:
        return self._request('POST', f'indexes/{self.index}/documents', json=documents,
                             params={'primaryKey': 'id'}).json()

    def delete_document(self, document_id: str) -> dict:
        return self._request('DELETE', f'indexes/{self.index}/documents/{document_id}').json()

    def get_document(self, document_id: str) -> Optional[dict]:
        try:
            return self._request('GET', f'indexes/{self.index}/documents/{document_id}').json()
        except requests.HTTPError as exc:
            if is_not_found(exc):
                return None
            raise

    def search(self, query: str, **params) -> dict:
        return self._request('POST', f'indexes/{self.index}/search', json={'q': query, **params}).json()

    def get_task(self, task_uid: int) -> dict:
        return self._request('GET', f'tasks/{task_uid}').json()

    def update_settings(self, index_settings: dict) -> dict:
        return self._request('PATCH', f'indexes/{self.index}/settings', json=index_settings).json()

    def get_stats(self) -> dict:
        return self._request('GET', f'indexes/{self.index}/stats').json()

    def health(self) -> bool:
        try:
            return self._request('GET', 'health').json().get('status') == 'available'
        except (requests.RequestException, TransientSyncError, ValueError):
            return False


class SearchIndex:
    """Exact-match search index kept in sync with active product families."""

    def __init__(self, client: Optional[MeilisearchClient] = None, max_polls: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        self.client = client or MeilisearchClient()
        self._max_polls = max_polls or settings.SEARCH_TASK_MAX_POLLS
        self._poll_interval = settings.SEARCH_TASK_POLL_INTERVAL if poll_interval is None else poll_interval

    def configure(self) -> None:
        self.wait_for_task(self.client.update_settings(INDEX_SETTINGS))

    def upsert_family(self, family: ProductFamily) -> dict:
        document = build_search_document(family)
        self.wait_for_task(self.client.add_documents([document]))
        logger.info("Indexed %s in search.", family.document_id)
        return document

    def delete(self, document_id: str) -> None:
        self.wait_for_task(self.client.delete_document(document_id))
        logger.info("Removed %s from search.", document_id)

    def get_document(self, document_id: str) -> Optional[dict]:
        return self.client.get_document(document_id)

    def search(self, query: str, **params) -> dict:
        return self.client.search(query, **params)

    def count(self, supplier_code: Optional[str] = None) -> int:
        params = {'limit': 0}
        if supplier_code:
            params['filter'] = f'supplier_code = "{supplier_code}"'
        return int(self.client.search('', **params).get('estimatedTotalHits', 0))

    def is_healthy(self) -> bool:
        return self.client.health()

    def wait_for_task(self, task: dict) -> dict:
        task_uid = task.get('taskUid', task.get('uid'))
        if task_uid is None:
            return task
        for _ in range(self._max_polls):
            status = self.client.get_task(task_uid)
            if status.get('status') == TASK_SUCCEEDED:
                return status
            if status.get('status') in (TASK_FAILED, TASK_CANCELED):
                error = status.get('error') or {}
                raise FatalSyncError(f"Search index task {task_uid} {status['status']}: {error.get('message', '')}")
            time.sleep(self._poll_interval)
        raise TransientSyncError(f"Search index task {task_uid} not finished after {self._max_polls} polls.")
