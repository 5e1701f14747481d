import json
from unittest.mock import patch

import pytest
import responses as responses_lib
from django.utils import timezone

from catalog_sync.errors import FatalSyncError, TransientSyncError
from catalog_sync.models import ImageAsset, ImageLink, ProductFamily, ProductVariant
from catalog_sync.search_index import INDEX_SETTINGS, SearchIndex, build_search_document

pytestmark = pytest.mark.django_db

MEILI_URL = 'http://meili.test:7700'


@pytest.fixture()
def family(supplier):
    family = ProductFamily.objects.create(
        supplier=supplier,
        family_key='F1',
        document_id='A113-F1',
        name={'en': 'Mug', 'de': 'Becher'},
        description={'en': 'A mug'},
        brand='Acme',
        price_tiers=[
            {'quantity': 100, 'price': 1.2, 'currency': 'EUR', 'price_type': 'selling'},
            {'quantity': 500, 'price': 1.05, 'currency': 'EUR', 'price_type': 'selling'},
            {'quantity': 100, 'price': 0.4, 'currency': 'EUR', 'price_type': 'purchase'},
        ],
        content_hash='abc',
        last_synced_at=timezone.now(),
    )
    ProductVariant.objects.create(family=family, sku='V1', color='red', size='S', hex_color='#f00')
    ProductVariant.objects.create(family=family, sku='V2', color='red', size='M', hex_color='#f00')
    ProductVariant.objects.create(family=family, sku='V3', color='blue', size='S', is_active=False)
    return family


class TestBuildSearchDocument:
    def test_flattened_document(self, family):
        document = build_search_document(family)
        assert document['id'] == 'A113-F1'
        assert document['sku'] == 'V1'
        assert document['a_number'] == 'F1'
        assert document['supplier_name'] == 'Acme Promo'
        assert document['colors'] == ['red']
        assert document['sizes'] == ['S', 'M']
        assert document['hex_colors'] == ['#f00']
        assert document['total_variants_count'] == 2
        assert (document['price_min'], document['price_max']) == (1.05, 1.2)
        assert document['name_en'] == 'Mug'
        assert document['name_de'] == 'Becher'
        assert document['description_de'] is None
        assert document['main_image_url'] is None
        assert isinstance(document['last_synced'], int)

    def test_main_image_from_product_link(self, family):
        asset = ImageAsset.objects.create(
            dedup_key='k', source_url='https://img.test/a.jpg', url='/media/products/k.jpg',
            status=ImageAsset.STATUS_READY,
        )
        ImageLink.objects.create(asset=asset, entity_type=ImageLink.ENTITY_PRODUCT, entity_id=family.pk,
                                 field_name='main_image')
        assert build_search_document(family)['main_image_url'] == '/media/products/k.jpg'


class TestSearchIndex:
    def test_upsert_waits_for_task(self, family, meili):
        document = SearchIndex(max_polls=3, poll_interval=0).upsert_family(family)
        assert meili.documents['A113-F1'] == document

    def test_get_missing_document_is_none(self, meili):
        assert SearchIndex().get_document('A113-NOPE') is None

    def test_delete_and_count(self, family, meili):
        index = SearchIndex(max_polls=3, poll_interval=0)
        index.upsert_family(family)
        assert index.count('A113') == 1
        assert index.count('B200') == 0
        index.delete('A113-F1')
        assert index.count() == 0

    def test_health(self, meili):
        assert SearchIndex().is_healthy() is True

    @responses_lib.activate
    def test_api_key_sent_as_bearer(self):
        responses_lib.add(responses_lib.PATCH, f'{MEILI_URL}/indexes/products/settings', json={'taskUid': 1})
        responses_lib.add(responses_lib.GET, f'{MEILI_URL}/tasks/1', json={'status': 'succeeded'})
        SearchIndex(poll_interval=0).configure()
        request = responses_lib.calls[0].request
        assert request.headers['Authorization'] == 'Bearer meili-key'
        assert json.loads(request.body) == INDEX_SETTINGS

    @responses_lib.activate
    def test_failed_task_is_fatal(self):
        responses_lib.add(responses_lib.PATCH, f'{MEILI_URL}/indexes/products/settings', json={'taskUid': 2})
        responses_lib.add(responses_lib.GET, f'{MEILI_URL}/tasks/2',
                          json={'status': 'failed', 'error': {'message': 'invalid filter'}})
        with pytest.raises(FatalSyncError, match='invalid filter'):
            SearchIndex(poll_interval=0).configure()

    @responses_lib.activate
    def test_unfinished_task_is_transient(self):
        responses_lib.add(responses_lib.PATCH, f'{MEILI_URL}/indexes/products/settings', json={'taskUid': 3})
        responses_lib.add(responses_lib.GET, f'{MEILI_URL}/tasks/3', json={'status': 'processing'})
        with patch('catalog_sync.search_index.time.sleep') as mock_sleep:
            with pytest.raises(TransientSyncError):
                SearchIndex(max_polls=4, poll_interval=0.5).configure()
        assert mock_sleep.call_count == 4
