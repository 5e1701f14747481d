import pytest
import responses as responses_lib

from catalog_sync.errors import ValidationSyncError
from catalog_sync.feed_client import (
    FeedClient,
    ManifestEntry,
    manifest_digest,
    normalize_product_document,
    parse_manifest,
)

BASE_URL = 'https://feed.example.test/Profiles/Live/abc'

MANIFEST = f"""{BASE_URL}/CAT.csv|cafebabe
{BASE_URL}/A113/A113-1001.json|hash-1
{BASE_URL}/A113/A113-1002.json|hash-2

{BASE_URL}/B200/B200-77.json|hash-3
not-a-manifest-line
"""


@pytest.fixture(autouse=True)
def override_settings(settings):
    settings.PROMIDATA_BASE_URL = BASE_URL
    settings.SYNC_FEED_FETCH_CONCURRENCY = 2


# ---------------------------------------------------------------------------
# Manifest parsing
# ---------------------------------------------------------------------------

class TestParseManifest:
    def test_skips_category_csv_and_malformed_lines(self):
        entries = parse_manifest(MANIFEST)
        assert [e.sku for e in entries] == ['A113-1001', 'A113-1002', 'B200-77']

    def test_supplier_code_taken_from_url(self):
        entries = parse_manifest(MANIFEST)
        assert [e.supplier_code for e in entries] == ['A113', 'A113', 'B200']
        assert entries[0].hash == 'hash-1'

    def test_digest_ignores_line_order(self):
        entries = parse_manifest(MANIFEST)
        assert manifest_digest(entries) == manifest_digest(list(reversed(entries)))

    def test_digest_changes_with_hash(self):
        entries = parse_manifest(MANIFEST)
        changed = [ManifestEntry(e.url, e.hash + 'x', e.sku, e.supplier_code) for e in entries]
        assert manifest_digest(entries) != manifest_digest(changed)


# ---------------------------------------------------------------------------
# Document normalization
# ---------------------------------------------------------------------------

class TestNormalizeProductDocument:
    def test_bare_product(self):
        assert normalize_product_document({'SKU': 'X1'}) == [{'SKU': 'X1'}]

    def test_list_of_products(self):
        assert len(normalize_product_document([{'SKU': 'X1'}, {'SKU': 'X2'}])) == 2

    def test_wrapped_product(self):
        assert normalize_product_document({'product': {'SKU': 'X1'}}) == [{'SKU': 'X1'}]
        assert normalize_product_document({'data': [{'SKU': 'X1'}]}) == [{'SKU': 'X1'}]

    def test_child_products_inherit_parent_keys(self):
        doc = {
            'ANumber': 'F1',
            'Brand': 'Acme',
            'ChildProducts': [{'SKU': 'V1', 'Color': 'red'}, {'SKU': 'V2', 'Brand': 'Other'}],
        }
        variants = normalize_product_document(doc)
        assert variants == [
            {'ANumber': 'F1', 'Brand': 'Acme', 'SKU': 'V1', 'Color': 'red'},
            {'ANumber': 'F1', 'Brand': 'Other', 'SKU': 'V2'},
        ]

    def test_non_object_rejected(self):
        with pytest.raises(ValidationSyncError):
            normalize_product_document('nonsense')


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestFeedClient:
    @responses_lib.activate
    def test_fetch_supplier_entries_filters_by_code(self):
        responses_lib.add(responses_lib.GET, f'{BASE_URL}/Import/Import.txt', body=MANIFEST)
        entries = FeedClient().fetch_supplier_entries('A113')
        assert [e.sku for e in entries] == ['A113-1001', 'A113-1002']

    @responses_lib.activate
    def test_supplier_feed_url_overrides_default(self):
        custom = 'https://other.example.test/Import.txt'
        responses_lib.add(responses_lib.GET, custom, body=MANIFEST)
        FeedClient().fetch_manifest(custom)
        assert responses_lib.calls[0].request.url == custom

    @responses_lib.activate
    def test_fetch_products_records_failures_without_aborting(self):
        entries = parse_manifest(MANIFEST)
        responses_lib.add(responses_lib.GET, entries[0].url, json={'SKU': 'A113-1001'})
        responses_lib.add(responses_lib.GET, entries[1].url, status=500)
        responses_lib.add(responses_lib.GET, entries[2].url, body='not json')

        result = FeedClient().fetch_products(entries)

        assert result.variants == [{'SKU': 'A113-1001'}]
        assert sorted(result.failed_urls) == sorted([entries[1].url, entries[2].url])
        assert not result.complete

    @responses_lib.activate
    def test_fetch_products_complete_when_all_succeed(self):
        entries = parse_manifest(MANIFEST)[:2]
        for entry in entries:
            responses_lib.add(responses_lib.GET, entry.url, json={'SKU': entry.sku})
        result = FeedClient().fetch_products(entries)
        assert result.complete
        assert {v['SKU'] for v in result.variants} == {'A113-1001', 'A113-1002'}
