import json
import re
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
import responses as responses_lib
from django.core.files.storage import FileSystemStorage
from django.utils import timezone

from catalog_sync.blob_storage import BlobStore
from catalog_sync.feed_client import FeedClient
from catalog_sync.image_pipeline import ImagePipeline
from catalog_sync.models import Supplier, SyncJob
from catalog_sync.pipeline import build_pipeline
from catalog_sync.queue_service import QueueService
from catalog_sync.search_index import MeilisearchClient, SearchIndex
from catalog_sync.semantic_store import GeminiFileSearchClient, SemanticSync, StoreResolver

FEED_URL = 'https://feed.example.test/Profiles/Live/abc'
MEILI_URL = 'http://meili.test:7700'
GEMINI_URL = 'https://gemini.test'
INDEX = 'products'


@pytest.fixture(autouse=True)
def override_settings(settings, tmp_path):
    settings.PROMIDATA_BASE_URL = FEED_URL
    settings.MEILISEARCH_URL = MEILI_URL
    settings.MEILISEARCH_API_KEY = 'meili-key'
    settings.MEILISEARCH_INDEX = INDEX
    settings.SEARCH_TASK_POLL_INTERVAL = 0
    settings.GEMINI_API_KEY = 'gemini-key'
    settings.GEMINI_API_BASE_URL = GEMINI_URL
    settings.SEMANTIC_POLL_INTERVAL = 0
    settings.SEMANTIC_SYNC_ENABLED = False
    settings.SYNC_LOCALES = ['en', 'de']
    settings.SYNC_FEED_FETCH_CONCURRENCY = 2
    settings.MEDIA_ROOT = str(tmp_path / 'media')


# ---------------------------------------------------------------------------
# In-memory upstream services served through `responses`
# ---------------------------------------------------------------------------

def _json(status, body):
    return status, {'Content-Type': 'application/json'}, json.dumps(body)


class FakeMeilisearch:
    """Keeps indexed documents in a dict; every task succeeds immediately."""

    def __init__(self, rsps, base_url=MEILI_URL, index=INDEX):
        self.documents = {}
        self._task_uid = 0
        documents = re.escape(f'{base_url}/indexes/{index}/documents')
        rsps.add_callback(responses_lib.POST, re.compile(documents + r'(\?.*)?$'), callback=self._add)
        rsps.add_callback(responses_lib.GET, re.compile(documents + r'/[^?]+$'), callback=self._get)
        rsps.add_callback(responses_lib.DELETE, re.compile(documents + r'/[^?]+$'), callback=self._delete)
        rsps.add_callback(responses_lib.POST, f'{base_url}/indexes/{index}/search', callback=self._search)
        rsps.add_callback(responses_lib.GET, re.compile(re.escape(f'{base_url}/tasks/') + r'\d+$'),
                          callback=self._task)
        rsps.add(responses_lib.GET, f'{base_url}/health', json={'status': 'available'})

    def _next_task(self):
        self._task_uid += 1
        return _json(202, {'taskUid': self._task_uid, 'status': 'enqueued'})

    @staticmethod
    def _document_id(request):
        return unquote(urlsplit(request.url).path.rsplit('/', 1)[-1])

    def _add(self, request):
        for document in json.loads(request.body):
            self.documents[document['id']] = document
        return self._next_task()

    def _get(self, request):
        document = self.documents.get(self._document_id(request))
        if document is None:
            return _json(404, {'code': 'document_not_found'})
        return _json(200, document)

    def _delete(self, request):
        self.documents.pop(self._document_id(request), None)
        return self._next_task()

    def _search(self, request):
        body = json.loads(request.body)
        hits = list(self.documents.values())
        match = re.match(r'supplier_code = "(.+)"', body.get('filter', ''))
        if match:
            hits = [d for d in hits if d['supplier_code'] == match.group(1)]
        return _json(200, {'hits': hits[:body.get('limit', 20)], 'estimatedTotalHits': len(hits)})

    def _task(self, request):
        return _json(200, {'uid': int(self._document_id(request)), 'status': 'succeeded'})


class FakeGeminiFileSearch:
    """One file search store service; uploads finish on the first poll."""

    def __init__(self, rsps, base_url=GEMINI_URL):
        self.stores = []
        self.uploads = []
        self.deleted = []
        stores = f'{base_url}/v1beta/fileSearchStores'
        rsps.add_callback(responses_lib.GET, re.compile(re.escape(stores) + r'(\?.*)?$'), callback=self._list)
        rsps.add_callback(responses_lib.POST, stores, callback=self._create)
        rsps.add_callback(
            responses_lib.POST,
            re.compile(re.escape(f'{base_url}/upload/v1beta/') + r'fileSearchStores/[^:]+:uploadToFileSearchStore.*'),
            callback=self._upload,
        )
        rsps.add_callback(
            responses_lib.GET, re.compile(re.escape(f'{base_url}/v1beta/') + r'fileSearchStores/[^/]+/operations/.+'),
            callback=self._operation,
        )
        rsps.add_callback(
            responses_lib.DELETE, re.compile(re.escape(f'{base_url}/v1beta/') + r'fileSearchStores/[^/]+/documents/.+'),
            callback=self._delete,
        )

    def _list(self, request):
        return _json(200, {'fileSearchStores': self.stores})

    def _create(self, request):
        store = {'name': f'fileSearchStores/store-{len(self.stores) + 1}',
                 'displayName': json.loads(request.body)['displayName']}
        self.stores.append(store)
        return _json(200, store)

    def _upload(self, request):
        store = urlsplit(request.url).path.split('/upload/v1beta/', 1)[1].split(':', 1)[0]
        name = f'{store}/documents/doc-{len(self.uploads) + 1}'
        self.uploads.append(name)
        return _json(200, {'name': f'{store}/operations/op-{len(self.uploads)}', 'done': False,
                           'response': {'documentName': name}})

    def _operation(self, request):
        number = urlsplit(request.url).path.rsplit('-', 1)[-1]
        return _json(200, {'name': urlsplit(request.url).path, 'done': True,
                           'response': {'documentName': self.uploads[int(number) - 1]}})

    def _delete(self, request):
        path = urlsplit(request.url).path
        self.deleted.append(path.split('/v1beta/', 1)[1])
        assert parse_qs(urlsplit(request.url).query).get('force') == ['true']
        return _json(200, {})


@pytest.fixture()
def rsps():
    with responses_lib.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


@pytest.fixture()
def meili(rsps):
    return FakeMeilisearch(rsps)


@pytest.fixture()
def gemini(rsps):
    return FakeGeminiFileSearch(rsps)


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------

class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def __call__(self, job, countdown=0):
        self.calls.append((job.queue, job.job_id, countdown))


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def queue_service(dispatcher):
    return QueueService(dispatcher=dispatcher)


@pytest.fixture()
def blob_store(tmp_path):
    return BlobStore(FileSystemStorage(location=str(tmp_path / 'blobs'), base_url='/media/'), prefix='products')


@pytest.fixture()
def supplier(db):
    return Supplier.objects.create(code='A113', name='Acme Promo', auto_import=True)


@pytest.fixture()
def search_index():
    return SearchIndex(MeilisearchClient(), max_polls=3, poll_interval=0)


@pytest.fixture()
def make_pipeline(queue_service, blob_store, search_index):
    def _make(semantic=False):
        semantic_sync = None
        if semantic:
            client = GeminiFileSearchClient()
            semantic_sync = SemanticSync(client, search_index, StoreResolver(client), max_polls=3, poll_interval=0)
        return build_pipeline(
            queue_service=queue_service,
            feed_client=FeedClient(),
            image_pipeline=ImagePipeline(blob_store),
            search_index=search_index,
            semantic_sync=semantic_sync,
            semantic_enabled=semantic,
            health_checks={},
        )
    return _make


@pytest.fixture()
def pipeline(make_pipeline):
    return make_pipeline()


def drain(pipeline, limit=500):
    """Run every due job in primary-key order until no runnable job is left."""
    runs = 0
    while runs < limit:
        job = (
            SyncJob.objects.filter(state__in=SyncJob.RUNNABLE_STATES, available_at__lte=timezone.now())
            .order_by('pk')
            .first()
        )
        if job is None:
            return runs
        pipeline.runner.run(job.pk)
        runs += 1
    raise AssertionError(f'Jobs still runnable after {limit} runs')


@pytest.fixture()
def run_jobs():
    return drain
