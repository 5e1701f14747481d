import hashlib
import logging
import posixpath
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from .errors import NotFoundUpstream, TransientSyncError, ValidationSyncError
from .http_client import ApiClient, is_not_found
from .models import ImageAsset, ImageLink

logger = logging.getLogger(__name__)

UPLOADED = 'uploaded'
DEDUPLICATED = 'deduplicated'
KNOWN_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.svg', '.tif', '.tiff')


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, ''))


def dedup_key(url: str, content_hash: Optional[str] = None) -> str:
    if content_hash:
        return f"sha256:{content_hash}"
    return hashlib.sha256(normalize_url(url).encode('utf-8')).hexdigest()


def storage_key_for(key: str, url: str) -> str:
    digest = key.split(':', 1)[-1]
    ext = posixpath.splitext(urlsplit(url).path)[1].lower()
    if ext not in KNOWN_EXTENSIONS:
        ext = ''
    return f"{digest[:2]}/{digest}{ext}"


@dataclass(frozen=True)
class ImageTarget:
    entity_type: str
    entity_id: int
    field_name: str
    index: int = 0

    def as_dict(self) -> dict:
        return {
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'field_name': self.field_name,
            'index': self.index,
        }


@dataclass
class ImageResult:
    status: str
    asset: ImageAsset
    links: int


class ImageDownloader(ApiClient):
    rate_limit = 10

    def __init__(self):
        super().__init__('')

    def download(self, url: str) -> bytes:
        try:
            response = self._request('GET', url)
        except requests.HTTPError as exc:
            if is_not_found(exc):
                raise NotFoundUpstream(f"Image {url} no longer exists upstream.") from exc
            raise
        if not response.content:
            raise ValidationSyncError(f"Empty image body at {url}")
        return response.content


class ImagePipeline:
    """
    Deduplicated image upload.

    One ImageAsset per dedup key; the unique constraint on the key decides
    which worker downloads. Every reference becomes an ImageLink keyed on
    its slot, so re-running a job never duplicates links.
    """

    def __init__(self, blob_store, downloader: Optional[ImageDownloader] = None,
                 claim_timeout: Optional[timedelta] = None):
        self._blob_store = blob_store
        self._downloader = downloader or ImageDownloader()
        self._claim_timeout = claim_timeout or settings.SYNC_IMAGE_CLAIM_TIMEOUT

    def process(self, url: str, targets: list[ImageTarget], content_hash: Optional[str] = None) -> ImageResult:
        key = dedup_key(url, content_hash)
        asset = ImageAsset.objects.filter(dedup_key=key).first()
        if asset is not None and asset.status == ImageAsset.STATUS_READY:
            logger.debug("Image %s already stored – linking only.", url)
            return ImageResult(DEDUPLICATED, asset, self.link(asset, targets))

        asset, claimed = self._claim(key, url, asset)
        if not claimed:
            if asset.status == ImageAsset.STATUS_READY:
                return ImageResult(DEDUPLICATED, asset, self.link(asset, targets))
            raise TransientSyncError(f"Image {url} is being uploaded by another worker.")

        try:
            data = self._downloader.download(url)
            public_url = self._blob_store.put(storage_key_for(key, url), data)
        except Exception:
            ImageAsset.objects.filter(pk=asset.pk).update(status=ImageAsset.STATUS_FAILED)
            raise

        asset.content_hash = hashlib.sha256(data).hexdigest()
        asset.storage_key = storage_key_for(key, url)
        asset.url = public_url
        asset.size = len(data)
        asset.status = ImageAsset.STATUS_READY
        asset.save(update_fields=['content_hash', 'storage_key', 'url', 'size', 'status'])
        logger.info("Uploaded image %s (%d bytes).", url, asset.size)
        return ImageResult(UPLOADED, asset, self.link(asset, targets))

    def _claim(self, key: str, url: str, asset: Optional[ImageAsset]) -> tuple[ImageAsset, bool]:
        now = timezone.now()
        if asset is None:
            try:
                with transaction.atomic():
                    return ImageAsset.objects.create(
                        dedup_key=key, source_url=url, status=ImageAsset.STATUS_PENDING, claimed_at=now,
                    ), True
            except IntegrityError:
                asset = ImageAsset.objects.get(dedup_key=key)
                if asset.status == ImageAsset.STATUS_READY:
                    return asset, False

        stale = now - self._claim_timeout
        reclaimed = ImageAsset.objects.filter(pk=asset.pk).filter(
            Q(status=ImageAsset.STATUS_FAILED)
            | Q(status=ImageAsset.STATUS_PENDING, claimed_at__lt=stale)
            | Q(status=ImageAsset.STATUS_PENDING, claimed_at__isnull=True)
        ).update(status=ImageAsset.STATUS_PENDING, claimed_at=now, source_url=url)
        asset.refresh_from_db()
        if reclaimed:
            logger.info("Re-claimed image %s.", url)
        return asset, bool(reclaimed)

    def link(self, asset: ImageAsset, targets: list[ImageTarget]) -> int:
        for target in targets:
            ImageLink.objects.update_or_create(
                entity_type=target.entity_type,
                entity_id=target.entity_id,
                field_name=target.field_name,
                index=target.index,
                defaults={'asset': asset},
            )
        return len(targets)
