import logging
import posixpath
from typing import Optional

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import Storage, storages

logger = logging.getLogger(__name__)


class BlobStore:
    """Key/value blob storage over a Django storage backend."""

    def __init__(self, storage: Optional[Storage] = None, prefix: Optional[str] = None):
        self._storage = storage or storages['default']
        self._prefix = (settings.IMAGE_STORAGE_PREFIX if prefix is None else prefix).strip('/')

    def _path(self, key: str) -> str:
        return posixpath.join(self._prefix, key) if self._prefix else key

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        if self._storage.exists(path):
            self._storage.delete(path)
        saved = self._storage.save(path, ContentFile(data))
        logger.debug("Stored blob %s (%d bytes).", saved, len(data))
        return self._storage.url(saved)

    def get(self, key: str) -> bytes:
        with self._storage.open(self._path(key), 'rb') as fh:
            return fh.read()

    def exists(self, key: str) -> bool:
        return self._storage.exists(self._path(key))

    def list(self, prefix: str = '') -> list[str]:
        root = self._path(prefix).rstrip('/') if prefix or self._prefix else ''
        keys = []
        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                dirs, files = self._storage.listdir(directory)
            except FileNotFoundError:
                continue
            pending.extend(posixpath.join(directory, d) if directory else d for d in dirs)
            for name in files:
                full = posixpath.join(directory, name) if directory else name
                keys.append(full[len(self._prefix) + 1:] if self._prefix else full)
        return sorted(keys)

    def delete(self, key: str) -> None:
        self._storage.delete(self._path(key))
