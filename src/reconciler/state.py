"""Persisted reconciler state.

Records live in a key-value store:
- resource/<id>: Resource.to_dict()
- keyring/<owner>: the owner's key records (private halves sealed or omitted)

JsonStateStore keeps the whole map in one JSON file and rewrites it through a
temp file + os.replace, so a crash mid-write leaves the previous state intact.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol

from errors import ValidationError
from models.resource import Resource

logger = logging.getLogger(__name__)

RESOURCE_PREFIX = 'resource/'
KEYRING_PREFIX = 'keyring/'


def resource_key(resource_id: str) -> str:
    return f'{RESOURCE_PREFIX}{resource_id}'


def keyring_key(owner: str) -> str:
    return f'{KEYRING_PREFIX}{owner}'


class StateStore(Protocol):
    """Key-value interface the engine and key manager persist through."""

    def get(self, key: str) -> Optional[dict]:
        ...

    def put(self, key: str, value: dict) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = '') -> list[str]:
        ...


class MemoryStateStore:
    """In-process store (tests, dry runs)."""

    def __init__(self, data: Optional[dict] = None):
        self._lock = threading.Lock()
        self._data: dict[str, dict] = copy.deepcopy(data or {})

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = '') -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class JsonStateStore(MemoryStateStore):
    """Store backed by a single JSON file, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        data = {}
        if self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
            logger.debug(f"Loaded {len(data)} state records from {self.path}")
        super().__init__(data)

    def put(self, key: str, value: dict) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


def save_resource(store: StateStore, resource: Resource) -> None:
    store.put(resource_key(resource.id), resource.to_dict())


def delete_resource(store: StateStore, resource_id: str) -> None:
    store.delete(resource_key(resource_id))


def load_resources(store: StateStore) -> list[Resource]:
    """Decode every persisted resource. Undecodable records are skipped and logged."""
    resources = []
    for key in store.keys(RESOURCE_PREFIX):
        data = store.get(key)
        if data is None:
            continue
        try:
            resources.append(Resource.from_dict(data))
        except (KeyError, ValueError, ValidationError) as e:
            logger.error(f"Skipping unreadable state record {key}: {e}")
    return resources
