"""
Bounded LRU cache in front of an ObjectStore.
Reads fall through to the backend on a miss; writes go to the backend first
and only then update the cache, so the backend stays the source of truth.
"""

from collections import OrderedDict
from typing import Optional

import structlog

from register_audit.storage.backends import ObjectStore

logger = structlog.get_logger(__name__)


class CachedObjectStore(ObjectStore):

    def __init__(self, backend: ObjectStore, max_entries: int = 256):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.backend = backend
        self.max_entries = max_entries
        self.provider_name = backend.provider_name
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _remember(self, key: str, data: bytes) -> None:
        self._entries[key] = data
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("cache_evicted", key=evicted)

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        await self.backend.put(key, data, content_type)
        self._remember(key, data)

    async def get(self, key: str) -> Optional[bytes]:
        if key in self._entries:
            self.hits += 1
            self._entries.move_to_end(key)
            return self._entries[key]

        self.misses += 1
        data = await self.backend.get(key)
        if data is not None:
            self._remember(key, data)
        return data

    async def list(self, prefix: str) -> list[str]:
        return await self.backend.list(prefix)

    async def delete(self, key: str) -> bool:
        self._entries.pop(key, None)
        return await self.backend.delete(key)

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self) -> None:
        await self.backend.close()
