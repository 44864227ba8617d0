"""
Tests for the LRU cache in front of an object store.
"""

import pytest

from register_audit.errors import StorageError
from register_audit.storage.backends import ObjectStore
from register_audit.storage.cache import CachedObjectStore


class CountingStore(ObjectStore):
    provider_name = "memory"

    def __init__(self, fail_puts=False):
        self.objects = {}
        self.gets = 0
        self.fail_puts = fail_puts

    async def put(self, key, data, content_type="application/json"):
        if self.fail_puts:
            raise StorageError("backend down")
        self.objects[key] = data

    async def get(self, key):
        self.gets += 1
        return self.objects.get(key)

    async def list(self, prefix):
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def delete(self, key):
        return self.objects.pop(key, None) is not None


class TestCachedObjectStore:

    async def test_read_through(self):
        backend = CountingStore()
        backend.objects["runs/a.json"] = b"a"
        cache = CachedObjectStore(backend, max_entries=4)

        assert await cache.get("runs/a.json") == b"a"
        assert await cache.get("runs/a.json") == b"a"
        assert backend.gets == 1
        assert cache.hits == 1
        assert cache.misses == 1

    async def test_write_through(self):
        backend = CountingStore()
        cache = CachedObjectStore(backend)
        await cache.put("runs/a.json", b"a")
        assert backend.objects["runs/a.json"] == b"a"
        assert await cache.get("runs/a.json") == b"a"
        assert backend.gets == 0

    async def test_failed_write_not_cached(self):
        cache = CachedObjectStore(CountingStore(fail_puts=True))
        with pytest.raises(StorageError):
            await cache.put("runs/a.json", b"a")
        assert len(cache) == 0

    async def test_evicts_least_recently_used(self):
        backend = CountingStore()
        cache = CachedObjectStore(backend, max_entries=2)
        await cache.put("a", b"1")
        await cache.put("b", b"2")
        await cache.get("a")
        await cache.put("c", b"3")

        assert len(cache) == 2
        await cache.get("b")
        assert backend.gets == 1
        await cache.get("a")
        assert backend.gets == 2

    async def test_misses_not_cached(self):
        backend = CountingStore()
        cache = CachedObjectStore(backend)
        assert await cache.get("missing") is None
        assert await cache.get("missing") is None
        assert backend.gets == 2

    async def test_delete_and_invalidate(self):
        backend = CountingStore()
        cache = CachedObjectStore(backend)
        await cache.put("a", b"1")
        assert await cache.delete("a") is True
        assert await cache.get("a") is None

        await cache.put("b", b"2")
        cache.invalidate()
        assert len(cache) == 0
        assert await cache.get("b") == b"2"

    def test_rejects_empty_capacity(self):
        with pytest.raises(ValueError):
            CachedObjectStore(CountingStore(), max_entries=0)
