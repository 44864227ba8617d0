"""
Object store backends.
Both backends honour the same contract: put(key, bytes), get(key) -> bytes | None,
list(prefix) -> keys, delete(key). Keys are forward-slash relative paths.
"""

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
import structlog

from register_audit.errors import StorageError

logger = structlog.get_logger(__name__)


class ObjectStore(ABC):
    """Durable key/value byte store."""

    provider_name: str = "unknown"

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    async def close(self) -> None:
        return None


# ─── Local filesystem ─────────────────────────────────────────

class LocalObjectStore(ObjectStore):
    """
    Store objects as files under a root directory.
    Writes go to a temp file in the target directory and are swapped in with
    os.replace, so a reader never sees a half-written record.
    """

    provider_name = "local"

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def _list(self, prefix: str) -> list[str]:
        base = self.root / prefix
        if not base.exists():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.startswith(".tmp-")
        )

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        if path.is_file():
            path.unlink()
            return True
        return False

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        try:
            await asyncio.to_thread(self._write, key, data)
        except OSError as e:
            logger.error("local_store_write_failed", key=key, error=str(e))
            raise StorageError(f"Failed to write {key}: {e}") from e

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as e:
            logger.error("local_store_read_failed", key=key, error=str(e))
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def list(self, prefix: str) -> list[str]:
        try:
            return await asyncio.to_thread(self._list, prefix)
        except OSError as e:
            raise StorageError(f"Failed to list {prefix}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return await asyncio.to_thread(self._delete, key)
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e


# ─── Supabase Storage ─────────────────────────────────────────

class SupabaseObjectStore(ObjectStore):
    """Objects in a Supabase Storage bucket, addressed through the Storage REST API."""

    provider_name = "supabase"

    def __init__(
        self,
        url: str,
        service_role_key: str,
        bucket: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not url or not service_role_key:
            raise StorageError("Supabase backend requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        self.base_api_url = f"{url.rstrip('/')}/storage/v1"
        self.bucket = bucket
        self.headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey": service_role_key,
        }
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        url = f"{self.base_api_url}/object/{self.bucket}/{key}"
        try:
            response = await self._client.post(
                url,
                headers={**self.headers, "Content-Type": content_type, "x-upsert": "true"},
                content=data,
            )
        except httpx.HTTPError as e:
            logger.error("supabase_put_failed", key=key, error=str(e))
            raise StorageError(f"Upload of {key} failed: {e}") from e

        if response.status_code != 200:
            logger.error("supabase_put_rejected", key=key, status_code=response.status_code, body=response.text[:200])
            raise StorageError(f"Upload of {key} failed: HTTP {response.status_code}")

    async def get(self, key: str) -> Optional[bytes]:
        url = f"{self.base_api_url}/object/{self.bucket}/{key}"
        try:
            response = await self._client.get(url, headers=self.headers)
        except httpx.HTTPError as e:
            logger.error("supabase_get_failed", key=key, error=str(e))
            raise StorageError(f"Download of {key} failed: {e}") from e

        # Storage answers a missing object with 400 or 404 depending on version
        if response.status_code in (400, 404):
            return None
        if response.status_code != 200:
            raise StorageError(f"Download of {key} failed: HTTP {response.status_code}")
        return response.content

    async def list(self, prefix: str) -> list[str]:
        url = f"{self.base_api_url}/object/list/{self.bucket}"
        folder = prefix.rstrip("/")
        keys: list[str] = []
        offset = 0
        page_size = 1000
        while True:
            try:
                response = await self._client.post(
                    url,
                    headers=self.headers,
                    json={"prefix": folder, "limit": page_size, "offset": offset},
                )
            except httpx.HTTPError as e:
                raise StorageError(f"Listing {prefix} failed: {e}") from e
            if response.status_code != 200:
                raise StorageError(f"Listing {prefix} failed: HTTP {response.status_code}")

            entries = response.json()
            for entry in entries:
                name = entry.get("name")
                # Folder placeholders come back without an id
                if name and entry.get("id") is not None:
                    keys.append(f"{folder}/{name}" if folder else name)
            if len(entries) < page_size:
                break
            offset += page_size
        return sorted(keys)

    async def delete(self, key: str) -> bool:
        url = f"{self.base_api_url}/object/{self.bucket}"
        try:
            response = await self._client.request(
                "DELETE", url, headers=self.headers, json={"prefixes": [key]},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e
        if response.status_code != 200:
            raise StorageError(f"Delete of {key} failed: HTTP {response.status_code}")
        return bool(response.json())

    async def close(self) -> None:
        await self._client.aclose()


def build_object_store(settings) -> ObjectStore:
    """Pick the backend once at startup from STORAGE_BACKEND."""
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "supabase":
        store: ObjectStore = SupabaseObjectStore(
            url=settings.SUPABASE_URL,
            service_role_key=settings.SUPABASE_SERVICE_ROLE_KEY,
            bucket=settings.SUPABASE_BUCKET,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    elif backend == "local":
        store = LocalObjectStore(settings.ARTIFACT_ROOT)
    else:
        raise StorageError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")
    logger.info("object_store_selected", backend=store.provider_name)
    return store
