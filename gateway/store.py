from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set

from common.errors import StoreReadFailure, StoreWriteFailure
from common.logging_setup import get_logger
from common.types import StoreEntry
from common.utils import filename_to_key, iso_now_ms, key_to_filename


log = get_logger("gateway.store")


class BlobStore(ABC):
    """
    A set of named stores, each a mapping key -> StoreEntry.

    Used by the pyramid builder (tile writer), the router (reader/writer of
    tiles and app assets) and the lifecycle manager (store deletion).
    `put` is last-writer-wins; a failed `put` leaves the key absent or at
    its previous value, never half written.
    """

    @abstractmethod
    async def put(self, store_name: str, key: str, payload: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def get(self, store_name: str, key: str) -> Optional[StoreEntry]:
        ...

    @abstractmethod
    async def delete(self, store_name: str) -> bool:
        """Drop a whole store. Returns False if it did not exist."""

    @abstractmethod
    async def list_keys(self, store_name: str) -> Set[str]:
        ...

    @abstractmethod
    async def store_names(self) -> Set[str]:
        ...

    async def has(self, store_name: str, key: str) -> bool:
        return (await self.get(store_name, key)) is not None


class MemoryBlobStore(BlobStore):
    """In-process store for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._stores: Dict[str, Dict[str, StoreEntry]] = {}

    async def put(self, store_name: str, key: str, payload: bytes, content_type: str) -> None:
        self._stores.setdefault(store_name, {})[key] = StoreEntry(key, bytes(payload), content_type)

    async def get(self, store_name: str, key: str) -> Optional[StoreEntry]:
        return self._stores.get(store_name, {}).get(key)

    async def delete(self, store_name: str) -> bool:
        return self._stores.pop(store_name, None) is not None

    async def list_keys(self, store_name: str) -> Set[str]:
        return set(self._stores.get(store_name, {}))

    async def store_names(self) -> Set[str]:
        return set(self._stores)


class FileBlobStore(BlobStore):
    """
    Persistent store on the local filesystem:

        root/
          └─ {store_name}/
              ├─ {quoted key}.blob   (payload bytes)
              └─ {quoted key}.json   (key, content_type, size, stored_at)

    The sidecar JSON is written after the payload, both via temp file +
    os.replace, so an entry is visible only once it is complete.
    Blocking file I/O runs in worker threads.
    """

    META_SUFFIX = ".json"
    BLOB_SUFFIX = ".blob"

    def __init__(self, root: str | Path = "data/stores"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    # -------- public API --------

    async def put(self, store_name: str, key: str, payload: bytes, content_type: str) -> None:
        await asyncio.to_thread(self._put_sync, store_name, key, payload, content_type)

    async def get(self, store_name: str, key: str) -> Optional[StoreEntry]:
        return await asyncio.to_thread(self._get_sync, store_name, key)

    async def delete(self, store_name: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, store_name)

    async def list_keys(self, store_name: str) -> Set[str]:
        return await asyncio.to_thread(self._list_keys_sync, store_name)

    async def store_names(self) -> Set[str]:
        return await asyncio.to_thread(self._store_names_sync)

    # -------- internals --------

    def _store_dir(self, store_name: str) -> Path:
        if not store_name or "/" in store_name or "\\" in store_name or store_name in (".", ".."):
            raise ValueError(f"invalid store name: {store_name!r}")
        return self.root / store_name

    def _paths(self, store_name: str, key: str):
        d = self._store_dir(store_name)
        stem = key_to_filename(key)
        return d, d / (stem + self.BLOB_SUFFIX), d / (stem + self.META_SUFFIX)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def _put_sync(self, store_name: str, key: str, payload: bytes, content_type: str) -> None:
        d, blob, meta = self._paths(store_name, key)
        sidecar = {
            "key": key,
            "content_type": content_type,
            "size": len(payload),
            "stored_at": iso_now_ms(),
        }
        try:
            d.mkdir(parents=True, exist_ok=True)
            self._atomic_write(blob, bytes(payload))
            self._atomic_write(meta, json.dumps(sidecar).encode("utf-8"))
        except OSError as e:
            raise StoreWriteFailure(f"write failed: {e}", store=store_name, key=key) from e

    def _get_sync(self, store_name: str, key: str) -> Optional[StoreEntry]:
        _, blob, meta = self._paths(store_name, key)
        if not meta.exists():
            return None
        try:
            info = json.loads(meta.read_text())
            data = blob.read_bytes()
        except FileNotFoundError:
            # store deleted between the exists() check and the read
            return None
        except (OSError, ValueError) as e:
            raise StoreReadFailure(f"read failed: {e}", store=store_name, key=key) from e
        if int(info.get("size", len(data))) != len(data):
            # payload replaced by a concurrent put whose sidecar is not written yet
            raise StoreReadFailure("payload/sidecar size mismatch", store=store_name, key=key)
        return StoreEntry(key=info.get("key", key), payload=data, content_type=info.get("content_type", ""))

    def _delete_sync(self, store_name: str) -> bool:
        d = self._store_dir(store_name)
        if not d.exists():
            return False
        try:
            shutil.rmtree(d)
        except OSError as e:
            raise StoreWriteFailure(f"delete failed: {e}", store=store_name) from e
        log.info("store deleted", extra={"extra": {"store": store_name}})
        return True

    def _list_keys_sync(self, store_name: str) -> Set[str]:
        d = self._store_dir(store_name)
        if not d.exists():
            return set()
        try:
            return {
                filename_to_key(p.name[: -len(self.META_SUFFIX)])
                for p in d.iterdir()
                if p.name.endswith(self.META_SUFFIX) and not p.name.startswith(".tmp-")
            }
        except OSError as e:
            raise StoreReadFailure(f"list failed: {e}", store=store_name) from e

    def _store_names_sync(self) -> Set[str]:
        if not self.root.exists():
            return set()
        return {p.name for p in self.root.iterdir() if p.is_dir()}
