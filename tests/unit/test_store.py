"""
Unit tests for blob stores (gateway.store)
"""

import os

import pytest

from common.errors import StoreReadFailure, StoreWriteFailure
from gateway.store import FileBlobStore, MemoryBlobStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryBlobStore()
    return FileBlobStore(tmp_path / "stores")


class TestBlobStoreContract:
    """Behaviour shared by every BlobStore implementation"""

    async def test_put_get(self, store):
        """Test a stored entry reads back with payload and content type"""
        await store.put("tiles", "/tiles/0/0_0.png", b"\x89PNG...", "image/png")
        entry = await store.get("tiles", "/tiles/0/0_0.png")
        assert entry.key == "/tiles/0/0_0.png"
        assert entry.payload == b"\x89PNG..."
        assert entry.content_type == "image/png"
        assert entry.size == 7

    async def test_missing_key_and_store(self, store):
        """Test absent keys and stores read as None"""
        assert await store.get("tiles", "/nope") is None
        await store.put("tiles", "/a", b"1", "text/plain")
        assert await store.get("tiles", "/nope") is None
        assert await store.get("other", "/a") is None

    async def test_last_writer_wins(self, store):
        """Test a second put replaces the first"""
        await store.put("assets-v1", "/", b"old", "text/html")
        await store.put("assets-v1", "/", b"new!", "text/html; charset=utf-8")
        entry = await store.get("assets-v1", "/")
        assert entry.payload == b"new!"
        assert entry.content_type == "text/html; charset=utf-8"

    async def test_keys_are_per_store(self, store):
        """Test the same key in two stores is independent"""
        await store.put("tiles", "/x", b"1", "text/plain")
        await store.put("assets-v1", "/x", b"2", "text/plain")
        assert (await store.get("tiles", "/x")).payload == b"1"
        assert (await store.get("assets-v1", "/x")).payload == b"2"

    async def test_list_keys_and_store_names(self, store):
        """Test listing keys and store names"""
        await store.put("tiles", "/tiles/0/0_0.png", b"a", "image/png")
        await store.put("tiles", "/tiles/osd_config.json", b"{}", "application/json")
        await store.put("assets-v1", "/build/app.js?v=3", b"js", "text/javascript")
        assert await store.list_keys("tiles") == {"/tiles/0/0_0.png", "/tiles/osd_config.json"}
        assert await store.list_keys("assets-v1") == {"/build/app.js?v=3"}
        assert await store.list_keys("missing") == set()
        assert await store.store_names() == {"tiles", "assets-v1"}

    async def test_delete_store(self, store):
        """Test deleting a store drops all its keys"""
        await store.put("tiles", "/a", b"1", "text/plain")
        assert await store.delete("tiles") is True
        assert await store.get("tiles", "/a") is None
        assert await store.list_keys("tiles") == set()
        assert await store.delete("tiles") is False

    async def test_has(self, store):
        """Test key presence checks"""
        await store.put("tiles", "/a", b"", "text/plain")
        assert await store.has("tiles", "/a")
        assert not await store.has("tiles", "/b")


class TestFileBlobStore:
    async def test_persists_across_instances(self, tmp_path):
        """Test entries survive a new store instance on the same root"""
        root = tmp_path / "stores"
        await FileBlobStore(root).put("tiles", "/tiles/1/0_1.png", b"tile", "image/png")
        entry = await FileBlobStore(root).get("tiles", "/tiles/1/0_1.png")
        assert entry.payload == b"tile"

    async def test_layout_payload_plus_sidecar(self, tmp_path):
        """Test each entry is a payload file plus a JSON sidecar"""
        s = FileBlobStore(tmp_path)
        await s.put("tiles", "/tiles/0/0_0.png", b"abc", "image/png")
        names = sorted(os.listdir(tmp_path / "tiles"))
        assert names == ["%2Ftiles%2F0%2F0_0.png.blob", "%2Ftiles%2F0%2F0_0.png.json"]

    async def test_payload_without_sidecar_is_absent(self, tmp_path):
        """Test a payload without its sidecar is not an entry"""
        s = FileBlobStore(tmp_path)
        (tmp_path / "tiles").mkdir()
        (tmp_path / "tiles" / "%2Fhalf.blob").write_bytes(b"partial")
        assert await s.get("tiles", "/half") is None
        assert await s.list_keys("tiles") == set()

    async def test_corrupt_sidecar_is_read_failure(self, tmp_path):
        """Test a corrupt sidecar raises StoreReadFailure"""
        s = FileBlobStore(tmp_path)
        await s.put("tiles", "/a", b"1", "text/plain")
        (tmp_path / "tiles" / "%2Fa.json").write_text("{not json")
        with pytest.raises(StoreReadFailure):
            await s.get("tiles", "/a")

    async def test_size_mismatch_is_read_failure(self, tmp_path):
        """Test a truncated payload raises StoreReadFailure"""
        s = FileBlobStore(tmp_path)
        await s.put("tiles", "/a", b"1234", "text/plain")
        (tmp_path / "tiles" / "%2Fa.blob").write_bytes(b"12")
        with pytest.raises(StoreReadFailure):
            await s.get("tiles", "/a")

    async def test_write_failure_leaves_key_absent(self, tmp_path, monkeypatch):
        """Test a failed write leaves no entry behind"""
        s = FileBlobStore(tmp_path)

        def boom(*a, **kw):
            raise OSError("no space left on device")

        monkeypatch.setattr(FileBlobStore, "_atomic_write", staticmethod(boom))
        with pytest.raises(StoreWriteFailure):
            await s.put("tiles", "/a", b"1", "text/plain")
        monkeypatch.undo()
        assert await s.get("tiles", "/a") is None

    @pytest.mark.parametrize("name", ["", "a/b", "..", "."])
    async def test_invalid_store_names(self, tmp_path, name):
        """Test store names that escape the root are refused"""
        with pytest.raises(ValueError):
            await FileBlobStore(tmp_path).put(name, "/a", b"1", "text/plain")
