"""Tests for per-plugin storage."""

import pytest

from mxhost.storage import (
    MemoryStorageAdapter,
    PluginStorage,
    SQLiteStorageAdapter,
    create_storage_adapter,
)


@pytest.fixture(params=["memory", "sqlite"])
def adapter(request, tmp_path):
    if request.param == "memory":
        return MemoryStorageAdapter()
    return SQLiteStorageAdapter(tmp_path / "storage.db")


class TestStorageAdapters:
    def test_set_and_get(self, adapter):
        adapter.set("p", "config", {"enabled": True, "rooms": ["!a", "!b"]})
        assert adapter.get("p", "config") == {"enabled": True, "rooms": ["!a", "!b"]}

    def test_missing_key(self, adapter):
        assert adapter.get("p", "missing") is None

    def test_overwrite(self, adapter):
        adapter.set("p", "n", 1)
        adapter.set("p", "n", 2)
        assert adapter.get("p", "n") == 2
        assert adapter.keys("p") == ["n"]

    def test_delete(self, adapter):
        adapter.set("p", "n", 1)
        adapter.delete("p", "n")
        adapter.delete("p", "n")
        assert adapter.get("p", "n") is None

    def test_partitioned_by_plugin(self, adapter):
        adapter.set("a", "shared", "from a")
        adapter.set("b", "shared", "from b")
        assert adapter.get("a", "shared") == "from a"
        assert adapter.get("b", "shared") == "from b"

    def test_clear_only_affects_one_plugin(self, adapter):
        adapter.set("a", "x", 1)
        adapter.set("a", "y", 2)
        adapter.set("b", "x", 3)
        adapter.clear("a")
        assert adapter.keys("a") == []
        assert adapter.keys("b") == ["x"]


def test_sqlite_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "storage.db"
    SQLiteStorageAdapter(path).set("p", "k", [1, 2, 3])
    assert SQLiteStorageAdapter(path).get("p", "k") == [1, 2, 3]


def test_plugin_storage_view():
    adapter = MemoryStorageAdapter()
    storage = PluginStorage(adapter, "demo")
    storage.set("k", "v")
    assert storage.get("k") == "v"
    assert storage.keys() == ["k"]
    assert adapter.get("demo", "k") == "v"
    storage.delete("k")
    assert storage.keys() == []
    storage.set("a", 1)
    storage.clear()
    assert adapter.keys("demo") == []


class TestCreateStorageAdapter:
    def test_memory(self):
        assert isinstance(create_storage_adapter("memory"), MemoryStorageAdapter)

    def test_sqlite(self, tmp_path):
        adapter = create_storage_adapter("sqlite", tmp_path / "s.db")
        assert isinstance(adapter, SQLiteStorageAdapter)

    def test_sqlite_requires_path(self):
        with pytest.raises(ValueError, match="path"):
            create_storage_adapter("sqlite")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="redis"):
            create_storage_adapter("redis")
