"""
Tests for the key-value persistence collaborators.

Test Classification:
- All tests here are unit tests (temporary SQLite files)

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-KV-N-01 | set then get (memory) | Equivalence – normal | Value returned | - |
| TC-KV-N-02 | set then get (sqlite) | Equivalence – normal | Value returned | - |
| TC-KV-N-03 | set twice (sqlite) | Equivalence – normal | Latest value | upsert |
| TC-KV-N-04 | Reconnect (sqlite) | Equivalence – normal | Value survives | - |
| TC-KV-B-01 | Missing key | Boundary – empty | None | - |
| TC-KV-B-02 | Delete missing key | Boundary – empty | No error | - |
| TC-KV-N-05 | Protocol conformance | Equivalence – normal | isinstance KeyValueStore | - |
"""

from pathlib import Path

import pytest

from clearpass.storage.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore


class TestMemoryKeyValueStore:
    """Tests for MemoryKeyValueStore."""

    async def test_set_get_delete(self) -> None:
        """TC-KV-N-01 / TC-KV-B-01: Basic operations."""
        store = MemoryKeyValueStore()

        assert await store.get("k") is None
        await store.set("k", "v")
        assert await store.get("k") == "v"
        await store.delete("k")
        assert await store.get("k") is None

    async def test_delete_missing_key(self) -> None:
        """TC-KV-B-02: Deleting an absent key is a no-op."""
        await MemoryKeyValueStore().delete("missing")


class TestSqliteKeyValueStore:
    """Tests for SqliteKeyValueStore."""

    @pytest.fixture
    async def store(self, temp_db_path: Path):
        s = SqliteKeyValueStore(temp_db_path)
        await s.connect()
        yield s
        await s.close()

    async def test_set_get(self, store: SqliteKeyValueStore) -> None:
        """TC-KV-N-02: Value stored and read back."""
        await store.set("cookies", '{"a": 1}')
        assert await store.get("cookies") == '{"a": 1}'

    async def test_upsert(self, store: SqliteKeyValueStore) -> None:
        """TC-KV-N-03: A second set replaces the value."""
        await store.set("k", "one")
        await store.set("k", "two")
        assert await store.get("k") == "two"

    async def test_missing_key_and_delete(self, store: SqliteKeyValueStore) -> None:
        """TC-KV-B-01 / TC-KV-B-02: Absent keys."""
        assert await store.get("missing") is None
        await store.delete("missing")
        await store.set("k", "v")
        await store.delete("k")
        assert await store.get("k") is None

    async def test_value_survives_reconnect(self, temp_db_path: Path) -> None:
        """
        TC-KV-N-04: Data is on disk.

        // Given: A value written and the connection closed
        // When: A new store opens the same file
        // Then: The value is still there
        """
        first = SqliteKeyValueStore(temp_db_path)
        await first.set("k", "persisted")
        await first.close()

        second = SqliteKeyValueStore(temp_db_path)
        try:
            assert await second.get("k") == "persisted"
        finally:
            await second.close()

    async def test_default_path_from_settings(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The database path comes from storage settings when not given."""
        from clearpass.utils.config import get_settings

        db_path = tmp_path / "nested" / "kv.db"
        monkeypatch.setenv("CLEARPASS_STORAGE__DATABASE_PATH", str(db_path))
        get_settings.cache_clear()

        store = SqliteKeyValueStore()
        await store.set("k", "v")
        await store.close()

        assert store.db_path == db_path
        assert db_path.exists()


def test_protocol_conformance(temp_db_path: Path) -> None:
    """TC-KV-N-05: Both implementations satisfy the protocol."""
    assert isinstance(MemoryKeyValueStore(), KeyValueStore)
    assert isinstance(SqliteKeyValueStore(temp_db_path), KeyValueStore)
