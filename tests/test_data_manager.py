"""
Tests for the DataManager facade on SQLite with the in-memory cache.
"""

import json
import logging
from unittest.mock import Mock, patch

import pytest

from multitenant_core import DataManager, DataManagerConfig, DataResult
from multitenant_core.database import (
    CacheError,
    CollectionSchema,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError
)


def audit_entries(adapter, ctx):
    return adapter.read("audit_logs", {"order": "created_at"}, ctx).all()


class TestDataManagerOperations:
    """CRUD through the facade."""

    @pytest.fixture
    def manager(self, sqlite_adapter, memory_cache):
        return DataManager(sqlite_adapter, cache=memory_cache)

    def test_create_caches_and_audits(self, manager, sqlite_adapter, memory_cache, ctx_a):
        result = manager.create("projects", {"name": "Acme"}, ctx_a)

        assert result.success
        record = result.data
        assert record["tenant_id"] == "tenant-a"
        assert memory_cache.get(f"projects:id:{record['id']}", ctx_a) == record
        entries = audit_entries(sqlite_adapter, ctx_a)
        assert [(e["action"], e["resource_id"], e["user_id"]) for e in entries] == [
            ("CREATE", record["id"], "alice")]
        assert json.loads(entries[0]["new_values"])["name"] == "Acme"

    def test_get_by_id_served_from_cache(self, manager, sqlite_adapter, ctx_a):
        record = manager.create("projects", {"name": "Acme"}, ctx_a).data

        with patch.object(sqlite_adapter, "get_by_id", wraps=sqlite_adapter.get_by_id) as get_by_id:
            cached = manager.get_by_id("projects", record["id"], ctx_a)
            fresh = manager.get_by_id("projects", record["id"], ctx_a, use_cache=False)

        assert cached.data == record
        assert fresh.data == record
        assert get_by_id.call_count == 1

    def test_other_tenant_gets_not_found(self, manager, ctx_a, ctx_b):
        record = manager.create("projects", {"name": "Acme"}, ctx_a).data

        result = manager.get_by_id("projects", record["id"], ctx_b)

        assert not result.success
        assert isinstance(result.error, NotFoundError)
        assert result.to_dict()["error"]["code"] == "RESOURCE_NOT_FOUND"
        with pytest.raises(NotFoundError):
            result.unwrap()

    def test_read_cached_until_write(self, manager, sqlite_adapter, ctx_a):
        """Test that a write through the facade drops the collection's cached reads."""
        manager.create("projects", {"name": "one"}, ctx_a)

        with patch.object(sqlite_adapter, "read", wraps=sqlite_adapter.read) as read:
            first = manager.read("projects", {"order": "name"}, ctx_a)
            again = manager.read("projects", {"order": "name"}, ctx_a)
            manager.create("projects", {"name": "two"}, ctx_a)
            after_write = manager.read("projects", {"order": "name"}, ctx_a)

        assert first.data == again.data
        assert [r["name"] for r in after_write.data] == ["one", "two"]
        assert read.call_count == 2

    def test_paginated_read_count(self, manager, ctx_a):
        manager.bulk_create("projects", [{"name": f"p{i}"} for i in range(5)], ctx_a)

        result = manager.read("projects", {"order": "name", "limit": 2, "offset": 2}, ctx_a)
        cached = manager.read("projects", {"order": "name", "limit": 2, "offset": 2}, ctx_a)

        assert [r["name"] for r in result.data] == ["p2", "p3"]
        assert result.count == 5
        assert cached.count == 5
        assert result.to_dict()["count"] == 5

    def test_update(self, manager, sqlite_adapter, memory_cache, ctx_a):
        record = manager.create("projects", {"name": "Draft", "status": "new"}, ctx_a).data

        result = manager.update("projects", record["id"], {"status": "done"}, ctx_a)

        assert result.data["status"] == "done"
        assert memory_cache.get(f"projects:id:{record['id']}", ctx_a)["status"] == "done"
        [entry] = [e for e in audit_entries(sqlite_adapter, ctx_a) if e["action"] == "UPDATE"]
        assert json.loads(entry["old_values"])["status"] == "new"
        assert json.loads(entry["new_values"])["status"] == "done"

    def test_update_other_tenant(self, manager, sqlite_adapter, ctx_a, ctx_b):
        record = manager.create("projects", {"name": "Mine"}, ctx_a).data

        result = manager.update("projects", record["id"], {"name": "Theirs"}, ctx_b)

        assert isinstance(result.error, NotFoundError)
        assert sqlite_adapter.get_by_id("projects", record["id"], ctx_a)["name"] == "Mine"

    def test_delete(self, manager, sqlite_adapter, memory_cache, ctx_a):
        record = manager.create("projects", {"name": "Gone"}, ctx_a).data

        result = manager.delete("projects", record["id"], ctx_a)

        assert result.data == {"id": record["id"], "deleted": True}
        assert memory_cache.get(f"projects:id:{record['id']}", ctx_a) is None
        assert isinstance(manager.get_by_id("projects", record["id"], ctx_a).error, NotFoundError)
        [entry] = [e for e in audit_entries(sqlite_adapter, ctx_a) if e["action"] == "DELETE"]
        assert json.loads(entry["old_values"])["name"] == "Gone"

    def test_search_cached_and_invalidated(self, manager, ctx_a):
        manager.create("projects", {"name": "Rocket"}, ctx_a)

        first = manager.search("projects", "rock", ctx_a)
        manager.create("projects", {"name": "Rocketeer"}, ctx_a)
        second = manager.search("projects", "rock", ctx_a)

        assert first.count == 1
        assert second.count == 2

    def test_invalid_input_is_a_failed_result(self, manager, ctx_a):
        assert isinstance(manager.create(None, {"name": "x"}, ctx_a).error, ValidationError)
        assert isinstance(manager.create("projects; DROP", {"name": "x"}, ctx_a).error, ValidationError)
        assert isinstance(manager.read("projects", {"limit": -1}, ctx_a).error, ValidationError)
        assert isinstance(manager.create("projects", {"name": "x"}, None).error, ValidationError)

    def test_health(self, manager, ctx_a):
        manager.create("projects", {"name": "x"}, ctx_a)

        health = manager.get_health()

        assert health["database"]["connected"]
        assert health["cache"]["total_keys"] >= 1

    def test_clear_tenant_cache(self, manager, memory_cache, ctx_a, ctx_b):
        manager.create("projects", {"name": "a"}, ctx_a)
        manager.create("projects", {"name": "b"}, ctx_b)

        assert manager.clear_tenant_cache("tenant-a") == 1
        assert memory_cache.get_stats().total_keys == 1


class TestDataManagerBulk:
    """Batching and partial failure."""

    def test_bulk_create_batches(self, sqlite_adapter, memory_cache, ctx_a):
        manager = DataManager(sqlite_adapter, cache=memory_cache, config=DataManagerConfig(bulk_batch_size=2))

        with patch.object(sqlite_adapter, "bulk_create", wraps=sqlite_adapter.bulk_create) as bulk:
            result = manager.bulk_create("projects", [{"name": f"p{i}"} for i in range(5)], ctx_a)

        assert result.success
        assert result.count == 5
        assert [len(call.args[1]) for call in bulk.call_args_list] == [2, 2, 1]
        actions = [e["action"] for e in audit_entries(sqlite_adapter, ctx_a)]
        assert actions == ["BULK_CREATE"] * 5

    def test_failed_batch_keeps_earlier_batches(self, sqlite_adapter, ctx_a):
        """Test that a failing batch reports the records committed before it."""
        manager = DataManager(sqlite_adapter)
        manager.create("projects", {"slug": "taken"}, ctx_a)

        result = manager.bulk_create("projects", [{"slug": "s1"}, {"slug": "s2"}, {"slug": "s3"}, {"slug": "taken"}],
                                     ctx_a, batch_size=2)

        assert not result.success
        assert isinstance(result.error, ConflictError)
        assert [r["slug"] for r in result.data] == ["s1", "s2"]
        stored = sorted(r["slug"] for r in sqlite_adapter.read("projects", None, ctx_a))
        assert stored == ["s1", "s2", "taken"]
        bulk_audits = [e for e in audit_entries(sqlite_adapter, ctx_a) if e["action"] == "BULK_CREATE"]
        assert len(bulk_audits) == 2

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            DataManagerConfig(bulk_batch_size=0)

    @pytest.mark.parametrize("batch_size", [-1, 0, 1.5, True])
    def test_bulk_create_rejects_bad_batch_size(self, sqlite_adapter, ctx_a, batch_size):
        manager = DataManager(sqlite_adapter)

        result = manager.bulk_create("projects", [{"name": "x"}, {"name": "y"}], ctx_a, batch_size=batch_size)

        assert not result.success
        assert isinstance(result.error, ValidationError)
        assert sqlite_adapter.read("projects", None, ctx_a).all() == []


class TestDataManagerSideEffects:
    """Cache, audit and schema behaviour."""

    def test_results_identical_with_and_without_cache(self, sqlite_adapter, memory_cache, ctx_a):
        cached = DataManager(sqlite_adapter, cache=memory_cache, config=DataManagerConfig(audit_enabled=False))
        uncached = DataManager(sqlite_adapter, config=DataManagerConfig(audit_enabled=False))
        record = cached.create("projects", {"name": "Apollo", "budget": 12.5, "active": True}, ctx_a).data
        cached.update("projects", record["id"], {"status": "live"}, ctx_a)

        for _ in range(2):
            assert cached.read("projects", None, ctx_a).data == uncached.read("projects", None, ctx_a).data
            assert (cached.get_by_id("projects", record["id"], ctx_a).data
                    == uncached.get_by_id("projects", record["id"], ctx_a).data)

    def test_cache_failures_do_not_fail_operations(self, sqlite_adapter, ctx_a, caplog):
        cache = Mock()
        cache.get.side_effect = CacheError("redis down")
        cache.set.side_effect = CacheError("redis down")
        cache.invalidate_prefix.side_effect = CacheError("redis down")
        manager = DataManager(sqlite_adapter, cache=cache)

        with caplog.at_level(logging.WARNING, logger="multitenant_core.data_manager"):
            created = manager.create("projects", {"name": "Acme"}, ctx_a)
            read = manager.read("projects", None, ctx_a)

        assert created.success
        assert [r["id"] for r in read.data] == [created.data["id"]]
        assert "Cache population failed" in caplog.text
        assert "Query cache invalidation failed" in caplog.text

    def test_audit_failure_does_not_fail_operation(self, sqlite_adapter, ctx_a, caplog):
        manager = DataManager(sqlite_adapter, config=DataManagerConfig(audit_collection="no_such_table"))

        with caplog.at_level(logging.WARNING, logger="multitenant_core.database.audit"):
            result = manager.create("projects", {"name": "Acme"}, ctx_a)

        assert result.success
        assert "Failed to write audit entry CREATE projects" in caplog.text

    def test_audit_disabled(self, sqlite_adapter, ctx_a):
        manager = DataManager(sqlite_adapter, config=DataManagerConfig(audit_enabled=False))
        record = manager.create("projects", {"name": "Acme"}, ctx_a).data

        with patch.object(sqlite_adapter, "get_by_id") as get_by_id:
            manager.delete("projects", record["id"], ctx_a)

        get_by_id.assert_not_called()
        assert audit_entries(sqlite_adapter, ctx_a) == []

    def test_audit_reads(self, sqlite_adapter, ctx_a):
        manager = DataManager(sqlite_adapter, config=DataManagerConfig(audit_reads=True))

        manager.read("projects", None, ctx_a)

        assert [e["action"] for e in audit_entries(sqlite_adapter, ctx_a)] == ["READ"]

    def test_audit_entries_are_tenant_scoped(self, sqlite_adapter, ctx_a, ctx_b):
        manager = DataManager(sqlite_adapter)
        manager.create("projects", {"name": "Acme"}, ctx_a)

        assert audit_entries(sqlite_adapter, ctx_b) == []
        assert len(manager.read("audit_logs", None, ctx_a).data) == 1

    def test_schema_enforced(self, sqlite_adapter, ctx_a):
        manager = DataManager(sqlite_adapter)
        manager.register_schema("projects", CollectionSchema.of(["name", "status"], required=["name"]))

        missing = manager.create("projects", {"status": "new"}, ctx_a)
        unknown = manager.create("projects", {"name": "x", "colour": "red"}, ctx_a)
        created = manager.create("projects", {"name": "x"}, ctx_a)
        bad_patch = manager.update("projects", created.data["id"], {"colour": "red"}, ctx_a)
        partial = manager.update("projects", created.data["id"], {"status": "ok"}, ctx_a)

        assert missing.error.errors == ["Missing required field: name"]
        assert unknown.error.errors == ["Unknown field: colour"]
        assert isinstance(bad_patch.error, ValidationError)
        assert partial.success
        assert len(sqlite_adapter.read("projects", None, ctx_a).all()) == 1

    def test_storage_errors_are_carried(self, sqlite_adapter, ctx_a):
        manager = DataManager(sqlite_adapter)

        result = manager.read("no_such_table", None, ctx_a)

        assert isinstance(result.error, StorageError)
        assert result.to_dict()["success"] is False


class TestDataResult:
    """Test cases for DataResult."""

    def test_ok(self):
        result = DataResult.ok([1, 2], count=2)

        assert result.unwrap() == [1, 2]
        assert result.to_dict() == {"success": True, "data": [1, 2], "count": 2}

    def test_fail(self):
        error = ValidationError("bad")
        result = DataResult.fail(error)

        assert result.to_dict() == {"success": False, "data": None, "error": error.to_dict()}
        with pytest.raises(ValidationError):
            result.unwrap()
