"""
Tests for MigrationManager and MigrationLock.
"""

import logging
import re
import sqlite3
from contextlib import closing
from unittest.mock import Mock

import pytest

from multitenant_core.database import (
    DatabaseType,
    Migration,
    MigrationConfig,
    MigrationError,
    MigrationLock,
    MigrationLockError,
    MigrationManager,
    MigrationStatus
)
from multitenant_core.database.exceptions import MigrationValidationError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def table_exists(adapter, table):
    with closing(sqlite3.connect(adapter.config.database)) as conn:
        row = conn.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)).fetchone()
    return row is not None


def widget_migration(migration_id, table, up=None):
    return Migration(
        id=migration_id,
        name=f"create {table}",
        up=up or f"CREATE TABLE {table} (id TEXT PRIMARY KEY)",
        down=f"DROP TABLE {table}"
    )


class TestMigrationManager:
    """Test cases for MigrationManager on SQLite."""

    @pytest.fixture
    def manager(self, sqlite_adapter):
        return MigrationManager(sqlite_adapter)

    def test_rerun_is_noop(self, manager, project_batch):
        """Test that applied migrations are skipped by id."""
        assert manager.run_migrations(project_batch) == []

        status = manager.get_status()
        assert status["pending"] == 0
        assert status["completed"] == status["total"]
        assert status["failed"] == 0

    def test_failure_stops_run(self, manager, sqlite_adapter):
        """Test that a failing migration stops the run and later ones stay pending."""
        batch = [
            widget_migration("20240301000000_m1", "widgets"),
            widget_migration("20240301000001_m2", "gadgets", up="CREATE TABLE gadgets ("),
            widget_migration("20240301000002_m3", "gizmos"),
        ]

        with pytest.raises(MigrationError) as exc_info:
            manager.run_migrations(batch)

        results = exc_info.value.results
        assert [(r.migration_id, r.success) for r in results] == [
            ("20240301000000_m1", True), ("20240301000001_m2", False)]
        assert results[1].status == MigrationStatus.FAILED
        assert results[1].error_message
        history = {r.id: r.status for r in manager.get_migration_history()}
        assert history["20240301000000_m1"] == MigrationStatus.COMPLETED
        assert history["20240301000001_m2"] == MigrationStatus.FAILED
        assert "20240301000002_m3" not in history
        assert table_exists(sqlite_adapter, "widgets")
        assert not table_exists(sqlite_adapter, "gizmos")
        assert manager.get_status()["pending"] == 1

    def test_failed_migration_blocks_until_reset(self, manager):
        broken = widget_migration("20240301000001_m2", "gadgets", up="CREATE TABLE gadgets (")
        with pytest.raises(MigrationError):
            manager.run_migrations([broken])

        fixed = widget_migration("20240301000001_m2", "gadgets")
        with pytest.raises(MigrationError) as exc_info:
            manager.run_migrations([fixed])
        assert exc_info.value.details == {"blocked": ["20240301000001_m2"]}

        assert manager.reset_migration("20240301000001_m2")
        results = manager.run_migrations([fixed])
        assert [r.status for r in results] == [MigrationStatus.COMPLETED]

    def test_reset_rules(self, manager, project_batch):
        assert not manager.reset_migration("does_not_exist")
        with pytest.raises(MigrationError):
            manager.reset_migration(project_batch[0].id)

    def test_pending_applied_in_id_order(self, manager):
        batch = [widget_migration("20240401000002_b", "second"), widget_migration("20240401000001_a", "first")]

        results = manager.run_migrations(batch)

        assert [r.migration_id for r in results] == ["20240401000001_a", "20240401000002_b"]

    def test_rollback_to(self, manager, sqlite_adapter):
        manager.run_migrations([widget_migration("20240501000001_a", "alpha"),
                                widget_migration("20240501000002_b", "beta"),
                                widget_migration("20240501000003_c", "gamma")])

        results = manager.rollback_to("20240501000001_a")

        assert [r.migration_id for r in results] == ["20240501000003_c", "20240501000002_b"]
        assert all(r.status == MigrationStatus.ROLLED_BACK for r in results)
        assert table_exists(sqlite_adapter, "alpha")
        assert not table_exists(sqlite_adapter, "beta")
        assert manager.get_migration_history()[-1].id == "20240501000001_a"

    def test_rollback_uses_stored_script(self, sqlite_adapter):
        """Test that a fresh manager can roll back from the stored reverse script."""
        MigrationManager(sqlite_adapter).run_migrations([widget_migration("20240601000001_a", "stored")])

        results = MigrationManager(sqlite_adapter).rollback_to("20240601000000")

        assert [r.migration_id for r in results] == ["20240601000001_a"]
        assert not table_exists(sqlite_adapter, "stored")

    def test_rollback_failure_stops(self, manager):
        migration = Migration(id="20240701000001_a", name="a", up="CREATE TABLE keep_me (id TEXT)",
                              down="DROP TABLE no_such_table")
        manager.run_migrations([migration])

        with pytest.raises(MigrationError) as exc_info:
            manager.rollback_to("20240701000000")

        assert exc_info.value.results[0].status == MigrationStatus.FAILED
        assert manager.get_migration_history()[-1].status == MigrationStatus.COMPLETED

    def test_duplicate_ids_rejected_before_running(self, manager, sqlite_adapter):
        batch = [widget_migration("20240801000001_a", "one"), widget_migration("20240801000001_a", "two")]

        with pytest.raises(MigrationValidationError) as exc_info:
            manager.run_migrations(batch)

        assert any("Duplicate" in e for e in exc_info.value.validation_errors)
        assert not table_exists(sqlite_adapter, "one")

    def test_changed_checksum_warns(self, manager, caplog):
        manager.run_migrations([widget_migration("20240901000001_a", "checked")])
        edited = widget_migration("20240901000001_a", "checked", up="CREATE TABLE checked (id INTEGER)")

        with caplog.at_level(logging.WARNING, logger="multitenant_core.database.migration_manager"):
            assert manager.run_migrations([edited]) == []

        assert "changed after it was applied" in caplog.text

    def test_held_lock_refuses_run(self, manager):
        """Test that a refused run leaves the registry and status untouched."""
        before = manager.get_status()
        manager.lock.acquire("other-runner")

        with pytest.raises(MigrationLockError):
            manager.run_migrations([widget_migration("20241001000001_a", "locked")])

        assert manager.get_status() == before
        assert "20241001000001_a" not in manager._registry

    def test_custom_table_name(self, sqlite_adapter):
        manager = MigrationManager(sqlite_adapter, MigrationConfig(table_name="app_migrations"))

        manager.run_migrations([widget_migration("20241101000001_a", "custom")])

        assert table_exists(sqlite_adapter, "app_migrations")
        assert [r.id for r in manager.get_migration_history()] == ["20241101000001_a"]

    def test_validate_migration(self, manager):
        missing_down = Migration(id="20241201000001_a", name="a", up="SELECT 1", down="")
        callable_down = Migration(id="20241201000002_b", name="b", up="SELECT 1", down=lambda tx: None)
        bad_id = Migration(id="../escape", name="c", up="SELECT 1", down="SELECT 1")

        assert not manager.validate_migration(missing_down).is_valid
        result = manager.validate_migration(callable_down)
        assert result.is_valid
        assert result.warnings
        assert not manager.validate_migration(bad_id).is_valid

    def test_generate_template(self, manager):
        migration = manager.generate_migration_template("Add Project Owner!")

        assert re.match(r"^\d{14}_add_project_owner$", migration.id)
        assert migration.up.endswith("SELECT 1")
        assert manager.validate_migration(migration).is_valid

    def test_generate_template_for_documents(self):
        adapter = Mock(database_type=DatabaseType.MONGODB)

        migration = MigrationManager(adapter).generate_migration_template("index owners")

        assert migration.up == {"ping": 1}
        assert migration.down == {"ping": 1}


class TestMigrationLock:
    """Test cases for MigrationLock expiry."""

    def test_exclusive_until_released(self):
        lock = MigrationLock(timeout=30, clock=FakeClock())
        token = lock.acquire("first")

        with pytest.raises(MigrationLockError) as exc_info:
            lock.acquire("second")

        assert exc_info.value.details["owner"] == token
        assert lock.release(token)
        assert not lock.is_locked
        lock.acquire("second")

    def test_expired_lock_is_force_released(self):
        clock = FakeClock()
        lock = MigrationLock(timeout=30, clock=clock)
        stale = lock.acquire("crashed")

        clock.now = 30.0
        fresh = lock.acquire("next")

        assert lock.owner == fresh
        assert not lock.release(stale)
        assert lock.is_locked

    def test_refresh_extends_expiry(self):
        clock = FakeClock()
        lock = MigrationLock(timeout=30, clock=clock)
        token = lock.acquire()

        clock.now = 20.0
        assert lock.refresh(token)
        clock.now = 40.0

        assert lock.is_locked
        with pytest.raises(MigrationLockError):
            lock.acquire()

    def test_refresh_by_non_owner(self):
        lock = MigrationLock(timeout=30, clock=FakeClock())
        lock.acquire()

        assert not lock.refresh("someone-else")
