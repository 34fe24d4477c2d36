"""
Tests for the MySQL adapter (view isolation) against a scripted DB-API connection.
"""

import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pymysql
import pytest
from pymysql.constants import CLIENT, FIELD_TYPE

from multitenant_core.database import (
    ConflictError,
    DatabaseConfig,
    DatabaseType,
    IsolationStrategy,
    MySQLAdapter,
    NotFoundError,
    QueryOptions,
    SortOrder,
    StorageError,
    TransactionError,
    tenant_view_name
)


class TestMySQLAdapter:
    """Test cases for MySQLAdapter."""

    @pytest.fixture
    def connect(self, fake_connection):
        with patch("multitenant_core.database.adapters.mysql.pymysql.connect",
                   return_value=fake_connection) as connect:
            yield connect

    @pytest.fixture
    def adapter(self, connect):
        adapter = MySQLAdapter(DatabaseConfig(
            database_type=DatabaseType.MYSQL,
            host="mysql.internal",
            database="app",
            username="app",
            password="secret",
            tenant_collections=["projects"]
        ))
        yield adapter
        adapter.close()

    @staticmethod
    def echo_rows(params):
        """Rows for a by-id re-select: one per requested id, in reverse order."""
        tenant_id, ids = params[0], params[1:]
        return [{"id": record_id, "tenant_id": tenant_id, "created_at": datetime(2024, 5, 1, 12, 0, 0)}
                for record_id in reversed(ids)]

    def test_strategy(self, adapter):
        assert adapter.isolation_strategy == IsolationStrategy.VIEW
        assert not adapter.supports_returning

    def test_connect_arguments(self, adapter, connect):
        adapter.pool.warm_up()

        kwargs = connect.call_args.kwargs
        assert kwargs["host"] == "mysql.internal"
        assert kwargs["port"] == 3306
        assert kwargs["autocommit"] is False
        assert kwargs["charset"] == "utf8mb4"
        assert kwargs["cursorclass"] is pymysql.cursors.DictCursor
        assert kwargs["client_flag"] & CLIENT.FOUND_ROWS
        assert kwargs["client_flag"] & CLIENT.MULTI_STATEMENTS
        assert "ssl" not in kwargs

    def test_create_inserts_then_reselects(self, adapter, fake_connection, ctx_a):
        """Test insert without RETURNING followed by a tenant-scoped re-select."""
        fake_connection.when("SELECT * FROM", rows=self.echo_rows)

        record = adapter.create("projects", {"name": "Acme"}, ctx_a)

        statements = [sql for sql, _ in fake_connection.statements]
        assert statements[0] == "SET @current_tenant_id = %s"
        assert statements[1] == ("INSERT INTO `projects` (`name`, `id`, `tenant_id`, `created_at`, `updated_at`) "
                                 "VALUES (%s, %s, %s, %s, %s)")
        assert statements[2] == "SELECT * FROM `projects` WHERE `tenant_id` = %s AND `id` = %s"
        assert statements[-1] == "SET @current_tenant_id = NULL"
        assert record["tenant_id"] == "tenant-a"
        assert record["created_at"] == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_datetimes_stored_as_naive_utc(self, adapter, fake_connection, ctx_a):
        fake_connection.when("SELECT * FROM", rows=self.echo_rows)

        adapter.create("projects", {"due": datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)}, ctx_a)

        params = fake_connection.executed("INSERT INTO")[0][1]
        assert params[0] == datetime(2024, 1, 1, 10, 0)
        assert all(not isinstance(p, datetime) or p.tzinfo is None for p in params)

    def test_update_not_found_skips_reselect(self, adapter, fake_connection, ctx_b):
        fake_connection.when("UPDATE", rowcount=0)

        with pytest.raises(NotFoundError):
            adapter.update("projects", "r1", {"name": "x"}, ctx_b)

        assert fake_connection.executed("SELECT * FROM") == []
        assert fake_connection.executed("UPDATE")[0][1][-2:] == ["tenant-b", "r1"]

    def test_update_reselects(self, adapter, fake_connection, ctx_a):
        fake_connection.when("UPDATE", rowcount=1)
        fake_connection.when("SELECT * FROM", rows=self.echo_rows)

        record = adapter.update("projects", "r1", {"name": "x"}, ctx_a)

        assert record["id"] == "r1"

    def test_bulk_create_restores_input_order(self, adapter, fake_connection, ctx_a):
        fake_connection.when("SELECT * FROM", rows=self.echo_rows)

        created = adapter.bulk_create("projects", [{"name": n} for n in "abc"], ctx_a)

        inserted_ids = [params[1] for _, params in fake_connection.executed("INSERT INTO")]
        assert [r["id"] for r in created] == inserted_ids
        sql, _ = fake_connection.executed("SELECT * FROM")[0]
        assert sql == "SELECT * FROM `projects` WHERE `tenant_id` = %s AND `id` IN (%s, %s, %s)"
        assert fake_connection.commits == 1

    def test_offset_without_limit(self, adapter, fake_connection, ctx_a):
        fake_connection.when("COUNT(*)", rows=[{"total": 0}])

        adapter.read("projects", QueryOptions(order=SortOrder("name"), offset=20), ctx_a).all()

        sql, params = fake_connection.executed("SELECT * FROM")[0]
        assert sql.endswith("ORDER BY `name` ASC LIMIT 18446744073709551615 OFFSET %s")
        assert params == ["tenant-a", 20]

    def test_search_lowercases_pattern(self, adapter, fake_connection, ctx_a):
        fake_connection.when("WHERE 1 = 0", columns=["id", "tenant_id", "name", "title"])

        adapter.search("projects", "MiXeD", ctx_a, fields=["name", "title", "missing"], limit=5, offset=10)

        sql, params = fake_connection.executed(" LIKE ")[0]
        assert "(LOWER(`name`) LIKE %s ESCAPE '!' OR LOWER(`title`) LIKE %s ESCAPE '!')" in sql
        assert params == ["tenant-a", "%mixed%", "%mixed%", 5, 10]

    def test_duplicate_entry_is_conflict(self, adapter, fake_connection, ctx_a):
        fake_connection.when("INSERT INTO", error=pymysql.err.IntegrityError(1062, "Duplicate entry 'x'"))

        with pytest.raises(ConflictError):
            adapter.create("projects", {"slug": "x"}, ctx_a)

    def test_other_integrity_error_is_storage_error(self, adapter, fake_connection, ctx_a):
        fake_connection.when("INSERT INTO", error=pymysql.err.IntegrityError(1452, "foreign key fails"))

        with pytest.raises(StorageError) as exc_info:
            adapter.create("projects", {"owner": "x"}, ctx_a)

        assert not isinstance(exc_info.value, ConflictError)
        assert not exc_info.value.retryable

    def test_lost_connection_is_retryable(self, adapter, fake_connection, ctx_a):
        fake_connection.when("INSERT INTO", error=pymysql.err.OperationalError(2013, "Lost connection"))

        with pytest.raises(StorageError) as exc_info:
            adapter.create("projects", {"name": "x"}, ctx_a)

        assert exc_info.value.retryable

    def test_isolate_creates_views(self, adapter, fake_connection):
        adapter.isolate("tenant-a")
        adapter.isolate("tenant-a")

        view = tenant_view_name("projects", "tenant-a")
        statements = fake_connection.executed("CREATE OR REPLACE VIEW")
        assert len(statements) == 2
        assert statements[0][0] == (f"CREATE OR REPLACE VIEW `{view}` AS SELECT * FROM `projects` "
                                    f"WHERE `tenant_id` = 'tenant-a'")
        assert fake_connection.commits == 2

    def test_json_values_encoded(self, adapter, fake_connection, ctx_a):
        fake_connection.when("SELECT * FROM", rows=self.echo_rows)

        adapter.create("projects", {"meta": {"a": 1}, "tags": ["x"]}, ctx_a)

        params = fake_connection.executed("INSERT INTO")[0][1]
        assert json.loads(params[0]) == {"a": 1}
        assert json.loads(params[1]) == ["x"]

    def test_json_columns_decoded(self, adapter):
        cursor = Mock(description=[("id", FIELD_TYPE.VAR_STRING), ("meta", FIELD_TYPE.JSON),
                                   ("note", FIELD_TYPE.BLOB)])

        record = adapter._row_to_record(cursor, {"id": "r1", "meta": '{"a": [1, 2]}', "note": '{"raw": true}'})

        assert record == {"id": "r1", "meta": {"a": [1, 2]}, "note": '{"raw": true}'}

    def test_scoped_transaction_filters_by_tenant(self, adapter, fake_connection, ctx_a):
        with adapter.transact(ctx_a) as tx:
            with pytest.raises(TransactionError):
                tx.query("SELECT * FROM `projects`")
            tx.select("projects", {"status": "open"})

        sql, params = fake_connection.executed("SELECT * FROM `projects` WHERE")[0]
        assert sql.startswith("SELECT * FROM `projects` WHERE `tenant_id` = %s AND `status` = %s")
        assert params == ["tenant-a", "open"]
        assert adapter.get_pool_statistics().in_use == 0

    def test_execute_script_drains_result_sets(self, adapter, fake_connection):
        script = "CREATE TABLE a (id INT); CREATE TABLE b (id INT);"

        adapter.execute_script(script)

        assert fake_connection.executed("CREATE TABLE") == [(script, None)]


class TestTenantViewName:
    """Test cases for per-tenant view naming."""

    def test_deterministic_and_distinct(self):
        assert tenant_view_name("projects", "a") == tenant_view_name("projects", "a")
        assert tenant_view_name("projects", "a") != tenant_view_name("projects", "b")

    def test_fits_identifier_limits(self):
        name = tenant_view_name("x" * 63, "tenant-" + "y" * 100)

        assert len(name) <= 63
        assert name.startswith("x" * 40 + "_tenant_")
