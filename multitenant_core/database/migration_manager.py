"""
Migration Manager - schema versioning and migration runs against a storage adapter.
"""

import hashlib
import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .base_adapter import StorageAdapter
from .config import MigrationConfig
from .exceptions import (
    MigrationError,
    MigrationLockError,
    MigrationValidationError,
    TenantDataError
)
from .models import DatabaseType, utc_now


_MIGRATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MigrationStatus(Enum):
    """Lifecycle state of one migration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


def _script_checksum(script: Any) -> str:
    if callable(script):
        content = f"{getattr(script, '__module__', '')}.{getattr(script, '__qualname__', repr(script))}"
    elif isinstance(script, str):
        content = script
    else:
        content = json.dumps(script, sort_keys=True, default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class Migration:
    """
    A forward/reverse script pair identified by a sortable id.

    Scripts are backend-native: SQL text (or a list of statements) for
    relational backends, command documents for MongoDB, or a callable that
    receives the adapter's transaction handle (relational) or database
    handle (document). Migrations with a ``tenant_id`` run with that tenant
    bound to the session.
    """
    id: str
    name: str
    up: Any
    down: Any
    description: str = ""
    tenant_id: Optional[str] = None
    checksum: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.checksum and self.up:
            self.checksum = _script_checksum(self.up)

    def validate(self) -> List[str]:
        """Validate migration structure."""
        errors = []
        if not self.id or not isinstance(self.id, str):
            errors.append("Migration ID is required")
        elif not _MIGRATION_ID_PATTERN.match(self.id):
            errors.append(f"Migration ID contains invalid characters: {self.id!r}")
        if not self.name:
            errors.append("Migration name is required")
        if not self.up:
            errors.append("Migration must have a forward script")
        if not self.down:
            errors.append("Migration must have a reverse script")
        return errors


@dataclass
class MigrationRecord:
    """Persisted state of a migration in the migration store."""
    id: str
    name: str
    status: MigrationStatus
    tenant_id: Optional[str] = None
    checksum: Optional[str] = None
    rollback_script: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[float] = None
    executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "tenant_id": self.tenant_id,
            "checksum": self.checksum,
            "rollback_script": self.rollback_script,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "executed_at": self.executed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MigrationRecord":
        return cls(
            id=row["id"],
            name=row.get("name") or row["id"],
            status=MigrationStatus(row["status"]),
            tenant_id=row.get("tenant_id"),
            checksum=row.get("checksum"),
            rollback_script=row.get("rollback_script"),
            error_message=row.get("error_message"),
            duration_ms=row.get("duration_ms"),
            executed_at=row.get("executed_at"),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now()
        )


@dataclass
class MigrationResult:
    """Result of applying or rolling back one migration."""
    migration_id: str
    name: str
    status: MigrationStatus
    success: bool
    duration_ms: float = 0.0
    error_message: Optional[str] = None
    executed_at: datetime = field(default_factory=utc_now)


@dataclass
class ValidationResult:
    """Result of migration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class MigrationLock:
    """
    In-process run lock with an expiry timestamp.

    The expiry is checked on every acquisition attempt: a lock older than
    ``timeout`` seconds is force-released so a crashed runner cannot block
    migrations forever. A run that outlives the timeout without calling
    ``refresh`` can therefore overlap with the next run.
    """

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._clock = clock
        self._guard = threading.Lock()
        self._owner: Optional[str] = None
        self._expires_at: Optional[float] = None

    def acquire(self, owner: Optional[str] = None) -> str:
        """
        Take the lock and return its token.

        Raises:
            MigrationLockError: If the lock is held and not yet expired.
        """
        with self._guard:
            now = self._clock()
            if self._owner is not None:
                if now < self._expires_at:
                    raise MigrationLockError(
                        f"Migration lock is held by {self._owner}",
                        details={"owner": self._owner, "expires_in": round(self._expires_at - now, 3)}
                    )
                self.logger.warning(f"Force-releasing expired migration lock held by {self._owner}")
            token = f"{owner or 'migration'}:{uuid.uuid4()}"
            self._owner = token
            self._expires_at = now + self.timeout
            self.logger.info(f"Migration lock acquired by {token}")
            return token

    def refresh(self, token: str) -> bool:
        """Push the expiry forward if ``token`` still owns the lock."""
        with self._guard:
            if self._owner != token:
                return False
            self._expires_at = self._clock() + self.timeout
            return True

    def release(self, token: str) -> bool:
        """Release the lock. Returns False if ``token`` no longer owns it."""
        with self._guard:
            if self._owner != token:
                self.logger.warning(f"Migration lock no longer owned by {token}; not releasing")
                return False
            self._owner = None
            self._expires_at = None
            self.logger.info(f"Migration lock released by {token}")
            return True

    @property
    def is_locked(self) -> bool:
        with self._guard:
            return self._owner is not None and self._clock() < self._expires_at

    @property
    def owner(self) -> Optional[str]:
        return self._owner


class MigrationManager:
    """
    Runs migrations against a storage adapter.

    Migrations are applied in ascending id order and are idempotent by id.
    A failure stops the run and leaves a ``failed`` record; the manager then
    refuses to run that migration again until ``reset_migration`` is called.
    """

    def __init__(self,
                 adapter: StorageAdapter,
                 config: Optional[MigrationConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.adapter = adapter
        self.config = config or MigrationConfig()
        self.lock = MigrationLock(self.config.lock_timeout, clock)
        self.logger = logging.getLogger(__name__)
        self._registry: Dict[str, Migration] = {}
        self._store_ready = False

    @property
    def table_name(self) -> str:
        return self.config.table_name

    def initialize(self):
        """Create the migration store if configured to."""
        if self.config.create_table:
            self.adapter.ensure_migration_store(self.table_name)
        self._store_ready = True
        self.logger.info(f"Migration store '{self.table_name}' ready on {self.adapter.backend_name}")

    def register(self, migrations: Sequence[Migration]):
        """Validate and remember migrations so status and rollback can use them."""
        self._validate_batch(migrations)
        for migration in migrations:
            self._registry[migration.id] = migration

    def run_migrations(self, migrations: Optional[Sequence[Migration]] = None) -> List[MigrationResult]:
        """
        Apply every pending migration.

        Args:
            migrations: Migrations to consider; defaults to the registered ones.

        Returns:
            List[MigrationResult]: One result per migration applied in this run.

        Raises:
            MigrationValidationError: A migration is malformed (nothing runs).
            MigrationLockError: Another run holds the lock.
            MigrationError: A migration failed (``results`` lists what ran), or
                a previous failure has not been reset.
        """
        batch = list(migrations) if migrations is not None else list(self._registry.values())
        self._validate_batch(batch)

        token = self.lock.acquire("run_migrations")
        try:
            for migration in batch:
                self._registry[migration.id] = migration
            self._ensure_store()
            records = self._load_records()

            blocked = sorted(m.id for m in batch
                             if m.id in records and records[m.id].status in (MigrationStatus.FAILED,
                                                                             MigrationStatus.RUNNING))
            if blocked:
                raise MigrationError(
                    f"Migrations require operator intervention before running again: {', '.join(blocked)}",
                    migration_id=blocked[0],
                    details={"blocked": blocked}
                )

            for migration in batch:
                record = records.get(migration.id)
                if record is not None and record.checksum and record.checksum != migration.checksum:
                    self.logger.warning(f"Migration {migration.id} changed after it was applied")

            pending = sorted((m for m in batch if m.id not in records), key=lambda m: m.id)
            if not pending:
                self.logger.info("No pending migrations")
                return []

            results: List[MigrationResult] = []
            for migration in pending:
                result = self._apply(migration)
                results.append(result)
                if not result.success:
                    raise MigrationError(
                        f"Migration {migration.id} failed: {result.error_message}",
                        migration_id=migration.id,
                        results=results
                    )
                self.lock.refresh(token)

            self.logger.info(f"Applied {len(results)} migration(s)")
            return results
        finally:
            self.lock.release(token)

    def rollback_to(self, version: str) -> List[MigrationResult]:
        """
        Roll back completed migrations with an id greater than ``version``,
        newest first, stopping at the first failure.

        Raises:
            MigrationLockError: Another run holds the lock.
            MigrationError: A reverse script failed or is unavailable.
        """
        token = self.lock.acquire("rollback")
        try:
            self._ensure_store()
            records = self._load_records()
            targets = sorted((r for r in records.values()
                              if r.status == MigrationStatus.COMPLETED and r.id > version),
                             key=lambda r: r.id, reverse=True)

            results: List[MigrationResult] = []
            for record in targets:
                migration = self._registry.get(record.id)
                script = migration.down if migration is not None else record.rollback_script
                start = time.perf_counter()
                error = None
                if not script:
                    error = "No rollback script available"
                else:
                    try:
                        self.adapter.execute_script(script, tenant_id=record.tenant_id)
                    except Exception as e:
                        error = str(e)
                duration_ms = round((time.perf_counter() - start) * 1000, 3)

                if error is not None:
                    results.append(MigrationResult(record.id, record.name, MigrationStatus.FAILED,
                                                   success=False, duration_ms=duration_ms, error_message=error))
                    self.logger.error(f"Rollback of migration {record.id} failed: {error}")
                    raise MigrationError(f"Rollback of migration {record.id} failed: {error}",
                                         migration_id=record.id, results=results)

                self.adapter.delete_migration_record(self.table_name, record.id)
                results.append(MigrationResult(record.id, record.name, MigrationStatus.ROLLED_BACK,
                                               success=True, duration_ms=duration_ms))
                self.logger.info(f"Rolled back migration {record.id} ({record.name})")
                self.lock.refresh(token)

            return results
        finally:
            self.lock.release(token)

    def reset_migration(self, migration_id: str) -> bool:
        """
        Clear a failed or running record so the migration becomes pending.

        Returns:
            bool: False if there is no record for ``migration_id``.
        """
        token = self.lock.acquire("reset")
        try:
            self._ensure_store()
            record = self._load_records().get(migration_id)
            if record is None:
                return False
            if record.status not in (MigrationStatus.FAILED, MigrationStatus.RUNNING):
                raise MigrationError(f"Migration {migration_id} is {record.status.value}; "
                                     f"only failed or running migrations can be reset",
                                     migration_id=migration_id)
            self.adapter.delete_migration_record(self.table_name, migration_id)
            self.logger.warning(f"Migration {migration_id} reset from {record.status.value} to pending")
            return True
        finally:
            self.lock.release(token)

    def get_status(self) -> Dict[str, int]:
        """Counts of known migrations by state. Pending means registered but never run."""
        self._ensure_store()
        records = self._load_records()
        statuses = [r.status for r in records.values()]
        return {
            "total": len(set(self._registry) | set(records)),
            "completed": statuses.count(MigrationStatus.COMPLETED),
            "pending": len([mid for mid in self._registry if mid not in records]),
            "failed": statuses.count(MigrationStatus.FAILED),
            "running": statuses.count(MigrationStatus.RUNNING)
        }

    def get_migration_history(self) -> List[MigrationRecord]:
        """Stored migration records in id order."""
        self._ensure_store()
        return sorted(self._load_records().values(), key=lambda r: r.id)

    def validate_migration(self, migration: Migration) -> ValidationResult:
        """
        Validate a migration.

        Args:
            migration: Migration to validate

        Returns:
            ValidationResult: Validation result
        """
        errors = migration.validate()
        warnings = []

        if callable(migration.down):
            warnings.append("Reverse script is a callable and is not stored; "
                            "rollback needs the migration to be registered")
        registered = self._registry.get(migration.id)
        if registered is not None and registered.checksum != migration.checksum:
            warnings.append(f"A different migration is already registered as {migration.id}")

        return ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

    def generate_migration_template(self, name: str, tenant_id: Optional[str] = None) -> Migration:
        """Build an editable migration with a timestamp-prefixed id."""
        slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "migration"
        migration_id = f"{utc_now():%Y%m%d%H%M%S}_{slug}"
        if self.adapter.database_type == DatabaseType.MONGODB:
            up: Any = {"ping": 1}
            down: Any = {"ping": 1}
        else:
            up = f"-- Migration: {name}\n-- Forward changes go here\nSELECT 1"
            down = f"-- Rollback: {name}\n-- Reverse changes go here\nSELECT 1"
        return Migration(id=migration_id, name=name, up=up, down=down,
                         description=f"Migration: {name}", tenant_id=tenant_id)

    def _apply(self, migration: Migration) -> MigrationResult:
        started = utc_now()
        record = MigrationRecord(
            id=migration.id,
            name=migration.name,
            status=MigrationStatus.RUNNING,
            tenant_id=migration.tenant_id,
            checksum=migration.checksum,
            rollback_script=migration.down if isinstance(migration.down, str) else None,
            executed_at=started,
            created_at=started,
            updated_at=started
        )
        self.adapter.save_migration_record(self.table_name, record.to_row())
        self.logger.info(f"Applying migration {migration.id} ({migration.name})")

        start = time.perf_counter()
        try:
            self.adapter.execute_script(migration.up, tenant_id=migration.tenant_id)
        except Exception as e:
            record.status = MigrationStatus.FAILED
            record.error_message = str(e)
            record.duration_ms = round((time.perf_counter() - start) * 1000, 3)
            record.updated_at = utc_now()
            try:
                self.adapter.save_migration_record(self.table_name, record.to_row())
            except TenantDataError as save_error:
                self.logger.error(f"Could not record failure of migration {migration.id}: {save_error}")
            self.logger.error(f"Migration {migration.id} failed: {e}")
            return MigrationResult(migration.id, migration.name, MigrationStatus.FAILED, success=False,
                                   duration_ms=record.duration_ms, error_message=str(e), executed_at=started)

        record.status = MigrationStatus.COMPLETED
        record.duration_ms = round((time.perf_counter() - start) * 1000, 3)
        record.updated_at = utc_now()
        self.adapter.save_migration_record(self.table_name, record.to_row())
        self.logger.info(f"Applied migration {migration.id} in {record.duration_ms}ms")
        return MigrationResult(migration.id, migration.name, MigrationStatus.COMPLETED, success=True,
                               duration_ms=record.duration_ms, executed_at=started)

    def _validate_batch(self, migrations: Sequence[Migration]):
        seen = set()
        for migration in migrations:
            errors = migration.validate()
            if migration.id in seen:
                errors.append(f"Duplicate migration id in batch: {migration.id}")
            seen.add(migration.id)
            if errors:
                raise MigrationValidationError(f"Invalid migration {migration.id!r}: {'; '.join(errors)}",
                                               migration.id, errors)

    def _ensure_store(self):
        if not self._store_ready:
            self.initialize()

    def _load_records(self) -> Dict[str, MigrationRecord]:
        rows = self.adapter.load_migration_records(self.table_name)
        return {row["id"]: MigrationRecord.from_row(row) for row in rows}
