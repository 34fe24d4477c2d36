"""
Audit logger writing append-only entries through a storage adapter.
"""

import json
import logging
from typing import Any, Dict, Optional

from ..context import TenantContext
from .base_adapter import StorageAdapter
from .exceptions import TenantDataError
from .models import AuditAction, AuditLogEntry


class AuditLogger:
    """
    Writes ``AuditLogEntry`` objects to the audit collection of the entry's
    tenant. Audit writes are a side effect: when the backend rejects an entry,
    ``record`` logs the failure and returns False instead of raising.
    """

    def __init__(self, adapter: StorageAdapter, collection: str = "audit_logs"):
        self.adapter = adapter
        self.collection = collection
        self.logger = logging.getLogger(__name__)

    def record(self, entry: AuditLogEntry) -> bool:
        try:
            self.adapter.create(self.collection, self._to_payload(entry), TenantContext.system(entry.tenant_id))
            return True
        except TenantDataError as e:
            self.logger.warning(f"Failed to write audit entry {entry.action.value} {entry.resource_type}"
                                f"/{entry.resource_id} for tenant {entry.tenant_id}: {e}")
            return False

    def log(self,
            ctx: TenantContext,
            action: AuditAction,
            resource_type: str,
            resource_id: Optional[str] = None,
            old_values: Optional[Dict[str, Any]] = None,
            new_values: Optional[Dict[str, Any]] = None) -> bool:
        """Build an entry for ``ctx`` and record it."""
        return self.record(AuditLogEntry(
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=old_values,
            new_values=new_values
        ))

    def _to_payload(self, entry: AuditLogEntry) -> Dict[str, Any]:
        return {
            "user_id": entry.user_id,
            "action": entry.action.value,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "old_values": self._encode(entry.old_values),
            "new_values": self._encode(entry.new_values)
        }

    def _encode(self, values: Optional[Dict[str, Any]]) -> Optional[str]:
        if values is None:
            return None
        return json.dumps(values, default=str, sort_keys=True)
