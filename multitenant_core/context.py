"""
Tenant context threaded through every data operation.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional


_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_tenant_id(tenant_id: Any) -> str:
    """Return ``tenant_id`` if it is a well-formed tenant identifier, else raise ValueError."""
    if not isinstance(tenant_id, str) or not _TENANT_ID_PATTERN.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: {tenant_id!r}")
    return tenant_id


class Role(Enum):
    """Roles a user can hold inside a tenant."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"
    SYSTEM = "system"


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable identity of the caller of a data operation.

    The tenant_id carried here is the only value adapters and caches use to
    scope reads, writes and cache keys. Contexts are built once per request
    and never persisted.
    """
    tenant_id: str
    user_id: str
    role: Role = Role.MEMBER
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        validate_tenant_id(self.tenant_id)
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise ValueError("user_id is required")
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not isinstance(self.permissions, frozenset):
            object.__setattr__(self, "permissions", frozenset(self.permissions))

    @classmethod
    def create(cls,
               tenant_id: str,
               user_id: str,
               role: Any = Role.MEMBER,
               permissions: Optional[Iterable[str]] = None) -> "TenantContext":
        """Build a context from loosely typed values (e.g. a decoded token)."""
        return cls(
            tenant_id=str(tenant_id),
            user_id=str(user_id),
            role=role if isinstance(role, Role) else Role(str(role).lower()),
            permissions=frozenset(permissions or ())
        )

    @classmethod
    def system(cls, tenant_id: str) -> "TenantContext":
        """Context used for internal writes (audit entries, migrations) on behalf of a tenant."""
        return cls(tenant_id=tenant_id, user_id="system", role=Role.SYSTEM)

    def has_permission(self, permission: str) -> bool:
        """Check if context has a specific permission."""
        return permission in self.permissions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "permissions": sorted(self.permissions)
        }
