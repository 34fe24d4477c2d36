"""
Naming for per-tenant views.
"""

import hashlib


def tenant_view_name(collection: str, tenant_id: str) -> str:
    """
    Deterministic view name for ``collection`` scoped to ``tenant_id``.

    Tenant ids may contain characters that are not valid in identifiers, so
    the name embeds a digest instead. The result fits MySQL's 64 and
    PostgreSQL's 63 character identifier limits.
    """
    digest = hashlib.sha1(tenant_id.encode("utf-8")).hexdigest()[:12]
    return f"{collection[:40]}_tenant_{digest}"
