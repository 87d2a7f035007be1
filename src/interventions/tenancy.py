"""Tenant identifier validation shared by every tenant-scoped entry point."""

import re

from .errors import InvalidTenantError

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_tenant_id(tenant_id: str | None) -> str:
    """Return the tenant id unchanged, or raise InvalidTenantError."""
    if not tenant_id or not isinstance(tenant_id, str):
        raise InvalidTenantError("Tenant id is required")
    if not TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidTenantError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id
