from typing import Optional
from fastapi import Header


def get_tenant_slug(
    x_tenant_slug: Optional[str] = Header(default=None, alias="X-Tenant-Slug")
) -> Optional[str]:
    """
    FastAPI dependency that extracts the tenant slug from the request.

    Custom fields and all persisted column customisation are tenant-scoped.
    When no tenant is sent the caller gets the global fallback keys and no
    custom fields.

    Args:
        x_tenant_slug: Value of the X-Tenant-Slug header

    Returns:
        Tenant slug or None
    """
    if x_tenant_slug is None:
        return None
    slug = x_tenant_slug.strip()
    return slug or None
