"""
Tenant resolution.

The platform runs two storefronts, `eur` and `km`, each with its own
currency and price column. A request's tenant is taken from the
`X-Tenant` header, then the `tenant` query parameter, and finally the
user's own tenant. Regular users may only act inside their own tenant;
admins may act in any.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request

import config
from security import get_current_user, is_admin

logger = logging.getLogger(__name__)

CURRENCIES = {"eur": "EUR", "km": "KM"}


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    currency: str
    is_admin: bool = False


def tenant_from_request(request: Request) -> Optional[str]:
    requested = request.headers.get("X-Tenant") or request.query_params.get("tenant")
    if requested:
        requested = requested.lower()
        if requested not in CURRENCIES:
            raise HTTPException(status_code=400, detail=f"Unknown tenant '{requested}'")
    return requested


def resolve_tenant(user: dict, requested: Optional[str]) -> TenantContext:
    user_tenant = user.get("tenant_id") or config.DEFAULT_TENANT
    if is_admin(user):
        tenant_id = requested or user_tenant
        return TenantContext(tenant_id, CURRENCIES[tenant_id], is_admin=True)

    if requested and requested != user_tenant:
        logger.warning(
            "User %s (tenant %s) tried to access tenant %s",
            user.get("username"), user_tenant, requested,
        )
        raise HTTPException(
            status_code=403,
            detail="Access denied. You do not have permission to access this tenant.",
        )
    return TenantContext(user_tenant, CURRENCIES[user_tenant])


def get_tenant(request: Request, current_user: dict = Depends(get_current_user)) -> TenantContext:
    return resolve_tenant(current_user, tenant_from_request(request))
