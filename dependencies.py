"""
FastAPI dependencies: storage selection, service construction and
API-key authentication.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from billing_service import BillingService
from catalog import Catalog, default_catalog
from config import Settings, settings
from database import get_db
from entitlements import EntitlementResolver
from errors import StorageError
from license_service import LicenseService
from models import Tenant
from storage import SQLStorage, Storage

logger = logging.getLogger(__name__)

_catalog = default_catalog()


def get_settings() -> Settings:
    return settings


def get_catalog() -> Catalog:
    return _catalog


def get_storage(request: Request, db: Session = Depends(get_db)) -> Storage:
    """
    Shared in-memory store when the app runs without a database,
    otherwise a SQL store bound to the request's session.
    """
    store = getattr(request.app.state, "storage", None)
    if store is not None:
        return store
    return SQLStorage(db)


def get_license_service(
    storage: Storage = Depends(get_storage),
    catalog: Catalog = Depends(get_catalog),
    config: Settings = Depends(get_settings),
) -> LicenseService:
    return LicenseService(storage, catalog, config)


def get_entitlement_resolver(
    storage: Storage = Depends(get_storage),
    catalog: Catalog = Depends(get_catalog),
) -> EntitlementResolver:
    return EntitlementResolver(storage, catalog)


def get_billing_service(
    storage: Storage = Depends(get_storage),
    catalog: Catalog = Depends(get_catalog),
    config: Settings = Depends(get_settings),
) -> BillingService:
    return BillingService(storage, catalog, config)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")

    token = parts[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Empty API key")
    return token


def require_tenant(
    request: Request,
    authorization: Optional[str] = Header(None),
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings),
) -> Optional[Tenant]:
    """
    Resolve the calling tenant from its API key when REQUIRE_AUTH is on.
    Returns None when authentication is disabled.
    """
    if not config.REQUIRE_AUTH:
        return None

    api_key = _bearer_token(authorization)
    try:
        tenant = storage.get_tenant_by_api_key(api_key)
    except StorageError as e:
        logger.error("[AUTH] Error looking up API key: %s", e)
        raise HTTPException(status_code=500, detail="Authentication error")

    if tenant is None:
        logger.warning("[AUTH] Invalid API key: %s...", api_key[:10])
        raise HTTPException(status_code=401, detail="Invalid API key")

    if tenant.status != "active":
        logger.warning("[AUTH] Tenant %s is not active (status: %s)", tenant.id, tenant.status)
        raise HTTPException(status_code=403, detail="Tenant account is not active")

    request.state.tenant_id = tenant.id
    logger.debug("[AUTH] Authenticated tenant: %s (%s)", tenant.id, tenant.name)
    return tenant


def check_tenant_scope(tenant: Optional[Tenant], tenant_id: str) -> None:
    """Authenticated callers may only act on their own tenant."""
    if tenant is not None and tenant.id != tenant_id:
        raise HTTPException(status_code=403, detail="API key does not grant access to this tenant")


def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
) -> None:
    if not config.REQUIRE_ADMIN_AUTH:
        return

    if not config.ADMIN_API_KEY:
        logger.warning("[ADMIN_AUTH] ADMIN_API_KEY not set, allowing unauthenticated access")
        return

    if _bearer_token(authorization) != config.ADMIN_API_KEY:
        logger.warning("[ADMIN_AUTH] Invalid admin API key attempt")
        raise HTTPException(status_code=401, detail="Invalid admin API key")

    logger.info("[ADMIN_AUTH] Admin access granted for %s %s", request.method, request.url.path)
