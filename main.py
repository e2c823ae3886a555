import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_service import BillingService
from config import Settings, settings
from database import SessionLocal, engine, init_db, make_engine
from dependencies import (
    check_tenant_scope,
    get_billing_service,
    get_entitlement_resolver,
    get_license_service,
    get_settings,
    require_admin,
    require_tenant,
)
from entitlements import EntitlementResolver
from errors import BillingError, InternalError
from license_service import LicenseService
from models import (
    CameraValidationRequest,
    EnabledGrowthPacksResponse,
    EntitlementCheckRequest,
    EntitlementResult,
    EntitlementUpdateRequest,
    FeatureEntitlement,
    GrowthPackUpdateRequest,
    HealthCheckResponse,
    HeartbeatRequest,
    HeartbeatResult,
    LicenseResult,
    LicenseStatus,
    LicenseValidationRequest,
    RevocationResult,
    StatsResponse,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    SubscriptionView,
    Tenant,
    TenantCreateRequest,
    TenantUpdateRequest,
    UsageBatchRequest,
    UsageBatchResult,
    UsageSummary,
    utcnow,
)
from storage import InMemoryStorage

logger = logging.getLogger("billing")
access_logger = logging.getLogger("billing.access")


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def select_storage(config: Settings) -> Optional[InMemoryStorage]:
    """
    Pick the storage backend. Returns the in-memory store to share across
    requests, or None when requests should use SQL sessions.
    """
    if config.STORAGE_BACKEND == "memory":
        logger.info("Using in-memory storage (STORAGE_BACKEND=memory)")
        return InMemoryStorage()

    try:
        db_engine = engine
        if config.DATABASE_URL != settings.DATABASE_URL:
            db_engine = make_engine(config.DATABASE_URL)
        init_db(bind=db_engine)
    except SQLAlchemyError as e:
        logger.warning("Database unavailable (%s), falling back to in-memory storage", e)
        return InMemoryStorage()

    # SessionLocal is process-wide: the last app started owns it
    SessionLocal.configure(bind=db_engine)
    logger.info("Using SQL storage at %s", db_engine.url.render_as_string(hide_password=True))
    return None


def create_app(config: Settings = settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config)
        app.state.storage = select_storage(config)
        logger.info("%s %s ready", config.APP_NAME, config.APP_VERSION)
        yield
        logger.info("Server stopped")

    app = FastAPI(
        title="BrinkByte Vision Billing Server",
        description="License, subscription and usage metering for camera edge devices",
        version=config.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.storage = None
    app.state.started_at = utcnow()
    app.dependency_overrides[get_settings] = lambda: config

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials="*" not in config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 2)
        access_logger.info("[HTTP] %s %s -> %d in %sms",
                           request.method, request.url.path, response.status_code, duration_ms)
        return response

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if isinstance(exc, InternalError):
            logger.error("[HTTP] %s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    register_routes(app, config)
    return app


def register_routes(app: FastAPI, config: Settings) -> None:
    # License & subscription endpoints
    # Literal paths must be registered before parameterized ones

    @app.get("/api/v1/billing/growth-packs/available")
    def get_available_growth_packs(billing: BillingService = Depends(get_billing_service)):
        return {"packs": billing.available_growth_packs()}

    @app.get("/api/v1/billing/pricing")
    def get_pricing_config(billing: BillingService = Depends(get_billing_service)):
        return billing.pricing_config()

    @app.get("/api/v1/billing/license/{tenant_id}", response_model=LicenseStatus)
    def get_license_status(
        tenant_id: str,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        """
        License status for a tenant.

        Provisions a trial on first contact and returns cameras, pricing,
        days remaining and whether the license can be revoked.
        """
        check_tenant_scope(tenant, tenant_id)
        return service.get_license_status(tenant_id)

    @app.post("/api/v1/billing/license/{tenant_id}/revoke", response_model=RevocationResult)
    def revoke_license(
        tenant_id: str,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        """
        Revert a base license to trial mode.

        The original trial window is preserved. Cameras over the trial limit
        are reported in the response.
        """
        check_tenant_scope(tenant, tenant_id)
        return service.revoke_license(tenant_id)

    @app.get("/api/v1/billing/subscription/{tenant_id}", response_model=SubscriptionView)
    def get_subscription(
        tenant_id: str,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        check_tenant_scope(tenant, tenant_id)
        return service.get_subscription(tenant_id)

    @app.get("/api/v1/billing/growth-packs/{tenant_id}", response_model=EnabledGrowthPacksResponse)
    def get_enabled_growth_packs(
        tenant_id: str,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        check_tenant_scope(tenant, tenant_id)
        return {"enabled_packs": service.get_enabled_growth_packs(tenant_id)}

    @app.get("/api/v1/billing/usage/{tenant_id}", response_model=UsageSummary, response_model_exclude_none=True)
    def get_usage_summary(
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant: Optional[Tenant] = Depends(require_tenant),
        billing: BillingService = Depends(get_billing_service),
    ):
        """Usage totals by event type. Defaults to the last 30 days."""
        check_tenant_scope(tenant, tenant_id)
        return billing.get_usage_summary(tenant_id, start, end)

    @app.post("/api/v1/billing/validate", response_model=LicenseResult)
    def validate_camera_license(
        request: CameraValidationRequest,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        check_tenant_scope(tenant, request.tenant_id)
        return service.resolve_license(request.tenant_id, request.camera_id)

    # Edge device endpoints

    @app.post("/api/v1/licenses/validate", response_model=LicenseResult)
    def validate_license(
        request: LicenseValidationRequest,
        tenant: Optional[Tenant] = Depends(require_tenant),
        service: LicenseService = Depends(get_license_service),
    ):
        """
        Validate a camera license from an edge device.

        New tenants are given a trial. Trial tenants cannot add cameras
        beyond the licensed count.
        """
        check_tenant_scope(tenant, request.tenant_id)
        return service.resolve_license(request.tenant_id, request.camera_id, request.device_id)

    @app.post("/api/v1/entitlements/check", response_model=EntitlementResult)
    def check_entitlement(
        request: EntitlementCheckRequest,
        tenant: Optional[Tenant] = Depends(require_tenant),
        resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    ):
        check_tenant_scope(tenant, request.tenant_id)
        return resolver.check_entitlement(request.tenant_id, request.feature_category, request.feature_name)

    @app.post("/api/v1/usage/batch", response_model=UsageBatchResult)
    def report_usage_batch(
        request: UsageBatchRequest,
        tenant: Optional[Tenant] = Depends(require_tenant),
        billing: BillingService = Depends(get_billing_service),
    ):
        for event in request.events:
            check_tenant_scope(tenant, event.tenant_id)
        return billing.report_usage(request.events)

    @app.post("/api/v1/heartbeat", response_model=HeartbeatResult)
    def heartbeat(
        request: HeartbeatRequest,
        tenant: Optional[Tenant] = Depends(require_tenant),
        billing: BillingService = Depends(get_billing_service),
    ):
        check_tenant_scope(tenant, request.tenant_id)
        return billing.heartbeat(
            request.device_id,
            request.tenant_id,
            request.active_camera_ids,
            request.management_tier,
        )

    # Admin endpoints

    @app.post("/api/v1/admin/tenants", response_model=Tenant, dependencies=[Depends(require_admin)])
    def create_tenant(request: TenantCreateRequest, billing: BillingService = Depends(get_billing_service)):
        return billing.create_tenant(request.name, request.email, request.api_key)

    @app.put("/api/v1/admin/tenants/{tenant_id}", response_model=Tenant, dependencies=[Depends(require_admin)])
    def update_tenant(
        tenant_id: str,
        request: TenantUpdateRequest,
        billing: BillingService = Depends(get_billing_service),
    ):
        return billing.update_tenant(tenant_id, request.name, request.email, request.status)

    @app.get("/api/v1/admin/tenants/{tenant_id}", response_model=Tenant, dependencies=[Depends(require_admin)])
    def get_tenant(tenant_id: str, billing: BillingService = Depends(get_billing_service)):
        return billing.get_tenant(tenant_id)

    @app.post("/api/v1/admin/subscriptions", response_model=Subscription, dependencies=[Depends(require_admin)])
    def create_subscription(
        request: SubscriptionCreateRequest,
        billing: BillingService = Depends(get_billing_service),
    ):
        return billing.create_subscription(
            request.tenant_id, request.plan, request.cameras_licensed, request.billing_cycle
        )

    @app.put(
        "/api/v1/admin/subscriptions/{tenant_id}",
        response_model=Subscription,
        dependencies=[Depends(require_admin)],
    )
    def update_subscription(
        tenant_id: str,
        request: SubscriptionUpdateRequest,
        billing: BillingService = Depends(get_billing_service),
    ):
        return billing.update_subscription(
            tenant_id, request.plan, request.status, request.cameras_licensed, request.billing_cycle
        )

    @app.put(
        "/api/v1/admin/subscriptions/{tenant_id}/growth-packs",
        response_model=EnabledGrowthPacksResponse,
        dependencies=[Depends(require_admin)],
    )
    def manage_growth_packs(
        tenant_id: str,
        request: GrowthPackUpdateRequest,
        billing: BillingService = Depends(get_billing_service),
    ):
        return {"enabled_packs": billing.manage_growth_packs(tenant_id, request.enable, request.disable)}

    @app.put(
        "/api/v1/admin/entitlements/{tenant_id}",
        response_model=FeatureEntitlement,
        dependencies=[Depends(require_admin)],
    )
    def save_entitlement(
        tenant_id: str,
        request: EntitlementUpdateRequest,
        billing: BillingService = Depends(get_billing_service),
    ):
        return billing.save_entitlement(
            tenant_id,
            request.feature_category,
            request.feature_name,
            request.is_enabled,
            request.quota_limit,
            request.quota_used,
            request.valid_until,
        )

    # Health & stats

    @app.get("/health", response_model=HealthCheckResponse)
    def health_check(request: Request, billing: BillingService = Depends(get_billing_service)):
        """
        Health check endpoint for container orchestration.
        """
        try:
            total_events = billing.stats().get("usage_events", 0)
        except BillingError as e:
            logger.warning("Health check could not read stats: %s", e.message)
            total_events = 0

        now = utcnow()
        return {
            "status": "healthy",
            "service": config.APP_NAME,
            "version": config.APP_VERSION,
            "timestamp": now,
            "uptime_seconds": (now - request.app.state.started_at).total_seconds(),
            "total_events": total_events,
        }

    @app.get("/stats", response_model=StatsResponse)
    def get_stats(billing: BillingService = Depends(get_billing_service)):
        stats = billing.stats()
        return {
            "total_events": stats.get("usage_events", 0),
            "tenants": stats.get("tenants", 0),
            "cameras": stats.get("cameras", 0),
            "devices": stats.get("devices", 0),
        }


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
