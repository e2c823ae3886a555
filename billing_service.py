import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from catalog import Catalog
from config import Settings, settings
from errors import InternalError, InvalidRequestError, NotFoundError, StorageError
from models import (
    EdgeDevice,
    FeatureEntitlement,
    GrowthPackAssignment,
    HeartbeatResult,
    Subscription,
    Tenant,
    UsageBatchResult,
    UsageEvent,
    UsageEventIn,
    UsageSummary,
    utcnow,
)
from storage import Storage

logger = logging.getLogger(__name__)

PLANS = ("trial", "base", "enterprise")
TENANT_STATUSES = ("active", "suspended", "cancelled")
MANAGEMENT_TIERS = ("basic", "managed")

# event_type -> (summary field, integer count)
_SUMMARY_FIELDS = {
    "api_call": ("api_calls", True),
    "llm_tokens": ("llm_tokens_used", True),
    "storage_gb_days": ("storage_gb_days", False),
    "sms_sent": ("sms_sent", True),
    "agent_execution": ("agent_executions", True),
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Query strings may carry naive timestamps; treat them as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BillingService:
    """Usage metering, device heartbeats and tenant/subscription administration."""

    def __init__(
        self,
        storage: Storage,
        catalog: Catalog,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.catalog = catalog
        self.config = config
        self.clock = clock

    # Usage

    def report_usage(self, events: List[UsageEventIn]) -> UsageBatchResult:
        """
        Append a batch of usage events in input order.
        Malformed events are rejected individually; a storage failure rejects
        the whole batch.
        """
        logger.info("[USAGE] Batch received: %d events", len(events))
        now = self.clock()

        accepted: List[UsageEvent] = []
        errors: List[str] = []
        for index, event in enumerate(events):
            if not event.tenant_id or not event.event_type:
                errors.append(f"event {index}: tenant_id and event_type are required")
                continue
            accepted.append(UsageEvent(
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                resource_id=event.resource_id,
                quantity=event.quantity,
                unit=event.unit,
                event_time=event.event_time or now,
                metadata=event.metadata or {},
            ))
            logger.debug("[USAGE]   - %s: %s = %.2f %s (tenant=%s)",
                         event.event_type, event.resource_id, event.quantity, event.unit, event.tenant_id)

        if accepted:
            try:
                self.storage.save_usage_events(accepted)
            except StorageError as e:
                logger.error("[USAGE] Error saving events: %s", e)
                return UsageBatchResult(
                    accepted_count=0,
                    rejected_count=len(events),
                    errors=["Failed to save usage events"],
                )

        return UsageBatchResult(
            accepted_count=len(accepted),
            rejected_count=len(errors),
            errors=errors,
        )

    def get_usage_summary(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageSummary:
        logger.info("[USAGE_SUMMARY] Request for tenant: %s", tenant_id)
        now = self.clock()
        end = _as_utc(end) or now
        start = _as_utc(start) or end - timedelta(days=30)
        if start > end:
            raise InvalidRequestError("start must not be after end")

        try:
            totals = self.storage.get_usage_summary(tenant_id, start, end)
        except StorageError as e:
            raise InternalError("Failed to get usage summary") from e

        fields: Dict[str, Any] = {}
        for event_type, (field, as_int) in _SUMMARY_FIELDS.items():
            if event_type in totals:
                fields[field] = int(totals[event_type]) if as_int else totals[event_type]

        return UsageSummary(
            tenant_id=tenant_id,
            period_start=start,
            period_end=end,
            totals=totals,
            **fields,
        )

    # Edge devices

    def heartbeat(
        self,
        device_id: str,
        tenant_id: str,
        active_camera_ids: List[str],
        management_tier: str = "basic",
    ) -> HeartbeatResult:
        if not device_id or not tenant_id:
            raise InvalidRequestError("device_id and tenant_id are required")
        management_tier = management_tier or "basic"
        if management_tier not in MANAGEMENT_TIERS:
            raise InvalidRequestError(f"Unknown management tier: {management_tier}")

        logger.info("[HEARTBEAT] Device: %s, tenant=%s, cameras=%d, tier=%s",
                    device_id, tenant_id, len(active_camera_ids), management_tier)
        now = self.clock()
        device = EdgeDevice(
            id=str(uuid.uuid4()),
            device_id=device_id,
            tenant_id=tenant_id,
            status="active",
            management_tier=management_tier,
            last_heartbeat=now,
            active_camera_count=len(set(active_camera_ids)),
            created_at=now,
            updated_at=now,
        )
        try:
            self.storage.save_edge_device(device)
        except StorageError as e:
            logger.warning("[HEARTBEAT] Failed to save device %s: %s", device_id, e)

        return HeartbeatResult(
            status="ok",
            next_heartbeat_in_seconds=self.config.HEARTBEAT_INTERVAL_SECONDS,
        )

    # Tenants

    def create_tenant(self, name: str, email: Optional[str] = None, api_key: Optional[str] = None) -> Tenant:
        if not name:
            raise InvalidRequestError("name is required")
        now = self.clock()
        tenant = Tenant(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            api_key=api_key or "bb_" + str(uuid.uuid4())[:20],
            status="active",
            created_at=now,
            updated_at=now,
        )
        try:
            self.storage.create_tenant(tenant)
        except StorageError as e:
            raise InternalError("Failed to create tenant") from e

        logger.info("[ADMIN] Created tenant: %s (%s)", tenant.id, tenant.name)
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        try:
            tenant = self.storage.get_tenant(tenant_id)
        except StorageError as e:
            raise InternalError("Failed to get tenant") from e
        if tenant is None:
            raise NotFoundError("Tenant not found")
        return tenant

    def update_tenant(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        if status is not None and status not in TENANT_STATUSES:
            raise InvalidRequestError(f"Unknown tenant status: {status}")

        if name is not None:
            tenant.name = name
        if email is not None:
            tenant.email = email
        if status is not None:
            tenant.status = status
        tenant.updated_at = self.clock()

        try:
            self.storage.update_tenant(tenant)
        except StorageError as e:
            raise InternalError("Failed to update tenant") from e

        logger.info("[ADMIN] Updated tenant: %s", tenant_id)
        return tenant

    # Subscriptions

    def create_subscription(
        self,
        tenant_id: str,
        plan: str = "trial",
        cameras_licensed: int = 0,
        billing_cycle: str = "",
    ) -> Subscription:
        if plan not in PLANS:
            raise InvalidRequestError(f"Unknown plan: {plan}")
        if cameras_licensed < 0:
            raise InvalidRequestError("cameras_licensed must not be negative")
        self.get_tenant(tenant_id)

        now = self.clock()
        sub = Subscription(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            plan=plan,
            status="active",
            billing_cycle=billing_cycle or "monthly",
            created_at=now,
            updated_at=now,
        )
        if plan == "trial":
            sub.trial_start = now
            sub.trial_end = now + timedelta(days=self.config.TRIAL_DURATION_DAYS)
            sub.cameras_licensed = cameras_licensed or self.config.TRIAL_MAX_CAMERAS
        else:
            sub.subscription_start = now
            sub.subscription_end = now + timedelta(days=365)
            sub.cameras_licensed = cameras_licensed or self.config.DEFAULT_PAID_CAMERAS

        # ConflictError propagates: one subscription per tenant
        try:
            self.storage.create_subscription(sub)
        except StorageError as e:
            raise InternalError("Failed to create subscription") from e

        logger.info("[ADMIN] Created subscription: %s for tenant %s (plan=%s)", sub.id, tenant_id, plan)
        return sub

    def update_subscription(
        self,
        tenant_id: str,
        plan: Optional[str] = None,
        status: Optional[str] = None,
        cameras_licensed: Optional[int] = None,
        billing_cycle: Optional[str] = None,
    ) -> Subscription:
        """
        Update a tenant's subscription. Moving to a paid plan starts a
        one-year term when none is set; trial dates are kept for history.
        """
        try:
            sub = self.storage.get_subscription(tenant_id)
        except StorageError as e:
            raise InternalError("Failed to get subscription") from e
        if sub is None:
            raise NotFoundError("Subscription not found")

        now = self.clock()
        if plan is not None:
            if plan not in PLANS:
                raise InvalidRequestError(f"Unknown plan: {plan}")
            sub.plan = plan
            if plan == "trial":
                if sub.trial_start is None:
                    sub.trial_start = now
                    sub.trial_end = now + timedelta(days=self.config.TRIAL_DURATION_DAYS)
            elif sub.subscription_end is None:
                sub.subscription_start = now
                sub.subscription_end = now + timedelta(days=365)
        if status is not None:
            sub.status = status
        if cameras_licensed is not None:
            if cameras_licensed < 0:
                raise InvalidRequestError("cameras_licensed must not be negative")
            sub.cameras_licensed = cameras_licensed
        if billing_cycle is not None:
            sub.billing_cycle = billing_cycle
        sub.updated_at = now

        try:
            self.storage.update_subscription(sub)
        except StorageError as e:
            raise InternalError("Failed to update subscription") from e

        logger.info("[ADMIN] Updated subscription for tenant %s (plan=%s, status=%s)",
                    tenant_id, sub.plan, sub.status)
        return sub

    def manage_growth_packs(self, tenant_id: str, enable: List[str], disable: List[str]) -> List[str]:
        """Enable/disable growth packs for a tenant and return the enabled pack names."""
        logger.info("[ADMIN] Managing growth packs for tenant %s: enable=%s, disable=%s",
                    tenant_id, enable, disable)
        unknown = [name for name in enable if self.catalog.get_pack(name) is None]
        if unknown:
            raise InvalidRequestError(f"Unknown growth packs: {', '.join(unknown)}")

        try:
            sub = self.storage.get_subscription(tenant_id)
        except StorageError as e:
            raise InternalError("Failed to get subscription") from e

        for pack_name in disable:
            try:
                self.storage.disable_growth_pack(tenant_id, pack_name)
            except StorageError as e:
                logger.warning("[ADMIN] Error disabling pack %s: %s", pack_name, e)

        now = self.clock()
        for pack_name in enable:
            assignment = GrowthPackAssignment(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                subscription_id=sub.id if sub else None,
                pack_name=pack_name,
                enabled=True,
                enabled_at=now,
                price_monthly=self.catalog.pack_price(pack_name),
            )
            try:
                self.storage.enable_growth_pack(assignment)
            except StorageError as e:
                logger.warning("[ADMIN] Error enabling pack %s: %s", pack_name, e)

        try:
            packs = self.storage.get_enabled_growth_packs(tenant_id)
        except StorageError as e:
            raise InternalError("Failed to get growth packs") from e
        return [p.pack_name for p in packs]

    def save_entitlement(
        self,
        tenant_id: str,
        category: str,
        feature: str,
        is_enabled: bool = True,
        quota_limit: int = -1,
        quota_used: int = 0,
        valid_until: Optional[datetime] = None,
    ) -> FeatureEntitlement:
        """Store a per-feature override beyond base and growth-pack features."""
        if not category or not feature:
            raise InvalidRequestError("feature_category and feature_name are required")

        now = self.clock()
        ent = FeatureEntitlement(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            feature_category=category,
            feature_name=feature,
            is_enabled=is_enabled,
            quota_limit=quota_limit,
            quota_used=quota_used,
            valid_until=valid_until,
            created_at=now,
            updated_at=now,
        )
        try:
            self.storage.save_entitlement(ent)
        except StorageError as e:
            raise InternalError("Failed to save entitlement") from e

        logger.info("[ADMIN] Saved entitlement %s/%s for tenant %s (enabled=%s, quota=%d)",
                    category, feature, tenant_id, is_enabled, quota_limit)
        return ent

    # Catalog

    def available_growth_packs(self) -> List[Dict[str, Any]]:
        return [
            {
                "pack_id": pack.pack_id,
                "pack_name": pack.pack_name,
                "description": pack.description,
                "category": pack.category,
                "price_monthly": pack.price_monthly,
                "features": list(pack.features),
            }
            for pack in self.catalog.growth_packs
        ]

    def pricing_config(self) -> Dict[str, Any]:
        return {
            "base_license": {
                "per_camera_monthly": self.config.BASE_PER_CAMERA_RATE,
                "description": "Base license per camera per month",
            },
            "growth_packs": [
                {
                    "pack_id": pack.pack_id,
                    "pack_name": pack.pack_name,
                    "category": pack.category,
                    "price_monthly": pack.price_monthly,
                    "description": pack.description,
                }
                for pack in self.catalog.growth_packs
            ],
            "currency": self.config.CURRENCY,
        }

    # Statistics

    def stats(self) -> Dict[str, int]:
        try:
            return self.storage.get_stats()
        except StorageError as e:
            raise InternalError("Failed to get stats") from e
