import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from catalog import Catalog
from config import Settings, settings
from errors import ConflictError, InternalError, InvalidRequestError, NotFoundError, StorageError
from models import (
    CameraLicense,
    CameraSummary,
    GrowthPackAssignment,
    GrowthPackDetail,
    LicenseResult,
    LicenseStatus,
    PricingBreakdown,
    RevocationResult,
    Subscription,
    SubscriptionView,
    Tenant,
    utcnow,
)
from pricing import calculate_pricing, growth_pack_price, mask_license_key
from storage import Storage

logger = logging.getLogger(__name__)

AUTO_TENANT_NAME = "Auto-created Tenant"


def days_until(valid_until: datetime, now: datetime) -> int:
    """Whole days left, floored (negative once expired)."""
    return math.floor((valid_until - now).total_seconds() / 3600 / 24)


def action_message(cameras_to_stop: int) -> str:
    if cameras_to_stop <= 0:
        return ""
    if cameras_to_stop == 1:
        return "Please stop 1 camera to comply with trial limits."
    return f"Please stop {cameras_to_stop} cameras to comply with trial limits."


class LicenseService:
    """
    Resolves license state for a tenant from its subscription, growth packs
    and camera inventory. Holds no state between calls.
    """

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

    @property
    def trial_max_cameras(self) -> int:
        return self.config.TRIAL_MAX_CAMERAS

    def resolve_license(self, tenant_id: str, camera_id: str = "", device_id: str = "") -> LicenseResult:
        """
        Validate a license for a tenant and, optionally, one of its cameras.

        New tenants get a trial subscription on first contact. On a trial,
        a camera beyond the licensed count is rejected unless it has been
        seen before, so existing deployments keep working.
        """
        logger.info("[LICENSE] Validation request: camera=%s, tenant=%s, device=%s",
                    camera_id, tenant_id, device_id)
        now = self.clock()

        sub = self._load_subscription(tenant_id)
        pack_names = self._pack_names(self._enabled_packs(tenant_id))
        over_limit = False

        created = False
        if sub is None:
            logger.info("[LICENSE] No subscription found for tenant %s, creating trial", tenant_id)
            try:
                sub, created = self._provision_trial(tenant_id, now)
            except StorageError as e:
                # Edge devices keep running on a trial if the write is lost
                logger.error("[LICENSE] Failed to create trial for tenant %s: %s", tenant_id, e)
                sub, created = self._new_trial(tenant_id, now), True

        if created:
            result = LicenseResult(
                is_valid=True,
                license_mode="trial",
                enabled_growth_packs=pack_names,
                valid_until=sub.trial_end,
                cameras_allowed=self.trial_max_cameras,
            )
        else:
            is_valid, license_mode, valid_until = self._evaluate(sub, now)
            if sub.plan == "trial" and camera_id and self._exceeds_trial_limit(sub, tenant_id, camera_id):
                logger.warning("[LICENSE] Trial camera limit exceeded for tenant %s", tenant_id)
                is_valid = False
                over_limit = True
            result = LicenseResult(
                is_valid=is_valid,
                license_mode=license_mode,
                enabled_growth_packs=pack_names,
                valid_until=valid_until,
                cameras_allowed=sub.cameras_licensed,
            )

        # A rejected camera must not claim a trial slot by being recorded
        if camera_id and not over_limit:
            self._save_snapshot(tenant_id, camera_id, device_id, result, now)

        logger.info("[LICENSE] Response for camera=%s: valid=%s, mode=%s, packs=%s",
                    camera_id, result.is_valid, result.license_mode, result.enabled_growth_packs)
        return result

    def get_license_status(self, tenant_id: str) -> LicenseStatus:
        """
        Full license projection for dashboards.

        Prefers availability: if a trial cannot be provisioned the tenant is
        reported as unlicensed instead of failing the request.
        """
        logger.info("[LICENSE_STATUS] Request for tenant: %s", tenant_id)
        now = self.clock()

        sub = self._load_subscription(tenant_id)
        cameras = self._cameras(tenant_id)
        packs = self._enabled_packs(tenant_id)

        if sub is None:
            logger.info("[LICENSE_STATUS] No subscription found for tenant %s, auto-creating trial", tenant_id)
            try:
                sub, _ = self._provision_trial(tenant_id, now)
            except StorageError as e:
                logger.error("[LICENSE_STATUS] Failed to create trial subscription: %s", e)
                return LicenseStatus(license_mode="unlicensed", is_valid=False)

        is_valid, license_mode, valid_until = self._evaluate(sub, now)

        days_remaining = None
        trial_started_at = None
        if sub.plan == "trial" and sub.trial_end is not None:
            days_remaining = days_until(valid_until, now)
            trial_started_at = sub.trial_start

        return LicenseStatus(
            license_mode=license_mode,
            is_valid=is_valid,
            active_cameras=len(cameras),
            cameras_allowed=sub.cameras_licensed,
            days_remaining=days_remaining,
            valid_until=valid_until,
            trial_started_at=trial_started_at,
            enabled_growth_packs=self._pack_names(packs),
            cameras=[
                CameraSummary(
                    camera_id=cam.camera_id,
                    tenant_id=cam.tenant_id,
                    mode=cam.license_mode,
                    is_valid=cam.is_valid,
                    enabled_growth_packs=cam.enabled_growth_packs,
                    valid_until=cam.valid_until,
                    created_at=cam.created_at,
                )
                for cam in cameras
            ],
            pricing=self.calculate_pricing(len(cameras), packs),
            license_key=mask_license_key(tenant_id),
            can_revoke=license_mode == "base",
            trial_max_cameras=self.trial_max_cameras,
        )

    def revoke_license(self, tenant_id: str) -> RevocationResult:
        """
        Downgrade a paid subscription back to trial terms.

        The original trial window is kept: revoking never restarts the trial
        clock. Cameras above the trial limit are reported, not stopped.
        """
        logger.info("[REVOKE] License revocation request for tenant: %s", tenant_id)
        now = self.clock()

        sub = self._load_subscription(tenant_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        if sub.plan == "trial":
            raise InvalidRequestError("Cannot revoke a trial license")

        try:
            current_cameras = self.storage.count_cameras_by_tenant(tenant_id)
        except StorageError as e:
            logger.error("[REVOKE] Failed to count cameras: %s", e)
            raise InternalError("Failed to revoke license") from e
        cameras_to_stop = max(0, current_cameras - self.trial_max_cameras)

        logger.info("[REVOKE] Current cameras: %d, Trial limit: %d, Cameras to stop: %d",
                    current_cameras, self.trial_max_cameras, cameras_to_stop)

        sub.plan = "trial"
        sub.status = "active"
        sub.cameras_licensed = self.trial_max_cameras

        if sub.trial_start is None and sub.trial_end is None:
            sub.trial_start = now
            sub.trial_end = now + timedelta(days=self.config.TRIAL_DURATION_DAYS)
        elif sub.trial_end is None:
            sub.trial_end = sub.trial_start + timedelta(days=self.config.TRIAL_DURATION_DAYS)

        if now > sub.trial_end:
            sub.status = "expired"

        sub.subscription_start = None
        sub.subscription_end = None

        try:
            self.storage.update_subscription(sub)
        except StorageError as e:
            logger.error("[REVOKE] Failed to update subscription: %s", e)
            raise InternalError("Failed to revoke license") from e

        for pack in self._enabled_packs(tenant_id):
            try:
                self.storage.disable_growth_pack(tenant_id, pack.pack_name)
            except StorageError as e:
                logger.warning("[REVOKE] Failed to disable pack %s for tenant %s: %s",
                               pack.pack_name, tenant_id, e)

        days_remaining = max(0, days_until(sub.trial_end, now))

        logger.info("[REVOKE] License revoked for tenant %s, reverted to trial (%d days remaining), "
                    "%d cameras need to be stopped", tenant_id, days_remaining, cameras_to_stop)

        return RevocationResult(
            success=True,
            message="License revoked. Reverted to trial mode.",
            plan=sub.plan,
            status=sub.status,
            days_remaining=days_remaining,
            trial_expired=sub.status == "expired",
            cameras_allowed=self.trial_max_cameras,
            current_cameras=current_cameras,
            cameras_over_limit=cameras_to_stop,
            action_required=cameras_to_stop > 0,
            action_message=action_message(cameras_to_stop),
        )

    def get_subscription(self, tenant_id: str) -> SubscriptionView:
        logger.info("[SUBSCRIPTION] Request for tenant: %s", tenant_id)
        now = self.clock()

        sub = self._load_subscription(tenant_id)
        if sub is None:
            raise NotFoundError("Subscription not found")

        packs = self._enabled_packs(tenant_id)
        pricing = self.calculate_pricing(sub.cameras_licensed, packs)

        next_billing_date = sub.subscription_end
        if next_billing_date is None and sub.plan != "trial":
            next_billing_date = now + timedelta(days=30)

        return SubscriptionView(
            subscription_id=sub.id,
            tenant_id=sub.tenant_id,
            plan=sub.plan,
            status=sub.status,
            cameras_licensed=sub.cameras_licensed,
            growth_packs=[
                GrowthPackDetail(
                    pack_name=pack.pack_name,
                    enabled_at=pack.enabled_at,
                    price_monthly=growth_pack_price(pack, self.catalog),
                )
                for pack in packs
            ],
            billing_cycle=sub.billing_cycle,
            next_billing_date=next_billing_date,
            total_monthly_cost=pricing.total_monthly,
        )

    def get_enabled_growth_packs(self, tenant_id: str) -> List[str]:
        try:
            packs = self.storage.get_enabled_growth_packs(tenant_id)
        except StorageError as e:
            raise InternalError("Failed to get growth packs") from e
        return self._pack_names(packs)

    def calculate_pricing(self, camera_count: int, packs: List[GrowthPackAssignment]) -> PricingBreakdown:
        return calculate_pricing(
            camera_count,
            packs,
            self.catalog,
            per_camera_rate=self.config.BASE_PER_CAMERA_RATE,
            currency=self.config.CURRENCY,
        )

    def _load_subscription(self, tenant_id: str) -> Optional[Subscription]:
        try:
            return self.storage.get_subscription(tenant_id)
        except StorageError as e:
            logger.error("[LICENSE] Error getting subscription for tenant %s: %s", tenant_id, e)
            raise InternalError("Failed to get subscription") from e

    def _enabled_packs(self, tenant_id: str) -> List[GrowthPackAssignment]:
        try:
            return self.storage.get_enabled_growth_packs(tenant_id)
        except StorageError as e:
            logger.warning("[LICENSE] Error getting growth packs for tenant %s: %s", tenant_id, e)
            return []

    @staticmethod
    def _pack_names(packs: List[GrowthPackAssignment]) -> List[str]:
        names: List[str] = []
        for pack in packs:
            if pack.pack_name not in names:
                names.append(pack.pack_name)
        return names

    def _cameras(self, tenant_id: str) -> List[CameraLicense]:
        try:
            return self.storage.get_cameras_by_tenant(tenant_id)
        except StorageError as e:
            logger.warning("[LICENSE] Error getting cameras for tenant %s: %s", tenant_id, e)
            return []

    def _evaluate(self, sub: Subscription, now: datetime) -> Tuple[bool, str, datetime]:
        """Validity, mode and expiry of a subscription at `now`."""
        is_valid = sub.status == "active"
        license_mode = sub.plan

        if sub.plan == "trial" and sub.trial_end is not None:
            valid_until = sub.trial_end
        elif sub.plan != "trial" and sub.subscription_end is not None:
            valid_until = sub.subscription_end
        else:
            valid_until = now + timedelta(days=365)

        if now > valid_until:
            is_valid = False
            license_mode = "expired"
        return is_valid, license_mode, valid_until

    def _exceeds_trial_limit(self, sub: Subscription, tenant_id: str, camera_id: str) -> bool:
        try:
            camera_count = self.storage.count_cameras_by_tenant(tenant_id)
            if camera_count < sub.cameras_licensed:
                return False
            return self.storage.get_camera_license(camera_id, tenant_id) is None
        except StorageError as e:
            logger.warning("[LICENSE] Camera limit check skipped for tenant %s: %s", tenant_id, e)
            return False

    def _new_trial(self, tenant_id: str, now: datetime) -> Subscription:
        return Subscription(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            plan="trial",
            status="active",
            cameras_licensed=self.trial_max_cameras,
            trial_start=now,
            trial_end=now + timedelta(days=self.config.TRIAL_DURATION_DAYS),
            billing_cycle="monthly",
            created_at=now,
            updated_at=now,
        )

    def _ensure_tenant(self, tenant_id: str, now: datetime) -> None:
        try:
            if self.storage.get_tenant(tenant_id) is not None:
                return
            self.storage.create_tenant(Tenant(
                id=tenant_id,
                name=AUTO_TENANT_NAME,
                status="active",
                created_at=now,
                updated_at=now,
            ))
        except ConflictError:
            pass
        except StorageError as e:
            # Subscription creation may still succeed
            logger.warning("[LICENSE] Failed to create tenant %s: %s", tenant_id, e)

    def _provision_trial(self, tenant_id: str, now: datetime) -> Tuple[Subscription, bool]:
        """
        Create a trial subscription for a first-contact tenant.

        Returns the subscription and whether this call created it. When a
        concurrent request won the race, the stored subscription is re-read
        and returned instead.
        """
        self._ensure_tenant(tenant_id, now)
        sub = self._new_trial(tenant_id, now)
        try:
            self.storage.create_subscription(sub)
        except ConflictError:
            logger.info("[LICENSE] Trial for tenant %s created concurrently, re-reading", tenant_id)
            existing = self.storage.get_subscription(tenant_id)
            if existing is None:
                raise StorageError(f"subscription for tenant {tenant_id} vanished after conflict")
            return existing, False
        logger.info("[LICENSE] Auto-created trial subscription for tenant %s", tenant_id)
        return sub, True

    def _save_snapshot(self, tenant_id: str, camera_id: str, device_id: str,
                       result: LicenseResult, now: datetime) -> None:
        snapshot = CameraLicense(
            id=str(uuid.uuid4()),
            camera_id=camera_id,
            tenant_id=tenant_id,
            device_id=device_id or None,
            license_mode=result.license_mode,
            is_valid=result.is_valid,
            valid_until=result.valid_until,
            enabled_growth_packs=list(result.enabled_growth_packs),
            last_validated=now,
            created_at=now,
            updated_at=now,
        )
        try:
            self.storage.save_camera_license(snapshot)
        except StorageError as e:
            logger.warning("[LICENSE] Failed to save camera license %s: %s", camera_id, e)
