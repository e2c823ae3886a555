"""
Storage port for the billing core.

Services depend on the abstract `Storage` only. Lookups return None for
"not found"; backend failures raise StorageError; creating a second
subscription for a tenant raises ConflictError.
"""

import abc
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import (
    CameraLicenseRow,
    EdgeDeviceRow,
    FeatureEntitlementRow,
    GrowthPackAssignmentRow,
    SubscriptionRow,
    TenantRow,
    UsageEventRow,
)
from errors import ConflictError, StorageError
from models import (
    CameraLicense,
    EdgeDevice,
    FeatureEntitlement,
    GrowthPackAssignment,
    Subscription,
    Tenant,
    UsageEvent,
    utcnow,
)

logger = logging.getLogger(__name__)


class Storage(abc.ABC):
    # Tenants
    @abc.abstractmethod
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    @abc.abstractmethod
    def get_tenant_by_api_key(self, api_key: str) -> Optional[Tenant]: ...

    @abc.abstractmethod
    def create_tenant(self, tenant: Tenant) -> None: ...

    @abc.abstractmethod
    def update_tenant(self, tenant: Tenant) -> None: ...

    # Subscriptions
    @abc.abstractmethod
    def get_subscription(self, tenant_id: str) -> Optional[Subscription]: ...

    @abc.abstractmethod
    def create_subscription(self, sub: Subscription) -> None: ...

    @abc.abstractmethod
    def update_subscription(self, sub: Subscription) -> None: ...

    # Growth packs
    @abc.abstractmethod
    def get_enabled_growth_packs(self, tenant_id: str) -> List[GrowthPackAssignment]: ...

    @abc.abstractmethod
    def enable_growth_pack(self, assignment: GrowthPackAssignment) -> None: ...

    @abc.abstractmethod
    def disable_growth_pack(self, tenant_id: str, pack_name: str) -> None: ...

    # Camera licenses
    @abc.abstractmethod
    def get_camera_license(self, camera_id: str, tenant_id: str) -> Optional[CameraLicense]: ...

    @abc.abstractmethod
    def save_camera_license(self, license: CameraLicense) -> None: ...

    @abc.abstractmethod
    def get_cameras_by_tenant(self, tenant_id: str) -> List[CameraLicense]: ...

    @abc.abstractmethod
    def count_cameras_by_tenant(self, tenant_id: str) -> int: ...

    # Entitlements
    @abc.abstractmethod
    def get_entitlement(self, tenant_id: str, category: str, feature: str) -> Optional[FeatureEntitlement]: ...

    @abc.abstractmethod
    def save_entitlement(self, ent: FeatureEntitlement) -> None: ...

    # Usage
    @abc.abstractmethod
    def save_usage_events(self, events: List[UsageEvent]) -> None: ...

    @abc.abstractmethod
    def get_usage_summary(self, tenant_id: str, start: datetime, end: datetime) -> Dict[str, float]: ...

    # Edge devices
    @abc.abstractmethod
    def save_edge_device(self, device: EdgeDevice) -> None: ...

    @abc.abstractmethod
    def get_edge_device(self, device_id: str) -> Optional[EdgeDevice]: ...

    # Statistics
    @abc.abstractmethod
    def get_stats(self) -> Dict[str, int]: ...


class InMemoryStorage(Storage):
    """
    Thread-safe volatile storage for development and tests.
    Records are copied in and out so callers never share state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tenants: Dict[str, Tenant] = {}
        self._subscriptions: Dict[str, Subscription] = {}  # by tenant_id
        self._growth_packs: Dict[str, List[GrowthPackAssignment]] = {}  # by tenant_id
        self._cameras: Dict[tuple, CameraLicense] = {}  # by (tenant_id, camera_id)
        self._entitlements: Dict[tuple, FeatureEntitlement] = {}
        self._usage_events: List[UsageEvent] = []
        self._devices: Dict[str, EdgeDevice] = {}

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True) if record is not None else None

    def get_tenant(self, tenant_id):
        with self._lock:
            return self._copy(self._tenants.get(tenant_id))

    def get_tenant_by_api_key(self, api_key):
        with self._lock:
            for tenant in self._tenants.values():
                if tenant.api_key is not None and tenant.api_key == api_key:
                    return self._copy(tenant)
        return None

    def create_tenant(self, tenant):
        with self._lock:
            if tenant.id in self._tenants:
                raise ConflictError(f"Tenant {tenant.id} already exists")
            self._tenants[tenant.id] = self._copy(tenant)

    def update_tenant(self, tenant):
        with self._lock:
            self._tenants[tenant.id] = self._copy(tenant)

    def get_subscription(self, tenant_id):
        with self._lock:
            return self._copy(self._subscriptions.get(tenant_id))

    def create_subscription(self, sub):
        with self._lock:
            if sub.tenant_id in self._subscriptions:
                raise ConflictError(f"Subscription already exists for tenant {sub.tenant_id}")
            self._subscriptions[sub.tenant_id] = self._copy(sub)

    def update_subscription(self, sub):
        with self._lock:
            sub = self._copy(sub)
            sub.updated_at = utcnow()
            self._subscriptions[sub.tenant_id] = sub

    def get_enabled_growth_packs(self, tenant_id):
        with self._lock:
            return [self._copy(p) for p in self._growth_packs.get(tenant_id, []) if p.enabled]

    def enable_growth_pack(self, assignment):
        with self._lock:
            packs = self._growth_packs.setdefault(assignment.tenant_id, [])
            for existing in packs:
                if existing.pack_name == assignment.pack_name:
                    existing.enabled = True
                    existing.enabled_at = assignment.enabled_at
                    existing.disabled_at = None
                    existing.price_monthly = assignment.price_monthly
                    return
            packs.append(self._copy(assignment))

    def disable_growth_pack(self, tenant_id, pack_name):
        with self._lock:
            for existing in self._growth_packs.get(tenant_id, []):
                if existing.pack_name == pack_name:
                    existing.enabled = False
                    existing.disabled_at = utcnow()

    def get_camera_license(self, camera_id, tenant_id):
        with self._lock:
            return self._copy(self._cameras.get((tenant_id, camera_id)))

    def save_camera_license(self, license):
        with self._lock:
            key = (license.tenant_id, license.camera_id)
            license = self._copy(license)
            existing = self._cameras.get(key)
            if existing is not None:
                license.id = existing.id
                license.created_at = existing.created_at
            self._cameras[key] = license

    def get_cameras_by_tenant(self, tenant_id):
        with self._lock:
            return [
                self._copy(cam)
                for (owner, _), cam in self._cameras.items()
                if owner == tenant_id
            ]

    def count_cameras_by_tenant(self, tenant_id):
        return len(self.get_cameras_by_tenant(tenant_id))

    def get_entitlement(self, tenant_id, category, feature):
        with self._lock:
            return self._copy(self._entitlements.get((tenant_id, category, feature)))

    def save_entitlement(self, ent):
        with self._lock:
            key = (ent.tenant_id, ent.feature_category, ent.feature_name)
            self._entitlements[key] = self._copy(ent)

    def save_usage_events(self, events):
        with self._lock:
            self._usage_events.extend(self._copy(e) for e in events)

    def get_usage_summary(self, tenant_id, start, end):
        summary: Dict[str, float] = {}
        with self._lock:
            for event in self._usage_events:
                if event.tenant_id == tenant_id and start <= event.event_time <= end:
                    summary[event.event_type] = summary.get(event.event_type, 0.0) + event.quantity
        return summary

    def save_edge_device(self, device):
        with self._lock:
            existing = self._devices.get(device.device_id)
            device = self._copy(device)
            if existing is not None:
                device.id = existing.id
                device.created_at = existing.created_at
            self._devices[device.device_id] = device

    def get_edge_device(self, device_id):
        with self._lock:
            return self._copy(self._devices.get(device_id))

    def get_stats(self):
        with self._lock:
            return {
                "tenants": len(self._tenants),
                "subscriptions": len(self._subscriptions),
                "usage_events": len(self._usage_events),
                "cameras": len(self._cameras),
                "devices": len(self._devices),
            }


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLStorage(Storage):
    """
    Relational storage over a SQLAlchemy session.
    Each write commits; any SQLAlchemy failure rolls back and is re-raised as
    StorageError.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("[STORAGE] Failed to %s: %s", action, e)
            raise StorageError(f"failed to {action}") from e

    # Row conversion

    @staticmethod
    def _tenant(row: TenantRow) -> Tenant:
        return Tenant(
            id=row.id,
            name=row.name,
            email=row.email,
            api_key=row.api_key,
            status=row.status,
            created_at=_to_utc(row.created_at),
            updated_at=_to_utc(row.updated_at),
        )

    @staticmethod
    def _subscription(row: SubscriptionRow) -> Subscription:
        return Subscription(
            id=row.id,
            tenant_id=row.tenant_id,
            plan=row.plan,
            status=row.status,
            cameras_licensed=row.cameras_licensed,
            trial_start=_to_utc(row.trial_start),
            trial_end=_to_utc(row.trial_end),
            subscription_start=_to_utc(row.subscription_start),
            subscription_end=_to_utc(row.subscription_end),
            billing_cycle=row.billing_cycle,
            created_at=_to_utc(row.created_at),
            updated_at=_to_utc(row.updated_at),
        )

    @staticmethod
    def _assignment(row: GrowthPackAssignmentRow) -> GrowthPackAssignment:
        return GrowthPackAssignment(
            id=row.id,
            tenant_id=row.tenant_id,
            subscription_id=row.subscription_id,
            pack_name=row.pack_name,
            enabled=row.is_enabled,
            enabled_at=_to_utc(row.enabled_at),
            disabled_at=_to_utc(row.disabled_at),
            price_monthly=row.price_monthly,
        )

    @staticmethod
    def _camera(row: CameraLicenseRow) -> CameraLicense:
        return CameraLicense(
            id=row.id,
            camera_id=row.camera_id,
            tenant_id=row.tenant_id,
            device_id=row.device_id,
            license_mode=row.license_mode,
            is_valid=row.is_valid,
            valid_until=_to_utc(row.valid_until),
            enabled_growth_packs=list(row.enabled_growth_packs or []),
            last_validated=_to_utc(row.last_validated),
            created_at=_to_utc(row.created_at),
            updated_at=_to_utc(row.updated_at),
        )

    @staticmethod
    def _entitlement(row: FeatureEntitlementRow) -> FeatureEntitlement:
        return FeatureEntitlement(
            id=row.id,
            tenant_id=row.tenant_id,
            feature_category=row.feature_category,
            feature_name=row.feature_name,
            is_enabled=row.is_enabled,
            quota_limit=row.quota_limit,
            quota_used=row.quota_used,
            valid_until=_to_utc(row.valid_until),
            created_at=_to_utc(row.created_at),
            updated_at=_to_utc(row.updated_at),
        )

    @staticmethod
    def _device(row: EdgeDeviceRow) -> EdgeDevice:
        return EdgeDevice(
            id=row.id,
            device_id=row.device_id,
            tenant_id=row.tenant_id,
            name=row.name,
            status=row.status,
            management_tier=row.management_tier,
            last_heartbeat=_to_utc(row.last_heartbeat),
            active_camera_count=row.active_camera_count,
            created_at=_to_utc(row.created_at),
            updated_at=_to_utc(row.updated_at),
        )

    # Tenants

    def get_tenant(self, tenant_id):
        with self._guard("get tenant"):
            row = self.db.get(TenantRow, tenant_id)
            return self._tenant(row) if row else None

    def get_tenant_by_api_key(self, api_key):
        with self._guard("get tenant by API key"):
            row = self.db.query(TenantRow).filter(TenantRow.api_key == api_key).first()
            return self._tenant(row) if row else None

    def create_tenant(self, tenant):
        with self._guard("create tenant"):
            self.db.add(TenantRow(
                id=tenant.id,
                name=tenant.name,
                email=tenant.email,
                api_key=tenant.api_key,
                status=tenant.status,
                created_at=_to_utc(tenant.created_at),
                updated_at=_to_utc(tenant.updated_at),
            ))
            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError(f"Tenant {tenant.id} already exists") from e

    def update_tenant(self, tenant):
        with self._guard("update tenant"):
            row = self.db.get(TenantRow, tenant.id)
            if row is None:
                return
            row.name = tenant.name
            row.email = tenant.email
            row.status = tenant.status
            row.updated_at = utcnow()
            self.db.commit()

    # Subscriptions

    def get_subscription(self, tenant_id):
        with self._guard("get subscription"):
            row = self.db.query(SubscriptionRow).filter(
                SubscriptionRow.tenant_id == tenant_id
            ).first()
            return self._subscription(row) if row else None

    def create_subscription(self, sub):
        with self._guard("create subscription"):
            self.db.add(SubscriptionRow(
                id=sub.id,
                tenant_id=sub.tenant_id,
                plan=sub.plan,
                status=sub.status,
                cameras_licensed=sub.cameras_licensed,
                trial_start=_to_utc(sub.trial_start),
                trial_end=_to_utc(sub.trial_end),
                subscription_start=_to_utc(sub.subscription_start),
                subscription_end=_to_utc(sub.subscription_end),
                billing_cycle=sub.billing_cycle,
                created_at=_to_utc(sub.created_at),
                updated_at=_to_utc(sub.updated_at),
            ))
            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError(f"Subscription already exists for tenant {sub.tenant_id}") from e

    def update_subscription(self, sub):
        with self._guard("update subscription"):
            row = self.db.get(SubscriptionRow, sub.id)
            if row is None:
                raise StorageError(f"subscription {sub.id} does not exist")
            row.plan = sub.plan
            row.status = sub.status
            row.cameras_licensed = sub.cameras_licensed
            row.trial_start = _to_utc(sub.trial_start)
            row.trial_end = _to_utc(sub.trial_end)
            row.subscription_start = _to_utc(sub.subscription_start)
            row.subscription_end = _to_utc(sub.subscription_end)
            row.billing_cycle = sub.billing_cycle
            row.updated_at = utcnow()
            self.db.commit()

    # Growth packs

    def get_enabled_growth_packs(self, tenant_id):
        with self._guard("get growth packs"):
            rows = self.db.query(GrowthPackAssignmentRow).filter(
                GrowthPackAssignmentRow.tenant_id == tenant_id,
                GrowthPackAssignmentRow.is_enabled.is_(True),
            ).order_by(GrowthPackAssignmentRow.enabled_at).all()
            return [self._assignment(r) for r in rows]

    def enable_growth_pack(self, assignment):
        with self._guard("enable growth pack"):
            row = self.db.query(GrowthPackAssignmentRow).filter(
                GrowthPackAssignmentRow.tenant_id == assignment.tenant_id,
                GrowthPackAssignmentRow.pack_name == assignment.pack_name,
            ).first()
            if row is None:
                row = GrowthPackAssignmentRow(
                    id=assignment.id,
                    tenant_id=assignment.tenant_id,
                    subscription_id=assignment.subscription_id,
                    pack_name=assignment.pack_name,
                )
                self.db.add(row)
            row.is_enabled = True
            row.enabled_at = _to_utc(assignment.enabled_at)
            row.disabled_at = None
            row.price_monthly = assignment.price_monthly
            self.db.commit()

    def disable_growth_pack(self, tenant_id, pack_name):
        with self._guard("disable growth pack"):
            self.db.query(GrowthPackAssignmentRow).filter(
                GrowthPackAssignmentRow.tenant_id == tenant_id,
                GrowthPackAssignmentRow.pack_name == pack_name,
            ).update({"is_enabled": False, "disabled_at": utcnow()})
            self.db.commit()

    # Camera licenses

    def get_camera_license(self, camera_id, tenant_id):
        with self._guard("get camera license"):
            row = self.db.query(CameraLicenseRow).filter(
                CameraLicenseRow.camera_id == camera_id,
                CameraLicenseRow.tenant_id == tenant_id,
            ).first()
            return self._camera(row) if row else None

    def save_camera_license(self, license):
        with self._guard("save camera license"):
            row = self.db.query(CameraLicenseRow).filter(
                CameraLicenseRow.camera_id == license.camera_id,
                CameraLicenseRow.tenant_id == license.tenant_id,
            ).first()
            if row is None:
                row = CameraLicenseRow(
                    id=license.id,
                    camera_id=license.camera_id,
                    tenant_id=license.tenant_id,
                    created_at=_to_utc(license.created_at),
                )
                self.db.add(row)
            row.device_id = license.device_id
            row.license_mode = license.license_mode
            row.is_valid = license.is_valid
            row.valid_until = _to_utc(license.valid_until)
            row.enabled_growth_packs = list(license.enabled_growth_packs)
            row.last_validated = _to_utc(license.last_validated)
            row.updated_at = utcnow()
            self.db.commit()

    def get_cameras_by_tenant(self, tenant_id):
        with self._guard("get cameras"):
            rows = self.db.query(CameraLicenseRow).filter(
                CameraLicenseRow.tenant_id == tenant_id
            ).order_by(CameraLicenseRow.created_at).all()
            return [self._camera(r) for r in rows]

    def count_cameras_by_tenant(self, tenant_id):
        with self._guard("count cameras"):
            return self.db.scalar(
                select(func.count()).select_from(CameraLicenseRow).where(
                    CameraLicenseRow.tenant_id == tenant_id
                )
            ) or 0

    # Entitlements

    def get_entitlement(self, tenant_id, category, feature):
        with self._guard("get entitlement"):
            row = self.db.query(FeatureEntitlementRow).filter(
                FeatureEntitlementRow.tenant_id == tenant_id,
                FeatureEntitlementRow.feature_category == category,
                FeatureEntitlementRow.feature_name == feature,
            ).first()
            return self._entitlement(row) if row else None

    def save_entitlement(self, ent):
        with self._guard("save entitlement"):
            row = self.db.query(FeatureEntitlementRow).filter(
                FeatureEntitlementRow.tenant_id == ent.tenant_id,
                FeatureEntitlementRow.feature_category == ent.feature_category,
                FeatureEntitlementRow.feature_name == ent.feature_name,
            ).first()
            if row is None:
                row = FeatureEntitlementRow(
                    id=ent.id,
                    tenant_id=ent.tenant_id,
                    feature_category=ent.feature_category,
                    feature_name=ent.feature_name,
                    created_at=_to_utc(ent.created_at),
                )
                self.db.add(row)
            row.is_enabled = ent.is_enabled
            row.quota_limit = ent.quota_limit
            row.quota_used = ent.quota_used
            row.valid_until = _to_utc(ent.valid_until)
            row.updated_at = utcnow()
            self.db.commit()

    # Usage

    def save_usage_events(self, events):
        with self._guard("save usage events"):
            self.db.add_all([
                UsageEventRow(
                    tenant_id=e.tenant_id,
                    event_type=e.event_type,
                    resource_id=e.resource_id,
                    quantity=e.quantity,
                    unit=e.unit,
                    event_metadata=e.metadata,
                    event_time=_to_utc(e.event_time),
                )
                for e in events
            ])
            self.db.commit()

    def get_usage_summary(self, tenant_id, start, end):
        with self._guard("get usage summary"):
            rows = self.db.query(
                UsageEventRow.event_type, func.sum(UsageEventRow.quantity)
            ).filter(
                UsageEventRow.tenant_id == tenant_id,
                UsageEventRow.event_time >= _to_utc(start),
                UsageEventRow.event_time <= _to_utc(end),
            ).group_by(UsageEventRow.event_type).all()
            return {event_type: float(total or 0) for event_type, total in rows}

    # Edge devices

    def save_edge_device(self, device):
        with self._guard("save edge device"):
            row = self.db.query(EdgeDeviceRow).filter(
                EdgeDeviceRow.device_id == device.device_id
            ).first()
            if row is None:
                row = EdgeDeviceRow(
                    id=device.id,
                    device_id=device.device_id,
                    created_at=_to_utc(device.created_at),
                )
                self.db.add(row)
            row.tenant_id = device.tenant_id
            row.name = device.name
            row.status = device.status
            row.management_tier = device.management_tier
            row.last_heartbeat = _to_utc(device.last_heartbeat)
            row.active_camera_count = device.active_camera_count
            row.updated_at = utcnow()
            self.db.commit()

    def get_edge_device(self, device_id):
        with self._guard("get edge device"):
            row = self.db.query(EdgeDeviceRow).filter(
                EdgeDeviceRow.device_id == device_id
            ).first()
            return self._device(row) if row else None

    # Statistics

    def get_stats(self):
        with self._guard("get stats"):
            def count(table):
                return self.db.scalar(select(func.count()).select_from(table)) or 0

            return {
                "tenants": count(TenantRow),
                "subscriptions": count(SubscriptionRow),
                "usage_events": count(UsageEventRow),
                "cameras": count(CameraLicenseRow),
                "devices": count(EdgeDeviceRow),
            }
