"""Contract tests run against both the in-memory and SQL storage backends."""

import uuid
from datetime import timedelta

import pytest

from conftest import NOW
from database import Base
from errors import ConflictError, StorageError
from models import EdgeDevice, FeatureEntitlement, Tenant, UsageEvent


def _tenant(tenant_id, api_key=None):
    return Tenant(id=tenant_id, name=f"Tenant {tenant_id}", api_key=api_key, created_at=NOW, updated_at=NOW)


class TestTenants:
    def test_create_and_get(self, storage):
        storage.create_tenant(_tenant("t1", "bb_key1"))

        tenant = storage.get_tenant("t1")
        assert tenant.name == "Tenant t1"
        assert tenant.created_at == NOW

    def test_missing_tenant(self, storage):
        assert storage.get_tenant("nobody") is None

    def test_duplicate_is_conflict(self, storage):
        storage.create_tenant(_tenant("t1"))

        with pytest.raises(ConflictError):
            storage.create_tenant(_tenant("t1"))

    def test_lookup_by_api_key(self, storage):
        storage.create_tenant(_tenant("t1", "bb_key1"))
        storage.create_tenant(_tenant("t2", "bb_key2"))

        assert storage.get_tenant_by_api_key("bb_key2").id == "t2"
        assert storage.get_tenant_by_api_key("bb_unknown") is None

    def test_update(self, storage):
        storage.create_tenant(_tenant("t1"))
        tenant = storage.get_tenant("t1")
        tenant.status = "suspended"

        storage.update_tenant(tenant)

        assert storage.get_tenant("t1").status == "suspended"

    def test_returned_records_are_copies(self, storage):
        storage.create_tenant(_tenant("t1"))
        storage.get_tenant("t1").name = "changed"

        assert storage.get_tenant("t1").name == "Tenant t1"


class TestSubscriptions:
    def test_one_subscription_per_tenant(self, storage, seed):
        seed.subscription("t1")

        with pytest.raises(ConflictError):
            seed.subscription("t1", plan="trial")

    def test_timestamps_are_utc(self, storage, seed):
        seed.subscription("t1", plan="trial")

        sub = storage.get_subscription("t1")
        assert sub.trial_end == NOW + timedelta(days=90)
        assert sub.trial_end.utcoffset() == timedelta(0)

    def test_update(self, storage, seed):
        seed.subscription("t1", plan="base")
        sub = storage.get_subscription("t1")
        sub.plan = "enterprise"
        sub.cameras_licensed = 50

        storage.update_subscription(sub)

        stored = storage.get_subscription("t1")
        assert stored.plan == "enterprise"
        assert stored.cameras_licensed == 50
        assert stored.id == sub.id


class TestGrowthPacks:
    def test_enable_disable_reenable(self, storage, seed):
        seed.pack("t1", "Retail")
        assert [p.pack_name for p in storage.get_enabled_growth_packs("t1")] == ["Retail"]

        storage.disable_growth_pack("t1", "Retail")
        assert storage.get_enabled_growth_packs("t1") == []

        seed.pack("t1", "Retail", price=40.0)
        packs = storage.get_enabled_growth_packs("t1")
        assert len(packs) == 1
        assert packs[0].price_monthly == 40.0
        assert packs[0].disabled_at is None

    def test_disable_unknown_pack_is_noop(self, storage):
        storage.disable_growth_pack("t1", "Retail")
        assert storage.get_enabled_growth_packs("t1") == []


class TestCameraLicenses:
    def test_save_is_upsert(self, storage, seed, clock):
        first = seed.camera("t1", "cam-1", mode="trial")
        clock.advance(days=1)
        seed.camera("t1", "cam-1", mode="base")

        cam = storage.get_camera_license("cam-1", "t1")
        assert cam.license_mode == "base"
        assert cam.id == first.id
        assert cam.created_at == first.created_at
        assert storage.count_cameras_by_tenant("t1") == 1

    def test_same_camera_id_in_two_tenants(self, storage, seed):
        seed.camera("t1", "cam-1")
        seed.camera("t2", "cam-1")

        assert storage.count_cameras_by_tenant("t1") == 1
        assert storage.count_cameras_by_tenant("t2") == 1

    def test_tenant_ids_are_matched_exactly(self, storage, seed):
        seed.camera("t1", "cam-1")
        seed.camera("t10", "cam-2")
        seed.camera("t100", "cam-3")

        assert [c.camera_id for c in storage.get_cameras_by_tenant("t1")] == ["cam-1"]

    def test_growth_pack_list_round_trips(self, storage, seed):
        cam = seed.camera("t1", "cam-1")
        cam.enabled_growth_packs = ["Retail", "Cloud Storage"]
        storage.save_camera_license(cam)

        assert storage.get_camera_license("cam-1", "t1").enabled_growth_packs == ["Retail", "Cloud Storage"]


class TestEntitlements:
    def test_save_replaces_existing(self, storage):
        for quota in (10, 20):
            storage.save_entitlement(FeatureEntitlement(
                id=str(uuid.uuid4()),
                tenant_id="t1",
                feature_category="llm",
                feature_name="summaries",
                is_enabled=True,
                quota_limit=quota,
            ))

        assert storage.get_entitlement("t1", "llm", "summaries").quota_limit == 20
        assert storage.get_entitlement("t1", "llm", "other") is None


class TestUsageEvents:
    def _event(self, tenant_id, event_type, quantity, when):
        return UsageEvent(tenant_id=tenant_id, event_type=event_type, quantity=quantity, event_time=when)

    def test_summary_sums_by_type(self, storage):
        storage.save_usage_events([
            self._event("t1", "api_call", 5, NOW - timedelta(days=1)),
            self._event("t1", "api_call", 10, NOW - timedelta(hours=1)),
            self._event("t1", "storage_gb_days", 2.5, NOW - timedelta(hours=2)),
            self._event("t2", "api_call", 100, NOW - timedelta(hours=1)),
        ])

        summary = storage.get_usage_summary("t1", NOW - timedelta(days=30), NOW)

        assert summary == {"api_call": 15.0, "storage_gb_days": 2.5}

    def test_window_bounds_are_inclusive(self, storage):
        start, end = NOW - timedelta(days=1), NOW
        storage.save_usage_events([
            self._event("t1", "sms_sent", 1, start),
            self._event("t1", "sms_sent", 1, end),
            self._event("t1", "sms_sent", 1, end + timedelta(seconds=1)),
            self._event("t1", "sms_sent", 1, start - timedelta(seconds=1)),
        ])

        assert storage.get_usage_summary("t1", start, end) == {"sms_sent": 2.0}

    def test_empty_window(self, storage):
        assert storage.get_usage_summary("t1", NOW - timedelta(days=1), NOW) == {}


class TestEdgeDevices:
    def test_heartbeat_upsert(self, storage, clock):
        device = EdgeDevice(id="d-1", device_id="edge-1", tenant_id="t1", active_camera_count=2,
                            last_heartbeat=NOW, created_at=NOW, updated_at=NOW)
        storage.save_edge_device(device)

        later = NOW + timedelta(minutes=15)
        storage.save_edge_device(device.model_copy(update={
            "id": "d-2", "active_camera_count": 4, "last_heartbeat": later,
        }))

        stored = storage.get_edge_device("edge-1")
        assert stored.id == "d-1"
        assert stored.active_camera_count == 4
        assert stored.last_heartbeat == later

    def test_missing_device(self, storage):
        assert storage.get_edge_device("nope") is None


class TestStats:
    def test_counts(self, storage, seed):
        storage.create_tenant(_tenant("t1"))
        seed.subscription("t1")
        seed.camera("t1", "cam-1")
        seed.camera("t1", "cam-2")
        storage.save_usage_events([UsageEvent(tenant_id="t1", event_type="api_call", event_time=NOW)])

        assert storage.get_stats() == {
            "tenants": 1,
            "subscriptions": 1,
            "usage_events": 1,
            "cameras": 2,
            "devices": 0,
        }


class TestSQLFailures:
    def test_database_errors_become_storage_errors(self, sql_storage):
        Base.metadata.drop_all(bind=sql_storage.db.get_bind())

        with pytest.raises(StorageError):
            sql_storage.get_subscription("t1")
