"""Tests for reverting a paid license back to trial terms."""

from datetime import timedelta

import pytest

from conftest import NOW, raise_storage_error
from errors import InternalError, InvalidRequestError, NotFoundError


def _cameras(seed, tenant_id, count):
    for i in range(count):
        seed.camera(tenant_id, f"cam-{i}")


class TestRevokePreconditions:
    def test_missing_subscription(self, license_service):
        with pytest.raises(NotFoundError):
            license_service.revoke_license("nobody")

    def test_trial_cannot_be_revoked(self, license_service, seed):
        seed.subscription("t1", plan="trial")

        with pytest.raises(InvalidRequestError) as exc_info:
            license_service.revoke_license("t1")
        assert exc_info.value.message == "Cannot revoke a trial license"

    def test_second_revoke_is_rejected(self, license_service, seed):
        seed.subscription("t1", plan="base")
        license_service.revoke_license("t1")

        with pytest.raises(InvalidRequestError):
            license_service.revoke_license("t1")


class TestRevokeOutcome:
    def test_reverts_to_fresh_trial(self, license_service, seed, storage):
        seed.subscription("t1", plan="base", cameras_licensed=10)

        result = license_service.revoke_license("t1")

        assert result.success is True
        assert result.message == "License revoked. Reverted to trial mode."
        assert result.plan == "trial"
        assert result.status == "active"
        assert result.days_remaining == 90
        assert result.trial_expired is False
        assert result.cameras_allowed == 2

        sub = storage.get_subscription("t1")
        assert sub.plan == "trial"
        assert sub.cameras_licensed == 2
        assert sub.trial_start == NOW
        assert sub.trial_end == NOW + timedelta(days=90)
        assert sub.subscription_start is None
        assert sub.subscription_end is None

    def test_reports_cameras_over_limit(self, license_service, seed):
        seed.subscription("t1", plan="base")
        _cameras(seed, "t1", 5)

        result = license_service.revoke_license("t1")

        assert result.current_cameras == 5
        assert result.cameras_over_limit == 3
        assert result.action_required is True
        assert result.action_message == "Please stop 3 cameras to comply with trial limits."

    def test_one_camera_over_limit(self, license_service, seed):
        seed.subscription("t1", plan="base")
        _cameras(seed, "t1", 3)

        result = license_service.revoke_license("t1")

        assert result.cameras_over_limit == 1
        assert result.action_message == "Please stop 1 camera to comply with trial limits."

    def test_within_limit_needs_no_action(self, license_service, seed):
        seed.subscription("t1", plan="base")
        _cameras(seed, "t1", 2)

        result = license_service.revoke_license("t1")

        assert result.cameras_over_limit == 0
        assert result.action_required is False
        assert result.action_message == ""

    def test_original_trial_window_is_kept(self, license_service, seed, storage):
        trial_start = NOW - timedelta(days=30)
        seed.subscription("t1", plan="base", trial_start=trial_start,
                          trial_end=trial_start + timedelta(days=90))

        result = license_service.revoke_license("t1")

        assert result.days_remaining == 60
        sub = storage.get_subscription("t1")
        assert sub.trial_start == trial_start
        assert sub.trial_end == trial_start + timedelta(days=90)

    def test_repeat_revocation_keeps_trial_dates(self, license_service, billing, seed, storage, clock):
        seed.subscription("t1", plan="base")
        license_service.revoke_license("t1")
        first = storage.get_subscription("t1")

        clock.advance(days=20)
        billing.update_subscription("t1", plan="base")
        clock.advance(days=5)
        result = license_service.revoke_license("t1")

        second = storage.get_subscription("t1")
        assert second.plan == "trial"
        assert second.trial_start == first.trial_start == NOW
        assert second.trial_end == first.trial_end == NOW + timedelta(days=90)
        assert result.days_remaining == 65

    def test_missing_trial_end_is_derived(self, license_service, seed, storage):
        seed.subscription("t1", plan="base", trial_start=NOW - timedelta(days=10), trial_end=None)

        result = license_service.revoke_license("t1")

        assert result.days_remaining == 80
        assert storage.get_subscription("t1").trial_end == NOW + timedelta(days=80)

    def test_used_up_trial_is_expired(self, license_service, seed, storage):
        seed.subscription("t1", plan="base", trial_start=NOW - timedelta(days=120),
                          trial_end=NOW - timedelta(days=30))

        result = license_service.revoke_license("t1")

        assert result.status == "expired"
        assert result.trial_expired is True
        assert result.days_remaining == 0
        assert storage.get_subscription("t1").status == "expired"

    def test_growth_packs_are_disabled(self, license_service, seed, storage):
        seed.subscription("t1", plan="base")
        seed.pack("t1", "Advanced Analytics")
        seed.pack("t1", "Retail")

        license_service.revoke_license("t1")

        assert storage.get_enabled_growth_packs("t1") == []

    def test_pack_disable_failure_does_not_fail_revoke(self, license_service, seed, storage, monkeypatch):
        seed.subscription("t1", plan="base")
        seed.pack("t1", "Retail")
        monkeypatch.setattr(storage, "disable_growth_pack", raise_storage_error)

        assert license_service.revoke_license("t1").success is True

    def test_existing_cameras_keep_validating(self, license_service, seed):
        seed.subscription("t1", plan="base")
        _cameras(seed, "t1", 5)
        license_service.revoke_license("t1")

        assert license_service.resolve_license("t1", "cam-4").is_valid is True
        assert license_service.resolve_license("t1", "cam-new").is_valid is False


class TestRevokeFailures:
    def test_camera_count_failure(self, license_service, seed, storage, monkeypatch):
        seed.subscription("t1", plan="base")
        monkeypatch.setattr(storage, "count_cameras_by_tenant", raise_storage_error)

        with pytest.raises(InternalError):
            license_service.revoke_license("t1")

    def test_update_failure_leaves_plan_unchanged(self, license_service, seed, storage, monkeypatch):
        seed.subscription("t1", plan="base")
        monkeypatch.setattr(storage, "update_subscription", raise_storage_error)

        with pytest.raises(InternalError) as exc_info:
            license_service.revoke_license("t1")
        assert exc_info.value.message == "Failed to revoke license"
        assert storage.get_subscription("t1").plan == "base"
