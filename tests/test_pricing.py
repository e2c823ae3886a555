"""Tests for pricing, pack prices and license key masking."""

import pytest

from catalog import default_catalog
from models import GrowthPackAssignment
from pricing import calculate_pricing, growth_pack_price, mask_license_key


@pytest.fixture
def catalog():
    return default_catalog()


def _pack(name, price=None):
    return GrowthPackAssignment(id=name, tenant_id="t1", pack_name=name, price_monthly=price)


class TestCalculatePricing:
    def test_cameras_and_pack(self, catalog):
        breakdown = calculate_pricing(3, [_pack("Advanced Analytics", 29.0)], catalog, per_camera_rate=14.99)

        assert breakdown.base_cost == 44.97
        assert breakdown.camera_count == 3
        assert breakdown.per_camera_rate == 14.99
        assert breakdown.growth_packs == {"Advanced Analytics": 29.0}
        assert breakdown.growth_pack_cost == 29.0
        assert breakdown.total_monthly == 73.97
        assert breakdown.currency == "AUD"

    def test_no_cameras_no_packs(self, catalog):
        breakdown = calculate_pricing(0, [], catalog, per_camera_rate=14.99)

        assert breakdown.base_cost == 0
        assert breakdown.growth_pack_cost == 0
        assert breakdown.total_monthly == 0

    def test_multiple_packs(self, catalog):
        packs = [_pack("Cloud Storage"), _pack("API Integration"), _pack("Retail")]

        breakdown = calculate_pricing(1, packs, catalog, per_camera_rate=14.99)

        assert breakdown.growth_pack_cost == 307.0
        assert breakdown.total_monthly == 321.99

    def test_currency_is_passed_through(self, catalog):
        assert calculate_pricing(1, [], catalog, per_camera_rate=10.0, currency="NZD").currency == "NZD"

    def test_rounds_to_cents(self, catalog):
        breakdown = calculate_pricing(7, [], catalog, per_camera_rate=14.99)
        assert breakdown.base_cost == 104.93


class TestGrowthPackPrice:
    def test_custom_price_wins(self, catalog):
        assert growth_pack_price(_pack("Intelligence", 450.0), catalog) == 450.0

    def test_catalog_price_when_unset(self, catalog):
        assert growth_pack_price(_pack("Intelligence"), catalog) == 599.0

    def test_zero_price_falls_back_to_catalog(self, catalog):
        assert growth_pack_price(_pack("Emergency Vehicles", 0.0), catalog) == 39.0

    def test_unknown_pack_is_free(self, catalog):
        assert growth_pack_price(_pack("Legacy Pack"), catalog) == 0.0


class TestMaskLicenseKey:
    def test_masks_all_but_last_four(self):
        assert mask_license_key("bb_1234567890") == "*********7890"

    def test_short_keys_unchanged(self):
        assert mask_license_key("abcd") == "abcd"
        assert mask_license_key("") == ""
