from typing import Dict, Iterable

from catalog import Catalog
from models import GrowthPackAssignment, PricingBreakdown


def _cents(amount: float) -> float:
    return round(amount, 2)


def growth_pack_price(pack: GrowthPackAssignment, catalog: Catalog) -> float:
    """
    Monthly price for an assignment: the custom price when one was set,
    otherwise the catalog price (0 for packs the catalog doesn't know).
    """
    if pack.price_monthly is not None and pack.price_monthly > 0:
        return pack.price_monthly
    return catalog.pack_price(pack.pack_name)


def calculate_pricing(
    camera_count: int,
    packs: Iterable[GrowthPackAssignment],
    catalog: Catalog,
    per_camera_rate: float,
    currency: str = "AUD",
) -> PricingBreakdown:
    base_cost = camera_count * per_camera_rate

    pack_costs: Dict[str, float] = {}
    for pack in packs:
        pack_costs[pack.pack_name] = _cents(growth_pack_price(pack, catalog))
    growth_pack_cost = sum(pack_costs.values())

    return PricingBreakdown(
        base_cost=_cents(base_cost),
        camera_count=camera_count,
        per_camera_rate=per_camera_rate,
        growth_packs=pack_costs,
        growth_pack_cost=_cents(growth_pack_cost),
        total_monthly=_cents(base_cost + growth_pack_cost),
        currency=currency,
    )


def mask_license_key(key: str) -> str:
    """Mask all but the last 4 characters of a license key."""
    if len(key) <= 4:
        return key
    return "*" * (len(key) - 4) + key[-4:]
