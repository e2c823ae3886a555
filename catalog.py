"""
Static pricing catalog: growth packs and base-license feature sets.

The catalog is immutable configuration. It is built once at startup and
passed to the services that need it.
"""

from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class GrowthPackInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    pack_id: str
    pack_name: str
    description: str
    category: str
    price_monthly: float
    features: Tuple[str, ...]
    # category -> feature names unlocked by this pack
    entitlements: Mapping[str, Tuple[str, ...]] = {}


class Catalog:
    def __init__(
        self,
        growth_packs: List[GrowthPackInfo],
        base_features: Dict[str, List[str]],
    ):
        self._packs = tuple(growth_packs)
        self._packs_by_name = MappingProxyType({p.pack_name: p for p in self._packs})
        self._base_features = MappingProxyType(
            {category: frozenset(names) for category, names in base_features.items()}
        )

    @property
    def growth_packs(self) -> Tuple[GrowthPackInfo, ...]:
        return self._packs

    @property
    def base_features(self) -> Mapping[str, frozenset]:
        return self._base_features

    def get_pack(self, pack_name: str) -> Optional[GrowthPackInfo]:
        return self._packs_by_name.get(pack_name)

    def pack_price(self, pack_name: str) -> float:
        """Catalog monthly price for a pack, 0 for unknown packs."""
        pack = self.get_pack(pack_name)
        return pack.price_monthly if pack else 0.0

    def is_base_feature(self, category: str, feature: str) -> bool:
        return feature in self._base_features.get(category, ())

    def pack_grants(self, pack_name: str, category: str, feature: str) -> bool:
        pack = self.get_pack(pack_name)
        if pack is None:
            return False
        return feature in pack.entitlements.get(category, ())


def _pack(pack_id, name, description, category, price, features, entitlements):
    return GrowthPackInfo(
        pack_id=pack_id,
        pack_name=name,
        description=description,
        category=category,
        price_monthly=price,
        features=tuple(features),
        entitlements={k: tuple(v) for k, v in entitlements.items()},
    )


# Prices are in AUD
DEFAULT_GROWTH_PACKS = [
    _pack(
        "pack-advanced-analytics",
        "Advanced Analytics",
        "Advanced analytics and reporting features",
        "analytics",
        29.00,
        ["Near-miss detection", "Interaction time tracking", "Queue counting", "Object size estimation"],
        {"analytics": ["near_miss", "interaction_time", "queue_counter", "object_size"]},
    ),
    _pack(
        "pack-active-transport",
        "Active Transport",
        "Active transport mode detection and analytics",
        "intelligence",
        45.00,
        ["Bicycle detection", "Scooter detection", "Pram/stroller detection", "Wheelchair detection"],
        {"cv_models": ["bike", "scooter", "pram", "wheelchair"]},
    ),
    _pack(
        "pack-cloud-storage",
        "Cloud Storage",
        "Extended cloud storage for video and analytics data",
        "data",
        149.00,
        ["1TB cloud storage", "30-day retention", "Encrypted backups", "High-availability storage"],
        {"outputs": ["cloud_backup", "extended_retention", "encrypted_storage"]},
    ),
    _pack(
        "pack-api-integration",
        "API Integration",
        "Advanced API access and integration capabilities",
        "integration",
        109.00,
        ["Unlimited API calls", "Webhook support", "Custom integrations", "Priority support"],
        {"outputs": ["unlimited_api", "webhooks", "custom_integrations", "priority_support"]},
    ),
    _pack(
        "pack-intelligence",
        "Intelligence",
        "AI-powered insights and LLM-based analytics",
        "intelligence",
        599.00,
        ["Full analyst seat", "Premium connectors", "Automated reports", "Natural language queries"],
        {"llm": ["analyst_seat_full", "premium_connectors", "automated_reports"]},
    ),
    _pack(
        "pack-emergency-vehicles",
        "Emergency Vehicles",
        "Emergency vehicle detection for traffic management",
        "industry",
        39.00,
        ["Police vehicle detection", "Ambulance detection", "Fire truck detection"],
        {"cv_models": ["police", "ambulance", "fire_fighter"]},
    ),
    _pack(
        "pack-retail",
        "Retail",
        "Retail-specific detection and analytics",
        "industry",
        49.00,
        ["Shopping trolley detection", "Staff detection", "Customer flow analysis"],
        {"cv_models": ["trolley", "staff", "customer"]},
    ),
]

# Features included with every license
DEFAULT_BASE_FEATURES = {
    "cv_models": ["person", "car", "van", "truck", "bus", "motorcycle"],
    "analytics": [
        "detection", "tracking", "counting", "dwell", "heatmap",
        "direction", "speed", "privacy_mask",
    ],
    "outputs": ["edge_io", "dashboard", "email", "webhook", "api"],
}


def default_catalog() -> Catalog:
    return Catalog(DEFAULT_GROWTH_PACKS, DEFAULT_BASE_FEATURES)
