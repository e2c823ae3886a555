import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from catalog import Catalog
from errors import StorageError
from models import EntitlementResult, utcnow
from storage import Storage

logger = logging.getLogger(__name__)

UNLIMITED = -1


class EntitlementResolver:
    """
    Decides whether a tenant may use a feature.

    Evaluation order, first match wins:
      1. base license features
      2. features unlocked by an enabled growth pack
      3. a stored per-feature entitlement (with optional quota)
    Nothing is written; quota usage is only read here.
    """

    def __init__(self, storage: Storage, catalog: Catalog, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.catalog = catalog
        self.clock = clock

    def check_entitlement(self, tenant_id: str, category: str, feature: str) -> EntitlementResult:
        now = self.clock()
        one_year = now + timedelta(days=365)
        logger.info("[ENTITLEMENT] Check: tenant=%s, category=%s, feature=%s", tenant_id, category, feature)

        if self.catalog.is_base_feature(category, feature):
            logger.info("[ENTITLEMENT] Feature %s/%s is base feature, enabled", category, feature)
            return EntitlementResult(is_enabled=True, quota_remaining=UNLIMITED, valid_until=one_year)

        pack_name = self._granting_pack(tenant_id, category, feature)
        if pack_name:
            logger.info("[ENTITLEMENT] Feature %s/%s enabled via pack %s", category, feature, pack_name)
            return EntitlementResult(is_enabled=True, quota_remaining=UNLIMITED, valid_until=one_year)

        try:
            ent = self.storage.get_entitlement(tenant_id, category, feature)
        except StorageError as e:
            logger.warning("[ENTITLEMENT] Entitlement lookup failed for tenant %s: %s", tenant_id, e)
            ent = None

        if ent is not None and ent.is_enabled:
            quota_remaining = UNLIMITED
            if ent.quota_limit > 0:
                quota_remaining = max(0, ent.quota_limit - ent.quota_used)
            return EntitlementResult(
                is_enabled=True,
                quota_remaining=quota_remaining,
                valid_until=ent.valid_until or one_year,
            )

        logger.info("[ENTITLEMENT] Feature %s/%s not enabled for tenant %s", category, feature, tenant_id)
        return EntitlementResult(is_enabled=False, quota_remaining=0, valid_until=now)

    def _granting_pack(self, tenant_id: str, category: str, feature: str) -> Optional[str]:
        try:
            packs = self.storage.get_enabled_growth_packs(tenant_id)
        except StorageError as e:
            logger.warning("[ENTITLEMENT] Growth pack lookup failed for tenant %s: %s", tenant_id, e)
            return None

        for pack in packs:
            if self.catalog.pack_grants(pack.pack_name, category, feature):
                return pack.pack_name
        return None
