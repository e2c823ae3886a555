from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Domain Records

class Tenant(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    api_key: Optional[str] = None
    status: str = "active"  # active, suspended, cancelled
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Subscription(BaseModel):
    id: str
    tenant_id: str
    plan: str = "trial"  # trial, base, enterprise
    status: str = "active"  # active, expired, past_due, cancelled
    cameras_licensed: int = 2
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    billing_cycle: str = "monthly"  # monthly, annual
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GrowthPackAssignment(BaseModel):
    id: str
    tenant_id: str
    subscription_id: Optional[str] = None
    pack_name: str
    enabled: bool = True
    enabled_at: datetime = Field(default_factory=utcnow)
    disabled_at: Optional[datetime] = None
    price_monthly: Optional[float] = None


class CameraLicense(BaseModel):
    id: str
    camera_id: str
    tenant_id: str
    device_id: Optional[str] = None
    license_mode: str  # trial, base, enterprise, expired
    is_valid: bool
    valid_until: Optional[datetime] = None
    enabled_growth_packs: List[str] = []
    last_validated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FeatureEntitlement(BaseModel):
    id: str
    tenant_id: str
    feature_category: str  # cv_models, analytics, outputs, agents, llm
    feature_name: str
    is_enabled: bool = False
    quota_limit: int = -1  # -1 for unlimited
    quota_used: int = 0
    valid_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UsageEvent(BaseModel):
    tenant_id: str
    event_type: str
    resource_id: str = ""
    quantity: float = 1.0
    unit: str = ""
    event_time: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = {}


class EdgeDevice(BaseModel):
    id: str
    device_id: str
    tenant_id: str
    name: Optional[str] = None
    status: str = "active"  # active, offline, suspended
    management_tier: str = "basic"  # basic, managed
    last_heartbeat: Optional[datetime] = None
    active_camera_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Operation Results

class LicenseResult(BaseModel):
    is_valid: bool
    license_mode: str
    enabled_growth_packs: List[str] = []
    valid_until: datetime
    cameras_allowed: int


class PricingBreakdown(BaseModel):
    base_cost: float
    camera_count: int
    per_camera_rate: float
    growth_packs: Dict[str, float] = {}
    growth_pack_cost: float
    total_monthly: float
    currency: str


class CameraSummary(BaseModel):
    camera_id: str
    tenant_id: str
    mode: str
    is_valid: bool
    enabled_growth_packs: List[str] = []
    valid_until: Optional[datetime] = None
    created_at: datetime


class LicenseStatus(BaseModel):
    license_mode: str
    is_valid: bool
    active_cameras: int = 0
    cameras_allowed: int = 0
    days_remaining: Optional[int] = None
    valid_until: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None
    enabled_growth_packs: List[str] = []
    cameras: List[CameraSummary] = []
    pricing: Optional[PricingBreakdown] = None
    license_key: Optional[str] = None
    can_revoke: bool = False
    trial_max_cameras: Optional[int] = None


class EntitlementResult(BaseModel):
    is_enabled: bool
    quota_remaining: int
    valid_until: datetime


class RevocationResult(BaseModel):
    success: bool
    message: str
    plan: str
    status: str
    days_remaining: Optional[int] = None
    trial_expired: bool
    cameras_allowed: int
    current_cameras: int
    cameras_over_limit: int
    action_required: bool
    action_message: str


class GrowthPackDetail(BaseModel):
    pack_name: str
    enabled_at: datetime
    price_monthly: float


class SubscriptionView(BaseModel):
    subscription_id: str
    tenant_id: str
    plan: str
    status: str
    cameras_licensed: int
    growth_packs: List[GrowthPackDetail] = []
    billing_cycle: str
    next_billing_date: Optional[datetime] = None
    total_monthly_cost: float


class UsageBatchResult(BaseModel):
    accepted_count: int
    rejected_count: int
    errors: List[str] = []


class UsageSummary(BaseModel):
    tenant_id: str
    period_start: datetime
    period_end: datetime
    api_calls: Optional[int] = None
    llm_tokens_used: Optional[int] = None
    storage_gb_days: Optional[float] = None
    sms_sent: Optional[int] = None
    agent_executions: Optional[int] = None
    totals: Dict[str, float] = {}


class HeartbeatResult(BaseModel):
    status: str
    next_heartbeat_in_seconds: int


# API Requests

def _from_unix(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        # pydantic only reports ValueError as a validation error
        raise ValueError("invalid event_time") from e


def parse_event_time(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Accept RFC 3339 strings, Unix seconds (numeric or numeric strings) and
    datetimes. Edge clients send either form.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if value == 0:
            return None
        parsed = _from_unix(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        else:
            if seconds == 0:
                return None
            parsed = _from_unix(seconds)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LicenseValidationRequest(BaseModel):
    camera_id: str = ""
    tenant_id: str
    device_id: str = ""


class CameraValidationRequest(BaseModel):
    camera_id: str = ""
    tenant_id: str


class EntitlementCheckRequest(BaseModel):
    tenant_id: str
    feature_category: str
    feature_name: str


class UsageEventIn(BaseModel):
    tenant_id: str
    event_type: str
    resource_id: str = ""
    quantity: float = 1.0
    unit: str = ""
    event_time: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("event_time", mode="before")
    @classmethod
    def _flexible_time(cls, value):
        return parse_event_time(value)


class UsageBatchRequest(BaseModel):
    events: List[UsageEventIn] = []


class HeartbeatRequest(BaseModel):
    device_id: str
    tenant_id: str
    active_camera_ids: List[str] = []
    management_tier: str = "basic"


class TenantCreateRequest(BaseModel):
    name: str
    email: Optional[str] = None
    api_key: Optional[str] = None


class TenantUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None


class SubscriptionCreateRequest(BaseModel):
    tenant_id: str
    plan: str = "trial"
    cameras_licensed: int = 0
    billing_cycle: str = ""


class SubscriptionUpdateRequest(BaseModel):
    plan: Optional[str] = None
    status: Optional[str] = None
    cameras_licensed: Optional[int] = None
    billing_cycle: Optional[str] = None


class GrowthPackUpdateRequest(BaseModel):
    enable: List[str] = []
    disable: List[str] = []


class EntitlementUpdateRequest(BaseModel):
    feature_category: str
    feature_name: str
    is_enabled: bool = True
    quota_limit: int = -1
    quota_used: int = 0
    valid_until: Optional[datetime] = None


# API Responses

class EnabledGrowthPacksResponse(BaseModel):
    enabled_packs: List[str]


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    uptime_seconds: float
    total_events: int


class StatsResponse(BaseModel):
    total_events: int
    tenants: int
    cameras: int
    devices: int
