from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings


def _utcnow():
    return datetime.now(timezone.utc)


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# Database Models
class TenantRow(Base):
    __tablename__ = "tenants"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    api_key = Column(String(255), unique=True, index=True)
    status = Column(String(50), default="active")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id = Column(String(64), primary_key=True)
    # One subscription per tenant; concurrent trial creation collides here
    tenant_id = Column(String(255), nullable=False, unique=True, index=True)
    plan = Column(String(50), nullable=False, default="trial")
    status = Column(String(50), default="active")
    cameras_licensed = Column(Integer, default=2)

    trial_start = Column(DateTime(timezone=True))
    trial_end = Column(DateTime(timezone=True))
    subscription_start = Column(DateTime(timezone=True))
    subscription_end = Column(DateTime(timezone=True))

    billing_cycle = Column(String(50), default="monthly")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

class GrowthPackAssignmentRow(Base):
    __tablename__ = "growth_pack_assignments"
    __table_args__ = (UniqueConstraint("tenant_id", "pack_name"),)

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(String(64))
    pack_name = Column(String(100), nullable=False)
    enabled_at = Column(DateTime(timezone=True), default=_utcnow)
    disabled_at = Column(DateTime(timezone=True))
    is_enabled = Column(Boolean, default=True)
    price_monthly = Column(Float)

class CameraLicenseRow(Base):
    __tablename__ = "camera_licenses"
    __table_args__ = (UniqueConstraint("camera_id", "tenant_id"),)

    id = Column(String(64), primary_key=True)
    camera_id = Column(String(255), nullable=False, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    device_id = Column(String(255))

    # Last validation result
    license_mode = Column(String(50), default="trial")
    is_valid = Column(Boolean, default=True)
    valid_until = Column(DateTime(timezone=True))
    enabled_growth_packs = Column(JSON, default=list)
    last_validated = Column(DateTime(timezone=True), default=_utcnow)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

class FeatureEntitlementRow(Base):
    __tablename__ = "feature_entitlements"
    __table_args__ = (UniqueConstraint("tenant_id", "feature_category", "feature_name"),)

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    feature_category = Column(String(100), nullable=False)
    feature_name = Column(String(255), nullable=False)
    is_enabled = Column(Boolean, default=False)

    # Quota (-1 = unlimited)
    quota_limit = Column(Integer, default=-1)
    quota_used = Column(Integer, default=0)
    valid_until = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

class UsageEventRow(Base):
    __tablename__ = "usage_events"
    __table_args__ = (Index("idx_usage_events_tenant", "tenant_id", "event_time"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(255))
    quantity = Column(Float, nullable=False, default=1)
    unit = Column(String(50), nullable=False, default="")
    event_metadata = Column("metadata", JSON, default=dict)
    event_time = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

class EdgeDeviceRow(Base):
    __tablename__ = "edge_devices"

    id = Column(String(64), primary_key=True)
    device_id = Column(String(255), unique=True, nullable=False, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255))
    status = Column(String(50), default="active")
    management_tier = Column(String(50), default="basic")
    last_heartbeat = Column(DateTime(timezone=True))
    active_camera_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


def init_db(bind=None):
    """Create tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
