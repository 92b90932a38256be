"""
StockPulse Database Models

Tables:
  1. shop_connections  - Installed shops + encrypted Admin API tokens
  2. tracked_items     - Product/variant thresholds and current inventory
  3. alert_settings    - One row per shop: cadence, recipient, bookkeeping
  4. alert_audit_log   - Append-only notification attempts

variant_ref is stored as '' for the default variant so the
(shop_domain, product_ref, variant_ref) unique constraint holds on every
backend (NULLs never collide in a UNIQUE index).
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)

from db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── 1. Shop Connections ───────────────────────────────────────────────────


class ShopConnection(Base):
    __tablename__ = "shop_connections"

    shop_domain = Column(String(255), primary_key=True)
    access_token_encrypted = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="connected")
    installed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('connected', 'disconnected', 'uninstalled')", name="ck_shop_connection_status"),
    )


# ─── 2. Tracked Items ──────────────────────────────────────────────────────


class TrackedItemRecord(Base):
    __tablename__ = "tracked_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    product_ref = Column(String(64), nullable=False)
    variant_ref = Column(String(64), nullable=False, default="")
    product_title = Column(String(255), nullable=False)
    variant_title = Column(String(255))
    threshold_quantity = Column(Integer, nullable=False)
    alerts_enabled = Column(Boolean, nullable=False, default=True)
    current_inventory = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime(timezone=True))
    last_alert_sent_at = Column(DateTime(timezone=True))
    last_observed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("shop_domain", "product_ref", "variant_ref", name="uq_tracked_item_key"),
        Index("ix_tracked_items_shop", "shop_domain"),
        Index("ix_tracked_items_shop_variant", "shop_domain", "variant_ref"),
        CheckConstraint("threshold_quantity >= 0", name="ck_tracked_item_threshold"),
    )


# ─── 3. Alert Settings ─────────────────────────────────────────────────────


class AlertSettingsRecord(Base):
    __tablename__ = "alert_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, unique=True)
    alert_email = Column(String(255))
    # Not constrained: legacy/invalid values are repaired to defaults on load.
    alert_frequency = Column(String(20), nullable=False, default="daily")
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    daily_alert_time = Column(Time)
    weekly_alert_day = Column(String(10))
    timezone = Column(String(64))
    last_daily_alert_sent = Column(DateTime(timezone=True))
    last_weekly_alert_sent = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# ─── 4. Alert Audit Log ────────────────────────────────────────────────────


class AlertAuditLog(Base):
    __tablename__ = "alert_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False)
    product_ref = Column(String(64), nullable=False)
    variant_ref = Column(String(64), nullable=False, default="")
    product_title = Column(String(255), nullable=False)
    variant_title = Column(String(255))
    current_quantity = Column(Integer, nullable=False)
    threshold_quantity = Column(Integer, nullable=False)
    alert_email = Column(String(255))
    alert_type = Column(String(20), nullable=False)
    email_sent_successfully = Column(Boolean, nullable=False)
    error_category = Column(String(40))
    error_message = Column(Text)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_alert_audit_shop_created", "shop_domain", "created_at"),
        CheckConstraint("alert_type IN ('instant', 'daily_batch', 'weekly_batch')", name="ck_alert_audit_type"),
    )
