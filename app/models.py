from datetime import datetime, timezone
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ChangeRecord(Base):
    """
    Audit-logged proposal or application of an AI-driven store mutation.

    `payload` keeps the pre-change snapshot (`before`) for the lifetime of the
    record so a completed or dry-run change can always be reverted.
    """
    __tablename__ = "change_records"
    __table_args__ = (
        Index("ix_change_records_merchant_status", "merchant_id", "status"),
        Index("ix_change_records_entity_id", "entity_id"),
        Index("ix_change_records_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[str] = mapped_column(Text, nullable=False)

    # optimize_seo, fix_product, send_cart_recovery, run_ab_test, adjust_price, content_refresh, discoverability
    action_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(Text, nullable=True)  # product, cart, campaign
    entity_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending, running, completed, failed, rolled_back, dry_run, rejected
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)  # {"before": {...}, "after": {...}}
    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    estimated_impact: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    actual_impact: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    executed_by: Mapped[str] = mapped_column(Text, nullable=False, default="agent")  # user, agent
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_to_shopify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    counted_toward_daily_cap: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # corrective records point at the original they reverse
    reverts_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("change_records.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # set while an execute or rollback is talking to the store platform
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AutomationSettings(Base):
    """
    Per-merchant autopilot configuration, read before every automatic action.
    """
    __tablename__ = "automation_settings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    # master switch: False means every change waits for manual approval
    global_autopilot_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    autopilot_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    autopilot_mode: Mapped[str] = mapped_column(Text, nullable=False, default="safe")  # safe, balanced, aggressive
    dry_run_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # dashboard preference for its push-to-Shopify flow; execution does not read it
    auto_publish_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_daily_actions: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    enabled_action_types: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=lambda: ["optimize_seo"])

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class AutopilotQuota(Base):
    """
    Rolling-window counter of unattended executions per merchant.
    """
    __tablename__ = "autopilot_quotas"

    merchant_id: Mapped[str] = mapped_column(Text, primary_key=True)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
