"""
SQLAlchemy 2.0 ORM Models — Link Health Audit
==============================================

Conventions:
  - snake_case names
  - BIGINT PKs (auto-increment)
  - Explicit FKs
  - created_at / updated_at on mutable tables
  - Enum columns store the lowercase values of the domain enums

Tables are grouped by functional area:
  1. Links & traces
  2. Issues
  3. Commission
  4. Health score time series
  5. Audit runs
  6. Recommendations
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from workers.link_audit.models import (
    ActionType,
    AuditRunStatus,
    AuditTrigger,
    AuditType,
    Confidence,
    IssueSeverity,
    IssueStatus,
    IssueType,
    LinkStatus,
    LossEstimateMode,
    RecommendationStatus,
    StockStatus,
    Trend,
)


def _enum(cls: type[PyEnum]) -> Enum:
    return Enum(
        cls,
        name=cls.__name__.lower(),
        values_callable=lambda members: [m.value for m in members],
    )


# ══════════════════════════════════════════════════════════════════════
# 1. LINKS & TRACES
# ══════════════════════════════════════════════════════════════════════

class TrackedLinkRow(Base):
    """
    A monetized link owned by a creator.
    Updated only by the audit orchestrator after a trace.
    """
    __tablename__ = "tracked_link"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    last_final_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_monetized: Mapped[bool] = mapped_column(Boolean, default=True)
    affiliate_network: Mapped[str | None] = mapped_column(String(100), nullable=True)
    retailer: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    expected_host: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Out-of-band signals
    stock_status: Mapped[StockStatus] = mapped_column(_enum(StockStatus), default=StockStatus.UNKNOWN)
    price: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    commission_rate: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)  # percent
    total_clicks: Mapped[int] = mapped_column(Integer, default=0)

    # Derived by the last audit
    health_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[LinkStatus] = mapped_column(_enum(LinkStatus), default=LinkStatus.UNKNOWN)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False)
    stale_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    traces: Mapped[list["LinkTraceRow"]] = relationship("LinkTraceRow", back_populates="link")
    issues: Mapped[list["LinkIssueRow"]] = relationship("LinkIssueRow", back_populates="link")


class LinkTraceRow(Base):
    """
    One recorded redirect chain. Append-only: the next audit adds a new
    row, history stays addressable by ``checked_at``.
    """
    __tablename__ = "link_trace"
    __table_args__ = (Index("ix_link_trace_link_checked", "link_id", "checked_at"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    link_id: Mapped[int] = mapped_column(ForeignKey("tracked_link.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    final_url: Mapped[str] = mapped_column(Text, nullable=False)
    steps: Mapped[list] = mapped_column(JSONB, nullable=False)  # [{index, url, status_code, ...}]
    affiliate_tag_present: Mapped[bool] = mapped_column(Boolean, default=False)
    confidence: Mapped[Confidence] = mapped_column(_enum(Confidence), nullable=False)
    issues: Mapped[list] = mapped_column(JSONB, default=list)
    flags: Mapped[list] = mapped_column(JSONB, default=list)
    network: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cookie_window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    link: Mapped["TrackedLinkRow"] = relationship("TrackedLinkRow", back_populates="traces")


# ══════════════════════════════════════════════════════════════════════
# 2. ISSUES
# ══════════════════════════════════════════════════════════════════════

class LinkIssueRow(Base):
    """
    A detected problem on a link.
    At most one active (open / acknowledged) issue per (link, type).
    """
    __tablename__ = "link_issue"
    __table_args__ = (
        Index(
            "uq_link_issue_active",
            "link_id",
            "issue_type",
            unique=True,
            postgresql_where=text("status IN ('open', 'acknowledged')"),
        ),
        Index("ix_link_issue_owner_status", "owner_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    link_id: Mapped[int] = mapped_column(ForeignKey("tracked_link.id", ondelete="CASCADE"), nullable=False)
    audit_run_id: Mapped[int | None] = mapped_column(ForeignKey("audit_run.id"), nullable=True)
    issue_type: Mapped[IssueType] = mapped_column(_enum(IssueType), nullable=False)
    severity: Mapped[IssueSeverity] = mapped_column(_enum(IssueSeverity), nullable=False)
    status: Mapped[IssueStatus] = mapped_column(_enum(IssueStatus), default=IssueStatus.OPEN)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    revenue_impact_estimate: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)  # USD/month
    evidence: Mapped[dict] = mapped_column(JSONB, default=dict)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    link: Mapped["TrackedLinkRow"] = relationship("TrackedLinkRow", back_populates="issues")


# ══════════════════════════════════════════════════════════════════════
# 3. COMMISSION
# ══════════════════════════════════════════════════════════════════════

class CommissionRateRow(Base):
    """Rate table the optimizer loads at the start of each audit run."""
    __tablename__ = "commission_rate"
    __table_args__ = (UniqueConstraint("retailer", "category", name="uq_commission_rate_retailer_category"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    retailer: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    rate: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)  # percent
    source: Mapped[str] = mapped_column(String(50), default="default")  # default, manual, network_api
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CommissionOpportunityRow(Base):
    """
    A better-paying program for a link.
    Never edited: re-evaluation stamps ``superseded_at`` and adds a new row.
    """
    __tablename__ = "commission_opportunity"
    __table_args__ = (Index("ix_commission_opportunity_owner_current", "owner_id", "superseded_at"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    link_id: Mapped[int] = mapped_column(ForeignKey("tracked_link.id", ondelete="CASCADE"), nullable=False)
    current_retailer: Mapped[str] = mapped_column(String(100), nullable=False)
    current_rate: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    suggested_retailer: Mapped[str] = mapped_column(String(100), nullable=False)
    suggested_rate: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    estimated_monthly_gain: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ══════════════════════════════════════════════════════════════════════
# 4. HEALTH SCORE TIME SERIES
# ══════════════════════════════════════════════════════════════════════

class HealthScoreSnapshotRow(Base):
    """Append-only. Never updated after insert."""
    __tablename__ = "health_score_snapshot"
    __table_args__ = (Index("ix_health_score_snapshot_owner_created", "owner_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    audit_run_id: Mapped[int | None] = mapped_column(ForeignKey("audit_run.id"), nullable=True)

    score: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    healthy_links_score: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    critical_issues_penalty: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)
    broken_links_penalty: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False)

    total_links: Mapped[int] = mapped_column(Integer, default=0)
    healthy_links: Mapped[int] = mapped_column(Integer, default=0)
    broken_links: Mapped[int] = mapped_column(Integer, default=0)
    stock_out_links: Mapped[int] = mapped_column(Integer, default=0)
    untagged_links: Mapped[int] = mapped_column(Integer, default=0)
    unknown_links: Mapped[int] = mapped_column(Integer, default=0)
    critical_issues: Mapped[int] = mapped_column(Integer, default=0)
    warning_issues: Mapped[int] = mapped_column(Integer, default=0)
    info_issues: Mapped[int] = mapped_column(Integer, default=0)

    trend: Mapped[Trend] = mapped_column(_enum(Trend), default=Trend.STABLE)
    score_change: Mapped[float] = mapped_column(Numeric(6, 2), default=0)
    velocity_per_week: Mapped[float] = mapped_column(Numeric(8, 2), default=0)
    forecast_30_days: Mapped[float] = mapped_column(Numeric(5, 2), default=100)
    estimated_monthly_loss: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    loss_estimate_mode: Mapped[LossEstimateMode] = mapped_column(
        _enum(LossEstimateMode), default=LossEstimateMode.HEURISTIC
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ══════════════════════════════════════════════════════════════════════
# 5. AUDIT RUNS
# ══════════════════════════════════════════════════════════════════════

class AuditRunRow(Base):
    """
    One audit pass over an owner's links.
    At most one ``running`` row per owner.
    """
    __tablename__ = "audit_run"
    __table_args__ = (
        Index(
            "uq_audit_run_running_owner",
            "owner_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
        ),
        Index("ix_audit_run_owner_created", "owner_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_type: Mapped[AuditType] = mapped_column(_enum(AuditType), default=AuditType.FULL)
    trigger: Mapped[AuditTrigger] = mapped_column(_enum(AuditTrigger), default=AuditTrigger.MANUAL)
    status: Mapped[AuditRunStatus] = mapped_column(_enum(AuditRunStatus), default=AuditRunStatus.CREATED)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    summary: Mapped[dict] = mapped_column(JSONB, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ══════════════════════════════════════════════════════════════════════
# 6. RECOMMENDATIONS
# ══════════════════════════════════════════════════════════════════════

class RecommendationRow(Base):
    """
    An actionable card for an issue or a commission opportunity.
    One recommendation per referenced issue / opportunity.
    """
    __tablename__ = "recommendation"
    __table_args__ = (
        Index("uq_recommendation_issue", "issue_id", unique=True, postgresql_where=text("issue_id IS NOT NULL")),
        Index(
            "uq_recommendation_opportunity",
            "opportunity_id",
            unique=True,
            postgresql_where=text("opportunity_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action_type: Mapped[ActionType] = mapped_column(_enum(ActionType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[int] = mapped_column(Integer, default=50)
    estimated_revenue_gain: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    issue_id: Mapped[int | None] = mapped_column(ForeignKey("link_issue.id", ondelete="CASCADE"), nullable=True)
    opportunity_id: Mapped[int | None] = mapped_column(
        ForeignKey("commission_opportunity.id", ondelete="CASCADE"), nullable=True
    )
    status: Mapped[RecommendationStatus] = mapped_column(
        _enum(RecommendationStatus), default=RecommendationStatus.PENDING
    )
    switched_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    disposed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
