"""create_link_audit_tables

Revision ID: 5c2e8a41d9b7
Revises:
Create Date: 2026-10-19 09:12:44.118302

Adds:
- tracked_link + link_trace (append-only redirect chains)
- link_issue with one active issue per (link, type)
- commission_rate + commission_opportunity
- health_score_snapshot (append-only time series)
- audit_run with one running run per owner
- recommendation (one per issue / opportunity)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5c2e8a41d9b7"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


confidence = sa.Enum("high", "medium", "low", name="confidence")
stock_status = sa.Enum("in_stock", "out_of_stock", "unknown", name="stockstatus")
link_status = sa.Enum(
    "healthy", "needs_attention", "broken", "stock_out", "untagged", "unknown", name="linkstatus"
)
issue_type = sa.Enum(
    "broken_link", "stock_out", "untagged", "destination_drift",
    "low_commission", "excessive_redirects", "slow_response",
    name="issuetype",
)
issue_severity = sa.Enum("critical", "warning", "info", name="issueseverity")
issue_status = sa.Enum(
    "open", "acknowledged", "resolved", "false_positive", "wont_fix", name="issuestatus"
)
trend = sa.Enum("improving", "stable", "declining", name="trend")
loss_estimate_mode = sa.Enum("declared", "heuristic", name="lossestimatemode")
audit_type = sa.Enum("full", "incremental", "emergency", name="audittype")
audit_trigger = sa.Enum("manual", "scheduled", name="audittrigger")
audit_run_status = sa.Enum("created", "running", "completed", "failed", name="auditrunstatus")
action_type = sa.Enum(
    "remove_link", "replace_link", "add_affiliate_tag",
    "verify_destination", "shorten_redirects", "switch_program",
    name="actiontype",
)
recommendation_status = sa.Enum("pending", "saved", "applied", "dismissed", name="recommendationstatus")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    # -- Tracked links --
    op.create_table(
        "tracked_link",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("original_url", sa.Text(), nullable=False),
        sa.Column("last_final_url", sa.Text(), nullable=True),
        _timestamp("last_checked_at", nullable=True),
        sa.Column("is_monetized", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("affiliate_network", sa.String(length=100), nullable=True),
        sa.Column("retailer", sa.String(length=100), nullable=True),
        sa.Column("product_name", sa.String(length=500), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("expected_host", sa.String(length=255), nullable=True),
        sa.Column("stock_status", stock_status, nullable=False, server_default="unknown"),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("total_clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("health_score", sa.Integer(), nullable=True),
        sa.Column("status", link_status, nullable=False, server_default="unknown"),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stale_reason", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tracked_link_owner_id", "tracked_link", ["owner_id"])

    # -- Audit runs (referenced by issues and snapshots) --
    op.create_table(
        "audit_run",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("run_type", audit_type, nullable=False, server_default="full"),
        sa.Column("trigger", audit_trigger, nullable=False, server_default="manual"),
        sa.Column("status", audit_run_status, nullable=False, server_default="created"),
        _timestamp("created_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.Column("summary", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("next_scheduled_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_audit_run_running_owner", "audit_run", ["owner_id"],
        unique=True, postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index("ix_audit_run_owner_created", "audit_run", ["owner_id", "created_at"])

    # -- Traces --
    op.create_table(
        "link_trace",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("link_id", sa.BigInteger(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("final_url", sa.Text(), nullable=False),
        sa.Column("steps", postgresql.JSONB(), nullable=False),
        sa.Column("affiliate_tag_present", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("confidence", confidence, nullable=False),
        sa.Column("issues", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("flags", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("network", sa.String(length=100), nullable=True),
        sa.Column("cookie_window_days", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("checked_at"),
        sa.ForeignKeyConstraint(["link_id"], ["tracked_link.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_link_trace_link_checked", "link_trace", ["link_id", "checked_at"])

    # -- Issues --
    op.create_table(
        "link_issue",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("link_id", sa.BigInteger(), nullable=False),
        sa.Column("audit_run_id", sa.BigInteger(), nullable=True),
        sa.Column("issue_type", issue_type, nullable=False),
        sa.Column("severity", issue_severity, nullable=False),
        sa.Column("status", issue_status, nullable=False, server_default="open"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("revenue_impact_estimate", sa.Numeric(10, 2), nullable=True),
        sa.Column("evidence", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("note", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("last_detected_at"),
        _timestamp("resolved_at", nullable=True),
        sa.ForeignKeyConstraint(["link_id"], ["tracked_link.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["audit_run_id"], ["audit_run.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_link_issue_active", "link_issue", ["link_id", "issue_type"],
        unique=True, postgresql_where=sa.text("status IN ('open', 'acknowledged')"),
    )
    op.create_index("ix_link_issue_owner_status", "link_issue", ["owner_id", "status"])

    # -- Commission --
    op.create_table(
        "commission_rate",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("retailer", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False, server_default="default"),
        sa.Column("rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="default"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("retailer", "category", name="uq_commission_rate_retailer_category"),
    )
    op.create_table(
        "commission_opportunity",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("link_id", sa.BigInteger(), nullable=False),
        sa.Column("current_retailer", sa.String(length=100), nullable=False),
        sa.Column("current_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("suggested_retailer", sa.String(length=100), nullable=False),
        sa.Column("suggested_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("estimated_monthly_gain", sa.Numeric(10, 2), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False),
        _timestamp("created_at"),
        _timestamp("superseded_at", nullable=True),
        sa.ForeignKeyConstraint(["link_id"], ["tracked_link.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_commission_opportunity_owner_current", "commission_opportunity", ["owner_id", "superseded_at"]
    )

    # -- Health score snapshots --
    op.create_table(
        "health_score_snapshot",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("audit_run_id", sa.BigInteger(), nullable=True),
        sa.Column("score", sa.Numeric(5, 2), nullable=False),
        sa.Column("healthy_links_score", sa.Numeric(5, 2), nullable=False),
        sa.Column("critical_issues_penalty", sa.Numeric(5, 2), nullable=False),
        sa.Column("broken_links_penalty", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("healthy_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("broken_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_out_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("untagged_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unknown_links", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("critical_issues", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warning_issues", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("info_issues", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trend", trend, nullable=False, server_default="stable"),
        sa.Column("score_change", sa.Numeric(6, 2), nullable=False, server_default="0"),
        sa.Column("velocity_per_week", sa.Numeric(8, 2), nullable=False, server_default="0"),
        sa.Column("forecast_30_days", sa.Numeric(5, 2), nullable=False, server_default="100"),
        sa.Column("estimated_monthly_loss", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("loss_estimate_mode", loss_estimate_mode, nullable=False, server_default="heuristic"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["audit_run_id"], ["audit_run.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_health_score_snapshot_owner_created", "health_score_snapshot", ["owner_id", "created_at"]
    )

    # -- Recommendations --
    op.create_table(
        "recommendation",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("action_type", action_type, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("estimated_revenue_gain", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("issue_id", sa.BigInteger(), nullable=True),
        sa.Column("opportunity_id", sa.BigInteger(), nullable=True),
        sa.Column("status", recommendation_status, nullable=False, server_default="pending"),
        sa.Column("switched_to", sa.String(length=100), nullable=True),
        _timestamp("created_at"),
        _timestamp("disposed_at", nullable=True),
        sa.ForeignKeyConstraint(["issue_id"], ["link_issue.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["commission_opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recommendation_owner_id", "recommendation", ["owner_id"])
    op.create_index(
        "uq_recommendation_issue", "recommendation", ["issue_id"],
        unique=True, postgresql_where=sa.text("issue_id IS NOT NULL"),
    )
    op.create_index(
        "uq_recommendation_opportunity", "recommendation", ["opportunity_id"],
        unique=True, postgresql_where=sa.text("opportunity_id IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_table("recommendation")
    op.drop_table("health_score_snapshot")
    op.drop_table("commission_opportunity")
    op.drop_table("commission_rate")
    op.drop_table("link_issue")
    op.drop_table("link_trace")
    op.drop_table("audit_run")
    op.drop_table("tracked_link")

    bind = op.get_bind()
    for enum in (
        recommendation_status, action_type, audit_run_status, audit_trigger, audit_type,
        loss_estimate_mode, trend, issue_status, issue_severity, issue_type,
        link_status, stock_status, confidence,
    ):
        enum.drop(bind, checkfirst=True)
