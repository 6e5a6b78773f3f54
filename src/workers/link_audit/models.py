"""Domain models for the link audit pipeline (traces, issues, scores, runs).

Plain dataclasses only: the engine modules take these in and hand these
back, and the persistence adapter in ``core.repository`` maps them to
ORM rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from workers.link_audit.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ══════════════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════════════

class Confidence(StrEnum):
    """How much we trust that a traced link still attributes sales."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TraceFlag(StrEnum):
    UNREACHABLE = "unreachable"
    REDIRECT_LOOP = "redirect_loop_or_excessive"
    INVALID_REDIRECT = "invalid_redirect"
    RATE_LIMITED = "rate_limited"


class StockStatus(StrEnum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class LinkStatus(StrEnum):
    HEALTHY = "healthy"
    NEEDS_ATTENTION = "needs_attention"
    BROKEN = "broken"
    STOCK_OUT = "stock_out"
    UNTAGGED = "untagged"
    UNKNOWN = "unknown"          # never traced, or last audit failed (stale)


class IssueType(StrEnum):
    BROKEN_LINK = "broken_link"
    STOCK_OUT = "stock_out"
    UNTAGGED = "untagged"
    DESTINATION_DRIFT = "destination_drift"
    LOW_COMMISSION = "low_commission"
    EXCESSIVE_REDIRECTS = "excessive_redirects"
    SLOW_RESPONSE = "slow_response"


class IssueSeverity(StrEnum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueStatus(StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"
    WONT_FIX = "wont_fix"


# Statuses that still count as "the same issue" on re-detection.
ACTIVE_ISSUE_STATUSES = frozenset({IssueStatus.OPEN, IssueStatus.ACKNOWLEDGED})
# Statuses by which a user silences a (link, type) pair.
SUPPRESSED_ISSUE_STATUSES = frozenset({IssueStatus.FALSE_POSITIVE, IssueStatus.WONT_FIX})

SEVERITY_RANK: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 3,
    IssueSeverity.WARNING: 2,
    IssueSeverity.INFO: 1,
}


class Trend(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class LossEstimateMode(StrEnum):
    """Which method produced ``estimated_monthly_loss``."""

    DECLARED = "declared"        # sum of per-issue revenue impacts
    HEURISTIC = "heuristic"      # flat per-broken / per-stock-out fallback


class AuditType(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    EMERGENCY = "emergency"


class AuditTrigger(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class AuditRunStatus(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RecommendationStatus(StrEnum):
    PENDING = "pending"
    SAVED = "saved"
    APPLIED = "applied"
    DISMISSED = "dismissed"


class ActionType(StrEnum):
    REMOVE_LINK = "remove_link"
    REPLACE_LINK = "replace_link"
    ADD_AFFILIATE_TAG = "add_affiliate_tag"
    VERIFY_DESTINATION = "verify_destination"
    SHORTEN_REDIRECTS = "shorten_redirects"
    SWITCH_PROGRAM = "switch_program"


# ══════════════════════════════════════════════════════════════════════
# TRACING
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class RedirectStep:
    """One HTTP hop of a trace. ``status_code`` is None when the hop failed."""

    index: int
    url: str
    status_code: int | None
    has_affiliate_tag: bool = False
    affiliate_params: tuple[str, ...] = ()

    @property
    def is_redirect(self) -> bool:
        return self.status_code is not None and 300 <= self.status_code < 400


@dataclass(frozen=True, slots=True)
class Trace:
    """The full recorded path for one link-check."""

    url: str
    steps: tuple[RedirectStep, ...]
    final_url: str
    affiliate_tag_present: bool
    confidence: Confidence
    issues: tuple[str, ...] = ()
    flags: frozenset[TraceFlag] = frozenset()
    network: str | None = None
    cookie_window_days: int | None = None
    response_time_ms: int = 0
    checked_at: datetime = field(default_factory=utcnow)
    link_id: int | None = None

    @property
    def redirect_count(self) -> int:
        return max(0, len(self.steps) - 1)

    @property
    def final_status(self) -> int | None:
        return self.steps[-1].status_code if self.steps else None

    @property
    def is_unreachable(self) -> bool:
        return TraceFlag.UNREACHABLE in self.flags

    @property
    def is_broken(self) -> bool:
        """Error status, no response, or a chain that never lands."""
        if self.flags & {
            TraceFlag.UNREACHABLE,
            TraceFlag.REDIRECT_LOOP,
            TraceFlag.INVALID_REDIRECT,
        }:
            return True
        status = self.final_status
        return status is not None and status >= 400

    @classmethod
    def unreachable(cls, url: str, reason: str, *, response_time_ms: int = 0) -> Trace:
        """A trace for a link that could not be fetched at all."""
        return cls(
            url=url,
            steps=(RedirectStep(index=0, url=url, status_code=None),),
            final_url=url,
            affiliate_tag_present=False,
            confidence=Confidence.LOW,
            issues=(f"Unreachable: {reason}",),
            flags=frozenset({TraceFlag.UNREACHABLE}),
            response_time_ms=response_time_ms,
        )


# ══════════════════════════════════════════════════════════════════════
# LINKS & SIGNALS
# ══════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class TrackedLink:
    """A monetized link owned by a creator. Mutated only after a trace."""

    id: int | None
    owner_id: str
    original_url: str
    last_final_url: str | None = None
    last_checked_at: datetime | None = None
    is_monetized: bool = True
    affiliate_network: str | None = None
    retailer: str | None = None
    product_name: str | None = None
    category: str | None = None
    expected_host: str | None = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    price: float | None = None
    commission_rate: float | None = None
    total_clicks: int = 0
    health_score: int | None = None
    status: LinkStatus = LinkStatus.UNKNOWN
    is_stale: bool = False
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class LinkSignals:
    """Out-of-band signals supplied alongside a trace."""

    stock_status: StockStatus = StockStatus.UNKNOWN
    price: float | None = None
    commission_rate: float | None = None
    expected_host: str | None = None


@dataclass(frozen=True, slots=True)
class LinkHealth:
    """Per-link flags the health scorer works from."""

    link_id: int | None
    is_broken: bool = False
    is_stock_out: bool = False
    is_untagged: bool = False
    redirect_count: int = 0
    response_time_ms: int | None = None
    has_drift: bool = False
    has_low_commission: bool = False


# ══════════════════════════════════════════════════════════════════════
# ISSUES
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class IssueDraft:
    """An issue produced by the detector, not yet persisted."""

    link_id: int | None
    issue_type: IssueType
    severity: IssueSeverity
    title: str
    description: str
    revenue_impact_estimate: float | None = None
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Issue:
    id: int | None
    owner_id: str
    link_id: int | None
    issue_type: IssueType
    severity: IssueSeverity
    title: str
    description: str = ""
    status: IssueStatus = IssueStatus.OPEN
    revenue_impact_estimate: float | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    note: str | None = None
    audit_run_id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_detected_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ISSUE_STATUSES


class _Unset:
    """Marker for a patch field the caller did not supply."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True, slots=True)
class IssuePatch:
    """Partial update of a user-editable issue. Unset fields are left alone."""

    status: IssueStatus | Any = UNSET
    note: str | None | Any = UNSET

    @property
    def is_empty(self) -> bool:
        return self.status is UNSET and self.note is UNSET

    def apply_to(self, issue: Issue, now: datetime | None = None) -> Issue:
        now = now or utcnow()
        if self.status is not UNSET:
            issue.status = IssueStatus(self.status)
            issue.resolved_at = now if issue.status == IssueStatus.RESOLVED else None
        if self.note is not UNSET:
            issue.note = self.note
        issue.updated_at = now
        return issue


@dataclass(slots=True)
class IssueReconciliation:
    """Outcome of matching fresh drafts against a link's stored issues."""

    created: list[Issue] = field(default_factory=list)
    updated: list[Issue] = field(default_factory=list)
    resolved: list[Issue] = field(default_factory=list)

    @property
    def changed(self) -> list[Issue]:
        return [*self.created, *self.updated, *self.resolved]


# ══════════════════════════════════════════════════════════════════════
# COMMISSION
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class CommissionOpportunity:
    """A better-paying program for a link. Superseded, never edited."""

    link_id: int | None
    current_retailer: str
    current_rate: float
    suggested_retailer: str
    suggested_rate: float
    category: str
    estimated_monthly_gain: float
    reasoning: str
    owner_id: str = ""
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    superseded_at: datetime | None = None


# ══════════════════════════════════════════════════════════════════════
# HEALTH SCORE
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class HealthScoreSnapshot:
    """Append-only point of the owner's health time series."""

    owner_id: str
    score: float
    healthy_links_score: float
    critical_issues_penalty: float
    broken_links_penalty: float
    total_links: int = 0
    healthy_links: int = 0
    broken_links: int = 0
    stock_out_links: int = 0
    untagged_links: int = 0
    unknown_links: int = 0
    critical_issues: int = 0
    warning_issues: int = 0
    info_issues: int = 0
    trend: Trend = Trend.STABLE
    score_change: float = 0.0
    estimated_monthly_loss: float = 0.0
    loss_estimate_mode: LossEstimateMode = LossEstimateMode.HEURISTIC
    velocity_per_week: float = 0.0
    forecast_30_days: float = 100.0
    audit_run_id: int | None = None
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class TrendForecast:
    direction: Trend
    velocity_per_week: float
    forecast_30_days: float


# ══════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ══════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class Recommendation:
    id: int | None
    owner_id: str
    action_type: ActionType
    title: str
    description: str = ""
    priority: int = 50
    estimated_revenue_gain: float = 0.0
    issue_id: int | None = None
    opportunity_id: int | None = None
    status: RecommendationStatus = RecommendationStatus.PENDING
    switched_to: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    disposed_at: datetime | None = None


# ══════════════════════════════════════════════════════════════════════
# AUDIT RUNS
# ══════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class AuditSummary:
    links_total: int = 0
    links_audited: int = 0
    links_failed: int = 0
    links_skipped: int = 0
    links_cancelled: int = 0
    issues_created: int = 0
    issues_updated: int = 0
    issues_resolved: int = 0
    opportunities_found: int = 0
    health_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "links_total": self.links_total,
            "links_audited": self.links_audited,
            "links_failed": self.links_failed,
            "links_skipped": self.links_skipped,
            "links_cancelled": self.links_cancelled,
            "issues_created": self.issues_created,
            "issues_updated": self.issues_updated,
            "issues_resolved": self.issues_resolved,
            "opportunities_found": self.opportunities_found,
            "health_score": self.health_score,
        }


@dataclass(slots=True)
class AuditRun:
    """One pass over an owner's links: created → running → completed | failed."""

    id: int | None
    owner_id: str
    run_type: AuditType = AuditType.FULL
    trigger: AuditTrigger = AuditTrigger.MANUAL
    status: AuditRunStatus = AuditRunStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    next_scheduled_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (AuditRunStatus.COMPLETED, AuditRunStatus.FAILED)

    def start(self, now: datetime | None = None) -> None:
        if self.status != AuditRunStatus.CREATED:
            raise InvalidTransitionError("audit run", self.status, AuditRunStatus.RUNNING)
        self.status = AuditRunStatus.RUNNING
        self.started_at = now or utcnow()

    def complete(
        self,
        summary: AuditSummary,
        next_scheduled_at: datetime | None,
        now: datetime | None = None,
    ) -> None:
        if self.status != AuditRunStatus.RUNNING:
            raise InvalidTransitionError("audit run", self.status, AuditRunStatus.COMPLETED)
        self.status = AuditRunStatus.COMPLETED
        self.completed_at = now or utcnow()
        self.summary = summary.to_dict()
        self.next_scheduled_at = next_scheduled_at

    def fail(
        self,
        reason: str,
        summary: AuditSummary | None = None,
        now: datetime | None = None,
    ) -> None:
        # A run that never started may fail straight from CREATED.
        if self.is_finished:
            raise InvalidTransitionError("audit run", self.status, AuditRunStatus.FAILED)
        self.status = AuditRunStatus.FAILED
        self.completed_at = now or utcnow()
        self.error_message = reason
        if summary is not None:
            self.summary = summary.to_dict()
