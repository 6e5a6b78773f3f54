"""
Link registry interface consumed by the audit engine.

The engine never talks to the database directly: it reads and writes
plain domain objects through a ``LinkRegistry``. ``core.repository``
provides the PostgreSQL implementation; tests use an in-memory one.

Every method may raise ``PersistenceError``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from workers.link_audit.models import (
    AuditRun,
    CommissionOpportunity,
    HealthScoreSnapshot,
    Issue,
    IssuePatch,
    IssueReconciliation,
    IssueStatus,
    Recommendation,
    RecommendationStatus,
    Trace,
    TrackedLink,
)


@dataclass(slots=True)
class LinkAuditWrite:
    """
    Everything one audited link changes, saved in a single transaction.

    ``opportunity`` replaces the link's current opportunity; when it is
    None any current opportunity is superseded without a successor.
    """

    link: TrackedLink
    trace: Trace
    reconciliation: IssueReconciliation = field(default_factory=IssueReconciliation)
    opportunity: CommissionOpportunity | None = None


class LinkRegistry(Protocol):
    # ── Links & traces ────────────────────────────────────────────────

    async def list_links(self, owner_id: str, *, active_only: bool = True) -> list[TrackedLink]: ...

    async def get_link(self, link_id: int) -> TrackedLink | None: ...

    async def mark_link_stale(self, link_id: int, reason: str) -> None: ...

    async def latest_traces(self, owner_id: str) -> dict[int, Trace]: ...

    async def trace_history(self, link_id: int, limit: int = 20) -> list[Trace]: ...

    async def save_link_audit(self, write: LinkAuditWrite) -> LinkAuditWrite: ...

    # ── Issues ────────────────────────────────────────────────────────

    async def list_issues(
        self,
        owner_id: str,
        *,
        statuses: Iterable[IssueStatus] | None = None,
        link_id: int | None = None,
    ) -> list[Issue]: ...

    async def get_issue(self, issue_id: int) -> Issue | None: ...

    async def update_issue(self, issue_id: int, patch: IssuePatch) -> Issue: ...

    # ── Commission ────────────────────────────────────────────────────

    async def list_opportunities(self, owner_id: str, *, current_only: bool = True) -> list[CommissionOpportunity]: ...

    async def get_opportunity(self, opportunity_id: int) -> CommissionOpportunity | None: ...

    async def load_commission_rates(self) -> list[tuple[str, str, float]]: ...

    # ── Health snapshots ──────────────────────────────────────────────

    async def add_snapshot(self, snapshot: HealthScoreSnapshot) -> HealthScoreSnapshot: ...

    async def latest_snapshot(self, owner_id: str) -> HealthScoreSnapshot | None: ...

    async def list_snapshots(self, owner_id: str, *, limit: int = 30) -> list[HealthScoreSnapshot]: ...

    # ── Audit runs ────────────────────────────────────────────────────

    async def create_run(self, run: AuditRun) -> AuditRun: ...

    async def update_run(self, run: AuditRun) -> AuditRun: ...

    async def get_run(self, run_id: int) -> AuditRun | None: ...

    async def get_running_run(self, owner_id: str) -> AuditRun | None: ...

    async def latest_completed_run(self, owner_id: str) -> AuditRun | None: ...

    async def list_runs(self, owner_id: str, *, limit: int = 20) -> list[AuditRun]: ...

    async def owners_due(self, now: datetime) -> list[str]: ...

    # ── Recommendations ───────────────────────────────────────────────

    async def list_recommendations(
        self,
        owner_id: str,
        *,
        statuses: Sequence[RecommendationStatus] | None = None,
    ) -> list[Recommendation]: ...

    async def get_recommendation(self, recommendation_id: int) -> Recommendation | None: ...

    async def save_recommendation(self, recommendation: Recommendation) -> Recommendation: ...
