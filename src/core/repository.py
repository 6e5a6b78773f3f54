"""
PostgreSQL implementation of the audit engine's ``LinkRegistry``.

One session per operation. Rows never leave this module: every method
returns the plain dataclasses from ``workers.link_audit.models``.
``SQLAlchemyError`` is re-raised as ``PersistenceError`` so the engine
never has to know about the database.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.models import (
    AuditRunRow,
    CommissionOpportunityRow,
    CommissionRateRow,
    HealthScoreSnapshotRow,
    LinkIssueRow,
    LinkTraceRow,
    RecommendationRow,
    TrackedLinkRow,
)
from workers.link_audit.errors import NotFoundError, PersistenceError
from workers.link_audit.models import (
    AuditRun,
    AuditRunStatus,
    CommissionOpportunity,
    HealthScoreSnapshot,
    Issue,
    IssuePatch,
    IssueStatus,
    LinkStatus,
    Recommendation,
    RecommendationStatus,
    RedirectStep,
    Trace,
    TraceFlag,
    TrackedLink,
    utcnow,
)
from workers.link_audit.registry import LinkAuditWrite

logger = logging.getLogger(__name__)


def _float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


# ══════════════════════════════════════════════════════════════════════
# ROW ↔ DOMAIN MAPPING
# ══════════════════════════════════════════════════════════════════════

def _to_link(row: TrackedLinkRow) -> TrackedLink:
    return TrackedLink(
        id=row.id,
        owner_id=row.owner_id,
        original_url=row.original_url,
        last_final_url=row.last_final_url,
        last_checked_at=row.last_checked_at,
        is_monetized=row.is_monetized,
        affiliate_network=row.affiliate_network,
        retailer=row.retailer,
        product_name=row.product_name,
        category=row.category,
        expected_host=row.expected_host,
        stock_status=row.stock_status,
        price=_float(row.price),
        commission_rate=_float(row.commission_rate),
        total_clicks=row.total_clicks or 0,
        health_score=row.health_score,
        status=row.status,
        is_stale=row.is_stale,
        is_active=row.is_active,
    )


def _steps_to_json(steps: Sequence[RedirectStep]) -> list[dict]:
    return [
        {
            "index": s.index,
            "url": s.url,
            "status_code": s.status_code,
            "has_affiliate_tag": s.has_affiliate_tag,
            "affiliate_params": list(s.affiliate_params),
        }
        for s in steps
    ]


def _to_trace(row: LinkTraceRow) -> Trace:
    return Trace(
        url=row.url,
        steps=tuple(
            RedirectStep(
                index=s["index"],
                url=s["url"],
                status_code=s.get("status_code"),
                has_affiliate_tag=s.get("has_affiliate_tag", False),
                affiliate_params=tuple(s.get("affiliate_params", ())),
            )
            for s in row.steps
        ),
        final_url=row.final_url,
        affiliate_tag_present=row.affiliate_tag_present,
        confidence=row.confidence,
        issues=tuple(row.issues or ()),
        flags=frozenset(TraceFlag(f) for f in row.flags or ()),
        network=row.network,
        cookie_window_days=row.cookie_window_days,
        response_time_ms=row.response_time_ms,
        checked_at=row.checked_at,
        link_id=row.link_id,
    )


def _to_issue(row: LinkIssueRow) -> Issue:
    return Issue(
        id=row.id,
        owner_id=row.owner_id,
        link_id=row.link_id,
        issue_type=row.issue_type,
        severity=row.severity,
        title=row.title,
        description=row.description or "",
        status=row.status,
        revenue_impact_estimate=_float(row.revenue_impact_estimate),
        evidence=dict(row.evidence or {}),
        note=row.note,
        audit_run_id=row.audit_run_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_detected_at=row.last_detected_at,
        resolved_at=row.resolved_at,
    )


def _issue_to_row(issue: Issue, row: LinkIssueRow) -> LinkIssueRow:
    row.owner_id = issue.owner_id
    row.link_id = issue.link_id
    row.audit_run_id = issue.audit_run_id
    row.issue_type = issue.issue_type
    row.severity = issue.severity
    row.status = issue.status
    row.title = issue.title
    row.description = issue.description
    row.revenue_impact_estimate = issue.revenue_impact_estimate
    row.evidence = dict(issue.evidence)
    row.note = issue.note
    row.created_at = issue.created_at
    row.updated_at = issue.updated_at
    row.last_detected_at = issue.last_detected_at
    row.resolved_at = issue.resolved_at
    return row


def _to_opportunity(row: CommissionOpportunityRow) -> CommissionOpportunity:
    return CommissionOpportunity(
        id=row.id,
        owner_id=row.owner_id,
        link_id=row.link_id,
        current_retailer=row.current_retailer,
        current_rate=float(row.current_rate),
        suggested_retailer=row.suggested_retailer,
        suggested_rate=float(row.suggested_rate),
        category=row.category,
        estimated_monthly_gain=float(row.estimated_monthly_gain),
        reasoning=row.reasoning,
        created_at=row.created_at,
        superseded_at=row.superseded_at,
    )


def _same_opportunity(a: CommissionOpportunity, b: CommissionOpportunity) -> bool:
    return (
        a.suggested_retailer == b.suggested_retailer
        and a.suggested_rate == b.suggested_rate
        and a.current_rate == b.current_rate
        and a.estimated_monthly_gain == b.estimated_monthly_gain
    )


_SNAPSHOT_FIELDS = (
    "owner_id", "audit_run_id", "total_links", "healthy_links", "broken_links",
    "stock_out_links", "untagged_links", "unknown_links", "critical_issues",
    "warning_issues", "info_issues", "trend", "loss_estimate_mode", "created_at",
)
_SNAPSHOT_DECIMALS = (
    "score", "healthy_links_score", "critical_issues_penalty", "broken_links_penalty",
    "score_change", "velocity_per_week", "forecast_30_days", "estimated_monthly_loss",
)


def _to_snapshot(row: HealthScoreSnapshotRow) -> HealthScoreSnapshot:
    values = {name: getattr(row, name) for name in _SNAPSHOT_FIELDS}
    values.update({name: float(getattr(row, name)) for name in _SNAPSHOT_DECIMALS})
    return HealthScoreSnapshot(id=row.id, **values)


def _to_run(row: AuditRunRow) -> AuditRun:
    return AuditRun(
        id=row.id,
        owner_id=row.owner_id,
        run_type=row.run_type,
        trigger=row.trigger,
        status=row.status,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        summary=dict(row.summary or {}),
        error_message=row.error_message,
        next_scheduled_at=row.next_scheduled_at,
    )


def _run_to_row(run: AuditRun, row: AuditRunRow) -> AuditRunRow:
    row.owner_id = run.owner_id
    row.run_type = run.run_type
    row.trigger = run.trigger
    row.status = run.status
    row.created_at = run.created_at
    row.started_at = run.started_at
    row.completed_at = run.completed_at
    row.summary = dict(run.summary)
    row.error_message = run.error_message
    row.next_scheduled_at = run.next_scheduled_at
    return row


def _to_recommendation(row: RecommendationRow) -> Recommendation:
    return Recommendation(
        id=row.id,
        owner_id=row.owner_id,
        action_type=row.action_type,
        title=row.title,
        description=row.description or "",
        priority=row.priority,
        estimated_revenue_gain=float(row.estimated_revenue_gain or 0),
        issue_id=row.issue_id,
        opportunity_id=row.opportunity_id,
        status=row.status,
        switched_to=row.switched_to,
        created_at=row.created_at,
        disposed_at=row.disposed_at,
    )


def _recommendation_to_row(rec: Recommendation, row: RecommendationRow) -> RecommendationRow:
    row.owner_id = rec.owner_id
    row.action_type = rec.action_type
    row.title = rec.title
    row.description = rec.description
    row.priority = rec.priority
    row.estimated_revenue_gain = rec.estimated_revenue_gain
    row.issue_id = rec.issue_id
    row.opportunity_id = rec.opportunity_id
    row.status = rec.status
    row.switched_to = rec.switched_to
    row.created_at = rec.created_at
    row.disposed_at = rec.disposed_at
    return row


# ══════════════════════════════════════════════════════════════════════
# REGISTRY
# ══════════════════════════════════════════════════════════════════════

class SqlLinkRegistry:
    """
    Usage:
        from core.database import async_session_factory
        registry = SqlLinkRegistry(async_session_factory)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, *, write: bool = False) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                if write:
                    async with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Registry operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc

    # ── Links & traces ────────────────────────────────────────────────

    async def list_links(self, owner_id: str, *, active_only: bool = True) -> list[TrackedLink]:
        stmt = select(TrackedLinkRow).where(TrackedLinkRow.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(TrackedLinkRow.is_active.is_(True))
        async with self._session() as session:
            result = await session.execute(stmt.order_by(TrackedLinkRow.id))
            return [_to_link(row) for row in result.scalars()]

    async def get_link(self, link_id: int) -> TrackedLink | None:
        async with self._session() as session:
            row = await session.get(TrackedLinkRow, link_id)
            return _to_link(row) if row else None

    async def mark_link_stale(self, link_id: int, reason: str) -> None:
        async with self._session(write=True) as session:
            await session.execute(
                update(TrackedLinkRow)
                .where(TrackedLinkRow.id == link_id)
                .values(is_stale=True, stale_reason=reason, status=LinkStatus.UNKNOWN)
            )

    async def latest_traces(self, owner_id: str) -> dict[int, Trace]:
        stmt = (
            select(LinkTraceRow)
            .join(TrackedLinkRow, TrackedLinkRow.id == LinkTraceRow.link_id)
            .where(TrackedLinkRow.owner_id == owner_id)
            .order_by(LinkTraceRow.link_id, LinkTraceRow.checked_at.desc(), LinkTraceRow.id.desc())
            .distinct(LinkTraceRow.link_id)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return {row.link_id: _to_trace(row) for row in result.scalars()}

    async def trace_history(self, link_id: int, limit: int = 20) -> list[Trace]:
        stmt = (
            select(LinkTraceRow)
            .where(LinkTraceRow.link_id == link_id)
            .order_by(LinkTraceRow.checked_at.desc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_trace(row) for row in result.scalars()]

    async def save_link_audit(self, write: LinkAuditWrite) -> LinkAuditWrite:
        link, trace = write.link, write.trace
        async with self._session(write=True) as session:
            link_row = await session.get(TrackedLinkRow, link.id)
            if link_row is None:
                raise PersistenceError(f"Link {link.id} no longer exists")

            link_row.last_final_url = link.last_final_url
            link_row.last_checked_at = link.last_checked_at
            link_row.affiliate_network = link.affiliate_network
            link_row.stock_status = link.stock_status
            link_row.health_score = link.health_score
            link_row.status = link.status
            link_row.is_stale = False
            link_row.stale_reason = None

            session.add(LinkTraceRow(
                link_id=link.id,
                url=trace.url,
                final_url=trace.final_url,
                steps=_steps_to_json(trace.steps),
                affiliate_tag_present=trace.affiliate_tag_present,
                confidence=trace.confidence,
                issues=list(trace.issues),
                flags=sorted(str(f) for f in trace.flags),
                network=trace.network,
                cookie_window_days=trace.cookie_window_days,
                response_time_ms=trace.response_time_ms,
                checked_at=trace.checked_at,
            ))

            recon = write.reconciliation
            # Resolve first so a re-created type never collides with the active-issue index.
            for issue in [*recon.resolved, *recon.updated]:
                row = await session.get(LinkIssueRow, issue.id)
                if row is None:
                    raise PersistenceError(f"Issue {issue.id} no longer exists")
                _issue_to_row(issue, row)
            await session.flush()

            new_rows = [(issue, _issue_to_row(issue, LinkIssueRow())) for issue in recon.created]
            session.add_all(row for _, row in new_rows)

            write.opportunity = await self._replace_opportunity(session, link, write.opportunity)

            await session.flush()
            for issue, row in new_rows:
                issue.id = row.id
        return write

    async def _replace_opportunity(
        self,
        session: AsyncSession,
        link: TrackedLink,
        opportunity: CommissionOpportunity | None,
    ) -> CommissionOpportunity | None:
        result = await session.execute(
            select(CommissionOpportunityRow).where(
                CommissionOpportunityRow.link_id == link.id,
                CommissionOpportunityRow.superseded_at.is_(None),
            )
        )
        current = [_to_opportunity(row) for row in result.scalars()]

        if opportunity is not None and len(current) == 1 and _same_opportunity(current[0], opportunity):
            return current[0]

        if current:
            await session.execute(
                update(CommissionOpportunityRow)
                .where(
                    CommissionOpportunityRow.link_id == link.id,
                    CommissionOpportunityRow.superseded_at.is_(None),
                )
                .values(superseded_at=utcnow())
            )
        if opportunity is None:
            return None

        row = CommissionOpportunityRow(
            owner_id=link.owner_id,
            link_id=link.id,
            current_retailer=opportunity.current_retailer,
            current_rate=opportunity.current_rate,
            suggested_retailer=opportunity.suggested_retailer,
            suggested_rate=opportunity.suggested_rate,
            category=opportunity.category,
            estimated_monthly_gain=opportunity.estimated_monthly_gain,
            reasoning=opportunity.reasoning,
            created_at=opportunity.created_at,
        )
        session.add(row)
        await session.flush()
        return replace(opportunity, id=row.id, owner_id=link.owner_id)

    # ── Issues ────────────────────────────────────────────────────────

    async def list_issues(
        self,
        owner_id: str,
        *,
        statuses: Iterable[IssueStatus] | None = None,
        link_id: int | None = None,
    ) -> list[Issue]:
        stmt = select(LinkIssueRow).where(LinkIssueRow.owner_id == owner_id)
        if statuses is not None:
            stmt = stmt.where(LinkIssueRow.status.in_(list(statuses)))
        if link_id is not None:
            stmt = stmt.where(LinkIssueRow.link_id == link_id)
        async with self._session() as session:
            result = await session.execute(stmt.order_by(LinkIssueRow.created_at, LinkIssueRow.id))
            return [_to_issue(row) for row in result.scalars()]

    async def get_issue(self, issue_id: int) -> Issue | None:
        async with self._session() as session:
            row = await session.get(LinkIssueRow, issue_id)
            return _to_issue(row) if row else None

    async def update_issue(self, issue_id: int, patch: IssuePatch) -> Issue:
        async with self._session(write=True) as session:
            row = await session.get(LinkIssueRow, issue_id)
            if row is None:
                raise NotFoundError(f"Issue {issue_id} not found")
            issue = patch.apply_to(_to_issue(row))
            _issue_to_row(issue, row)
        return issue

    # ── Commission ────────────────────────────────────────────────────

    async def list_opportunities(self, owner_id: str, *, current_only: bool = True) -> list[CommissionOpportunity]:
        stmt = select(CommissionOpportunityRow).where(CommissionOpportunityRow.owner_id == owner_id)
        if current_only:
            stmt = stmt.where(CommissionOpportunityRow.superseded_at.is_(None))
        async with self._session() as session:
            result = await session.execute(
                stmt.order_by(CommissionOpportunityRow.estimated_monthly_gain.desc())
            )
            return [_to_opportunity(row) for row in result.scalars()]

    async def get_opportunity(self, opportunity_id: int) -> CommissionOpportunity | None:
        async with self._session() as session:
            row = await session.get(CommissionOpportunityRow, opportunity_id)
            return _to_opportunity(row) if row else None

    async def load_commission_rates(self) -> list[tuple[str, str, float]]:
        async with self._session() as session:
            result = await session.execute(select(CommissionRateRow))
            return [(row.retailer, row.category, float(row.rate)) for row in result.scalars()]

    # ── Health snapshots ──────────────────────────────────────────────

    async def add_snapshot(self, snapshot: HealthScoreSnapshot) -> HealthScoreSnapshot:
        values = {name: getattr(snapshot, name) for name in (*_SNAPSHOT_FIELDS, *_SNAPSHOT_DECIMALS)}
        async with self._session(write=True) as session:
            row = HealthScoreSnapshotRow(**values)
            session.add(row)
            await session.flush()
            return replace(snapshot, id=row.id)

    async def latest_snapshot(self, owner_id: str) -> HealthScoreSnapshot | None:
        snapshots = await self.list_snapshots(owner_id, limit=1)
        return snapshots[-1] if snapshots else None

    async def list_snapshots(self, owner_id: str, *, limit: int = 30) -> list[HealthScoreSnapshot]:
        """Latest ``limit`` snapshots, oldest first."""
        stmt = (
            select(HealthScoreSnapshotRow)
            .where(HealthScoreSnapshotRow.owner_id == owner_id)
            .order_by(HealthScoreSnapshotRow.created_at.desc(), HealthScoreSnapshotRow.id.desc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_snapshot(row) for row in reversed(result.scalars().all())]

    # ── Audit runs ────────────────────────────────────────────────────

    async def create_run(self, run: AuditRun) -> AuditRun:
        async with self._session(write=True) as session:
            row = _run_to_row(run, AuditRunRow())
            session.add(row)
            await session.flush()
            run.id = row.id
        return run

    async def update_run(self, run: AuditRun) -> AuditRun:
        async with self._session(write=True) as session:
            row = await session.get(AuditRunRow, run.id)
            if row is None:
                raise NotFoundError(f"Audit run {run.id} not found")
            _run_to_row(run, row)
        return run

    async def get_run(self, run_id: int) -> AuditRun | None:
        async with self._session() as session:
            row = await session.get(AuditRunRow, run_id)
            return _to_run(row) if row else None

    async def get_running_run(self, owner_id: str) -> AuditRun | None:
        stmt = select(AuditRunRow).where(
            AuditRunRow.owner_id == owner_id,
            AuditRunRow.status == AuditRunStatus.RUNNING,
        )
        async with self._session() as session:
            row = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            return _to_run(row) if row else None

    async def latest_completed_run(self, owner_id: str) -> AuditRun | None:
        stmt = (
            select(AuditRunRow)
            .where(AuditRunRow.owner_id == owner_id, AuditRunRow.status == AuditRunStatus.COMPLETED)
            .order_by(AuditRunRow.completed_at.desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_run(row) if row else None

    async def list_runs(self, owner_id: str, *, limit: int = 20) -> list[AuditRun]:
        stmt = (
            select(AuditRunRow)
            .where(AuditRunRow.owner_id == owner_id)
            .order_by(AuditRunRow.created_at.desc(), AuditRunRow.id.desc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_run(row) for row in result.scalars()]

    async def owners_due(self, now: datetime) -> list[str]:
        """Owners with active links whose next scheduled audit has passed (or who never had one)."""
        schedule = (
            select(
                AuditRunRow.owner_id.label("owner_id"),
                func.max(AuditRunRow.next_scheduled_at).label("next_at"),
            )
            .where(AuditRunRow.status == AuditRunStatus.COMPLETED)
            .group_by(AuditRunRow.owner_id)
            .subquery()
        )
        stmt = (
            select(TrackedLinkRow.owner_id)
            .distinct()
            .outerjoin(schedule, schedule.c.owner_id == TrackedLinkRow.owner_id)
            .where(
                TrackedLinkRow.is_active.is_(True),
                or_(schedule.c.next_at.is_(None), schedule.c.next_at <= now),
            )
            .order_by(TrackedLinkRow.owner_id)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    # ── Recommendations ───────────────────────────────────────────────

    async def list_recommendations(
        self,
        owner_id: str,
        *,
        statuses: Sequence[RecommendationStatus] | None = None,
    ) -> list[Recommendation]:
        stmt = select(RecommendationRow).where(RecommendationRow.owner_id == owner_id)
        if statuses is not None:
            stmt = stmt.where(RecommendationRow.status.in_(list(statuses)))
        async with self._session() as session:
            result = await session.execute(
                stmt.order_by(RecommendationRow.priority.desc(), RecommendationRow.created_at)
            )
            return [_to_recommendation(row) for row in result.scalars()]

    async def get_recommendation(self, recommendation_id: int) -> Recommendation | None:
        async with self._session() as session:
            row = await session.get(RecommendationRow, recommendation_id)
            return _to_recommendation(row) if row else None

    async def save_recommendation(self, recommendation: Recommendation) -> Recommendation:
        async with self._session(write=True) as session:
            if recommendation.id is None:
                row = _recommendation_to_row(recommendation, RecommendationRow())
                session.add(row)
            else:
                row = await session.get(RecommendationRow, recommendation.id)
                if row is None:
                    raise NotFoundError(f"Recommendation {recommendation.id} not found")
                _recommendation_to_row(recommendation, row)
            await session.flush()
            recommendation.id = row.id
        return recommendation
