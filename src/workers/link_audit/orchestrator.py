"""
Audit Orchestrator
==================
Runs one audit pass over an owner's tracked links:

1. Guards: one run per owner at a time, minimum interval unless ``force``
2. Creates the AuditRun (created → running)
3. Fans out Tracer → Detector + Optimizer per link, at most
   ``concurrency`` links in flight, each trace under its own timeout
4. Persists each link's results in one transaction
5. After every link is written, scores the whole population and appends
   a HealthScoreSnapshot
6. Surfaces recommendations, completes the run, alerts on bad news

A failure on one link marks that link stale and the run goes on. A run
that cannot start (no owner, no links) is marked failed. Setting the
cancel event (``cancel(owner_id)``, or cancelling the task running the
audit) stops dispatching new links; in-flight ones finish, and the run
is marked failed with a partial summary.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

import httpx

from workers.link_audit.actions import ActionManager
from workers.link_audit.commission_optimizer import CommissionOptimizer, RateTable
from workers.link_audit.errors import AuditAlreadyRunningError, MalformedLinkError, PersistenceError
from workers.link_audit.health_scorer import HealthScorer, build_link_health, score_link, top_issues
from workers.link_audit.issue_detector import IssueDetector, reconcile_issues
from workers.link_audit.models import (
    ACTIVE_ISSUE_STATUSES,
    AuditRun,
    AuditRunStatus,
    AuditSummary,
    AuditTrigger,
    AuditType,
    HealthScoreSnapshot,
    Issue,
    IssueSeverity,
    IssueType,
    LinkHealth,
    LinkSignals,
    LinkStatus,
    Recommendation,
    StockStatus,
    Trace,
    TrackedLink,
    Trend,
    utcnow,
)
from workers.link_audit.registry import LinkAuditWrite, LinkRegistry
from workers.link_audit.stock_probe import StockProbe
from workers.link_audit.tracer import RedirectTracer

logger = logging.getLogger(__name__)

# (owner_id, snapshot, top open issues) → awaitable
Notifier = Callable[[str, HealthScoreSnapshot, list[Issue]], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    concurrency: int = 5
    trace_timeout: float = 30.0
    min_interval: timedelta = timedelta(minutes=60)
    schedule_interval: timedelta = timedelta(hours=24)
    stale_run_timeout: timedelta = timedelta(minutes=60)
    incremental_max_age: timedelta = timedelta(hours=24)
    history_points: int = 30


@dataclass(frozen=True, slots=True)
class AuditRequest:
    owner_id: str
    run_type: AuditType = AuditType.FULL
    trigger: AuditTrigger = AuditTrigger.MANUAL
    force: bool = False


@dataclass(slots=True)
class AuditOutcome:
    run: AuditRun | None
    summary: AuditSummary = field(default_factory=AuditSummary)
    snapshot: HealthScoreSnapshot | None = None
    recommendations: list[Recommendation] = field(default_factory=list)
    skipped: bool = False
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.run is not None and self.run.status == AuditRunStatus.COMPLETED


def link_status_for(health: LinkHealth, score: int) -> LinkStatus:
    if health.is_broken:
        return LinkStatus.BROKEN
    if health.is_stock_out:
        return LinkStatus.STOCK_OUT
    if health.is_untagged:
        return LinkStatus.UNTAGGED
    if score < 80:
        return LinkStatus.NEEDS_ATTENTION
    return LinkStatus.HEALTHY


class AuditOrchestrator:
    """
    Usage:
        orchestrator = build_orchestrator(SqlLinkRegistry(async_session_factory))
        outcome = await orchestrator.run(AuditRequest(owner_id="creator-42", force=True))
    """

    def __init__(
        self,
        registry: LinkRegistry,
        *,
        tracer: RedirectTracer | None = None,
        detector: IssueDetector | None = None,
        optimizer: CommissionOptimizer | None = None,
        scorer: HealthScorer | None = None,
        actions: ActionManager | None = None,
        config: OrchestratorConfig | None = None,
        stock_probe: StockProbe | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.tracer = tracer or RedirectTracer()
        self.detector = detector or IssueDetector()
        self.optimizer = optimizer or CommissionOptimizer()
        self.scorer = scorer or HealthScorer()
        self.actions = actions or ActionManager(registry)
        self.config = config or OrchestratorConfig()
        self.stock_probe = stock_probe
        self.notifier = notifier
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ══════════════════════════════════════════════════════════════════
    # ENTRY POINT
    # ══════════════════════════════════════════════════════════════════

    async def run(self, request: AuditRequest, cancel: asyncio.Event | None = None) -> AuditOutcome:
        owner_id = request.owner_id.strip()
        if not owner_id:
            return await self._fail_to_start(request, "missing owner id")

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        if lock.locked():
            raise AuditAlreadyRunningError(owner_id)

        if cancel is None:
            cancel = asyncio.Event()
        try:
            async with lock:
                self._cancel_events[owner_id] = cancel
                return await self._run_locked(owner_id, request, cancel)
        finally:
            self._cancel_events.pop(owner_id, None)
            # Contenders are rejected rather than queued, so a released lock has no waiters.
            if not lock.locked() and self._locks.get(owner_id) is lock:
                del self._locks[owner_id]

    def cancel(self, owner_id: str) -> bool:
        """Stop the in-process run for ``owner_id`` from dispatching more links."""
        event = self._cancel_events.get(owner_id)
        if event is None:
            return False
        event.set()
        logger.info("🛑 Cancellation requested for %s", owner_id)
        return True

    async def _run_locked(self, owner_id: str, request: AuditRequest, cancel: asyncio.Event) -> AuditOutcome:
        await self._check_running(owner_id)

        if not request.force:
            previous = await self._recent_run(owner_id)
            if previous is not None:
                logger.info(
                    "⏭️  Audit for %s skipped: run #%s finished at %s",
                    owner_id, previous.id, previous.completed_at,
                )
                return AuditOutcome(
                    run=previous,
                    skipped=True,
                    reason="last audit is still within the minimum interval",
                )

        run = await self.registry.create_run(
            AuditRun(id=None, owner_id=owner_id, run_type=request.run_type, trigger=request.trigger)
        )
        links = await self.registry.list_links(owner_id)
        if not links:
            return await self._fail_run(run, "no links to audit", AuditSummary())

        run.start(self.clock())
        await self.registry.update_run(run)
        logger.info("🔍 Audit run #%s started for %s (%s, %d links)", run.id, owner_id, run.run_type, len(links))

        summary = AuditSummary()
        try:
            return await self._execute(run, links, summary, cancel)
        except PersistenceError as exc:
            logger.error("Audit run #%s failed: %s", run.id, exc)
            return await self._fail_run(run, f"persistence failure: {exc}", summary)
        except asyncio.CancelledError:
            await self._fail_run(run, "cancelled", summary)
            raise
        except Exception as exc:
            logger.exception("Audit run #%s crashed", run.id)
            await self._fail_run(run, f"unexpected error: {exc!r}", summary)
            raise

    # ══════════════════════════════════════════════════════════════════
    # RUN PHASES
    # ══════════════════════════════════════════════════════════════════

    async def _execute(
        self,
        run: AuditRun,
        links: list[TrackedLink],
        summary: AuditSummary,
        cancel: asyncio.Event,
    ) -> AuditOutcome:
        owner_id = run.owner_id
        selected = await self._select_links(run, links)
        summary.links_total = len(selected)

        rows = await self.registry.load_commission_rates()
        if rows:
            self.optimizer.rate_table = RateTable.from_rows(rows)

        existing: dict[int | None, list[Issue]] = defaultdict(list)
        for issue in await self.registry.list_issues(owner_id):
            existing[issue.link_id].append(issue)

        new_critical: list[Issue] = []
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async with self.tracer.build_client() as client:
            work = asyncio.gather(*(
                self._audit_link(run, link, existing[link.id], client, semaphore, summary, new_critical, cancel)
                for link in selected
            ))
            try:
                await asyncio.shield(work)
            except asyncio.CancelledError:
                # Interrupted from outside (job abort or timeout): stop dispatching
                # and let the links already in flight finish before giving up.
                cancel.set()
                logger.warning("Audit run #%s interrupted, draining in-flight links", run.id)
                await work
                raise

        if cancel.is_set():
            logger.warning(
                "Audit run #%s cancelled after %d/%d links",
                run.id, summary.links_audited, summary.links_total,
            )
            return await self._fail_run(run, "cancelled", summary)

        # Every per-link write is done; score the whole population.
        snapshot = await self._score(run)
        summary.health_score = snapshot.score

        open_issues = await self.registry.list_issues(owner_id, statuses=ACTIVE_ISSUE_STATUSES)
        opportunities = await self.registry.list_opportunities(owner_id)
        recommendations = await self.actions.surface(owner_id, open_issues, opportunities)

        now = self.clock()
        run.complete(summary, now + self.config.schedule_interval, now)
        await self.registry.update_run(run)
        logger.info(
            "🏁 Audit run #%s completed: %d audited, %d failed, score %.2f (%s)",
            run.id, summary.links_audited, summary.links_failed, snapshot.score, snapshot.trend,
        )

        if self.notifier is not None and (new_critical or snapshot.trend == Trend.DECLINING):
            await self.notifier(owner_id, snapshot, top_issues(open_issues))

        return AuditOutcome(run=run, summary=summary, snapshot=snapshot, recommendations=recommendations)

    async def _select_links(self, run: AuditRun, links: list[TrackedLink]) -> list[TrackedLink]:
        if run.run_type == AuditType.INCREMENTAL:
            cutoff = self.clock() - self.config.incremental_max_age
            return [
                link for link in links
                if link.last_checked_at is None or link.is_stale or link.last_checked_at < cutoff
            ]
        if run.run_type == AuditType.EMERGENCY:
            critical = await self.registry.list_issues(run.owner_id, statuses=ACTIVE_ISSUE_STATUSES)
            flagged = {i.link_id for i in critical if i.severity == IssueSeverity.CRITICAL}
            return [link for link in links if link.status == LinkStatus.BROKEN or link.id in flagged]
        return list(links)

    async def _audit_link(
        self,
        run: AuditRun,
        link: TrackedLink,
        existing: list[Issue],
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        summary: AuditSummary,
        new_critical: list[Issue],
        cancel: asyncio.Event,
    ) -> None:
        async with semaphore:
            if cancel.is_set():
                summary.links_cancelled += 1
                return

            timeout = self.config.trace_timeout
            try:
                trace = await asyncio.wait_for(self.tracer.trace(link.original_url, client), timeout)
            except MalformedLinkError as exc:
                logger.warning("Skipping link #%s: %s", link.id, exc)
                summary.links_skipped += 1
                await self._mark_stale(link, str(exc))
                return
            except asyncio.TimeoutError:
                logger.warning("Trace for link #%s timed out after %.1fs", link.id, timeout)
                trace = Trace.unreachable(
                    link.original_url,
                    f"trace timed out after {timeout:g}s",
                    response_time_ms=int(timeout * 1000),
                )
            except Exception:
                logger.exception("Unexpected error tracing link #%s", link.id)
                summary.links_failed += 1
                await self._mark_stale(link, "unexpected error while tracing")
                return

            try:
                created = await self._record(run, link, trace, existing, client, summary)
            except PersistenceError as exc:
                logger.warning("Could not save audit of link #%s, will retry next run: %s", link.id, exc)
                summary.links_failed += 1
                await self._mark_stale(link, str(exc))
                return
            except Exception:
                logger.exception("Unexpected error auditing link #%s", link.id)
                summary.links_failed += 1
                await self._mark_stale(link, "unexpected error during audit")
                return

            summary.links_audited += 1
            new_critical.extend(i for i in created if i.severity == IssueSeverity.CRITICAL)

    async def _record(
        self,
        run: AuditRun,
        link: TrackedLink,
        trace: Trace,
        existing: list[Issue],
        client: httpx.AsyncClient,
        summary: AuditSummary,
    ) -> list[Issue]:
        stock = link.stock_status
        if stock == StockStatus.UNKNOWN and self.stock_probe is not None and not trace.is_broken:
            stock = await self.stock_probe.check(client, trace.final_url)

        signals = LinkSignals(
            stock_status=stock,
            price=link.price,
            commission_rate=link.commission_rate,
            expected_host=link.expected_host,
        )
        opportunity = self.optimizer.evaluate_link(link)
        drafts = self.detector.detect(link.id, trace, signals, opportunity, is_monetized=link.is_monetized)

        now = self.clock()
        # Work on copies so a failed write leaves the cached issues untouched.
        reconciliation = reconcile_issues(
            run.owner_id,
            link.id,
            drafts,
            [replace(issue) for issue in existing],
            audit_run_id=run.id,
            now=now,
        )

        open_types: set[IssueType] = {i.issue_type for i in reconciliation.created + reconciliation.updated}
        audited = replace(link, stock_status=stock)
        health = build_link_health(audited, trace, open_types)
        score = score_link(health)

        audited.last_final_url = trace.final_url
        audited.last_checked_at = now
        audited.affiliate_network = trace.network or link.affiliate_network
        audited.health_score = score
        audited.status = link_status_for(health, score)
        audited.is_stale = False

        await self.registry.save_link_audit(LinkAuditWrite(
            link=audited,
            trace=replace(trace, link_id=link.id),
            reconciliation=reconciliation,
            opportunity=opportunity,
        ))

        summary.issues_created += len(reconciliation.created)
        summary.issues_updated += len(reconciliation.updated)
        summary.issues_resolved += len(reconciliation.resolved)
        if opportunity is not None:
            summary.opportunities_found += 1
        return reconciliation.created

    async def _score(self, run: AuditRun) -> HealthScoreSnapshot:
        owner_id = run.owner_id
        links = await self.registry.list_links(owner_id)
        traces = await self.registry.latest_traces(owner_id)
        open_issues = await self.registry.list_issues(owner_id, statuses=ACTIVE_ISSUE_STATUSES)

        types_by_link: dict[int | None, set[IssueType]] = defaultdict(set)
        for issue in open_issues:
            types_by_link[issue.link_id].add(issue.issue_type)

        population: list[LinkHealth] = []
        unknown = 0
        for link in links:
            trace = traces.get(link.id) if link.id is not None else None
            if trace is None or link.is_stale:
                unknown += 1
                continue
            population.append(build_link_health(link, trace, types_by_link[link.id]))

        known_ids = {link.id for link in links if link.id in traces and not link.is_stale}
        scored_issues = [i for i in open_issues if i.link_id in known_ids]

        previous = await self.registry.latest_snapshot(owner_id)
        history = [
            (s.created_at, s.score)
            for s in await self.registry.list_snapshots(owner_id, limit=self.config.history_points)
        ]
        snapshot = self.scorer.calculate(
            owner_id,
            population,
            scored_issues,
            previous,
            history=history,
            unknown_links=unknown,
            audit_run_id=run.id,
            now=self.clock(),
        )
        return await self.registry.add_snapshot(snapshot)

    # ══════════════════════════════════════════════════════════════════
    # GUARDS & FAILURE PATHS
    # ══════════════════════════════════════════════════════════════════

    async def _check_running(self, owner_id: str) -> None:
        running = await self.registry.get_running_run(owner_id)
        if running is None:
            return
        started = running.started_at or running.created_at
        if self.clock() - started > self.config.stale_run_timeout:
            logger.warning("Marking stale audit run #%s for %s as failed", running.id, owner_id)
            running.fail("stale run", now=self.clock())
            await self.registry.update_run(running)
            return
        raise AuditAlreadyRunningError(owner_id, running.id)

    async def _recent_run(self, owner_id: str) -> AuditRun | None:
        last = await self.registry.latest_completed_run(owner_id)
        if last is None or last.completed_at is None:
            return None
        if self.clock() - last.completed_at < self.config.min_interval:
            return last
        return None

    async def _fail_to_start(self, request: AuditRequest, reason: str) -> AuditOutcome:
        run = AuditRun(id=None, owner_id=request.owner_id, run_type=request.run_type, trigger=request.trigger)
        run = await self.registry.create_run(run)
        return await self._fail_run(run, reason, AuditSummary())

    async def _fail_run(self, run: AuditRun, reason: str, summary: AuditSummary) -> AuditOutcome:
        if not run.is_finished:
            run.fail(reason, summary, now=self.clock())
        try:
            await self.registry.update_run(run)
        except PersistenceError as exc:
            logger.error("Could not record failure of audit run #%s: %s", run.id, exc)
        logger.warning("❌ Audit run #%s for %s failed: %s", run.id, run.owner_id, reason)
        return AuditOutcome(run=run, summary=summary, reason=reason)

    async def _mark_stale(self, link: TrackedLink, reason: str) -> None:
        if link.id is None:
            return
        try:
            await self.registry.mark_link_stale(link.id, reason)
        except PersistenceError as exc:
            logger.error("Could not mark link #%s stale: %s", link.id, exc)


async def run_audits(
    orchestrator: AuditOrchestrator,
    requests: Sequence[AuditRequest],
) -> list[AuditOutcome]:
    """Run audits for several owners one after another, logging instead of raising."""
    outcomes: list[AuditOutcome] = []
    for request in requests:
        try:
            outcomes.append(await orchestrator.run(request))
        except AuditAlreadyRunningError as exc:
            logger.info("Skipping %s: %s", request.owner_id, exc)
        except PersistenceError as exc:
            logger.error("Audit for %s could not start: %s", request.owner_id, exc)
    return outcomes
