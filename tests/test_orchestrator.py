"""End-to-end audit runs over the in-memory registry and a mocked network."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from tests.conftest import GatedTransport, mock_transport, redirect
from workers.link_audit.errors import AuditAlreadyRunningError
from workers.link_audit.models import (
    ActionType,
    AuditRun,
    AuditRunStatus,
    AuditTrigger,
    AuditType,
    IssueSeverity,
    IssueStatus,
    IssueType,
    LinkStatus,
    Trend,
    utcnow,
)
from workers.link_audit.orchestrator import (
    AuditOrchestrator,
    AuditRequest,
    OrchestratorConfig,
    run_audits,
)
from workers.link_audit.tracer import RedirectTracer

OWNER = "creator-1"
GOOD_URL = "https://www.amazon.com/dp/B0001?tag=creator-20"
BROKEN_URL = "https://shop.example.com/gone"
DRESS_URL = "https://www.target.com/p/linen-dress?ref=creator"


def build(registry, routes=None, *, transport=None, **config) -> AuditOrchestrator:
    tracer = RedirectTracer(transport=transport or mock_transport(routes or {}))
    return AuditOrchestrator(registry, tracer=tracer, config=OrchestratorConfig(**config))


@pytest.fixture
def seeded(registry):
    good = registry.add_link(OWNER, GOOD_URL, retailer="amazon", product_name="Wireless Headphones", commission_rate=4.0)
    bad = registry.add_link(OWNER, BROKEN_URL, product_name="Old Blender")
    return registry, good, bad


ROUTES = {GOOD_URL: httpx.Response(200), BROKEN_URL: httpx.Response(404)}


# ====================================================================
# Happy path
# ====================================================================

class TestFullAudit:

    async def test_run_completes_and_scores(self, seeded):
        registry, good, bad = seeded

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER))

        run = outcome.run
        assert run.status == AuditRunStatus.COMPLETED
        assert run.started_at is not None and run.completed_at is not None
        assert run.next_scheduled_at == run.completed_at + timedelta(hours=24)
        assert run.summary["links_audited"] == 2
        assert run.summary["issues_created"] == 1

        [issue] = registry.issues.values()
        assert issue.link_id == bad.id
        assert issue.issue_type == IssueType.BROKEN_LINK
        assert issue.severity == IssueSeverity.CRITICAL
        assert issue.audit_run_id == run.id

        # 1 of 2 healthy, 1 critical issue, 1 broken link: 25 + 20 + 15.
        assert outcome.snapshot.score == 60.0
        assert registry.snapshots[-1].audit_run_id == run.id
        assert registry.links[good.id].status == LinkStatus.HEALTHY
        assert registry.links[good.id].health_score == 100
        assert registry.links[good.id].affiliate_network == "Amazon Associates"
        assert registry.links[bad.id].status == LinkStatus.BROKEN
        assert registry.links[bad.id].last_checked_at is not None
        assert [r.action_type for r in outcome.recommendations] == [ActionType.REMOVE_LINK]

    async def test_rerun_updates_instead_of_duplicating(self, seeded):
        registry, _, bad = seeded
        orchestrator = build(registry, ROUTES)

        await orchestrator.run(AuditRequest(OWNER))
        second = await orchestrator.run(AuditRequest(OWNER, force=True))

        assert second.summary.issues_created == 0
        assert second.summary.issues_updated == 1
        assert len(registry.issues) == 1
        assert second.recommendations == []
        assert len(registry.recommendations) == 1
        assert len([t for t in registry.traces if t.link_id == bad.id]) == 2

    async def test_fixed_link_resolves_issue(self, seeded):
        registry, _, bad = seeded
        routes = dict(ROUTES)
        orchestrator = build(registry, routes)
        await orchestrator.run(AuditRequest(OWNER))

        routes[BROKEN_URL] = httpx.Response(200)
        outcome = await orchestrator.run(AuditRequest(OWNER, force=True))

        assert outcome.summary.issues_resolved == 1
        by_type = {i.issue_type: i for i in registry.issues.values()}
        assert by_type[IssueType.BROKEN_LINK].status == IssueStatus.RESOLVED
        assert by_type[IssueType.BROKEN_LINK].resolved_at is not None
        # The page loads again but carries no affiliate tag.
        assert by_type[IssueType.UNTAGGED].status == IssueStatus.OPEN
        assert registry.links[bad.id].status == LinkStatus.UNTAGGED

    async def test_acknowledged_issue_stays_acknowledged(self, seeded):
        registry, _, _ = seeded
        orchestrator = build(registry, ROUTES)
        await orchestrator.run(AuditRequest(OWNER))
        [issue] = registry.issues.values()
        issue.status = IssueStatus.ACKNOWLEDGED

        await orchestrator.run(AuditRequest(OWNER, force=True))

        assert registry.issues[issue.id].status == IssueStatus.ACKNOWLEDGED
        assert len(registry.issues) == 1

    async def test_commission_opportunity_surfaces_switch_card(self, registry):
        registry.add_link(OWNER, DRESS_URL, retailer="target", product_name="Linen Dress",
                          commission_rate=1.0, total_clicks=100)
        orchestrator = build(registry, {DRESS_URL: httpx.Response(200)})

        outcome = await orchestrator.run(AuditRequest(OWNER))

        [opportunity] = registry.opportunities.values()
        assert opportunity.suggested_retailer == "amazon"
        assert opportunity.estimated_monthly_gain == pytest.approx(13.5)
        assert [i.issue_type for i in registry.issues.values()] == [IssueType.LOW_COMMISSION]
        assert [r.action_type for r in outcome.recommendations] == [ActionType.SWITCH_PROGRAM]
        assert outcome.summary.opportunities_found == 1

        again = await orchestrator.run(AuditRequest(OWNER, force=True))
        assert len(registry.opportunities) == 1
        assert again.recommendations == []

    async def test_rate_table_loaded_from_registry(self, registry):
        registry.rates = [("target", "default", 1.0), ("rei", "default", 20.0)]
        registry.add_link(OWNER, DRESS_URL, retailer="target", product_name="Linen Dress",
                          commission_rate=1.0, total_clicks=100)

        await build(registry, {DRESS_URL: httpx.Response(200)}).run(AuditRequest(OWNER))

        [opportunity] = registry.opportunities.values()
        assert opportunity.suggested_retailer == "rei"

    async def test_trend_and_notifier(self, seeded):
        registry, _, _ = seeded
        calls = []

        async def notifier(owner_id, snapshot, issues):
            calls.append((owner_id, snapshot.score, [i.issue_type for i in issues]))

        routes = {GOOD_URL: httpx.Response(200), BROKEN_URL: httpx.Response(200)}
        orchestrator = build(registry, routes)
        orchestrator.notifier = notifier

        await orchestrator.run(AuditRequest(OWNER))
        assert calls == []

        routes[GOOD_URL] = httpx.Response(500)
        routes[BROKEN_URL] = httpx.Response(500)
        outcome = await orchestrator.run(AuditRequest(OWNER, force=True))

        assert outcome.snapshot.trend == Trend.DECLINING
        assert len(calls) == 1
        assert calls[0][0] == OWNER
        assert IssueType.BROKEN_LINK in calls[0][2]


# ====================================================================
# Run selection
# ====================================================================

class TestRunTypes:

    async def test_incremental_skips_recently_checked(self, registry):
        fresh = registry.add_link(OWNER, GOOD_URL, last_checked_at=utcnow() - timedelta(hours=1))
        old = registry.add_link(OWNER, BROKEN_URL, last_checked_at=utcnow() - timedelta(days=3))

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER, run_type=AuditType.INCREMENTAL))

        assert outcome.summary.links_total == 1
        assert {t.link_id for t in registry.traces} == {old.id}
        assert fresh.id not in {t.link_id for t in registry.traces}

    async def test_emergency_only_rechecks_broken(self, registry):
        registry.add_link(OWNER, GOOD_URL, status=LinkStatus.HEALTHY)
        broken = registry.add_link(OWNER, BROKEN_URL, status=LinkStatus.BROKEN)

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER, run_type=AuditType.EMERGENCY))

        assert outcome.summary.links_total == 1
        assert [t.link_id for t in registry.traces] == [broken.id]


# ====================================================================
# Guards
# ====================================================================

class TestGuards:

    async def test_recent_run_is_noop_without_force(self, seeded):
        registry, _, _ = seeded
        previous = registry.add_run(AuditRun(
            id=None,
            owner_id=OWNER,
            status=AuditRunStatus.COMPLETED,
            completed_at=utcnow() - timedelta(minutes=10),
        ))

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER))

        assert outcome.skipped is True
        assert outcome.run.id == previous.id
        assert len(registry.runs) == 1
        assert registry.traces == []

    async def test_force_bypasses_interval(self, seeded):
        registry, _, _ = seeded
        registry.add_run(AuditRun(
            id=None, owner_id=OWNER, status=AuditRunStatus.COMPLETED, completed_at=utcnow()
        ))

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER, force=True))

        assert outcome.skipped is False
        assert outcome.succeeded

    async def test_old_run_does_not_block(self, seeded):
        registry, _, _ = seeded
        registry.add_run(AuditRun(
            id=None, owner_id=OWNER, status=AuditRunStatus.COMPLETED, completed_at=utcnow() - timedelta(hours=2)
        ))

        assert (await build(registry, ROUTES).run(AuditRequest(OWNER))).succeeded

    async def test_no_links_fails_run(self, registry):
        outcome = await build(registry).run(AuditRequest(OWNER))

        assert outcome.run.status == AuditRunStatus.FAILED
        assert outcome.run.error_message == "no links to audit"
        assert registry.runs[outcome.run.id].status == AuditRunStatus.FAILED
        assert registry.snapshots == []

    async def test_blank_owner_fails_run(self, registry):
        outcome = await build(registry).run(AuditRequest("   "))
        assert outcome.run.status == AuditRunStatus.FAILED
        assert outcome.reason == "missing owner id"

    async def test_running_run_rejects_second(self, seeded):
        registry, _, _ = seeded
        running = registry.add_run(AuditRun(
            id=None, owner_id=OWNER, status=AuditRunStatus.RUNNING, started_at=utcnow()
        ))

        with pytest.raises(AuditAlreadyRunningError) as err:
            await build(registry, ROUTES).run(AuditRequest(OWNER, force=True))
        assert err.value.run_id == running.id

    async def test_stale_running_run_is_failed_and_replaced(self, seeded):
        registry, _, _ = seeded
        stale = registry.add_run(AuditRun(
            id=None, owner_id=OWNER, status=AuditRunStatus.RUNNING, started_at=utcnow() - timedelta(hours=3)
        ))

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER, force=True))

        assert outcome.succeeded
        assert registry.runs[stale.id].status == AuditRunStatus.FAILED
        assert registry.runs[stale.id].error_message == "stale run"

    async def test_concurrent_run_for_same_owner_rejected(self, seeded):
        registry, _, _ = seeded
        transport = GatedTransport()
        orchestrator = build(registry, transport=transport)

        first = asyncio.create_task(orchestrator.run(AuditRequest(OWNER)))
        await asyncio.wait_for(transport.entered.wait(), 1)

        with pytest.raises(AuditAlreadyRunningError):
            await orchestrator.run(AuditRequest(OWNER, force=True))

        transport.release.set()
        outcome = await first
        assert outcome.succeeded

    async def test_other_owner_not_blocked(self, seeded):
        registry, _, _ = seeded
        registry.add_link("creator-2", GOOD_URL)
        transport = GatedTransport()
        orchestrator = build(registry, transport=transport)

        first = asyncio.create_task(orchestrator.run(AuditRequest(OWNER)))
        await asyncio.wait_for(transport.entered.wait(), 1)
        second = asyncio.create_task(orchestrator.run(AuditRequest("creator-2")))
        await asyncio.sleep(0.01)
        transport.release.set()

        assert (await first).succeeded
        assert (await second).succeeded


# ====================================================================
# Concurrency, timeouts, cancellation
# ====================================================================

class TestExecution:

    async def test_concurrency_is_bounded(self, registry):
        for i in range(10):
            registry.add_link(OWNER, f"https://shop.example.com/p/{i}?ref=creator")
        transport = GatedTransport(delay=0.02)

        outcome = await build(registry, transport=transport, concurrency=3).run(AuditRequest(OWNER))

        assert outcome.summary.links_audited == 10
        assert transport.calls == 10
        assert 1 < transport.peak <= 3

    async def test_trace_timeout_marks_link_unreachable(self, registry):
        link = registry.add_link(OWNER, GOOD_URL)
        transport = GatedTransport()

        outcome = await build(registry, transport=transport, trace_timeout=0.05).run(AuditRequest(OWNER))

        assert outcome.succeeded
        [issue] = registry.issues.values()
        assert issue.link_id == link.id
        assert issue.issue_type == IssueType.BROKEN_LINK
        assert "timed out" in registry.traces[0].issues[0]

    async def test_cancel_stops_dispatch_and_fails_run(self, registry):
        for i in range(5):
            registry.add_link(OWNER, f"https://shop.example.com/p/{i}?ref=creator")
        cancel = asyncio.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            cancel.set()
            return httpx.Response(200)

        orchestrator = build(registry, transport=httpx.MockTransport(handler), concurrency=1)
        outcome = await orchestrator.run(AuditRequest(OWNER), cancel=cancel)

        assert outcome.run.status == AuditRunStatus.FAILED
        assert outcome.run.error_message == "cancelled"
        assert outcome.summary.links_audited == 1
        assert outcome.summary.links_cancelled == 4
        assert outcome.run.summary["links_cancelled"] == 4
        assert outcome.snapshot is None
        assert registry.snapshots == []

    async def test_cancelling_the_task_drains_in_flight_links(self, registry):
        for i in range(5):
            registry.add_link(OWNER, f"https://shop.example.com/p/{i}?ref=creator")
        transport = GatedTransport()
        orchestrator = build(registry, transport=transport, concurrency=2)

        task = asyncio.create_task(orchestrator.run(AuditRequest(OWNER)))
        await asyncio.wait_for(transport.entered.wait(), 1)
        task.cancel()
        await asyncio.sleep(0)
        transport.release.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        [run] = registry.runs.values()
        in_flight = transport.calls
        assert 1 <= in_flight <= 2
        assert run.status == AuditRunStatus.FAILED
        assert run.error_message == "cancelled"
        assert run.summary["links_audited"] == in_flight
        assert run.summary["links_cancelled"] == 5 - in_flight
        # In-flight links were written, not dropped.
        assert len(registry.traces) == in_flight
        assert registry.snapshots == []

    async def test_cancel_by_owner(self, registry):
        for i in range(3):
            registry.add_link(OWNER, f"https://shop.example.com/p/{i}?ref=creator")
        transport = GatedTransport()
        orchestrator = build(registry, transport=transport, concurrency=1)

        task = asyncio.create_task(orchestrator.run(AuditRequest(OWNER)))
        await asyncio.wait_for(transport.entered.wait(), 1)
        assert orchestrator.cancel("creator-2") is False
        assert orchestrator.cancel(OWNER) is True
        transport.release.set()

        outcome = await task
        assert outcome.run.error_message == "cancelled"
        assert outcome.summary.links_audited == 1
        assert outcome.summary.links_cancelled == 2
        assert orchestrator.cancel(OWNER) is False

    async def test_bad_redirect_only_breaks_that_link(self, registry):
        good = registry.add_link(OWNER, GOOD_URL)
        bad = registry.add_link(OWNER, "https://shop.example.com/r")
        routes = {GOOD_URL: httpx.Response(200), "https://shop.example.com/r": redirect("http://[broken")}

        outcome = await build(registry, routes).run(AuditRequest(OWNER, force=True))

        assert outcome.succeeded
        assert outcome.summary.links_audited == 2
        [issue] = registry.issues.values()
        assert issue.link_id == bad.id
        assert issue.issue_type == IssueType.BROKEN_LINK
        assert registry.links[good.id].status == LinkStatus.HEALTHY

    async def test_unexpected_trace_error_marks_link_stale(self, registry):
        good = registry.add_link(OWNER, GOOD_URL)
        odd = registry.add_link(OWNER, "https://shop.example.com/odd")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/odd":
                raise RuntimeError("transport exploded")
            return httpx.Response(200)

        outcome = await build(registry, transport=httpx.MockTransport(handler)).run(AuditRequest(OWNER))

        assert outcome.succeeded
        assert outcome.summary.links_audited == 1
        assert outcome.summary.links_failed == 1
        assert registry.links[odd.id].is_stale is True
        assert registry.links[good.id].status == LinkStatus.HEALTHY
        assert outcome.snapshot.unknown_links == 1

    async def test_owner_locks_are_released(self, seeded):
        registry, _, _ = seeded
        orchestrator = build(registry, ROUTES)

        await orchestrator.run(AuditRequest(OWNER))
        await orchestrator.run(AuditRequest("creator-2"))

        assert orchestrator._locks == {}
        assert orchestrator._cancel_events == {}

    async def test_persistence_failure_marks_link_stale(self, seeded):
        registry, good, bad = seeded
        registry.fail_saves_for.add(bad.id)

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER))

        assert outcome.succeeded
        assert outcome.summary.links_failed == 1
        assert outcome.summary.links_audited == 1
        assert registry.links[bad.id].is_stale is True
        assert registry.issues == {}
        assert [t.link_id for t in registry.traces] == [good.id]
        # The stale link is left out of the score.
        assert outcome.snapshot.unknown_links == 1
        assert outcome.snapshot.total_links == 1
        assert outcome.snapshot.score == 100.0

    async def test_malformed_link_is_skipped(self, registry):
        registry.add_link(OWNER, GOOD_URL)
        junk = registry.add_link(OWNER, "not a link")

        outcome = await build(registry, ROUTES).run(AuditRequest(OWNER))

        assert outcome.succeeded
        assert outcome.summary.links_skipped == 1
        assert registry.links[junk.id].is_stale is True
        assert "Malformed" in registry.stale_reasons[junk.id]


async def test_run_audits_continues_past_busy_owner(registry):
    registry.add_link(OWNER, GOOD_URL)
    registry.add_link("creator-2", GOOD_URL)
    registry.add_run(AuditRun(id=None, owner_id=OWNER, status=AuditRunStatus.RUNNING, started_at=utcnow()))

    outcomes = await run_audits(
        build(registry, ROUTES),
        [AuditRequest(OWNER, trigger=AuditTrigger.SCHEDULED), AuditRequest("creator-2", trigger=AuditTrigger.SCHEDULED)],
    )

    assert [o.run.owner_id for o in outcomes] == ["creator-2"]
    assert outcomes[0].run.trigger == AuditTrigger.SCHEDULED
