"""Tests for issue classification and reconciliation against stored issues."""

from __future__ import annotations

from workers.link_audit.issue_detector import IssueDetector, reconcile_issues, registrable_domain
from workers.link_audit.models import (
    CommissionOpportunity,
    Confidence,
    Issue,
    IssueDraft,
    IssueSeverity,
    IssueStatus,
    IssueType,
    LinkSignals,
    RedirectStep,
    StockStatus,
    Trace,
    TraceFlag,
)

OWNER = "creator-1"


def make_trace(
    final_url: str = "https://www.amazon.com/dp/B0001?tag=creator-20",
    *,
    status: int | None = 200,
    tagged: bool = True,
    hops: int = 0,
    flags: frozenset[TraceFlag] = frozenset(),
    response_time_ms: int = 150,
) -> Trace:
    steps = tuple(
        RedirectStep(index=i, url=f"https://hop.example.com/{i}", status_code=301) for i in range(hops)
    ) + (RedirectStep(index=hops, url=final_url, status_code=status, has_affiliate_tag=tagged),)
    return Trace(
        url=steps[0].url,
        steps=steps,
        final_url=final_url,
        affiliate_tag_present=tagged,
        confidence=Confidence.HIGH if tagged else Confidence.LOW,
        flags=flags,
        response_time_ms=response_time_ms,
    )


def types_of(drafts: list[IssueDraft]) -> set[IssueType]:
    return {d.issue_type for d in drafts}


# ====================================================================
# Detection rules
# ====================================================================

class TestDetect:

    def test_healthy_link_has_no_issues(self):
        assert IssueDetector().detect(1, make_trace(), LinkSignals(stock_status=StockStatus.IN_STOCK)) == []

    def test_http_error_is_critical_broken_link(self):
        drafts = IssueDetector().detect(1, make_trace(status=404, tagged=False))

        assert types_of(drafts) == {IssueType.BROKEN_LINK}
        broken = drafts[0]
        assert broken.severity == IssueSeverity.CRITICAL
        assert "404" in broken.description
        assert broken.evidence["status_code"] == 404
        assert broken.revenue_impact_estimate == 50.0

    def test_loop_is_broken(self):
        drafts = IssueDetector().detect(1, make_trace(status=301, flags=frozenset({TraceFlag.REDIRECT_LOOP})))
        assert types_of(drafts) == {IssueType.BROKEN_LINK}
        assert "loop" in drafts[0].description

    def test_broken_link_suppresses_stock_out(self):
        signals = LinkSignals(stock_status=StockStatus.OUT_OF_STOCK)
        drafts = IssueDetector().detect(1, make_trace(status=500), signals)
        assert types_of(drafts) == {IssueType.BROKEN_LINK}

    def test_stock_out_is_warning_and_suppresses_untagged(self):
        signals = LinkSignals(stock_status=StockStatus.OUT_OF_STOCK)
        drafts = IssueDetector().detect(1, make_trace(tagged=False), signals)

        assert types_of(drafts) == {IssueType.STOCK_OUT}
        assert drafts[0].severity == IssueSeverity.WARNING

    def test_untagged_monetized_link(self):
        drafts = IssueDetector().detect(1, make_trace(tagged=False))
        assert types_of(drafts) == {IssueType.UNTAGGED}
        assert drafts[0].severity == IssueSeverity.WARNING

    def test_untagged_ignored_for_unmonetized_link(self):
        assert IssueDetector().detect(1, make_trace(tagged=False), is_monetized=False) == []

    def test_drift_to_other_domain_is_warning(self):
        signals = LinkSignals(expected_host="www.amazon.com")
        drafts = IssueDetector().detect(1, make_trace("https://www.walmart.com/ip/123?ref=x"), signals)

        drift = next(d for d in drafts if d.issue_type == IssueType.DESTINATION_DRIFT)
        assert drift.severity == IssueSeverity.WARNING
        assert drift.evidence == {
            "expected_host": "amazon.com",
            "actual_host": "walmart.com",
            "final_url": "https://www.walmart.com/ip/123?ref=x",
        }

    def test_drift_within_domain_is_info(self):
        signals = LinkSignals(expected_host="amazon.com")
        drafts = IssueDetector().detect(1, make_trace("https://smile.amazon.com/dp/B0001?tag=c-20"), signals)
        drift = next(d for d in drafts if d.issue_type == IssueType.DESTINATION_DRIFT)
        assert drift.severity == IssueSeverity.INFO

    def test_no_drift_on_expected_host(self):
        signals = LinkSignals(expected_host="amazon.com")
        assert IssueDetector().detect(1, make_trace(), signals) == []

    def test_low_commission_from_opportunity(self):
        opportunity = CommissionOpportunity(
            link_id=1,
            current_retailer="target",
            current_rate=1.0,
            suggested_retailer="amazon",
            suggested_rate=10.0,
            category="fashion",
            estimated_monthly_gain=13.5,
            reasoning="amazon offers 10.0% commission for fashion products vs 1.0% at target",
        )
        drafts = IssueDetector().detect(1, make_trace(), opportunity=opportunity)

        assert types_of(drafts) == {IssueType.LOW_COMMISSION}
        assert drafts[0].severity == IssueSeverity.INFO
        assert drafts[0].revenue_impact_estimate == 13.5
        assert drafts[0].description == opportunity.reasoning

    def test_excessive_redirects_threshold(self):
        detector = IssueDetector()
        assert detector.detect(1, make_trace(hops=5)) == []
        drafts = detector.detect(1, make_trace(hops=6))
        assert types_of(drafts) == {IssueType.EXCESSIVE_REDIRECTS}

    def test_slow_response(self):
        detector = IssueDetector()
        assert detector.detect(1, make_trace(response_time_ms=5000)) == []
        assert types_of(detector.detect(1, make_trace(response_time_ms=5001))) == {IssueType.SLOW_RESPONSE}

    def test_several_issues_on_one_link(self):
        signals = LinkSignals(expected_host="amazon.com")
        drafts = IssueDetector().detect(
            1, make_trace("https://www.walmart.com/ip/1", tagged=False, hops=6, response_time_ms=7000), signals
        )
        assert types_of(drafts) == {
            IssueType.UNTAGGED,
            IssueType.DESTINATION_DRIFT,
            IssueType.EXCESSIVE_REDIRECTS,
            IssueType.SLOW_RESPONSE,
        }


def test_registrable_domain():
    assert registrable_domain("shop.example.com") == "example.com"
    assert registrable_domain("example.com") == "example.com"


# ====================================================================
# Reconciliation
# ====================================================================

def stored(issue_id: int, issue_type: IssueType, status: IssueStatus = IssueStatus.OPEN) -> Issue:
    return Issue(
        id=issue_id,
        owner_id=OWNER,
        link_id=7,
        issue_type=issue_type,
        severity=IssueSeverity.WARNING,
        title="old",
        status=status,
    )


def draft(issue_type: IssueType, severity: IssueSeverity = IssueSeverity.CRITICAL) -> IssueDraft:
    return IssueDraft(link_id=7, issue_type=issue_type, severity=severity, title="new", description="fresh")


class TestReconcile:

    def test_new_issue_created(self):
        result = reconcile_issues(OWNER, 7, [draft(IssueType.BROKEN_LINK)], [], audit_run_id=3)

        assert len(result.created) == 1
        created = result.created[0]
        assert created.id is None
        assert created.status == IssueStatus.OPEN
        assert created.audit_run_id == 3
        assert result.updated == [] and result.resolved == []

    def test_redetection_updates_in_place_and_keeps_status(self):
        existing = [stored(11, IssueType.BROKEN_LINK, IssueStatus.ACKNOWLEDGED)]

        result = reconcile_issues(OWNER, 7, [draft(IssueType.BROKEN_LINK)], existing)

        assert result.created == []
        assert [i.id for i in result.updated] == [11]
        updated = result.updated[0]
        assert updated.status == IssueStatus.ACKNOWLEDGED
        assert updated.severity == IssueSeverity.CRITICAL
        assert updated.description == "fresh"

    def test_vanished_condition_resolves(self):
        existing = [stored(11, IssueType.UNTAGGED)]

        result = reconcile_issues(OWNER, 7, [], existing)

        assert [i.id for i in result.resolved] == [11]
        assert result.resolved[0].status == IssueStatus.RESOLVED
        assert result.resolved[0].resolved_at is not None

    def test_suppressed_type_not_reopened(self):
        existing = [stored(11, IssueType.UNTAGGED, IssueStatus.FALSE_POSITIVE)]

        result = reconcile_issues(OWNER, 7, [draft(IssueType.UNTAGGED)], existing)

        assert result.changed == []

    def test_resolved_issue_reopens_as_new(self):
        existing = [stored(11, IssueType.BROKEN_LINK, IssueStatus.RESOLVED)]

        result = reconcile_issues(OWNER, 7, [draft(IssueType.BROKEN_LINK)], existing)

        assert len(result.created) == 1
        assert result.updated == []

    def test_duplicate_drafts_collapse(self):
        drafts = [draft(IssueType.SLOW_RESPONSE, IssueSeverity.INFO)] * 2
        result = reconcile_issues(OWNER, 7, drafts, [])
        assert len(result.created) == 1

    def test_other_links_issues_ignored(self):
        other = stored(12, IssueType.BROKEN_LINK)
        other.link_id = 99

        result = reconcile_issues(OWNER, 7, [], [other])

        assert result.changed == []
        assert other.status == IssueStatus.OPEN
