"""
Issue Detector
==============
Classifies one traced link (plus out-of-band stock / commission signals)
into typed issue drafts. Pure: nothing is persisted here.

Rules are evaluated independently, so a link can carry several issues:

  broken_link          critical  HTTP error, unreachable, loop, bad redirect
  stock_out            warning   declared out of stock, link not broken
  untagged             warning   monetized, not broken/stock-out, no tag
  destination_drift    warning   final host left the expected domain
                       info      same domain, different subdomain
  low_commission       info      a better program pays more
  excessive_redirects  info      > 5 hops
  slow_response        info      > 5000 ms

``reconcile_issues`` then folds drafts into the stored issues of a link
so that re-detection updates instead of duplicating.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from workers.link_audit.models import (
    SUPPRESSED_ISSUE_STATUSES,
    CommissionOpportunity,
    Issue,
    IssueDraft,
    IssueReconciliation,
    IssueSeverity,
    IssueStatus,
    IssueType,
    LinkSignals,
    StockStatus,
    Trace,
    TraceFlag,
    utcnow,
)
from workers.link_audit.network_detector import hostname

logger = logging.getLogger(__name__)

# Monthly revenue at risk per issue type (USD). low_commission uses the
# opportunity's own gain instead.
DEFAULT_REVENUE_IMPACTS: dict[IssueType, float] = {
    IssueType.BROKEN_LINK: 50.0,
    IssueType.STOCK_OUT: 30.0,
    IssueType.UNTAGGED: 20.0,
    IssueType.DESTINATION_DRIFT: 15.0,
    IssueType.EXCESSIVE_REDIRECTS: 5.0,
    IssueType.SLOW_RESPONSE: 8.0,
}


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    excessive_redirect_hops: int = 5
    slow_response_ms: int = 5000
    revenue_impacts: Mapping[IssueType, float] = field(
        default_factory=lambda: dict(DEFAULT_REVENUE_IMPACTS)
    )


def registrable_domain(host: str) -> str:
    """Last two labels of a host: ``shop.example.com`` → ``example.com``."""
    labels = [part for part in host.lower().split(".") if part]
    return ".".join(labels[-2:])


def _broken_description(trace: Trace) -> str:
    status = trace.final_status
    if TraceFlag.RATE_LIMITED in trace.flags:
        return "The destination kept rate limiting our checks (HTTP 429) and never answered."
    if trace.is_unreachable:
        return "Link failed to load (timeout or connection error)."
    if TraceFlag.REDIRECT_LOOP in trace.flags:
        return "Link redirects in a loop or through too many hops and never reaches a page."
    if TraceFlag.INVALID_REDIRECT in trace.flags:
        return "Link redirects without saying where to, so visitors land nowhere."
    if status == 404:
        return "Link returns 404 Not Found. The page may have been removed or the URL is incorrect."
    if status == 403:
        return "Link returns 403 Forbidden. Access to this page is restricted."
    if status is not None and status >= 500:
        return "Link returns a server error. The destination website may be having technical issues."
    return "This link is broken and returns an error."


class IssueDetector:
    """
    Stateless issue classifier.

    Usage:
        detector = IssueDetector()
        drafts = detector.detect(link.id, trace, LinkSignals(stock_status=StockStatus.IN_STOCK))
    """

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self.config = config or DetectorConfig()

    def _impact(self, issue_type: IssueType) -> float | None:
        return self.config.revenue_impacts.get(issue_type)

    def detect(
        self,
        link_id: int | None,
        trace: Trace,
        signals: LinkSignals | None = None,
        opportunity: CommissionOpportunity | None = None,
        *,
        is_monetized: bool = True,
    ) -> list[IssueDraft]:
        signals = signals or LinkSignals()
        drafts: list[IssueDraft] = []

        broken = trace.is_broken
        stock_out = signals.stock_status == StockStatus.OUT_OF_STOCK and not broken

        if broken:
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.BROKEN_LINK,
                severity=IssueSeverity.CRITICAL,
                title="Broken Link",
                description=_broken_description(trace),
                revenue_impact_estimate=self._impact(IssueType.BROKEN_LINK),
                evidence={
                    "status_code": trace.final_status,
                    "final_url": trace.final_url,
                    "flags": sorted(trace.flags),
                    "trace_issues": list(trace.issues),
                },
            ))

        if stock_out:
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.STOCK_OUT,
                severity=IssueSeverity.WARNING,
                title="Product Out of Stock",
                description="This product is currently unavailable. Visitors clicking this link cannot buy it.",
                revenue_impact_estimate=self._impact(IssueType.STOCK_OUT),
                evidence={"stock_status": signals.stock_status, "price": signals.price},
            ))

        if is_monetized and not broken and not stock_out and not trace.affiliate_tag_present:
            stripped = [step.url for step in trace.steps if step.has_affiliate_tag]
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.UNTAGGED,
                severity=IssueSeverity.WARNING,
                title="Affiliate Tag Missing",
                description=(
                    "The affiliate tag is stripped before the final page, so sales are not attributed."
                    if stripped
                    else "No affiliate tag reaches the final page, so sales are not attributed."
                ),
                revenue_impact_estimate=self._impact(IssueType.UNTAGGED),
                evidence={"final_url": trace.final_url, "tagged_hops": stripped},
            ))

        drift = self._detect_drift(link_id, trace, signals.expected_host)
        if drift is not None:
            drafts.append(drift)

        if opportunity is not None and opportunity.estimated_monthly_gain > 0:
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.LOW_COMMISSION,
                severity=IssueSeverity.INFO,
                title="Low Commission Rate",
                description=opportunity.reasoning,
                revenue_impact_estimate=opportunity.estimated_monthly_gain,
                evidence={
                    "current_retailer": opportunity.current_retailer,
                    "current_rate": opportunity.current_rate,
                    "suggested_retailer": opportunity.suggested_retailer,
                    "suggested_rate": opportunity.suggested_rate,
                    "category": opportunity.category,
                },
            ))

        if not broken and trace.redirect_count > self.config.excessive_redirect_hops:
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.EXCESSIVE_REDIRECTS,
                severity=IssueSeverity.INFO,
                title="Excessive Redirects",
                description=(
                    f"This link has {trace.redirect_count} redirect hops, which slows visitors "
                    "down and can hurt conversion."
                ),
                revenue_impact_estimate=self._impact(IssueType.EXCESSIVE_REDIRECTS),
                evidence={"redirect_count": trace.redirect_count, "chain": [s.url for s in trace.steps]},
            ))

        if not broken and trace.response_time_ms > self.config.slow_response_ms:
            drafts.append(IssueDraft(
                link_id=link_id,
                issue_type=IssueType.SLOW_RESPONSE,
                severity=IssueSeverity.INFO,
                title="Slow Link Response",
                description=f"This link takes {trace.response_time_ms}ms to resolve.",
                revenue_impact_estimate=self._impact(IssueType.SLOW_RESPONSE),
                evidence={"response_time_ms": trace.response_time_ms},
            ))

        return drafts

    def _detect_drift(self, link_id: int | None, trace: Trace, expected_host: str | None) -> IssueDraft | None:
        if not expected_host or trace.is_unreachable:
            return None
        expected = expected_host.lower().removeprefix("www.")
        actual = hostname(trace.final_url)
        if not actual or actual == expected:
            return None

        same_domain = registrable_domain(actual) == registrable_domain(expected)
        return IssueDraft(
            link_id=link_id,
            issue_type=IssueType.DESTINATION_DRIFT,
            severity=IssueSeverity.INFO if same_domain else IssueSeverity.WARNING,
            title="Destination Changed",
            description=(
                f"This link now lands on {actual} instead of {expected}. "
                "Check that it still points to the right product."
            ),
            revenue_impact_estimate=self._impact(IssueType.DESTINATION_DRIFT),
            evidence={"expected_host": expected, "actual_host": actual, "final_url": trace.final_url},
        )


# ══════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ══════════════════════════════════════════════════════════════════════

def reconcile_issues(
    owner_id: str,
    link_id: int | None,
    drafts: Sequence[IssueDraft],
    existing: Sequence[Issue],
    *,
    audit_run_id: int | None = None,
    now: datetime | None = None,
) -> IssueReconciliation:
    """
    Match fresh drafts against the stored issues of one link.

    - an active (open / acknowledged) issue of the same type is updated in
      place and keeps its status,
    - a type the user marked false_positive / wont_fix is not re-opened,
    - anything else becomes a new open issue,
    - active issues whose condition is gone are resolved.
    """
    now = now or utcnow()
    result = IssueReconciliation()

    mine = [issue for issue in existing if issue.link_id == link_id]
    active = {issue.issue_type: issue for issue in mine if issue.is_active}
    suppressed = {issue.issue_type for issue in mine if issue.status in SUPPRESSED_ISSUE_STATUSES}

    seen: set[IssueType] = set()
    for draft in drafts:
        if draft.issue_type in seen:
            continue
        seen.add(draft.issue_type)

        current = active.get(draft.issue_type)
        if current is not None:
            current.severity = draft.severity
            current.title = draft.title
            current.description = draft.description
            current.revenue_impact_estimate = draft.revenue_impact_estimate
            current.evidence = dict(draft.evidence)
            current.audit_run_id = audit_run_id
            current.last_detected_at = now
            current.updated_at = now
            result.updated.append(current)
        elif draft.issue_type in suppressed:
            logger.debug("Skipping suppressed %s on link %s", draft.issue_type, link_id)
        else:
            result.created.append(Issue(
                id=None,
                owner_id=owner_id,
                link_id=link_id,
                issue_type=draft.issue_type,
                severity=draft.severity,
                title=draft.title,
                description=draft.description,
                revenue_impact_estimate=draft.revenue_impact_estimate,
                evidence=dict(draft.evidence),
                audit_run_id=audit_run_id,
                created_at=now,
                updated_at=now,
                last_detected_at=now,
            ))

    for issue_type, issue in active.items():
        if issue_type not in seen:
            issue.status = IssueStatus.RESOLVED
            issue.resolved_at = now
            issue.updated_at = now
            result.resolved.append(issue)

    return result
