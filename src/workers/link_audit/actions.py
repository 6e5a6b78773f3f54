"""
Action Lifecycle Manager.

Turns open issues and commission opportunities into recommendations and
tracks what the user did with them:

    pending ──► saved
            ├─► applied   (records switched_to + timestamp)
            └─► dismissed

Terminal states are final. Repeating the transition a recommendation is
already in is a no-op; moving between two different terminal states (or
back to pending) raises ``InvalidTransitionError``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from workers.link_audit.errors import InvalidTransitionError, NotFoundError
from workers.link_audit.models import (
    ActionType,
    CommissionOpportunity,
    Issue,
    IssueSeverity,
    IssueType,
    Recommendation,
    RecommendationStatus,
    utcnow,
)
from workers.link_audit.registry import LinkRegistry

logger = logging.getLogger(__name__)

# Primary fix for each issue type: (action, title, description).
# low_commission is covered by the opportunity's own recommendation.
ISSUE_PLAYBOOK: dict[IssueType, tuple[ActionType, str, str]] = {
    IssueType.BROKEN_LINK: (
        ActionType.REMOVE_LINK,
        "Remove Broken Link",
        "Remove this link from your page, or replace it with a working product link.",
    ),
    IssueType.STOCK_OUT: (
        ActionType.REPLACE_LINK,
        "Find In-Stock Alternative",
        "Link the same or a similar product from a merchant that has it in stock.",
    ),
    IssueType.UNTAGGED: (
        ActionType.ADD_AFFILIATE_TAG,
        "Restore Affiliate Tag",
        "Regenerate this link from your affiliate dashboard so the tag survives to the product page.",
    ),
    IssueType.DESTINATION_DRIFT: (
        ActionType.VERIFY_DESTINATION,
        "Verify Destination",
        "Check the link still points to the right product and update it if needed.",
    ),
    IssueType.EXCESSIVE_REDIRECTS: (
        ActionType.SHORTEN_REDIRECTS,
        "Shorten Redirect Chain",
        "Link closer to the final destination to cut load time.",
    ),
    IssueType.SLOW_RESPONSE: (
        ActionType.SHORTEN_REDIRECTS,
        "Speed Up Link",
        "Skip slow intermediate redirectors and link more directly.",
    ),
}

_SEVERITY_PRIORITY = {
    IssueSeverity.CRITICAL: 90,
    IssueSeverity.WARNING: 60,
    IssueSeverity.INFO: 30,
}
_OPPORTUNITY_PRIORITY = 50

_TERMINAL = frozenset({
    RecommendationStatus.SAVED,
    RecommendationStatus.APPLIED,
    RecommendationStatus.DISMISSED,
})


def apply_transition(
    recommendation: Recommendation,
    target: RecommendationStatus | str,
    *,
    switched_to: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Move ``recommendation`` to ``target``. Returns False for a no-op."""
    target = RecommendationStatus(target)
    current = recommendation.status

    if target == current:
        return False
    if current in _TERMINAL or target == RecommendationStatus.PENDING:
        raise InvalidTransitionError("recommendation", current, target)

    recommendation.status = target
    recommendation.disposed_at = now or utcnow()
    if target == RecommendationStatus.APPLIED:
        recommendation.switched_to = switched_to
    return True


def recommendation_for_issue(issue: Issue) -> Recommendation | None:
    play = ISSUE_PLAYBOOK.get(issue.issue_type)
    if play is None:
        return None
    action, title, description = play
    return Recommendation(
        id=None,
        owner_id=issue.owner_id,
        action_type=action,
        title=title,
        description=description,
        priority=_SEVERITY_PRIORITY[issue.severity],
        estimated_revenue_gain=issue.revenue_impact_estimate or 0.0,
        issue_id=issue.id,
    )


def recommendation_for_opportunity(opportunity: CommissionOpportunity) -> Recommendation:
    return Recommendation(
        id=None,
        owner_id=opportunity.owner_id,
        action_type=ActionType.SWITCH_PROGRAM,
        title=f"Switch to {opportunity.suggested_retailer}",
        description=opportunity.reasoning,
        priority=_OPPORTUNITY_PRIORITY,
        estimated_revenue_gain=opportunity.estimated_monthly_gain,
        opportunity_id=opportunity.id,
    )


class ActionManager:
    def __init__(self, registry: LinkRegistry) -> None:
        self.registry = registry

    async def surface(
        self,
        owner_id: str,
        issues: Sequence[Issue],
        opportunities: Sequence[CommissionOpportunity],
    ) -> list[Recommendation]:
        """Create recommendations for references that have none yet. Returns the new ones."""
        existing = await self.registry.list_recommendations(owner_id)
        issue_refs = {r.issue_id for r in existing if r.issue_id is not None}
        opportunity_refs = {r.opportunity_id for r in existing if r.opportunity_id is not None}

        candidates: list[Recommendation] = []
        for issue in issues:
            if issue.id is None or issue.id in issue_refs or not issue.is_active:
                continue
            rec = recommendation_for_issue(issue)
            if rec is not None:
                candidates.append(rec)
                issue_refs.add(issue.id)
        for opportunity in opportunities:
            if opportunity.id is None or opportunity.id in opportunity_refs or opportunity.superseded_at:
                continue
            candidates.append(recommendation_for_opportunity(opportunity))
            opportunity_refs.add(opportunity.id)

        created = [await self.registry.save_recommendation(rec) for rec in candidates]
        if created:
            logger.info("Surfaced %d new recommendations for %s", len(created), owner_id)
        return created

    async def transition(
        self,
        recommendation_id: int,
        target: RecommendationStatus | str,
        *,
        switched_to: str | None = None,
    ) -> Recommendation:
        recommendation = await self.registry.get_recommendation(recommendation_id)
        if recommendation is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")

        target = RecommendationStatus(target)
        if (
            target == RecommendationStatus.APPLIED
            and switched_to is None
            and recommendation.opportunity_id is not None
        ):
            opportunity = await self.registry.get_opportunity(recommendation.opportunity_id)
            if opportunity is not None:
                switched_to = opportunity.suggested_retailer

        if apply_transition(recommendation, target, switched_to=switched_to):
            recommendation = await self.registry.save_recommendation(recommendation)
            logger.info("Recommendation #%d → %s", recommendation_id, target)
        return recommendation
