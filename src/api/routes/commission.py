"""Commission API — optimization opportunities and their recommendations."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from api.deps import get_action_manager, get_registry
from workers.link_audit.actions import ActionManager
from workers.link_audit.models import ActionType, RecommendationStatus
from workers.link_audit.registry import LinkRegistry

router = APIRouter(prefix="/api", tags=["commission"])


# ── Request/Response Schemas ──────────────────────────────────────────

class OpportunityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    link_id: int | None
    current_retailer: str
    current_rate: float
    suggested_retailer: str
    suggested_rate: float
    category: str
    estimated_monthly_gain: float
    reasoning: str
    created_at: datetime
    superseded_at: datetime | None


class RecommendationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    action_type: ActionType
    title: str
    description: str
    priority: int
    estimated_revenue_gain: float
    issue_id: int | None
    opportunity_id: int | None
    status: RecommendationStatus
    switched_to: str | None
    created_at: datetime
    disposed_at: datetime | None


class TransitionRequest(BaseModel):
    status: RecommendationStatus
    switched_to: str | None = None


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/opportunities", response_model=list[OpportunityResponse])
async def list_opportunities(
    owner_id: str,
    include_superseded: bool = False,
    registry: LinkRegistry = Depends(get_registry),
):
    """Commission opportunities, biggest monthly gain first."""
    opportunities = await registry.list_opportunities(owner_id, current_only=not include_superseded)
    opportunities.sort(key=lambda o: o.estimated_monthly_gain, reverse=True)
    return [OpportunityResponse.model_validate(o) for o in opportunities]


@router.get("/recommendations", response_model=list[RecommendationResponse])
async def list_recommendations(
    owner_id: str,
    status: list[RecommendationStatus] | None = Query(default=None),
    registry: LinkRegistry = Depends(get_registry),
):
    recommendations = await registry.list_recommendations(owner_id, statuses=status)
    return [RecommendationResponse.model_validate(r) for r in recommendations]


@router.post("/recommendations/{recommendation_id}/transition", response_model=RecommendationResponse)
async def transition_recommendation(
    recommendation_id: int,
    req: TransitionRequest,
    actions: ActionManager = Depends(get_action_manager),
):
    """
    Save, apply or dismiss a recommendation.

    Repeating the current transition is a no-op; switching between two
    different final states returns 409.
    """
    recommendation = await actions.transition(recommendation_id, req.status, switched_to=req.switched_to)
    return RecommendationResponse.model_validate(recommendation)
