"""Health Score API — current Revenue Health Score and its history."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from api.deps import get_registry
from workers.link_audit.health_scorer import generate_summary, score_badge
from workers.link_audit.models import LossEstimateMode, Trend
from workers.link_audit.registry import LinkRegistry

router = APIRouter(prefix="/api/health", tags=["health"])


# ── Response schemas ──────────────────────────────────────────────────

class HealthSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    score: float
    healthy_links_score: float
    critical_issues_penalty: float
    broken_links_penalty: float
    total_links: int
    healthy_links: int
    broken_links: int
    stock_out_links: int
    untagged_links: int
    unknown_links: int
    critical_issues: int
    warning_issues: int
    info_issues: int
    trend: Trend
    score_change: float
    estimated_monthly_loss: float
    loss_estimate_mode: LossEstimateMode
    velocity_per_week: float
    forecast_30_days: float
    audit_run_id: int | None
    created_at: datetime


class HealthScoreResponse(BaseModel):
    snapshot: HealthSnapshotResponse
    badge: str
    badge_emoji: str
    summary: str


class HistoryPoint(BaseModel):
    score: float
    timestamp: datetime


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("/{owner_id}", response_model=HealthScoreResponse)
async def current_health(owner_id: str, registry: LinkRegistry = Depends(get_registry)):
    """Latest snapshot, with badge and a text summary for display."""
    snapshot = await registry.latest_snapshot(owner_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No health score yet for '{owner_id}'")
    label, emoji = score_badge(snapshot.score)
    return HealthScoreResponse(
        snapshot=HealthSnapshotResponse.model_validate(snapshot),
        badge=label,
        badge_emoji=emoji,
        summary=generate_summary(snapshot),
    )


@router.get("/{owner_id}/history", response_model=list[HistoryPoint])
async def health_history(
    owner_id: str,
    limit: int = Query(default=30, ge=1, le=365),
    registry: LinkRegistry = Depends(get_registry),
):
    """Score time series for trend charts, oldest first."""
    snapshots = await registry.list_snapshots(owner_id, limit=limit)
    return [HistoryPoint(score=s.score, timestamp=s.created_at) for s in snapshots]
