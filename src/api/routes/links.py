"""Links API — tracked links and their recorded redirect traces."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from api.deps import get_registry
from workers.link_audit.models import Confidence, LinkStatus, StockStatus, TraceFlag
from workers.link_audit.registry import LinkRegistry

router = APIRouter(prefix="/api/links", tags=["links"])


# ── Response schemas ──────────────────────────────────────────────────

class LinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    original_url: str
    last_final_url: str | None
    last_checked_at: datetime | None
    is_monetized: bool
    affiliate_network: str | None
    retailer: str | None
    product_name: str | None
    stock_status: StockStatus
    health_score: int | None
    status: LinkStatus
    is_stale: bool


class StepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    index: int
    url: str
    status_code: int | None
    has_affiliate_tag: bool
    affiliate_params: list[str]


class TraceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    url: str
    final_url: str
    steps: list[StepResponse]
    redirect_count: int
    affiliate_tag_present: bool
    confidence: Confidence
    issues: list[str]
    flags: list[TraceFlag]
    network: str | None
    cookie_window_days: int | None
    response_time_ms: int
    checked_at: datetime


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("", response_model=list[LinkResponse])
async def list_links(owner_id: str, registry: LinkRegistry = Depends(get_registry)):
    links = await registry.list_links(owner_id)
    return [LinkResponse.model_validate(link) for link in links]


@router.get("/{link_id}/traces", response_model=list[TraceResponse])
async def link_traces(
    link_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    registry: LinkRegistry = Depends(get_registry),
):
    """Trace history for one link, newest first."""
    if await registry.get_link(link_id) is None:
        raise HTTPException(status_code=404, detail=f"Link {link_id} not found")
    traces = await registry.trace_history(link_id, limit=limit)
    return [
        TraceResponse.model_validate(trace).model_copy(update={"flags": sorted(trace.flags)})
        for trace in traces
    ]
