"""Issues API — list, rank and update detected link issues."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from api.deps import get_registry
from workers.link_audit.health_scorer import top_issues
from workers.link_audit.models import (
    ACTIVE_ISSUE_STATUSES,
    SEVERITY_RANK,
    IssuePatch,
    IssueSeverity,
    IssueStatus,
    IssueType,
)
from workers.link_audit.registry import LinkRegistry

router = APIRouter(prefix="/api/issues", tags=["issues"])


# ── Request/Response Schemas ──────────────────────────────────────────

class IssueSort(StrEnum):
    IMPACT = "impact"
    SEVERITY = "severity"
    NEWEST = "newest"


class IssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    link_id: int | None
    issue_type: IssueType
    severity: IssueSeverity
    status: IssueStatus
    title: str
    description: str
    revenue_impact_estimate: float | None
    evidence: dict[str, Any]
    note: str | None
    created_at: datetime
    updated_at: datetime
    last_detected_at: datetime
    resolved_at: datetime | None


class IssueUpdateRequest(BaseModel):
    """Only the fields present in the request body are changed."""

    status: IssueStatus | None = None
    note: str | None = None


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("", response_model=list[IssueResponse])
async def list_issues(
    owner_id: str,
    status: list[IssueStatus] | None = Query(default=None),
    severity: IssueSeverity | None = None,
    link_id: int | None = None,
    sort: IssueSort = IssueSort.SEVERITY,
    registry: LinkRegistry = Depends(get_registry),
):
    """
    Issues for an owner. Defaults to active (open / acknowledged) ones,
    sorted by severity then revenue impact.
    """
    statuses = status or sorted(ACTIVE_ISSUE_STATUSES)
    issues = await registry.list_issues(owner_id, statuses=statuses, link_id=link_id)
    if severity is not None:
        issues = [i for i in issues if i.severity == severity]

    if sort == IssueSort.IMPACT:
        issues.sort(key=lambda i: (-(i.revenue_impact_estimate or 0.0), -SEVERITY_RANK[i.severity]))
    elif sort == IssueSort.SEVERITY:
        issues.sort(key=lambda i: (-SEVERITY_RANK[i.severity], -(i.revenue_impact_estimate or 0.0)))
    else:
        issues.sort(key=lambda i: i.created_at, reverse=True)
    return [IssueResponse.model_validate(i) for i in issues]


@router.get("/top", response_model=list[IssueResponse])
async def list_top_issues(
    owner_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    registry: LinkRegistry = Depends(get_registry),
):
    """Costliest active issues first."""
    issues = await registry.list_issues(owner_id, statuses=ACTIVE_ISSUE_STATUSES)
    return [IssueResponse.model_validate(i) for i in top_issues(issues, limit)]


@router.get("/{issue_id}", response_model=IssueResponse)
async def get_issue(issue_id: int, registry: LinkRegistry = Depends(get_registry)):
    issue = await registry.get_issue(issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue {issue_id} not found")
    return IssueResponse.model_validate(issue)


@router.patch("/{issue_id}", response_model=IssueResponse)
async def update_issue(
    issue_id: int,
    req: IssueUpdateRequest,
    registry: LinkRegistry = Depends(get_registry),
):
    """Acknowledge, resolve, mark false positive / won't fix, or annotate."""
    fields = req.model_fields_set
    if "status" in fields and req.status is None:
        raise HTTPException(status_code=422, detail="status cannot be null")

    patch = IssuePatch(**{name: getattr(req, name) for name in fields})
    if patch.is_empty:
        raise HTTPException(status_code=422, detail="Nothing to update")
    issue = await registry.update_issue(issue_id, patch)
    return IssueResponse.model_validate(issue)
