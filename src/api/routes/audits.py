"""Audit API — trigger audits and follow their runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from arq import ArqRedis
from arq.jobs import Job
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from api.deps import get_arq_pool, get_orchestrator, get_registry
from workers.link_audit.models import AuditRunStatus, AuditTrigger, AuditType
from workers.link_audit.orchestrator import AuditOrchestrator, AuditRequest
from workers.link_audit.registry import LinkRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audits", tags=["audits"])

# How long an abort request waits for the worker to confirm.
ABORT_WAIT_SECONDS = 5.0


# ── Request/Response Schemas ──────────────────────────────────────────

class AuditTriggerRequest(BaseModel):
    owner_id: str
    run_type: AuditType = AuditType.FULL
    force: bool = False


class AuditRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    owner_id: str
    run_type: AuditType
    trigger: AuditTrigger
    status: AuditRunStatus
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    summary: dict[str, Any]
    error_message: str | None
    next_scheduled_at: datetime | None


class AuditTriggerResponse(BaseModel):
    run: AuditRunResponse | None
    skipped: bool
    reason: str | None
    health_score: float | None
    recommendations_created: int


class AuditStatusResponse(BaseModel):
    owner_id: str
    is_running: bool
    current_run: AuditRunResponse | None
    last_audited_at: datetime | None
    next_audit_at: datetime | None


class EnqueueResponse(BaseModel):
    job_id: str | None


class CancelResponse(BaseModel):
    owner_id: str
    cancelled: bool


class AbortResponse(BaseModel):
    job_id: str
    aborted: bool
    pending: bool = False


# ── Endpoints ─────────────────────────────────────────────────────────

@router.post("", response_model=AuditTriggerResponse)
async def run_audit(
    req: AuditTriggerRequest,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
):
    """
    Run an audit now and wait for it.

    Returns ``skipped=true`` (not an error) when the last audit is still
    within the minimum interval and ``force`` is not set. A run that could
    not start comes back with ``status=failed`` and a reason.
    """
    outcome = await orchestrator.run(
        AuditRequest(owner_id=req.owner_id, run_type=req.run_type, trigger=AuditTrigger.MANUAL, force=req.force)
    )
    return AuditTriggerResponse(
        run=AuditRunResponse.model_validate(outcome.run) if outcome.run else None,
        skipped=outcome.skipped,
        reason=outcome.reason,
        health_score=outcome.snapshot.score if outcome.snapshot else None,
        recommendations_created=len(outcome.recommendations),
    )


@router.post("/enqueue", response_model=EnqueueResponse, status_code=202)
async def enqueue_audit(
    req: AuditTriggerRequest,
    pool: ArqRedis = Depends(get_arq_pool),
):
    """Queue an audit on the ARQ worker instead of running it in the request."""
    job = await pool.enqueue_job("run_link_audit", req.owner_id, str(req.run_type), req.force)
    logger.info("Queued %s audit for %s", req.run_type, req.owner_id)
    return EnqueueResponse(job_id=job.job_id if job else None)


@router.post("/jobs/{job_id}/abort", response_model=AbortResponse)
async def abort_job(job_id: str, pool: ArqRedis = Depends(get_arq_pool)):
    """
    Abort a queued or running audit job on the ARQ worker.

    A running audit stops dispatching links, lets the ones in flight
    finish, and records the run as ``failed`` with reason ``cancelled``.
    ``pending=true`` means the worker had not confirmed within the wait.
    """
    try:
        aborted = await Job(job_id, redis=pool).abort(timeout=ABORT_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.info("Abort of job %s requested, still draining", job_id)
        return AbortResponse(job_id=job_id, aborted=False, pending=True)
    return AbortResponse(job_id=job_id, aborted=aborted)


@router.post("/{owner_id}/cancel", response_model=CancelResponse)
async def cancel_audit(owner_id: str, orchestrator: AuditOrchestrator = Depends(get_orchestrator)):
    """Cancel an audit running in this API process (see ``POST /api/audits``)."""
    if not orchestrator.cancel(owner_id):
        raise HTTPException(status_code=404, detail=f"No audit in progress for {owner_id}")
    return CancelResponse(owner_id=owner_id, cancelled=True)


@router.get("/runs/{run_id}", response_model=AuditRunResponse)
async def get_run(run_id: int, registry: LinkRegistry = Depends(get_registry)):
    run = await registry.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Audit run {run_id} not found")
    return AuditRunResponse.model_validate(run)


@router.get("/{owner_id}/status", response_model=AuditStatusResponse)
async def audit_status(owner_id: str, registry: LinkRegistry = Depends(get_registry)):
    """For "audit in progress" indicators and last / next audited times."""
    running = await registry.get_running_run(owner_id)
    last = await registry.latest_completed_run(owner_id)
    return AuditStatusResponse(
        owner_id=owner_id,
        is_running=running is not None,
        current_run=AuditRunResponse.model_validate(running) if running else None,
        last_audited_at=last.completed_at if last else None,
        next_audit_at=last.next_scheduled_at if last else None,
    )


@router.get("/{owner_id}/runs", response_model=list[AuditRunResponse])
async def list_runs(owner_id: str, limit: int = 20, registry: LinkRegistry = Depends(get_registry)):
    runs = await registry.list_runs(owner_id, limit=limit)
    return [AuditRunResponse.model_validate(run) for run in runs]
