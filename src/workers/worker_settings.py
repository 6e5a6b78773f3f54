"""
ARQ Worker Settings — Registers the link audit jobs.

Usage:
    arq workers.worker_settings.WorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from core.config import settings
from workers.link_audit.models import AuditTrigger, AuditType, utcnow

logger = logging.getLogger(__name__)


async def run_link_audit(
    ctx: dict,
    owner_id: str,
    run_type: str = AuditType.FULL,
    force: bool = False,
) -> dict:
    """
    ARQ job: audit one owner's links (manual trigger).

    An abort or ``job_timeout`` cancels this task; the run is then recorded
    as failed with reason ``cancelled`` and the cancellation propagates.
    """
    from workers.link_audit.errors import AuditAlreadyRunningError
    from workers.link_audit.orchestrator import AuditRequest

    orchestrator = ctx["orchestrator"]
    request = AuditRequest(owner_id=owner_id, run_type=AuditType(run_type), force=force)
    try:
        outcome = await orchestrator.run(request)
    except AuditAlreadyRunningError as exc:
        logger.info("  ⏳ %s", exc)
        return {"status": "already_running", "run_id": exc.run_id}

    run = outcome.run
    return {
        "status": "skipped" if outcome.skipped else (run.status if run else "failed"),
        "run_id": run.id if run else None,
        "summary": outcome.summary.to_dict(),
        "score": outcome.snapshot.score if outcome.snapshot else None,
    }


async def run_scheduled_audits(ctx: dict) -> dict:
    """ARQ cron: audit every owner whose next scheduled audit is due."""
    from workers.link_audit.orchestrator import AuditRequest, run_audits

    registry = ctx["registry"]
    owners = await registry.owners_due(utcnow())
    logger.info("🗓️  %d owners due for a scheduled audit", len(owners))

    requests = [
        AuditRequest(owner_id=owner, run_type=AuditType.FULL, trigger=AuditTrigger.SCHEDULED)
        for owner in owners
    ]
    outcomes = await run_audits(ctx["orchestrator"], requests)
    completed = sum(1 for outcome in outcomes if outcome.succeeded)
    return {"owners": len(owners), "completed": completed}


async def startup(ctx: dict) -> None:
    """Called on worker startup."""
    from core.database import async_session_factory
    from core.notifications.slack import notify_health_alert
    from core.repository import SqlLinkRegistry
    from workers.link_audit.factory import build_orchestrator

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    registry = SqlLinkRegistry(async_session_factory)
    ctx["registry"] = registry
    ctx["orchestrator"] = build_orchestrator(
        registry,
        notifier=notify_health_alert if settings.slack_webhook_url else None,
    )
    logger.info("🚀 Link audit worker started")


async def shutdown(ctx: dict) -> None:
    """Called on worker shutdown."""
    from core.database import dispose_engine

    await dispose_engine()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [
        run_link_audit,
        run_scheduled_audits,
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(settings.redis_url)

    # A run over a large link set takes a while.
    job_timeout = 60 * 30

    # POST /api/audits/jobs/{job_id}/abort; an aborted run drains in-flight links first.
    allow_abort_jobs = True

    # Cron schedule
    cron_jobs = [
        # Scheduled audits: every 30 minutes, each owner at most once per schedule interval
        cron(run_scheduled_audits, minute={0, 30}),
    ]
