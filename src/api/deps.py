"""FastAPI dependencies: registry, orchestrator, action manager, ARQ pool."""

from __future__ import annotations

from functools import lru_cache

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from fastapi import Depends

from core.config import settings
from workers.link_audit.actions import ActionManager
from workers.link_audit.orchestrator import AuditOrchestrator
from workers.link_audit.registry import LinkRegistry


@lru_cache(maxsize=1)
def _default_registry() -> LinkRegistry:
    from core.database import async_session_factory
    from core.repository import SqlLinkRegistry

    return SqlLinkRegistry(async_session_factory)


@lru_cache(maxsize=1)
def _default_orchestrator() -> AuditOrchestrator:
    from core.notifications.slack import notify_health_alert
    from workers.link_audit.factory import build_orchestrator

    # One instance per process so the per-owner run locks are shared.
    return build_orchestrator(
        _default_registry(),
        notifier=notify_health_alert if settings.slack_webhook_url else None,
    )


def get_registry() -> LinkRegistry:
    return _default_registry()


def get_orchestrator() -> AuditOrchestrator:
    return _default_orchestrator()


def get_action_manager(registry: LinkRegistry = Depends(get_registry)) -> ActionManager:
    return ActionManager(registry)


_arq_pool: ArqRedis | None = None


async def get_arq_pool() -> ArqRedis:
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _arq_pool


async def close_arq_pool() -> None:
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
