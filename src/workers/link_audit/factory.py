"""
Builds the audit engine from application settings.

The engine modules only know their own config dataclasses; this is the
one place that reads ``core.config.settings`` for them.
"""

from __future__ import annotations

from datetime import timedelta

from core.config import Settings, settings as default_settings
from workers.link_audit.actions import ActionManager
from workers.link_audit.commission_optimizer import CommissionOptimizer, OptimizerConfig, RateTable
from workers.link_audit.health_scorer import HealthScorer
from workers.link_audit.issue_detector import IssueDetector
from workers.link_audit.orchestrator import AuditOrchestrator, Notifier, OrchestratorConfig
from workers.link_audit.registry import LinkRegistry
from workers.link_audit.stock_probe import StockProbe
from workers.link_audit.tracer import RedirectTracer, TracerConfig


def tracer_config(cfg: Settings) -> TracerConfig:
    return TracerConfig(
        max_hops=cfg.tracer_max_hops,
        soft_hop_cap=cfg.tracer_soft_hop_cap,
        request_timeout=cfg.tracer_request_timeout,
        max_retries=cfg.tracer_max_retries,
        backoff_base=cfg.tracer_backoff_base,
        backoff_max=cfg.tracer_backoff_max,
        rate_limit_retries=cfg.tracer_rate_limit_retries,
        user_agent=cfg.tracer_user_agent,
    )


def optimizer_config(cfg: Settings) -> OptimizerConfig:
    return OptimizerConfig(
        conversion_rate=cfg.commission_conversion_rate,
        average_order_value=cfg.commission_average_order_value,
        min_monthly_clicks=cfg.commission_min_monthly_clicks,
        min_monthly_gain=cfg.commission_min_monthly_gain,
    )


def orchestrator_config(cfg: Settings) -> OrchestratorConfig:
    return OrchestratorConfig(
        concurrency=cfg.audit_concurrency,
        trace_timeout=cfg.audit_trace_timeout,
        min_interval=timedelta(minutes=cfg.audit_min_interval_minutes),
        schedule_interval=timedelta(hours=cfg.audit_schedule_interval_hours),
        stale_run_timeout=timedelta(minutes=cfg.audit_stale_run_minutes),
        incremental_max_age=timedelta(hours=cfg.audit_incremental_max_age_hours),
    )


def build_orchestrator(
    registry: LinkRegistry,
    *,
    cfg: Settings | None = None,
    notifier: Notifier | None = None,
) -> AuditOrchestrator:
    cfg = cfg or default_settings
    return AuditOrchestrator(
        registry,
        tracer=RedirectTracer(tracer_config(cfg)),
        detector=IssueDetector(),
        optimizer=CommissionOptimizer(RateTable(), optimizer_config(cfg)),
        scorer=HealthScorer(),
        actions=ActionManager(registry),
        config=orchestrator_config(cfg),
        stock_probe=StockProbe() if cfg.stock_probe_enabled else None,
        notifier=notifier,
    )
