"""
Health Scorer
=============
Aggregates an owner's link population into one 0–100 Revenue Health
Score, with trend, 30-day forecast and an estimated monthly loss.

Weights are fixed so scores stay comparable over time:

    healthy_sub_score = healthy / total × 50
    critical_penalty  = min(30, critical_open_issues × 10)
    broken_penalty    = min(20, broken_links × 5)
    composite         = clamp(0, 100, healthy_sub_score
                              + (30 − critical_penalty)
                              + (20 − broken_penalty))

A link is healthy iff it is neither broken nor out of stock and its own
``score_link`` is at least 80. Links never traced (or stale after a
failed audit) are counted as unknown and left out of the population.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from workers.link_audit.models import (
    SEVERITY_RANK,
    HealthScoreSnapshot,
    Issue,
    IssueSeverity,
    IssueType,
    LinkHealth,
    LossEstimateMode,
    StockStatus,
    Trace,
    TrackedLink,
    Trend,
    TrendForecast,
)

HEALTHY_LINK_SCORE = 80
TREND_THRESHOLD = 5.0

# Heuristic loss per link when no issue declares an impact (USD/month).
BROKEN_LINK_LOSS = 50.0
STOCK_OUT_LOSS = 30.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def build_link_health(link: TrackedLink, trace: Trace, open_issue_types: Iterable[IssueType] = ()) -> LinkHealth:
    """Scorer input for one link from its latest trace and its open issue types."""
    types = set(open_issue_types)
    broken = trace.is_broken
    return LinkHealth(
        link_id=link.id,
        is_broken=broken,
        is_stock_out=link.stock_status == StockStatus.OUT_OF_STOCK and not broken,
        is_untagged=link.is_monetized and not broken and not trace.affiliate_tag_present,
        redirect_count=trace.redirect_count,
        response_time_ms=trace.response_time_ms,
        has_drift=IssueType.DESTINATION_DRIFT in types,
        has_low_commission=IssueType.LOW_COMMISSION in types,
    )


def score_link(link: LinkHealth) -> int:
    """Per-link score in [0, 100]."""
    if link.is_broken:
        return 0

    score = 100
    if link.is_stock_out:
        score = min(score, 20)

    if link.redirect_count > 5:
        score -= 20
    elif link.redirect_count > 3:
        score -= 10

    if link.response_time_ms and link.response_time_ms > 5000:
        score -= 15
    elif link.response_time_ms and link.response_time_ms > 3000:
        score -= 5

    if link.has_drift:
        score -= 15
    if link.has_low_commission:
        score -= 10

    return int(_clamp(score))


def is_healthy(link: LinkHealth) -> bool:
    return not link.is_broken and not link.is_stock_out and score_link(link) >= HEALTHY_LINK_SCORE


def trend_for(delta: float) -> Trend:
    if delta > TREND_THRESHOLD:
        return Trend.IMPROVING
    if delta < -TREND_THRESHOLD:
        return Trend.DECLINING
    return Trend.STABLE


def analyze_trend(history: Sequence[tuple[datetime, float]]) -> TrendForecast:
    """
    Weekly velocity and a 30-day forecast from (timestamp, score) points.

    Uses the oldest and newest points. With fewer than two points, or all
    points at the same instant, the forecast is the latest score (100 if
    there is none).
    """
    if len(history) < 2:
        latest = history[0][1] if history else 100.0
        return TrendForecast(Trend.STABLE, 0.0, round(latest, 2))

    ordered = sorted(history, key=lambda point: point[0])
    (first_at, first_score), (last_at, last_score) = ordered[0], ordered[-1]
    days = (last_at - first_at).total_seconds() / 86400
    if days <= 0:
        return TrendForecast(Trend.STABLE, 0.0, round(last_score, 2))

    per_day = (last_score - first_score) / days
    velocity = per_day * 7
    if velocity > 2:
        direction = Trend.IMPROVING
    elif velocity < -2:
        direction = Trend.DECLINING
    else:
        direction = Trend.STABLE

    return TrendForecast(direction, round(velocity, 2), round(_clamp(last_score + per_day * 30), 2))


def estimate_monthly_loss(
    population: Sequence[LinkHealth],
    open_issues: Sequence[Issue],
) -> tuple[float, LossEstimateMode]:
    declared = sum(issue.revenue_impact_estimate or 0.0 for issue in open_issues)
    if declared > 0:
        return round(declared, 2), LossEstimateMode.DECLARED
    broken = sum(1 for link in population if link.is_broken)
    stock_out = sum(1 for link in population if link.is_stock_out)
    return round(broken * BROKEN_LINK_LOSS + stock_out * STOCK_OUT_LOSS, 2), LossEstimateMode.HEURISTIC


class HealthScorer:
    """
    Builds HealthScoreSnapshots. Stateless.

    Usage:
        snapshot = HealthScorer().calculate(owner_id, population, open_issues, previous)
    """

    def calculate(
        self,
        owner_id: str,
        population: Sequence[LinkHealth],
        open_issues: Sequence[Issue],
        previous: HealthScoreSnapshot | None = None,
        *,
        history: Sequence[tuple[datetime, float]] = (),
        unknown_links: int = 0,
        audit_run_id: int | None = None,
        now: datetime | None = None,
    ) -> HealthScoreSnapshot:
        issues = [issue for issue in open_issues if issue.is_active]
        extra = {"created_at": now} if now is not None else {}

        if not population:
            return HealthScoreSnapshot(
                owner_id=owner_id,
                score=100.0,
                healthy_links_score=50.0,
                critical_issues_penalty=0.0,
                broken_links_penalty=0.0,
                unknown_links=unknown_links,
                trend=Trend.STABLE,
                score_change=0.0,
                estimated_monthly_loss=0.0,
                loss_estimate_mode=LossEstimateMode.HEURISTIC,
                velocity_per_week=0.0,
                forecast_30_days=100.0,
                audit_run_id=audit_run_id,
                **extra,
            )

        total = len(population)
        healthy = sum(1 for link in population if is_healthy(link))
        broken = sum(1 for link in population if link.is_broken)
        stock_out = sum(1 for link in population if link.is_stock_out)
        untagged = sum(1 for link in population if link.is_untagged)

        critical = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
        warning = sum(1 for i in issues if i.severity == IssueSeverity.WARNING)
        info = sum(1 for i in issues if i.severity == IssueSeverity.INFO)

        healthy_sub_score = healthy / total * 50
        critical_penalty = min(30, critical * 10)
        broken_penalty = min(20, broken * 5)
        composite = round(_clamp(healthy_sub_score + (30 - critical_penalty) + (20 - broken_penalty)), 2)

        if previous is not None:
            delta = round(composite - previous.score, 2)
            trend = trend_for(delta)
        else:
            delta, trend = 0.0, Trend.STABLE

        points = list(history)
        if now is not None:
            points.append((now, composite))
        forecast = analyze_trend(points) if points else TrendForecast(Trend.STABLE, 0.0, composite)

        loss, mode = estimate_monthly_loss(population, issues)

        return HealthScoreSnapshot(
            owner_id=owner_id,
            score=composite,
            healthy_links_score=round(healthy_sub_score, 2),
            critical_issues_penalty=float(critical_penalty),
            broken_links_penalty=float(broken_penalty),
            total_links=total,
            healthy_links=healthy,
            broken_links=broken,
            stock_out_links=stock_out,
            untagged_links=untagged,
            unknown_links=unknown_links,
            critical_issues=critical,
            warning_issues=warning,
            info_issues=info,
            trend=trend,
            score_change=delta,
            estimated_monthly_loss=loss,
            loss_estimate_mode=mode,
            velocity_per_week=forecast.velocity_per_week,
            forecast_30_days=forecast.forecast_30_days,
            audit_run_id=audit_run_id,
            **extra,
        )


# ══════════════════════════════════════════════════════════════════════
# PRESENTATION HELPERS
# ══════════════════════════════════════════════════════════════════════

def top_issues(issues: Iterable[Issue], limit: int = 5) -> list[Issue]:
    """Active issues, highest revenue impact first, then most severe."""
    active = [issue for issue in issues if issue.is_active]
    active.sort(key=lambda i: (-(i.revenue_impact_estimate or 0.0), -SEVERITY_RANK[i.severity]))
    return active[:limit]


def score_badge(score: float) -> tuple[str, str]:
    """(label, emoji) for a score."""
    if score >= 80:
        return "Healthy", "✅"
    if score >= 50:
        return "Needs Attention", "⚠️"
    return "Critical", "🚨"


def generate_summary(snapshot: HealthScoreSnapshot) -> str:
    label, emoji = score_badge(snapshot.score)
    arrow = {Trend.IMPROVING: "📈", Trend.DECLINING: "📉"}.get(snapshot.trend, "➡️")

    lines = [f"{emoji} Revenue Health Score: {snapshot.score:g}/100 ({label}) {arrow}"]

    links = f"Links: {snapshot.healthy_links}/{snapshot.total_links} healthy"
    if snapshot.broken_links:
        links += f", {snapshot.broken_links} broken"
    if snapshot.stock_out_links:
        links += f", {snapshot.stock_out_links} out of stock"
    if snapshot.unknown_links:
        links += f", {snapshot.unknown_links} not checked"
    lines.append(links)

    lines.append(f"Issues: {snapshot.critical_issues} critical, {snapshot.warning_issues} warnings")

    if snapshot.estimated_monthly_loss > 0:
        suffix = " (estimated)" if snapshot.loss_estimate_mode == LossEstimateMode.HEURISTIC else ""
        lines.append(f"Estimated monthly revenue loss: ${snapshot.estimated_monthly_loss:.2f}{suffix}")

    if snapshot.score_change:
        sign = "+" if snapshot.score_change > 0 else ""
        lines.append(f"Change from last audit: {sign}{snapshot.score_change:g} points")

    return "\n\n".join(lines)
