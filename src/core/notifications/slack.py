"""
Slack webhook notification sender.

Sends Revenue Health alerts to a Slack channel via incoming webhooks
after an audit finds new critical issues or a declining score.
"""

from __future__ import annotations

import logging

import httpx

from core.config import settings
from workers.link_audit.health_scorer import generate_summary
from workers.link_audit.models import HealthScoreSnapshot, Issue

logger = logging.getLogger(__name__)


async def send_slack_alert(
    text: str,
    *,
    blocks: list[dict] | None = None,
    webhook_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """
    Send a message to the configured Slack webhook.

    Args:
        text: Fallback text for notifications.
        blocks: Optional Slack Block Kit blocks for rich formatting.
        webhook_url: Overrides ``SLACK_WEBHOOK_URL``.
        transport: Optional httpx transport (tests).

    Returns:
        True if sent successfully, False otherwise.
    """
    url = webhook_url or settings.slack_webhook_url
    if not url:
        logger.warning("SLACK_WEBHOOK_URL not configured. Alert skipped.")
        return False

    payload: dict = {"text": text}
    if blocks:
        payload["blocks"] = blocks

    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            logger.info("Slack alert sent successfully.")
            return True
    except httpx.HTTPError as exc:
        logger.error("Failed to send Slack alert: %s", exc)
        return False


def format_health_alert(owner_id: str, snapshot: HealthScoreSnapshot, issues: list[Issue]) -> tuple[str, list[dict]]:
    """Fallback text and Block Kit blocks for a health alert."""
    summary = generate_summary(snapshot)
    text = f"Link health alert for {owner_id}\n\n{summary}"

    blocks: list[dict] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"Link health: {owner_id}"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": summary}},
    ]
    if issues:
        lines = []
        for issue in issues:
            impact = f" (~${issue.revenue_impact_estimate:.2f}/mo)" if issue.revenue_impact_estimate else ""
            lines.append(f"• *{issue.title}* [{issue.severity}] link #{issue.link_id}{impact}")
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "*Top issues*\n" + "\n".join(lines)}})
    return text, blocks


async def notify_health_alert(owner_id: str, snapshot: HealthScoreSnapshot, issues: list[Issue]) -> bool:
    """Orchestrator notifier: posts the health summary and top issues to Slack."""
    text, blocks = format_health_alert(owner_id, snapshot, issues)
    return await send_slack_alert(text, blocks=blocks)
