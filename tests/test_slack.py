"""Tests for Slack health alerts."""

from __future__ import annotations

import json

import httpx

from core.notifications.slack import format_health_alert, send_slack_alert
from workers.link_audit.models import HealthScoreSnapshot, Issue, IssueSeverity, IssueType, Trend

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def snapshot() -> HealthScoreSnapshot:
    return HealthScoreSnapshot(
        owner_id="creator-1",
        score=45.0,
        healthy_links_score=25.0,
        critical_issues_penalty=20.0,
        broken_links_penalty=10.0,
        total_links=4,
        healthy_links=2,
        broken_links=2,
        critical_issues=2,
        trend=Trend.DECLINING,
        score_change=-30.0,
        estimated_monthly_loss=100.0,
    )


def broken_issue(link_id: int) -> Issue:
    return Issue(
        id=link_id,
        owner_id="creator-1",
        link_id=link_id,
        issue_type=IssueType.BROKEN_LINK,
        severity=IssueSeverity.CRITICAL,
        title="Broken Link",
        revenue_impact_estimate=50.0,
    )


class TestFormat:

    def test_blocks_list_top_issues(self):
        text, blocks = format_health_alert("creator-1", snapshot(), [broken_issue(7), broken_issue(9)])

        assert text.startswith("Link health alert for creator-1")
        assert "45/100 (Critical)" in text
        assert blocks[0]["type"] == "header"
        issues_block = blocks[-1]["text"]["text"]
        assert "link #7 (~$50.00/mo)" in issues_block
        assert "link #9" in issues_block

    def test_no_issue_block_without_issues(self):
        _, blocks = format_health_alert("creator-1", snapshot(), [])
        assert len(blocks) == 2


class TestSend:

    async def test_posts_payload(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="ok")

        sent = await send_slack_alert(
            "hello", blocks=[{"type": "divider"}], webhook_url=WEBHOOK, transport=httpx.MockTransport(handler)
        )

        assert sent is True
        assert str(seen[0].url) == WEBHOOK
        assert json.loads(seen[0].content) == {"text": "hello", "blocks": [{"type": "divider"}]}

    async def test_http_error_returns_false(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        assert await send_slack_alert("hello", webhook_url=WEBHOOK, transport=transport) is False

    async def test_unconfigured_is_skipped(self, monkeypatch):
        monkeypatch.setattr("core.notifications.slack.settings.slack_webhook_url", "")

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await send_slack_alert("hello", transport=httpx.MockTransport(handler)) is False
