"""Unit tests for deployment notifications."""
import json

import httpx
import pytest

from src.rollout.notifications.slack import (
    LogNotifier,
    Severity,
    SlackNotifier,
    create_notifier,
)

WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXX"


class TestSlackNotifier:
    """Test Slack payloads and delivery."""

    def test_payload(self):
        """Test color, merged fields and message text."""
        notifier = SlackNotifier(WEBHOOK, default_fields={"Version": "1.2.0", "Metrics Source": "datadog"})

        payload = notifier.build_payload("Rolled back", Severity.CRITICAL, {"Version": "1.2.1", "Target": "v-prev"})

        attachment = payload["attachments"][0]
        assert attachment["color"] == "danger"
        assert attachment["text"] == "Rolled back"
        assert {f["title"]: f["value"] for f in attachment["fields"]} == {
            "Version": "1.2.1",
            "Metrics Source": "datadog",
            "Target": "v-prev",
        }
        assert all(f["short"] for f in attachment["fields"])

    @pytest.mark.parametrize("severity,color", [
        (Severity.INFO, "good"),
        (Severity.WARNING, "warning"),
    ])
    def test_colors(self, severity, color):
        """Test severity to attachment color mapping."""
        payload = SlackNotifier(WEBHOOK).build_payload("msg", severity)
        assert payload["attachments"][0]["color"] == color

    @pytest.mark.asyncio
    async def test_send_posts_json(self):
        """Test that the payload is posted to the webhook."""
        seen = []

        def handler(request):
            seen.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200, text="ok")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = SlackNotifier(WEBHOOK, client=client)

        assert await notifier.send("Monitoring started", Severity.INFO) is True
        assert seen[0][0] == WEBHOOK
        assert seen[0][1]["attachments"][0]["text"] == "Monitoring started"

    @pytest.mark.asyncio
    async def test_delivery_failure_returns_false(self):
        """Test that a webhook error is swallowed and reported as False."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        notifier = SlackNotifier(WEBHOOK, client=client)

        assert await notifier.send("boom", Severity.CRITICAL) is False

    @pytest.mark.asyncio
    async def test_transport_failure_returns_false(self):
        """Test that an unreachable webhook does not raise."""
        def handler(request):
            raise httpx.ConnectError("no route", request=request)

        notifier = SlackNotifier(WEBHOOK, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert await notifier.send("boom") is False


class TestCreateNotifier:
    """Test notifier selection."""

    def test_without_webhook(self):
        """Test that a missing webhook falls back to log-only notifications."""
        assert isinstance(create_notifier(None), LogNotifier)

    def test_with_webhook(self):
        """Test that a webhook selects Slack with default fields."""
        notifier = create_notifier(WEBHOOK, {"Kind": "canary"})
        assert isinstance(notifier, SlackNotifier)
        assert notifier.default_fields == {"Kind": "canary"}

    @pytest.mark.asyncio
    async def test_log_notifier_always_succeeds(self):
        """Test that log-only delivery reports success."""
        assert await LogNotifier().send("hello", Severity.WARNING, {"a": 1}) is True
