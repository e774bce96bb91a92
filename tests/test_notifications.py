"""Unit tests for notifications.py - drift alert delivery."""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from chisel.drift import DriftReport, DriftResult
from chisel.errors import NotificationError
from chisel.notifications import (
    DriftNotifier,
    LogChannel,
    Notification,
    WebhookChannel,
)


def mock_client_session(mock_session_cls, status=200, text=""):
    """Wire a patched aiohttp.ClientSession to return one response."""
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.text = AsyncMock(return_value=text)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(
        return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_resp),
            __aexit__=AsyncMock(return_value=False),
        )
    )

    mock_session_cls.return_value = AsyncMock(
        __aenter__=AsyncMock(return_value=mock_session),
        __aexit__=AsyncMock(return_value=False),
    )
    return mock_session


@pytest.fixture
def drift_report():
    return DriftReport(
        module_name="web",
        total_checked=3,
        drift_detected=1,
        results=[
            DriftResult("file.motd", has_drift=True, changes={"mode": {"from": "0600", "to": "0644"}}),
            DriftResult("file.hosts"),
            DriftResult("shell.reload"),
        ],
    )


class TestNotification:
    """Tests for the Notification dataclass."""

    def test_to_dict(self):
        notification = Notification(title="t", message="m", data={"k": 1})
        data = notification.to_dict()
        assert data["level"] == "warning"
        assert data["data"] == {"k": 1}
        assert isinstance(data["timestamp"], str)

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            Notification(title="t", message="m", level="loud")


@pytest.mark.asyncio
class TestLogChannel:
    """Tests for LogChannel."""

    async def test_send_logs_at_level(self, caplog):
        channel = LogChannel()
        with caplog.at_level(logging.INFO, logger="chisel.notifications"):
            await channel.send(Notification(title="Drift", message="1 drifted", level="error"))

        assert channel.name == "log"
        assert channel.channel_type == "log"
        assert caplog.records[-1].levelno == logging.ERROR
        assert "Drift: 1 drifted" in caplog.records[-1].getMessage()


@pytest.mark.asyncio
class TestWebhookChannel:
    """Tests for WebhookChannel."""

    @pytest.fixture
    def channel(self):
        return WebhookChannel(
            "http://localhost:9000/hook",
            headers={"Authorization": "Bearer abc"},
            timeout=2,
        )

    def test_empty_url(self):
        with pytest.raises(ValueError):
            WebhookChannel("")

    async def test_send_posts_json(self, channel):
        notification = Notification(title="Drift", message="x")
        with patch("chisel.notifications.aiohttp.ClientSession") as mock_session_cls:
            mock_session = mock_client_session(mock_session_cls)
            await channel.send(notification)

        args, kwargs = mock_session.post.call_args
        assert args[0] == "http://localhost:9000/hook"
        assert kwargs["json"]["title"] == "Drift"
        assert kwargs["headers"]["Authorization"] == "Bearer abc"
        assert kwargs["headers"]["Content-Type"] == "application/json"

    async def test_error_status_raises(self, channel):
        with patch("chisel.notifications.aiohttp.ClientSession") as mock_session_cls:
            mock_client_session(mock_session_cls, status=500, text="boom")
            with pytest.raises(NotificationError, match="returned 500: boom"):
                await channel.send(Notification(title="Drift", message="x"))

    async def test_client_error_raises(self, channel):
        with patch("chisel.notifications.aiohttp.ClientSession") as mock_session_cls:
            mock_session = mock_client_session(mock_session_cls)
            mock_session.post.side_effect = aiohttp.ClientConnectionError("refused")
            with pytest.raises(NotificationError, match="refused"):
                await channel.send(Notification(title="Drift", message="x"))


def mock_channel(name="mock", error=None):
    channel = MagicMock()
    channel.name = name
    channel.send = AsyncMock(side_effect=error)
    return channel


@pytest.mark.asyncio
class TestDriftNotifier:
    """Tests for DriftNotifier."""

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            DriftNotifier(threshold=0)

    async def test_notifies_all_channels(self, drift_report):
        first, second = mock_channel("a"), mock_channel("b")
        notifier = DriftNotifier(channels=[first])
        notifier.add_channel(second)

        assert await notifier.notify_drift(drift_report) is True

        notification = first.send.await_args.args[0]
        assert notification.title == "Drift detected in web"
        assert "file.motd" in notification.message
        assert notification.data["drift_detected"] == 1
        second.send.assert_awaited_once_with(notification)

    async def test_below_threshold(self, drift_report):
        channel = mock_channel()
        notifier = DriftNotifier(threshold=2, channels=[channel])

        assert await notifier.notify_drift(drift_report) is False
        channel.send.assert_not_awaited()

    async def test_disabled(self, drift_report):
        channel = mock_channel()
        notifier = DriftNotifier(channels=[channel], enabled=False)

        assert await notifier.notify_drift(drift_report) is False
        channel.send.assert_not_awaited()

    async def test_channel_failure_does_not_stop_others(self, drift_report):
        broken = mock_channel("broken", error=NotificationError("down"))
        healthy = mock_channel("healthy")
        notifier = DriftNotifier(channels=[broken, healthy])

        with pytest.raises(NotificationError, match="broken: down"):
            await notifier.notify_drift(drift_report)

        healthy.send.assert_awaited_once()
