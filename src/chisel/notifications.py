"""
Notifications - delivers drift alerts to configured channels.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from chisel.errors import NotificationError

logger = logging.getLogger(__name__)

LEVELS = ("info", "warning", "error", "critical")


@dataclass
class Notification:
    """A message to deliver to every channel."""

    title: str
    message: str
    level: str = "warning"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.level not in LEVELS:
            raise ValueError(f"invalid notification level: {self.level}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "level": self.level,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationChannel(ABC):
    """Base class for notification channels."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def channel_type(self) -> str:
        pass

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """
        Deliver a notification.

        Raises:
            NotificationError: If delivery failed.
        """
        pass


class LogChannel(NotificationChannel):
    """Writes notifications to the application log."""

    _LOG_LEVELS = {
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, name: str = "log"):
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel_type(self) -> str:
        return "log"

    async def send(self, notification: Notification) -> None:
        logger.log(
            self._LOG_LEVELS[notification.level],
            f"{notification.title}: {notification.message}",
        )


class WebhookChannel(NotificationChannel):
    """POSTs notifications as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        name: str = "webhook",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
    ):
        if not url:
            raise ValueError("webhook url cannot be empty")
        self.url = url
        self._name = name
        self.headers = dict(headers or {})
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel_type(self) -> str:
        return "webhook"

    async def send(self, notification: Notification) -> None:
        headers = {"Content-Type": "application/json", **self.headers}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.url, json=notification.to_dict(), headers=headers
                ) as response:
                    if response.status < 200 or response.status >= 300:
                        error_text = await response.text()
                        raise NotificationError(
                            f"Webhook {self.name} returned {response.status}: "
                            f"{error_text}"
                        )
        except aiohttp.ClientError as e:
            raise NotificationError(f"Webhook {self.name} failed: {e}") from e
        logger.debug(f"Sent notification to webhook {self.name}")


class DriftNotifier:
    """Sends a notification when a drift report crosses the threshold."""

    def __init__(
        self,
        threshold: int = 1,
        channels: Optional[List[NotificationChannel]] = None,
        enabled: bool = True,
    ):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.channels: List[NotificationChannel] = list(channels or [])
        self.enabled = enabled

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    def should_notify(self, report) -> bool:
        return self.enabled and report.drift_detected >= self.threshold

    async def notify_drift(self, report) -> bool:
        """
        Notify every channel about a drift report.

        Returns:
            True if a notification was sent.

        Raises:
            NotificationError: If any channel failed; other channels are
                still attempted.
        """
        if not self.should_notify(report):
            return False

        drifted = [result.resource_id for result in report.drifted()]
        notification = Notification(
            title=f"Drift detected in {report.module_name}",
            message=(
                f"{report.drift_detected} of {report.total_checked} resource(s) "
                f"drifted: {', '.join(drifted)}"
            ),
            level="warning",
            data=report.to_dict(),
        )

        errors = []
        for channel in self.channels:
            try:
                await channel.send(notification)
            except Exception as e:
                logger.error(f"Notification channel {channel.name} failed: {e}")
                errors.append(f"{channel.name}: {e}")

        if errors:
            raise NotificationError(
                f"{len(errors)} notification channel(s) failed: " + "; ".join(errors)
            )
        return True
