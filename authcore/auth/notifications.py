"""Outbound OTP / link delivery collaborators."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import StrEnum
from typing import Protocol

from authcore.auth.errors import DeliveryError

LOGGER = logging.getLogger(__name__)


class Channel(StrEnum):
    SMS = "sms"
    EMAIL = "email"


class NotificationSender(Protocol):
    """Capability injected by the host application to reach users."""

    def send_message(self, channel: Channel, destination: str, content: str) -> None:
        """Deliver ``content`` or raise on failure."""


class LoggingNotificationSender:
    """Development sender that writes messages to the log instead of sending them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def send_message(self, channel: Channel, destination: str, content: str) -> None:
        self._logger.info(
            "notification_logged: to=%s content=%s",
            destination,
            content,
            extra={"channel": str(channel)},
        )


class NotificationDispatcher:
    """Runs a sender with a bounded timeout and reports failures as ``DeliveryError``.

    Delivery is never retried here; resending is the caller's decision.
    """

    def __init__(
        self,
        sender: NotificationSender,
        *,
        timeout_seconds: float = 10.0,
        max_workers: int = 4,
    ) -> None:
        self._sender = sender
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="auth-notify"
        )

    def dispatch(self, channel: Channel, destination: str, content: str) -> None:
        future = self._executor.submit(
            self._sender.send_message, channel, destination, content
        )
        try:
            future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            LOGGER.warning("notification_timeout", extra={"channel": str(channel)})
            raise DeliveryError("Message delivery timed out") from exc
        except DeliveryError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "notification_failed", extra={"channel": str(channel)}, exc_info=True
            )
            raise DeliveryError() from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
