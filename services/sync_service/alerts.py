"""Webhook alerts for sources that keep failing."""

import logging
from typing import Optional

import httpx

from shared.config import get_alert_config

logger = logging.getLogger(__name__)


class AlertService:
    """Posts an alert when a source reaches the consecutive failure threshold."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        webhook_url: Optional[str] = None,
        failure_threshold: Optional[int] = None
    ):
        """
        Initialize alert service; unset arguments come from the environment.

        Args:
            enabled: Whether alerts are sent (ENABLE_ALERTS)
            webhook_url: Where alerts are posted (ALERT_WEBHOOK_URL)
            failure_threshold: Consecutive failures that trigger an alert
        """
        config = get_alert_config()
        self.enabled = config["enabled"] if enabled is None else enabled
        self.webhook_url = webhook_url or config["webhook_url"]
        self.failure_threshold = failure_threshold or config["failure_threshold"]

    def should_alert(self, consecutive_failures: int) -> bool:
        # Only on the failure that crosses the threshold, not on every later one
        return consecutive_failures == self.failure_threshold

    async def send_source_failure_alert(
        self,
        source: str,
        consecutive_failures: int,
        error_message: str,
        last_success_at: Optional[str] = None
    ) -> bool:
        """
        Send an alert for a source that has failed repeatedly.

        Delivery problems are logged and never raised; an alert must not
        affect the sync run that produced it.

        Args:
            source: Failing source name
            consecutive_failures: Failures in a row so far
            error_message: Message of the latest failure
            last_success_at: ISO timestamp of the last successful run, if any

        Returns:
            True if the alert was delivered
        """
        if not self.enabled:
            logger.info(f"Alerts disabled, skipping alert for {source}")
            return False

        message = (
            f"Mission Control sync failing\n"
            f"Source: {source}\n"
            f"Consecutive failures: {consecutive_failures}\n"
            f"Error: {error_message}\n"
            f"Last success: {last_success_at or 'never'}\n"
        )
        logger.warning(f"SOURCE FAILURE ALERT: {message}")

        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.webhook_url,
                    json={
                        "text": message,
                        "source": source,
                        "consecutive_failures": consecutive_failures,
                        "error": error_message,
                        "last_success_at": last_success_at
                    }
                )
                response.raise_for_status()
            logger.info(f"Alert sent for {source}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send alert for {source}: {e}")
            return False
