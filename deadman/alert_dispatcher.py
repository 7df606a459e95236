"""
Alert dispatcher for the watchdog.

Every alert is logged. Warning and critical alerts also go to a Slack
webhook when one is configured.
"""

import os
from datetime import datetime
from enum import Enum
from typing import Optional
import httpx
import structlog

logger = structlog.get_logger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertDispatcher:
    """
    Dispatches watchdog alerts to the configured channels.

    A continuous watchdog retrying a failing stop can raise the same
    warning every poll, so non-critical alerts are de-duplicated within
    a time window. Critical alerts (detonations) always go out.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        dedup_window_seconds: int = 300,
    ):
        """
        Initialize alert dispatcher.

        Args:
            slack_webhook_url: Slack webhook URL (falls back to SLACK_WEBHOOK_URL)
            dedup_window_seconds: Window for suppressing repeated alerts
        """
        self.slack_webhook_url = slack_webhook_url or os.environ.get("SLACK_WEBHOOK_URL")
        self.dedup_window_seconds = dedup_window_seconds
        self.sent_alerts: dict[str, datetime] = {}

    def send_info(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.INFO, message, context)

    def send_warning(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.WARNING, message, context)

    def send_critical(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.CRITICAL, message, context)

    def _dispatch(self, severity: AlertSeverity, message: str, context: dict) -> None:
        if not self._should_send(message, severity):
            logger.debug("alert_deduplicated", message=message[:50])
            return

        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.critical,
        }[severity]
        log_method("alert_dispatched", severity=severity.value, message=message, **context)

        if self.slack_webhook_url and severity is not AlertSeverity.INFO:
            self._send_slack(severity, message, context)

        self.sent_alerts[message] = datetime.now()
        self._cleanup_old_alerts()

    def _should_send(self, message: str, severity: AlertSeverity) -> bool:
        if severity is AlertSeverity.CRITICAL:
            return True

        last_sent = self.sent_alerts.get(message)
        if last_sent is None:
            return True

        elapsed = (datetime.now() - last_sent).total_seconds()
        return elapsed > self.dedup_window_seconds

    def _send_slack(self, severity: AlertSeverity, message: str, context: dict) -> None:
        emoji = ":rotating_light:" if severity is AlertSeverity.CRITICAL else ":warning:"
        blocks = [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{emoji} *{severity.value.upper()}* deadman switch\n{message}",
                },
            },
        ]
        if context:
            context_text = "\n".join(f"- *{k}*: {v}" for k, v in context.items())
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": context_text},
            })

        try:
            response = httpx.post(
                self.slack_webhook_url,
                json={"text": f"{emoji} {message}", "blocks": blocks},
                timeout=10,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Alerting must never take the watchdog down
            logger.error("slack_alert_failed", error=str(e))

    def _cleanup_old_alerts(self) -> None:
        now = datetime.now()
        cutoff_seconds = self.dedup_window_seconds * 2
        self.sent_alerts = {
            msg: ts
            for msg, ts in self.sent_alerts.items()
            if (now - ts).total_seconds() < cutoff_seconds
        }
