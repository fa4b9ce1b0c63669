"""Operational alerts for billing anomalies (fire-and-forget, best effort)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import requests
from requests.exceptions import RequestException

from config_models import AlertConfig, EmailConfig
from extensions import db
from mailer import MailerError, send_alert_email

logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

_SLACK_COLORS = {
    SEVERITY_INFO: "#36a64f",
    SEVERITY_WARNING: "#ff9900",
    SEVERITY_CRITICAL: "#d00000",
}

_LOG_LEVELS = {
    SEVERITY_INFO: logging.INFO,
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_CRITICAL: logging.ERROR,
}

QUEUED_ALERTS_KEY = "queued_alerts"


@dataclass
class Alert:
    title: str
    message: str
    severity: str = SEVERITY_WARNING
    tenant_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)


def queue_alert(alert: Alert) -> None:
    """Hold *alert* until the current transaction commits."""
    db.session.info.setdefault(QUEUED_ALERTS_KEY, []).append(alert)


def discard_queued_alerts() -> None:
    db.session.info.pop(QUEUED_ALERTS_KEY, None)


def send_queued_alerts(alerts) -> int:
    """Deliver alerts queued during a transaction that has now committed."""
    queued = db.session.info.pop(QUEUED_ALERTS_KEY, [])
    for alert in queued:
        alerts.send_alert(alert)
    return len(queued)


class AlertService:
    """Delivers alerts to the log and, when enabled, to email and Slack/webhooks.

    Delivery never raises: a broken alert channel must not break billing.
    """

    def __init__(self, config: AlertConfig, email_config: EmailConfig, timeout: float = 5.0):
        self.config = config
        self.email_config = email_config
        self.timeout = timeout

    def send_alert(self, alert: Alert) -> None:
        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.WARNING),
            "ALERT [%s] %s: %s (tenant=%s) %s",
            alert.severity,
            alert.title,
            alert.message,
            alert.tenant_id,
            alert.metadata or "",
        )
        if not self.config.enabled:
            return

        if alert.severity == SEVERITY_CRITICAL or (
            alert.severity == SEVERITY_WARNING and self.config.email_warnings
        ):
            self._send_email(alert)
        if self.config.slack_webhook_url:
            self._post(self.config.slack_webhook_url, self._slack_payload(alert))
        if self.config.webhook_url:
            self._post(self.config.webhook_url, self._webhook_payload(alert))

    def _send_email(self, alert: Alert) -> None:
        lines = [alert.message, ""]
        if alert.tenant_id is not None:
            lines.append(f"Tenant: {alert.tenant_id}")
        lines.append(f"Severity: {alert.severity.upper()}")
        for key, value in alert.metadata.items():
            lines.append(f"{key}: {value}")
        try:
            send_alert_email(
                self.email_config,
                f"[{alert.severity.upper()}] {alert.title}",
                self.config.recipients,
                "\n".join(lines),
            )
        except MailerError as e:
            logger.error("Failed to deliver alert email '%s': %s", alert.title, e)

    def _post(self, url: str, payload: dict) -> None:
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except RequestException as e:
            logger.error("Failed to deliver alert '%s' to %s: %s", payload.get("title", ""), url, e)

    @staticmethod
    def _slack_payload(alert: Alert) -> dict:
        fields = [{"title": "Severity", "value": alert.severity.upper(), "short": True}]
        if alert.tenant_id is not None:
            fields.append({"title": "Tenant", "value": str(alert.tenant_id), "short": True})
        fields.extend(
            {"title": key, "value": str(value), "short": True}
            for key, value in alert.metadata.items()
        )
        return {
            "title": alert.title,
            "text": alert.title,
            "attachments": [
                {
                    "color": _SLACK_COLORS.get(alert.severity, "#cccccc"),
                    "text": alert.message,
                    "fields": fields,
                }
            ],
        }

    @staticmethod
    def _webhook_payload(alert: Alert) -> dict:
        return {
            "title": alert.title,
            "message": alert.message,
            "severity": alert.severity,
            "tenant_id": alert.tenant_id,
            "metadata": {key: str(value) for key, value in alert.metadata.items()},
        }
