"""Immediate notification of critical audit events.

The audit queue hands every critical event (malware detected, for example)
to a CriticalNotifier on top of persisting it. AlertingService delivers the
event as a JSON webhook, signed with HMAC-SHA256 when a secret is
configured. Delivery never raises: failures are returned as an AlertResult
and logged, and the audit queue keeps draining.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from docintake.core.config import AlertingSettings
    from docintake.services.audit_queue import AuditEvent

logger = logging.getLogger(__name__)


@dataclass
class AlertResult:
    """Result of an alert delivery attempt.

    Attributes:
        success: Whether the alert was delivered.
        alert_id: ID of the alert.
        event_id: Audit event that triggered the alert.
        error: Error message if delivery failed or was skipped.
        delivered_at: Timestamp of successful delivery.
    """

    success: bool
    alert_id: str
    event_id: str
    error: str | None = None
    delivered_at: datetime | None = None


class CriticalNotifier(Protocol):
    """Receives critical audit events for immediate notification."""

    async def notify(self, event: AuditEvent) -> AlertResult:
        """Deliver the event; never raises."""
        ...


@dataclass
class AlertingConfig:
    """Configuration for the alerting service.

    Attributes:
        enabled: Master switch for alerting.
        webhook_url: URL receiving alerts.
        webhook_secret: Shared secret for the HMAC signature.
        timeout: Request timeout in seconds.
        rate_limit_per_minute: Maximum alerts per minute per event type.
    """

    enabled: bool = True
    webhook_url: str | None = None
    webhook_secret: str | None = None
    timeout: float = 10.0
    rate_limit_per_minute: int = 30

    @classmethod
    def from_settings(cls, settings: AlertingSettings) -> AlertingConfig:
        """Build the config from AlertingSettings."""
        return cls(
            enabled=settings.enabled,
            webhook_url=settings.webhook_url,
            webhook_secret=(
                settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
            ),
            timeout=float(settings.timeout),
        )


def compute_webhook_signature(payload: str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature header value for a payload."""
    signature = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256)
    return f"sha256={signature.hexdigest()}"


class AlertingService:
    """Webhook notifier for critical audit events.

    Example:
        service = AlertingService(AlertingConfig(webhook_url="https://alerts.example.com/hook"))
        result = await service.notify(event)
        await service.close()
    """

    def __init__(
        self,
        config: AlertingConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._owns_client = http_client is None
        # Key: (event_type, minute_bucket), Value: count
        self._rate_limit_counters: dict[tuple[str, int], int] = defaultdict(int)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._config.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def notify(self, event: AuditEvent) -> AlertResult:
        """Deliver a critical audit event to the webhook."""
        alert_id = self._generate_alert_id()

        if not self._config.enabled or not self._config.webhook_url:
            logger.warning(
                "Critical audit event %s (%s) not delivered: alerting is not configured",
                event.event_id,
                event.event_type,
            )
            return AlertResult(
                success=False,
                alert_id=alert_id,
                event_id=event.event_id,
                error="Alerting disabled or webhook URL not configured",
            )

        if not self._check_rate_limit(event.event_type):
            logger.warning("Alert rate limit exceeded for event_type=%s", event.event_type)
            return AlertResult(
                success=False,
                alert_id=alert_id,
                event_id=event.event_id,
                error="Rate limited",
            )

        payload = json.dumps(
            {"alert_id": alert_id, "title": f"Critical audit event: {event.event_type}", "event": event.to_dict()},
            default=str,
        )
        headers = {
            "Content-Type": "application/json",
            "X-Alert-ID": alert_id,
            "X-Alert-Severity": event.severity.value,
            "X-Correlation-ID": event.correlation_id,
        }
        if self._config.webhook_secret:
            headers["X-Signature-SHA256"] = compute_webhook_signature(
                payload, self._config.webhook_secret
            )

        try:
            client = await self._get_http_client()
            response = await client.post(self._config.webhook_url, content=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Webhook alert failed: alert_id=%s, error=%s", alert_id, e)
            return AlertResult(
                success=False,
                alert_id=alert_id,
                event_id=event.event_id,
                error=f"Webhook request failed: {e}",
            )

        if not response.is_success:
            error = f"Webhook returned status {response.status_code}"
            logger.error("Webhook alert failed: alert_id=%s, error=%s", alert_id, error)
            return AlertResult(success=False, alert_id=alert_id, event_id=event.event_id, error=error)

        logger.info(
            "Webhook alert delivered: alert_id=%s, event_id=%s, status=%d",
            alert_id,
            event.event_id,
            response.status_code,
        )
        return AlertResult(
            success=True,
            alert_id=alert_id,
            event_id=event.event_id,
            delivered_at=datetime.now(UTC),
        )

    def _generate_alert_id(self) -> str:
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        return f"alert-{timestamp}-{secrets.token_hex(4)}"

    def _check_rate_limit(self, event_type: str) -> bool:
        """Return True if the alert may be sent, False if rate-limited."""
        minute_bucket = int(datetime.now(UTC).timestamp() // 60)
        key = (event_type, minute_bucket)

        # Keep only the current and previous minute
        for stale in [k for k in self._rate_limit_counters if k[1] < minute_bucket - 1]:
            del self._rate_limit_counters[stale]

        current = self._rate_limit_counters[key]
        if current >= self._config.rate_limit_per_minute:
            return False
        self._rate_limit_counters[key] = current + 1
        return True
