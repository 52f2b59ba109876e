"""
Structured Alerting for the experimentation engine.

Alerts are emitted as structured log events (structlog) so any log
aggregation system can route them to notification channels.

Features:
- Severity levels (INFO, WARNING, CRITICAL)
- Experiment-specific alert types (test completed, monitor failure, ...)
- Deduplication and throttling of repeated alerts

Usage:
    from observability.alerts import AlertManager

    alert_manager = AlertManager()
    alert_manager.emit_test_completed(
        test_id="3f2c...", test_name="Checkout button", winner="variant_b"
    )
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import structlog

from app.config import get_settings


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(Enum):
    """Types of alerts the engine can emit."""

    # Test lifecycle
    TEST_COMPLETED = "test_completed"
    TEST_TIMED_OUT = "test_timed_out"

    # Monitor health
    MONITOR_CYCLE_FAILURE = "monitor_cycle_failure"
    TEST_EVALUATION_FAILURE = "test_evaluation_failure"

    # Storage
    STORAGE_FAILURE = "storage_failure"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """
    A single alert event.

    Attributes:
        alert_type: Category of alert
        severity: How critical is this alert
        source: Test id or component that triggered it
        message: Human-readable description
        details: Additional structured data
        timestamp: When the alert occurred
        alert_id: Identifier used for deduplication
    """

    alert_type: AlertType
    severity: AlertSeverity
    source: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    alert_id: Optional[str] = None

    def __post_init__(self):
        if self.alert_id is None:
            # Same type + source within the same hour deduplicates
            key_parts = [
                self.alert_type.value,
                self.source,
                self.timestamp.strftime("%Y%m%d%H"),
            ]
            self.alert_id = "_".join(key_parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "source": self.source,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_structured_log(self) -> dict[str, Any]:
        return {
            "event": "ALERT",
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "source": self.source,
            "message": self.message,
            **self.details,
        }


class AlertManager:
    """
    Emits alerts as structured log events with duplicate suppression.

    Throttle window defaults to ``ALERT_THROTTLE_MINUTES`` from settings.
    """

    def __init__(self, throttle_minutes: Optional[int] = None):
        if throttle_minutes is None:
            throttle_minutes = get_settings().ALERT_THROTTLE_MINUTES
        self.throttle_minutes = throttle_minutes

        # Track recent alerts for throttling
        self._recent_alerts: dict[str, datetime] = {}
        self.emitted: list[Alert] = []

        self.logger = structlog.get_logger("alerts")

    def _should_throttle(self, alert: Alert) -> bool:
        if alert.alert_id in self._recent_alerts:
            last_sent = self._recent_alerts[alert.alert_id]
            if _utcnow() - last_sent < timedelta(minutes=self.throttle_minutes):
                return True
        return False

    def _update_throttle_cache(self, alert: Alert):
        self._recent_alerts[alert.alert_id] = _utcnow()

        # Clean old entries (older than 1 hour)
        cutoff = _utcnow() - timedelta(hours=1)
        self._recent_alerts = {k: v for k, v in self._recent_alerts.items() if v > cutoff}

    def emit(self, alert: Alert, force: bool = False) -> bool:
        """
        Emit an alert.

        Args:
            alert: The alert to emit
            force: Bypass throttling

        Returns:
            True if alert was emitted, False if throttled
        """
        if not force and self._should_throttle(alert):
            self.logger.debug(
                "alert_throttled",
                alert_id=alert.alert_id,
                alert_type=alert.alert_type.value,
            )
            return False

        log_data = alert.to_structured_log()

        if alert.severity == AlertSeverity.CRITICAL:
            self.logger.critical(**log_data)
        elif alert.severity == AlertSeverity.WARNING:
            self.logger.warning(**log_data)
        else:
            self.logger.info(**log_data)

        self._update_throttle_cache(alert)
        self.emitted.append(alert)
        # Bounded history of what went out, newest last
        del self.emitted[:-100]

        return True

    def emit_test_completed(
        self, test_id: str, test_name: str, winner: Optional[str], **details
    ) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.TEST_COMPLETED,
                severity=AlertSeverity.INFO,
                source=test_id,
                message=f"Test '{test_name}' completed, winner: {winner or 'none'}",
                details={"test_name": test_name, "winner": winner, **details},
            ),
            force=True,
        )

    def emit_test_timed_out(self, test_id: str, test_name: str, max_duration_hours: int) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.TEST_TIMED_OUT,
                severity=AlertSeverity.WARNING,
                source=test_id,
                message=(
                    f"Test '{test_name}' reached the {max_duration_hours}h limit "
                    "without a significant result"
                ),
                details={"test_name": test_name, "max_duration_hours": max_duration_hours},
            ),
            force=True,
        )

    def emit_test_evaluation_failure(self, test_id: str, error: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.TEST_EVALUATION_FAILURE,
                severity=AlertSeverity.WARNING,
                source=test_id,
                message=f"Completion check for test {test_id} failed: {error}",
                details={"error": error, **details},
            )
        )

    def emit_monitor_failure(self, error: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.MONITOR_CYCLE_FAILURE,
                severity=AlertSeverity.CRITICAL,
                source="completion_monitor",
                message=f"Completion monitor cycle failed: {error}",
                details={"error": error, **details},
            ),
            force=True,
        )

    def emit_storage_failure(self, operation: str, error: str, **details) -> bool:
        return self.emit(
            Alert(
                alert_type=AlertType.STORAGE_FAILURE,
                severity=AlertSeverity.CRITICAL,
                source=operation,
                message=f"Storage operation '{operation}' failed: {error}",
                details={"operation": operation, "error": error, **details},
            )
        )


_default_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get or create the default AlertManager instance."""
    global _default_manager
    if _default_manager is None:
        _default_manager = AlertManager()
    return _default_manager
