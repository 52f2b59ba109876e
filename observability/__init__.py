"""
Observability module for the Splitbench experimentation engine.

Provides structured alerts with severity levels and throttling for test
completions, monitor failures and storage failures.
"""

from observability.alerts import Alert, AlertManager, AlertSeverity, AlertType, get_alert_manager

__all__ = [
    "Alert",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "get_alert_manager",
]
