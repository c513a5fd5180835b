"""Health monitoring, dead letters and alerting."""

from .alerts import AlertCategory, AlertChannel, AlertManager, AlertRecord, AlertSeverity, LoggingAlertChannel
from .dead_letter import DeadLetterEntry, DeadLetterStore, InMemoryDeadLetterStore, SQLiteDeadLetterStore
from .monitor import HealthMetrics, MonitoringConfig, WorkflowMonitor, classify_health

__all__ = [
    "AlertCategory",
    "AlertChannel",
    "AlertManager",
    "AlertRecord",
    "AlertSeverity",
    "DeadLetterEntry",
    "DeadLetterStore",
    "HealthMetrics",
    "InMemoryDeadLetterStore",
    "LoggingAlertChannel",
    "MonitoringConfig",
    "SQLiteDeadLetterStore",
    "WorkflowMonitor",
    "classify_health",
]
