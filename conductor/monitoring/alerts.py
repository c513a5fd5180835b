"""Alert records, delivery channels and cooldown handling."""
from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class AlertCategory(str, Enum):
    ERROR = "error"
    PERFORMANCE = "performance"
    RESOURCE = "resource"
    RECOVERY = "recovery"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class AlertRecord:
    id: str
    category: AlertCategory
    severity: AlertSeverity
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    resolved: bool = False
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "context": self.context,
        }


class AlertChannel(ABC):
    """Destination for alert payloads (webhook, chat, pager...)."""

    @abstractmethod
    async def send(self, payload: Dict[str, Any]) -> bool:
        """Deliver ``payload``.

        Returns:
            True if the channel accepted the alert
        """


class LoggingAlertChannel(AlertChannel):
    """Writes alerts to the ``conductor.alerts`` logger."""

    def __init__(self, logger_name: str = "conductor.alerts"):
        self._logger = logging.getLogger(logger_name)

    async def send(self, payload: Dict[str, Any]) -> bool:
        level = _LOG_LEVELS.get(AlertSeverity(payload.get("severity", "medium")), logging.WARNING)
        self._logger.log(level, payload["text"])
        return True


class AlertManager:
    """Creates alerts, applies the per-(category, severity) cooldown and sends them.

    Within the cooldown window after an alert for a given category and
    severity, further alerts for that pair are dropped: no record is created
    and nothing is sent.
    """

    def __init__(
        self,
        channel: Optional[AlertChannel] = None,
        cooldown: float = 900.0,
        clock: Optional[Callable[[], float]] = None,
        history_size: int = 500,
    ):
        """Initialize the alert manager.

        Args:
            channel: Delivery channel (logging channel if None)
            cooldown: Seconds between alerts of the same category and severity
            clock: Monotonic clock used for cooldowns
            history_size: Maximum alerts kept in history
        """
        self.channel = channel or LoggingAlertChannel()
        self.cooldown = cooldown
        self._clock = clock or time.monotonic
        self._history: Deque[AlertRecord] = deque(maxlen=history_size)
        self._last_sent: Dict[Tuple[AlertCategory, AlertSeverity], float] = {}
        self._lock = Lock()
        self.suppressed = 0
        self.delivery_failures = 0

    def _claim_slot(self, key: Tuple[AlertCategory, AlertSeverity]) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.cooldown:
                self.suppressed += 1
                return False
            self._last_sent[key] = now
            return True

    async def create_alert(
        self,
        category: AlertCategory,
        severity: AlertSeverity,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        system_status: Optional[str] = None,
    ) -> Optional[AlertRecord]:
        """Record and send an alert unless its cooldown is active.

        Returns:
            The new alert, or None if it was suppressed by the cooldown
        """
        category = AlertCategory(category)
        severity = AlertSeverity(severity)
        if not self._claim_slot((category, severity)):
            logger.debug(f"Suppressed {category.value}/{severity.value} alert during cooldown: {message}")
            return None

        alert = AlertRecord(
            id=f"{category.value}-{uuid.uuid4().hex[:12]}",
            category=category,
            severity=severity,
            message=message,
            context=dict(context or {}),
        )
        with self._lock:
            self._history.append(alert)

        try:
            delivered = await self.channel.send(self.build_payload(alert, system_status))
        except Exception as e:
            delivered = False
            logger.error(f"Failed to send alert {alert.id}: {e}")
        if not delivered:
            self.delivery_failures += 1
            logger.warning(f"Alert {alert.id} was not delivered")
        return alert

    @staticmethod
    def build_payload(alert: AlertRecord, system_status: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "text": f"Workflow alert [{alert.severity.value.upper()} {alert.category.value}]: {alert.message}",
            "id": alert.id,
            "category": alert.category.value,
            "severity": alert.severity.value,
            "message": alert.message,
            "timestamp": alert.timestamp.isoformat(),
            "context": alert.context,
        }
        if system_status is not None:
            payload["system_status"] = system_status
        return payload

    def get_history(self, limit: int = 50) -> List[AlertRecord]:
        """Most recent alerts, oldest first."""
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def active_alerts(self, limit: int = 10) -> List[AlertRecord]:
        with self._lock:
            unresolved = [a for a in self._history if not a.resolved]
        return unresolved[-limit:]

    def resolve(self, alert_id: str) -> bool:
        with self._lock:
            for alert in self._history:
                if alert.id == alert_id:
                    alert.resolved = True
                    return True
        return False
