"""Tests for AlertManager cooldowns and delivery."""

import logging
from typing import Any, Dict, List

import pytest

from conductor.monitoring.alerts import (
    AlertCategory,
    AlertChannel,
    AlertManager,
    AlertSeverity,
    LoggingAlertChannel,
)
from tests.conftest import ManualClock


class CollectingChannel(AlertChannel):
    def __init__(self, accept: bool = True):
        self.payloads: List[Dict[str, Any]] = []
        self.accept = accept

    async def send(self, payload: Dict[str, Any]) -> bool:
        self.payloads.append(payload)
        return self.accept


class BrokenChannel(AlertChannel):
    async def send(self, payload: Dict[str, Any]) -> bool:
        raise ConnectionError("webhook unreachable")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def channel():
    return CollectingChannel()


@pytest.fixture
def alerts(channel, clock):
    return AlertManager(channel=channel, cooldown=60.0, clock=clock)


class TestCooldown:
    """Tests for the per-(category, severity) cooldown."""

    @pytest.mark.asyncio
    async def test_second_alert_in_window_is_dropped(self, alerts, channel, clock):
        first = await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.HIGH, "error rate 10%")
        clock.advance(59)
        second = await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.HIGH, "error rate 12%")

        assert first is not None
        assert second is None
        assert len(channel.payloads) == 1
        assert len(alerts.get_history()) == 1
        assert alerts.suppressed == 1

    @pytest.mark.asyncio
    async def test_alert_allowed_after_window(self, alerts, channel, clock):
        await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.HIGH, "first")
        clock.advance(60)
        assert await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.HIGH, "second") is not None
        assert len(channel.payloads) == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_per_category_and_severity(self, alerts, channel):
        await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.HIGH, "a")
        await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.CRITICAL, "b")
        await alerts.create_alert(AlertCategory.PERFORMANCE, AlertSeverity.HIGH, "c")
        await alerts.create_alert("error", "high", "d")

        assert [p["message"] for p in channel.payloads] == ["a", "b", "c"]


class TestDelivery:
    """Tests for payloads and delivery failures."""

    @pytest.mark.asyncio
    async def test_payload(self, alerts, channel):
        alert = await alerts.create_alert(
            AlertCategory.RESOURCE, AlertSeverity.MEDIUM, "dead letters piling up", {"count": 11}, "degraded"
        )

        payload = channel.payloads[0]
        assert payload["text"] == "Workflow alert [MEDIUM resource]: dead letters piling up"
        assert payload["id"] == alert.id
        assert payload["context"] == {"count": 11}
        assert payload["system_status"] == "degraded"

    @pytest.mark.asyncio
    async def test_channel_exception_is_counted(self, clock):
        alerts = AlertManager(channel=BrokenChannel(), clock=clock)
        alert = await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.LOW, "x")

        assert alert is not None
        assert alerts.delivery_failures == 1

    @pytest.mark.asyncio
    async def test_rejected_delivery_is_counted(self, clock):
        alerts = AlertManager(channel=CollectingChannel(accept=False), clock=clock)
        await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.LOW, "x")
        assert alerts.delivery_failures == 1

    @pytest.mark.asyncio
    async def test_logging_channel(self, caplog):
        channel = LoggingAlertChannel()
        with caplog.at_level(logging.INFO, logger="conductor.alerts"):
            assert await channel.send({"severity": "critical", "text": "system down"}) is True
        assert caplog.records[-1].levelno == logging.CRITICAL
        assert caplog.records[-1].message == "system down"


class TestHistory:
    """Tests for history and resolution."""

    @pytest.mark.asyncio
    async def test_resolve_and_active(self, alerts):
        first = await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.LOW, "a")
        await alerts.create_alert(AlertCategory.ERROR, AlertSeverity.MEDIUM, "b")

        assert alerts.resolve(first.id) is True
        assert alerts.resolve("unknown") is False
        assert [a.message for a in alerts.active_alerts()] == ["b"]
        assert first.to_dict()["resolved"] is True
