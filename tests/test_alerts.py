"""Tests for alert filtering, debouncing, channels and the alert store."""

from __future__ import annotations

import io
import json
import threading
import urllib.error
import urllib.request

import pytest

from pane_orchestrator.alerts import (
    Alert,
    Alerter,
    AlertSeverity,
    AlertType,
    LogChannel,
    WebhookChannel,
    WebhookError,
    dismiss_alert,
    list_alerts,
    severity_for,
)
from pane_orchestrator.config import AlertConfig, WebhookConfig
from pane_orchestrator.envelope import ErrorCode


class RecordingChannel:
    name = "recording"

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[Alert] = []
        self.fail = fail

    def available(self) -> bool:
        return True

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append(alert)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _alert(alert_type: AlertType = AlertType.UNHEALTHY, pane: str = "1.2", session: str = "proj") -> Alert:
    return Alert(type=alert_type, session=session, pane=pane, agent_type="claude", message="test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def alerter(clock: FakeClock, channel: RecordingChannel) -> Alerter:
    return Alerter(AlertConfig(debounce_seconds=60), [channel], clock=clock)


class TestAlerter:
    def test_sends_allowed_types(self, alerter: Alerter, channel: RecordingChannel) -> None:
        assert alerter.send(_alert())
        assert len(channel.sent) == 1

    def test_filters_types_not_in_allow_list(self, alerter: Alerter, channel: RecordingChannel) -> None:
        """degraded is not in the default alert_on list."""
        assert not alerter.send(_alert(AlertType.DEGRADED))
        assert channel.sent == []

    def test_disabled_alerter_sends_nothing(self, channel: RecordingChannel) -> None:
        alerter = Alerter(AlertConfig(enabled=False), [channel])
        assert not alerter.send(_alert())

    def test_debounce_per_pane_and_type(self, alerter: Alerter, clock: FakeClock, channel: RecordingChannel) -> None:
        """A repeat inside the window is dropped; other panes and types are not."""
        assert alerter.send(_alert())
        clock.now += 30
        assert not alerter.send(_alert())
        assert alerter.send(_alert(pane="1.3"))
        assert alerter.send(_alert(AlertType.RATE_LIMITED))
        clock.now += 31
        assert alerter.send(_alert())
        assert len(channel.sent) == 4

    def test_clear_debounce(self, alerter: Alerter) -> None:
        assert alerter.send(_alert())
        alerter.clear_debounce("other", "1.2")
        assert not alerter.send(_alert())
        alerter.clear_debounce("proj", "1.2")
        assert alerter.send(_alert())

    def test_debounce_per_session(self, alerter: Alerter, channel: RecordingChannel) -> None:
        assert alerter.send(_alert(pane="2", session="alpha"))
        assert alerter.send(_alert(pane="2", session="beta"))
        assert [a.session for a in channel.sent] == ["alpha", "beta"]

    def test_failing_channel_does_not_block_others(self, clock: FakeClock) -> None:
        good = RecordingChannel()
        alerter = Alerter(AlertConfig(), [RecordingChannel(fail=True), good], clock=clock)
        assert alerter.send(_alert())
        assert len(good.sent) == 1

    def test_state_change_mapping(self, alerter: Alerter, channel: RecordingChannel) -> None:
        assert alerter.send_state_change("proj", "1.2", "claude", "healthy", "crashed")
        assert channel.sent[-1].type == AlertType.UNHEALTHY.value
        assert not alerter.send_state_change("proj", "1.3", "claude", "healthy", "healthy")
        assert not alerter.send_state_change("proj", "1.3", "claude", "healthy", "sleepy")

    def test_restart_alert_flags_context_loss(self, alerter: Alerter, channel: RecordingChannel) -> None:
        assert alerter.send_restart("proj", "1.2", "claude", success=True)
        alert = channel.sent[-1]
        assert alert.context_loss
        assert "context lost" in alert.message

    def test_max_restarts_metadata(self, alerter: Alerter, channel: RecordingChannel) -> None:
        assert alerter.send_max_restarts("proj", "1.2", "claude", 4)
        assert channel.sent[-1].metadata == {"restart_count": 4}


class TestAlertStore:
    def test_newest_first_with_filters(self, alerter: Alerter) -> None:
        alerter.send(_alert(pane="1.2"))
        alerter.send(_alert(AlertType.RATE_LIMITED, pane="1.3"))
        alerter.send(_alert(pane="1.4", session="other"))
        stored = alerter.list_alerts()
        assert [s.id for s in stored] == ["alert-3", "alert-2", "alert-1"]
        assert [s.id for s in alerter.list_alerts(session="proj")] == ["alert-2", "alert-1"]
        assert [s.id for s in alerter.list_alerts(severity="warning")] == ["alert-2"]
        assert [s.id for s in alerter.list_alerts(alert_type="unhealthy")] == ["alert-3", "alert-1"]

    def test_list_alerts_operation_counts(self, alerter: Alerter) -> None:
        alerter.send(_alert())
        alerter.send(_alert(AlertType.RATE_LIMITED, pane="1.3"))
        result = list_alerts(alerter)
        assert result.success
        assert result.counts.critical == 1
        assert result.counts.warning == 1

    def test_dismiss_by_id(self, alerter: Alerter) -> None:
        alerter.send(_alert())
        result = dismiss_alert(alerter, alert_id="alert-1")
        assert result.success
        assert result.dismissed == ["alert-1"]
        assert alerter.list_alerts() == []
        assert len(alerter.list_alerts(include_dismissed=True)) == 1

    def test_dismiss_all_for_session(self, alerter: Alerter) -> None:
        alerter.send(_alert(pane="1.2"))
        alerter.send(_alert(pane="1.4", session="other"))
        result = dismiss_alert(alerter, session="proj", dismiss_all=True)
        assert result.dismissed == ["alert-1"]
        assert [s.id for s in alerter.list_alerts()] == ["alert-2"]

    def test_dismiss_requires_id_or_all(self, alerter: Alerter) -> None:
        result = dismiss_alert(alerter)
        assert not result.success
        assert result.error_code == ErrorCode.INVALID_FLAG.value

    def test_dismiss_unknown_id(self, alerter: Alerter) -> None:
        result = dismiss_alert(alerter, alert_id="alert-99")
        assert not result.success
        assert "not found" in (result.error or "")


def test_severity_for() -> None:
    assert severity_for(AlertType.UNHEALTHY) is AlertSeverity.CRITICAL
    assert severity_for("rate_limited") is AlertSeverity.WARNING
    assert severity_for(AlertType.RECOVERED) is AlertSeverity.INFO


def test_log_channel_writes_json_line() -> None:
    stream = io.StringIO()
    LogChannel(stream).send(_alert())
    line = stream.getvalue()
    assert line.startswith("[ALERT] ")
    assert json.loads(line[len("[ALERT] "):])["type"] == "unhealthy"


class TestWebhookChannel:
    def _channel(self, statuses: list[int | Exception], **config: object) -> tuple[WebhookChannel, list]:
        requests: list[urllib.request.Request] = []

        def opener(request: urllib.request.Request, timeout: float) -> int:
            requests.append(request)
            result = statuses.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        webhook = WebhookConfig(url="https://hooks.example.com/x", **config)  # type: ignore[arg-type]
        return WebhookChannel(webhook, opener=opener, backoff_base=0.0), requests

    def test_posts_json(self) -> None:
        channel, requests = self._channel([200])
        channel.send(_alert())
        assert len(requests) == 1
        assert requests[0].get_method() == "POST"
        assert json.loads(requests[0].data)["session"] == "proj"

    def test_retries_server_errors(self) -> None:
        channel, requests = self._channel([500, urllib.error.URLError("down"), 204])
        channel.send(_alert())
        assert len(requests) == 3

    def test_client_error_fails_immediately(self) -> None:
        channel, requests = self._channel([404, 200])
        with pytest.raises(WebhookError) as excinfo:
            channel.send(_alert())
        assert excinfo.value.status == 404
        assert len(requests) == 1

    def test_gives_up_after_retries(self) -> None:
        channel, requests = self._channel([503, 503, 503], max_retries=2)
        with pytest.raises(WebhookError, match="after 3 attempts"):
            channel.send(_alert())
        assert len(requests) == 3

    def test_event_filter(self) -> None:
        channel, requests = self._channel([200], events=("restart_failed",))
        channel.send(_alert())
        assert requests == []
