"""Debounced health alerts with pluggable delivery channels.

The :class:`Alerter` filters events by an enabled flag and an allow-list of
alert types, suppresses repeats of the same ``pane:type`` pair within the
debounce interval, then hands each surviving alert to every available channel.
Dispatched alerts are also kept in a bounded in-memory store that backs the
``alerts`` and ``dismiss-alert`` operations.
"""

from __future__ import annotations

import json
import logging
import platform
import shutil
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, TextIO

from pydantic import Field

from .config import AlertConfig, WebhookConfig
from .envelope import Envelope, ErrorCode, WireModel, error_response, success_response, utc_timestamp
from .errors import OperationCancelledError
from .timing import sleep

logger = logging.getLogger(__name__)

WEBHOOK_USER_AGENT = "pane-orchestrator/1.0"
DEFAULT_WEBHOOK_RETRIES = 3
DEFAULT_WEBHOOK_TIMEOUT = 10.0


class AlertType(str, Enum):
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"
    RATE_LIMITED = "rate_limited"
    RESTART = "restart"
    RESTART_FAILED = "restart_failed"
    MAX_RESTARTS = "max_restarts"
    RECOVERED = "recovered"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_SEVERITY = {
    AlertType.UNHEALTHY: AlertSeverity.CRITICAL,
    AlertType.RESTART_FAILED: AlertSeverity.CRITICAL,
    AlertType.MAX_RESTARTS: AlertSeverity.CRITICAL,
    AlertType.DEGRADED: AlertSeverity.WARNING,
    AlertType.RATE_LIMITED: AlertSeverity.WARNING,
    AlertType.RESTART: AlertSeverity.WARNING,
    AlertType.RECOVERED: AlertSeverity.INFO,
}

_SUGGESTIONS = {
    AlertType.UNHEALTHY: "Check agent output. May need restart or intervention.",
    AlertType.DEGRADED: "Agent is slow but working. Monitor for improvement.",
    AlertType.RATE_LIMITED: "Agent hit API rate limits. Wait for the limit to reset or switch agents.",
    AlertType.RESTART: "Agent was restarted.",
    AlertType.RESTART_FAILED: "Restart failed. Manual intervention needed.",
    AlertType.MAX_RESTARTS: "Too many restarts. Check for underlying issues.",
    AlertType.RECOVERED: "Agent is healthy again.",
}


def severity_for(alert_type: AlertType | str) -> AlertSeverity:
    return _SEVERITY.get(AlertType(alert_type), AlertSeverity.INFO)


class Alert(WireModel):
    """One alert event."""

    type: AlertType
    session: str
    pane: str
    agent_type: str = "unknown"
    message: str
    timestamp: str = Field(default_factory=utc_timestamp)
    prev_state: str | None = None
    new_state: str | None = None
    suggestion: str | None = None
    context_loss: bool = False
    metadata: dict[str, Any] | None = None

    @property
    def debounce_key(self) -> str:
        return f"{self.session}:{self.pane}:{AlertType(self.type).value}"


class StoredAlert(WireModel):
    id: str
    severity: AlertSeverity
    dismissed: bool = False
    alert: Alert


class AlertChannel(Protocol):
    name: str

    def available(self) -> bool: ...

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> None: ...


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class LogChannel:
    """Write ``[ALERT] <json>`` lines to a stream (stderr by default)."""

    name = "log"

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def available(self) -> bool:
        return True

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> None:
        stream = self._stream or sys.stderr
        payload = json.dumps(alert.model_dump(mode="json", exclude_none=True), sort_keys=True)
        stream.write(f"[ALERT] {payload}\n")
        stream.flush()


def _escape_applescript(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class DesktopChannel:
    """``notify-send`` on Linux, ``osascript`` on macOS."""

    name = "desktop"

    def __init__(self, urgency: str = "normal") -> None:
        self.urgency = urgency or "normal"

    def _binary(self) -> str | None:
        system = platform.system()
        if system == "Darwin":
            return "osascript"
        if system == "Linux":
            return "notify-send"
        return None

    def available(self) -> bool:
        binary = self._binary()
        return binary is not None and shutil.which(binary) is not None

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> None:
        title = f"paneorch: {AlertType(alert.type).value}"
        binary = self._binary()
        if binary == "osascript":
            body, heading = _escape_applescript(alert.message), _escape_applescript(title)
            script = f'display notification "{body}" with title "{heading}"'
            cmd = ["osascript", "-e", script]
        elif binary == "notify-send":
            cmd = ["notify-send", "-u", self.urgency, title, alert.message]
        else:
            raise RuntimeError(f"desktop notifications not supported on {platform.system()}")
        subprocess.run(cmd, check=True, capture_output=True, timeout=10)


class WebhookError(RuntimeError):
    """Raised when a webhook delivery fails permanently."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


Opener = Callable[[urllib.request.Request, float], int]


def _default_opener(request: urllib.request.Request, timeout: float) -> int:
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            response.read()
            return int(response.status)
    except urllib.error.HTTPError as exc:
        return int(exc.code)


class WebhookChannel:
    """POST alerts as JSON.

    Server errors and transport failures are retried with exponential backoff
    (1s, 2s, 4s, ...) up to ``max_retries`` extra attempts; 4xx responses fail
    at once. Webhooks with an ``events`` list only receive those alert types.
    """

    def __init__(
        self,
        config: WebhookConfig,
        *,
        opener: Opener = _default_opener,
        backoff_base: float = 1.0,
    ) -> None:
        self.config = config
        self.max_retries = config.max_retries if config.max_retries > 0 else DEFAULT_WEBHOOK_RETRIES
        self.timeout = config.timeout if config.timeout > 0 else DEFAULT_WEBHOOK_TIMEOUT
        self._opener = opener
        self._backoff_base = backoff_base
        self.name = f"webhook:{config.url}"

    def available(self) -> bool:
        return bool(self.config.url)

    def accepts(self, alert: Alert) -> bool:
        return not self.config.events or AlertType(alert.type).value in self.config.events

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> None:
        if not self.accepts(alert):
            return
        body = json.dumps(alert.model_dump(mode="json", exclude_none=True)).encode("utf-8")
        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                sleep(self._backoff_base * (2 ** (attempt - 1)), cancel)
            request = urllib.request.Request(
                self.config.url,
                data=body,
                method="POST",
                headers={"Content-Type": "application/json", "User-Agent": WEBHOOK_USER_AGENT},
            )
            try:
                status = self._opener(request, self.timeout)
            except (urllib.error.URLError, OSError) as exc:
                last_error = str(exc)
                continue
            if 200 <= status < 300:
                return
            last_error = f"webhook returned status {status}"
            if 400 <= status < 500:
                raise WebhookError(last_error, status)
        raise WebhookError(f"webhook failed after {self.max_retries + 1} attempts: {last_error}")


# ---------------------------------------------------------------------------
# Alerter
# ---------------------------------------------------------------------------


class Alerter:
    """Filter, debounce and fan out alerts."""

    def __init__(
        self,
        config: AlertConfig | None = None,
        channels: list[AlertChannel] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or AlertConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sent: dict[str, float] = {}
        self._history: deque[StoredAlert] = deque(maxlen=self.config.history_size)
        self._next_id = 1
        if channels is None:
            channels = self._default_channels()
        self._channels: list[AlertChannel] = list(channels)

    def _default_channels(self) -> list[AlertChannel]:
        channels: list[AlertChannel] = []
        if self.config.desktop.enabled:
            channels.append(DesktopChannel(self.config.desktop.urgency))
        if self.config.log_to_stderr:
            channels.append(LogChannel())
        channels.extend(WebhookChannel(webhook) for webhook in self.config.webhooks)
        return channels

    def add_channel(self, channel: AlertChannel) -> None:
        with self._lock:
            self._channels.append(channel)

    @property
    def channels(self) -> list[AlertChannel]:
        with self._lock:
            return list(self._channels)

    def should_alert(self, alert_type: AlertType | str) -> bool:
        return self.config.enabled and AlertType(alert_type).value in self.config.alert_on

    def _claim(self, key: str) -> bool:
        """Record a send for ``key`` unless it is inside the debounce window."""
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.config.debounce_seconds:
                return False
            self._last_sent[key] = now
            return True

    def send(self, alert: Alert, cancel: threading.Event | None = None) -> bool:
        """Dispatch an alert; returns ``False`` when filtered or debounced.

        Channel failures are logged and do not stop delivery to the remaining
        channels.
        """
        if not self.should_alert(alert.type):
            return False
        if not self._claim(alert.debounce_key):
            logger.debug("alert %s debounced", alert.debounce_key)
            return False

        self._remember(alert)
        for channel in self.channels:
            if not channel.available():
                continue
            try:
                channel.send(alert, cancel)
            except OperationCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - deliver to remaining channels
                logger.warning("alert channel %s failed: %s", channel.name, exc)
        return True

    def send_state_change(
        self,
        session: str,
        pane: str,
        agent_type: str,
        prev_state: str,
        new_state: str,
        reason: str = "",
    ) -> bool:
        """Alert on a health transition; healthy-to-healthy is silent."""
        mapping = {
            "unhealthy": AlertType.UNHEALTHY,
            "crashed": AlertType.UNHEALTHY,
            "unresponsive": AlertType.UNHEALTHY,
            "degraded": AlertType.DEGRADED,
            "unknown": AlertType.DEGRADED,
            "rate_limited": AlertType.RATE_LIMITED,
        }
        if new_state == "healthy":
            if prev_state == "healthy":
                return False
            alert_type = AlertType.RECOVERED
        elif new_state in mapping:
            alert_type = mapping[new_state]
        else:
            return False
        alert = Alert(
            type=alert_type,
            session=session,
            pane=pane,
            agent_type=agent_type,
            prev_state=prev_state,
            new_state=new_state,
            message=f"Agent {agent_type} in {session}: {prev_state} -> {new_state}",
            suggestion=_SUGGESTIONS[alert_type],
            metadata={"reason": reason} if reason else None,
        )
        return self.send(alert)

    def send_restart(
        self, session: str, pane: str, agent_type: str, *, success: bool, context_loss: bool = True
    ) -> bool:
        alert_type = AlertType.RESTART if success else AlertType.RESTART_FAILED
        if success:
            message = f"Agent {agent_type} in {session} restarted"
        else:
            message = f"Restart of {agent_type} in {session} failed"
        suggestion = _SUGGESTIONS[alert_type]
        if success and context_loss:
            message += " (context lost)"
            suggestion = "Agent lost its conversation context. You may need to re-explain the task."
        alert = Alert(
            type=alert_type,
            session=session,
            pane=pane,
            agent_type=agent_type,
            message=message,
            suggestion=suggestion,
            context_loss=success and context_loss,
        )
        return self.send(alert)

    def send_max_restarts(self, session: str, pane: str, agent_type: str, restart_count: int) -> bool:
        alert = Alert(
            type=AlertType.MAX_RESTARTS,
            session=session,
            pane=pane,
            agent_type=agent_type,
            message=f"Agent {agent_type} in {session} exceeded max restarts ({restart_count})",
            suggestion=_SUGGESTIONS[AlertType.MAX_RESTARTS],
            metadata={"restart_count": restart_count},
        )
        return self.send(alert)

    def clear_debounce(self, session: str, pane: str) -> None:
        """Forget debounce state for every alert type of ``pane`` in ``session``."""
        prefix = f"{session}:{pane}:"
        with self._lock:
            for key in [k for k in self._last_sent if k.startswith(prefix)]:
                del self._last_sent[key]

    # -- store -----------------------------------------------------------

    def _remember(self, alert: Alert) -> None:
        with self._lock:
            stored = StoredAlert(id=f"alert-{self._next_id}", severity=severity_for(alert.type), alert=alert)
            self._next_id += 1
            self._history.append(stored)

    def list_alerts(
        self,
        *,
        session: str | None = None,
        severity: str | None = None,
        alert_type: str | None = None,
        include_dismissed: bool = False,
    ) -> list[StoredAlert]:
        """Stored alerts, newest first."""
        with self._lock:
            items = list(self._history)
        result = []
        for stored in reversed(items):
            if stored.dismissed and not include_dismissed:
                continue
            if session and stored.alert.session != session:
                continue
            if severity and stored.severity != severity:
                continue
            if alert_type and stored.alert.type != alert_type:
                continue
            result.append(stored)
        return result

    def dismiss(self, alert_id: str | None = None, *, session: str | None = None) -> list[str]:
        """Dismiss one alert by id, or every undismissed alert of a session."""
        dismissed = []
        with self._lock:
            for stored in self._history:
                if stored.dismissed:
                    continue
                if alert_id is not None and stored.id != alert_id:
                    continue
                if alert_id is None and session and stored.alert.session != session:
                    continue
                stored.dismissed = True
                dismissed.append(stored.id)
        return dismissed


# ---------------------------------------------------------------------------
# Process-wide alerter
# ---------------------------------------------------------------------------

_global_alerter: Alerter | None = None
_global_lock = threading.Lock()


def get_alerter() -> Alerter:
    """Return the process alerter, creating a default one on first use."""
    global _global_alerter
    with _global_lock:
        if _global_alerter is None:
            _global_alerter = Alerter()
        return _global_alerter


def set_alerter(alerter: Alerter | None) -> None:
    """Replace the process alerter; ``None`` resets it (for tests)."""
    global _global_alerter
    with _global_lock:
        _global_alerter = alerter


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class AlertCounts(WireModel):
    critical: int = 0
    warning: int = 0
    info: int = 0


class AlertsOutput(Envelope):
    alerts: list[StoredAlert] = Field(default_factory=list)
    counts: AlertCounts = Field(default_factory=AlertCounts)


class DismissAlertOutput(Envelope):
    dismissed: list[str] = Field(default_factory=list)


def count_by_severity(alerts: list[StoredAlert]) -> AlertCounts:
    counts = AlertCounts()
    for stored in alerts:
        name = AlertSeverity(stored.severity).value
        setattr(counts, name, getattr(counts, name) + 1)
    return counts


def list_alerts(
    alerter: Alerter | None = None,
    *,
    session: str | None = None,
    severity: str | None = None,
    alert_type: str | None = None,
) -> AlertsOutput:
    started = time.monotonic()
    alerter = alerter or get_alerter()
    alerts = alerter.list_alerts(session=session, severity=severity, alert_type=alert_type)
    return success_response(
        AlertsOutput,
        command="alerts",
        started=started,
        alerts=alerts,
        counts=count_by_severity(alerts),
    )


def dismiss_alert(
    alerter: Alerter | None = None,
    *,
    alert_id: str | None = None,
    session: str | None = None,
    dismiss_all: bool = False,
) -> DismissAlertOutput:
    started = time.monotonic()
    if not alert_id and not dismiss_all:
        return error_response(
            "an alert id or --all is required",
            ErrorCode.INVALID_FLAG,
            "Use 'paneorch alerts' to list alert ids",
            model=DismissAlertOutput,
            command="dismiss-alert",
            started=started,
        )
    alerter = alerter or get_alerter()
    dismissed = alerter.dismiss(alert_id, session=session)
    if alert_id and not dismissed:
        return error_response(
            f"alert '{alert_id}' not found",
            ErrorCode.INVALID_FLAG,
            "Use 'paneorch alerts' to list alert ids",
            model=DismissAlertOutput,
            command="dismiss-alert",
            started=started,
        )
    return success_response(DismissAlertOutput, command="dismiss-alert", started=started, dismissed=dismissed)
