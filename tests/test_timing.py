"""Tests for duration parsing, deadlines and cancellable sleeps."""

from __future__ import annotations

import threading

import pytest

from pane_orchestrator.errors import OperationCancelledError
from pane_orchestrator.timing import Deadline, check_cancelled, humanize_duration, parse_duration, sleep


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, seconds",
        [
            ("500ms", 0.5),
            ("30s", 30.0),
            ("5m", 300.0),
            ("2h", 7200.0),
            ("7d", 604800.0),
            ("1.5", 1.5),
            (" 10 S ", 10.0),
            (2, 2.0),
        ],
    )
    def test_valid(self, value: str | int, seconds: float) -> None:
        assert parse_duration(value) == pytest.approx(seconds)

    @pytest.mark.parametrize("value", ["", "abc", "5 weeks", "-3s", -1])
    def test_invalid(self, value: str | int) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


def test_humanize_duration() -> None:
    assert humanize_duration(45) == "45s"
    assert humanize_duration(720) == "12m"
    assert humanize_duration(3 * 3600) == "3h"
    assert humanize_duration(2 * 86400) == "2d"
    assert humanize_duration(-5) == "0s"


class TestCancellation:
    def test_sleep_raises_when_already_cancelled(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            sleep(10, cancel)

    def test_sleep_returns_for_zero(self) -> None:
        sleep(0)

    def test_check_cancelled(self) -> None:
        check_cancelled(None)
        cancel = threading.Event()
        check_cancelled(cancel)
        cancel.set()
        with pytest.raises(OperationCancelledError):
            check_cancelled(cancel)


class TestDeadline:
    def test_zero_timeout_is_expired(self) -> None:
        assert Deadline(0).expired

    def test_remaining_counts_down(self) -> None:
        deadline = Deadline(60)
        assert not deadline.expired
        assert 0 < deadline.remaining <= 60

    def test_sleep_never_passes_deadline(self) -> None:
        """Sleeping past an expired deadline returns immediately."""
        Deadline(0).sleep(30)
