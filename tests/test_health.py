from __future__ import annotations

from datetime import timedelta

from conftest import NOW

from forwarder.health import HealthChecks, evaluate_health
from models.data_models import PermissionState, PowerState, Verdict


def checks(**overrides) -> HealthChecks:
    values = dict(
        permission=PermissionState.GRANTED,
        context_active=True,
        power=PowerState.UNOPTIMIZED,
        last_activity=NOW - timedelta(minutes=5),
    )
    values.update(overrides)
    return HealthChecks(**values)


def test_all_checks_passing_is_healthy() -> None:
    report = evaluate_health(checks(), now=NOW)
    assert report.verdict == Verdict.HEALTHY
    assert report.issues == []


def test_everything_wrong_is_critical() -> None:
    report = evaluate_health(
        checks(
            permission=PermissionState.DENIED,
            context_active=False,
            power=PowerState.OPTIMIZED,
            last_activity=None,
        ),
        now=NOW,
    )
    assert report.verdict == Verdict.CRITICAL
    assert len(report.issues) >= 3
    assert all(issue.recommendation for issue in report.issues)


def test_one_or_two_issues_is_warning() -> None:
    one = evaluate_health(checks(context_active=False), now=NOW)
    two = evaluate_health(checks(context_active=False, power=PowerState.OPTIMIZED), now=NOW)
    assert (one.verdict, len(one.issues)) == (Verdict.WARNING, 1)
    assert (two.verdict, len(two.issues)) == (Verdict.WARNING, 2)


def test_unknown_power_state_is_not_an_issue() -> None:
    assert evaluate_health(checks(power=PowerState.UNKNOWN), now=NOW).verdict == Verdict.HEALTHY


def test_stale_activity_is_an_issue() -> None:
    report = evaluate_health(checks(last_activity=NOW - timedelta(hours=30)), now=NOW)
    assert [issue.check for issue in report.issues] == ["last_activity"]
    assert "30h" in report.issues[0].problem


def test_recorded_errors_add_one_issue() -> None:
    report = evaluate_health(checks(recent_errors=["a", "b", "Delivery of message 4 failed"]), now=NOW)
    assert len(report.issues) == 1
    assert "3 recent error(s)" in report.issues[0].problem
    assert "message 4" in report.issues[0].problem


def test_evaluation_is_pure() -> None:
    c = checks(context_active=False)
    assert evaluate_health(c, now=NOW) == evaluate_health(c, now=NOW)
