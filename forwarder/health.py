from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from models.data_models import HealthIssue, HealthReport, PermissionState, PowerState, Verdict

STALE_AFTER = timedelta(hours=24)
# Errors older than this no longer count against health
ERROR_WINDOW = timedelta(hours=1)


@dataclass
class HealthChecks:
    """Raw results of the independent checks, gathered by the lifecycle manager."""
    permission: PermissionState
    context_active: bool
    power: PowerState
    last_activity: Optional[datetime]          # None means no message processed yet
    recent_errors: list[str] = field(default_factory=list)


def evaluate_health(checks: HealthChecks, now: datetime, stale_after: timedelta = STALE_AFTER) -> HealthReport:
    """Turn check results into a single verdict.

    healthy: no issues, warning: 1-2 issues, critical: 3 or more.
    Pure: the same checks and `now` always give the same report.
    """
    issues: list[HealthIssue] = []

    if checks.permission != PermissionState.GRANTED:
        issues.append(HealthIssue(
            check="permission",
            problem="Inbox access is not granted",
            recommendation="Grant inbox access (check the mailbox credentials) and start monitoring again.",
        ))

    if not checks.context_active:
        issues.append(HealthIssue(
            check="persistent_context",
            problem="No persistent execution context is active",
            recommendation="Start monitoring so the relay keeps running in the background.",
        ))

    if checks.power == PowerState.OPTIMIZED:
        issues.append(HealthIssue(
            check="power",
            problem="Power optimization may suspend the relay",
            recommendation="Exempt the relay from battery/power optimization in the host settings.",
        ))

    if checks.last_activity is None:
        issues.append(HealthIssue(
            check="last_activity",
            problem="No message has been processed yet",
            recommendation="Send a test message to the monitored inbox to confirm detection works.",
        ))
    elif now - checks.last_activity > stale_after:
        hours = int((now - checks.last_activity).total_seconds() // 3600)
        issues.append(HealthIssue(
            check="last_activity",
            problem=f"Last message was processed {hours}h ago",
            recommendation="Check that messages are still arriving and that polling is running.",
        ))

    if checks.recent_errors:
        issues.append(HealthIssue(
            check="errors",
            problem=f"{len(checks.recent_errors)} recent error(s), latest: {checks.recent_errors[-1]}",
            recommendation="Check the webhook endpoint and the relay log.",
        ))

    if not issues:
        verdict = Verdict.HEALTHY
    elif len(issues) <= 2:
        verdict = Verdict.WARNING
    else:
        verdict = Verdict.CRITICAL
    return HealthReport(verdict=verdict, issues=issues)
