from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable, List

from generator.engine import (
    CONFLICT_REASONS,
    NO_CANDIDATE_DRIVERS,
    STATUS_ASSIGNED,
    STATUS_CONFLICT,
    STATUS_SKIPPED,
    Conflict,
    WeeklySchedule,
)


def summarize_conflicts(conflicts: Iterable[Conflict]) -> Dict[str, Any]:
    """Aggregate conflict records for an administrator: counts by reason and the unresolved dates."""
    items = list(conflicts)
    by_reason = Counter(conflict.reason for conflict in items)
    unresolved = sorted({conflict.date for conflict in items if conflict.reason == NO_CANDIDATE_DRIVERS})
    if not items:
        message = "Every requested day has a driver."
    elif unresolved:
        plural = "s" if len(unresolved) != 1 else ""
        message = f"{len(unresolved)} day{plural} still need a driver: " + ", ".join(
            day.strftime("%a %b %d") for day in unresolved
        )
    else:
        message = "No unstaffed days; only informational entries were recorded."
    return {
        "total": len(items),
        "by_reason": {reason: by_reason.get(reason, 0) for reason in CONFLICT_REASONS},
        "unresolved_dates": [day.isoformat() for day in unresolved],
        "message": message,
    }


def schedule_fairness_score(schedule: WeeklySchedule, family_ids: Iterable[str]) -> float:
    """Return ``1 - variance`` of per-family driving counts for the week, floored at zero."""
    family_ids = list(family_ids)
    if not family_ids or not schedule.assignments:
        return 1.0
    counts = Counter(assignment.driver_family_id for assignment in schedule.assignments)
    values: List[int] = [counts.get(family_id, 0) for family_id in family_ids]
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return round(max(0.0, 1.0 - variance), 4)


def build_week_report(schedule: WeeklySchedule, family_ids: Iterable[str] = ()) -> Dict[str, Any]:
    payload = schedule.to_dict()
    statuses = Counter(outcome.status for outcome in schedule.outcomes)
    payload.update(
        {
            "assigned_days": statuses.get(STATUS_ASSIGNED, 0),
            "conflict_days": statuses.get(STATUS_CONFLICT, 0),
            "skipped_days": statuses.get(STATUS_SKIPPED, 0),
            "conflict_summary": summarize_conflicts(schedule.conflicts),
            "fairness_score": schedule_fairness_score(schedule, family_ids),
        }
    )
    return payload
