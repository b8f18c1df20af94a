from __future__ import annotations

import datetime
from typing import Callable, Dict, Optional

from .engine import WeeklyScheduleGenerator, WeeklySchedule
from conflicts import build_week_report
from database import (
    SessionLocal,
    get_families_in_group,
    get_preferences_for_week,
    record_audit_log,
    save_week_outcomes,
)
from errors import UnknownGroupError
from fairness import FairnessLedger, InMemoryFairnessStore, SqlFairnessStore
from logger import get_logger
from policy import load_active_policy
from validation import require_week_start

log = get_logger("generator.api")


def generate_weekly_schedule(
    group_id: str,
    week_start_date: datetime.date,
    *,
    session_factory: Callable = SessionLocal,
    actor: str = "system",
    ledger: Optional[FairnessLedger] = None,
    policy: Optional[Dict] = None,
    persist: bool = True,
) -> Dict:
    """Build, store and report one group's Monday-Friday schedule.

    Malformed input (missing group, non-Monday week start, empty roster)
    raises; days that cannot be staffed come back as conflicts. Storage
    errors propagate unchanged.

    Without an explicit ``ledger`` the engine runs against an in-memory copy
    of the stored debts. ``persist=True`` then writes trips, conflicts,
    ledger rows and the audit entry in one transaction; ``persist=False``
    leaves storage untouched. An explicit ``ledger`` is updated directly.
    """
    if not isinstance(group_id, str) or not group_id.strip():
        raise UnknownGroupError("group_id is required")
    week_start = require_week_start(week_start_date)
    with session_factory() as session:
        active_policy = policy if policy is not None else load_active_policy(session)
        families = get_families_in_group(session, group_id)
        preferences = get_preferences_for_week(session, group_id, week_start)
    if not families:
        raise UnknownGroupError(f"Unknown carpool group '{group_id}'.")
    family_ids = [family.id for family in families]

    if ledger is not None:
        schedule = WeeklyScheduleGenerator(ledger, policy=active_policy, actor=actor).generate(
            group_id, week_start, families, preferences
        )
        report = build_week_report(schedule, family_ids)
        if persist:
            with session_factory() as session:
                week = save_week_outcomes(session, schedule)
                _audit(session, actor, schedule, report, week)
    else:
        sql_store = SqlFairnessStore(session_factory)
        with sql_store.lock(group_id):
            snapshot = InMemoryFairnessStore({group_id: sql_store.all_for_group(group_id)})
            ledger = FairnessLedger(snapshot, policy=active_policy)
            schedule = WeeklyScheduleGenerator(ledger, policy=active_policy, actor=actor).generate(
                group_id, week_start, families, preferences
            )
            report = build_week_report(schedule, family_ids)
            if persist:
                with session_factory() as session:
                    week = save_week_outcomes(session, schedule, commit=False)
                    for event in snapshot.events:
                        sql_store.stage(
                            session,
                            group_id,
                            {event["family_id"]: event["delta"]},
                            reason=event["reason"],
                            event_date=event["event_date"],
                            driver_family_id=event["driver_family_id"],
                            note=event["note"],
                            actor=event["actor"],
                        )
                    # The audit write commits trips, conflicts and ledger rows together.
                    _audit(session, actor, schedule, report, week)

    report["fairness"] = {
        family_id: round(debt, 3) for family_id, debt in ledger.debts_for(group_id, family_ids).items()
    }
    log.info(
        "Generated schedule for group %s week %s (%d assignments, %d conflicts%s)",
        group_id,
        week_start.isoformat(),
        len(schedule.assignments),
        len(schedule.conflicts),
        "" if persist else ", not stored",
    )
    return report


def _audit(session, actor: str, schedule: WeeklySchedule, report: Dict, week) -> None:
    report["week_id"] = week.id
    report["label"] = week.label
    record_audit_log(
        session,
        actor or "system",
        "SCHEDULE_GENERATE",
        target_type="WeekSchedule",
        target_id=str(week.id),
        payload={
            "group_id": schedule.group_id,
            "week_start": schedule.week_start.isoformat(),
            "assignments": len(schedule.assignments),
            "conflicts": len(schedule.conflicts),
        },
    )
