from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import UnknownGroupError
from fairness import FairnessLedger
from logger import get_logger
from policy import normalize_policy
from preferences import UNAVAILABLE, PreferenceEntry
from validation import require_week_start

log = get_logger("generator")

WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
NO_CANDIDATE_DRIVERS = "no_candidate_drivers"
NO_RIDERS_AND_NO_DRIVERS = "no_riders_and_no_drivers"
CONFLICT_REASONS = (NO_CANDIDATE_DRIVERS, NO_RIDERS_AND_NO_DRIVERS)
STATUS_ASSIGNED = "assigned"
STATUS_CONFLICT = "conflict"
STATUS_SKIPPED = "skipped"
# Monday-Friday; weekends are never scheduled.
SCHOOL_DAYS = 5


@dataclass(frozen=True)
class Assignment:
    group_id: str
    date: datetime.date
    driver_family_id: str
    driver_id: str
    passenger_family_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "date": self.date.isoformat(),
            "day": WEEKDAY_TOKENS[self.date.weekday()],
            "driver_family_id": self.driver_family_id,
            "driver_id": self.driver_id,
            "passenger_family_ids": list(self.passenger_family_ids),
        }


@dataclass(frozen=True)
class Conflict:
    group_id: str
    date: datetime.date
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "date": self.date.isoformat(),
            "day": WEEKDAY_TOKENS[self.date.weekday()],
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DayOutcome:
    date: datetime.date
    status: str
    assignment: Optional[Assignment] = None
    conflict: Optional[Conflict] = None
    riders: Tuple[str, ...] = ()
    candidates: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "day": WEEKDAY_TOKENS[self.date.weekday()],
            "status": self.status,
            "driver_family_id": self.assignment.driver_family_id if self.assignment else None,
            "reason": self.conflict.reason if self.conflict else None,
            "riders": list(self.riders),
            "candidates": list(self.candidates),
        }


@dataclass
class WeeklySchedule:
    group_id: str
    week_start: datetime.date
    outcomes: List[DayOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def assignments(self) -> List[Assignment]:
        return [outcome.assignment for outcome in self.outcomes if outcome.assignment is not None]

    @property
    def conflicts(self) -> List[Conflict]:
        return [outcome.conflict for outcome in self.outcomes if outcome.conflict is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "week_start": self.week_start.isoformat(),
            "assignments": [assignment.to_dict() for assignment in self.assignments],
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "days": [outcome.to_dict() for outcome in self.outcomes],
            "warnings": list(self.warnings),
        }


class WeeklyScheduleGenerator:
    """Greedy, day-by-day driver selection for one carpool group and week.

    Days are processed strictly Monday to Friday and the ledger is updated
    after each assignment, so every selection sees the debt left by the
    days before it. Earlier days are never revisited.
    """

    def __init__(self, ledger: FairnessLedger, *, policy: Optional[Dict] = None, actor: str = "system") -> None:
        self.ledger = ledger
        self.policy = normalize_policy(policy or {})
        self.actor = actor or "system"
        scheduling_cfg = self.policy["scheduling"]
        self.report_empty_days: bool = scheduling_cfg["report_empty_days"]
        self.warnings: List[str] = []

    def week_dates(self, week_start: datetime.date) -> List[datetime.date]:
        return [week_start + datetime.timedelta(days=offset) for offset in range(SCHOOL_DAYS)]

    def generate(
        self,
        group_id: str,
        week_start: datetime.date,
        families: Sequence[Any],
        preferences: Iterable[PreferenceEntry],
    ) -> WeeklySchedule:
        if not isinstance(group_id, str) or not group_id.strip():
            raise UnknownGroupError("group_id is required")
        week_start = require_week_start(week_start)
        roster = self._roster(group_id, families)
        self.warnings = []
        by_day = self._preferences_by_day(week_start, roster, preferences)
        family_ids = list(roster.keys())

        schedule = WeeklySchedule(group_id=group_id, week_start=week_start)
        with self.ledger.lock(group_id):
            for day in self.week_dates(week_start):
                outcome = self._schedule_day(group_id, day, roster, family_ids, by_day.get(day, {}))
                schedule.outcomes.append(outcome)
        schedule.warnings = list(self.warnings)
        log.info(
            "Group %s week %s: %d assigned, %d conflicts, %d skipped",
            group_id,
            week_start.isoformat(),
            sum(1 for outcome in schedule.outcomes if outcome.status == STATUS_ASSIGNED),
            sum(1 for outcome in schedule.outcomes if outcome.status == STATUS_CONFLICT),
            sum(1 for outcome in schedule.outcomes if outcome.status == STATUS_SKIPPED),
        )
        return schedule

    def _roster(self, group_id: str, families: Sequence[Any]) -> Dict[str, Any]:
        roster: Dict[str, Any] = {}
        for family in families or []:
            family_id = str(getattr(family, "id", "") or "")
            if not family_id:
                continue
            roster[family_id] = family
        if not roster:
            raise UnknownGroupError(f"Group {group_id} has no families.")
        # Sorted so rider lists and ledger updates never depend on directory order.
        return dict(sorted(roster.items()))

    def _preferences_by_day(
        self,
        week_start: datetime.date,
        roster: Dict[str, Any],
        preferences: Iterable[PreferenceEntry],
    ) -> Dict[datetime.date, Dict[str, PreferenceEntry]]:
        valid_days = set(self.week_dates(week_start))
        by_day: Dict[datetime.date, Dict[str, PreferenceEntry]] = {}
        for entry in preferences or []:
            if entry.family_id not in roster:
                self._warn(f"Ignoring preference from {entry.family_id}: not a member of this group.")
                continue
            if entry.date not in valid_days:
                if not week_start <= entry.date < week_start + datetime.timedelta(days=7):
                    self._warn(f"Ignoring preference for {entry.date.isoformat()}: outside the target week.")
                continue
            day_entries = by_day.setdefault(entry.date, {})
            if entry.family_id in day_entries:
                self._warn(
                    f"Duplicate preference for {entry.family_id} on {entry.date.isoformat()}; keeping the first."
                )
                continue
            day_entries[entry.family_id] = entry
        return by_day

    def _partition(
        self, family_ids: Sequence[str], day_entries: Dict[str, PreferenceEntry]
    ) -> Tuple[List[str], List[str]]:
        riders: List[str] = []
        candidates: List[str] = []
        for family_id in family_ids:
            entry = day_entries.get(family_id)
            if entry is None or entry.level == UNAVAILABLE:
                riders.append(family_id)
            else:
                candidates.append(family_id)
        return riders, candidates

    def _schedule_day(
        self,
        group_id: str,
        day: datetime.date,
        roster: Dict[str, Any],
        family_ids: List[str],
        day_entries: Dict[str, PreferenceEntry],
    ) -> DayOutcome:
        if not day_entries:
            # Nobody asked for a ride and nobody offered one.
            return self._skip(group_id, day)
        riders, candidates = self._partition(family_ids, day_entries)
        if not riders and not candidates:
            return self._skip(group_id, day)
        if not candidates:
            conflict = Conflict(group_id=group_id, date=day, reason=NO_CANDIDATE_DRIVERS)
            self._warn(f"No candidate drivers for {WEEKDAY_TOKENS[day.weekday()]} {day.isoformat()}.")
            return DayOutcome(
                date=day,
                status=STATUS_CONFLICT,
                conflict=conflict,
                riders=tuple(riders),
            )

        driver_family_id = self.ledger.select_driver(group_id, candidates)
        family = roster[driver_family_id]
        assignment = Assignment(
            group_id=group_id,
            date=day,
            driver_family_id=driver_family_id,
            driver_id=self._driver_id(family),
            passenger_family_ids=tuple(riders),
        )
        self.ledger.record_driving(group_id, driver_family_id, family_ids, on=day, actor=self.actor)
        return DayOutcome(
            date=day,
            status=STATUS_ASSIGNED,
            assignment=assignment,
            riders=tuple(riders),
            candidates=tuple(candidates),
        )

    def _skip(self, group_id: str, day: datetime.date) -> DayOutcome:
        conflict = None
        if self.report_empty_days:
            conflict = Conflict(group_id=group_id, date=day, reason=NO_RIDERS_AND_NO_DRIVERS)
        return DayOutcome(date=day, status=STATUS_SKIPPED, conflict=conflict)

    @staticmethod
    def _driver_id(family: Any) -> str:
        # First listed parent drives until per-parent driver selection exists.
        parents = list(getattr(family, "parent_ids", None) or [])
        return str(parents[0]) if parents else str(getattr(family, "id", ""))

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        log.warning(message)
