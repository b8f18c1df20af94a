from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from errors import UnknownWeekError
from preferences import PreferenceEntry, normalize_level


DATA_DIR = Path(os.environ.get("CARPOOL_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATA_DIR.mkdir(parents=True, exist_ok=True)
CARPOOL_DATABASE_URL = os.environ.get("CARPOOL_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'carpool.db').as_posix()}"
WEEK_STATUS_CHOICES = {"draft", "published"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def _format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=4)
    start_str = week_start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if week_start.year != end.year:
        start_str = week_start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"{iso_year} W{iso_week:02d} ({start_str} - {end_str})"


def _load_json_list(raw: Optional[str]) -> List[str]:
    try:
        value = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


class Base(DeclarativeBase):
    """Metadata for all carpool tables living in carpool.db."""

    pass


class Family(Base):
    __tablename__ = "families"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    parentsJSON: Mapped[str] = mapped_column(String(1000), nullable=False, default="[]")
    childrenJSON: Mapped[str] = mapped_column(String(1000), nullable=False, default="[]")
    home_location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def parent_ids(self) -> List[str]:
        return _load_json_list(self.parentsJSON)

    @parent_ids.setter
    def parent_ids(self, parents: Iterable[str]) -> None:
        ordered: List[str] = []
        for parent in parents:
            token = str(parent).strip()
            if token and token not in ordered:
                ordered.append(token)
        if not ordered:
            raise ValueError("A family needs at least one parent id.")
        self.parentsJSON = json.dumps(ordered)

    @property
    def child_ids(self) -> List[str]:
        return _load_json_list(self.childrenJSON)

    @child_ids.setter
    def child_ids(self, children: Iterable[str]) -> None:
        self.childrenJSON = json.dumps(sorted({str(child).strip() for child in children if str(child).strip()}))


class PreferenceSubmission(Base):
    __tablename__ = "preference_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    submitted_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    submitted_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    entries: Mapped[List["Preference"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("group_id", "family_id", "week_start_date", name="uq_submission_family_week"),
    )


class Preference(Base):
    __tablename__ = "preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("preference_submissions.id", ondelete="CASCADE"), nullable=False
    )
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False, default="neutral")

    submission: Mapped[PreferenceSubmission] = relationship(back_populates="entries")

    __table_args__ = (UniqueConstraint("submission_id", "date", name="uq_preference_submission_date"),)


class FairnessDebt(Base):
    __tablename__ = "fairness_debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    debt: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_trips: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (UniqueConstraint("group_id", "family_id", name="uq_fairness_group_family"),)


class FairnessEvent(Base):
    __tablename__ = "fairness_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    delta: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reason: Mapped[str] = mapped_column(String(24), nullable=False, default="driving")
    note: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    actor: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class WeekSchedule(Base):
    __tablename__ = "week_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    iso_year: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_week: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(48), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    trips: Mapped[List["Trip"]] = relationship(back_populates="week", cascade="all, delete-orphan")
    conflicts: Mapped[List["ScheduleConflict"]] = relationship(
        back_populates="week", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("group_id", "week_start_date", name="uq_week_group_start"),)


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("week_schedule.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    driver_family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    driver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    passengersJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="generated")

    week: Mapped[WeekSchedule] = relationship(back_populates="trips")

    @property
    def passenger_family_ids(self) -> List[str]:
        return _load_json_list(self.passengersJSON)


class ScheduleConflict(Base):
    __tablename__ = "schedule_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("week_schedule.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)

    week: Mapped[WeekSchedule] = relationship(back_populates="conflicts")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="WeekSchedule")
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


carpool_engine = create_engine(
    CARPOOL_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=carpool_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(carpool_engine)


# ---------------------------------------------------------------------------
# Family / group directory


def upsert_family(
    session,
    family_id: str,
    group_id: str,
    parent_ids: Iterable[str],
    child_ids: Iterable[str] = (),
    home_location: str = "",
) -> Family:
    family = session.get(Family, family_id)
    if family is None:
        family = Family(id=family_id, group_id=group_id)
        session.add(family)
    family.group_id = group_id
    family.parent_ids = parent_ids
    family.child_ids = child_ids
    family.home_location = home_location or ""
    session.commit()
    session.refresh(family)
    return family


def get_families_in_group(session, group_id: str) -> List[Family]:
    stmt = select(Family).where(Family.group_id == group_id).order_by(Family.id.asc())
    return list(session.scalars(stmt))


# ---------------------------------------------------------------------------
# Preference store


def get_submission(session, group_id: str, family_id: str, week_start: datetime.date) -> Optional[PreferenceSubmission]:
    stmt = select(PreferenceSubmission).where(
        PreferenceSubmission.group_id == group_id,
        PreferenceSubmission.family_id == family_id,
        PreferenceSubmission.week_start_date == _normalize_week_start(week_start),
    )
    return session.scalars(stmt).first()


def save_preference_submission(
    session,
    group_id: str,
    family_id: str,
    week_start: datetime.date,
    entries: Iterable[PreferenceEntry],
    *,
    submitted_by: str = "system",
    submitted_at: Optional[datetime.datetime] = None,
) -> PreferenceSubmission:
    """Persist a validated batch, fully replacing any earlier batch for the same week."""
    normalized = _normalize_week_start(week_start)
    existing = get_submission(session, group_id, family_id, normalized)
    revision = 1
    if existing is not None:
        revision = existing.revision + 1
        session.delete(existing)
        session.flush()
    submission = PreferenceSubmission(
        group_id=group_id,
        family_id=family_id,
        week_start_date=normalized,
        submitted_by=submitted_by or "system",
        submitted_at=submitted_at or _utcnow(),
        revision=revision,
    )
    for entry in sorted(entries, key=lambda item: item.date):
        submission.entries.append(Preference(family_id=family_id, date=entry.date, level=entry.level))
    session.add(submission)
    session.commit()
    session.refresh(submission)
    return submission


def get_preferences_for_week(session, group_id: str, week_start: datetime.date) -> List[PreferenceEntry]:
    normalized = _normalize_week_start(week_start)
    stmt = (
        select(Preference)
        .join(PreferenceSubmission, Preference.submission_id == PreferenceSubmission.id)
        .where(
            PreferenceSubmission.group_id == group_id,
            PreferenceSubmission.week_start_date == normalized,
        )
        .order_by(Preference.date.asc(), Preference.family_id.asc())
    )
    return [
        PreferenceEntry(family_id=row.family_id, date=row.date, level=normalize_level(row.level))
        for row in session.scalars(stmt)
    ]


# ---------------------------------------------------------------------------
# Fairness ledger rows


def get_fairness_row(session, group_id: str, family_id: str) -> Optional[FairnessDebt]:
    stmt = select(FairnessDebt).where(FairnessDebt.group_id == group_id, FairnessDebt.family_id == family_id)
    return session.scalars(stmt).first()


def get_group_fairness_rows(session, group_id: str) -> List[FairnessDebt]:
    stmt = select(FairnessDebt).where(FairnessDebt.group_id == group_id).order_by(FairnessDebt.family_id.asc())
    return list(session.scalars(stmt))


def write_fairness_debt(session, group_id: str, family_id: str, debt: float, *, trips_delta: int = 0) -> FairnessDebt:
    """Stage a debt write; the caller owns the transaction."""
    row = get_fairness_row(session, group_id, family_id)
    if row is None:
        row = FairnessDebt(group_id=group_id, family_id=family_id, debt=0.0, total_trips=0)
        session.add(row)
    row.debt = float(debt)
    row.total_trips = (row.total_trips or 0) + int(trips_delta)
    return row


def add_fairness_event(
    session,
    group_id: str,
    family_id: str,
    delta: float,
    *,
    reason: str = "driving",
    event_date: Optional[datetime.date] = None,
    note: str = "",
    actor: str = "system",
) -> FairnessEvent:
    event = FairnessEvent(
        group_id=group_id,
        family_id=family_id,
        event_date=event_date,
        delta=float(delta),
        reason=reason,
        note=note or "",
        actor=actor or "system",
    )
    session.add(event)
    return event


def list_fairness_events(session, group_id: str, family_id: Optional[str] = None) -> List[FairnessEvent]:
    stmt = select(FairnessEvent).where(FairnessEvent.group_id == group_id)
    if family_id:
        stmt = stmt.where(FairnessEvent.family_id == family_id)
    stmt = stmt.order_by(FairnessEvent.id.asc())
    return list(session.scalars(stmt))


# ---------------------------------------------------------------------------
# Policy


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(select(Policy).where(Policy.name == name)).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


# ---------------------------------------------------------------------------
# Week schedules (assignment / conflict sink)


def get_week(session, group_id: str, week_start_date: datetime.date) -> Optional[WeekSchedule]:
    stmt = select(WeekSchedule).where(
        WeekSchedule.group_id == group_id,
        WeekSchedule.week_start_date == _normalize_week_start(week_start_date),
    )
    return session.scalars(stmt).first()


def get_or_create_week(
    session, group_id: str, week_start_date: datetime.date, *, commit: bool = True
) -> WeekSchedule:
    if not isinstance(week_start_date, (datetime.date, datetime.datetime)):
        raise TypeError("week_start_date must be a date or datetime instance.")
    normalized = _normalize_week_start(week_start_date)
    week = get_week(session, group_id, normalized)
    if week:
        return week
    iso_year, iso_week, _ = normalized.isocalendar()
    week = WeekSchedule(
        group_id=group_id,
        week_start_date=normalized,
        iso_year=iso_year,
        iso_week=iso_week,
        label=_format_week_label(normalized),
        status="draft",
    )
    session.add(week)
    if not commit:
        session.flush()
        return week
    session.commit()
    session.refresh(week)
    return week


def save_week_outcomes(session, schedule, *, commit: bool = True) -> WeekSchedule:
    """Replace the stored trips/conflicts of ``schedule``'s week with its outcomes.

    With ``commit=False`` the rows are only flushed and the caller owns the transaction.
    """
    week = get_or_create_week(session, schedule.group_id, schedule.week_start, commit=commit)
    session.execute(delete(Trip).where(Trip.week_id == week.id))
    session.execute(delete(ScheduleConflict).where(ScheduleConflict.week_id == week.id))
    for assignment in schedule.assignments:
        session.add(
            Trip(
                week_id=week.id,
                date=assignment.date,
                driver_family_id=assignment.driver_family_id,
                driver_id=assignment.driver_id,
                passengersJSON=json.dumps(list(assignment.passenger_family_ids)),
            )
        )
    for conflict in schedule.conflicts:
        session.add(ScheduleConflict(week_id=week.id, date=conflict.date, reason=conflict.reason))
    week.status = "draft"
    if commit:
        session.commit()
    else:
        session.flush()
    session.expire(week, ["trips", "conflicts"])
    return week


def get_week_schedule(session, group_id: str, week_start_date: datetime.date) -> Dict[str, Any]:
    normalized = _normalize_week_start(week_start_date)
    week = get_week(session, group_id, normalized)
    if not week:
        return {
            "group_id": group_id,
            "week_start": normalized.isoformat(),
            "week_id": None,
            "status": None,
            "assignments": [],
            "conflicts": [],
        }
    trips = sorted(week.trips, key=lambda trip: trip.date)
    conflicts = sorted(week.conflicts, key=lambda conflict: conflict.date)
    return {
        "group_id": group_id,
        "week_start": normalized.isoformat(),
        "week_id": week.id,
        "label": week.label,
        "status": week.status,
        "assignments": [
            {
                "date": trip.date.isoformat(),
                "driver_family_id": trip.driver_family_id,
                "driver_id": trip.driver_id,
                "passenger_family_ids": trip.passenger_family_ids,
                "status": trip.status,
            }
            for trip in trips
        ],
        "conflicts": [
            {"date": conflict.date.isoformat(), "reason": conflict.reason} for conflict in conflicts
        ],
    }


def set_week_status(session, group_id: str, week_start_date: datetime.date, status: str) -> WeekSchedule:
    if status not in WEEK_STATUS_CHOICES:
        raise ValueError(f"Invalid week status '{status}'.")
    week = get_week(session, group_id, week_start_date)
    if week is None:
        raise UnknownWeekError(
            f"No schedule stored for group {group_id} in the week of {_normalize_week_start(week_start_date).isoformat()}."
        )
    week.status = status
    session.commit()
    session.refresh(week)
    return week


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "WeekSchedule",
    target_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=None if target_id is None else str(target_id),
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log


def list_audit_log(session, action: Optional[str] = None) -> List[AuditLog]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    return list(session.scalars(stmt.order_by(AuditLog.id.asc())))
