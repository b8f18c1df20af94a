from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Dict, List, Tuple

from sqlalchemy import delete

from database import (
    DATA_DIR,
    _utcnow,
    Policy,
    ScheduleConflict,
    Trip,
    get_active_policy,
    get_families_in_group,
    get_group_fairness_rows,
    get_or_create_week,
    get_week_schedule,
    set_week_status,
    upsert_family,
    upsert_policy,
)
from logger import get_logger

EXPORT_DIR = DATA_DIR / "exports"
EXPORT_DIR.mkdir(parents=True, exist_ok=True)

log = get_logger("data_exchange")


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _week_info_from_date(week_start: datetime.date) -> Dict[str, int | str]:
    iso_year, iso_week, _ = week_start.isocalendar()
    return {
        "iso_year": iso_year,
        "iso_week": iso_week,
        "label": f"{iso_year} W{iso_week:02d}",
        "week_start": week_start.isoformat(),
    }


# ---------------------------------------------------------------------------
# Group roster import/export


def export_group_families(session, group_id: str) -> Path:
    payload = [
        {
            "id": family.id,
            "parent_ids": family.parent_ids,
            "child_ids": family.child_ids,
            "home_location": family.home_location,
        }
        for family in get_families_in_group(session, group_id)
    ]
    filename = EXPORT_DIR / f"group_{group_id}_families_{_timestamp()}.json"
    filename.write_text(
        json.dumps({"generated_at": _utcnow().isoformat(), "group_id": group_id, "families": payload}, indent=2),
        encoding="utf-8",
    )
    return filename


def import_group_families(session, file_path: Path, *, group_id: str | None = None) -> Tuple[int, int]:
    """Upsert families from an export; returns (imported, skipped)."""
    data = json.loads(file_path.read_text(encoding="utf-8"))
    target_group = group_id or data.get("group_id")
    if not target_group:
        raise ValueError("Family file does not name a group.")
    imported = 0
    skipped = 0
    for entry in data.get("families", []):
        family_id = str(entry.get("id") or "").strip()
        parents = entry.get("parent_ids") or []
        if not family_id or not parents:
            skipped += 1
            continue
        upsert_family(
            session,
            family_id,
            target_group,
            parents,
            entry.get("child_ids") or [],
            entry.get("home_location") or "",
        )
        imported += 1
    if skipped:
        log.warning("Skipped %d family entries without an id or parent ids.", skipped)
    return imported, skipped


# ---------------------------------------------------------------------------
# Week schedule (trips + conflicts)


def export_week_schedule(session, group_id: str, week_start: datetime.date) -> Path:
    schedule = get_week_schedule(session, group_id, week_start)
    filename = EXPORT_DIR / f"group_{group_id}_week_{week_start.isoformat()}_{_timestamp()}.json"
    filename.write_text(
        json.dumps(
            {
                "week": _week_info_from_date(week_start),
                "group_id": group_id,
                "assignments": schedule["assignments"],
                "conflicts": schedule["conflicts"],
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    return filename


def import_week_schedule(session, group_id: str, week_start: datetime.date, file_path: Path) -> int:
    data = json.loads(file_path.read_text(encoding="utf-8"))
    week = get_or_create_week(session, group_id, week_start)
    session.execute(delete(Trip).where(Trip.week_id == week.id))
    session.execute(delete(ScheduleConflict).where(ScheduleConflict.week_id == week.id))
    added = 0
    for entry in data.get("assignments", []):
        try:
            day = datetime.date.fromisoformat(entry["date"])
            driver_family_id = str(entry["driver_family_id"])
        except (KeyError, ValueError):
            continue
        session.add(
            Trip(
                week_id=week.id,
                date=day,
                driver_family_id=driver_family_id,
                driver_id=str(entry.get("driver_id") or driver_family_id),
                passengersJSON=json.dumps([str(item) for item in entry.get("passenger_family_ids") or []]),
                status=entry.get("status") or "generated",
            )
        )
        added += 1
    for entry in data.get("conflicts", []):
        try:
            day = datetime.date.fromisoformat(entry["date"])
        except (KeyError, ValueError):
            continue
        session.add(ScheduleConflict(week_id=week.id, date=day, reason=str(entry.get("reason") or "")))
    session.commit()
    session.expire(week, ["trips", "conflicts"])
    set_week_status(session, group_id, week_start, "draft")
    return added


# ---------------------------------------------------------------------------
# Fairness ledger export


def export_fairness_ledger(session, group_id: str) -> Path:
    rows: List[Dict] = [
        {
            "family_id": row.family_id,
            "debt": row.debt,
            "total_trips": row.total_trips,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }
        for row in get_group_fairness_rows(session, group_id)
    ]
    filename = EXPORT_DIR / f"group_{group_id}_fairness_{_timestamp()}.json"
    filename.write_text(json.dumps({"group_id": group_id, "families": rows}, indent=2), encoding="utf-8")
    return filename


# ---------------------------------------------------------------------------
# Policy import/export


def export_policy_dataset(session) -> Path:
    policy = get_active_policy(session)
    if not policy:
        raise ValueError("No active policy found to export.")
    payload = {
        "name": policy.name,
        "params": policy.params_dict(),
    }
    filename = EXPORT_DIR / f"policy_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


def import_policy_dataset(session, file_path: Path, *, edited_by: str = "import") -> Policy:
    data = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Policy file must be a JSON object.")
    params = data.get("params") if isinstance(data.get("params"), dict) else None
    if params is None:
        params = {k: v for k, v in data.items() if k != "name"}
    params = dict(params)
    params.pop("name", None)
    name = data.get("name") or "Imported Policy"
    return upsert_policy(session, name, params, edited_by=edited_by)
