"""FastAPI wrapper around the carpool scheduling engine.

Authentication and authorization are handled upstream; every endpoint takes
an optional ``actor`` that is written to the audit log.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure absolute imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    get_active_policy,
    get_families_in_group,
    get_preferences_for_week,
    get_week_schedule,
    init_database,
    record_audit_log,
    set_week_status,
    upsert_policy,
)
from errors import CarpoolError, InvalidWeekStartError, UnknownGroupError, status_for  # noqa: E402
from fairness import FairnessLedger, SqlFairnessStore  # noqa: E402
from generator.api import generate_weekly_schedule  # noqa: E402
from logger import get_logger  # noqa: E402
from policy import ensure_default_policy, load_active_policy, normalize_policy  # noqa: E402
from preferences import entries_from_payload  # noqa: E402
from validation import require_week_start, submit_preferences  # noqa: E402

log = get_logger("api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.SessionLocal)
    yield


app = FastAPI(title="Carpool Assistant API", version="0.1", lifespan=lifespan)


@app.exception_handler(CarpoolError)
async def carpool_error_handler(request: Request, exc: CarpoolError) -> JSONResponse:
    log.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_week_start(value: Any) -> datetime.date:
    if not value:
        raise InvalidWeekStartError("weekStart is required")
    return require_week_start(str(value))


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return str((payload or {}).get("actor") or "api").strip() or "api"


def _family_ids(db, group_id: str) -> list[str]:
    families = get_families_in_group(db, group_id)
    if not families:
        raise UnknownGroupError(f"Unknown carpool group '{group_id}'.")
    return [family.id for family in families]


def _ledger(db) -> FairnessLedger:
    return FairnessLedger(SqlFairnessStore(database.SessionLocal), policy=load_active_policy(db))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/groups/{group_id}/schedules/generate")
def generate_schedule(group_id: str, payload: Dict[str, Any]) -> JSONResponse:
    start_date = _parse_week_start(payload.get("weekStart") or payload.get("week_start"))
    result = generate_weekly_schedule(
        group_id,
        start_date,
        session_factory=database.SessionLocal,
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/groups/{group_id}/weeks/{week_start}/schedule")
def week_schedule(group_id: str, week_start: str, db=Depends(get_db)) -> JSONResponse:
    start_date = _parse_week_start(week_start)
    return JSONResponse(content=jsonable_encoder(get_week_schedule(db, group_id, start_date)))


@app.post("/api/v1/groups/{group_id}/weeks/{week_start}/publish")
def publish_schedule(
    group_id: str, week_start: str, payload: Dict[str, Any] | None = None, db=Depends(get_db)
) -> JSONResponse:
    start_date = _parse_week_start(week_start)
    actor = _actor(payload)
    week = set_week_status(db, group_id, start_date, status="published")
    record_audit_log(db, actor, "WEEK_PUBLISH", target_type="WeekSchedule", target_id=str(week.id), payload={})
    return JSONResponse(content=jsonable_encoder({"week_id": week.id, "status": week.status, "label": week.label}))


@app.post("/api/v1/groups/{group_id}/preferences", status_code=201)
def submit_family_preferences(group_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    family_id = str(payload.get("familyId") or payload.get("family_id") or "").strip()
    if not family_id:
        raise HTTPException(status_code=400, detail="familyId is required")
    if family_id not in _family_ids(db, group_id):
        raise HTTPException(status_code=404, detail=f"Family {family_id} is not a member of group {group_id}")
    start_date = _parse_week_start(payload.get("weekStart") or payload.get("week_start"))
    entries = entries_from_payload(family_id, payload.get("preferences"))
    submission = submit_preferences(
        db,
        group_id,
        family_id,
        start_date,
        entries,
        policy=load_active_policy(db),
        actor=_actor(payload),
    )
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder(
            {
                "submission_id": submission.id,
                "family_id": family_id,
                "week_start": start_date.isoformat(),
                "revision": submission.revision,
                "entries": [
                    {"date": entry.date.isoformat(), "level": entry.level} for entry in submission.entries
                ],
            }
        ),
    )


@app.get("/api/v1/groups/{group_id}/preferences")
def week_preferences(
    group_id: str,
    week_start: str = Query(..., alias="weekStart"),
    db=Depends(get_db),
) -> JSONResponse:
    start_date = _parse_week_start(week_start)
    entries = get_preferences_for_week(db, group_id, start_date)
    return JSONResponse(
        content=jsonable_encoder(
            {"group_id": group_id, "week_start": start_date.isoformat(), "preferences": [e.to_dict() for e in entries]}
        )
    )


@app.get("/api/v1/groups/{group_id}/fairness")
def fairness_dashboard(group_id: str, db=Depends(get_db)) -> JSONResponse:
    family_ids = _family_ids(db, group_id)
    return JSONResponse(content=jsonable_encoder(_ledger(db).dashboard(group_id, family_ids)))


@app.post("/api/v1/groups/{group_id}/fairness/adjustments")
def fairness_adjustment(group_id: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    family_id = str(payload.get("familyId") or payload.get("family_id") or "").strip()
    if family_id not in _family_ids(db, group_id):
        raise HTTPException(status_code=404, detail=f"Family {family_id or '?'} is not a member of group {group_id}")
    amount = payload.get("amount", payload.get("adjustmentAmount"))
    try:
        debt = _ledger(db).adjust(
            group_id,
            family_id,
            amount,
            reason=str(payload.get("reason") or ""),
            actor=_actor(payload),
            session=db,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder({"group_id": group_id, "family_id": family_id, "debt": round(debt, 3)}))


def _policy_payload(policy) -> Dict[str, Any]:
    """Stored policy row plus the effective (baseline-merged) parameters the engine runs with."""
    params = policy.params_dict()
    return {
        "id": policy.id,
        "name": policy.name,
        "params": params,
        "effective": normalize_policy(params),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))


@app.put("/api/v1/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = str(payload.get("name") or "").strip()
    params = payload.get("params") or {}
    actor = _actor(payload)
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if not isinstance(params, dict):
        raise HTTPException(status_code=400, detail="params must be an object")
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    record_audit_log(db, actor, "POLICY_EDIT", target_type="Policy", target_id=str(policy.id), payload={"name": policy.name})
    log.info("Policy '%s' updated by %s", policy.name, actor)
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))
