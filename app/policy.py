from __future__ import annotations

import copy
import datetime
from typing import Any, Dict

from database import get_active_policy, upsert_policy


DUPLICATE_POLICIES = {"replace", "reject"}
TIE_BREAK_RULES = {"family_id"}

PREFERENCE_LIMITS_DEFAULT: Dict[str, int] = {
    "preferable": 3,
    "less_preferable": 2,
    "unavailable": 2,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Default Carpool Policy",
    "preferences": {
        "limits": PREFERENCE_LIMITS_DEFAULT,
        # "replace": a later batch overwrites the earlier one; "reject": DuplicateSubmissionError.
        "duplicate_policy": "replace",
        "enforce_deadline": False,
        # Offset from the target week's Monday; -5 is the Wednesday before.
        "deadline": {"weekday_offset": -5, "time": "17:00"},
    },
    "scheduling": {
        "report_empty_days": False,
        "tie_break": "family_id",
        "debt_precision": 9,
    },
    "fairness": {
        "equity_scale": 10.0,
        "disparity_threshold": 2.0,
        "prioritize_threshold": 1.5,
        "reduce_threshold": -1.5,
    },
}


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so schedule generation can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Default Carpool Policy")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


def load_active_policy(conn) -> Dict:
    """Return the active policy payload merged over the baseline."""
    if conn is None:
        return normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def normalize_policy(policy: Dict) -> Dict:
    """Apply defaults and clamp values so runtime matches code expectations."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(BASELINE_POLICY, policy)
    prefs = normalized["preferences"]
    limits = prefs.get("limits") if isinstance(prefs.get("limits"), dict) else {}
    clean_limits: Dict[str, int] = {}
    for level, default in PREFERENCE_LIMITS_DEFAULT.items():
        try:
            clean_limits[level] = max(0, int(limits.get(level, default)))
        except (TypeError, ValueError):
            clean_limits[level] = default
    prefs["limits"] = clean_limits
    mode = str(prefs.get("duplicate_policy") or "replace").strip().lower()
    prefs["duplicate_policy"] = mode if mode in DUPLICATE_POLICIES else "replace"
    prefs["enforce_deadline"] = bool(prefs.get("enforce_deadline"))

    scheduling = normalized["scheduling"]
    scheduling["report_empty_days"] = bool(scheduling.get("report_empty_days"))
    tie_break = str(scheduling.get("tie_break") or "family_id").strip().lower()
    scheduling["tie_break"] = tie_break if tie_break in TIE_BREAK_RULES else "family_id"
    try:
        scheduling["debt_precision"] = max(1, min(12, int(scheduling.get("debt_precision", 9))))
    except (TypeError, ValueError):
        scheduling["debt_precision"] = 9

    fairness = normalized["fairness"]
    for key, default in BASELINE_POLICY["fairness"].items():
        try:
            fairness[key] = float(fairness.get(key, default))
        except (TypeError, ValueError):
            fairness[key] = default
    return normalized


def submission_deadline(policy: Dict, week_start: datetime.date) -> datetime.datetime:
    """Return the naive local datetime after which submissions for ``week_start`` are late."""
    deadline_cfg = normalize_policy(policy)["preferences"].get("deadline") or {}
    try:
        offset = int(deadline_cfg.get("weekday_offset", -5))
    except (TypeError, ValueError):
        offset = -5
    try:
        cutoff = datetime.time.fromisoformat(str(deadline_cfg.get("time") or "17:00"))
    except ValueError:
        cutoff = datetime.time(17, 0)
    day = week_start + datetime.timedelta(days=offset)
    return datetime.datetime.combine(day, cutoff)
