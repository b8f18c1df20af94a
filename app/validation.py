from __future__ import annotations

import datetime
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from database import (
    PreferenceSubmission,
    _normalize_week_start,
    get_submission,
    record_audit_log,
    save_preference_submission,
)
from errors import (
    DuplicateSubmissionError,
    InvalidPreferenceError,
    InvalidWeekStartError,
    PreferenceLimitExceeded,
    SubmissionDeadlinePassed,
)
from logger import get_logger
from policy import PREFERENCE_LIMITS_DEFAULT, normalize_policy, submission_deadline
from preferences import LESS_PREFERABLE, PREFERABLE, UNAVAILABLE, PreferenceEntry

log = get_logger("validation")

# Order in which limits are checked; the first violated level is reported.
LIMITED_LEVELS = (PREFERABLE, LESS_PREFERABLE, UNAVAILABLE)


def require_week_start(value: Any) -> datetime.date:
    """Coerce ``value`` to a date and insist it is a Monday."""
    if isinstance(value, datetime.datetime):
        value = value.date()
    if isinstance(value, str):
        try:
            value = datetime.date.fromisoformat(value)
        except ValueError:
            raise InvalidWeekStartError("weekStart must be YYYY-MM-DD")
    if not isinstance(value, datetime.date):
        raise InvalidWeekStartError("weekStart is required")
    if value.weekday() != 0:
        raise InvalidWeekStartError(f"{value.isoformat()} is not a Monday")
    return value


def validate_preference_batch(
    entries: Iterable[PreferenceEntry],
    week_start: datetime.date,
    *,
    family_id: Optional[str] = None,
    limits: Optional[Dict[str, int]] = None,
) -> List[PreferenceEntry]:
    """Return the batch sorted by date, or raise the first rule it breaks.

    All entries must belong to one family and fall inside the Monday-Sunday
    week that starts at ``week_start``, with at most one entry per date.
    Level counts are then checked against ``limits``; neutral entries are
    never limited.
    """
    week_start = require_week_start(week_start)
    week_end = week_start + datetime.timedelta(days=6)
    batch = list(entries)
    limits = limits or PREFERENCE_LIMITS_DEFAULT

    family_ids = {entry.family_id for entry in batch}
    if family_id is not None:
        family_ids.add(family_id)
    if len(family_ids) > 1:
        raise InvalidPreferenceError(
            f"A preference batch must belong to a single family (got {', '.join(sorted(family_ids))})."
        )

    seen_dates = set()
    for entry in batch:
        if not week_start <= entry.date <= week_end:
            raise InvalidPreferenceError(
                f"{entry.date.isoformat()} is outside the week of {week_start.isoformat()}."
            )
        if entry.date in seen_dates:
            raise InvalidPreferenceError(f"More than one preference for {entry.date.isoformat()}.")
        seen_dates.add(entry.date)

    counts = Counter(entry.level for entry in batch)
    for level in LIMITED_LEVELS:
        maximum = limits.get(level, PREFERENCE_LIMITS_DEFAULT[level])
        if counts[level] > maximum:
            raise PreferenceLimitExceeded(level, counts[level], maximum)
    return sorted(batch, key=lambda entry: entry.date)


def submit_preferences(
    session,
    group_id: str,
    family_id: str,
    week_start: datetime.date,
    entries: Iterable[PreferenceEntry],
    *,
    policy: Optional[Dict] = None,
    actor: str = "system",
    submitted_at: Optional[datetime.datetime] = None,
) -> PreferenceSubmission:
    """Validate a family's weekly batch and store it.

    Resubmission follows ``preferences.duplicate_policy``: ``replace`` swaps
    the stored batch for the new one, ``reject`` raises
    ``DuplicateSubmissionError``. When ``preferences.enforce_deadline`` is
    set, batches arriving after the weekly deadline are refused.
    """
    cfg = normalize_policy(policy or {})["preferences"]
    week_start = require_week_start(week_start)
    batch = validate_preference_batch(entries, week_start, family_id=family_id, limits=cfg["limits"])

    now = submitted_at or datetime.datetime.now()
    if cfg["enforce_deadline"]:
        deadline = submission_deadline({"preferences": cfg}, week_start)
        local_now = now.replace(tzinfo=None) if now.tzinfo else now
        if local_now > deadline:
            raise SubmissionDeadlinePassed(
                f"Preferences for the week of {week_start.isoformat()} closed at {deadline.isoformat(timespec='minutes')}."
            )

    existing = get_submission(session, group_id, family_id, week_start)
    if existing is not None and cfg["duplicate_policy"] == "reject":
        raise DuplicateSubmissionError(
            f"Family {family_id} already submitted preferences for the week of {week_start.isoformat()}."
        )

    submission = save_preference_submission(
        session,
        group_id,
        family_id,
        _normalize_week_start(week_start),
        batch,
        submitted_by=actor,
        submitted_at=now,
    )
    action = "PREFERENCES_REPLACE" if existing is not None else "PREFERENCES_SUBMIT"
    record_audit_log(
        session,
        actor,
        action,
        target_type="PreferenceSubmission",
        target_id=str(submission.id),
        payload={"group_id": group_id, "family_id": family_id, "week_start": week_start.isoformat(), "entries": len(batch)},
    )
    log.info(
        "%s preferences for family %s in group %s (week %s, %d entries, revision %d)",
        "Replaced" if existing is not None else "Accepted",
        family_id,
        group_id,
        week_start.isoformat(),
        len(batch),
        submission.revision,
    )
    return submission
