from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from errors import InvalidPreferenceError

PREFERABLE = "preferable"
LESS_PREFERABLE = "less_preferable"
NEUTRAL = "neutral"
UNAVAILABLE = "unavailable"
PREFERENCE_LEVELS = (PREFERABLE, LESS_PREFERABLE, NEUTRAL, UNAVAILABLE)
DRIVING_LEVELS = frozenset({PREFERABLE, LESS_PREFERABLE, NEUTRAL})

_LEVEL_ALIASES = {
    "preferable": PREFERABLE,
    "preferred": PREFERABLE,
    "less_preferable": LESS_PREFERABLE,
    "less-preferable": LESS_PREFERABLE,
    "less preferable": LESS_PREFERABLE,
    "neutral": NEUTRAL,
    "available": NEUTRAL,
    "unavailable": UNAVAILABLE,
}


@dataclass(frozen=True)
class PreferenceEntry:
    family_id: str
    date: datetime.date
    level: str = NEUTRAL

    @property
    def can_drive(self) -> bool:
        return self.level in DRIVING_LEVELS

    def to_dict(self) -> Dict[str, Any]:
        return {"family_id": self.family_id, "date": self.date.isoformat(), "level": self.level}


def normalize_level(value: Any = None, *, can_drive: Optional[bool] = None) -> str:
    """Return the canonical preference level for either input representation.

    Boolean ``can_drive`` maps to ``neutral`` (True) or ``unavailable`` (False);
    level strings are matched case-insensitively with a few accepted spellings.
    """
    if value is None and can_drive is None:
        raise InvalidPreferenceError("Preference requires a level or a can_drive flag.")
    if isinstance(value, bool):
        can_drive, value = value, None
    if value is None:
        return NEUTRAL if can_drive else UNAVAILABLE
    token = str(value).strip().lower()
    level = _LEVEL_ALIASES.get(token)
    if level is None:
        raise InvalidPreferenceError(
            f"Unknown preference level '{value}'. Expected one of: {', '.join(PREFERENCE_LEVELS)}."
        )
    return level


def _parse_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise InvalidPreferenceError(f"Preference date '{value}' must be YYYY-MM-DD.")


def entry_from_payload(family_id: str, payload: Dict[str, Any]) -> PreferenceEntry:
    """Build a canonical entry from an API/import payload using ``level`` or ``can_drive``/``canDrive``."""
    level_value = payload.get("level", payload.get("preferenceLevel"))
    can_drive = payload.get("can_drive", payload.get("canDrive"))
    level = normalize_level(level_value, can_drive=None if can_drive is None else bool(can_drive))
    return PreferenceEntry(
        family_id=str(payload.get("family_id") or family_id),
        date=_parse_date(payload.get("date")),
        level=level,
    )


def entries_from_payload(family_id: str, items: Iterable[Dict[str, Any]]) -> List[PreferenceEntry]:
    if items is None:
        return []
    if not isinstance(items, (list, tuple)):
        raise InvalidPreferenceError("Preferences must be a list of {date, level} objects.")
    entries: List[PreferenceEntry] = []
    for item in items:
        if not isinstance(item, dict):
            raise InvalidPreferenceError("Each preference must be an object with a date and a level.")
        entries.append(entry_from_payload(family_id, item))
    return entries
