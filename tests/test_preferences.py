from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from errors import InvalidPreferenceError  # noqa: E402
from preferences import (  # noqa: E402
    LESS_PREFERABLE,
    NEUTRAL,
    PREFERABLE,
    UNAVAILABLE,
    PreferenceEntry,
    entries_from_payload,
    entry_from_payload,
    normalize_level,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("preferable", PREFERABLE),
        ("Less_Preferable", LESS_PREFERABLE),
        ("less preferable", LESS_PREFERABLE),
        (" neutral ", NEUTRAL),
        ("UNAVAILABLE", UNAVAILABLE),
    ],
)
def test_level_strings_are_canonicalized(raw, expected):
    assert normalize_level(raw) == expected


def test_boolean_flag_maps_to_neutral_or_unavailable():
    assert normalize_level(can_drive=True) == NEUTRAL
    assert normalize_level(can_drive=False) == UNAVAILABLE
    assert normalize_level(True) == NEUTRAL
    assert normalize_level(False) == UNAVAILABLE


def test_explicit_level_wins_over_flag():
    assert normalize_level("preferable", can_drive=False) == PREFERABLE


def test_unknown_or_missing_level_is_rejected():
    with pytest.raises(InvalidPreferenceError):
        normalize_level("sometimes")
    with pytest.raises(InvalidPreferenceError):
        normalize_level()


def test_can_drive_property():
    day = datetime.date(2024, 9, 9)
    assert PreferenceEntry("fam-a", day, LESS_PREFERABLE).can_drive
    assert not PreferenceEntry("fam-a", day, UNAVAILABLE).can_drive


def test_payload_accepts_both_representations():
    entries = entries_from_payload(
        "fam-a",
        [
            {"date": "2024-09-09", "level": "preferable"},
            {"date": "2024-09-10", "canDrive": False},
            {"date": "2024-09-11", "can_drive": True},
            {"date": "2024-09-12", "preferenceLevel": "less_preferable"},
        ],
    )
    assert [entry.level for entry in entries] == [PREFERABLE, UNAVAILABLE, NEUTRAL, LESS_PREFERABLE]
    assert {entry.family_id for entry in entries} == {"fam-a"}


def test_payload_with_bad_date_is_rejected():
    with pytest.raises(InvalidPreferenceError):
        entry_from_payload("fam-a", {"date": "next tuesday", "level": "neutral"})


def test_payload_must_be_a_list_of_objects():
    with pytest.raises(InvalidPreferenceError):
        entries_from_payload("fam-a", {"date": "2024-09-09", "level": "neutral"})
    with pytest.raises(InvalidPreferenceError):
        entries_from_payload("fam-a", "2024-09-09")
    with pytest.raises(InvalidPreferenceError):
        entries_from_payload("fam-a", [{"date": "2024-09-09", "level": "neutral"}, "2024-09-10"])
    assert entries_from_payload("fam-a", None) == []
