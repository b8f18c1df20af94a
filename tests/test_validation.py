from __future__ import annotations

import datetime
import sys
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Base,
    get_preferences_for_week,
    get_submission,
    list_audit_log,
    upsert_family,
)
from errors import (  # noqa: E402
    DuplicateSubmissionError,
    InvalidPreferenceError,
    InvalidWeekStartError,
    PreferenceLimitExceeded,
    SubmissionDeadlinePassed,
)
from preferences import LESS_PREFERABLE, NEUTRAL, PREFERABLE, UNAVAILABLE, PreferenceEntry  # noqa: E402
from validation import require_week_start, submit_preferences, validate_preference_batch  # noqa: E402

WEEK_START = datetime.date(2024, 9, 9)
GROUP = "maple-street"


def _batch(family_id: str, levels: list[str], start: datetime.date = WEEK_START) -> list[PreferenceEntry]:
    return [
        PreferenceEntry(family_id, start + datetime.timedelta(days=offset), level)
        for offset, level in enumerate(levels)
    ]


class PreferenceBatchTests(unittest.TestCase):
    def test_batch_within_limits_is_returned_sorted(self) -> None:
        batch = _batch("fam-a", [PREFERABLE, PREFERABLE, PREFERABLE, LESS_PREFERABLE, LESS_PREFERABLE])
        accepted = validate_preference_batch(list(reversed(batch)), WEEK_START)
        self.assertEqual([entry.date for entry in accepted], [entry.date for entry in batch])

    def test_fourth_preferable_entry_is_rejected(self) -> None:
        batch = _batch("fam-a", [PREFERABLE] * 4)
        with self.assertRaises(PreferenceLimitExceeded) as ctx:
            validate_preference_batch(batch, WEEK_START)
        self.assertEqual(ctx.exception.level, PREFERABLE)
        self.assertEqual(ctx.exception.count, 4)
        self.assertEqual(ctx.exception.maximum, 3)
        self.assertEqual(
            ctx.exception.to_dict(),
            {
                "code": "limit_exceeded",
                "message": str(ctx.exception),
                "level": PREFERABLE,
                "count": 4,
                "max": 3,
            },
        )

    def test_unavailable_limit_applies(self) -> None:
        batch = _batch("fam-a", [UNAVAILABLE, UNAVAILABLE, UNAVAILABLE])
        with self.assertRaises(PreferenceLimitExceeded) as ctx:
            validate_preference_batch(batch, WEEK_START)
        self.assertEqual((ctx.exception.level, ctx.exception.count, ctx.exception.maximum), (UNAVAILABLE, 3, 2))

    def test_first_violated_level_wins(self) -> None:
        batch = _batch("fam-a", [UNAVAILABLE, UNAVAILABLE, UNAVAILABLE, PREFERABLE, PREFERABLE, PREFERABLE, PREFERABLE])
        with self.assertRaises(PreferenceLimitExceeded) as ctx:
            validate_preference_batch(batch, WEEK_START)
        self.assertEqual(ctx.exception.level, PREFERABLE)

    def test_neutral_entries_are_never_limited(self) -> None:
        batch = _batch("fam-a", [NEUTRAL] * 7)
        self.assertEqual(len(validate_preference_batch(batch, WEEK_START)), 7)

    def test_custom_limits_override_defaults(self) -> None:
        batch = _batch("fam-a", [PREFERABLE, PREFERABLE])
        with self.assertRaises(PreferenceLimitExceeded):
            validate_preference_batch(batch, WEEK_START, limits={"preferable": 1, "less_preferable": 2, "unavailable": 2})

    def test_empty_batch_is_valid(self) -> None:
        self.assertEqual(validate_preference_batch([], WEEK_START), [])

    def test_date_outside_week_is_rejected(self) -> None:
        batch = [PreferenceEntry("fam-a", WEEK_START + datetime.timedelta(days=7), NEUTRAL)]
        with self.assertRaises(InvalidPreferenceError):
            validate_preference_batch(batch, WEEK_START)

    def test_repeated_date_is_rejected(self) -> None:
        batch = [PreferenceEntry("fam-a", WEEK_START, NEUTRAL), PreferenceEntry("fam-a", WEEK_START, PREFERABLE)]
        with self.assertRaises(InvalidPreferenceError):
            validate_preference_batch(batch, WEEK_START)

    def test_batch_must_belong_to_one_family(self) -> None:
        batch = [
            PreferenceEntry("fam-a", WEEK_START, NEUTRAL),
            PreferenceEntry("fam-b", WEEK_START + datetime.timedelta(days=1), NEUTRAL),
        ]
        with self.assertRaises(InvalidPreferenceError):
            validate_preference_batch(batch, WEEK_START)
        with self.assertRaises(InvalidPreferenceError):
            validate_preference_batch(batch[:1], WEEK_START, family_id="fam-b")

    def test_week_start_must_be_a_monday(self) -> None:
        self.assertEqual(require_week_start("2024-09-09"), WEEK_START)
        self.assertEqual(require_week_start(datetime.datetime(2024, 9, 9, 8, 30)), WEEK_START)
        with self.assertRaises(InvalidWeekStartError):
            require_week_start(datetime.date(2024, 9, 10))
        with self.assertRaises(InvalidWeekStartError):
            require_week_start("09/09/2024")
        with self.assertRaises(InvalidWeekStartError):
            require_week_start(None)


class SubmitPreferencesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)()
        upsert_family(self.session, "fam-a", GROUP, ["p-a"])
        upsert_family(self.session, "fam-b", GROUP, ["p-b"])

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_first_submission_is_stored(self) -> None:
        submission = submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [PREFERABLE, NEUTRAL]))
        self.assertEqual(submission.revision, 1)
        stored = get_preferences_for_week(self.session, GROUP, WEEK_START)
        self.assertEqual([(entry.date, entry.level) for entry in stored], [(WEEK_START, PREFERABLE), (WEEK_START + datetime.timedelta(days=1), NEUTRAL)])
        actions = [row.action for row in list_audit_log(self.session)]
        self.assertEqual(actions, ["PREFERENCES_SUBMIT"])

    def test_resubmission_replaces_previous_batch(self) -> None:
        submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [PREFERABLE, PREFERABLE, NEUTRAL]))
        replacement = [PreferenceEntry("fam-a", WEEK_START + datetime.timedelta(days=4), UNAVAILABLE)]
        submission = submit_preferences(self.session, GROUP, "fam-a", WEEK_START, replacement)

        self.assertEqual(submission.revision, 2)
        stored = get_preferences_for_week(self.session, GROUP, WEEK_START)
        self.assertEqual(stored, replacement)
        actions = [row.action for row in list_audit_log(self.session)]
        self.assertEqual(actions, ["PREFERENCES_SUBMIT", "PREFERENCES_REPLACE"])

    def test_reject_policy_refuses_resubmission(self) -> None:
        policy = {"preferences": {"duplicate_policy": "reject"}}
        submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [NEUTRAL]), policy=policy)
        with self.assertRaises(DuplicateSubmissionError):
            submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [PREFERABLE]), policy=policy)
        stored = get_preferences_for_week(self.session, GROUP, WEEK_START)
        self.assertEqual([entry.level for entry in stored], [NEUTRAL])

    def test_other_families_are_unaffected_by_replacement(self) -> None:
        submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [NEUTRAL]))
        submit_preferences(self.session, GROUP, "fam-b", WEEK_START, _batch("fam-b", [UNAVAILABLE]))
        submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [PREFERABLE]))
        stored = {entry.family_id: entry.level for entry in get_preferences_for_week(self.session, GROUP, WEEK_START)}
        self.assertEqual(stored, {"fam-a": PREFERABLE, "fam-b": UNAVAILABLE})

    def test_rejected_batch_leaves_store_untouched(self) -> None:
        with self.assertRaises(PreferenceLimitExceeded):
            submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [PREFERABLE] * 4))
        self.assertIsNone(get_submission(self.session, GROUP, "fam-a", WEEK_START))

    def test_deadline_is_enforced_when_enabled(self) -> None:
        policy = {"preferences": {"enforce_deadline": True}}
        on_time = datetime.datetime(2024, 9, 4, 16, 59)
        late = datetime.datetime(2024, 9, 4, 17, 1)
        submit_preferences(self.session, GROUP, "fam-a", WEEK_START, _batch("fam-a", [NEUTRAL]), policy=policy, submitted_at=on_time)
        with self.assertRaises(SubmissionDeadlinePassed):
            submit_preferences(self.session, GROUP, "fam-b", WEEK_START, _batch("fam-b", [NEUTRAL]), policy=policy, submitted_at=late)

    def test_deadline_ignored_by_default(self) -> None:
        late = datetime.datetime(2024, 9, 8, 23, 0)
        submission = submit_preferences(self.session, GROUP, "fam-b", WEEK_START, _batch("fam-b", [NEUTRAL]), submitted_at=late)
        self.assertEqual(submission.revision, 1)


if __name__ == "__main__":
    unittest.main()
