from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, Policy, upsert_policy  # noqa: E402
from policy import (  # noqa: E402
    build_default_policy,
    ensure_default_policy,
    load_active_policy,
    normalize_policy,
    submission_deadline,
)


class PolicyNormalizationTests(unittest.TestCase):
    def test_defaults_fill_missing_sections(self) -> None:
        policy = normalize_policy({})
        self.assertEqual(policy["preferences"]["limits"], {"preferable": 3, "less_preferable": 2, "unavailable": 2})
        self.assertEqual(policy["preferences"]["duplicate_policy"], "replace")
        self.assertFalse(policy["scheduling"]["report_empty_days"])

    def test_values_are_clamped(self) -> None:
        policy = normalize_policy(
            {
                "preferences": {"limits": {"preferable": "4", "unavailable": -1}, "duplicate_policy": "ignore"},
                "scheduling": {"debt_precision": "lots"},
                "fairness": {"equity_scale": "x"},
            }
        )
        self.assertEqual(policy["preferences"]["limits"], {"preferable": 4, "less_preferable": 2, "unavailable": 0})
        self.assertEqual(policy["preferences"]["duplicate_policy"], "replace")
        self.assertEqual(policy["scheduling"]["debt_precision"], 9)
        self.assertEqual(policy["fairness"]["equity_scale"], 10.0)

    def test_default_policy_is_a_copy(self) -> None:
        policy = build_default_policy()
        policy["preferences"]["limits"]["preferable"] = 0
        self.assertEqual(build_default_policy()["preferences"]["limits"]["preferable"], 3)

    def test_deadline_is_wednesday_before_week(self) -> None:
        deadline = submission_deadline({}, datetime.date(2024, 9, 9))
        self.assertEqual(deadline, datetime.datetime(2024, 9, 4, 17, 0))
        custom = submission_deadline(
            {"preferences": {"deadline": {"weekday_offset": -1, "time": "20:30"}}}, datetime.date(2024, 9, 9)
        )
        self.assertEqual(custom, datetime.datetime(2024, 9, 8, 20, 30))


class PolicyStorageTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_default_policy_seeded_once(self) -> None:
        ensure_default_policy(self.session_factory)
        ensure_default_policy(self.session_factory)
        with self.session_factory() as session:
            self.assertEqual([policy.name for policy in session.scalars(select(Policy))], ["Default Carpool Policy"])

    def test_active_policy_merges_over_baseline(self) -> None:
        with self.session_factory() as session:
            upsert_policy(session, "Strict", {"preferences": {"duplicate_policy": "reject"}}, edited_by="tests")
        policy = load_active_policy(self.session_factory)
        self.assertEqual(policy["preferences"]["duplicate_policy"], "reject")
        self.assertEqual(policy["preferences"]["limits"]["preferable"], 3)
        self.assertEqual(policy["scheduling"]["tie_break"], "family_id")

    def test_missing_policy_falls_back_to_baseline(self) -> None:
        with self.session_factory() as session:
            self.assertEqual(load_active_policy(session), normalize_policy({}))


if __name__ == "__main__":
    unittest.main()
