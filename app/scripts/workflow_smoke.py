from __future__ import annotations

import argparse
import datetime
import random
import sys
from collections import Counter
from pathlib import Path
from typing import Dict, List, Tuple

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    SessionLocal,
    get_families_in_group,
    init_database,
    upsert_family,
)
from data_exchange import export_week_schedule  # noqa: E402
from errors import CarpoolError  # noqa: E402
from generator.api import generate_weekly_schedule  # noqa: E402
from policy import ensure_default_policy, load_active_policy  # noqa: E402
from preferences import LESS_PREFERABLE, NEUTRAL, PREFERABLE, UNAVAILABLE, PreferenceEntry  # noqa: E402
from validation import submit_preferences  # noqa: E402

DEMO_GROUP = "demo-lincoln-elementary"
DEMO_FAMILIES: List[Tuple[str, List[str], List[str], str]] = [
    ("fam-alvarez", ["p-maria-alvarez", "p-jose-alvarez"], ["c-lucia"], "12 Oak St"),
    ("fam-baker", ["p-sam-baker"], ["c-owen", "c-ivy"], "48 Birch Ave"),
    ("fam-chen", ["p-wei-chen", "p-lin-chen"], ["c-max"], "7 Cedar Ct"),
    ("fam-dubois", ["p-anne-dubois"], ["c-jules"], "301 Elm Rd"),
]


def _default_week_start(today: datetime.date | None = None) -> datetime.date:
    base = today or datetime.date.today()
    delta = (7 - base.weekday()) % 7
    delta = delta or 7
    return base + datetime.timedelta(days=delta)


def _week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=4)
    return f"{iso_year} W{iso_week:02d} ({week_start:%b %d} - {end:%b %d})"


def _seed_group(session) -> None:
    for family_id, parents, children, home in DEMO_FAMILIES:
        upsert_family(session, family_id, DEMO_GROUP, parents, children, home)


def _random_batch(family_id: str, week_start: datetime.date, rng: random.Random) -> List[PreferenceEntry]:
    """Draw a batch that stays within the default weekly limits."""
    pool = [PREFERABLE] * 3 + [LESS_PREFERABLE] * 2 + [UNAVAILABLE] * 2 + [NEUTRAL] * 5
    rng.shuffle(pool)
    entries: List[PreferenceEntry] = []
    for offset, level in enumerate(pool[:5]):
        if rng.random() < 0.2:
            continue
        entries.append(PreferenceEntry(family_id, week_start + datetime.timedelta(days=offset), level))
    return entries


def run_workflow(week_start: datetime.date, weeks: int, actor: str, seed: int) -> None:
    ensure_default_policy(SessionLocal)
    rng = random.Random(seed)
    with SessionLocal() as session:
        _seed_group(session)
        family_ids = [family.id for family in get_families_in_group(session, DEMO_GROUP)]
        policy = load_active_policy(session)

    driven: Counter = Counter()
    total_conflicts = 0
    for index in range(weeks):
        current = week_start + datetime.timedelta(weeks=index)
        with SessionLocal() as session:
            for family_id in family_ids:
                try:
                    submit_preferences(
                        session,
                        DEMO_GROUP,
                        family_id,
                        current,
                        _random_batch(family_id, current, rng),
                        policy=policy,
                        actor=actor,
                    )
                except CarpoolError as exc:
                    print(f"[workflow][preferences] {family_id}: {exc}")
        result = generate_weekly_schedule(DEMO_GROUP, current, session_factory=SessionLocal, actor=actor)
        for assignment in result["assignments"]:
            driven[assignment["driver_family_id"]] += 1
        total_conflicts += result["conflict_summary"]["total"]
        print(
            f"[workflow] {_week_label(current)}: {len(result['assignments'])} trips, "
            f"{result['conflict_summary']['total']} conflicts"
        )
        for day in result["days"]:
            print(f"[workflow]   {day['day']} {day['date']}: {day['status']} {day['driver_family_id'] or day['reason'] or ''}")

    with SessionLocal() as session:
        path = export_week_schedule(session, DEMO_GROUP, week_start + datetime.timedelta(weeks=weeks - 1))
    print(f"[workflow] Exported last week -> {path}")
    shares: Dict[str, float] = {}
    total = sum(driven.values()) or 1
    for family_id in family_ids:
        shares[family_id] = driven.get(family_id, 0) / total
    print("[workflow] Driving share: " + ", ".join(f"{fid} {share:.0%}" for fid, share in shares.items()))
    print(f"[workflow] Conflicts across {weeks} weeks: {total_conflicts}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds a demo carpool group, submits random "
            "preferences, generates several weeks of schedules, and exports the last one."
        )
    )
    parser.add_argument(
        "--week-start",
        help="ISO date (YYYY-MM-DD) for the first Monday to target. Defaults to next Monday.",
    )
    parser.add_argument("--weeks", type=int, default=4, help="Number of consecutive weeks to generate.")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for the generated preferences.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.week_start:
        try:
            week_start = datetime.date.fromisoformat(args.week_start)
        except ValueError as exc:
            raise SystemExit(f"Invalid --week-start value: {exc}") from exc
    else:
        week_start = _default_week_start()
    if week_start.weekday() != 0:
        week_start = week_start - datetime.timedelta(days=week_start.weekday())
    print(f"[workflow] Target week start: {week_start} ({_week_label(week_start)})")
    run_workflow(week_start, max(1, args.weeks), actor=args.actor, seed=args.seed)


if __name__ == "__main__":
    main()
