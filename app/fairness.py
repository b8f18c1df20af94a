"""Per-group fairness ledger.

Every family in a carpool group carries a "driving debt". When a family
drives, its debt drops by ``1 - fair_share`` and every other family's debt
rises by ``fair_share`` (``fair_share = 1 / group size``), so the deltas of
one driving event sum to zero and debt differences track relative driving
frequency. Higher debt means a stronger claim to drive next.

The ledger never touches storage directly; it goes through a
``FairnessStore`` so tests can inject ``InMemoryFairnessStore`` and
production code uses ``SqlFairnessStore``.
"""

from __future__ import annotations

import datetime
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from database import (
    add_fairness_event,
    get_fairness_row,
    get_group_fairness_rows,
    record_audit_log,
    write_fairness_debt,
)
from logger import get_logger
from policy import normalize_policy

log = get_logger("fairness")


class FairnessStore:
    """Read/update interface keyed by (group_id, family_id).

    Group locks live on the class so every store in the process, including
    one created per request, serializes updates to the same group.
    """

    _registry_lock = threading.Lock()
    _group_locks: Dict[str, threading.RLock] = {}

    def get(self, group_id: str, family_id: str) -> Optional[float]:
        raise NotImplementedError

    def all_for_group(self, group_id: str) -> Dict[str, float]:
        raise NotImplementedError

    def trips_for_group(self, group_id: str) -> Dict[str, int]:
        raise NotImplementedError

    def apply(
        self,
        group_id: str,
        deltas: Dict[str, float],
        *,
        reason: str = "driving",
        event_date: Optional[datetime.date] = None,
        driver_family_id: Optional[str] = None,
        note: str = "",
        actor: str = "system",
    ) -> Dict[str, float]:
        """Add ``deltas`` to the stored debts atomically and return the new values."""
        raise NotImplementedError

    @contextmanager
    def lock(self, group_id: str) -> Iterator[None]:
        """Serialize ledger updates for one group."""
        group_lock = self._group_lock(group_id)
        with group_lock:
            yield

    def _group_lock(self, group_id: str) -> threading.RLock:
        with self._registry_lock:
            if group_id not in self._group_locks:
                self._group_locks[group_id] = threading.RLock()
            return self._group_locks[group_id]


class InMemoryFairnessStore(FairnessStore):
    def __init__(self, initial: Optional[Dict[str, Dict[str, float]]] = None) -> None:
        self._debts: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._trips: Dict[str, Dict[str, int]] = defaultdict(dict)
        self.events: List[Dict] = []
        for group_id, debts in (initial or {}).items():
            for family_id, value in debts.items():
                self._debts[group_id][family_id] = float(value)

    def get(self, group_id: str, family_id: str) -> Optional[float]:
        return self._debts.get(group_id, {}).get(family_id)

    def all_for_group(self, group_id: str) -> Dict[str, float]:
        return dict(self._debts.get(group_id, {}))

    def trips_for_group(self, group_id: str) -> Dict[str, int]:
        return dict(self._trips.get(group_id, {}))

    def apply(
        self,
        group_id: str,
        deltas: Dict[str, float],
        *,
        reason: str = "driving",
        event_date: Optional[datetime.date] = None,
        driver_family_id: Optional[str] = None,
        note: str = "",
        actor: str = "system",
    ) -> Dict[str, float]:
        with self.lock(group_id):
            debts = self._debts[group_id]
            for family_id, delta in deltas.items():
                debts[family_id] = debts.get(family_id, 0.0) + delta
                self.events.append(
                    {
                        "group_id": group_id,
                        "family_id": family_id,
                        "delta": delta,
                        "reason": reason,
                        "event_date": event_date,
                        "driver_family_id": driver_family_id,
                        "note": note,
                        "actor": actor,
                    }
                )
            if driver_family_id is not None:
                trips = self._trips[group_id]
                trips[driver_family_id] = trips.get(driver_family_id, 0) + 1
            return {family_id: debts[family_id] for family_id in deltas}


class SqlFairnessStore(FairnessStore):
    """Ledger rows in the ``fairness_debts`` table, one transaction per update."""

    def __init__(self, session_factory: Callable) -> None:
        self.session_factory = session_factory

    def get(self, group_id: str, family_id: str) -> Optional[float]:
        with self.session_factory() as session:
            row = get_fairness_row(session, group_id, family_id)
            return None if row is None else float(row.debt)

    def all_for_group(self, group_id: str) -> Dict[str, float]:
        with self.session_factory() as session:
            return {row.family_id: float(row.debt) for row in get_group_fairness_rows(session, group_id)}

    def trips_for_group(self, group_id: str) -> Dict[str, int]:
        with self.session_factory() as session:
            return {row.family_id: int(row.total_trips or 0) for row in get_group_fairness_rows(session, group_id)}

    def apply(
        self,
        group_id: str,
        deltas: Dict[str, float],
        *,
        reason: str = "driving",
        event_date: Optional[datetime.date] = None,
        driver_family_id: Optional[str] = None,
        note: str = "",
        actor: str = "system",
    ) -> Dict[str, float]:
        with self.lock(group_id), self.session_factory() as session:
            with session.begin():
                return self.stage(
                    session,
                    group_id,
                    deltas,
                    reason=reason,
                    event_date=event_date,
                    driver_family_id=driver_family_id,
                    note=note,
                    actor=actor,
                )

    @staticmethod
    def stage(
        session,
        group_id: str,
        deltas: Dict[str, float],
        *,
        reason: str = "driving",
        event_date: Optional[datetime.date] = None,
        driver_family_id: Optional[str] = None,
        note: str = "",
        actor: str = "system",
    ) -> Dict[str, float]:
        """Write ``deltas`` into ``session`` without committing."""
        updated: Dict[str, float] = {}
        for family_id, delta in deltas.items():
            row = get_fairness_row(session, group_id, family_id)
            current = float(row.debt) if row is not None else 0.0
            trips_delta = 1 if family_id == driver_family_id else 0
            write_fairness_debt(session, group_id, family_id, current + delta, trips_delta=trips_delta)
            add_fairness_event(
                session,
                group_id,
                family_id,
                delta,
                reason=reason,
                event_date=event_date,
                note=note,
                actor=actor,
            )
            updated[family_id] = current + delta
        return updated


class FairnessLedger:
    def __init__(self, store: FairnessStore, *, policy: Optional[Dict] = None) -> None:
        self.store = store
        self.policy = normalize_policy(policy or {})
        self.precision: int = self.policy["scheduling"]["debt_precision"]

    def lock(self, group_id: str):
        return self.store.lock(group_id)

    def debt_for(self, group_id: str, family_id: str) -> float:
        value = self.store.get(group_id, family_id)
        return 0.0 if value is None else float(value)

    def debts_for(self, group_id: str, family_ids: Iterable[str]) -> Dict[str, float]:
        stored = self.store.all_for_group(group_id)
        return {family_id: float(stored.get(family_id, 0.0)) for family_id in family_ids}

    def record_driving(
        self,
        group_id: str,
        driver_family_id: str,
        all_family_ids: Sequence[str],
        *,
        on: Optional[datetime.date] = None,
        actor: str = "system",
    ) -> Dict[str, float]:
        """Credit the driver and spread the matching debt across the rest of the group."""
        family_ids = list(dict.fromkeys(all_family_ids))
        if not family_ids:
            raise ValueError("record_driving needs at least one family in the group.")
        if driver_family_id not in family_ids:
            raise ValueError(f"Driver family {driver_family_id} is not a member of group {group_id}.")
        fair_share = 1.0 / len(family_ids)
        deltas = {
            family_id: -(1.0 - fair_share) if family_id == driver_family_id else fair_share
            for family_id in family_ids
        }
        updated = self.store.apply(
            group_id,
            deltas,
            reason="driving",
            event_date=on,
            driver_family_id=driver_family_id,
            actor=actor,
        )
        log.debug(
            "Group %s: %s drove on %s (fair share %.4f)",
            group_id,
            driver_family_id,
            on.isoformat() if on else "-",
            fair_share,
        )
        return updated

    def _rank_key(self, debt: float, family_id: str) -> Tuple[float, str]:
        # Rounded so float noise from repeated fair-share increments cannot split a true tie.
        return (-round(debt, self.precision), family_id)

    def rank_candidates(self, group_id: str, family_ids: Iterable[str]) -> List[Tuple[str, float]]:
        """Return ``(family_id, debt)`` pairs, highest debt first, ties by family id."""
        debts = self.debts_for(group_id, family_ids)
        return sorted(debts.items(), key=lambda item: self._rank_key(item[1], item[0]))

    def select_driver(self, group_id: str, family_ids: Iterable[str]) -> Optional[str]:
        ranked = self.rank_candidates(group_id, family_ids)
        return ranked[0][0] if ranked else None

    def adjust(
        self,
        group_id: str,
        family_id: str,
        amount: float,
        *,
        reason: str = "",
        actor: str = "system",
        session=None,
    ) -> float:
        """Apply a manual administrative adjustment to one family's debt."""
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValueError("Adjustment amount must be a number.")
        updated = self.store.apply(
            group_id,
            {family_id: amount},
            reason="manual",
            event_date=datetime.date.today(),
            note=reason,
            actor=actor,
        )
        if session is not None:
            record_audit_log(
                session,
                actor,
                "FAIRNESS_ADJUST",
                target_type="FairnessDebt",
                target_id=family_id,
                payload={"group_id": group_id, "amount": amount, "reason": reason},
            )
        log.info("Manual fairness adjustment for %s in group %s: %+.3f (%s)", family_id, group_id, amount, reason or "no reason")
        return updated[family_id]

    def dashboard(self, group_id: str, family_ids: Iterable[str]) -> Dict:
        """Summarize how evenly driving is spread across a group."""
        cfg = self.policy["fairness"]
        family_ids = list(family_ids)
        debts = self.debts_for(group_id, family_ids)
        trips = self.store.trips_for_group(group_id)
        families = [
            {
                "family_id": family_id,
                "debt": round(debts[family_id], 3),
                "total_trips": int(trips.get(family_id, 0)),
            }
            for family_id, _ in self.rank_candidates(group_id, family_ids)
        ]
        values = list(debts.values())
        debt_range = (max(values) - min(values)) if values else 0.0
        equity_score = max(0.0, 100.0 - debt_range * cfg["equity_scale"])
        recommendations: List[str] = []
        if debt_range > cfg["disparity_threshold"]:
            recommendations.append(
                "High disparity detected. Consider manual adjustments for families with high debt."
            )
        prioritize = [item["family_id"] for item in families if item["debt"] > cfg["prioritize_threshold"]]
        if prioritize:
            recommendations.append(f"Prioritize {', '.join(prioritize)} for upcoming driving assignments.")
        reduce = [item["family_id"] for item in families if item["debt"] < cfg["reduce_threshold"]]
        if reduce:
            recommendations.append(f"Consider reducing assignments for {', '.join(reduce)} in upcoming weeks.")
        if not recommendations:
            recommendations.append("Fairness distribution is well-balanced. Continue with current scheduling approach.")
        return {
            "group_id": group_id,
            "families": families,
            "total_trips": sum(item["total_trips"] for item in families),
            "debt_range": round(debt_range, 3),
            "equity_score": round(equity_score),
            "recommendations": recommendations,
        }
