import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

WORKFLOW = ["New", "Active", "In Development", "Resolved", "QA Testing", "Closed"]
BLOCKED_STATE = "On-Hold"
REOPEN_STATE = "Re-opened"
REMOVED_STATE = "Removed"


class SyntheticDataGenerator:
    """
    Seeded work-item batches for one release, one batch per snapshot run.

    The same ``release`` and ``seed`` always yield the same batches so demo
    databases and tests can be rebuilt exactly.
    """

    def __init__(
        self,
        release: str = "2026.1",
        seed: Optional[int] = None,
        item_count: int = 30,
        id_base: int = 10000,
    ):
        self.release = release
        self.rng = random.Random(seed if seed is not None else release)
        self.item_count = item_count
        self.id_base = id_base
        self.next_id = id_base + 1
        self.people = [
            ("Alice Smith", "alice@example.com"),
            ("Bob Jones", "bob@example.com"),
            ("Charlie Brown", "charlie@example.com"),
            ("David White", "david@example.com"),
            ("Eve Black", "eve@example.com"),
        ]
        self.features = ["Checkout", "Search", "Onboarding", "Billing"]

    def _new_item(self, created: datetime) -> Dict[str, Any]:
        item_id = self.next_id
        self.next_id += 1
        item_type = self.rng.choice(["User Story", "User Story", "Task", "Bug"])
        name, upn = self.rng.choice(self.people)
        dep_count = self.rng.randint(0, 3)
        return {
            "workItemId": item_id,
            "title": f"Synthetic {item_type.lower()} {item_id}",
            "type": item_type,
            "state": WORKFLOW[0],
            "release": self.release,
            "feature": self.rng.choice(self.features),
            "assignedTo": name,
            "assignedToUPN": upn,
            "severity": self.rng.choice(["1 - Critical", "2 - High", "3 - Medium"])
            if item_type == "Bug"
            else None,
            "effort": float(self.rng.choice([1, 2, 3, 5, 8])),
            "createdDate": created.isoformat(),
            "changedDate": created.isoformat(),
            "stateChangeDate": created.isoformat(),
            "closedDate": None,
            "depCount": dep_count,
            "openDepCount": None,
            "relatedLinkCount": self.rng.randint(0, 4),
            "openRelatedCount": None,
            "_step": 0,
        }

    def _move(self, item: Dict[str, Any], state: str, at: datetime) -> None:
        stamp = (at - timedelta(hours=self.rng.randint(0, 24))).isoformat()
        item["state"] = state
        item["stateChangeDate"] = stamp
        item["changedDate"] = stamp
        item["closedDate"] = stamp if state == WORKFLOW[-1] else None

    def _advance(self, item: Dict[str, Any], at: datetime) -> None:
        if item["state"] in (REMOVED_STATE, WORKFLOW[-1]):
            return
        roll = self.rng.random()
        if roll < 0.03:
            self._move(item, REMOVED_STATE, at)
        elif item["state"] == BLOCKED_STATE:
            if roll < 0.5:
                self._move(item, WORKFLOW[item["_step"]], at)
        elif roll < 0.12 and 0 < item["_step"] < 3:
            self._move(item, BLOCKED_STATE, at)
        elif (
            roll < 0.18
            and item["type"] == "Bug"
            and item["state"] in ("Resolved", "QA Testing")
        ):
            item["_step"] = 2
            self._move(item, REOPEN_STATE, at)
        elif roll < 0.6:
            item["_step"] = min(item["_step"] + 1, len(WORKFLOW) - 1)
            self._move(item, WORKFLOW[item["_step"]], at)

        if item["depCount"]:
            item["openDepCount"] = self.rng.randint(0, item["depCount"])
        elif self.rng.random() < 0.5:
            item["openDepCount"] = 0
        if item["relatedLinkCount"]:
            item["openRelatedCount"] = self.rng.randint(0, item["relatedLinkCount"])

    @staticmethod
    def _wire_row(item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in item.items() if not k.startswith("_")}

    def generate_runs(
        self,
        runs: int = 4,
        interval_days: int = 7,
        end: Optional[datetime] = None,
    ) -> List[Tuple[datetime, List[Dict[str, Any]]]]:
        """
        Return ``(run_at, rows)`` pairs in chronological order.

        Later runs advance items through the workflow, block and unblock some,
        reopen some bugs, drop a few to Removed and add new scope.
        """
        end = end or datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        start = end - timedelta(days=interval_days * max(runs - 1, 0))

        items = [self._new_item(start - timedelta(days=self.rng.randint(1, 14)))
                 for _ in range(self.item_count)]
        batches: List[Tuple[datetime, List[Dict[str, Any]]]] = []
        for index in range(max(runs, 0)):
            run_at = start + timedelta(days=interval_days * index)
            if index:
                for item in items:
                    self._advance(item, run_at)
                for _ in range(self.rng.randint(1, 3)):
                    items.append(self._new_item(run_at - timedelta(hours=1)))
            batches.append((run_at, [self._wire_row(item) for item in items]))
        return batches
