import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_TAXONOMY_PATH = REPO_ROOT / "config" / "state_taxonomy.yaml"

STAGE_INTAKE = "intake"
STAGE_DEV = "dev"
STAGE_QA_QUEUE = "qa_queue"
STAGE_QA_TESTING = "qa_testing"
STAGE_DONE = "done"
STAGE_REMOVED = "removed"
STAGE_OTHER = "other"

# Stages a rework transition must start from.
LATE_STAGES = frozenset({STAGE_QA_QUEUE, STAGE_QA_TESTING, STAGE_DONE})

_DEFAULTS: Dict[str, List[str]] = {
    "intake_states": ["New", "Proposed", "Approved", "Committed", "To Do"],
    "dev_states": [
        "Active",
        "In Development",
        "In Progress",
        "On-Hold",
        "On Hold",
        "Shelved",
        "Branch Checkin",
        "Branch-Checkin",
        "Re-opened",
        "Reopened",
    ],
    "blocked_states": ["On-Hold", "On Hold"],
    "qa_queue_states": ["Resolved", "Ready for QA", "Ready-for-QA"],
    "qa_testing_states": ["QA Testing", "QA-Testing", "In QA", "Testing"],
    "done_states": ["Done", "Closed"],
    "removed_states": ["Removed"],
    "reopen_states": ["Re-opened", "Reopened"],
    "bug_types": ["Bug", "Defect"],
}


def normalize_state(value: Optional[str]) -> str:
    """Case- and whitespace-insensitive key for a raw state or type name."""
    if not value:
        return ""
    return " ".join(str(value).split()).casefold()


@dataclass(frozen=True)
class StateInfo:
    stage: str
    blocked: bool = False

    @property
    def terminal(self) -> bool:
        return self.stage in (STAGE_DONE, STAGE_REMOVED)


class StateTaxonomy:
    """
    Single mapping from raw workflow state names to coarse pipeline stages.

    Every analyzer classifies states through one instance of this class so
    that "done", "active" and the QA stages cannot drift between metrics.
    """

    def __init__(self, config: Optional[Dict[str, Iterable[str]]] = None):
        merged = dict(_DEFAULTS)
        for key, value in (config or {}).items():
            if key not in _DEFAULTS:
                logger.warning("Ignoring unknown state taxonomy key %r", key)
                continue
            if value is None:
                continue
            merged[key] = [str(v) for v in value]

        self.config = merged
        self._stages: Dict[str, str] = {}
        # Earlier stages win when a state is listed twice; terminal lists go
        # last so that a state listed as both dev and done stays terminal.
        for key, stage in (
            ("intake_states", STAGE_INTAKE),
            ("dev_states", STAGE_DEV),
            ("qa_queue_states", STAGE_QA_QUEUE),
            ("qa_testing_states", STAGE_QA_TESTING),
            ("done_states", STAGE_DONE),
            ("removed_states", STAGE_REMOVED),
        ):
            for name in merged[key]:
                normalized = normalize_state(name)
                if stage in (STAGE_DONE, STAGE_REMOVED):
                    self._stages[normalized] = stage
                else:
                    self._stages.setdefault(normalized, stage)

        self._blocked = {normalize_state(s) for s in merged["blocked_states"]}
        self._reopen = {normalize_state(s) for s in merged["reopen_states"]}
        self._bug_types = {normalize_state(t) for t in merged["bug_types"]}

    @classmethod
    def from_file(cls, path: Path) -> "StateTaxonomy":
        if not path.exists():
            logger.warning(f"State taxonomy config not found at {path}, using defaults")
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            return cls(yaml.safe_load(f) or {})

    def classify(self, state: Optional[str]) -> StateInfo:
        key = normalize_state(state)
        stage = self._stages.get(key, STAGE_OTHER)
        blocked = stage == STAGE_DEV and key in self._blocked
        return StateInfo(stage=stage, blocked=blocked)

    def stage_of(self, state: Optional[str]) -> str:
        return self.classify(state).stage

    def is_done(self, state: Optional[str]) -> bool:
        return self.stage_of(state) == STAGE_DONE

    def is_removed(self, state: Optional[str]) -> bool:
        return self.stage_of(state) == STAGE_REMOVED

    def is_active(self, state: Optional[str]) -> bool:
        return not self.classify(state).terminal

    def is_reopen(self, state: Optional[str]) -> bool:
        return normalize_state(state) in self._reopen

    def is_bug(self, item_type: Optional[str]) -> bool:
        return normalize_state(item_type) in self._bug_types

    def is_rework(
        self,
        item_type: Optional[str],
        prev_state: Optional[str],
        state: Optional[str],
    ) -> bool:
        """
        True when ``prev_state -> state`` sends work back from a late stage.

        Bugs are sent back through an explicit reopen state; other work item
        types are sent back by returning to a development state.
        """
        if prev_state is None:
            return False
        if self.stage_of(prev_state) not in LATE_STAGES:
            return False
        if self.is_bug(item_type):
            return self.is_reopen(state)
        return self.stage_of(state) == STAGE_DEV


def load_state_taxonomy(path: Optional[Path] = None) -> StateTaxonomy:
    if path is None:
        env_path = os.getenv("STATE_TAXONOMY_PATH")
        path = Path(env_path) if env_path else DEFAULT_TAXONOMY_PATH
    return StateTaxonomy.from_file(Path(path))
