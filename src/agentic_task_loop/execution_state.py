"""Loop session and durable per-task attempt history (info.json)."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from agentic_task_loop.artifacts import ArtifactStore
from agentic_task_loop.constants import ERROR_STACK_LINES, INFO_FILE

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Phase(str, Enum):
    EXECUTE = "EXECUTE"
    VERIFY = "VERIFY"


@dataclass
class LoopSession:
    """Ephemeral state for one run() of one task's loop."""
    task_id: str
    max_iterations: Optional[int]  # None = unbounded
    phase: Phase = Phase.EXECUTE
    iteration: int = 1

    @property
    def has_budget(self) -> bool:
        return self.max_iterations is None or self.iteration <= self.max_iterations

    @property
    def max_display(self) -> str:
        return "unlimited" if self.max_iterations is None else str(self.max_iterations)

    @property
    def iteration_display(self) -> str:
        return f"{self.iteration}/{self.max_display}"


@dataclass
class TaskInfo:
    """
    Attempt history persisted as info.json.

    Survives process restarts; only a fresh start removes it. Keys are written
    in camelCase so the file stays readable by the worker's tooling.
    """
    attempts: int = 0
    first_run: Optional[str] = None
    last_run: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    re_researched: bool = False
    history: List[Dict[str, Any]] = field(default_factory=list)
    error_history: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskInfo":
        attempts = data.get("attempts")
        last_error = data.get("lastError")
        history = data.get("history")
        error_history = data.get("errorHistory")
        return cls(
            attempts=attempts if isinstance(attempts, int) and attempts >= 0 else 0,
            first_run=data.get("firstRun"),
            last_run=data.get("lastRun"),
            last_error=last_error if isinstance(last_error, dict) else None,
            re_researched=data.get("reResearched") is True,
            history=list(history) if isinstance(history, list) else [],
            error_history=list(error_history) if isinstance(error_history, list) else [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstRun": self.first_run,
            "lastRun": self.last_run,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "reResearched": self.re_researched,
            "history": self.history,
            "errorHistory": self.error_history,
        }

    def begin_attempt(self, re_researched: bool = False) -> None:
        """Count a worker invocation and append a history entry."""
        now = _now_iso()
        self.attempts += 1
        if self.first_run is None:
            self.first_run = now
        self.last_run = now
        if re_researched:
            self.re_researched = True
        self.history.append({
            "timestamp": now,
            "attempt": self.attempts,
            "reResearched": re_researched,
        })

    def clear_error(self) -> None:
        self.last_error = None

    def record_error(self, message: str, stack: Optional[str] = None) -> None:
        """Set lastError and append to errorHistory (stack truncated)."""
        now = _now_iso()
        self.last_error = {
            "message": message,
            "timestamp": now,
            "attempt": self.attempts,
        }
        truncated = None
        if stack:
            truncated = "\n".join(stack.splitlines()[:ERROR_STACK_LINES])
        self.error_history.append({
            "timestamp": now,
            "attempt": self.attempts,
            "message": message,
            "stack": truncated,
        })


def load_task_info(store: ArtifactStore) -> TaskInfo:
    """Load info.json, starting from an empty history when absent or unreadable."""
    if not store.exists(INFO_FILE):
        return TaskInfo()
    try:
        data = store.read_json(INFO_FILE)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {INFO_FILE}: {e}")
        return TaskInfo()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {INFO_FILE}: expected an object")
        return TaskInfo()
    return TaskInfo.from_dict(data)


def save_task_info(store: ArtifactStore, info: TaskInfo) -> None:
    store.write_json(INFO_FILE, info.to_dict())
