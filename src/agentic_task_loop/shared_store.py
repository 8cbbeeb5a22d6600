"""Cross-task JSON stores (insights, context cache).

Several task loops may finish at nearly the same time and update the same
document. Every update is load -> merge-by-id -> atomic write, serialized
by one lock per file.
"""

import hashlib
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from agentic_task_loop.workspace import WorkspaceContext

logger = logging.getLogger(__name__)

INSIGHTS_VERSION = "1.0.0"
INSIGHT_CATEGORIES = ["patterns", "antiPatterns", "projectSpecific"]
PROJECT_INSIGHTS_FILE = "project-insights.json"
CONTEXT_CACHE_FILE = "context-cache.json"

_locks: Dict[Path, threading.Lock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = path.resolve()
    with _locks_guard:
        if key not in _locks:
            _locks[key] = threading.Lock()
        return _locks[key]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SharedJsonStore:
    """
    One JSON document shared across task loops.

    Args:
        path: Location of the document
        default_factory: Builds the empty document
        normalize: Optional function that repairs a loaded document
    """

    def __init__(
        self,
        path: Path,
        default_factory: Callable[[], Dict[str, Any]],
        normalize: Optional[Callable[[Any], Dict[str, Any]]] = None,
    ):
        self.path = Path(path)
        self.default_factory = default_factory
        self.normalize = normalize

    def load(self) -> Dict[str, Any]:
        """Read the document; missing, empty or corrupt files give the default."""
        if not self.path.exists():
            return self.default_factory()
        try:
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else self.default_factory()
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return self.default_factory()
        if self.normalize is not None:
            return self.normalize(data)
        return data if isinstance(data, dict) else self.default_factory()

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def update(self, mutate: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        """Apply `mutate` to the freshly loaded document and write it back."""
        with _lock_for(self.path):
            data = self.load()
            mutate(data)
            self._write(data)
            return data


# --- Insights ---

def _empty_insights() -> Dict[str, Any]:
    return {
        "version": INSIGHTS_VERSION,
        "lastUpdated": None,
        "curatedInsights": {category: [] for category in INSIGHT_CATEGORIES},
    }


def _normalize_insights(data: Any) -> Dict[str, Any]:
    base = _empty_insights()
    if not isinstance(data, dict):
        return base
    curated = data.get("curatedInsights") if isinstance(data.get("curatedInsights"), dict) else {}
    for category, items in curated.items():
        base["curatedInsights"][category] = [dict(i) for i in items if isinstance(i, dict)] if isinstance(items, list) else []
    base["lastUpdated"] = data.get("lastUpdated")
    return base


def insight_id(insight: Dict[str, Any]) -> str:
    """Stable id derived from the insight text when none is given."""
    text = str(insight.get("insight") or insight.get("text") or json.dumps(insight, sort_keys=True))
    return hashlib.sha1(text.strip().lower().encode("utf-8")).hexdigest()[:12]


class InsightStore:
    """Curated lessons learned, shared by every task in a workspace."""

    def __init__(self, workspace: WorkspaceContext):
        self.store = SharedJsonStore(
            workspace.insights_folder / PROJECT_INSIGHTS_FILE,
            _empty_insights,
            _normalize_insights,
        )

    def load_insights(self) -> Dict[str, Any]:
        return self.store.load()

    def add_insight(self, category: str, insight: Dict[str, Any]) -> str:
        """
        Add or merge an insight.

        An insight whose id already exists is merged into the existing entry
        and its `occurrences` counter goes up.

        Returns:
            The insight id.
        """
        entry = dict(insight)
        entry.setdefault("id", insight_id(entry))

        def _merge(data: Dict[str, Any]) -> None:
            items = data["curatedInsights"].setdefault(category, [])
            for existing in items:
                if existing.get("id") == entry["id"]:
                    occurrences = existing.get("occurrences", 1) + 1
                    existing.update(entry)
                    existing["occurrences"] = occurrences
                    existing["lastSeen"] = _now_iso()
                    break
            else:
                items.append({**entry, "occurrences": entry.get("occurrences", 1), "lastSeen": _now_iso()})
            data["lastUpdated"] = _now_iso()

        self.store.update(_merge)
        return entry["id"]


# --- Context cache ---

def _empty_cache() -> Dict[str, Any]:
    return {"completedTasks": {}, "lastProcessedTask": None}


def _normalize_cache(data: Any) -> Dict[str, Any]:
    base = _empty_cache()
    if isinstance(data, dict):
        base.update(data)
        if not isinstance(base.get("completedTasks"), dict):
            base["completedTasks"] = {}
    return base


class ContextCache:
    """Summaries of completed tasks, keyed by task id."""

    def __init__(self, workspace: WorkspaceContext):
        self.store = SharedJsonStore(
            workspace.cache_folder / CONTEXT_CACHE_FILE,
            _empty_cache,
            _normalize_cache,
        )

    def completed_tasks(self) -> Dict[str, Any]:
        return self.store.load()["completedTasks"]

    def mark_task_completed(self, task_id: str, summary: Optional[Dict[str, Any]] = None) -> None:
        record = dict(summary or {})
        record.setdefault("completedAt", _now_iso())

        def _merge(data: Dict[str, Any]) -> None:
            data["completedTasks"][task_id] = {**data["completedTasks"].get(task_id, {}), **record}
            data["lastProcessedTask"] = task_id

        self.store.update(_merge)
        logger.debug(f"Marked {task_id} completed in context cache")
