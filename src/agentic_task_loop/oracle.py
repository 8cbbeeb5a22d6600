"""Completion oracle: reads artifact signals, never mutates them.

Read-only and advisory. A missing or unreadable file counts as "no progress
yet", so every query degrades to 0/False instead of raising.
"""

import logging
from typing import Optional

from agentic_task_loop import artifacts
from agentic_task_loop.artifacts import ArtifactNames, ArtifactStore
from agentic_task_loop.execution_state import Phase

logger = logging.getLogger(__name__)


class CompletionOracle:
    def __init__(self, store: ArtifactStore, names: ArtifactNames):
        self.store = store
        self.names = names

    def _exists(self, name: Optional[str]) -> bool:
        if not name:
            return False
        try:
            return self.store.exists(name)
        except OSError as e:
            logger.warning(f"Could not check {name}: {e}")
            return False

    def checklist_text(self) -> Optional[str]:
        """Checklist contents, or None if absent/unreadable."""
        return self.store.read_optional(self.names.checklist)

    def count_pending(self) -> int:
        return artifacts.count_pending(self.checklist_text())

    def count_completed(self) -> int:
        return artifacts.count_completed(self.checklist_text())

    def is_in_verify_phase(self) -> bool:
        """The checkpoint doc exists: the worker thinks Execute is done."""
        return self._exists(self.names.checkpoint)

    def is_verified(self) -> bool:
        return self._exists(self.names.passed)

    def has_failed(self) -> bool:
        return self._exists(self.names.failed)

    def current_phase(self) -> Phase:
        return Phase.VERIFY if self.is_in_verify_phase() else Phase.EXECUTE
