"""Workspace context passed explicitly into every component."""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

from agentic_task_loop.constants import (
    CACHE_DIR_NAME,
    INSIGHTS_DIR_NAME,
    LOG_FILE_NAME,
    WORKSPACE_DIR_NAME,
)


def validate_task_id(task_id: str) -> str:
    """
    Raises:
        ValueError: If the id is empty or would escape the state folder.
    """
    if not isinstance(task_id, str) or not task_id or "/" in task_id or "\\" in task_id or task_id in (".", ".."):
        raise ValueError(f"Invalid task id: {task_id!r}")
    return task_id


@dataclass(frozen=True)
class WorkspaceContext:
    """
    Where a project lives and where the loop keeps its state.

    `folder` is the project the worker operates on; loop state goes under
    `folder/.claudiomiro`, one sub-directory per task.
    """

    folder: Path

    @classmethod
    def from_folder(cls, folder: Union[str, Path]) -> "WorkspaceContext":
        return cls(folder=Path(folder).resolve())

    @property
    def state_folder(self) -> Path:
        return self.folder / WORKSPACE_DIR_NAME

    @property
    def cache_folder(self) -> Path:
        return self.state_folder / CACHE_DIR_NAME

    @property
    def insights_folder(self) -> Path:
        return self.state_folder / INSIGHTS_DIR_NAME

    @property
    def log_path(self) -> Path:
        return self.state_folder / LOG_FILE_NAME

    def task_folder(self, task_id: str) -> Path:
        """Task-scoped directory; the isolation boundary between concurrent loops."""
        return self.state_folder / validate_task_id(task_id)

    def ensure(self) -> None:
        self.state_folder.mkdir(parents=True, exist_ok=True)
