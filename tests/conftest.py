"""Shared fixtures: a scripted fake worker and a temporary workspace."""

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from agentic_task_loop.worker import Worker, WorkerResult
from agentic_task_loop.workspace import WorkspaceContext

Action = Callable[[Path], None]


class ScriptedWorker(Worker):
    """
    Fake worker that plays one scripted action per invocation.

    Each action receives the task directory and writes whatever artifacts the
    real agent would have written. Once the script runs out the worker does
    nothing.
    """

    def __init__(self, task_dir: Path, actions: Optional[List[Action]] = None):
        self.task_dir = task_dir
        self.actions = list(actions or [])
        self.calls: List[dict] = []

    def invoke(self, prompt, model=None, cwd=None) -> WorkerResult:
        self.calls.append({"prompt": prompt, "model": model, "cwd": cwd})
        if self.actions:
            action = self.actions.pop(0)
            if action is not None:
                self.task_dir.mkdir(parents=True, exist_ok=True)
                action(self.task_dir)
        return WorkerResult(exit_code=0)

    @property
    def prompts(self) -> List[str]:
        return [c["prompt"] for c in self.calls]


def write(name: str, content: str) -> Action:
    """Action writing one artifact."""
    def _action(task_dir: Path) -> None:
        (task_dir / name).write_text(content)
    return _action


def steps(*actions: Action) -> Action:
    """Combine several actions into one invocation."""
    def _action(task_dir: Path) -> None:
        for action in actions:
            action(task_dir)
    return _action


@pytest.fixture
def workspace(tmp_path) -> WorkspaceContext:
    return WorkspaceContext.from_folder(tmp_path)
