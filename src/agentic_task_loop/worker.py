"""External worker invocation.

The worker is an AI coding agent run as a subprocess. It answers only through
files it writes and its exit status; stdout/stderr go to the workspace log.
"""

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from agentic_task_loop.constants import MODEL_ALIASES
from agentic_task_loop.errors import WorkerInvocationError

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Outcome of one successful worker run."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class Worker(ABC):
    """Abstract worker. Implementations raise WorkerInvocationError on failure."""

    @abstractmethod
    def invoke(
        self,
        prompt: str,
        model: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> WorkerResult:
        """
        Run the worker once with a rendered prompt.

        Args:
            prompt: Fully rendered prompt text
            model: Optional alias (fast, medium, hard) or concrete model name
            cwd: Directory the worker operates in

        Returns:
            WorkerResult for a zero exit status

        Raises:
            WorkerInvocationError: If the worker could not run or exited non-zero
        """
        pass


def resolve_model(model: Optional[str]) -> Optional[str]:
    """Map fast/medium/hard to a concrete model name; pass others through."""
    if not model:
        return None
    return MODEL_ALIASES.get(model, model)


class ClaudeWorker(Worker):
    """Runs the `claude` CLI in non-interactive print mode."""

    def __init__(self, command: str = "claude", log_path: Optional[Path] = None):
        self.command = command
        self.log_path = log_path

    def build_command(self, prompt: str, model: Optional[str] = None) -> List[str]:
        cmd = shlex.split(self.command) + [
            "--dangerously-skip-permissions",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        resolved = resolve_model(model)
        if resolved:
            cmd += ["--model", resolved]
        return cmd

    def _append_log(self, stdout: str, stderr: str) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(f"\n{'=' * 60}\n[{datetime.now().isoformat()}] worker run\n{'=' * 60}\n")
                f.write(stdout or "")
                if stderr:
                    f.write(f"\n--- stderr ---\n{stderr}")
                f.write("\n")
        except OSError as e:
            logger.warning(f"Could not write worker log {self.log_path}: {e}")

    def invoke(
        self,
        prompt: str,
        model: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> WorkerResult:
        cmd = self.build_command(prompt, model)
        logger.debug(f"Invoking worker: {cmd[0]} (model={resolve_model(model) or 'default'})")
        try:
            # No timeout: a worker run may legitimately take a very long time
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError:
            raise WorkerInvocationError(
                f"Worker command not found: {cmd[0]}\n"
                f"Install it or set TASKLOOP_WORKER_COMMAND."
            )
        except OSError as e:
            raise WorkerInvocationError(f"Could not start worker: {e}")

        self._append_log(result.stdout, result.stderr)

        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            raise WorkerInvocationError(
                f"Worker exited with code {result.returncode}"
                + (f": {detail[-1]}" if detail else ""),
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return WorkerResult(exit_code=0, stdout=result.stdout, stderr=result.stderr)
