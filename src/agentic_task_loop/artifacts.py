"""Artifact store: named markdown/JSON files in one task directory.

The presence or absence of these files is the only message channel between the
loop and the worker, so everything that touches them goes through an
ArtifactStore. FileArtifactStore is the real thing; InMemoryArtifactStore lets
tests drive the loop without a filesystem.
"""

import json
import logging
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentic_task_loop.constants import (
    CRITICAL_REVIEW_FAILED_FILE,
    CRITICAL_REVIEW_OVERVIEW_FILE,
    CRITICAL_REVIEW_PASSED_FILE,
    CRITICAL_REVIEW_TODO_FILE,
    FULLY_IMPLEMENTED_NO,
    FULLY_IMPLEMENTED_PREFIX,
    OVERVIEW_FILE,
    PROMPT_REFINEMENT_PASSED_FILE,
    TODO_FILE,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ARTIFACT NAMES
# =============================================================================

@dataclass(frozen=True)
class ArtifactNames:
    """Which files play which role in a loop's signal protocol."""
    checklist: str
    checkpoint: str
    passed: str
    failed: Optional[str] = None
    pass_title: str = "Verification Passed"


CRITICAL_REVIEW_ARTIFACTS = ArtifactNames(
    checklist=CRITICAL_REVIEW_TODO_FILE,
    checkpoint=CRITICAL_REVIEW_OVERVIEW_FILE,
    passed=CRITICAL_REVIEW_PASSED_FILE,
    failed=CRITICAL_REVIEW_FAILED_FILE,
    pass_title="Critical Review Passed",
)

PROMPT_REFINEMENT_ARTIFACTS = ArtifactNames(
    checklist=TODO_FILE,
    checkpoint=OVERVIEW_FILE,
    passed=PROMPT_REFINEMENT_PASSED_FILE,
    failed=None,
    pass_title="Prompt Refinement Passed",
)


# =============================================================================
# CHECKLIST PARSING
# =============================================================================

# Marker at the start of a line (list items may be indented)
_PENDING_RE = re.compile(r"^[ \t]*- \[ \]", re.MULTILINE)
_COMPLETED_RE = re.compile(r"^[ \t]*- \[[xX]\]", re.MULTILINE)


def count_pending(content: Optional[str]) -> int:
    """Count unchecked `- [ ]` items."""
    if not content:
        return 0
    return len(_PENDING_RE.findall(content))


def count_completed(content: Optional[str]) -> int:
    """Count checked `- [x]` / `- [X]` items."""
    if not content:
        return 0
    return len(_COMPLETED_RE.findall(content))


def parse_fully_implemented(content: Optional[str]) -> Optional[bool]:
    """
    Read the optional `Fully implemented: YES|NO` first line.

    Returns:
        True/False when the marker is present, None otherwise.
    """
    if not content:
        return None
    first_line = content.splitlines()[0].strip() if content.splitlines() else ""
    if not first_line.startswith(FULLY_IMPLEMENTED_PREFIX):
        return None
    value = first_line[len(FULLY_IMPLEMENTED_PREFIX):].strip().upper()
    if value == "YES":
        return True
    if value == "NO":
        return False
    return None


def set_not_fully_implemented(content: str) -> str:
    """Rewrite (or prepend) the first line as `Fully implemented: NO`."""
    lines = content.split("\n")
    if lines and lines[0].strip().startswith(FULLY_IMPLEMENTED_PREFIX):
        lines[0] = FULLY_IMPLEMENTED_NO
        return "\n".join(lines)
    return f"{FULLY_IMPLEMENTED_NO}\n{content}"


# =============================================================================
# STORES
# =============================================================================

class ArtifactStore(ABC):
    """Read/write/delete named files under one task-scoped directory."""

    @property
    @abstractmethod
    def root(self) -> Path:
        """Absolute directory the artifacts live in."""
        pass

    def path(self, name: str) -> Path:
        """Absolute path of an artifact (used for prompt interpolation)."""
        return self.root / name

    @abstractmethod
    def exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def read_text(self, name: str) -> str:
        """
        Raises:
            FileNotFoundError: If the artifact is absent.
            OSError: If it cannot be read.
        """
        pass

    @abstractmethod
    def write_text(self, name: str, content: str) -> None:
        pass

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Delete an artifact. Returns False if it was already absent."""
        pass

    @abstractmethod
    def rename(self, src: str, dst: str) -> None:
        """Rename an artifact, replacing `dst` if it exists."""
        pass

    @abstractmethod
    def list_names(self) -> List[str]:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every artifact (fresh start)."""
        pass

    def ensure(self) -> None:
        """Make sure the directory exists (no-op for virtual stores)."""
        pass

    def read_json(self, name: str) -> Any:
        """
        Raises:
            FileNotFoundError / OSError: If the artifact cannot be read.
            json.JSONDecodeError: If it is not valid JSON.
        """
        return json.loads(self.read_text(name))

    def write_json(self, name: str, data: Any) -> None:
        self.write_text(name, json.dumps(data, indent=2))

    def read_optional(self, name: str) -> Optional[str]:
        """Read an artifact, returning None when absent or unreadable."""
        if not self.exists(name):
            return None
        try:
            return self.read_text(name)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {name}: {e}")
            return None


class FileArtifactStore(ArtifactStore):
    """Artifacts as files in a directory on disk."""

    def __init__(self, root: Path):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def ensure(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def exists(self, name: str) -> bool:
        return (self._root / name).is_file()

    def read_text(self, name: str) -> str:
        return (self._root / name).read_text(encoding="utf-8")

    def write_text(self, name: str, content: str) -> None:
        self.ensure()
        target = self._root / name
        # Write-then-replace so a crash never leaves a half-written artifact
        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, target)

    def delete(self, name: str) -> bool:
        try:
            (self._root / name).unlink()
            return True
        except FileNotFoundError:
            return False

    def rename(self, src: str, dst: str) -> None:
        os.replace(self._root / src, self._root / dst)

    def list_names(self) -> List[str]:
        if not self._root.is_dir():
            return []
        return sorted(p.name for p in self._root.iterdir() if p.is_file())

    def clear(self) -> None:
        if self._root.exists():
            shutil.rmtree(self._root)
        self.ensure()


class InMemoryArtifactStore(ArtifactStore):
    """Dict-backed store; paths are virtual and never touched."""

    def __init__(self, root: Path = Path("/memory/task"), files: Optional[Dict[str, str]] = None):
        self._root = Path(root)
        self.files: Dict[str, str] = dict(files or {})

    @property
    def root(self) -> Path:
        return self._root

    def exists(self, name: str) -> bool:
        return name in self.files

    def read_text(self, name: str) -> str:
        try:
            return self.files[name]
        except KeyError:
            raise FileNotFoundError(str(self.path(name)))

    def write_text(self, name: str, content: str) -> None:
        self.files[name] = content

    def delete(self, name: str) -> bool:
        return self.files.pop(name, None) is not None

    def rename(self, src: str, dst: str) -> None:
        if src not in self.files:
            raise FileNotFoundError(str(self.path(src)))
        self.files[dst] = self.files.pop(src)

    def list_names(self) -> List[str]:
        return sorted(self.files)

    def clear(self) -> None:
        self.files.clear()


def mark_not_fully_implemented(store: ArtifactStore, name: str) -> bool:
    """
    Flag a checklist as unfinished after a failed worker run.

    Returns:
        True if the checklist existed and was rewritten.
    """
    content = store.read_optional(name)
    if content is None:
        return False
    store.write_text(name, set_not_fully_implemented(content))
    return True
