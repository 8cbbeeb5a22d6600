"""Escalation policy: forced re-research and scope reclassification.

Two escalations exist:

- Force research: after repeated failures the research artifact is moved
  aside (RESEARCH.md -> RESEARCH.old.md, never deleted) so the next run has
  to regenerate it.
- Scope classification: multi-repo setups route each task to the backend,
  frontend or both repositories. Scope comes from an `@scope` line in the
  task blueprint; when missing it is classified by keyword heuristics first
  and by a cheap worker call second, then written back into the blueprint.

Classifiers form a chain: the first one that returns a scope wins.
"""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from agentic_task_loop.artifacts import ArtifactStore
from agentic_task_loop.constants import (
    BLUEPRINT_FILE,
    DEFAULT_SCOPE,
    FORCE_RESEARCH_MIN_ATTEMPTS,
    RESEARCH_FILE,
    RESEARCH_OLD_FILE,
    SCOPE_BACKEND,
    SCOPE_FRONTEND,
    SCOPE_INTEGRATION,
    SCOPE_OUTPUT_FILE,
    VALID_SCOPES,
)
from agentic_task_loop.errors import ScopeValidationError
from agentic_task_loop.execution_state import TaskInfo
from agentic_task_loop.prompts import build_scope_detection_prompt
from agentic_task_loop.worker import Worker

logger = logging.getLogger(__name__)


# === SCOPE INDICATORS ===
# Each indicator counts once if it appears anywhere in the lower-cased text

BACKEND_INDICATORS: List[str] = [
    "api endpoint", "api route", "server", "database", "model", "controller",
    "service layer", "backend", "prisma", "migration", "rest api",
    "graphql resolver", "middleware", "authentication", "/api/", "/server/",
    "/backend/", "express", "fastify", "nest",
]

FRONTEND_INDICATORS: List[str] = [
    "ui component", "frontend", "client", "react", "vue", "angular",
    "component", "hook", "state management", "redux", "zustand", "/web/",
    "/client/", "/frontend/", "/app/", "css", "tailwind", "page component",
    "layout", "navigation", "form", "button",
]

INTEGRATION_INDICATORS: List[str] = [
    "e2e", "end-to-end", "integration test", "contract", "shared type", "dto",
    "both layers", "frontend and backend", "api contract", "full stack",
    "cross-layer",
]

# Winner needs this many indicators when the other side has none
SOLE_SCOPE_THRESHOLD = 3
# Integration wins outright at this many integration indicators
INTEGRATION_THRESHOLD = 2

SCOPE_LINE_RE = re.compile(r"^@scope\s+(backend|frontend|integration)\s*$", re.MULTILINE | re.IGNORECASE)
DEPENDENCIES_LINE_RE = re.compile(r"^(@dependencies\s*\[[^\]]*\])[ \t]*$", re.MULTILINE | re.IGNORECASE)
LEADING_COMMENT_RE = re.compile(r"^<!--[^>]*-->\s*\n?")


def score_scope_indicators(text: str) -> Dict[str, int]:
    """Count how many indicators of each vocabulary appear in the text."""
    lowered = text.lower()
    return {
        SCOPE_BACKEND: sum(1 for i in BACKEND_INDICATORS if i in lowered),
        SCOPE_FRONTEND: sum(1 for i in FRONTEND_INDICATORS if i in lowered),
        SCOPE_INTEGRATION: sum(1 for i in INTEGRATION_INDICATORS if i in lowered),
    }


def parse_task_scope(content: Optional[str]) -> Optional[str]:
    """Extract the `@scope` annotation from a blueprint, or None."""
    if not content:
        return None
    match = SCOPE_LINE_RE.search(content)
    return match.group(1).lower() if match else None


def validate_scope(scope: Optional[str], multi_repo: bool) -> bool:
    """
    Raises:
        ScopeValidationError: In multi-repo mode when no scope is known.
    """
    if not multi_repo:
        return True
    if not scope:
        raise ScopeValidationError(
            "@scope tag is required in multi-repo mode. "
            'Add "@scope backend", "@scope frontend", or "@scope integration" to BLUEPRINT.md'
        )
    return True


def insert_scope_annotation(content: str, scope: str) -> str:
    """
    Add `@scope <scope>` to blueprint text.

    Goes after an `@dependencies [...]` line when present, otherwise after a
    leading HTML comment, otherwise at the very top. Text that already has a
    valid `@scope` line is returned unchanged.
    """
    if SCOPE_LINE_RE.search(content):
        return content
    deps = DEPENDENCIES_LINE_RE.search(content)
    if deps:
        pos = deps.end()
        return f"{content[:pos]}\n@scope {scope}{content[pos:]}"
    comment = LEADING_COMMENT_RE.match(content)
    if comment:
        pos = comment.end()
        return f"{content[:pos]}@scope {scope}\n{content[pos:]}"
    return f"@scope {scope}\n{content}"


def add_scope_to_blueprint(store: ArtifactStore, scope: str) -> bool:
    """
    Write the scope annotation into BLUEPRINT.md.

    Returns:
        False if there is no blueprint, True otherwise (including when the
        annotation was already there).
    """
    content = store.read_optional(BLUEPRINT_FILE)
    if content is None:
        return False
    updated = insert_scope_annotation(content, scope)
    if updated == content:
        logger.debug(f"@scope already present in {store.path(BLUEPRINT_FILE)}")
        return True
    store.write_text(BLUEPRINT_FILE, updated)
    logger.info(f"Added @scope {scope} to {store.path(BLUEPRINT_FILE)}")
    return True


# === CLASSIFIERS ===

class ScopeClassifier(ABC):
    """One link in the classification chain."""

    @abstractmethod
    def classify(self, blueprint: str, task_id: str) -> Optional[str]:
        """Return a scope, or None to pass to the next classifier."""
        pass


class HeuristicScopeClassifier(ScopeClassifier):
    """Keyword dominance rules. Returns None when inconclusive."""

    def classify(self, blueprint: str, task_id: str) -> Optional[str]:
        scores = score_scope_indicators(blueprint)
        backend = scores[SCOPE_BACKEND]
        frontend = scores[SCOPE_FRONTEND]
        logger.debug(f"Scope scores for {task_id}: {scores}")

        if scores[SCOPE_INTEGRATION] >= INTEGRATION_THRESHOLD:
            return SCOPE_INTEGRATION
        if backend > frontend + 2 and frontend == 0:
            return SCOPE_BACKEND
        if frontend > backend + 2 and backend == 0:
            return SCOPE_FRONTEND
        if backend > 0 and frontend > 0:
            return SCOPE_INTEGRATION
        if backend >= SOLE_SCOPE_THRESHOLD and frontend == 0:
            return SCOPE_BACKEND
        if frontend >= SOLE_SCOPE_THRESHOLD and backend == 0:
            return SCOPE_FRONTEND
        return None


class WorkerScopeClassifier(ScopeClassifier):
    """
    Asks the worker (fast model) to name the scope.

    Never raises and never passes: any failure or out-of-vocabulary answer
    becomes `integration`, the superset scope.
    """

    def __init__(
        self,
        worker: Worker,
        store: ArtifactStore,
        cwd: Optional[Path] = None,
        templates_dir: Optional[Path] = None,
    ):
        self.worker = worker
        self.store = store
        self.cwd = cwd
        self.templates_dir = templates_dir

    def classify(self, blueprint: str, task_id: str) -> Optional[str]:
        output_path = self.store.path(SCOPE_OUTPUT_FILE)
        logger.info(f"Detecting scope for {task_id} with the worker...")
        try:
            prompt = build_scope_detection_prompt(blueprint, task_id, output_path, self.templates_dir)
            self.worker.invoke(prompt, model="fast", cwd=self.cwd)
            answer = self.store.read_optional(SCOPE_OUTPUT_FILE)
            self.store.delete(SCOPE_OUTPUT_FILE)
        except Exception as e:
            logger.error(f"Scope detection failed for {task_id}: {e}; defaulting to {DEFAULT_SCOPE}")
            return DEFAULT_SCOPE

        if answer is None:
            logger.warning(f"Worker wrote no scope for {task_id}; defaulting to {DEFAULT_SCOPE}")
            return DEFAULT_SCOPE
        scope = answer.strip().lower()
        if scope not in VALID_SCOPES:
            logger.warning(f"Invalid scope answer {scope!r} for {task_id}; defaulting to {DEFAULT_SCOPE}")
            return DEFAULT_SCOPE
        logger.info(f"Detected scope for {task_id}: {scope}")
        return scope


class ScopeClassifierChain(ScopeClassifier):
    def __init__(self, classifiers: Sequence[ScopeClassifier]):
        self.classifiers = list(classifiers)

    def classify(self, blueprint: str, task_id: str) -> Optional[str]:
        for classifier in self.classifiers:
            scope = classifier.classify(blueprint, task_id)
            if scope is not None:
                return scope
        return None


# === POLICY ===

class EscalationPolicy:
    """
    Decides when to force new research and resolves task scope.

    Args:
        store: The task's artifact store
        classifier: Scope classifier; defaults to heuristics only, or
            heuristics then the worker when `worker` is given
        worker: Worker used for the classification fallback
        cwd: Directory the classification worker runs in
    """

    def __init__(
        self,
        store: ArtifactStore,
        classifier: Optional[ScopeClassifier] = None,
        worker: Optional[Worker] = None,
        cwd: Optional[Path] = None,
        templates_dir: Optional[Path] = None,
    ):
        self.store = store
        if classifier is None:
            chain: List[ScopeClassifier] = [HeuristicScopeClassifier()]
            if worker is not None:
                chain.append(WorkerScopeClassifier(worker, store, cwd, templates_dir))
            classifier = ScopeClassifierChain(chain)
        self.classifier = classifier

    # --- Force research ---

    @staticmethod
    def should_force_research(info: TaskInfo) -> bool:
        return info.attempts >= FORCE_RESEARCH_MIN_ATTEMPTS and info.last_error is not None

    def force_research(self) -> bool:
        """
        Move RESEARCH.md aside so the next run regenerates it.

        Returns:
            True if a research file was renamed.
        """
        if not self.store.exists(RESEARCH_FILE):
            return False
        self.store.rename(RESEARCH_FILE, RESEARCH_OLD_FILE)
        logger.info(f"Forcing new research: {RESEARCH_FILE} -> {RESEARCH_OLD_FILE}")
        return True

    def apply(self, info: TaskInfo) -> bool:
        """Escalate if the attempt history calls for it. Returns True if research was moved aside."""
        if not self.should_force_research(info):
            return False
        logger.warning(
            f"{info.attempts} attempts with last error "
            f"{(info.last_error or {}).get('message', '')!r}; forcing re-research"
        )
        return self.force_research()

    # --- Scope ---

    def classify_scope(self, blueprint: str, task_id: str = "task") -> Optional[str]:
        return self.classifier.classify(blueprint, task_id)

    def auto_fix_scope(self, task_id: str) -> Optional[str]:
        """
        Classify a blueprint without `@scope` and annotate it.

        Returns:
            The scope written, or None if there is no blueprint or the chain
            was inconclusive.
        """
        blueprint = self.store.read_optional(BLUEPRINT_FILE)
        if blueprint is None:
            logger.warning(f"{BLUEPRINT_FILE} not found for {task_id}")
            return None
        existing = parse_task_scope(blueprint)
        if existing:
            return existing
        scope = self.classify_scope(blueprint, task_id)
        if scope is None:
            logger.error(f"Failed to detect scope for {task_id}")
            return None
        if add_scope_to_blueprint(self.store, scope):
            return scope
        return None

    def resolve_scope(self, task_id: str, multi_repo: bool) -> Optional[str]:
        """
        Scope for routing the task, classifying once if needed.

        Raises:
            ScopeValidationError: In multi-repo mode when no scope resolves.
        """
        scope = parse_task_scope(self.store.read_optional(BLUEPRINT_FILE))
        if scope is None and multi_repo:
            scope = self.auto_fix_scope(task_id)
        validate_scope(scope, multi_repo)
        return scope
