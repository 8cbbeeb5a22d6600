"""Two-phase execute/verify loop controller.

The worker has no return channel besides files, so every decision here is
re-derived from artifacts in the task directory:

    EXECUTE  worker fixes checklist items; writing the checkpoint doc means
             "I think I'm done"
    VERIFY   (checkpoint present) worker re-checks independently; a pass doc
             ends the loop, new pending items send it back to EXECUTE

Phase is never carried in memory between iterations, so a crashed run
resumes where the artifacts say it was. A worker failure aborts the run;
retrying is the caller's decision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from agentic_task_loop.artifacts import (
    CRITICAL_REVIEW_ARTIFACTS,
    ArtifactNames,
    ArtifactStore,
    FileArtifactStore,
    mark_not_fully_implemented,
)
from agentic_task_loop.constants import DEFAULT_MAX_ITERATIONS, RESEARCH_OLD_FILE
from agentic_task_loop.errors import (
    IterationBudgetExhausted,
    LoopError,
    WorkerInvocationError,
)
from agentic_task_loop.escalation import EscalationPolicy
from agentic_task_loop.execution_io import record_error
from agentic_task_loop.execution_state import (
    LoopSession,
    Phase,
    TaskInfo,
    load_task_info,
    save_task_info,
)
from agentic_task_loop.model_client import LocalLLMClient, pre_analyze_progress
from agentic_task_loop.oracle import CompletionOracle
from agentic_task_loop.prompts import LoopPrompts
from agentic_task_loop.shared_store import ContextCache
from agentic_task_loop.worker import Worker
from agentic_task_loop.workspace import WorkspaceContext

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Path], ArtifactStore]


@dataclass
class LoopConfig:
    """What to do and how long to try."""
    prompt: str
    max_iterations: Optional[int] = DEFAULT_MAX_ITERATIONS  # None = unbounded
    clear_folder: bool = False
    fresh_start: bool = False
    model: Optional[str] = None
    auto_pass: bool = True
    multi_repo: bool = False
    repositories: Dict[str, Path] = field(default_factory=dict)


@dataclass
class LoopSummary:
    """Successful outcome of a run."""
    task_id: str
    iterations: int
    completed: int
    pending: int
    auto_passed: bool = False
    already_complete: bool = False
    scope: Optional[str] = None

    def describe(self) -> str:
        if self.already_complete:
            return f"{self.task_id}: already verified ({self.completed} item(s) fixed earlier)"
        note = " (pass auto-generated)" if self.auto_passed else ""
        return (
            f"{self.task_id}: verified after {self.iterations} iteration(s), "
            f"{self.completed} item(s) fixed{note}"
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_auto_pass(title: str, request: str, completed: int, checklist: str) -> str:
    return f"""# {title}

**Verification Date**: {_now_iso()}
**User Request**: {request}

## Result

No new tasks found. Every item in {checklist} is checked.

## Verification Summary

- Completed issues: {completed}
- Pending issues: 0

*Note: This file was auto-generated because the worker did not write it despite no pending items.*
"""


RESEARCH_NOTE = f"""

## Re-research required

Previous attempts kept failing with the same approach. The old research was
moved to {RESEARCH_OLD_FILE}. Investigate the problem again from scratch
before changing code.
"""


class LoopRun:
    """
    One run() of one task's loop, one `step()` per worker invocation.

    Built by LoopController.start(); LoopController.run() and the graph view
    both drive it.
    """

    def __init__(
        self,
        session: LoopSession,
        config: LoopConfig,
        store: ArtifactStore,
        names: ArtifactNames,
        worker: Worker,
        prompts: Optional[LoopPrompts],
        policy: EscalationPolicy,
        info: TaskInfo,
        workspace: WorkspaceContext,
        cwd: Path,
        scope: Optional[str] = None,
        local_llm: Optional[LocalLLMClient] = None,
        context_cache: Optional[ContextCache] = None,
        early_summary: Optional[LoopSummary] = None,
    ):
        self.session = session
        self.config = config
        self.store = store
        self.names = names
        self.worker = worker
        self.prompts = prompts
        self.policy = policy
        self.info = info
        self.workspace = workspace
        self.cwd = cwd
        self.scope = scope
        self.local_llm = local_llm
        self.context_cache = context_cache
        self.early_summary = early_summary
        self.oracle = CompletionOracle(store, names)
        self.invocations = 0
        self._previous_pending: Optional[int] = None
        # Error left by an earlier failed run, used to spot a stuck loop
        self._prior_error = (info.last_error or {}).get("message")

    @property
    def has_budget(self) -> bool:
        return self.session.has_budget

    def _prompt_values(self) -> Dict[str, str]:
        checklist = str(self.store.path(self.names.checklist))
        return {
            "iteration": str(self.session.iteration),
            "maxIterations": self.session.max_display,
            "userPrompt": self.config.prompt,
            "todoPath": checklist,
            "bugsPath": checklist,
            "overviewPath": str(self.store.path(self.names.checkpoint)),
            "passedPath": str(self.store.path(self.names.passed)),
            "failedPath": str(self.store.path(self.names.failed)) if self.names.failed else "",
            "claudiomiroFolder": str(self.store.root),
        }

    def _succeed(self, auto_passed: bool = False) -> LoopSummary:
        summary = LoopSummary(
            task_id=self.session.task_id,
            iterations=self.invocations,
            completed=self.oracle.count_completed(),
            pending=self.oracle.count_pending(),
            auto_passed=auto_passed,
            scope=self.scope,
        )
        if self.context_cache is not None:
            self.context_cache.mark_task_completed(self.session.task_id, {
                "iterations": summary.iterations,
                "completedItems": summary.completed,
                "autoPassed": auto_passed,
            })
        logger.info(f"Loop completed: {summary.describe()}")
        return summary

    def step(self) -> Optional[LoopSummary]:
        """
        Run one iteration.

        Returns:
            LoopSummary when verification passed, None to keep going.

        Raises:
            WorkerInvocationError: If the worker failed; the run is over.
        """
        n = self.session.iteration
        phase = self.oracle.current_phase()
        self.session.phase = phase
        verify = phase is Phase.VERIFY

        extra = ""
        re_researched = False
        if verify:
            logger.info(f"Verification iteration {self.session.iteration_display}")
            if self.names.failed and self.store.delete(self.names.failed):
                logger.debug(f"Removed stale {self.names.failed}")
        else:
            logger.info(f"Iteration {self.session.iteration_display}")
            re_researched = self.policy.apply(self.info)
            pending_now = self.oracle.count_pending()
            if self.invocations > 0:
                extra += pre_analyze_progress(
                    self.local_llm,
                    self.config.prompt,
                    self._previous_pending,
                    pending_now,
                    self._prior_error,
                )
            self._previous_pending = pending_now
            if re_researched:
                extra += RESEARCH_NOTE

        prompt = self.prompts.render(verify, self._prompt_values(), extra)

        self.info.begin_attempt(re_researched)
        self.invocations += 1
        try:
            self.worker.invoke(prompt, model=self.config.model, cwd=self.cwd)
        except WorkerInvocationError as e:
            self.info.record_error(str(e), stack=e.stderr)
            save_task_info(self.store, self.info)
            mark_not_fully_implemented(self.store, self.names.checklist)
            record_error(self.store, str(e), stack=e.stderr, failed_validation="worker")
            logger.error(f"Worker failed on iteration {n}: {e}")
            raise WorkerInvocationError(
                f"Task {self.session.task_id} failed during iteration {n}: {e}",
                exit_code=e.exit_code,
                stderr=e.stderr,
            ) from e

        self.info.clear_error()
        save_task_info(self.store, self.info)
        self.session.iteration += 1

        if verify:
            return self._after_verify()
        return self._after_execute()

    def _after_execute(self) -> Optional[LoopSummary]:
        if self.oracle.is_in_verify_phase():
            logger.info(f"{self.names.checkpoint} written; verifying next")
            return None
        logger.info(
            f"Issues tracked: {self.oracle.count_completed()} fixed, "
            f"{self.oracle.count_pending()} pending"
        )
        return None

    def _after_verify(self) -> Optional[LoopSummary]:
        if self.oracle.is_verified():
            logger.info("Verification passed, no new tasks found")
            return self._succeed()

        pending = self.oracle.count_pending()
        if pending > 0 or self.oracle.has_failed():
            logger.info(f"Verification found {pending} pending task(s); continuing fixes")
            self.store.delete(self.names.checkpoint)
            return None

        if not self.config.auto_pass:
            logger.warning(f"No pending items but {self.names.passed} was not written; verifying again")
            return None

        logger.warning(f"No pending items but {self.names.passed} was not written; generating it")
        completed = self.oracle.count_completed()
        self.store.write_text(
            self.names.passed,
            build_auto_pass(self.names.pass_title, self.config.prompt, completed, self.names.checklist),
        )
        return self._succeed(auto_passed=True)

    def fail_exhausted(self) -> None:
        """
        Raises:
            IterationBudgetExhausted: Always, with the remaining checklist.
        """
        remaining = self.oracle.checklist_text()
        message = (
            f"Task {self.session.task_id} did not complete after {self.session.max_display} iterations. "
            f"Check {self.names.checklist} for remaining issues."
        )
        if remaining:
            message += f"\n\nRemaining {self.names.checklist}:\n{remaining}"
        logger.error(f"Max iterations ({self.session.max_display}) reached")
        raise IterationBudgetExhausted(message, iterations=self.invocations, remaining=remaining)


class LoopController:
    """
    Drives execute/verify loops for tasks in one workspace.

    Args:
        workspace: Project folder and state location
        worker: External worker
        artifacts: Which files carry the loop's signals
        templates_dir: Override for the prompt templates
        store_factory: Builds the artifact store for a task directory
        local_llm: Optional advisory client for stuck-loop analysis
        context_cache: Optional cache told about completed tasks
        escalation_factory: Builds the escalation policy for a task store
    """

    def __init__(
        self,
        workspace: WorkspaceContext,
        worker: Worker,
        artifacts: ArtifactNames = CRITICAL_REVIEW_ARTIFACTS,
        templates_dir: Optional[Path] = None,
        store_factory: Optional[StoreFactory] = None,
        local_llm: Optional[LocalLLMClient] = None,
        context_cache: Optional[ContextCache] = None,
        escalation_factory: Optional[Callable[[ArtifactStore], EscalationPolicy]] = None,
    ):
        self.workspace = workspace
        self.worker = worker
        self.artifacts = artifacts
        self.templates_dir = templates_dir
        self.store_factory = store_factory or FileArtifactStore
        self.local_llm = local_llm
        self.context_cache = context_cache
        self.escalation_factory = escalation_factory or (
            lambda store: EscalationPolicy(
                store,
                worker=worker,
                cwd=workspace.folder,
                templates_dir=templates_dir,
            )
        )

    def _reset(self, store: ArtifactStore, config: LoopConfig) -> None:
        if config.clear_folder:
            logger.info(f"Clearing {store.root}")
            store.clear()
        if config.fresh_start:
            for name in (self.artifacts.checklist, self.artifacts.checkpoint, self.artifacts.passed):
                try:
                    store.delete(name)
                except OSError as e:
                    logger.warning(f"Could not delete {name}: {e}")

    def start(self, task_id: str, config: LoopConfig) -> LoopRun:
        """
        Prepare a run without invoking the worker.

        Raises:
            LoopError: If the prompt is empty.
            MissingTemplateError: If a prompt template is absent.
            ScopeValidationError: In multi-repo mode without a resolvable scope.
        """
        if not config.prompt or not config.prompt.strip():
            raise LoopError("A prompt is required to run the loop.")
        if config.max_iterations is not None and config.max_iterations < 1:
            raise LoopError(f"max_iterations must be >= 1, got {config.max_iterations}")

        self.workspace.ensure()
        store = self.store_factory(self.workspace.task_folder(task_id))
        self._reset(store, config)
        store.ensure()

        session = LoopSession(task_id=task_id, max_iterations=config.max_iterations)
        preview = config.prompt[:100] + ("..." if len(config.prompt) > 100 else "")
        logger.info(f"Starting loop for {task_id}: {preview!r}")
        logger.info(f"Max iterations: {session.max_display}")

        policy = self.escalation_factory(store)
        info = load_task_info(store)
        common = dict(
            session=session,
            config=config,
            store=store,
            names=self.artifacts,
            worker=self.worker,
            policy=policy,
            info=info,
            workspace=self.workspace,
            cwd=self.workspace.folder,
            local_llm=self.local_llm,
            context_cache=self.context_cache,
        )

        oracle = CompletionOracle(store, self.artifacts)
        if oracle.is_verified():
            logger.info(f"{self.artifacts.passed} already exists; skipping loop")
            early = LoopSummary(
                task_id=task_id,
                iterations=0,
                completed=oracle.count_completed(),
                pending=oracle.count_pending(),
                already_complete=True,
            )
            return LoopRun(prompts=None, early_summary=early, **common)

        prompts = LoopPrompts.load(self.templates_dir)

        scope = None
        if config.multi_repo:
            scope = policy.resolve_scope(task_id, multi_repo=True)
            repo = config.repositories.get(scope)
            if repo is not None:
                common["cwd"] = Path(repo)
            logger.info(f"Scope for {task_id}: {scope} (cwd {common['cwd']})")

        return LoopRun(prompts=prompts, scope=scope, **common)

    def run(self, task_id: str, config: LoopConfig) -> LoopSummary:
        """
        Run a task's loop until verification passes.

        Returns:
            LoopSummary on success.

        Raises:
            WorkerInvocationError: Worker failed; recorded in info.json.
            IterationBudgetExhausted: Budget used without a verified pass.
            MissingTemplateError / ScopeValidationError: Before any iteration.
        """
        loop = self.start(task_id, config)
        if loop.early_summary is not None:
            return loop.early_summary
        while loop.has_budget:
            summary = loop.step()
            if summary is not None:
                return summary
        loop.fail_exhausted()


def run_execution_loop(
    folder: Path,
    worker: Worker,
    task_id: str,
    config: LoopConfig,
    **controller_kwargs,
) -> LoopSummary:
    """Build a controller for `folder` and run one task's loop."""
    controller = LoopController(WorkspaceContext.from_folder(folder), worker, **controller_kwargs)
    return controller.run(task_id, config)
