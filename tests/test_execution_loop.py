"""Tests for the execute/verify loop controller (fake worker, no agent calls)."""

import json

import pytest

from conftest import ScriptedWorker, steps, write

from agentic_task_loop.artifacts import CRITICAL_REVIEW_ARTIFACTS as NAMES
from agentic_task_loop.artifacts import InMemoryArtifactStore
from agentic_task_loop.errors import (
    IterationBudgetExhausted,
    LoopError,
    MissingTemplateError,
    ScopeValidationError,
    WorkerInvocationError,
)
from agentic_task_loop.execution_loop import LoopConfig, LoopController, run_execution_loop
from agentic_task_loop.model_client import PROGRESS_ANALYSIS_HEADER, HealthStatus, LocalLLMClient
from agentic_task_loop.shared_store import ContextCache

TASK_ID = "loop-fixes"

ALL_FIXED = "Fully implemented: YES\n\n- [x] remove unused import (app.py:3)\n"
TWO_PENDING = "Fully implemented: NO\n\n- [x] remove unused import\n- [ ] handle empty input\n- [ ] close the file\n"
ONE_PENDING = "Fully implemented: NO\n\n- [ ] handle empty input\n"


def done_executing():
    """Worker claims Execute is done: checklist all checked, checkpoint written."""
    return steps(write(NAMES.checklist, ALL_FIXED), write(NAMES.checkpoint, "# Summary\n"))


def verified():
    return write(NAMES.passed, "# Critical Review Passed\n")


class FailingWorker(ScriptedWorker):
    def invoke(self, prompt, model=None, cwd=None):
        self.calls.append({"prompt": prompt, "model": model, "cwd": cwd})
        raise WorkerInvocationError(
            "Worker exited with code 2: boom",
            exit_code=2,
            stderr="Traceback\n  line a\n  line b\n  line c\nError: boom",
        )


class StuckLoopLLM(LocalLLMClient):
    """Local model that always reports the same issue."""

    def __init__(self):
        self.prompts = []

    def generate(self, prompt, temperature=0.1, max_tokens=256):
        self.prompts.append(prompt)
        return '{"valid": false, "confidence": 0.9, "issues": ["same assertion keeps failing"], "recommendation": "read the traceback"}'

    def health_check(self):
        return HealthStatus(available=True, models=["llama3:8b"], has_model=True)


@pytest.fixture
def task_dir(workspace):
    return workspace.task_folder(TASK_ID)


def make_controller(workspace, worker, **kwargs):
    return LoopController(workspace, worker, **kwargs)


# =============================================================================
# SIGNAL PROTOCOL
# =============================================================================

class TestHappyPath:
    """Execute writes the checkpoint, Verify writes the pass doc."""

    def test_two_invocations(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="fix lint errors"))

        assert len(worker.calls) == 2
        assert summary.iterations == 2
        assert summary.completed == 1
        assert summary.pending == 0
        assert not summary.auto_passed
        assert (task_dir / NAMES.passed).exists()

    def test_prompts_follow_phase(self, workspace, task_dir):
        """First prompt is the execute template, second the verify template."""
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])
        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="fix lint errors", max_iterations=5))

        execute_prompt, verify_prompt = worker.prompts
        assert "Iteration 1 of 5" in execute_prompt
        assert "Verification" in verify_prompt
        assert "fix lint errors" in execute_prompt
        assert str(task_dir / NAMES.checklist) in execute_prompt
        # Shell rule is appended to every prompt
        assert all("Shell command rule" in p for p in worker.prompts)

    def test_worker_runs_in_project_folder(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])
        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", model="fast"))

        assert all(c["cwd"] == workspace.folder for c in worker.calls)
        assert all(c["model"] == "fast" for c in worker.calls)

    def test_checkpoint_stays_until_verify(self, workspace, task_dir):
        """Moving to Verify does not delete the checkpoint; it marks the phase."""
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])
        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))
        assert (task_dir / NAMES.checkpoint).exists()


class TestVerifyFindsWork:
    """Verify finding pending items sends the loop back to Execute."""

    def test_back_to_execute(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [
            done_executing(),                      # 1 execute
            write(NAMES.checklist, TWO_PENDING),   # 2 verify: re-opens items
            done_executing(),                      # 3 execute
            verified(),                            # 4 verify
        ])
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert len(worker.calls) == 4
        assert summary.iterations == 4
        assert "Iteration 3 of 20" in worker.prompts[2]
        assert "Verification" in worker.prompts[3]

    def test_checkpoint_deleted_when_pending(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [done_executing(), write(NAMES.checklist, TWO_PENDING)])
        with pytest.raises(IterationBudgetExhausted):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", max_iterations=2))
        assert not (task_dir / NAMES.checkpoint).exists()

    def test_failed_doc_returns_to_execute(self, workspace, task_dir):
        """A failed doc with nothing pending still means another Execute pass."""
        worker = ScriptedWorker(task_dir, [
            done_executing(),
            write(NAMES.failed, "# Failed\nTests still red\n"),
            done_executing(),
            verified(),
        ])
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert summary.iterations == 4
        assert "Iteration 3 of 20" in worker.prompts[2]

    def test_stale_failed_doc_removed_before_verify(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.failed).write_text("old failure")
        (task_dir / NAMES.checklist).write_text(ALL_FIXED)
        (task_dir / NAMES.checkpoint).write_text("summary")

        seen = {}

        def check_failed_doc(d):
            seen["failed_present"] = (d / NAMES.failed).exists()
            (d / NAMES.passed).write_text("ok")

        worker = ScriptedWorker(task_dir, [check_failed_doc])
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert seen["failed_present"] is False
        assert summary.iterations == 1


class TestAutoPass:
    """Verify with nothing pending but no pass doc."""

    def test_pass_doc_generated(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [done_executing(), None])
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="fix typos"))

        assert summary.auto_passed
        assert summary.iterations == 2
        content = (task_dir / NAMES.passed).read_text()
        assert "auto-generated" in content
        assert "fix typos" in content
        assert content.startswith(f"# {NAMES.pass_title}")

    def test_disabled_keeps_verifying(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [done_executing(), None, verified()])
        summary = make_controller(workspace, worker).run(
            TASK_ID, LoopConfig(prompt="p", auto_pass=False),
        )

        assert not summary.auto_passed
        assert summary.iterations == 3
        assert "auto-generated" not in (task_dir / NAMES.passed).read_text()


# =============================================================================
# BUDGET AND FAILURES
# =============================================================================

class TestIterationBudget:
    def test_exhausted_after_exact_budget(self, workspace, task_dir):
        """No checkpoint ever written: exactly max_iterations invocations."""
        worker = ScriptedWorker(task_dir, [write(NAMES.checklist, ONE_PENDING)])
        with pytest.raises(IterationBudgetExhausted) as exc_info:
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", max_iterations=3))

        assert len(worker.calls) == 3
        assert "3 iterations" in str(exc_info.value)
        assert exc_info.value.iterations == 3
        assert "handle empty input" in exc_info.value.remaining

    def test_never_exceeds_budget(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir, [])
        with pytest.raises(IterationBudgetExhausted):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", max_iterations=1))
        assert len(worker.calls) == 1

    def test_unbounded_runs_until_pass(self, workspace, task_dir):
        actions = [None] * 25 + [done_executing(), verified()]
        worker = ScriptedWorker(task_dir, actions)
        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", max_iterations=None))

        assert summary.iterations == 27
        assert "of unlimited" in worker.prompts[0]

    @pytest.mark.parametrize("budget", [0, -1])
    def test_invalid_budget_rejected(self, workspace, task_dir, budget):
        worker = ScriptedWorker(task_dir)
        with pytest.raises(LoopError):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", max_iterations=budget))
        assert worker.calls == []

    def test_empty_prompt_rejected(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir)
        with pytest.raises(LoopError):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="   "))
        assert worker.calls == []


class TestWorkerFailure:
    def test_failure_aborts_and_is_recorded(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.checklist).write_text(ONE_PENDING.replace("Fully implemented: NO\n", "Fully implemented: YES\n"))
        worker = FailingWorker(task_dir)

        with pytest.raises(WorkerInvocationError) as exc_info:
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert len(worker.calls) == 1
        assert f"Task {TASK_ID} failed during iteration 1" in str(exc_info.value)
        assert exc_info.value.exit_code == 2

        info = json.loads((task_dir / "info.json").read_text())
        assert info["attempts"] == 1
        assert "boom" in info["lastError"]["message"]
        assert len(info["errorHistory"]) == 1
        assert info["errorHistory"][0]["stack"].count("\n") == 2

        assert (task_dir / NAMES.checklist).read_text().startswith("Fully implemented: NO")

    def test_failure_recorded_in_execution_json(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / "execution.json").write_text(json.dumps({"task": TASK_ID, "status": "completed"}))
        worker = FailingWorker(task_dir)

        with pytest.raises(WorkerInvocationError):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        record = json.loads((task_dir / "execution.json").read_text())
        assert record["status"] == "in_progress"
        assert record["completion"]["status"] == "pending_validation"
        assert record["pendingFixes"] == ["worker"]
        assert len(record["errorHistory"]) == 1

    def test_success_clears_last_error(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / "info.json").write_text(json.dumps({
            "attempts": 1,
            "lastError": {"message": "old", "timestamp": "t", "attempt": 1},
        }))
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])
        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        info = json.loads((task_dir / "info.json").read_text())
        assert info["lastError"] is None
        assert info["attempts"] == 3
        assert len(info["history"]) == 2


# =============================================================================
# SUPPLEMENTED BEHAVIOR
# =============================================================================

class TestEarlyExitAndReset:
    def test_already_verified_skips_worker(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.passed).write_text("passed")
        (task_dir / NAMES.checklist).write_text(ALL_FIXED)
        worker = ScriptedWorker(task_dir)

        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert worker.calls == []
        assert summary.already_complete
        assert summary.iterations == 0
        assert summary.completed == 1

    def test_fresh_start_reruns(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.passed).write_text("passed")
        (task_dir / NAMES.checkpoint).write_text("summary")
        (task_dir / "RESEARCH.md").write_text("notes")
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", fresh_start=True))

        assert summary.iterations == 2
        assert not summary.already_complete
        # Only the loop's own docs are removed
        assert (task_dir / "RESEARCH.md").exists()

    def test_clear_folder_wipes_task_dir(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.passed).write_text("passed")
        (task_dir / "info.json").write_text(json.dumps({"attempts": 7}))
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", clear_folder=True))

        info = json.loads((task_dir / "info.json").read_text())
        assert info["attempts"] == 2

    def test_missing_template_fails_before_worker(self, workspace, task_dir, tmp_path):
        templates = tmp_path / "templates"
        templates.mkdir()
        (templates / "loop-execute.md").write_text("{{userPrompt}}")
        (templates / "loop-verify.md").write_text("{{userPrompt}}")
        worker = ScriptedWorker(task_dir)

        with pytest.raises(MissingTemplateError):
            make_controller(workspace, worker, templates_dir=templates).run(TASK_ID, LoopConfig(prompt="p"))
        assert worker.calls == []


class TestEscalation:
    def test_forced_research_on_repeated_failure(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / "RESEARCH.md").write_text("stale approach")
        (task_dir / "info.json").write_text(json.dumps({
            "attempts": 3,
            "lastError": {"message": "tests failed", "timestamp": "t", "attempt": 3},
        }))
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert not (task_dir / "RESEARCH.md").exists()
        assert (task_dir / "RESEARCH.old.md").read_text() == "stale approach"
        assert "Re-research required" in worker.prompts[0]
        info = json.loads((task_dir / "info.json").read_text())
        assert info["reResearched"] is True
        assert info["history"][-2]["reResearched"] is True

    def test_no_research_note_without_research_file(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / "info.json").write_text(json.dumps({
            "attempts": 3,
            "lastError": {"message": "tests failed", "timestamp": "t", "attempt": 3},
        }))
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p"))

        assert "Re-research required" not in worker.prompts[0]
        assert not (task_dir / "RESEARCH.old.md").exists()
        info = json.loads((task_dir / "info.json").read_text())
        assert info["history"][-2]["reResearched"] is False

    def test_multi_repo_routes_to_scoped_repository(self, workspace, task_dir, tmp_path):
        task_dir.mkdir(parents=True)
        (task_dir / "BLUEPRINT.md").write_text("@scope backend\n# Add endpoint\n")
        backend_repo = tmp_path / "api"
        backend_repo.mkdir()
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        summary = make_controller(workspace, worker).run(TASK_ID, LoopConfig(
            prompt="p",
            multi_repo=True,
            repositories={"backend": backend_repo, "frontend": tmp_path / "web"},
        ))

        assert summary.scope == "backend"
        assert all(c["cwd"] == backend_repo for c in worker.calls)

    def test_multi_repo_without_blueprint_fails(self, workspace, task_dir):
        worker = ScriptedWorker(task_dir)
        with pytest.raises(ScopeValidationError):
            make_controller(workspace, worker).run(TASK_ID, LoopConfig(prompt="p", multi_repo=True))
        assert worker.calls == []


class TestProgressAnalysis:
    def test_stuck_loop_gets_local_analysis(self, workspace, task_dir):
        task_dir.mkdir(parents=True)
        (task_dir / NAMES.checklist).write_text(ONE_PENDING)
        (task_dir / "info.json").write_text(json.dumps({
            "attempts": 1,
            "lastError": {"message": "AssertionError in test_export", "timestamp": "t", "attempt": 1},
        }))
        llm = StuckLoopLLM()
        worker = ScriptedWorker(task_dir, [None, done_executing(), verified()])

        make_controller(workspace, worker, local_llm=llm).run(TASK_ID, LoopConfig(prompt="p"))

        assert PROGRESS_ANALYSIS_HEADER not in worker.prompts[0]
        assert PROGRESS_ANALYSIS_HEADER in worker.prompts[1]
        assert "same assertion keeps failing" in worker.prompts[1]
        assert len(llm.prompts) == 1

    def test_no_analysis_without_prior_error(self, workspace, task_dir):
        llm = StuckLoopLLM()
        worker = ScriptedWorker(task_dir, [write(NAMES.checklist, ONE_PENDING), None, done_executing(), verified()])

        make_controller(workspace, worker, local_llm=llm).run(TASK_ID, LoopConfig(prompt="p"))

        assert llm.prompts == []
        assert not any(PROGRESS_ANALYSIS_HEADER in p for p in worker.prompts)


class TestCollaborators:
    def test_context_cache_told_on_success(self, workspace, task_dir):
        cache = ContextCache(workspace)
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        make_controller(workspace, worker, context_cache=cache).run(TASK_ID, LoopConfig(prompt="p"))

        completed = cache.completed_tasks()
        assert completed[TASK_ID]["iterations"] == 2
        assert completed[TASK_ID]["autoPassed"] is False

    def test_in_memory_store(self, workspace):
        """The loop only talks to the store, so a dict-backed store works."""
        stores = {}

        def factory(root):
            stores["store"] = InMemoryArtifactStore(root)
            return stores["store"]

        class MemoryWorker(ScriptedWorker):
            def invoke(self, prompt, model=None, cwd=None):
                self.calls.append({"prompt": prompt, "model": model, "cwd": cwd})
                store = stores["store"]
                if len(self.calls) == 1:
                    store.write_text(NAMES.checklist, ALL_FIXED)
                    store.write_text(NAMES.checkpoint, "summary")
                else:
                    store.write_text(NAMES.passed, "ok")

        worker = MemoryWorker(workspace.task_folder(TASK_ID))
        summary = make_controller(workspace, worker, store_factory=factory).run(TASK_ID, LoopConfig(prompt="p"))

        assert summary.iterations == 2
        assert "info.json" in stores["store"].files
        assert not workspace.task_folder(TASK_ID).exists()

    def test_run_execution_loop_helper(self, tmp_path):
        from agentic_task_loop.workspace import WorkspaceContext

        task_dir = WorkspaceContext.from_folder(tmp_path).task_folder(TASK_ID)
        worker = ScriptedWorker(task_dir, [done_executing(), verified()])

        summary = run_execution_loop(tmp_path, worker, TASK_ID, LoopConfig(prompt="p"))

        assert summary.task_id == TASK_ID
        assert "verified after 2 iteration(s)" in summary.describe()
