"""Tests for forced re-research and scope classification."""

import pytest

from agentic_task_loop.artifacts import InMemoryArtifactStore
from agentic_task_loop.errors import ScopeValidationError, WorkerInvocationError
from agentic_task_loop.escalation import (
    EscalationPolicy,
    HeuristicScopeClassifier,
    ScopeClassifier,
    ScopeClassifierChain,
    WorkerScopeClassifier,
    add_scope_to_blueprint,
    insert_scope_annotation,
    parse_task_scope,
    score_scope_indicators,
    validate_scope,
)
from agentic_task_loop.execution_state import TaskInfo
from agentic_task_loop.worker import Worker, WorkerResult

# Backend vocabulary only; avoids every frontend indicator substring
BACKEND_ONLY = """# Add invoice export

Create a new REST API endpoint backed by the database.
Add a migration for the invoices table and a controller in /api/invoices.
"""

FRONTEND_ONLY = """# Invoice screen

Build a React page component with a form and a submit button.
Style it with tailwind.
"""

MIXED = """# Invoice export

Add a database migration and a React component that calls it.
"""

INTEGRATION_HEAVY = """# Contract checks

Write an e2e test and an integration test for the api contract.
"""

NEUTRAL = "# Update the README\n\nFix typos in the docs.\n"


class RecordingWorker(Worker):
    """Answers scope-detection prompts by writing a fixed answer."""

    def __init__(self, store, answer=None, error=None):
        self.store = store
        self.answer = answer
        self.error = error
        self.calls = []

    def invoke(self, prompt, model=None, cwd=None):
        self.calls.append({"prompt": prompt, "model": model, "cwd": cwd})
        if self.error is not None:
            raise self.error
        if self.answer is not None:
            self.store.write_text(".scope-detection-output.txt", self.answer)
        return WorkerResult(exit_code=0)


class TestForceResearch:
    def test_threshold(self):
        error = {"message": "tests failed", "timestamp": "t", "attempt": 3}
        assert EscalationPolicy.should_force_research(TaskInfo(attempts=3, last_error=error))
        assert EscalationPolicy.should_force_research(TaskInfo(attempts=5, last_error=error))
        assert not EscalationPolicy.should_force_research(TaskInfo(attempts=2, last_error=error))
        assert not EscalationPolicy.should_force_research(TaskInfo(attempts=3, last_error=None))

    def test_research_renamed_not_deleted(self):
        store = InMemoryArtifactStore(files={"RESEARCH.md": "old notes"})
        policy = EscalationPolicy(store)
        info = TaskInfo(attempts=3, last_error={"message": "boom"})

        assert policy.apply(info) is True
        assert store.files == {"RESEARCH.old.md": "old notes"}

    def test_no_research_file(self):
        store = InMemoryArtifactStore()
        policy = EscalationPolicy(store)
        assert policy.force_research() is False
        assert policy.apply(TaskInfo(attempts=3, last_error={"message": "boom"})) is False

    def test_no_escalation_below_threshold(self):
        store = InMemoryArtifactStore(files={"RESEARCH.md": "notes"})
        assert EscalationPolicy(store).apply(TaskInfo(attempts=1, last_error={"message": "x"})) is False
        assert store.exists("RESEARCH.md")


class TestScopeParsing:
    def test_parse(self):
        assert parse_task_scope("@dependencies [TASK1]\n@scope Backend\n# Title") == "backend"
        assert parse_task_scope("# Title\n@scope unknown\n") is None
        assert parse_task_scope(None) is None

    def test_validate(self):
        assert validate_scope(None, multi_repo=False)
        assert validate_scope("frontend", multi_repo=True)
        with pytest.raises(ScopeValidationError):
            validate_scope(None, multi_repo=True)

    def test_insert_after_dependencies(self):
        content = "@dependencies [TASK1, TASK2]\n# Title\n"
        assert insert_scope_annotation(content, "backend") == "@dependencies [TASK1, TASK2]\n@scope backend\n# Title\n"

    def test_insert_after_leading_comment(self):
        content = "<!-- generated -->\n# Title\n"
        assert insert_scope_annotation(content, "frontend") == "<!-- generated -->\n@scope frontend\n# Title\n"

    def test_insert_at_top(self):
        assert insert_scope_annotation("# Title\n", "integration") == "@scope integration\n# Title\n"

    def test_existing_scope_unchanged(self):
        content = "@scope backend\n# Title\n"
        assert insert_scope_annotation(content, "frontend") == content

    def test_add_scope_to_blueprint(self):
        store = InMemoryArtifactStore()
        assert add_scope_to_blueprint(store, "backend") is False
        store.write_text("BLUEPRINT.md", "# Title\n")
        assert add_scope_to_blueprint(store, "backend") is True
        assert store.read_text("BLUEPRINT.md") == "@scope backend\n# Title\n"


class TestHeuristicClassifier:
    def test_backend_only(self):
        scores = score_scope_indicators(BACKEND_ONLY)
        assert scores["frontend"] == 0
        assert scores["backend"] >= 3
        assert HeuristicScopeClassifier().classify(BACKEND_ONLY, "TASK1") == "backend"

    def test_frontend_only(self):
        assert score_scope_indicators(FRONTEND_ONLY)["backend"] == 0
        assert HeuristicScopeClassifier().classify(FRONTEND_ONLY, "TASK1") == "frontend"

    def test_mixed_is_integration(self):
        assert HeuristicScopeClassifier().classify(MIXED, "TASK1") == "integration"

    def test_integration_keywords_win(self):
        assert HeuristicScopeClassifier().classify(INTEGRATION_HEAVY, "TASK1") == "integration"

    def test_inconclusive(self):
        assert HeuristicScopeClassifier().classify(NEUTRAL, "TASK1") is None


class TestWorkerClassifier:
    def test_reads_and_removes_answer(self):
        store = InMemoryArtifactStore()
        worker = RecordingWorker(store, answer="  Frontend\n")
        scope = WorkerScopeClassifier(worker, store).classify(NEUTRAL, "TASK4")

        assert scope == "frontend"
        assert worker.calls[0]["model"] == "fast"
        assert "TASK4" in worker.calls[0]["prompt"]
        assert str(store.path(".scope-detection-output.txt")) in worker.calls[0]["prompt"]
        assert not store.exists(".scope-detection-output.txt")

    @pytest.mark.parametrize("answer", [None, "mobile"])
    def test_missing_or_invalid_answer_is_integration(self, answer):
        store = InMemoryArtifactStore()
        assert WorkerScopeClassifier(RecordingWorker(store, answer=answer), store).classify(NEUTRAL, "T") == "integration"

    def test_worker_failure_is_integration(self):
        store = InMemoryArtifactStore()
        worker = RecordingWorker(store, error=WorkerInvocationError("exit 1"))
        assert WorkerScopeClassifier(worker, store).classify(NEUTRAL, "T") == "integration"


class TestScopeResolution:
    def test_heuristic_short_circuits_worker(self):
        """A conclusive heuristic never reaches the worker fallback."""
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": BACKEND_ONLY})
        worker = RecordingWorker(store, answer="frontend")
        policy = EscalationPolicy(store, worker=worker)

        assert policy.auto_fix_scope("TASK1") == "backend"
        assert worker.calls == []
        assert store.read_text("BLUEPRINT.md").startswith("@scope backend\n")

    def test_falls_back_to_worker(self):
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": NEUTRAL})
        worker = RecordingWorker(store, answer="backend")
        policy = EscalationPolicy(store, worker=worker)

        assert policy.resolve_scope("TASK1", multi_repo=True) == "backend"
        assert len(worker.calls) == 1
        assert parse_task_scope(store.read_text("BLUEPRINT.md")) == "backend"

    def test_existing_scope_is_used(self):
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": "@scope frontend\n" + BACKEND_ONLY})
        worker = RecordingWorker(store, answer="backend")
        assert EscalationPolicy(store, worker=worker).resolve_scope("TASK1", multi_repo=True) == "frontend"
        assert worker.calls == []

    def test_single_repo_does_not_classify(self):
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": NEUTRAL})
        worker = RecordingWorker(store, answer="backend")
        assert EscalationPolicy(store, worker=worker).resolve_scope("TASK1", multi_repo=False) is None
        assert worker.calls == []

    def test_inconclusive_without_worker_fails_in_multi_repo(self):
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": NEUTRAL})
        with pytest.raises(ScopeValidationError):
            EscalationPolicy(store).resolve_scope("TASK1", multi_repo=True)

    def test_custom_chain(self):
        class Always(ScopeClassifier):
            def __init__(self, scope):
                self.scope = scope
                self.calls = 0

            def classify(self, blueprint, task_id):
                self.calls += 1
                return self.scope

        first, second = Always(None), Always("frontend")
        store = InMemoryArtifactStore(files={"BLUEPRINT.md": NEUTRAL})
        policy = EscalationPolicy(store, classifier=ScopeClassifierChain([first, second]))

        assert policy.auto_fix_scope("TASK1") == "frontend"
        assert (first.calls, second.calls) == (1, 1)
