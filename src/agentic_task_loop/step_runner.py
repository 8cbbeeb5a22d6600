"""Thin runner for loop definitions.

Loads a loop definition, runs the task loop, writes a report.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from agentic_task_loop.artifacts import (
    CRITICAL_REVIEW_ARTIFACTS,
    PROMPT_REFINEMENT_ARTIFACTS,
    ArtifactNames,
    FileArtifactStore,
)
from agentic_task_loop.config import Config, ConfigError, parse_max_iterations
from agentic_task_loop.errors import LoopError, PreconditionError
from agentic_task_loop.execution_io import (
    enforce_phase_gate,
    load_execution,
    save_execution,
    verify_preconditions,
)
from agentic_task_loop.execution_loop import LoopConfig, LoopController, LoopSummary
from agentic_task_loop.model_client import get_local_llm_client
from agentic_task_loop.shared_store import ContextCache
from agentic_task_loop.worker import Worker
from agentic_task_loop.workspace import WorkspaceContext, validate_task_id

ARTIFACT_SETS: Dict[str, ArtifactNames] = {
    "critical_review": CRITICAL_REVIEW_ARTIFACTS,
    "prompt_refinement": PROMPT_REFINEMENT_ARTIFACTS,
}


def load_loop_definition(definition_file: Path) -> dict:
    """
    Load a loop definition from YAML or JSON.

    Required fields:
        - task_id: str
        - prompt: str (what the worker should check and fix)

    Optional fields:
        - max_iterations: int or "unlimited"
        - model: fast | medium | hard
        - artifacts: critical_review (default) | prompt_refinement
        - clear_folder, fresh_start, auto_pass, multi_repo: bool
        - repositories: {scope: path} for multi-repo routing
        - check_preconditions: bool, run execution.json pre-conditions first
    """
    content = definition_file.read_text()

    if definition_file.suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {definition_file}: {e}") from e
    elif definition_file.suffix == ".json":
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported file type: {definition_file.suffix}. Use .yaml, .yml, or .json")

    if not isinstance(data, dict):
        raise ValueError("Loop definition must be a mapping")
    if "task_id" not in data:
        raise ValueError("Loop definition missing required field: task_id")
    if isinstance(data["task_id"], int) and not isinstance(data["task_id"], bool):
        data["task_id"] = str(data["task_id"])
    validate_task_id(data["task_id"])
    if "prompt" not in data:
        raise ValueError("Loop definition missing required field: prompt")
    if not isinstance(data["prompt"], str):
        raise ValueError("Loop definition field prompt must be a string")
    if data.get("artifacts", "critical_review") not in ARTIFACT_SETS:
        raise ValueError(
            f"Unknown artifacts set: {data['artifacts']}. Use one of: {', '.join(ARTIFACT_SETS)}"
        )

    return data


def build_loop_config(definition: dict, defaults: Optional[Config] = None) -> LoopConfig:
    """Construct a LoopConfig from a definition, falling back to env config."""
    defaults = defaults or Config()

    if "max_iterations" in definition:
        raw = definition["max_iterations"]
        max_iterations = parse_max_iterations(None if raw is None else str(raw))
    else:
        max_iterations = defaults.max_iterations

    base = definition.get("base_dir")
    repositories = {
        scope: Path(base, path) if base else Path(path)
        for scope, path in (definition.get("repositories") or {}).items()
    }

    return LoopConfig(
        prompt=definition["prompt"],
        max_iterations=max_iterations,
        clear_folder=bool(definition.get("clear_folder", False)),
        fresh_start=bool(definition.get("fresh_start", False)),
        model=definition.get("model", defaults.model),
        auto_pass=bool(definition.get("auto_pass", defaults.auto_pass)),
        multi_repo=bool(definition.get("multi_repo", defaults.multi_repo)),
        repositories=repositories,
    )


def check_preconditions(workspace: WorkspaceContext, task_id: str) -> None:
    """
    Run the task's execution.json pre-conditions before looping.

    Raises:
        MalformedArtifactError: If execution.json is missing or unparseable.
        PreconditionError: If a pre-condition failed.
    """
    store = FileArtifactStore(workspace.task_folder(task_id))
    record = load_execution(store)
    enforce_phase_gate(record)
    result = verify_preconditions(record, cwd=str(workspace.folder))
    save_execution(store, record)
    if result.blocked:
        raise PreconditionError(f"Pre-condition failed for {task_id}: {result.check}. Evidence: {result.evidence}")


def write_loop_report(
    task_id: str,
    definition_file: Path,
    output_dir: Path,
    start_time: datetime,
    end_time: datetime,
    summary: Optional[LoopSummary] = None,
    error: Optional[Exception] = None,
) -> Path:
    """
    Write a structured loop report to disk.

    Report format: JSON with the outcome and timings.
    Filename: {task_id}_{timestamp}.json
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{task_id}_{timestamp}.json"

    report: Dict[str, Any] = {
        "task_id": task_id,
        "definition_file": str(definition_file),
        "status": "SUCCESS" if error is None else "FAILED",
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }
    if summary is not None:
        report.update({
            "iterations": summary.iterations,
            "completed": summary.completed,
            "pending": summary.pending,
            "auto_passed": summary.auto_passed,
            "already_complete": summary.already_complete,
            "scope": summary.scope,
        })
    if error is not None:
        report["error_type"] = type(error).__name__
        report["error"] = str(error)

    report_path.write_text(json.dumps(report, indent=2))

    return report_path


def run_step(
    definition_file: Path,
    worker: Worker,
    folder: Optional[Path] = None,
    config: Optional[Config] = None,
    output_dir: Optional[Path] = None,
    use_graph: bool = True,
) -> LoopSummary:
    """
    Main entry point: load definition, run the loop, write a report.

    Args:
        definition_file: Path to loop definition (YAML or JSON)
        worker: Worker to drive
        folder: Project folder (default: current directory)
        config: Environment config used for defaults
        output_dir: Directory for reports (default: <folder>/.claudiomiro/reports/)
        use_graph: If True, run through LangGraph for tracing visibility

    Returns:
        LoopSummary of the successful run

    Raises:
        ValueError: If the definition cannot be loaded (no report: no usable task id).
        LoopError: Whatever ended the loop; a FAILED report is written first.
    """
    config = config or Config()
    workspace = WorkspaceContext.from_folder(folder or Path.cwd())
    if output_dir is None:
        output_dir = workspace.state_folder / "reports"

    definition = load_loop_definition(definition_file)
    task_id = definition["task_id"]

    controller = LoopController(
        workspace,
        worker,
        artifacts=ARTIFACT_SETS[definition.get("artifacts", "critical_review")],
        local_llm=get_local_llm_client(config),
        context_cache=ContextCache(workspace),
    )

    start_time = datetime.now()
    try:
        loop_config = build_loop_config(definition, config)
        if definition.get("check_preconditions"):
            check_preconditions(workspace, task_id)
        if use_graph:
            from agentic_task_loop.execution_graph import run_loop_graph
            summary = run_loop_graph(controller, task_id, loop_config)
        else:
            summary = controller.run(task_id, loop_config)
    except (LoopError, ConfigError, ValueError) as e:
        write_loop_report(task_id, definition_file, output_dir, start_time, datetime.now(), error=e)
        raise

    report_path = write_loop_report(
        task_id, definition_file, output_dir, start_time, datetime.now(), summary=summary,
    )

    print("Loop complete.")
    print(f"  Task: {summary.task_id}")
    print(f"  Iterations: {summary.iterations}")
    print(f"  Fixed: {summary.completed}")
    print(f"  Report: {report_path}")

    return summary
