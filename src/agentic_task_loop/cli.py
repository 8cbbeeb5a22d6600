"""CLI entrypoint for the task loop."""

import json
import logging
from pathlib import Path
from typing import Optional

import click

from agentic_task_loop.config import Config, ConfigError, load_config, parse_max_iterations
from agentic_task_loop.constants import LOOP_FIXES_TASK_ID
from agentic_task_loop.errors import LoopError
from agentic_task_loop.workspace import WorkspaceContext


def _build_worker(config: Config, workspace: WorkspaceContext):
    """Worker used by every command that drives the agent."""
    from agentic_task_loop.worker import ClaudeWorker

    return ClaudeWorker(command=config.worker_command, log_path=workspace.log_path)


def _load_config_or_exit() -> Config:
    try:
        return load_config()
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)


folder_option = click.option(
    "--folder",
    type=click.Path(file_okay=False),
    default=".",
    help="Project folder the worker operates on (default: current directory)",
)


@click.group()
@click.version_option(package_name="agentic-task-loop")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """Task loop CLI - drive a coding agent until its own checklist verifies."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("check-config")
def check_config():
    """Check that environment variables parse and show the effective config."""
    config = _load_config_or_exit()
    click.echo("Configuration loaded successfully!")
    click.echo(f"  Worker command:  {config.worker_command}")
    click.echo(f"  Model:           {config.model or '[worker default]'}")
    click.echo(f"  Max iterations:  {config.max_iterations or 'unlimited'}")
    click.echo(f"  Auto pass:       {config.auto_pass}")
    click.echo(f"  Multi repo:      {config.multi_repo}")
    if config.local_llm_enabled:
        click.echo(
            f"  Local LLM:       {config.local_llm_model} "
            f"({config.ollama_host}:{config.ollama_port})"
        )
    else:
        click.echo("  Local LLM:       [disabled]")


@cli.command("loop-fixes")
@click.argument("prompt")
@folder_option
@click.option(
    "--max-iterations",
    default=None,
    help="Iteration budget, or 'unlimited' (default: TASKLOOP_MAX_ITERATIONS or 20)",
)
@click.option(
    "--model",
    type=click.Choice(["fast", "medium", "hard"]),
    default=None,
    help="Worker model tier (default: TASKLOOP_MODEL or the worker's default)",
)
@click.option("--fresh", "fresh_start", is_flag=True, help="Delete checklist, checkpoint and pass docs first")
@click.option("--clear", "clear_folder", is_flag=True, help="Wipe the task directory first")
@click.option("--no-auto-pass", is_flag=True, help="Never synthesize the pass doc")
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
def loop_fixes(
    prompt: str,
    folder: str,
    max_iterations: Optional[str],
    model: Optional[str],
    fresh_start: bool,
    clear_folder: bool,
    no_auto_pass: bool,
    no_trace: bool,
):
    """Loop the agent over PROMPT until every issue is fixed and verified.

    PROMPT: What the agent should check and fix

    Loop state lives in <folder>/.claudiomiro/loop-fixes/.
    """
    from agentic_task_loop.execution_loop import LoopConfig, LoopController
    from agentic_task_loop.model_client import get_local_llm_client
    from agentic_task_loop.shared_store import ContextCache

    config = _load_config_or_exit()
    workspace = WorkspaceContext.from_folder(folder)

    try:
        loop_config = LoopConfig(
            prompt=prompt,
            max_iterations=(
                parse_max_iterations(max_iterations) if max_iterations is not None else config.max_iterations
            ),
            clear_folder=clear_folder,
            fresh_start=fresh_start,
            model=model or config.model,
            auto_pass=config.auto_pass and not no_auto_pass,
        )
        controller = LoopController(
            workspace,
            _build_worker(config, workspace),
            local_llm=get_local_llm_client(config),
            context_cache=ContextCache(workspace),
        )
        if no_trace:
            summary = controller.run(LOOP_FIXES_TASK_ID, loop_config)
        else:
            from agentic_task_loop.execution_graph import run_loop_graph
            summary = run_loop_graph(controller, LOOP_FIXES_TASK_ID, loop_config)
    except (LoopError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(summary.describe())


@cli.command("run-task")
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@folder_option
@click.option(
    "--output-dir",
    type=click.Path(),
    default=None,
    help="Directory for loop reports (default: <folder>/.claudiomiro/reports)",
)
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
def run_task(definition_file: str, folder: str, output_dir: Optional[str], no_trace: bool):
    """Run the loop for a task described in a definition file.

    DEFINITION_FILE: Path to loop definition (YAML or JSON)

    Definition format:

    \b
        task_id: TASK3
        prompt: Fix every failing test in the billing module
        max_iterations: 10      # optional, or "unlimited"
        model: medium           # optional
        check_preconditions: true
    """
    from agentic_task_loop.step_runner import run_step

    config = _load_config_or_exit()
    workspace = WorkspaceContext.from_folder(folder)

    click.echo(f"Running loop definition: {Path(definition_file).resolve()}")
    if not no_trace:
        click.echo("  (LangGraph tracing enabled)")
    click.echo()

    try:
        run_step(
            Path(definition_file).resolve(),
            _build_worker(config, workspace),
            folder=workspace.folder,
            config=config,
            output_dir=Path(output_dir).resolve() if output_dir else None,
            use_graph=not no_trace,
        )
    except (LoopError, ConfigError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.command("validate-execution")
@click.argument("execution_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--no-repair", is_flag=True, help="Validate the raw file as-is (no sanitizing or repair)")
@click.option("--write", is_flag=True, help="Write the repaired record back to the file")
def validate_execution(execution_file: str, no_repair: bool, write: bool):
    """Validate (and optionally repair) an execution.json file.

    Exits 1 when the record does not satisfy the schema.
    """
    from agentic_task_loop.validator import validate_execution_record

    path = Path(execution_file)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        click.echo(f"Error: {path} is not valid JSON: {e}", err=True)
        raise SystemExit(1)

    result = validate_execution_record(data, repair=not no_repair, sanitize=not no_repair)

    for warning in result.warnings:
        click.echo(f"  repaired: {warning}")
    for error in result.errors:
        click.echo(f"  invalid:  {error}", err=True)

    if not result.is_valid:
        click.echo(f"{path}: INVALID ({len(result.errors)} error(s))", err=True)
        raise SystemExit(1)

    if write and result.repaired_data is not None:
        path.write_text(json.dumps(result.repaired_data, indent=2), encoding="utf-8")
        click.echo(f"Wrote repaired record to {path}")

    click.echo(f"{path}: valid")


@cli.command("fix-scope")
@click.argument("task_id")
@folder_option
def fix_scope(task_id: str, folder: str):
    """Detect and write the @scope line of a task's BLUEPRINT.md.

    TASK_ID: Task directory under <folder>/.claudiomiro/
    """
    from agentic_task_loop.artifacts import FileArtifactStore
    from agentic_task_loop.escalation import EscalationPolicy

    config = _load_config_or_exit()
    workspace = WorkspaceContext.from_folder(folder)

    try:
        store = FileArtifactStore(workspace.task_folder(task_id))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    policy = EscalationPolicy(store, worker=_build_worker(config, workspace), cwd=workspace.folder)
    scope = policy.auto_fix_scope(task_id)
    if scope is None:
        click.echo(f"Error: could not determine scope for {task_id}", err=True)
        raise SystemExit(1)

    click.echo(f"{task_id}: @scope {scope}")


@cli.command("status")
@click.argument("task_id", default=LOOP_FIXES_TASK_ID)
@folder_option
@click.option(
    "--reports-dir",
    type=click.Path(),
    default=None,
    help="Directory for loop reports (default: <folder>/.claudiomiro/reports)",
)
def status(task_id: str, folder: str, reports_dir: Optional[str]):
    """Show a summary of a task's loop state.

    TASK_ID: The task identifier (default: loop-fixes)

    Read-only. Displays attempts, checklist progress and the verdict.
    """
    from agentic_task_loop.observe import print_summary

    try:
        print_summary(
            Path(folder),
            task_id,
            reports_dir=Path(reports_dir) if reports_dir else None,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.group()
def insight():
    """Project insights shared across tasks."""
    pass


@insight.command("add")
@click.argument("category", type=click.Choice(["patterns", "antiPatterns", "projectSpecific"]))
@click.argument("text")
@folder_option
def insight_add(category: str, text: str, folder: str):
    """Record a lesson learned under CATEGORY."""
    from agentic_task_loop.shared_store import InsightStore

    store = InsightStore(WorkspaceContext.from_folder(folder))
    insight_id = store.add_insight(category, {"insight": text})
    click.echo(f"Stored insight {insight_id} in {category}")


@insight.command("list")
@folder_option
def insight_list(folder: str):
    """List curated insights."""
    from agentic_task_loop.shared_store import InsightStore

    data = InsightStore(WorkspaceContext.from_folder(folder)).load_insights()
    total = 0
    for category, items in data["curatedInsights"].items():
        if not items:
            continue
        click.echo(f"{category}:")
        for item in items:
            total += 1
            seen = item.get("occurrences", 1)
            click.echo(f"  [{item.get('id')}] {item.get('insight', '')} (x{seen})")
    if total == 0:
        click.echo("No insights recorded yet.")


if __name__ == "__main__":
    cli()
