"""Minimal observation surface for task loops.

Read-only. Never invokes the worker, never repairs or rewrites artifacts.
"""

import json
from pathlib import Path
from typing import Optional

from agentic_task_loop.artifacts import (
    CRITICAL_REVIEW_ARTIFACTS,
    ArtifactNames,
    FileArtifactStore,
    parse_fully_implemented,
)
from agentic_task_loop.constants import INFO_FILE
from agentic_task_loop.execution_io import is_completed_from_execution
from agentic_task_loop.execution_state import TaskInfo
from agentic_task_loop.oracle import CompletionOracle
from agentic_task_loop.workspace import WorkspaceContext


def find_reports(task_id: str, reports_dir: Path) -> list[dict]:
    """Find all loop reports for a task_id."""
    reports = []

    if not reports_dir.exists():
        return reports

    for f in reports_dir.glob(f"{task_id}_*.json"):
        try:
            data = json.loads(f.read_text())
            data["_report_file"] = str(f)
            reports.append(data)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError):
            pass

    # Sort by start_time descending (most recent first)
    reports.sort(key=lambda r: r.get("start_time", ""), reverse=True)
    return reports


def read_task_info(store: FileArtifactStore) -> Optional[TaskInfo]:
    """info.json as a TaskInfo, or None when absent or unreadable."""
    content = store.read_optional(INFO_FILE)
    if content is None:
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return None
    return TaskInfo.from_dict(data) if isinstance(data, dict) else None


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def task_verdict(oracle: CompletionOracle, info: Optional[TaskInfo]) -> str:
    """One-line verdict derived from the artifact signals."""
    if oracle.is_verified():
        return "✓ COMPLETE - Verification passed"
    if info is not None and info.last_error:
        return "✗ FAILED - Last worker run errored"
    if oracle.has_failed():
        return "✗ REJECTED - Verification failed, fixes pending"
    if oracle.is_in_verify_phase():
        return "◐ VERIFYING - Awaiting independent re-check"
    if oracle.checklist_text() is None and info is None:
        return "? UNKNOWN - Loop never ran"
    return "◐ IN PROGRESS - Fixing checklist items"


def print_summary(
    folder: Path,
    task_id: str,
    names: ArtifactNames = CRITICAL_REVIEW_ARTIFACTS,
    reports_dir: Optional[Path] = None,
) -> None:
    """
    Print a human-readable summary of a task directory.

    Goal: understand where a loop stands in under 30 seconds.
    """
    workspace = WorkspaceContext.from_folder(folder)
    task_dir = workspace.task_folder(task_id)
    if reports_dir is None:
        reports_dir = workspace.state_folder / "reports"

    store = FileArtifactStore(task_dir)
    oracle = CompletionOracle(store, names)
    info = read_task_info(store)
    reports = find_reports(task_id, reports_dir)

    # Header
    print("=" * 60)
    print(f"TASK SUMMARY: {task_id}")
    print("=" * 60)
    print()

    if not task_dir.is_dir() and not reports:
        print("No loop state found.")
        print()
        print("Searched:")
        print(f"  Task dir: {task_dir}")
        print(f"  Reports:  {reports_dir}")
        return

    # Attempts
    print("ATTEMPTS")
    print("-" * 40)
    if info is not None:
        print(f"  Attempts:    {info.attempts}")
        if info.first_run:
            print(f"  First run:   {info.first_run[:19]}")
        if info.last_run:
            print(f"  Last run:    {info.last_run[:19]}")
        if info.re_researched:
            print("  Research:    forced re-research")
        if info.last_error:
            message = str(info.last_error.get("message", "")).strip()
            print("  Last error:")
            for line in message.split("\n")[:3]:
                print(f"    {line[:60]}")
    else:
        print(f"  No {INFO_FILE} yet.")
    print()

    # Checklist
    print("CHECKLIST")
    print("-" * 40)
    checklist = oracle.checklist_text()
    if checklist is None:
        print(f"  {names.checklist} not written yet.")
    else:
        print(f"  Fixed:       {oracle.count_completed()}")
        print(f"  Pending:     {oracle.count_pending()}")
        fully = parse_fully_implemented(checklist)
        if fully is not None:
            print(f"  Fully implemented: {'YES' if fully else 'NO'}")
    print(f"  Phase:       {oracle.current_phase().value}")
    print()

    # execution.json, when the task has one
    completion = is_completed_from_execution(store)
    if completion["reason"] != "execution.json not found":
        print("EXECUTION RECORD")
        print("-" * 40)
        print(f"  Completed:   {'yes' if completion['completed'] else 'no'}")
        print(f"  Reason:      {completion['reason']}")
        print()

    # History
    if reports:
        print("HISTORY")
        print("-" * 40)
        print(f"  Runs:        {len(reports)}")
        for r in reports[:5]:
            status_icon = "✓" if r.get("status") == "SUCCESS" else "✗"
            duration = format_duration(r.get("duration_seconds", 0.0))
            print(f"    {status_icon} {r.get('start_time', '')[:16]} - {r.get('status')} ({duration})")
        if len(reports) > 5:
            print(f"    ... and {len(reports) - 5} more")
        print()

    # Final verdict
    print("VERDICT")
    print("-" * 40)
    print(f"  {task_verdict(oracle, info)}")
    print()
