"""Loading, saving and checking execution.json.

Loading and saving are lenient: schema problems are repaired and logged.
Only critical problems (missing file, unparseable JSON, permission errors)
raise MalformedArtifactError.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agentic_task_loop.artifacts import ArtifactStore
from agentic_task_loop.constants import (
    ERROR_STACK_LINES,
    EXECUTION_FILE,
    PRECONDITION_TIMEOUT_S,
)
from agentic_task_loop.errors import MalformedArtifactError, PhaseGateError
from agentic_task_loop.validator import validate_execution_record

logger = logging.getLogger(__name__)


# --- Error and command classification ---

DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"sudo\s+", re.IGNORECASE),
    re.compile(r">\s*/dev/", re.IGNORECASE),
    re.compile(r"\|\s*sh\b", re.IGNORECASE),
    re.compile(r"\|\s*bash\b", re.IGNORECASE),
    re.compile(r"eval\s+", re.IGNORECASE),
    re.compile(r"curl.*\|\s*sh", re.IGNORECASE),
]

CRITICAL_ERROR_PATTERNS = [
    re.compile(r"\.json not found", re.IGNORECASE),
    re.compile(r"file not found", re.IGNORECASE),
    re.compile(r"failed to parse", re.IGNORECASE),
    re.compile(r"syntax error", re.IGNORECASE),
    re.compile(r"unexpected token", re.IGNORECASE),
    re.compile(r"json parse error", re.IGNORECASE),
    re.compile(r"cannot read", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"enoent", re.IGNORECASE),
]


def is_dangerous_command(command: Any) -> bool:
    """True if a pre-condition command matches a known destructive pattern."""
    if not command or not isinstance(command, str):
        return False
    return any(p.search(command) for p in DANGEROUS_PATTERNS)


def is_critical_error(message: Optional[str]) -> bool:
    """True if an error message means the record cannot be trusted at all."""
    if not message:
        return False
    return any(p.search(message) for p in CRITICAL_ERROR_PATTERNS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Load / save ---

def load_execution(store: ArtifactStore) -> Dict[str, Any]:
    """
    Load execution.json, repairing whatever the worker got wrong.

    Returns:
        The repaired record.

    Raises:
        MalformedArtifactError: If the file is missing, unreadable or not JSON.
    """
    path = store.path(EXECUTION_FILE)
    if not store.exists(EXECUTION_FILE):
        raise MalformedArtifactError(f"execution.json not found at {path}")
    try:
        raw = store.read_json(EXECUTION_FILE)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedArtifactError(f"Failed to parse execution.json: {e}")
    except OSError as e:
        raise MalformedArtifactError(f"Cannot read execution.json at {path}: {e}")

    result = validate_execution_record(raw)
    if result.warnings:
        logger.warning(f"execution.json auto-repaired: {'; '.join(result.warnings)}")
    return result.repaired_data


def save_execution(store: ArtifactStore, record: Any) -> Dict[str, Any]:
    """
    Repair and write execution.json.

    Returns:
        The record as written.
    """
    result = validate_execution_record(record)
    if result.warnings:
        logger.warning(f"Saving execution.json with auto-fixed issues: {'; '.join(result.warnings)}")
    store.write_json(EXECUTION_FILE, result.repaired_data)
    return result.repaired_data


def record_error(
    store: ArtifactStore,
    message: str,
    stack: Optional[str] = None,
    failed_validation: str = "unknown",
) -> bool:
    """
    Append an error to execution.json without resetting progress.

    Status goes back to in_progress (never pending) and the failed check is
    queued in `pendingFixes` so the next attempt can target it.

    Returns:
        True if the error was recorded. An absent or unparseable file is left
        untouched.
    """
    if not store.exists(EXECUTION_FILE):
        return False
    try:
        record = store.read_json(EXECUTION_FILE)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Could not record error in execution.json: {e}")
        return False
    if not isinstance(record, dict):
        logger.warning("Could not record error: execution.json is not an object")
        return False

    history = record.get("errorHistory")
    if not isinstance(history, list):
        history = []
    history.append({
        "timestamp": _now_iso(),
        "message": message,
        "failedValidation": failed_validation,
        "stack": "\n".join(stack.splitlines()[:ERROR_STACK_LINES]) if stack else None,
    })
    record["errorHistory"] = history

    pending_fixes = record.get("pendingFixes")
    if not isinstance(pending_fixes, list):
        pending_fixes = []
    if failed_validation not in pending_fixes:
        pending_fixes.append(failed_validation)
    record["pendingFixes"] = pending_fixes

    record["status"] = "in_progress"
    completion = record.get("completion") if isinstance(record.get("completion"), dict) else {}
    completion["status"] = "pending_validation"
    completion["lastError"] = message
    completion["failedValidation"] = failed_validation
    record["completion"] = completion

    store.write_json(EXECUTION_FILE, record)
    logger.info(f"Recorded error for {failed_validation}; progress preserved for retry")
    return True


def is_completed_from_execution(store: ArtifactStore) -> Dict[str, Any]:
    """
    Judge completion from execution.json alone.

    Returns:
        {"completed": bool, "confidence": float, "reason": str}
    """
    if not store.exists(EXECUTION_FILE):
        return {"completed": False, "confidence": 1.0, "reason": "execution.json not found"}
    try:
        record = store.read_json(EXECUTION_FILE)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        return {"completed": False, "confidence": 0.5, "reason": f"Failed to parse execution.json: {e}"}
    if not isinstance(record, dict):
        return {"completed": False, "confidence": 0.5, "reason": "execution.json is not an object"}

    completion = record.get("completion") if isinstance(record.get("completion"), dict) else {}
    if completion.get("status") == "completed":
        return {"completed": True, "confidence": 1.0, "reason": "completion.status is completed"}
    if record.get("status") == "completed":
        return {"completed": True, "confidence": 0.9, "reason": "status is completed"}
    if record.get("status") == "blocked":
        return {"completed": False, "confidence": 1.0, "reason": "status is blocked"}
    phases = [p for p in record.get("phases") or [] if isinstance(p, dict)]
    if phases and all(p.get("status") == "completed" for p in phases):
        return {"completed": True, "confidence": 0.85, "reason": "all phases completed"}
    return {"completed": False, "confidence": 0.8, "reason": "task still in progress"}


# --- Pre-conditions ---

@dataclass
class PreconditionResult:
    passed: bool
    blocked: bool
    check: Optional[str] = None
    evidence: Optional[str] = None


def verify_preconditions(
    record: Dict[str, Any],
    cwd: Optional[str] = None,
    timeout: float = PRECONDITION_TIMEOUT_S,
) -> PreconditionResult:
    """
    Run every phase's pre-condition commands in order.

    Each check passes when its `expected` text appears in stdout. The first
    failure (or a dangerous command) marks the record blocked and stops.
    Mutates `passed`/`evidence` on each checked pre-condition.
    """
    for phase in record.get("phases") or []:
        for pc in phase.get("preConditions") or []:
            check = pc.get("check", "")
            command = pc.get("command", "")
            logger.info(f"Checking: {check} with command: {command}")

            if is_dangerous_command(command):
                pc["passed"] = False
                pc["evidence"] = "Command rejected: contains dangerous patterns"
            else:
                try:
                    completed = subprocess.run(
                        command,
                        shell=True,
                        capture_output=True,
                        text=True,
                        timeout=timeout,
                        cwd=cwd,
                    )
                    if completed.returncode != 0:
                        pc["evidence"] = (completed.stderr or "").strip() or f"Command failed with exit code {completed.returncode}"
                        pc["passed"] = False
                    else:
                        pc["evidence"] = completed.stdout.strip()
                        pc["passed"] = pc.get("expected", "") in completed.stdout
                except subprocess.TimeoutExpired:
                    pc["evidence"] = f"Command timed out after {int(timeout * 1000)}ms"
                    pc["passed"] = False
                except OSError as e:
                    pc["evidence"] = str(e)
                    pc["passed"] = False

            if not pc["passed"]:
                logger.warning(f"Pre-condition FAILED: {check}. Evidence: {pc['evidence']}")
                record["status"] = "blocked"
                return PreconditionResult(passed=False, blocked=True, check=check, evidence=pc["evidence"])

    logger.info("All pre-conditions passed")
    return PreconditionResult(passed=True, blocked=False)


# --- Phase progress ---

def enforce_phase_gate(record: Dict[str, Any], strict: bool = False) -> bool:
    """
    Phase N may only be current once phase N-1 is completed.

    On violation the current phase is reset to the first incomplete phase.

    Returns:
        True if the gate passed, False if currentPhase was reset.

    Raises:
        PhaseGateError: On violation when `strict` is set (after the reset).
    """
    current = record.get("currentPhase") or {}
    current_id = current.get("id")
    if not isinstance(current_id, int) or current_id <= 1:
        return True

    phases = record.get("phases") or []
    previous = next((p for p in phases if p.get("id") == current_id - 1), None)
    if previous is None:
        return True
    if previous.get("status") == "completed":
        return True

    logger.warning(f"Phase gate: Phase {current_id - 1} not completed, resetting currentPhase")
    incomplete = sorted(
        (p for p in phases if p.get("status") != "completed"),
        key=lambda p: p.get("id", 0),
    )
    target = incomplete[0] if incomplete else previous
    record["currentPhase"] = {
        "id": target["id"],
        "name": target.get("name") or f"Phase {target['id']}",
    }
    if strict:
        raise PhaseGateError(
            f"Phase {current_id} started before phase {current_id - 1} completed; "
            f"reset to phase {target['id']}"
        )
    return False


def update_phase_progress(record: Dict[str, Any], phase_id: int, status: str) -> None:
    phase = next((p for p in record.get("phases") or [] if p.get("id") == phase_id), None)
    if phase is not None:
        phase["status"] = status
    current = record.get("currentPhase")
    if isinstance(current, dict) and current.get("id", 0) < phase_id:
        current["id"] = phase_id
        current["name"] = (phase or {}).get("name") or f"Phase {phase_id}"


def track_artifacts(
    record: Dict[str, Any],
    created: Optional[List[str]] = None,
    modified: Optional[List[str]] = None,
) -> None:
    artifacts = record.setdefault("artifacts", [])
    for path in created or []:
        artifacts.append({"type": "created", "path": path, "verified": False})
    for path in modified or []:
        artifacts.append({"type": "modified", "path": path, "verified": False})


def track_uncertainty(record: Dict[str, Any], topic: str, assumption: str, confidence: str) -> str:
    uncertainties = record.setdefault("uncertainties", [])
    uncertainty_id = f"U{len(uncertainties) + 1}"
    uncertainties.append({
        "id": uncertainty_id,
        "topic": topic,
        "assumption": assumption,
        "confidence": confidence,
        "resolution": None,
        "resolvedConfidence": None,
    })
    logger.info(f"Tracked uncertainty: {uncertainty_id} - {topic} ({confidence} confidence)")
    return uncertainty_id


# --- Completion ---

def completion_blockers(record: Dict[str, Any]) -> List[str]:
    """Everything standing between the record and a valid completion."""
    blockers = []
    for phase in record.get("phases") or []:
        label = f"Phase {phase.get('id')} ({phase.get('name', '')})"
        if phase.get("status") != "completed":
            blockers.append(f"{label} not completed (status: {phase.get('status')})")
        for item in phase.get("items") or []:
            if item.get("completed") is not True:
                blockers.append(f"{label} item not completed: {item.get('description', '')}")
        for pc in phase.get("preConditions") or []:
            if pc.get("passed") is not True:
                blockers.append(f"{label} pre-condition not passed: {pc.get('check', '')}")

    for artifact in record.get("artifacts") or []:
        if artifact.get("verified") is not True:
            blockers.append(f"artifact not verified: {artifact.get('path', '')}")

    for criterion in record.get("successCriteria") or []:
        passed = criterion.get("passed")
        # An unrun MANUAL criterion stays null forever and does not block
        if passed is None and criterion.get("testType") == "MANUAL":
            continue
        if passed is not True:
            blockers.append(f"success criterion not passed: {criterion.get('criterion', '')}")

    cleanup = (record.get("beyondTheBasics") or {}).get("cleanup")
    if isinstance(cleanup, dict):
        if any(cleanup.get(flag) is False for flag in ("debugLogsRemoved", "formattingConsistent", "deadCodeRemoved")):
            blockers.append("cleanup not complete")
    return blockers


def validate_completion(record: Dict[str, Any]) -> bool:
    """True when every phase, item, pre-condition, artifact and criterion is done."""
    blockers = completion_blockers(record)
    if blockers:
        logger.info(f"Completion validation: failed - {blockers[0]}")
        return False
    logger.info("Completion validation: passed")
    return True
