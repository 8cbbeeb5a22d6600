"""Execution record validation and repair.

The worker writes execution.json by hand on every run, so the record is
routinely missing fields, uses the wrong case for enums or stores strings
where objects belong. `repair_execution_record` turns any input into the
nearest schema-valid record without inventing success: a `passed` or
`completed` flag is only ever true if the worker wrote a literal `true`.

Each entity has its own `*_from_untyped(raw, ...) -> (dict, warnings)`
constructor; the record repair composes them. Repair is idempotent.

Schema checks use jsonschema's Draft7Validator against
schemas/execution.schema.json.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schemas" / "execution.schema.json"

SCHEMA_ID = "execution-schema-v1"
SCHEMA_VERSION = "1.0"

RECORD_STATUSES = ["pending", "in_progress", "completed", "blocked"]
COMPLETION_STATUSES = ["pending_validation", "completed", "blocked", "failed"]
CONFIDENCE_LEVELS = ["LOW", "MEDIUM", "HIGH"]
TEST_TYPES = ["AUTO", "MANUAL", "BOTH"]
ARTIFACT_TYPES = ["created", "modified"]
CLEANUP_FLAGS = ["debugLogsRemoved", "formattingConsistent", "deadCodeRemoved"]

# Harmless placeholder for a pre-condition without a command
NOOP_COMMAND = "true"

Warnings = List[str]


@dataclass
class ValidationResult:
    """Result of validating (and optionally repairing) an execution record."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    repaired_data: Optional[Dict[str, Any]] = None
    sanitized_data: Optional[Dict[str, Any]] = None

    @property
    def data(self) -> Any:
        """Best available version of the record."""
        if self.repaired_data is not None:
            return self.repaired_data
        return self.sanitized_data


# --- Field coercion helpers ---

def _text(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return _text(value)


def _strict_true(value: Any) -> bool:
    # Only a literal boolean true counts; "yes", 1, "true" do not
    return value is True


def _optional_bool(value: Any) -> Optional[bool]:
    if value is True or value is False:
        return value
    return None


def _int_from_text(value: str) -> Optional[int]:
    """Digits-only text as an int; None for anything int() would reject."""
    text = value.strip()
    if not text.isdecimal():
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int) and value >= 1:
        return value
    if isinstance(value, str):
        parsed = _int_from_text(value)
        if parsed is not None and parsed >= 1:
            return parsed
    return default


def _non_negative_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int) and value >= 0:
        return value
    if isinstance(value, float) and value >= 0 and value.is_integer():
        return int(value)
    if isinstance(value, str):
        parsed = _int_from_text(value)
        if parsed is not None:
            return parsed
    return default


def _normalize_token(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def _enum(value: Any, allowed: List[str], default: Optional[str], upper: bool = False) -> Optional[str]:
    if not isinstance(value, str):
        return default
    candidate = value.strip().upper() if upper else _normalize_token(value)
    return candidate if candidate in allowed else default


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [_text(v) for v in value if v is not None]
    return [_text(value)]


def _as_list(value: Any, where: str, warnings: Warnings) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    warnings.append(f"{where}: expected an array, wrapped single value")
    return [value]


def _changed(where: str, before: Any, after: Any, warnings: Warnings) -> None:
    if before != after:
        warnings.append(f"{where}: {before!r} -> {after!r}")


# --- Per-entity constructors ---

def precondition_from_untyped(raw: Any, where: str = "preCondition") -> Tuple[Dict[str, Any], Warnings]:
    warnings: Warnings = []
    if not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {"check": _text(raw)}
    result = dict(raw)
    result["check"] = _text(raw.get("check"))
    command = raw.get("command")
    result["command"] = _text(command) if command not in (None, "") else NOOP_COMMAND
    result["expected"] = _text(raw.get("expected"))
    result["passed"] = _strict_true(raw.get("passed"))
    result["evidence"] = _optional_text(raw.get("evidence"))
    for key in ("check", "command", "expected", "passed"):
        _changed(f"{where}.{key}", raw.get(key), result[key], warnings)
    return result, warnings


def item_from_untyped(raw: Any, where: str = "item") -> Tuple[Dict[str, Any], Warnings]:
    warnings: Warnings = []
    if isinstance(raw, str):
        warnings.append(f"{where}: converted string to item")
        return {"description": raw, "completed": False}, warnings
    if not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {"description": _text(raw)}
    result = dict(raw)
    result["description"] = _text(raw.get("description"))
    result["completed"] = _strict_true(raw.get("completed"))
    _changed(f"{where}.completed", raw.get("completed"), result["completed"], warnings)
    return result, warnings


def phase_from_untyped(raw: Any, index: int) -> Tuple[Dict[str, Any], Warnings]:
    where = f"phases[{index}]"
    warnings: Warnings = []
    if isinstance(raw, str):
        warnings.append(f"{where}: converted string to phase")
        raw = {"name": raw}
    elif not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {}

    result = dict(raw)
    result["id"] = _positive_int(raw.get("id"), index + 1)
    result["name"] = _text(raw.get("name"), f"Phase {result['id']}")
    result["status"] = _enum(raw.get("status"), RECORD_STATUSES, "pending")
    _changed(f"{where}.status", raw.get("status"), result["status"], warnings)

    preconditions = []
    for j, entry in enumerate(_as_list(raw.get("preConditions"), f"{where}.preConditions", warnings)):
        fixed, sub = precondition_from_untyped(entry, f"{where}.preConditions[{j}]")
        preconditions.append(fixed)
        warnings.extend(sub)
    result["preConditions"] = preconditions

    items = []
    for k, entry in enumerate(_as_list(raw.get("items"), f"{where}.items", warnings)):
        fixed, sub = item_from_untyped(entry, f"{where}.items[{k}]")
        items.append(fixed)
        warnings.extend(sub)
    result["items"] = items
    return result, warnings


def uncertainty_from_untyped(raw: Any, index: int) -> Tuple[Dict[str, Any], Warnings]:
    where = f"uncertainties[{index}]"
    warnings: Warnings = []
    if isinstance(raw, str):
        warnings.append(f"{where}: converted string to uncertainty")
        raw = {"topic": raw}
    elif not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {}
    result = dict(raw)
    result["id"] = _text(raw.get("id"), f"U{index + 1}") or f"U{index + 1}"
    result["topic"] = _text(raw.get("topic"))
    result["assumption"] = _text(raw.get("assumption"))
    result["confidence"] = _enum(raw.get("confidence"), CONFIDENCE_LEVELS, "LOW", upper=True)
    result["resolution"] = _optional_text(raw.get("resolution"))
    result["resolvedConfidence"] = _enum(raw.get("resolvedConfidence"), CONFIDENCE_LEVELS, None, upper=True)
    _changed(f"{where}.confidence", raw.get("confidence"), result["confidence"], warnings)
    return result, warnings


def artifact_from_untyped(raw: Any, index: int) -> Tuple[Dict[str, Any], Warnings]:
    where = f"artifacts[{index}]"
    warnings: Warnings = []
    if isinstance(raw, str):
        warnings.append(f"{where}: converted path string to artifact")
        raw = {"path": raw}
    elif not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {}
    result = dict(raw)
    result["type"] = _enum(raw.get("type"), ARTIFACT_TYPES, "modified")
    result["path"] = _text(raw.get("path"))
    result["verified"] = _strict_true(raw.get("verified"))
    _changed(f"{where}.type", raw.get("type"), result["type"], warnings)
    return result, warnings


def _infer_test_type(raw: Dict[str, Any]) -> str:
    has_command = bool(raw.get("command"))
    has_manual = bool(raw.get("manualCheck"))
    if has_command and has_manual:
        return "BOTH"
    if has_command:
        return "AUTO"
    return "MANUAL"


def success_criterion_from_untyped(raw: Any, index: int) -> Tuple[Dict[str, Any], Warnings]:
    where = f"successCriteria[{index}]"
    warnings: Warnings = []
    if isinstance(raw, str):
        warnings.append(f"{where}: converted string to criterion")
        raw = {"criterion": raw}
    elif not isinstance(raw, dict):
        warnings.append(f"{where}: replaced non-object entry")
        raw = {}
    result = dict(raw)
    result["criterion"] = _text(raw.get("criterion"))
    if "source" in raw:
        result["source"] = _text(raw.get("source"))
    result["command"] = _optional_text(raw.get("command")) or None
    result["manualCheck"] = _optional_text(raw.get("manualCheck")) or None
    result["testType"] = _enum(raw.get("testType"), TEST_TYPES, None, upper=True) or _infer_test_type(result)
    # null is a valid permanent state for MANUAL criteria; never promote to true
    result["passed"] = _optional_bool(raw.get("passed"))
    _changed(f"{where}.testType", raw.get("testType"), result["testType"], warnings)
    _changed(f"{where}.passed", raw.get("passed"), result["passed"], warnings)
    return result, warnings


def error_entry_from_untyped(raw: Any, index: int) -> Tuple[Dict[str, Any], Warnings]:
    where = f"errorHistory[{index}]"
    warnings: Warnings = []
    if not isinstance(raw, dict):
        warnings.append(f"{where}: converted non-object entry")
        raw = {"message": _text(raw)}
    result = dict(raw)
    result["timestamp"] = _text(raw.get("timestamp"))
    result["message"] = _text(raw.get("message"))
    if "stack" in raw:
        result["stack"] = _optional_text(raw.get("stack"))
    return result, warnings


def completion_from_untyped(raw: Any) -> Tuple[Dict[str, Any], Warnings]:
    warnings: Warnings = []
    if not isinstance(raw, dict):
        if raw is not None:
            warnings.append("completion: replaced non-object value")
        raw = {}
    result = dict(raw)
    result["status"] = _enum(raw.get("status"), COMPLETION_STATUSES, "pending_validation")
    _changed("completion.status", raw.get("status"), result["status"], warnings)
    for key in ("summary", "deviations", "forFutureTasks", "blockedBy"):
        if key in raw:
            result[key] = _string_list(raw.get(key))
    if "codeReviewPassed" in raw:
        result["codeReviewPassed"] = _strict_true(raw.get("codeReviewPassed"))
    return result, warnings


def beyond_the_basics_from_untyped(raw: Any) -> Tuple[Dict[str, Any], Warnings]:
    warnings: Warnings = []
    if not isinstance(raw, dict):
        warnings.append("beyondTheBasics: replaced non-object value")
        return {}, warnings
    result = dict(raw)
    if "cleanup" in raw:
        cleanup = raw.get("cleanup") if isinstance(raw.get("cleanup"), dict) else {}
        fixed = dict(cleanup)
        for flag in CLEANUP_FLAGS:
            fixed[flag] = _strict_true(cleanup.get(flag))
        result["cleanup"] = fixed
    return result, warnings


# --- Record repair ---

def _default_record() -> Dict[str, Any]:
    return {
        "$schema": SCHEMA_ID,
        "version": SCHEMA_VERSION,
        "task": "unknown",
        "title": "",
        "status": "pending",
        "started": None,
        "attempts": 0,
    }


def _coerce_input(raw: Any, warnings: Warnings) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            warnings.append("record: unparseable JSON text, starting from defaults")
            return {}
    if not isinstance(raw, dict):
        warnings.append(f"record: expected an object, got {type(raw).__name__}")
        return {}
    return copy.deepcopy(raw)


def repair_execution_record(raw: Any) -> Tuple[Dict[str, Any], Warnings]:
    """
    Repair an execution record into a schema-valid shape.

    Total: accepts any value (including a JSON string) and never raises.
    Unknown keys are kept; enum fields are coerced; free text is preserved.

    Returns:
        (repaired_record, warnings) - warnings describe every change made
    """
    warnings: Warnings = []
    data = _coerce_input(raw, warnings)
    defaults = _default_record()
    result = dict(data)

    if data.get("$schema") != SCHEMA_ID:
        _changed("$schema", data.get("$schema"), SCHEMA_ID, warnings)
        result["$schema"] = SCHEMA_ID
    if data.get("version") != SCHEMA_VERSION:
        _changed("version", data.get("version"), SCHEMA_VERSION, warnings)
        result["version"] = SCHEMA_VERSION

    task = _text(data.get("task"))
    result["task"] = task if task.strip() else defaults["task"]
    result["title"] = _text(data.get("title"))
    result["status"] = _enum(data.get("status"), RECORD_STATUSES, "pending")
    result["started"] = _optional_text(data.get("started"))
    result["attempts"] = _non_negative_int(data.get("attempts"))
    for key in ("task", "status", "attempts"):
        _changed(key, data.get(key), result[key], warnings)

    phases = []
    for i, entry in enumerate(_as_list(data.get("phases"), "phases", warnings)):
        fixed, sub = phase_from_untyped(entry, i)
        phases.append(fixed)
        warnings.extend(sub)
    result["phases"] = phases

    current = data.get("currentPhase")
    if isinstance(current, dict):
        fixed_current = dict(current)
        fixed_current["id"] = _positive_int(current.get("id"), 1)
        fixed_current["name"] = _text(current.get("name"))
        if "lastAction" in current:
            fixed_current["lastAction"] = _optional_text(current.get("lastAction"))
        result["currentPhase"] = fixed_current
    else:
        if current is not None:
            warnings.append("currentPhase: replaced non-object value")
        first = phases[0] if phases else {"id": 1, "name": ""}
        result["currentPhase"] = {"id": first["id"], "name": first["name"]}

    repairers = [
        ("errorHistory", error_entry_from_untyped),
        ("uncertainties", uncertainty_from_untyped),
        ("artifacts", artifact_from_untyped),
        ("successCriteria", success_criterion_from_untyped),
    ]
    for key, repair in repairers:
        entries = []
        for i, entry in enumerate(_as_list(data.get(key), key, warnings)):
            fixed, sub = repair(entry, i)
            entries.append(fixed)
            warnings.extend(sub)
        result[key] = entries

    result["completion"], sub = completion_from_untyped(data.get("completion"))
    warnings.extend(sub)

    if "beyondTheBasics" in data:
        result["beyondTheBasics"], sub = beyond_the_basics_from_untyped(data.get("beyondTheBasics"))
        warnings.extend(sub)

    return result, warnings


def sanitize_execution_record(raw: Any) -> Any:
    """
    Light normalization that never adds fields.

    Trims and lower-cases status tokens and turns numeric `attempts` strings
    into integers. Anything else is returned unchanged.
    """
    if not isinstance(raw, dict):
        return raw
    data = copy.deepcopy(raw)
    if isinstance(data.get("status"), str):
        data["status"] = _normalize_token(data["status"])
    attempts = data.get("attempts")
    if isinstance(attempts, str) and _int_from_text(attempts) is not None:
        data["attempts"] = _int_from_text(attempts)
    completion = data.get("completion")
    if isinstance(completion, dict) and isinstance(completion.get("status"), str):
        completion["status"] = _normalize_token(completion["status"])
    phases = data.get("phases")
    for phase in phases if isinstance(phases, list) else []:
        if isinstance(phase, dict) and isinstance(phase.get("status"), str):
            phase["status"] = _normalize_token(phase["status"])
    return data


# --- Schema validation ---

@lru_cache(maxsize=1)
def load_schema() -> Dict[str, Any]:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def schema_errors(data: Any) -> List[str]:
    """
    Validate data against the execution schema, return ALL errors.

    Uses Draft7Validator.iter_errors() to collect every violation.
    """
    if data is None:
        return ["Input data is null"]
    if not isinstance(data, dict):
        return ["Input data must be an object"]
    errors = []
    validator = jsonschema.Draft7Validator(load_schema())
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


def validate_execution_record(
    data: Any,
    repair: bool = True,
    sanitize: bool = True,
) -> ValidationResult:
    """
    Validate an execution record, repairing it first unless asked not to.

    Args:
        data: Parsed execution.json contents (any value)
        repair: Run the structural repair before validating
        sanitize: Run the light normalization before validating

    Returns:
        ValidationResult; `errors` are the schema errors of the final data.
        With repair=False and sanitize=False the raw input is validated as-is.
    """
    sanitized = sanitize_execution_record(data) if sanitize else None
    candidate = sanitized if sanitize else data

    if not repair:
        errors = schema_errors(candidate)
        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            sanitized_data=sanitized if isinstance(sanitized, dict) else None,
        )

    repaired, warnings = repair_execution_record(candidate)
    errors = schema_errors(repaired)
    if errors:
        logger.warning(f"Repaired execution record still invalid: {'; '.join(errors)}")
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        repaired_data=repaired,
        sanitized_data=sanitized if isinstance(sanitized, dict) else None,
    )
