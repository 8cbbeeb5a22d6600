"""Prompt templates for the worker.

Templates are markdown files with `{{name}}` placeholders. They ship inside
the package; a loop may point at another directory to override them.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from agentic_task_loop.errors import MissingTemplateError

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "templates"

EXECUTE_TEMPLATE = "loop-execute.md"
VERIFY_TEMPLATE = "loop-verify.md"
SHELL_RULE_TEMPLATE = "shell-command-rule.md"
SCOPE_DETECTION_TEMPLATE = "scope-detection.md"

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def load_template(name: str, templates_dir: Optional[Path] = None) -> str:
    """
    Read a template by file name.

    Raises:
        MissingTemplateError: If the template file does not exist.
    """
    path = Path(templates_dir or DEFAULT_TEMPLATES_DIR) / name
    if not path.is_file():
        raise MissingTemplateError(f"Prompt template not found: {path}")
    return path.read_text(encoding="utf-8")


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Replace every `{{key}}` with str(values[key]); unknown keys are left as-is."""
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        return str(values[key])
    return _PLACEHOLDER_RE.sub(_sub, template)


@dataclass(frozen=True)
class LoopPrompts:
    """The three templates a fix loop needs, loaded once before iterating."""
    execute: str
    verify: str
    shell_rule: str

    @classmethod
    def load(cls, templates_dir: Optional[Path] = None) -> "LoopPrompts":
        """
        Raises:
            MissingTemplateError: If any of the templates is absent.
        """
        return cls(
            execute=load_template(EXECUTE_TEMPLATE, templates_dir),
            verify=load_template(VERIFY_TEMPLATE, templates_dir),
            shell_rule=load_template(SHELL_RULE_TEMPLATE, templates_dir),
        )

    def render(self, verify: bool, values: Dict[str, Any], extra: str = "") -> str:
        """Render the phase template, append any extra context and the shell rule."""
        body = render_template(self.verify if verify else self.execute, values)
        if extra:
            body += extra
        return f"{body}\n\n{self.shell_rule}"


def build_scope_detection_prompt(
    blueprint: str,
    task_id: str,
    output_path: Path,
    templates_dir: Optional[Path] = None,
) -> str:
    template = load_template(SCOPE_DETECTION_TEMPLATE, templates_dir)
    return render_template(template, {
        "taskId": task_id,
        "blueprint": blueprint,
        "outputPath": str(output_path),
    })
