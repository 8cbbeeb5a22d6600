"""Constants for the task loop engine."""

# Workspace layout
WORKSPACE_DIR_NAME = ".claudiomiro"
LOOP_FIXES_TASK_ID = "loop-fixes"
LOG_FILE_NAME = "log.txt"
CACHE_DIR_NAME = "cache"
INSIGHTS_DIR_NAME = "insights"

# Task-directory artifacts (exact names are part of the worker protocol)
TODO_FILE = "TODO.md"
OVERVIEW_FILE = "OVERVIEW.md"
PROMPT_REFINEMENT_PASSED_FILE = "PROMPT_REFINEMENT_PASSED.md"

CRITICAL_REVIEW_TODO_FILE = "CRITICAL_REVIEW_TODO.md"
CRITICAL_REVIEW_OVERVIEW_FILE = "CRITICAL_REVIEW_OVERVIEW.md"
CRITICAL_REVIEW_PASSED_FILE = "CRITICAL_REVIEW_PASSED.md"
CRITICAL_REVIEW_FAILED_FILE = "CRITICAL_REVIEW_FAILED.md"

EXECUTION_FILE = "execution.json"
INFO_FILE = "info.json"
BLUEPRINT_FILE = "BLUEPRINT.md"
RESEARCH_FILE = "RESEARCH.md"
RESEARCH_OLD_FILE = "RESEARCH.old.md"
SCOPE_OUTPUT_FILE = ".scope-detection-output.txt"

# First line of a checklist doc
FULLY_IMPLEMENTED_PREFIX = "Fully implemented:"
FULLY_IMPLEMENTED_YES = "Fully implemented: YES"
FULLY_IMPLEMENTED_NO = "Fully implemented: NO"

# Loop defaults
DEFAULT_MAX_ITERATIONS = 20
FORCE_RESEARCH_MIN_ATTEMPTS = 3
ERROR_STACK_LINES = 3

# Worker model aliases: fast -> cheapest, hard -> most capable
MODEL_ALIASES = {
    "fast": "haiku",
    "medium": "sonnet",
    "hard": "opus",
}
VALID_MODELS = list(MODEL_ALIASES)

# Scope routing for split-repo setups
SCOPE_BACKEND = "backend"
SCOPE_FRONTEND = "frontend"
SCOPE_INTEGRATION = "integration"
VALID_SCOPES = [SCOPE_BACKEND, SCOPE_FRONTEND, SCOPE_INTEGRATION]
DEFAULT_SCOPE = SCOPE_INTEGRATION

# Pre-condition commands run with a short, fixed timeout
PRECONDITION_TIMEOUT_S = 5

# Local LLM (Ollama) defaults
DEFAULT_OLLAMA_HOST = "localhost"
DEFAULT_OLLAMA_PORT = 11434
DEFAULT_OLLAMA_TIMEOUT_S = 30.0
