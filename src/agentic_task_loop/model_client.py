"""Local LLM client interface and Ollama implementation.

The local model is a cheap advisory pre-filter: it never decides anything on
its own, and the loop runs the same without it.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from agentic_task_loop.config import Config

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class HealthStatus:
    """Result of checking the local LLM server."""
    available: bool
    models: List[str] = field(default_factory=list)
    has_model: bool = False
    error: Optional[str] = None


@dataclass
class FixValidation:
    """The local model's opinion on whether a fix approach is working."""
    valid: bool = True
    confidence: float = 0.5
    issues: List[str] = field(default_factory=list)
    recommendation: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FixValidation":
        issues = data.get("issues")
        confidence = data.get("confidence")
        return cls(
            valid=data.get("valid") is not False,
            confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.5,
            issues=[str(i) for i in issues] if isinstance(issues, list) else [],
            recommendation=data.get("recommendation") if isinstance(data.get("recommendation"), str) else None,
        )


class LocalLLMError(Exception):
    """Error from local LLM operations."""
    pass


class LocalLLMClient(ABC):
    """Abstract interface for local LLM clients."""

    @abstractmethod
    def generate(self, prompt: str, temperature: float = 0.1, max_tokens: int = 256) -> str:
        """
        Generate a completion.

        Raises:
            LocalLLMError: On server or network errors
        """
        pass

    @abstractmethod
    def health_check(self) -> HealthStatus:
        """Check the server. Never raises."""
        pass

    def generate_json(self, prompt: str, max_tokens: int = 256) -> Any:
        """
        Generate and parse a JSON answer.

        Raises:
            LocalLLMError: If no valid JSON is found in the response
        """
        response = self.generate(
            f"{prompt}\n\nRespond with valid JSON only, no additional text.",
            temperature=0.05,
            max_tokens=max_tokens,
        )
        match = re.search(r"\{[\s\S]*\}|\[[\s\S]*\]", response)
        if not match:
            raise LocalLLMError(f"No JSON found in response: {response[:200]}")
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise LocalLLMError(f"Invalid JSON response: {e}")

    def validate_fix(self, request: str, progress: str, last_error: str) -> FixValidation:
        """
        Ask whether the current fix approach looks like it is working.

        Raises:
            LocalLLMError: On server errors or an unparseable answer
        """
        prompt = f"""Validate if this fix approach is likely to work.

Original request: {request[:500]}
Progress: {progress}
Last error: {last_error[:1000]}

Check for:
1. Does the approach address the actual error?
2. Is the loop making progress?
3. Is something blocking every attempt?

Return JSON: {{
  "valid": true/false,
  "confidence": 0.0-1.0,
  "issues": ["issue1", "issue2"],
  "recommendation": "short advice for the next attempt"
}}"""
        data = self.generate_json(prompt, max_tokens=300)
        if not isinstance(data, dict):
            raise LocalLLMError("Fix validation answer is not an object")
        return FixValidation.from_dict(data)


class OllamaClient(LocalLLMClient):
    """Ollama HTTP API client.

    Uses POST /api/generate (non-streaming) and GET /api/tags.
    """

    def __init__(
        self,
        model: str,
        host: str = "localhost",
        port: int = 11434,
        timeout: float = 30.0,
    ):
        self.model = model
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, f"{self.base_url}{path}", json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            raise LocalLLMError(f"Ollama request timed out after {self.timeout}s")
        except httpx.HTTPStatusError as e:
            raise LocalLLMError(f"Ollama API error: {e.response.status_code} {e.response.text[:200]}")
        except httpx.RequestError as e:
            raise LocalLLMError(f"Network error: {e}")
        except ValueError as e:
            raise LocalLLMError(f"Unexpected Ollama response: {e}")

    def generate(self, prompt: str, temperature: float = 0.1, max_tokens: int = 256) -> str:
        data = self._request("POST", "/api/generate", {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        })
        return data.get("response", "") if isinstance(data, dict) else ""

    def health_check(self) -> HealthStatus:
        try:
            data = self._request("GET", "/api/tags")
        except LocalLLMError as e:
            return HealthStatus(available=False, error=str(e))
        listed = data.get("models") if isinstance(data, dict) else None
        if not isinstance(listed, list):
            return HealthStatus(available=False, error=f"Unexpected /api/tags response: {str(data)[:200]}")
        models = [str(m.get("name", "")) for m in listed if isinstance(m, dict)]
        base_name = self.model.split(":")[0]
        return HealthStatus(
            available=True,
            models=models,
            has_model=any(m.startswith(base_name) for m in models),
        )


def get_local_llm_client(config: Config) -> Optional[LocalLLMClient]:
    """Ollama client when TASKLOOP_LOCAL_LLM names a model, else None."""
    if not config.local_llm_enabled:
        return None
    return OllamaClient(
        model=config.local_llm_model,
        host=config.ollama_host,
        port=config.ollama_port,
        timeout=config.ollama_timeout,
    )


PROGRESS_ANALYSIS_HEADER = "## Progress Analysis (Local LLM)"


def pre_analyze_progress(
    client: Optional[LocalLLMClient],
    request: str,
    pending_before: Optional[int],
    pending_now: int,
    last_error: Optional[str],
) -> str:
    """
    Extra prompt section when the loop looks stuck.

    Only consulted when pending items did not go down and an error is on
    record. Advisory: any failure yields an empty string.
    """
    if client is None or pending_before is None or not last_error:
        return ""
    if pending_now < pending_before:
        return ""
    try:
        health = client.health_check()
        if not health.available:
            logger.debug(f"Local LLM unavailable: {health.error}")
            return ""
        validation = client.validate_fix(
            request,
            f"{pending_before} pending items before, {pending_now} after",
            last_error,
        )
        if not validation.issues:
            return ""
        lines = [
            "",
            "",
            PROGRESS_ANALYSIS_HEADER,
            "*Detected potential issues with previous fix approach:*",
        ]
        lines += [f"- {issue}" for issue in validation.issues]
        if validation.recommendation:
            lines.append(f"**Recommendation:** {validation.recommendation}")
    except Exception as e:
        # Advisory only: the loop continues without the analysis
        logger.debug(f"Local LLM analysis failed: {e}")
        return ""

    logger.debug("Local LLM analysis provided")
    return "\n".join(lines) + "\n"
