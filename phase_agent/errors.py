"""Structured error types for phase_agent.

Only configuration problems escape the agent loop as exceptions. Tool failures,
selection misses and recall degradation are reported as structured results so
the model can self-correct:

    from phase_agent.errors import ProviderCapabilityError

    try:
        result = await loop.run(client_id, text, system_context, run_handle=handle)
    except ProviderCapabilityError:
        # Provider cannot do native tool calling: pick another model
        ...
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base for all phase_agent errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ProviderCapabilityError(AgentError):
    """Provider lacks native tool calling: the loop cannot run on it."""


class AgentConfigError(AgentError, ValueError):
    """Invalid loop/recall configuration value or config file."""


class LLMError(AgentError):
    """Base for provider transport errors raised by LiteLLMProvider."""


class LLMRateLimitError(LLMError):
    """Transient rate limit (429): retry with backoff."""


class LLMAuthError(LLMError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class LLMContextWindowError(LLMError):
    """Prompt plus tool schemas exceeded the model context window."""


class LLMTransientError(LLMError):
    """Server error (500/502/503), timeout, connection: retry."""


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[LLMError]:
    """Classify a provider exception into an LLMError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    try:
        import litellm as _lt

        auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
        if auth_types and isinstance(error, auth_types):
            return LLMAuthError

        window_types = _litellm_error_types(_lt, ("ContextWindowExceededError",))
        if window_types and isinstance(error, window_types):
            return LLMContextWindowError

        rate_types = _litellm_error_types(_lt, ("RateLimitError",))
        if rate_types and isinstance(error, rate_types):
            return LLMRateLimitError

        transient_types = _litellm_error_types(
            _lt,
            (
                "InternalServerError",
                "ServiceUnavailableError",
                "APIConnectionError",
                "Timeout",
            ),
        )
        if transient_types and isinstance(error, transient_types):
            return LLMTransientError
    except ImportError:
        pass

    error_str = str(error).lower()

    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return LLMAuthError
    if "403" in error_str or "forbidden" in error_str:
        return LLMAuthError
    if "context window" in error_str or "context length" in error_str or "too many tokens" in error_str:
        return LLMContextWindowError
    if "rate" in error_str and "limit" in error_str:
        return LLMRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return LLMTransientError

    return LLMError


def wrap_error(error: Exception) -> LLMError:
    """Wrap an exception in the appropriate LLMError subclass.

    If the error is already an LLMError, returns it unchanged.
    """
    if isinstance(error, LLMError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)
