"""LiteLLM-backed ``LLMProvider``.

Any model litellm can route (``gemini/gemini-2.5-flash``, ``gpt-4o-mini``,
``anthropic/claude-...``) can drive the agent loop as long as it supports
native function calling::

    provider = LiteLLMProvider("gpt-4o-mini", timeout=60)
    turn = await provider.generate_turn(TurnInput(messages=[...], tools=[...]))
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import litellm

from phase_agent.errors import LLMRateLimitError, LLMTransientError, wrap_error
from phase_agent.protocol import AssistantTurn, ProviderCapabilities, ToolCall, ToolCallsTurn, TurnInput, TurnOutput

logger = logging.getLogger(__name__)

_RETRYABLE = (LLMRateLimitError, LLMTransientError)


def _supports_function_calling(model: str) -> bool:
    """Ask litellm's model map; unknown models are assumed capable."""
    try:
        return bool(litellm.supports_function_calling(model=model))
    except Exception:
        logger.debug("litellm has no function-calling info for %s; assuming supported", model)
        return True


def _parse_arguments(tool_name: str, raw: Any) -> Any:
    if raw is None or raw == "":
        return {}
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to parse tool call arguments for %s: %s", tool_name, raw[:200])
        return {}


def _extract_tool_calls(message: Any) -> list[ToolCall]:
    """Extract tool calls from a litellm response message."""
    raw_calls = getattr(message, "tool_calls", None) or []
    calls: list[ToolCall] = []
    for index, tc in enumerate(raw_calls):
        name = tc.function.name or ""
        calls.append(
            ToolCall(
                id=tc.id or f"call_{index}",
                name=name,
                input=_parse_arguments(name, tc.function.arguments),
            )
        )
    return calls


class LiteLLMProvider:
    """Adapter from ``TurnInput`` to ``litellm.acompletion``."""

    def __init__(
        self,
        model: str,
        *,
        timeout: int = 60,
        max_retries: int = 2,
        base_delay: float = 1.0,
        native_tool_calling: bool | None = None,
        **completion_kwargs: Any,
    ) -> None:
        self.model = model
        self.name = "litellm"
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.completion_kwargs = completion_kwargs
        if native_tool_calling is None:
            native_tool_calling = _supports_function_calling(model)
        self.capabilities = ProviderCapabilities(native_tool_calling=native_tool_calling)

    def _call_kwargs(self, turn_input: TurnInput) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": turn_input.messages,
            "timeout": self.timeout,
            **self.completion_kwargs,
        }
        if turn_input.tools:
            kwargs["tools"] = [tool.to_openai() for tool in turn_input.tools]
        return kwargs

    async def generate_turn(self, turn_input: TurnInput) -> TurnOutput:
        call_kwargs = self._call_kwargs(turn_input)
        for attempt in range(self.max_retries + 1):
            try:
                response = await litellm.acompletion(**call_kwargs)
                break
            except Exception as exc:
                error = wrap_error(exc)
                if not isinstance(error, _RETRYABLE) or attempt >= self.max_retries:
                    raise error from exc
                delay = self.base_delay * (2**attempt)
                logger.warning(
                    "generate_turn attempt %d/%d failed (retrying in %.1fs): %s",
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

        message = response.choices[0].message
        calls = _extract_tool_calls(message)
        content = message.content or ""
        if calls:
            return ToolCallsTurn(calls=calls, assistant_content=content or None)
        return AssistantTurn(content=content)
