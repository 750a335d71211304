"""Tool definitions and direct in-process tool execution.

Generate tool schemas from plain Python functions and execute tool calls
in-process. ``DirectToolExecutor`` implements the ``ToolExecutor`` protocol the
agent loop consumes.

Usage:
    from phase_agent.tool_utils import DirectToolExecutor

    async def search_notes(query: str, limit: int = 10) -> str:
        '''Search the notes store.'''
        ...

    executor = DirectToolExecutor([search_notes])
    executor.definitions()  # ready for AgentLoop / tool selection
"""

from __future__ import annotations

import inspect
import json as _json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Union, get_args, get_origin, get_type_hints, runtime_checkable

import jsonschema
from jsonschema import Draft202012Validator

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULT_LENGTH = 50_000

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


# ---------------------------------------------------------------------------
# Collaborator types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSelectionHints:
    """Extra ranking signals for per-step tool selection."""

    tags: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    examples: tuple[str, ...] = ()
    domain: str = ""
    priority: float | None = None


@dataclass
class ToolResult:
    ok: bool
    output: str | None = None
    error: str | None = None
    meta: dict[str, Any] | None = None


@dataclass
class ToolValidation:
    valid: bool
    error: str | None = None
    schema: dict[str, Any] | None = None


@dataclass
class ToolDefinition:
    """A tool the model may call.

    ``handler`` is the underlying Python callable for tools built with
    ``callable_to_tool_definition``; other executors may leave it unset.
    """

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    selection_hints: ToolSelectionHints | None = None
    handler: Callable[..., Any] | None = None


@runtime_checkable
class ToolExecutor(Protocol):
    def definitions(self) -> list[ToolDefinition]: ...

    def validate(self, name: str, tool_input: Any) -> ToolValidation: ...

    async def execute(self, name: str, tool_input: Any, context: dict[str, Any] | None = None) -> ToolResult: ...


# ---------------------------------------------------------------------------
# Schema generation
# ---------------------------------------------------------------------------


def _type_to_json_schema(tp: type) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X].
    Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] → unwrap to X
    if origin is Union:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X]."
    )


def callable_to_tool_definition(
    fn: Callable[..., Any],
    *,
    selection_hints: ToolSelectionHints | None = None,
) -> ToolDefinition:
    """Convert a typed Python callable to a ToolDefinition.

    Every parameter must have a type annotation (raises ValueError otherwise).
    The description comes from ``fn.__tool_description__`` or the first
    docstring line; hints may also be attached as ``fn.__tool_hints__``.
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []

    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if name not in hints:
            raise ValueError(
                f"Parameter {name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(name)
        properties[name] = prop

    description = ""
    override_desc = getattr(fn, "__tool_description__", None)
    if isinstance(override_desc, str) and override_desc.strip():
        description = override_desc.strip()
    elif fn.__doc__:
        description = fn.__doc__.strip().split("\n")[0].strip()

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required

    attached_hints = getattr(fn, "__tool_hints__", None)
    if selection_hints is None and isinstance(attached_hints, ToolSelectionHints):
        selection_hints = attached_hints

    return ToolDefinition(
        name=fn.__name__,
        description=description,
        input_schema=schema,
        selection_hints=selection_hints,
        handler=fn,
    )


# ---------------------------------------------------------------------------
# Direct executor
# ---------------------------------------------------------------------------


def _validator_for(schema: dict[str, Any]) -> Draft202012Validator:
    # Top-level args not named in the schema are rejected unless it says otherwise.
    if "properties" in schema and "additionalProperties" not in schema:
        schema = {**schema, "additionalProperties": False}
    return Draft202012Validator(schema)


def _format_schema_error(error: jsonschema.ValidationError) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    return f"{path}: {error.message}" if path else error.message


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated, {len(text)} chars total]"


class DirectToolExecutor:
    """Execute ToolDefinitions backed by Python callables (sync or async)."""

    def __init__(
        self,
        tools: list[Callable[..., Any] | ToolDefinition] | None = None,
        *,
        max_result_length: int = DEFAULT_MAX_RESULT_LENGTH,
    ) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self.max_result_length = max_result_length
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Callable[..., Any] | ToolDefinition) -> ToolDefinition:
        definition = tool if isinstance(tool, ToolDefinition) else callable_to_tool_definition(tool)
        if definition.name in self._tools:
            raise ValueError(
                f"Duplicate tool name {definition.name!r}: "
                f"{self._tools[definition.name].handler!r} and {definition.handler!r} share a name."
            )
        if definition.handler is None:
            raise ValueError(f"Tool {definition.name!r} has no handler to execute.")
        self._tools[definition.name] = definition
        return definition

    def definitions(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def validate(self, name: str, tool_input: Any) -> ToolValidation:
        definition = self._tools.get(name)
        if definition is None:
            return ToolValidation(valid=False, error=f"Unknown tool: {name}")
        schema = definition.input_schema
        if tool_input is None:
            tool_input = {}
        if not isinstance(tool_input, dict):
            return ToolValidation(valid=False, error="tool input must be a JSON object", schema=schema)

        errors = sorted(
            _validator_for(schema).iter_errors(tool_input),
            key=lambda e: ([str(p) for p in e.absolute_path], e.message),
        )
        if errors:
            return ToolValidation(valid=False, error="; ".join(_format_schema_error(e) for e in errors), schema=schema)
        return ToolValidation(valid=True, schema=schema)

    async def execute(self, name: str, tool_input: Any, context: dict[str, Any] | None = None) -> ToolResult:
        definition = self._tools.get(name)
        if definition is None or definition.handler is None:
            return ToolResult(ok=False, error=f"Unknown tool: {name}")

        arguments = dict(tool_input or {})
        fn = definition.handler
        t0 = time.monotonic()
        try:
            if inspect.iscoroutinefunction(fn):
                raw_result = await fn(**arguments)
            else:
                raw_result = fn(**arguments)

            # str passed through, anything else json.dumps
            if isinstance(raw_result, ToolResult):
                return raw_result
            if isinstance(raw_result, str):
                content = raw_result
            else:
                content = _json.dumps(raw_result, default=str)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.warning("Tool %s raised: %s", name, error_msg)
            return ToolResult(
                ok=False,
                error=error_msg,
                meta={"latency_s": round(time.monotonic() - t0, 3)},
            )

        return ToolResult(
            ok=True,
            output=_truncate(content, self.max_result_length),
            meta={"latency_s": round(time.monotonic() - t0, 3)},
        )
