"""Typed runtime configuration for phase_agent.

Every config object is a frozen dataclass resolved once and passed explicitly
to the loop or the recall service; nothing reads the environment after
construction.

Config files (YAML or JSON) use three optional top-level sections::

    model: gemini/gemini-2.5-flash
    agent_loop:
      base_step_limit: 12
      tool_selection:
        top_k: 6
    context_recall:
      enabled: true
      limits:
        total_recall_ms: 4000
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from phase_agent.errors import AgentConfigError

logger = logging.getLogger(__name__)

MODEL_ENV = "PHASE_AGENT_MODEL"
CONFIG_PATH_ENV = "PHASE_AGENT_CONFIG"
RECALL_ENABLED_ENV = "PHASE_AGENT_RECALL_ENABLED"
DEFAULT_MODEL = "gemini/gemini-2.5-flash"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _check_keys(cls: type, data: Mapping[str, Any], section: str) -> None:
    if not isinstance(data, Mapping):
        raise AgentConfigError(f"{section} config must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        raise AgentConfigError(f"Unknown {section} config keys: {', '.join(unknown)}")


def _require_positive(section: str, values: Mapping[str, Any], *, allow_zero: tuple[str, ...] = ()) -> None:
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise AgentConfigError(f"{section}.{name} must be an integer, got {type(value).__name__} {value!r}")
        floor = 0 if name in allow_zero else 1
        if value < floor:
            raise AgentConfigError(f"{section}.{name} must be >= {floor}, got {value}")


def _require_bool(section: str, name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise AgentConfigError(f"{section}.{name} must be true or false, got {type(value).__name__} {value!r}")


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSelectionConfig:
    """Per-step tool subset selection."""

    enabled: bool = True
    top_k: int = 8
    retry_top_k: int = 16
    always_include: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _require_bool("tool_selection", "enabled", self.enabled)
        _require_positive("tool_selection", {"top_k": self.top_k, "retry_top_k": self.retry_top_k})
        if self.retry_top_k < self.top_k:
            raise AgentConfigError(
                f"tool_selection.retry_top_k ({self.retry_top_k}) must be >= top_k ({self.top_k})"
            )
        object.__setattr__(self, "always_include", tuple(self.always_include))


@dataclass(frozen=True)
class EscalationConfig:
    """Thresholds for handing a run off to the higher-capability mode.

    Escalation fires when tool_calls > min_tool_calls AND distinct tools >=
    min_distinct_tools AND (failed calls >= min_failed_tool_calls OR reflect
    cycles >= min_reflect_cycles).
    """

    enabled: bool = True
    min_tool_calls: int = 8
    min_distinct_tools: int = 3
    min_failed_tool_calls: int = 3
    min_reflect_cycles: int = 2

    def __post_init__(self) -> None:
        _require_bool("escalation", "enabled", self.enabled)
        _require_positive(
            "escalation",
            {
                "min_tool_calls": self.min_tool_calls,
                "min_distinct_tools": self.min_distinct_tools,
                "min_failed_tool_calls": self.min_failed_tool_calls,
                "min_reflect_cycles": self.min_reflect_cycles,
            },
            allow_zero=("min_tool_calls", "min_distinct_tools", "min_failed_tool_calls", "min_reflect_cycles"),
        )


@dataclass(frozen=True)
class AgentLoopConfig:
    """Step budgets for one AgentLoop. Immutable for the lifetime of the loop."""

    base_step_limit: int = 12
    max_step_limit: int = 20
    step_limit_per_tool: int = 2
    no_progress_limit: int = 4
    repeated_action_limit: int = 3
    tool_selection: ToolSelectionConfig = field(default_factory=ToolSelectionConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)

    def __post_init__(self) -> None:
        _require_positive(
            "agent_loop",
            {
                "base_step_limit": self.base_step_limit,
                "max_step_limit": self.max_step_limit,
                "step_limit_per_tool": self.step_limit_per_tool,
                "no_progress_limit": self.no_progress_limit,
                "repeated_action_limit": self.repeated_action_limit,
            },
            allow_zero=("step_limit_per_tool",),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "AgentLoopConfig":
        """Build from a partial mapping; nested sections merge over defaults."""
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise AgentConfigError(f"agent_loop config must be a mapping, got {type(data).__name__}")
        _check_keys(cls, data, "agent_loop")
        payload = dict(data)

        selection_raw = payload.pop("tool_selection", None) or {}
        _check_keys(ToolSelectionConfig, selection_raw, "agent_loop.tool_selection")
        escalation_raw = payload.pop("escalation", None) or {}
        _check_keys(EscalationConfig, escalation_raw, "agent_loop.escalation")

        selection_kwargs = dict(selection_raw)
        if "always_include" in selection_kwargs:
            selection_kwargs["always_include"] = tuple(selection_kwargs["always_include"] or ())
        return cls(
            tool_selection=ToolSelectionConfig(**selection_kwargs),
            escalation=EscalationConfig(**escalation_raw),
            **payload,
        )


# ---------------------------------------------------------------------------
# Context recall
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextRecallLimits:
    """Budgets for one ContextRecallService instance."""

    max_matched_sessions: int = 4
    recursion_depth: int = 4
    max_turns_per_session: int = 10_000
    evidence_token_budget: int = 2_500
    total_recall_ms: int = 2_500
    max_evidence_items: int = 12
    max_model_calls: int = 14
    max_chunk_selections: int = 2
    max_chunk_branches: int = 4
    max_leaf_turns: int = 28
    max_evidence_per_leaf: int = 3
    decision_context_turns: int = 6

    def __post_init__(self) -> None:
        _require_positive(
            "context_recall.limits",
            asdict(self),
            allow_zero=("max_turns_per_session", "total_recall_ms", "max_model_calls", "decision_context_turns"),
        )
        if self.max_chunk_branches < 2:
            raise AgentConfigError(
                f"context_recall.limits.max_chunk_branches must be >= 2, got {self.max_chunk_branches}"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ContextRecallLimits":
        if not data:
            return cls()
        _check_keys(cls, data, "context_recall.limits")
        return cls(**dict(data))


@dataclass(frozen=True)
class ContextRecallConfig:
    enabled: bool = True
    limits: ContextRecallLimits = field(default_factory=ContextRecallLimits)

    def __post_init__(self) -> None:
        _require_bool("context_recall", "enabled", self.enabled)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ContextRecallConfig":
        if not data:
            return cls()
        _check_keys(cls, data, "context_recall")
        return cls(
            enabled=data.get("enabled", True),
            limits=ContextRecallLimits.from_mapping(data.get("limits")),
        )


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfig:
    """Model name plus loop and recall configuration."""

    model: str = DEFAULT_MODEL
    agent_loop: AgentLoopConfig = field(default_factory=AgentLoopConfig)
    context_recall: ContextRecallConfig = field(default_factory=ContextRecallConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "AgentConfig":
        if not data:
            return cls()
        _check_keys(cls, data, "top-level")
        return cls(
            model=str(data.get("model") or DEFAULT_MODEL),
            agent_loop=AgentLoopConfig.from_mapping(data.get("agent_loop")),
            context_recall=ContextRecallConfig.from_mapping(data.get("context_recall")),
        )

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Resolve config from PHASE_AGENT_CONFIG, then apply env overrides."""
        config_path = os.environ.get(CONFIG_PATH_ENV, "").strip()
        config = load_agent_config(config_path) if config_path else cls()

        model = os.environ.get(MODEL_ENV, "").strip()
        if model:
            config = replace(config, model=model)

        recall_raw = os.environ.get(RECALL_ENABLED_ENV, "").strip().lower()
        if recall_raw in _TRUE_VALUES or recall_raw in _FALSE_VALUES:
            config = replace(
                config,
                context_recall=replace(config.context_recall, enabled=recall_raw in _TRUE_VALUES),
            )
        elif recall_raw:
            logger.warning(
                "Invalid %s=%r; expected on/off boolean. Keeping enabled=%s.",
                RECALL_ENABLED_ENV,
                recall_raw,
                config.context_recall.enabled,
            )
        return config

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_agent_config(path: str | Path) -> AgentConfig:
    """Load AgentConfig from a .yaml/.yml/.json file."""
    path = Path(path).expanduser()
    if not path.exists():
        raise AgentConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix == ".json":
        data = json.loads(text)
    elif suffix in {".yaml", ".yml"}:
        import yaml  # type: ignore[import-untyped]

        data = yaml.safe_load(text)
    else:
        raise AgentConfigError(
            f"Unsupported config extension {suffix!r} for {path}. Use .json, .yaml, or .yml."
        )
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise AgentConfigError(f"Config root must be a mapping. Got: {type(data).__name__}")
    config = AgentConfig.from_mapping(data)
    logger.debug("Loaded agent config from %s (model=%s)", path, config.model)
    return config
