"""Phase-driven tool-using agent loop with recursive context recall.

Usage:
    from phase_agent import (
        AgentLoop, ContextRecallService, DirectToolExecutor,
        InMemorySessionMemory, LiteLLMProvider, MemoryRunHandle,
    )

    provider = LiteLLMProvider("gpt-4o-mini")
    memory = InMemorySessionMemory()
    loop = AgentLoop(
        provider,
        session_memory=memory,
        tool_executor=DirectToolExecutor([search_notes]),
        recall_service=ContextRecallService(memory, provider),
    )
    result = await loop.run("client-1", "What did we decide last time?", "You are helpful.",
                            run_handle=MemoryRunHandle(session_id="s1", run_id="r1"))
    print(result.type, result.end_status, result.content)
"""

from phase_agent.agent_loop import AgentLoop, AgentLoopResult, EscalationDetails
from phase_agent.agent_step import (
    AGENT_STEP_TOOL_NAME,
    AGENT_STEP_TOOL_SCHEMA,
    AgentStep,
    ScratchpadEntry,
    build_scratchpad_block,
    parse_agent_step,
)
from phase_agent.config import (
    AgentConfig,
    AgentLoopConfig,
    ContextRecallConfig,
    ContextRecallLimits,
    EscalationConfig,
    ToolSelectionConfig,
    load_agent_config,
)
from phase_agent.errors import (
    AgentConfigError,
    AgentError,
    LLMAuthError,
    LLMContextWindowError,
    LLMError,
    LLMRateLimitError,
    LLMTransientError,
    ProviderCapabilityError,
    classify_error,
    wrap_error,
)
from phase_agent.executor import ActionExecutor, RunState
from phase_agent.memory import (
    ConversationTurn,
    InMemorySessionMemory,
    MemoryRunHandle,
    PromptMemoryContext,
    RecalledContextEvidence,
    SessionMemory,
    SessionSummaryHit,
)
from phase_agent.prompts import render_prompt
from phase_agent.protocol import (
    AssistantTurn,
    LLMProvider,
    ProviderCapabilities,
    ToolCall,
    ToolCallsTurn,
    ToolSchema,
    TurnInput,
)
from phase_agent.provider import LiteLLMProvider
from phase_agent.recall.service import ContextRecallService
from phase_agent.recall.types import ContextRecallResult
from phase_agent.tool_helpers import CONTEXT_RECALL_TOOL_NAME, CONTEXT_RECALL_TOOL_SCHEMA
from phase_agent.tool_selection import ToolSelector, select_tools
from phase_agent.tool_utils import (
    DirectToolExecutor,
    ToolDefinition,
    ToolExecutor,
    ToolResult,
    ToolSelectionHints,
    ToolValidation,
    callable_to_tool_definition,
)

__all__ = [
    "AGENT_STEP_TOOL_NAME",
    "AGENT_STEP_TOOL_SCHEMA",
    "CONTEXT_RECALL_TOOL_NAME",
    "CONTEXT_RECALL_TOOL_SCHEMA",
    "ActionExecutor",
    "AgentConfig",
    "AgentConfigError",
    "AgentError",
    "AgentLoop",
    "AgentLoopConfig",
    "AgentLoopResult",
    "AgentStep",
    "AssistantTurn",
    "ContextRecallConfig",
    "ContextRecallLimits",
    "ContextRecallResult",
    "ContextRecallService",
    "ConversationTurn",
    "DirectToolExecutor",
    "EscalationConfig",
    "EscalationDetails",
    "InMemorySessionMemory",
    "LLMAuthError",
    "LLMContextWindowError",
    "LLMError",
    "LLMProvider",
    "LLMRateLimitError",
    "LLMTransientError",
    "LiteLLMProvider",
    "MemoryRunHandle",
    "PromptMemoryContext",
    "ProviderCapabilities",
    "ProviderCapabilityError",
    "RecalledContextEvidence",
    "RunState",
    "ScratchpadEntry",
    "SessionMemory",
    "SessionSummaryHit",
    "ToolCall",
    "ToolCallsTurn",
    "ToolDefinition",
    "ToolExecutor",
    "ToolResult",
    "ToolSchema",
    "ToolSelectionConfig",
    "ToolSelectionHints",
    "ToolSelector",
    "ToolValidation",
    "TurnInput",
    "build_scratchpad_block",
    "callable_to_tool_definition",
    "classify_error",
    "load_agent_config",
    "parse_agent_step",
    "render_prompt",
    "select_tools",
    "wrap_error",
]
