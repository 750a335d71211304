"""Command-line entry point for phase_agent.

Usage:
    python -m phase_agent ask "What changed in the last release?"
    python -m phase_agent ask "..." --model gpt-4o-mini --system "You are terse."
    python -m phase_agent ask "..." --config agent.yaml --format json

    python -m phase_agent config                      # resolved config as JSON
    python -m phase_agent config --config agent.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from dataclasses import asdict, replace
from typing import Any

LOG_LEVEL_ENV = "PHASE_AGENT_LOG_LEVEL"


def _resolve_config(args: argparse.Namespace) -> Any:
    from phase_agent.config import AgentConfig, load_agent_config

    config = load_agent_config(args.config) if args.config else AgentConfig.from_env()
    if getattr(args, "model", None):
        config = replace(config, model=args.model)
    return config


# ---------------------------------------------------------------------------
# ask subcommand
# ---------------------------------------------------------------------------


async def _run_ask(args: argparse.Namespace) -> dict[str, Any]:
    from phase_agent.agent_loop import AgentLoop
    from phase_agent.memory import InMemorySessionMemory, MemoryRunHandle
    from phase_agent.provider import LiteLLMProvider
    from phase_agent.recall.service import ContextRecallService
    from phase_agent.tool_utils import DirectToolExecutor

    config = _resolve_config(args)
    provider = LiteLLMProvider(config.model, timeout=args.timeout)
    memory = InMemorySessionMemory()
    recall = ContextRecallService(memory, provider, config=config.context_recall)
    loop = AgentLoop(
        provider,
        session_memory=memory,
        tool_executor=DirectToolExecutor(),
        recall_service=recall,
        config=config.agent_loop,
    )
    handle = MemoryRunHandle(session_id=f"cli-{uuid.uuid4().hex[:8]}", run_id=uuid.uuid4().hex)
    result = await loop.run("cli", args.question, args.system or "", run_handle=handle, model_name=config.model)
    return {
        "type": result.type,
        "content": result.content,
        "end_status": result.end_status,
        "total_steps": result.total_steps,
        "tool_calls_made": result.tool_calls_made,
        "escalation": asdict(result.escalation) if result.escalation else None,
    }


def cmd_ask(args: argparse.Namespace) -> None:
    from phase_agent.errors import AgentError

    try:
        outcome = asyncio.run(_run_ask(args))
    except AgentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.format == "json":
        print(json.dumps(outcome, indent=2))
        return
    print(outcome["content"])
    print(
        f"\n[{outcome['type']} status={outcome['end_status']} "
        f"steps={outcome['total_steps']} tool_calls={outcome['tool_calls_made']}]",
        file=sys.stderr,
    )


# ---------------------------------------------------------------------------
# config subcommand
# ---------------------------------------------------------------------------


def cmd_config(args: argparse.Namespace) -> None:
    from phase_agent.errors import AgentConfigError

    try:
        config = _resolve_config(args)
    except AgentConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(config.to_dict(), indent=2))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="phase_agent",
        description="Phase-driven tool-using agent with context recall",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV, "WARNING"),
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    ask_p = sub.add_parser("ask", help="Run the agent loop once on a question")
    ask_p.add_argument("question", help="User message for the run")
    ask_p.add_argument("--model", help="litellm model name (overrides config)")
    ask_p.add_argument("--config", help="Path to a .yaml/.yml/.json config file")
    ask_p.add_argument("--system", help="System context for the run")
    ask_p.add_argument("--timeout", type=int, default=60, help="Per-call timeout in seconds")
    ask_p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    ask_p.add_argument("--log-level", default=argparse.SUPPRESS, help="Logging level (overrides the global flag)")

    config_p = sub.add_parser("config", help="Print the resolved configuration")
    config_p.add_argument("--config", help="Path to a .yaml/.yml/.json config file")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "ask":
        cmd_ask(args)
    elif args.command == "config":
        cmd_config(args)


if __name__ == "__main__":
    main()
