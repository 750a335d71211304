"""YAML/Jinja2 prompt templates for the recall sub-agent's model calls.

Each recall mode (DECIDE, SELECT_CHUNKS, EXTRACT_EVIDENCE, RERANK_EVIDENCE)
has its own file under ``phase_agent/prompts/``. A template file holds a list
of chat messages whose ``content`` is Jinja2::

    name: select_chunks
    version: "1.0"
    messages:
      - role: system
        content: |
          You are context-recall-agent ... MODE=SELECT_CHUNKS.
      - role: user
        content: |
          Payload:
          {{ payload_json }}

Templates are parsed and compiled once per file version and re-rendered on
every call, since a single recall may issue a dozen model calls.

Usage::

    messages = render_prompt("select_chunks", payload_json=json.dumps(payload))
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import Environment, StrictUndefined, Template

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"

_env = Environment(undefined=StrictUndefined, autoescape=False)


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    path: Path
    messages: tuple[tuple[str, Template], ...]

    def render(self, **context: Any) -> list[dict[str, str]]:
        """Render every message; a variable missing from ``context`` raises."""
        rendered = [{"role": role, "content": tmpl.render(**context).strip()} for role, tmpl in self.messages]
        logger.debug(
            "Rendered prompt %s (%d messages, %d chars)",
            self.name,
            len(rendered),
            sum(len(m["content"]) for m in rendered),
        )
        return rendered


def resolve_prompt_path(template: str | Path) -> Path:
    """Bare names map into the bundled prompts dir; ``.yaml`` paths are used as given."""
    path = Path(template)
    if path.suffix in {".yaml", ".yml"}:
        return path if path.is_absolute() else Path.cwd() / path
    return PROMPTS_DIR / f"{path.name}.yaml"


@functools.lru_cache(maxsize=64)
def _load(path: Path, mtime_ns: int) -> PromptTemplate:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")
    entries = raw.get("messages")
    if not entries:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")
    if not isinstance(entries, list):
        raise ValueError(f"'messages' must be a list, got {type(entries).__name__}: {path}")

    compiled: list[tuple[str, Template]] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or "role" not in entry or "content" not in entry:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
        compiled.append((str(entry["role"]), _env.from_string(str(entry["content"]))))
    return PromptTemplate(name=str(raw.get("name") or path.stem), path=path, messages=tuple(compiled))


def load_prompt(template: str | Path) -> PromptTemplate:
    path = resolve_prompt_path(template)
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    return _load(path, path.stat().st_mtime_ns)


def render_prompt(template: str | Path, **context: Any) -> list[dict[str, str]]:
    """Load ``template`` (bundled name or YAML path) and render it as chat messages.

    Raises:
        FileNotFoundError: the template file does not exist.
        ValueError: the YAML has no usable ``messages`` list.
        jinja2.UndefinedError: a template variable is missing from ``context``.
    """
    return load_prompt(template).render(**context)
