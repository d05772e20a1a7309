"""Skill composition: bundles of tools, preamble text and context documents.

A skill is merged into an ``AgentConfig`` before the loop starts; the loop
itself only sees the resulting registry and system preamble.

YAML skill format::

    name: calculator
    description: Arithmetic helpers
    tools: [add, divide]
    preamble: |
      You can do arithmetic for {{ user_name }}. Always use the tools.
    documents:
      - id: rounding
        text: Round results to two decimal places.

Usage::

    skill = load_skill("skills/calculator.yaml", tools=[add_tool, divide_tool], user_name="Ada")
    agent = AgentConfig(preamble="You are helpful.").with_skill(skill)
    outcome = await run_agent(agent, "What is 2+2?", model)
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Union

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound

from llm_toolloop.config import DEFAULT_MAX_TURNS
from llm_toolloop.errors import ConfigurationError
from llm_toolloop.registry import ToolDescriptor, ToolRegistry

logger = logging.getLogger(__name__)

PREAMBLE_SEPARATOR = "\n\n"


class _InlineLoader(BaseLoader):
    """Jinja2 loader for inline strings (no filesystem template inheritance)."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined so a missing variable fails loud.
_env = Environment(loader=_InlineLoader(), undefined=StrictUndefined)


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Document:
    """Static context attached to the system preamble."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        return f"<file id: {self.id}>\n{self.text}\n</file>"


@dataclass(frozen=True)
class Skill:
    name: str
    description: str = ""
    tools: tuple[ToolDescriptor, ...] = ()
    preamble: str | None = None
    context_documents: tuple[Document, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError("Skill name is required")
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "context_documents", tuple(self.context_documents))


def merge_preamble(existing: str | None, addition: str | None, separator: str = PREAMBLE_SEPARATOR) -> str:
    """Append ``addition`` after ``separator`` if ``existing`` is non-empty, else replace."""
    if not addition:
        return existing or ""
    if existing:
        return f"{existing}{separator}{addition}"
    return addition


@dataclass(frozen=True)
class AgentConfig:
    """Immutable agent assembly: every ``with_*`` returns a new config.

    ``skills`` records the names of merged skills, in merge order.
    """

    preamble: str = ""
    tools: tuple[ToolDescriptor, ...] = ()
    documents: tuple[Document, ...] = ()
    skills: tuple[str, ...] = ()
    max_turns: int = DEFAULT_MAX_TURNS
    strict_tools: bool = False

    def with_preamble(self, text: str) -> "AgentConfig":
        return dataclasses.replace(self, preamble=merge_preamble(self.preamble, text))

    def with_tool(self, tool: ToolDescriptor) -> "AgentConfig":
        if not isinstance(tool, ToolDescriptor):
            raise ConfigurationError(f"Expected ToolDescriptor, got {type(tool).__name__}")
        return dataclasses.replace(self, tools=self.tools + (tool,))

    def with_document(self, document: Document) -> "AgentConfig":
        return dataclasses.replace(self, documents=self.documents + (document,))

    def with_skill(self, skill: Skill) -> "AgentConfig":
        logger.debug(
            "Adding skill %r: %d tools, %d documents",
            skill.name, len(skill.tools), len(skill.context_documents),
        )
        return dataclasses.replace(
            self,
            preamble=merge_preamble(self.preamble, skill.preamble),
            tools=self.tools + skill.tools,
            documents=self.documents + skill.context_documents,
            skills=self.skills + (skill.name,),
        )

    def build_registry(self, strict: bool | None = None) -> ToolRegistry:
        """Fresh registry with every tool, in the order they were added."""
        return ToolRegistry(self.tools, strict=self.strict_tools if strict is None else strict)

    def system_preamble(self) -> str:
        if not self.documents:
            return self.preamble
        attachments = "\n".join(d.render() for d in self.documents)
        return merge_preamble(self.preamble, f"<attachments>\n{attachments}\n</attachments>")


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

ToolSource = Union[ToolRegistry, Mapping[str, ToolDescriptor], Iterable[ToolDescriptor]]


def _tool_lookup(tools: ToolSource | None) -> dict[str, ToolDescriptor]:
    if tools is None:
        return {}
    if isinstance(tools, ToolRegistry):
        return {t.name: t for t in tools.list_tools()}
    if isinstance(tools, Mapping):
        return dict(tools)
    return {t.name: t for t in tools}


def load_skill(path: str | Path, tools: ToolSource | None = None, **context: Any) -> Skill:
    """Load a skill definition from YAML and render its preamble with Jinja2.

    Args:
        path: YAML file (absolute, or relative to cwd).
        tools: Where the names under ``tools:`` are looked up.
        **context: Template variables for the preamble.

    Raises:
        FileNotFoundError: If ``path`` doesn't exist.
        yaml.YAMLError: If the YAML is malformed.
        jinja2.UndefinedError: If the preamble uses a variable missing from context.
        ConfigurationError: Bad structure, missing name, or unknown tool name.
    """
    path = Path(path)
    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.exists():
        raise FileNotFoundError(f"Skill definition not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Skill YAML must be a mapping, got {type(raw).__name__}: {path}")

    available = _tool_lookup(tools)
    tool_names = raw.get("tools") or []
    if not isinstance(tool_names, list):
        raise ConfigurationError(f"'tools' must be a list of names: {path}")
    missing = [n for n in tool_names if n not in available]
    if missing:
        raise ConfigurationError(
            f"Skill {raw.get('name')!r} references unknown tools {missing}; "
            f"available: {sorted(available)}"
        )

    documents: list[Document] = []
    for i, doc in enumerate(raw.get("documents") or []):
        if not isinstance(doc, dict) or "id" not in doc or "text" not in doc:
            raise ConfigurationError(f"Document {i} must have 'id' and 'text' keys: {path}")
        documents.append(Document(
            id=str(doc["id"]),
            text=str(doc["text"]),
            metadata=dict(doc.get("metadata") or {}),
        ))

    preamble = raw.get("preamble")
    if preamble is not None:
        preamble = _env.from_string(str(preamble)).render(**context).strip()

    skill = Skill(
        name=str(raw.get("name") or ""),
        description=str(raw.get("description") or ""),
        tools=tuple(available[n] for n in tool_names),
        preamble=preamble or None,
        context_documents=tuple(documents),
    )
    logger.debug(
        "Loaded skill %s from %s (%d tools, %d documents)",
        skill.name, path.name, len(skill.tools), len(skill.context_documents),
    )
    return skill
