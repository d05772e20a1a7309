"""Conversation state shared by the turn loop and the completion adapter.

A ``Conversation`` is an append-only sequence of immutable ``Message``s.
Append order is the transcript order the model sees:

    user prompt
    assistant(intents) -> tool_result(results, in intent order)   # per round
    ...
"""

from __future__ import annotations

import json as _json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Sequence, Union

from llm_toolloop.errors import FAILURE_KINDS


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


@dataclass(frozen=True)
class ToolCallIntent:
    """The model's request to invoke one tool.

    ``arguments`` is the decoded payload, validated later by the tool itself.
    ``argument_error`` is set when the model emitted a payload that could not
    be decoded; such intents still get a (failed) result.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    argument_error: str | None = None


@dataclass(frozen=True)
class ToolFailure:
    """Typed failure payload carried by a ToolResult."""

    kind: str
    error: str
    message: str = ""
    detail: Any = None

    def __post_init__(self) -> None:
        if self.kind not in FAILURE_KINDS:
            raise ValueError(f"Unknown failure kind {self.kind!r}")


@dataclass(frozen=True)
class ToolResult:
    """Outcome of exactly one ToolCallIntent, correlated by ``call_id``."""

    call_id: str
    tool_name: str
    value: str = ""
    failure: ToolFailure | None = None
    structured: Any = None
    latency_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_payload(self) -> dict[str, Any]:
        """Compact dict used for tool messages and result trails."""
        if self.failure is None:
            return {"id": self.call_id, "value": self.value}
        payload: dict[str, Any] = {
            "id": self.call_id,
            "error": self.failure.error,
            "kind": self.failure.kind,
        }
        if self.failure.message:
            payload["message"] = self.failure.message
        if self.failure.detail is not None:
            payload["detail"] = self.failure.detail
        return payload

    def render(self) -> str:
        """Text the model sees for this result."""
        if self.failure is None:
            return self.value
        return _json.dumps({"error": self.to_payload()}, ensure_ascii=False, default=str)


Part = Union[str, ToolCallIntent, ToolResult]


@dataclass(frozen=True)
class Message:
    role: Role
    parts: tuple[Part, ...] = ()

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(Role.USER, (text,))

    @classmethod
    def assistant(
        cls,
        text: str | None = None,
        intents: Sequence[ToolCallIntent] = (),
    ) -> "Message":
        parts: list[Part] = []
        if text:
            parts.append(text)
        parts.extend(intents)
        return cls(Role.ASSISTANT, tuple(parts))

    @classmethod
    def tool_results(cls, results: Sequence[ToolResult]) -> "Message":
        return cls(Role.TOOL_RESULT, tuple(results))

    @property
    def text(self) -> str:
        return "".join(p for p in self.parts if isinstance(p, str))

    @property
    def intents(self) -> tuple[ToolCallIntent, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolCallIntent))

    @property
    def results(self) -> tuple[ToolResult, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolResult))


class Conversation:
    """Append-only, ordered message history.

    Only the turn loop appends during a run; the completion adapter reads the
    ``messages`` snapshot. There is no API to remove or replace a message.
    """

    def __init__(self, preamble: str = "", messages: Sequence[Message] = ()) -> None:
        self.preamble = preamble
        self._messages: list[Message] = []
        for message in messages:
            self.append(message)

    def append(self, message: Message) -> None:
        if not isinstance(message, Message):
            raise TypeError(f"Conversation accepts Message objects, got {type(message).__name__}")
        self._messages.append(message)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def last_assistant(self) -> Message | None:
        for message in reversed(self._messages):
            if message.role is Role.ASSISTANT:
                return message
        return None

    def intents(self) -> list[ToolCallIntent]:
        return [i for m in self._messages for i in m.intents]

    def tool_results(self) -> list[ToolResult]:
        return [r for m in self._messages for r in m.results]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __repr__(self) -> str:
        return f"Conversation(messages={len(self._messages)}, preamble_chars={len(self.preamble)})"
