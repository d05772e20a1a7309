"""Completion model adapter.

The turn loop talks to the language model only through ``CompletionModel``:
given the conversation and the current tool descriptors it returns a
``ModelResponse`` that is either a final answer (no intents) or a set of
tool-call intents. ``LiteLLMCompletionModel`` is the provided implementation;
any object with a matching ``complete`` coroutine works.

Usage:
    model = LiteLLMCompletionModel("gpt-4o-mini", timeout=60)
    response = await model.complete(conversation, registry.list_tools())
    if response.is_final:
        print(response.text)
"""

from __future__ import annotations

import contextvars
import json as _json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Protocol, Sequence, runtime_checkable

import litellm

from llm_toolloop.config import DEFAULT_TOOL_RESULT_MAX_LENGTH
from llm_toolloop.conversation import Conversation, Role, ToolCallIntent
from llm_toolloop.errors import MalformedResponseError, ModelError, wrap_error
from llm_toolloop.registry import ToolDescriptor
from llm_toolloop.retry import RetryPolicy, run_async_with_retry

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True

# Per-run sink for non-fatal model diagnostics (retries). Set by the turn loop.
_run_warnings: contextvars.ContextVar[list[str] | None] = contextvars.ContextVar(
    "llm_toolloop_run_warnings", default=None,
)


def record_warning(message: str) -> None:
    """Report a diagnostic to the loop run in progress. No-op outside a run."""
    sink = _run_warnings.get()
    if sink is not None:
        sink.append(message)


@contextmanager
def collect_warnings() -> Iterator[list[str]]:
    """Collect record_warning() calls made in this context into a fresh list."""
    sink: list[str] = []
    token = _run_warnings.set(sink)
    try:
        yield sink
    finally:
        _run_warnings.reset(token)


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelResponse:
    """One classified model round.

    Attributes:
        text: Final answer text. Empty when intents were issued.
        intents: Tool-call intents, in the order the model emitted them.
        usage: Token counts (prompt_tokens, completion_tokens, total_tokens).
        cost: Cost in USD for this call.
        model: The model string that answered.
        finish_reason: Provider finish reason, empty if unavailable.
        discarded_text: Free text that accompanied tool calls and was dropped.
    """

    text: str = ""
    intents: tuple[ToolCallIntent, ...] = ()
    usage: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    model: str = ""
    finish_reason: str = ""
    discarded_text: str = ""

    @property
    def is_final(self) -> bool:
        return not self.intents


@runtime_checkable
class CompletionModel(Protocol):
    """Anything that can run one model round for the turn loop.

    Implementations raise ModelError (or any exception, which the loop wraps)
    on provider failure.
    """

    async def complete(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------


def classify_response(
    text: str | None,
    intents: Sequence[ToolCallIntent],
    **meta: Any,
) -> ModelResponse:
    """Keep the loop's branching binary: any intent makes this a tool round.

    Free text sent alongside tool calls is discarded for the round.
    """
    text = text or ""
    if intents:
        if text.strip():
            logger.debug("Discarding %d chars of free text sent with tool calls", len(text))
        return ModelResponse(text="", intents=tuple(intents), discarded_text=text, **meta)
    return ModelResponse(text=text, intents=(), **meta)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def parse_tool_calls(raw_tool_calls: Iterable[Any] | None) -> tuple[ToolCallIntent, ...]:
    """Normalize provider tool calls (OpenAI shape, dicts or objects) into intents.

    Arguments arrive as a JSON string or a mapping. Undecodable payloads are
    kept as an intent with ``argument_error`` set so the tool result can tell
    the model what went wrong. Missing or repeated ids are replaced so every
    intent in a round has a unique correlation id.
    """
    intents: list[ToolCallIntent] = []
    seen_ids: set[str] = set()
    for tc in raw_tool_calls or []:
        fn = _get(tc, "function", {}) or {}
        name = str(_get(fn, "name", "") or "")
        raw_arguments = _get(fn, "arguments", None)
        call_id = str(_get(tc, "id", "") or "")
        if not call_id or call_id in seen_ids:
            replacement = _new_call_id()
            logger.warning(
                "Tool call %r for %s has a missing or duplicate id; using %s",
                call_id, name, replacement,
            )
            call_id = replacement
        seen_ids.add(call_id)

        arguments: dict[str, Any] = {}
        argument_error: str | None = None
        if isinstance(raw_arguments, dict):
            arguments = dict(raw_arguments)
        elif raw_arguments is None or (isinstance(raw_arguments, str) and not raw_arguments.strip()):
            arguments = {}
        else:
            try:
                decoded = _json.loads(raw_arguments)
            except (TypeError, _json.JSONDecodeError) as exc:
                logger.error(
                    "Failed to parse tool call arguments for %s: %s", name, str(raw_arguments)[:200],
                )
                argument_error = f"Invalid JSON arguments: {exc}"
            else:
                if isinstance(decoded, dict):
                    arguments = decoded
                else:
                    argument_error = (
                        f"Tool arguments must be a JSON object, got {type(decoded).__name__}"
                    )
        intents.append(
            ToolCallIntent(id=call_id, name=name, arguments=arguments, argument_error=argument_error)
        )
    return tuple(intents)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def render_messages(
    conversation: Conversation,
    max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
) -> list[dict[str, Any]]:
    """Render the conversation as OpenAI chat messages.

    Each tool_result Message expands into one ``tool`` message per result, in
    the order the results were appended.
    """
    messages: list[dict[str, Any]] = []
    if conversation.preamble:
        messages.append({"role": "system", "content": conversation.preamble})

    for message in conversation.messages:
        if message.role is Role.USER:
            messages.append({"role": "user", "content": message.text})
        elif message.role is Role.ASSISTANT:
            rendered: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            intents = message.intents
            if intents:
                rendered["tool_calls"] = [
                    {
                        "id": intent.id,
                        "type": "function",
                        "function": {
                            "name": intent.name,
                            "arguments": _json.dumps(intent.arguments, ensure_ascii=False),
                        },
                    }
                    for intent in intents
                ]
            messages.append(rendered)
        else:
            for result in message.results:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": _truncate(result.render(), max_result_length),
                })
    return messages


# ---------------------------------------------------------------------------
# litellm implementation
# ---------------------------------------------------------------------------


def _extract_usage(response: Any) -> dict[str, Any]:
    """Extract token usage dict from litellm response."""
    usage = getattr(response, "usage", None)
    return {
        "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
        "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
    }


def _compute_cost(response: Any) -> float:
    """Compute cost via litellm.completion_cost; 0.0 when the model is unpriced."""
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as exc:
        logger.debug("completion_cost unavailable: %s", exc)
        return 0.0


class LiteLLMCompletionModel:
    """CompletionModel backed by ``litellm.acompletion``.

    Swap providers by changing the model string ("gpt-4o",
    "anthropic/claude-sonnet-4-5-20250929", "gemini/gemini-2.0-flash", ...).
    Transient provider failures are retried per ``retry``; everything that
    still fails is raised as a ModelError subclass.
    """

    def __init__(
        self,
        model: str,
        *,
        timeout: float = 60,
        retry: RetryPolicy | None = None,
        temperature: float | None = None,
        api_base: str | None = None,
        tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.temperature = temperature
        self.api_base = api_base
        self.tool_result_max_length = tool_result_max_length
        self.kwargs = kwargs
        self.warnings: list[str] = []
        """Retry warnings from the most recent complete() call."""

    def __repr__(self) -> str:
        return f"LiteLLMCompletionModel(model={self.model!r})"

    def _call_kwargs(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
    ) -> dict[str, Any]:
        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": render_messages(conversation, self.tool_result_max_length),
            "timeout": self.timeout,
            **self.kwargs,
        }
        if tools:
            call_kwargs["tools"] = [t.to_openai() for t in tools]
        if self.temperature is not None:
            call_kwargs["temperature"] = self.temperature
        if self.api_base is not None:
            call_kwargs["api_base"] = self.api_base
        return call_kwargs

    def _build_response(self, response: Any) -> ModelResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponseError(f"Malformed response from {self.model}: no choices")
        choice = choices[0]
        message = getattr(choice, "message", None)
        if message is None:
            raise MalformedResponseError(f"Malformed response from {self.model}: no message")

        content: str = getattr(message, "content", None) or ""
        intents = parse_tool_calls(getattr(message, "tool_calls", None))
        finish_reason: str = getattr(choice, "finish_reason", None) or ""

        if not content.strip() and not intents:
            raise MalformedResponseError(
                f"Empty content from {self.model} (finish_reason={finish_reason or 'unknown'})"
            )

        usage = _extract_usage(response)
        cost = _compute_cost(response)
        logger.debug(
            "Model call: model=%s tokens=%d cost=$%.6f finish=%s tool_calls=%d",
            self.model, usage["total_tokens"], cost, finish_reason, len(intents),
        )
        return classify_response(
            content,
            intents,
            usage=usage,
            cost=cost,
            model=self.model,
            finish_reason=finish_reason,
        )

    async def complete(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
    ) -> ModelResponse:
        call_kwargs = self._call_kwargs(conversation, tools)

        async def _invoke(attempt: int) -> ModelResponse:
            response = await litellm.acompletion(**call_kwargs)
            return self._build_response(response)

        warnings: list[str] = []
        self.warnings = warnings
        try:
            return await run_async_with_retry(
                caller="LiteLLMCompletionModel.complete",
                model=self.model,
                policy=self.retry,
                invoke=_invoke,
                warning_sink=warnings,
                logger=logger,
            )
        except ModelError:
            raise
        except Exception as exc:
            raise wrap_error(exc) from exc
        finally:
            for warning in warnings:
                record_warning(warning)
