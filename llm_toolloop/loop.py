"""Turn loop: drive the model, dispatch tool calls, fold results back in.

Usage:
    from llm_toolloop import LiteLLMCompletionModel, ToolRegistry, function_tool, run_tool_loop

    def add(a: int, b: int) -> int:
        '''Add two integers.'''
        return a + b

    outcome = await run_tool_loop(
        "What is 2+2?",
        ToolRegistry([function_tool(add)]),
        LiteLLMCompletionModel("gpt-4o-mini"),
        max_turns=5,
        tool_timeout=30,
    )
    if outcome.state is LoopState.ANSWERED:
        print(outcome.text)

Every run ends in exactly one terminal state. Tool failures are results the
model sees; only model failures, deadlines on the model call, and external
cancellation end the run as FAILED. Configuration problems raise
ConfigurationError before the first model call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Sequence, TypeVar

from llm_toolloop.config import DEFAULT_MAX_TURNS, LoopConfig
from llm_toolloop.conversation import (
    Conversation,
    Message,
    ToolCallIntent,
    ToolFailure,
    ToolResult,
)
from llm_toolloop.errors import (
    CANCELLED,
    TIMEOUT,
    ConfigurationError,
    LoopCancelledError,
    MalformedResponseError,
    ModelError,
    ModelTimeoutError,
    ToolLoopError,
    wrap_error,
)
from llm_toolloop.model import CompletionModel, ModelResponse, collect_warnings
from llm_toolloop.registry import ToolDescriptor, ToolRegistry
from llm_toolloop.skills import AgentConfig, merge_preamble

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


class LoopState(str, Enum):
    RUNNING = "running"
    ANSWERED = "answered"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FAILED = "failed"


@dataclass
class LoopOutcome:
    """Terminal state of one loop invocation plus everything it produced.

    ``text`` is the final answer for ANSWERED. For BUDGET_EXHAUSTED it is the
    last assistant content (usually empty, since tool rounds discard free
    text) and ``tool_results`` carries the partial progress. For FAILED,
    ``error`` holds the cause and ``conversation`` is left as it was.
    """

    state: LoopState
    conversation: Conversation
    text: str = ""
    turns: int = 0
    model_calls: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    error: ToolLoopError | None = None
    usage: dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    warnings: list[str] = field(default_factory=list)
    """Registry collisions, model retries and other non-fatal diagnostics."""

    @property
    def ok(self) -> bool:
        return self.state is LoopState.ANSWERED

    @property
    def tool_calls(self) -> int:
        return len(self.tool_results)

    def payload(self) -> dict[str, Any]:
        """JSON-serialisable summary (state tag, text, tool-result trail)."""
        error: dict[str, Any] | None = None
        if self.error is not None:
            error = {"type": type(self.error).__name__, "message": str(self.error)}
        return {
            "state": self.state.value,
            "text": self.text,
            "turns": self.turns,
            "model_calls": self.model_calls,
            "tool_results": [r.to_payload() for r in self.tool_results],
            "error": error,
            "usage": dict(self.usage),
            "cost": self.cost,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_config(
    config: LoopConfig | None,
    max_turns: Any,
    tool_timeout: float | None,
    model_timeout: float | None,
    parallel_tool_calls: bool,
) -> LoopConfig:
    if config is None:
        config = LoopConfig(
            max_turns=max_turns,
            tool_timeout=tool_timeout,
            model_timeout=model_timeout,
            parallel_tool_calls=parallel_tool_calls,
        )
    elif not isinstance(config, LoopConfig):
        raise ConfigurationError(f"config must be a LoopConfig, got {type(config).__name__}")
    return config.validate()


async def _with_deadline(awaitable: Awaitable[T], timeout: float | None) -> T:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


async def _await_or_cancel(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    On cancellation the in-flight task is abandoned (asyncio-cancelled) and
    LoopCancelledError is raised.
    """
    task = asyncio.ensure_future(awaitable)
    if cancel_event is None:
        return await task
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task not in done:
        raise LoopCancelledError("Loop cancelled while awaiting the model or tools")
    return task.result()


def _timeout_result(intent: ToolCallIntent, timeout: float) -> ToolResult:
    return ToolResult(
        call_id=intent.id,
        tool_name=intent.name,
        failure=ToolFailure(
            kind=TIMEOUT,
            error=TIMEOUT,
            message=f"Tool {intent.name} did not finish within {timeout}s",
        ),
    )


def _cancelled_result(intent: ToolCallIntent) -> ToolResult:
    return ToolResult(
        call_id=intent.id,
        tool_name=intent.name,
        failure=ToolFailure(
            kind=CANCELLED,
            error=CANCELLED,
            message="Loop cancelled before the tool call finished",
        ),
    )


async def _execute_with_deadline(
    registry: ToolRegistry,
    intent: ToolCallIntent,
    timeout: float | None,
) -> ToolResult:
    try:
        return await _with_deadline(registry.execute(intent), timeout)
    except asyncio.TimeoutError:
        logger.warning("Tool %s (%s) timed out after %ss", intent.name, intent.id, timeout)
        return _timeout_result(intent, timeout or 0.0)


async def _dispatch(
    registry: ToolRegistry,
    intents: Sequence[ToolCallIntent],
    config: LoopConfig,
    cancel_event: asyncio.Event | None,
) -> tuple[list[ToolResult], bool]:
    """Run one round's intents. Returns (results in intent order, cancelled).

    Results always cover every intent: calls that never finished because of
    cancellation get a ``cancelled`` failure.
    """
    if config.parallel_tool_calls and len(intents) > 1:
        tasks = [
            asyncio.ensure_future(_execute_with_deadline(registry, intent, config.tool_timeout))
            for intent in intents
        ]
        try:
            await _await_or_cancel(asyncio.gather(*tasks), cancel_event)
        except LoopCancelledError:
            results = []
            for intent, task in zip(intents, tasks):
                if task.done() and not task.cancelled():
                    results.append(task.result())
                else:
                    task.cancel()
                    results.append(_cancelled_result(intent))
            return results, True
        # Completion order is irrelevant; results follow emission order.
        return [task.result() for task in tasks], False

    results: list[ToolResult] = []
    for index, intent in enumerate(intents):
        try:
            result = await _await_or_cancel(
                _execute_with_deadline(registry, intent, config.tool_timeout),
                cancel_event,
            )
        except LoopCancelledError:
            results.extend(_cancelled_result(i) for i in intents[index:])
            return results, True
        results.append(result)
    return results, False


def _check_response(response: Any) -> ModelResponse:
    if not isinstance(response, ModelResponse):
        raise MalformedResponseError(
            f"Completion model returned {type(response).__name__}, expected ModelResponse"
        )
    seen: set[str] = set()
    for intent in response.intents:
        if not intent.id:
            raise MalformedResponseError(f"Tool call for {intent.name!r} has no correlation id")
        if intent.id in seen:
            raise MalformedResponseError(f"Duplicate tool call id {intent.id!r} in one response")
        seen.add(intent.id)
    return response


def _accumulate_usage(outcome: LoopOutcome, response: ModelResponse) -> None:
    for key, value in response.usage.items():
        if isinstance(value, int) and not isinstance(value, bool):
            outcome.usage[key] = outcome.usage.get(key, 0) + value
    outcome.cost += response.cost


def _fail(outcome: LoopOutcome, error: ToolLoopError) -> LoopOutcome:
    outcome.state = LoopState.FAILED
    outcome.error = error
    logger.error(
        "Tool loop failed after %d turns: %s: %s", outcome.turns, type(error).__name__, error,
    )
    return outcome


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


async def run_tool_loop(
    prompt: str,
    registry: ToolRegistry,
    model: CompletionModel,
    max_turns: int = DEFAULT_MAX_TURNS,
    *,
    tool_timeout: float | None = None,
    model_timeout: float | None = None,
    parallel_tool_calls: bool = True,
    cancel_event: asyncio.Event | None = None,
    preamble: str = "",
    conversation: Conversation | None = None,
    config: LoopConfig | None = None,
) -> LoopOutcome:
    """Run the model/tool loop until an answer, the turn budget, or a fatal error.

    Args:
        prompt: Initial user text, appended as the first new message.
        registry: Tools available for this run. Its descriptors are
            snapshotted once and shown to the model every round.
        model: Any CompletionModel.
        max_turns: Model rounds allowed (>= 1).
        tool_timeout: Per-tool-call deadline in seconds. A timed-out call
            becomes a ``timeout`` result and the loop continues.
        model_timeout: Per-model-call deadline in seconds. Fatal on expiry.
        parallel_tool_calls: Dispatch a round's intents concurrently.
            Results are appended in intent order either way.
        cancel_event: Setting this event ends the run as FAILED with
            LoopCancelledError.
        preamble: System text, merged after any preamble already on
            ``conversation``.
        conversation: Existing history to continue. A new one is created
            when omitted.
        config: A LoopConfig to use instead of the individual policy
            arguments (max_turns, timeouts, parallel_tool_calls).

    Returns:
        LoopOutcome with the terminal state.

    Raises:
        ConfigurationError: Invalid budget, timeouts, registry or model.
    """
    cfg = _resolve_config(config, max_turns, tool_timeout, model_timeout, parallel_tool_calls)
    if not isinstance(registry, ToolRegistry):
        raise ConfigurationError(f"registry must be a ToolRegistry, got {type(registry).__name__}")
    if not isinstance(model, CompletionModel):
        raise ConfigurationError(
            f"model must implement CompletionModel.complete(), got {type(model).__name__}"
        )
    if not isinstance(prompt, str):
        raise ConfigurationError(f"prompt must be a string, got {type(prompt).__name__}")

    if conversation is None:
        conversation = Conversation(preamble=preamble)
    elif preamble:
        conversation.preamble = merge_preamble(conversation.preamble, preamble)

    tools: list[ToolDescriptor] = registry.list_tools()

    outcome = LoopOutcome(
        state=LoopState.RUNNING,
        conversation=conversation,
        warnings=list(registry.warnings),
    )
    conversation.append(Message.user(prompt))
    remaining = cfg.max_turns
    logger.info(
        "Tool loop start: tools=%d max_turns=%d parallel=%s",
        len(tools), cfg.max_turns, cfg.parallel_tool_calls,
    )

    with collect_warnings() as run_warnings:
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return _fail(outcome, LoopCancelledError("Loop cancelled before the model call"))

                # -- model round ----------------------------------------------
                try:
                    response = await _await_or_cancel(
                        _with_deadline(model.complete(conversation, tools), cfg.model_timeout),
                        cancel_event,
                    )
                    response = _check_response(response)
                except LoopCancelledError as exc:
                    return _fail(outcome, exc)
                except asyncio.TimeoutError as exc:
                    outcome.model_calls += 1
                    return _fail(
                        outcome,
                        ModelTimeoutError(
                            f"Model call exceeded the {cfg.model_timeout}s deadline"
                            if cfg.model_timeout is not None
                            else "Model call timed out",
                            original=exc,
                        ),
                    )
                except ModelError as exc:
                    outcome.model_calls += 1
                    return _fail(outcome, exc)
                except Exception as exc:
                    outcome.model_calls += 1
                    return _fail(outcome, wrap_error(exc))

                outcome.model_calls += 1
                outcome.turns += 1
                remaining -= 1
                _accumulate_usage(outcome, response)

                if response.is_final:
                    conversation.append(Message.assistant(response.text))
                    outcome.state = LoopState.ANSWERED
                    outcome.text = response.text
                    logger.info(
                        "Tool loop answered after %d turns (%d tool calls)",
                        outcome.turns, outcome.tool_calls,
                    )
                    return outcome

                # -- tool round -----------------------------------------------
                conversation.append(Message.assistant(intents=response.intents))
                logger.info(
                    "Turn %d: %d tool calls: %s",
                    outcome.turns, len(response.intents),
                    ", ".join(i.name for i in response.intents),
                )
                results, cancelled = await _dispatch(registry, response.intents, cfg, cancel_event)
                conversation.append(Message.tool_results(results))
                outcome.tool_results.extend(results)

                if cancelled:
                    return _fail(outcome, LoopCancelledError("Loop cancelled during tool dispatch"))

                if remaining <= 0:
                    outcome.state = LoopState.BUDGET_EXHAUSTED
                    outcome.text = response.discarded_text
                    warning = (
                        f"BUDGET_EXHAUSTED: {cfg.max_turns} turns used without a final answer "
                        f"({outcome.tool_calls} tool calls)"
                    )
                    outcome.warnings.append(warning)
                    logger.warning(warning)
                    return outcome
        finally:
            outcome.warnings.extend(run_warnings)


def run_tool_loop_sync(
    prompt: str,
    registry: ToolRegistry,
    model: CompletionModel,
    max_turns: int = DEFAULT_MAX_TURNS,
    **options: Any,
) -> LoopOutcome:
    """Blocking wrapper around run_tool_loop for scripts (not inside a running loop)."""
    return asyncio.run(run_tool_loop(prompt, registry, model, max_turns, **options))


async def run_agent(
    agent: AgentConfig,
    prompt: str,
    model: CompletionModel,
    **options: Any,
) -> LoopOutcome:
    """Build the registry and system preamble from ``agent`` and run the loop.

    ``options`` are passed through to run_tool_loop (max_turns, timeouts, ...).
    """
    registry = agent.build_registry()
    preamble = agent.system_preamble()
    if "preamble" in options:
        preamble = merge_preamble(preamble, options.pop("preamble"))
    options.setdefault("max_turns", agent.max_turns)
    return await run_tool_loop(prompt, registry, model, preamble=preamble, **options)
