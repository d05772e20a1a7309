"""Tests for llm_toolloop.registry.

Tests cover:
- ToolRegistry: ordering, lookup, collisions (warn / strict / replace)
- execute(): success, unknown tool, argument errors, handle exceptions
- function_tool(): schema from annotations, jsonschema validation, sync/async
- ToolState: lock-guarded shared state under concurrent updates
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Optional

import pytest

from llm_toolloop.conversation import ToolCallIntent, ToolResult
from llm_toolloop.errors import (
    ConfigurationError,
    ToolExecutionError,
    ToolNotFoundError,
    TransportError,
)
from llm_toolloop.registry import (
    ToolDescriptor,
    ToolRegistry,
    ToolState,
    callable_to_schema,
    failure_result,
    function_tool,
    prepare_tools,
    success_result,
)


def _descriptor(name: str, output: Any = "ok", source: str = "local") -> ToolDescriptor:
    async def handler(arguments: dict[str, Any]) -> Any:
        return output

    return ToolDescriptor(
        name=name,
        description=f"{name} tool",
        parameters={"type": "object", "properties": {}},
        handler=handler,
        source=source,
    )


def add(a: int, b: int) -> int:
    """Add two integers.

    Longer explanation that is not part of the description.
    """
    return a + b


async def divide(a: float, b: float) -> float:
    """Divide a by b."""
    if b == 0:
        raise ToolExecutionError("Cannot divide by zero", code="division_by_zero")
    return a / b


# ---------------------------------------------------------------------------
# Registry structure
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_list_is_stable_and_exact(self) -> None:
        registry = ToolRegistry([_descriptor("A"), _descriptor("B")])
        first = [t.name for t in registry.list_tools()]
        second = [t.name for t in registry.list_tools()]
        assert first == ["A", "B"]
        assert first == second
        assert len(registry) == 2
        assert "A" in registry and "C" not in registry

    def test_resolve(self) -> None:
        tool = _descriptor("A")
        registry = ToolRegistry([tool])
        assert registry.resolve("A") is tool.handler

    def test_resolve_unknown_raises(self) -> None:
        with pytest.raises(ToolNotFoundError):
            ToolRegistry().resolve("C")

    def test_collision_warns_and_last_wins(self, caplog: pytest.LogCaptureFixture) -> None:
        first = _descriptor("A", output="first", source="local")
        second = _descriptor("A", output="second", source="mcp:calc")
        with caplog.at_level(logging.WARNING, logger="llm_toolloop.registry"):
            registry = ToolRegistry([first, second, _descriptor("B")])
        assert registry.get("A") is second
        assert registry.names() == ["A", "B"]
        assert len(registry.warnings) == 1
        assert "TOOL_COLLISION" in registry.warnings[0]
        assert "mcp:calc" in registry.warnings[0]
        assert "TOOL_COLLISION" in caplog.text

    def test_collision_strict_raises(self) -> None:
        registry = ToolRegistry([_descriptor("A")], strict=True)
        with pytest.raises(ConfigurationError, match="TOOL_COLLISION"):
            registry.register(_descriptor("A"))

    def test_acknowledged_replace_is_silent(self) -> None:
        registry = ToolRegistry([_descriptor("A")], strict=True)
        replaced = registry.register(_descriptor("A", output="new"), replace=True)
        assert replaced is True
        assert registry.warnings == []

    def test_rejects_non_descriptor(self) -> None:
        with pytest.raises(ConfigurationError):
            ToolRegistry().register(add)  # type: ignore[arg-type]

    def test_rejects_empty_name(self) -> None:
        with pytest.raises(ConfigurationError):
            ToolRegistry([_descriptor("")])

    def test_to_openai(self) -> None:
        rendered = ToolRegistry([_descriptor("A")]).to_openai()
        assert rendered == [{
            "type": "function",
            "function": {
                "name": "A",
                "description": "A tool",
                "parameters": {"type": "object", "properties": {}},
            },
        }]


# ---------------------------------------------------------------------------
# execute()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExecute:
    async def test_success_correlates_id(self) -> None:
        registry = ToolRegistry([function_tool(add)])
        result = await registry.execute(ToolCallIntent(id="c1", name="add", arguments={"a": 2, "b": 2}))
        assert result.ok
        assert result.to_payload() == {"id": "c1", "value": "4"}
        assert result.structured == 4
        assert result.latency_s >= 0

    async def test_unknown_tool(self) -> None:
        registry = ToolRegistry([_descriptor("A"), _descriptor("B")])
        result = await registry.execute(ToolCallIntent(id="c9", name="C"))
        assert result.call_id == "c9"
        assert result.failure is not None
        assert result.failure.kind == "tool_not_found"
        assert result.failure.detail == {"available_tools": ["A", "B"]}

    async def test_unknown_tool_never_reaches_a_handle(self) -> None:
        calls: list[dict[str, Any]] = []

        async def handler(arguments: dict[str, Any]) -> str:
            calls.append(arguments)
            return "x"

        registry = ToolRegistry([ToolDescriptor("A", "", {"type": "object"}, handler)])
        await registry.execute(ToolCallIntent(id="c1", name="a"))
        assert calls == []

    async def test_argument_error_skips_handle(self) -> None:
        calls: list[dict[str, Any]] = []

        async def handler(arguments: dict[str, Any]) -> str:
            calls.append(arguments)
            return "x"

        registry = ToolRegistry([ToolDescriptor("A", "", {"type": "object"}, handler)])
        result = await registry.execute(
            ToolCallIntent(id="c1", name="A", argument_error="Invalid JSON arguments: Expecting value")
        )
        assert calls == []
        assert result.failure is not None
        assert result.failure.kind == "tool_execution_error"
        assert result.failure.error == "invalid_arguments"

    async def test_domain_error_keeps_code(self) -> None:
        registry = ToolRegistry([function_tool(divide)])
        result = await registry.execute(ToolCallIntent(id="d1", name="divide", arguments={"a": 1, "b": 0}))
        assert result.to_payload()["error"] == "division_by_zero"
        assert result.failure is not None
        assert result.failure.kind == "tool_execution_error"

    async def test_transport_error_is_tagged_distinctly(self) -> None:
        async def handler(arguments: dict[str, Any]) -> str:
            raise TransportError("connection reset")

        registry = ToolRegistry([ToolDescriptor("remote", "", {"type": "object"}, handler)])
        result = await registry.execute(ToolCallIntent(id="r1", name="remote"))
        assert result.to_payload()["error"] == "transport_error"
        assert result.failure is not None
        assert result.failure.kind == "transport_error"

    async def test_arbitrary_exception_is_captured(self) -> None:
        async def handler(arguments: dict[str, Any]) -> str:
            raise KeyError("missing")

        registry = ToolRegistry([ToolDescriptor("bad", "", {"type": "object"}, handler)])
        result = await registry.execute(ToolCallIntent(id="b1", name="bad"))
        assert result.failure is not None
        assert result.failure.kind == "tool_execution_error"
        assert result.failure.message.startswith("KeyError")

    async def test_handle_gets_a_copy_of_arguments(self) -> None:
        async def handler(arguments: dict[str, Any]) -> str:
            arguments["mutated"] = True
            return "x"

        intent = ToolCallIntent(id="c1", name="m", arguments={"a": 1})
        registry = ToolRegistry([ToolDescriptor("m", "", {"type": "object"}, handler)])
        await registry.execute(intent)
        assert intent.arguments == {"a": 1}


# ---------------------------------------------------------------------------
# Result construction
# ---------------------------------------------------------------------------


class TestResultConstruction:
    def test_string_passes_through(self) -> None:
        result = success_result("c1", "t", "plain text")
        assert result.value == "plain text"
        assert result.structured is None

    def test_dict_is_json(self) -> None:
        result = success_result("c1", "t", {"x": [1, 2]})
        assert json.loads(result.value) == {"x": [1, 2]}
        assert result.structured == {"x": [1, 2]}

    def test_unserialisable_falls_back_to_str(self) -> None:
        result = success_result("c1", "t", object())
        assert result.value.startswith("<object object")

    def test_tool_result_is_recorrelated(self) -> None:
        inner = ToolResult(call_id="", tool_name="t", value="v")
        result = success_result("c7", "t", inner)
        assert result.call_id == "c7"
        assert result.value == "v"

    def test_failure_from_tool_not_found(self) -> None:
        result = failure_result("c1", "x", ToolNotFoundError("x"))
        assert result.failure is not None
        assert result.failure.kind == "tool_not_found"


# ---------------------------------------------------------------------------
# function_tool / schema generation
# ---------------------------------------------------------------------------


class TestCallableToSchema:
    def test_basic(self) -> None:
        description, parameters = callable_to_schema(add)
        assert description == "Add two integers."
        assert parameters == {
            "type": "object",
            "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
            "required": ["a", "b"],
        }

    def test_optional_and_defaults(self) -> None:
        def search(query: str, limit: int = 10, tags: Optional[list[str]] = None) -> str:
            return query

        _, parameters = callable_to_schema(search)
        assert parameters["required"] == ["query"]
        assert parameters["properties"]["limit"] == {"type": "integer", "default": 10}
        assert parameters["properties"]["tags"] == {
            "type": ["array", "null"], "items": {"type": "string"}, "default": None,
        }

    def test_unannotated_parameter_rejected(self) -> None:
        def bad(x):  # type: ignore[no-untyped-def]
            return x

        with pytest.raises(ValueError, match="no type annotation"):
            callable_to_schema(bad)

    def test_unsupported_type_rejected(self) -> None:
        def bad(x: set[int]) -> None:
            return None

        with pytest.raises(ValueError, match="Unsupported type annotation"):
            callable_to_schema(bad)


@pytest.mark.asyncio
class TestFunctionTool:
    async def test_sync_callable(self) -> None:
        tool = function_tool(add)
        assert tool.name == "add"
        assert tool.source == "local"
        assert await tool.handler({"a": 1, "b": 2}) == 3

    async def test_async_callable(self) -> None:
        tool = function_tool(divide, name="div")
        assert tool.name == "div"
        assert await tool.handler({"a": 9, "b": 3}) == 3

    async def test_schema_violation_is_invalid_arguments(self) -> None:
        tool = function_tool(add)
        with pytest.raises(ToolExecutionError) as exc_info:
            await tool.handler({"a": "two", "b": 2})
        assert exc_info.value.code == "invalid_arguments"
        assert exc_info.value.detail == {"path": ["a"]}

    async def test_missing_required_argument(self) -> None:
        tool = function_tool(add)
        with pytest.raises(ToolExecutionError) as exc_info:
            await tool.handler({"a": 1})
        assert exc_info.value.code == "invalid_arguments"

    async def test_optional_parameter_accepts_null(self) -> None:
        def lookup(key: str, limit: Optional[int] = None) -> str:
            return f"{key}:{limit}"

        tool = function_tool(lookup)
        assert tool.parameters["properties"]["limit"]["type"] == ["integer", "null"]
        assert await tool.handler({"key": "a", "limit": None}) == "a:None"
        assert await tool.handler({"key": "a", "limit": 3}) == "a:3"
        with pytest.raises(ToolExecutionError):
            await tool.handler({"key": "a", "limit": "three"})

    async def test_optional_any_stays_unconstrained(self) -> None:
        def store(value: Optional[Any] = None) -> str:
            return repr(value)

        assert function_tool(store).parameters["properties"]["value"] == {"default": None}

    async def test_sync_callable_runs_off_the_event_loop(self) -> None:
        def which_thread() -> str:
            return threading.current_thread().name

        assert await function_tool(which_thread).handler({}) != threading.current_thread().name

    async def test_explicit_schema_and_description(self) -> None:
        def echo(**kwargs: Any) -> str:
            return json.dumps(kwargs, sort_keys=True)

        schema = {"type": "object", "properties": {"x": {"type": "string"}}}
        tool = function_tool(echo, description="Echo back", parameters=schema)
        assert tool.description == "Echo back"
        assert tool.parameters is schema
        assert await tool.handler({"x": "hi"}) == '{"x": "hi"}'

    async def test_prepare_tools_mixes_callables_and_descriptors(self) -> None:
        registry = prepare_tools([add, _descriptor("B")])
        assert registry.names() == ["add", "B"]


# ---------------------------------------------------------------------------
# ToolState
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestToolState:
    async def test_get_set(self) -> None:
        state = ToolState(1)
        await state.set(5)
        assert await state.get() == 5

    async def test_concurrent_updates_are_serialised(self) -> None:
        counter = ToolState(0)

        async def increment() -> int:
            return await counter.update(lambda n: n + 1)

        registry = ToolRegistry([function_tool(increment)])
        results = await asyncio.gather(*[
            registry.execute(ToolCallIntent(id=f"c{i}", name="increment")) for i in range(20)
        ])
        assert await counter.get() == 20
        assert sorted(int(r.value) for r in results) == list(range(1, 21))
