"""Integration tests against the demo tool server and a real model API.

Spawns ``toolloop_demo_server.py`` over stdio. The model-driven tests also
need an API key for LLM_TOOLLOOP_TEST_MODEL (default gpt-4o-mini).

Usage:
    LLM_TOOLLOOP_INTEGRATION=1 pytest tests/integration_test.py -v
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

if os.environ.get("LLM_TOOLLOOP_INTEGRATION", "").strip() != "1":
    pytest.skip(
        "Integration tests disabled by default. Set LLM_TOOLLOOP_INTEGRATION=1 to enable.",
        allow_module_level=True,
    )

from llm_toolloop import (
    LiteLLMCompletionModel,
    LoopState,
    ToolRegistry,
    connect,
    function_tool,
    run_tool_loop,
)

SERVER = str(Path(__file__).resolve().parent.parent / "toolloop_demo_server.py")
STDIO = {"command": sys.executable, "args": ["-u", SERVER]}
MODEL = os.environ.get("LLM_TOOLLOOP_TEST_MODEL", "gpt-4o-mini")


# ---------------------------------------------------------------------------
# Demo server over stdio (no model)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestDemoServer:
    async def test_list_and_call(self) -> None:
        async with await connect(STDIO, name="demo") as conn:
            assert set(conn.names()) >= {"calculate", "get_current_time", "increment_counter", "get_counter"}
            assert conn.list_tools() is conn.list_tools()

            result = await conn.call("calculate", {"operation": "add", "a": 2, "b": 2}, call_id="c1")
            assert result.to_payload() == {"id": "c1", "value": "4"}

    async def test_division_by_zero_is_domain_error(self) -> None:
        async with await connect(STDIO, name="demo") as conn:
            result = await conn.call("calculate", {"operation": "divide", "a": 1, "b": 0}, call_id="d1")
            assert result.to_payload()["error"] == "division_by_zero"
            assert result.failure is not None
            assert result.failure.kind == "tool_execution_error"

    async def test_unknown_tool_is_not_found(self) -> None:
        async with await connect(STDIO, name="demo") as conn:
            result = await conn.call("nope", {}, call_id="c2")
            assert result.failure is not None
            assert result.failure.kind == "tool_not_found"

    async def test_counter_state_lives_on_the_server(self) -> None:
        async with await connect(STDIO, name="demo") as conn:
            await asyncio.gather(*[conn.call("increment_counter") for _ in range(5)])
            result = await conn.call("get_counter")
            assert result.value == "5"

    async def test_missing_command_is_connect_error(self) -> None:
        from llm_toolloop import ConnectError

        with pytest.raises(ConnectError):
            await connect({"command": "definitely-not-a-real-binary-xyz"}, init_timeout=5)


# ---------------------------------------------------------------------------
# Full loop with a real model
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestLoopWithModel:
    async def test_local_tool(self) -> None:
        def add(a: int, b: int) -> int:
            """Add two integers."""
            return a + b

        outcome = await run_tool_loop(
            "What is 1234 + 4321? Use the add tool.",
            ToolRegistry([function_tool(add)]),
            LiteLLMCompletionModel(MODEL, temperature=0.0),
            max_turns=4,
            model_timeout=120,
        )
        assert outcome.state is LoopState.ANSWERED
        assert "5555" in outcome.text.replace(",", "")
        assert outcome.tool_calls >= 1

    async def test_remote_tools(self) -> None:
        async with await connect(STDIO, name="demo") as conn:
            outcome = await run_tool_loop(
                "What is 123 multiplied by 456? Use the calculate tool.",
                ToolRegistry(conn.list_tools()),
                LiteLLMCompletionModel(MODEL, temperature=0.0),
                max_turns=4,
                tool_timeout=30,
                model_timeout=120,
            )
        assert outcome.state is LoopState.ANSWERED
        assert "56088" in outcome.text.replace(",", "")
