#!/usr/bin/env python3
"""Demo MCP tool provider for llm_toolloop.

Arithmetic, a clock, and a server-side counter. Run over stdio:

    python toolloop_demo_server.py

and connect with:

    conn = await connect({"command": "python", "args": ["toolloop_demo_server.py"]})

Tool errors carry a machine-readable code as their message
(``division_by_zero``, ``unknown_operation``) so clients can tell domain
failures apart.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

logger = logging.getLogger(__name__)

mcp = FastMCP("toolloop-demo")

_counter = 0
_counter_lock = asyncio.Lock()


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------


@mcp.tool()
def calculate(operation: str, a: float, b: float) -> str:
    """Perform basic arithmetic operations (add, subtract, multiply, divide).

    Args:
        operation: One of add, subtract, multiply, divide.
        a: Left operand.
        b: Right operand.

    Returns:
        The result as text.
    """
    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    elif operation == "divide":
        if b == 0:
            raise ToolError("division_by_zero")
        result = a / b
    else:
        raise ToolError("unknown_operation")
    # 2 + 2 -> "4", not "4.0"
    if float(result).is_integer():
        return str(int(result))
    return str(result)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@mcp.tool()
def get_current_time() -> str:
    """Get the current time and date (UTC, ISO 8601)."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Stateful counter
# ---------------------------------------------------------------------------


@mcp.tool()
async def increment_counter() -> str:
    """Increment an internal counter and return the new value."""
    global _counter  # noqa: PLW0603
    async with _counter_lock:
        _counter += 1
        return str(_counter)


@mcp.tool()
async def get_counter() -> str:
    """Get the current counter value."""
    async with _counter_lock:
        return str(_counter)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    mcp.run()
