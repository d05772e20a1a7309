"""Tool descriptor registry.

Holds the tools available to one run of the loop. Each descriptor pairs a
unique name and a JSON parameter schema (shown to the model) with an async
execution handle. Handles may run in-process (``function_tool``) or proxy to a
remote provider (``llm_toolloop.remote``); the registry does not care which.

Usage:
    from llm_toolloop import ToolRegistry, function_tool

    def add(a: int, b: int) -> int:
        '''Add two numbers.'''
        return a + b

    registry = ToolRegistry([function_tool(add)])
    result = await registry.execute(ToolCallIntent(id="c1", name="add", arguments={"a": 2, "b": 2}))
    result.value  # "4"
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json as _json
import logging
import time
import types
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import jsonschema

from llm_toolloop.conversation import ToolCallIntent, ToolFailure, ToolResult
from llm_toolloop.errors import (
    TOOL_EXECUTION_ERROR,
    TOOL_NOT_FOUND,
    TRANSPORT_ERROR,
    ConfigurationError,
    ToolExecutionError,
    ToolNotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]
"""Execution handle: receives the decoded argument payload, returns content."""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    """A callable tool: name, description, parameter schema, execution handle."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler = field(repr=False, compare=False)
    source: str = "local"

    def to_openai(self) -> dict[str, Any]:
        """Render in OpenAI function-calling format (what litellm expects)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolState(Generic[T]):
    """Lock-guarded cell for tool state shared across concurrent calls.

    Created by the caller and bound into tool handlers at registration time,
    so the registry itself stays stateless:

        counter = ToolState(0)

        async def increment() -> int:
            return await counter.update(lambda n: n + 1)
    """

    def __init__(self, value: T) -> None:
        self._value = value
        self._lock = asyncio.Lock()

    async def get(self) -> T:
        async with self._lock:
            return self._value

    async def set(self, value: T) -> None:
        async with self._lock:
            self._value = value

    async def update(self, fn: Callable[[T], T]) -> T:
        """Apply ``fn`` to the current value atomically and return the new value."""
        async with self._lock:
            self._value = fn(self._value)
            return self._value


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Name-unique set of ToolDescriptors for one loop invocation.

    Registration is additive and last-write-wins. A collision that was not
    acknowledged with ``replace=True`` is logged and recorded in
    ``warnings``; with ``strict=True`` it raises ConfigurationError instead.
    """

    def __init__(self, tools: Iterable[ToolDescriptor] = (), *, strict: bool = False) -> None:
        self.strict = strict
        self.warnings: list[str] = []
        self._tools: dict[str, ToolDescriptor] = {}
        self.extend(tools)

    def register(self, tool: ToolDescriptor, *, replace: bool = False) -> bool:
        """Add ``tool``. Returns True if it replaced an existing descriptor."""
        if not isinstance(tool, ToolDescriptor):
            raise ConfigurationError(f"Expected ToolDescriptor, got {type(tool).__name__}")
        if not tool.name:
            raise ConfigurationError("Tool name must be a non-empty string")
        existing = self._tools.get(tool.name)
        if existing is not None and not replace:
            message = (
                f"TOOL_COLLISION: {tool.name!r} from {tool.source!r} "
                f"shadows the tool already registered from {existing.source!r}"
            )
            if self.strict:
                raise ConfigurationError(message)
            self.warnings.append(message)
            logger.warning(message)
        elif existing is not None:
            logger.debug("Replacing tool %r (acknowledged)", tool.name)
        # Re-registration keeps the original position so list_tools() stays stable.
        self._tools[tool.name] = tool
        return existing is not None

    def extend(self, tools: Iterable[ToolDescriptor], *, replace: bool = False) -> None:
        for tool in tools:
            self.register(tool, replace=replace)

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolHandler:
        """Return the execution handle for ``name`` or raise ToolNotFoundError."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool.handler

    def list_tools(self) -> list[ToolDescriptor]:
        """Descriptors in registration order."""
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def to_openai(self) -> list[dict[str, Any]]:
        return [t.to_openai() for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"ToolRegistry({self.names()!r})"

    async def execute(self, intent: ToolCallIntent) -> ToolResult:
        """Run one intent and return exactly one correlated ToolResult.

        Every ``Exception`` becomes a failure payload. Arguments are passed
        to the handle unvalidated; schema checks belong to the handle.
        """
        t0 = time.monotonic()
        tool = self._tools.get(intent.name)
        if tool is None:
            logger.warning("Tool call %s names unknown tool %r", intent.id, intent.name)
            return ToolResult(
                call_id=intent.id,
                tool_name=intent.name,
                failure=ToolFailure(
                    kind=TOOL_NOT_FOUND,
                    error=TOOL_NOT_FOUND,
                    message=f"Unknown tool: {intent.name}",
                    detail={"available_tools": self.names()},
                ),
            )
        if intent.argument_error is not None:
            return ToolResult(
                call_id=intent.id,
                tool_name=intent.name,
                failure=ToolFailure(
                    kind=TOOL_EXECUTION_ERROR,
                    error="invalid_arguments",
                    message=intent.argument_error,
                ),
            )

        try:
            output = await tool.handler(dict(intent.arguments))
        except Exception as exc:
            result = failure_result(intent.id, intent.name, exc)
        else:
            result = success_result(intent.id, intent.name, output)
        result = dataclasses.replace(result, latency_s=round(time.monotonic() - t0, 3))
        if result.failure is not None:
            logger.warning(
                "Tool %s (%s) failed: kind=%s error=%s",
                intent.name, intent.id, result.failure.kind, result.failure.error,
            )
        return result


# ---------------------------------------------------------------------------
# Result construction
# ---------------------------------------------------------------------------


def success_result(call_id: str, tool_name: str, output: Any) -> ToolResult:
    """Wrap handle output: str passed through, ToolResult re-correlated, else JSON."""
    if isinstance(output, ToolResult):
        return ToolResult(
            call_id=call_id,
            tool_name=tool_name,
            value=output.value,
            failure=output.failure,
            structured=output.structured,
        )
    if isinstance(output, str):
        return ToolResult(call_id=call_id, tool_name=tool_name, value=output)
    try:
        value = _json.dumps(output, ensure_ascii=False)
    except (TypeError, ValueError):
        value = str(output)
    return ToolResult(call_id=call_id, tool_name=tool_name, value=value, structured=output)


def failure_result(call_id: str, tool_name: str, error: Exception) -> ToolResult:
    """Map an exception raised by a handle onto the failure taxonomy."""
    if isinstance(error, TransportError):
        failure = ToolFailure(
            kind=TRANSPORT_ERROR,
            error=TRANSPORT_ERROR,
            message=str(error),
            detail=error.detail,
        )
    elif isinstance(error, ToolExecutionError):
        failure = ToolFailure(
            kind=TOOL_EXECUTION_ERROR,
            error=error.code,
            message=str(error),
            detail=error.detail,
        )
    elif isinstance(error, ToolNotFoundError):
        failure = ToolFailure(kind=TOOL_NOT_FOUND, error=TOOL_NOT_FOUND, message=str(error))
    else:
        failure = ToolFailure(
            kind=TOOL_EXECUTION_ERROR,
            error=TOOL_EXECUTION_ERROR,
            message=f"{type(error).__name__}: {error}",
        )
    return ToolResult(call_id=call_id, tool_name=tool_name, failure=failure)


# ---------------------------------------------------------------------------
# Function-backed tools
# ---------------------------------------------------------------------------

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


def _nullable(schema: dict[str, Any]) -> dict[str, Any]:
    if not schema:
        return schema
    if isinstance(schema.get("type"), str):
        return {**schema, "type": [schema["type"], "null"]}
    return {"anyOf": [schema, {"type": "null"}]}


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X], Any.
    Raises ValueError for unsupported types.
    """
    if tp is Any:
        return {}

    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] / X | None → X, nullable
    if origin is Union or origin is types.UnionType:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _nullable(_type_to_json_schema(non_none[0]))

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X], Any."
    )


def callable_to_schema(fn: Callable[..., Any]) -> tuple[str, dict[str, Any]]:
    """Build (description, parameters schema) from a typed callable.

    Every parameter must be annotated. The description is the first line of
    the docstring.
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []

    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if name not in hints:
            raise ValueError(
                f"Parameter {name!r} of {getattr(fn, '__name__', fn)!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(name)
        properties[name] = prop

    description = ""
    if fn.__doc__:
        first_line = fn.__doc__.strip().split("\n")[0].strip()
        if first_line:
            description = first_line

    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return description, parameters


def function_tool(
    fn: Callable[..., Any],
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, Any] | None = None,
) -> ToolDescriptor:
    """Wrap a Python callable (sync or async) as a ToolDescriptor.

    The generated handle validates the argument payload against the schema
    with jsonschema before calling ``fn(**arguments)``; a mismatch surfaces
    as ToolExecutionError(code="invalid_arguments"). Sync callables run via
    ``asyncio.to_thread``, so a deadline on the call returns on time even
    though the thread itself runs to completion.
    """
    inferred_description, inferred_parameters = callable_to_schema(fn)
    schema = parameters if parameters is not None else inferred_parameters
    tool_name = name or getattr(fn, "__name__", "")
    is_async = inspect.iscoroutinefunction(fn)

    async def _handler(arguments: dict[str, Any]) -> Any:
        try:
            jsonschema.validate(arguments, schema)
        except jsonschema.ValidationError as exc:
            raise ToolExecutionError(
                f"Invalid arguments for {tool_name}: {exc.message}",
                code="invalid_arguments",
                detail={"path": list(exc.absolute_path)},
                original=exc,
            ) from exc
        if is_async:
            return await fn(**arguments)
        # Sync tools run in a worker thread; the event loop never blocks on them.
        return await asyncio.to_thread(fn, **arguments)

    return ToolDescriptor(
        name=tool_name,
        description=description if description is not None else inferred_description,
        parameters=schema,
        handler=_handler,
        source="local",
    )


def prepare_tools(
    tools: Iterable[Union[ToolDescriptor, Callable[..., Any]]],
    *,
    strict: bool = False,
) -> ToolRegistry:
    """Build a registry from descriptors and/or plain callables."""
    registry = ToolRegistry(strict=strict)
    for item in tools:
        descriptor = item if isinstance(item, ToolDescriptor) else function_tool(item)
        registry.register(descriptor)
    return registry
