"""Remote tool proxy over the Model Context Protocol.

Adapts tools hosted by an external MCP server into ordinary ToolDescriptors,
so the registry and the turn loop never see the transport:

    async with await connect({"command": "python", "args": ["-u", "server.py"]}) as conn:
        registry = ToolRegistry(conn.list_tools())
        outcome = await run_tool_loop("What is 2+2?", registry, model)

    # or a streamed HTTP endpoint
    conn = await connect({"url": "http://localhost:3000/mcp"}, name="calc")

The tool list is snapshotted at connect time. Every ``call`` is a fresh
round trip; the proxy keeps no application state besides the session.
Transport and protocol failures come back as ``transport_error`` results,
never as raised exceptions.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import re
import time
from contextlib import AsyncExitStack
from typing import Annotated, Any, Literal, Mapping, Union

from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from llm_toolloop import __version__
from llm_toolloop.config import DEFAULT_CONNECT_TIMEOUT
from llm_toolloop.conversation import ToolResult
from llm_toolloop.errors import (
    ConfigurationError,
    ConnectError,
    ToolExecutionError,
    ToolNotFoundError,
    TransportError,
)
from llm_toolloop.registry import (
    ToolDescriptor,
    ToolRegistry,
    failure_result,
    success_result,
)

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "llm-toolloop"
DEFAULT_CLIENT_VERSION = __version__

_ERROR_CODE_RE = re.compile(r"[a-z][a-z0-9_]*")
# FastMCP wraps tool exceptions as "Error executing tool <name>: <message>"
_TOOL_ERROR_RE = re.compile(r"Error executing tool [^:]+: (?P<message>.+)", re.DOTALL)
_UNKNOWN_TOOL_RE = re.compile(r"Unknown tool: (?P<name>\S+)")


# ---------------------------------------------------------------------------
# Transport configuration
# ---------------------------------------------------------------------------


class StdioTransportConfig(BaseModel):
    """Spawn the provider as a subprocess and talk over its stdin/stdout."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    transport: Literal["stdio"] = "stdio"
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None


class HttpTransportConfig(BaseModel):
    """Connect to a provider over MCP streamable HTTP."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    transport: Literal["streamable_http"] = "streamable_http"
    url: str
    headers: dict[str, str] | None = None


TransportConfig = Annotated[
    Union[StdioTransportConfig, HttpTransportConfig],
    Field(discriminator="transport"),
]

_TRANSPORT_ADAPTER: TypeAdapter[Any] = TypeAdapter(TransportConfig)


def parse_transport_config(
    raw: StdioTransportConfig | HttpTransportConfig | Mapping[str, Any] | str,
) -> StdioTransportConfig | HttpTransportConfig:
    """Validate a transport config.

    Accepts a config object, a bare ``http(s)://`` URL, or a mapping in the
    familiar ``{"command", "args", "env", "cwd"}`` / ``{"url", "headers"}``
    shape. The transport is inferred when ``transport`` is absent.
    """
    if isinstance(raw, (StdioTransportConfig, HttpTransportConfig)):
        return raw
    if isinstance(raw, str):
        if not raw.startswith(("http://", "https://")):
            raise ConfigurationError(f"Transport URL must be http(s): {raw!r}")
        raw = {"url": raw}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Transport config must be a mapping, got {type(raw).__name__}")
    data = dict(raw)
    if "transport" not in data:
        data["transport"] = "streamable_http" if "url" in data else "stdio"
    try:
        return _TRANSPORT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid transport config: {exc}") from exc


def _import_mcp() -> tuple[Any, ...]:
    """Import mcp client components.

    Returns:
        (ClientSession, StdioServerParameters, stdio_client, streamablehttp_client, Implementation)
    """
    from mcp import ClientSession, StdioServerParameters
    from mcp.client.stdio import stdio_client
    from mcp.client.streamable_http import streamablehttp_client
    from mcp.types import Implementation

    return ClientSession, StdioServerParameters, stdio_client, streamablehttp_client, Implementation


# ---------------------------------------------------------------------------
# Result mapping
# ---------------------------------------------------------------------------


def _content_to_text(content: Any) -> str:
    parts: list[str] = []
    for item in content or []:
        text = getattr(item, "text", None)
        if isinstance(text, str):
            parts.append(text)
            continue
        mime_type = getattr(item, "mimeType", None)
        if mime_type:
            parts.append(f"[{getattr(item, 'type', 'blob')} content: {mime_type}]")
        else:
            parts.append(str(item))
    return "\n".join(parts)


def _error_code(text: str | None, default: str) -> str:
    """Pull a machine-readable code out of a provider error message."""
    candidate = (text or "").strip()
    wrapped = _TOOL_ERROR_RE.fullmatch(candidate)
    if wrapped:
        candidate = wrapped.group("message").strip()
    return candidate if _ERROR_CODE_RE.fullmatch(candidate) else default


def _is_unknown_tool(text: str | None, tool_name: str) -> bool:
    match = _UNKNOWN_TOOL_RE.fullmatch((text or "").strip())
    return match is not None and match.group("name") == tool_name


def _input_schema(tool: Any) -> dict[str, Any]:
    schema = getattr(tool, "inputSchema", None)
    parameters = dict(schema) if isinstance(schema, Mapping) else {}
    parameters.setdefault("type", "object")
    if not isinstance(parameters.get("properties"), Mapping):
        parameters["properties"] = {}
    return parameters


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class RemoteToolConnection:
    """Open session to one MCP tool provider plus its connect-time tool list.

    Created by :func:`connect`. The session may be shared by concurrent calls
    within a round. Close it (or use ``async with``) when the agent ends.
    """

    def __init__(
        self,
        name: str,
        config: StdioTransportConfig | HttpTransportConfig,
        session: Any,
        stack: AsyncExitStack,
        listed_tools: Any = (),
    ) -> None:
        self.name = name
        self.config = config
        self._session = session
        self._stack = stack
        self._closed = False
        self._tools: tuple[ToolDescriptor, ...] = tuple(self._descriptor(t) for t in listed_tools)

    def __repr__(self) -> str:
        return (
            f"RemoteToolConnection(name={self.name!r}, transport={self.config.transport!r}, "
            f"tools={len(self._tools)}, closed={self._closed})"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def list_tools(self) -> tuple[ToolDescriptor, ...]:
        """Connect-time snapshot; the same tuple on every call."""
        return self._tools

    def names(self) -> list[str]:
        return [t.name for t in self._tools]

    def register_into(self, registry: ToolRegistry, *, replace: bool = False) -> ToolRegistry:
        registry.extend(self._tools, replace=replace)
        return registry

    def _descriptor(self, tool: Any) -> ToolDescriptor:
        return ToolDescriptor(
            name=tool.name,
            description=getattr(tool, "description", None) or "",
            parameters=_input_schema(tool),
            handler=functools.partial(self._invoke, tool.name),
            source=f"mcp:{self.name}",
        )

    async def _invoke(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """One request/response exchange. Raises tool-level errors only."""
        if self._closed:
            raise TransportError(f"Connection {self.name!r} is closed")
        try:
            result = await self._session.call_tool(tool_name, arguments)
        except McpError as exc:
            error = exc.error
            if _is_unknown_tool(error.message, tool_name):
                raise ToolNotFoundError(tool_name) from exc
            if error.code == INVALID_PARAMS:
                raise ToolExecutionError(
                    error.message,
                    code=_error_code(error.message, "invalid_params"),
                    detail=error.data,
                    original=exc,
                ) from exc
            raise TransportError(
                f"Protocol error {error.code} from {self.name!r}: {error.message}",
                detail={"protocol_code": error.code, "data": error.data},
                original=exc,
            ) from exc
        except Exception as exc:
            raise TransportError(
                f"Transport failure calling {tool_name!r} on {self.name!r}: "
                f"{type(exc).__name__}: {exc}",
                original=exc,
            ) from exc

        text = _content_to_text(getattr(result, "content", None))
        structured = getattr(result, "structuredContent", None)
        if getattr(result, "isError", False):
            if _is_unknown_tool(text, tool_name):
                raise ToolNotFoundError(tool_name)
            raise ToolExecutionError(
                text or f"{tool_name} reported an error",
                code=_error_code(text, "tool_execution_error"),
                detail=structured,
            )
        return ToolResult(call_id="", tool_name=tool_name, value=text, structured=structured)

    async def call(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        call_id: str = "",
    ) -> ToolResult:
        """Invoke a remote tool and return a ToolResult (never raises Exception)."""
        t0 = time.monotonic()
        try:
            output = await self._invoke(name, dict(arguments or {}))
        except Exception as exc:
            result = failure_result(call_id, name, exc)
        else:
            result = success_result(call_id, name, output)
        return dataclasses.replace(result, latency_s=round(time.monotonic() - t0, 3))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()
        logger.info("Closed tool provider connection %r", self.name)

    async def __aenter__(self) -> "RemoteToolConnection":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


async def _close_after_failure(stack: AsyncExitStack, name: str) -> None:
    try:
        await stack.aclose()
    except Exception as exc:
        logger.warning("Cleanup after failed connect to %r raised %s: %s", name, type(exc).__name__, exc)


async def connect(
    config: StdioTransportConfig | HttpTransportConfig | Mapping[str, Any] | str,
    *,
    name: str = "remote",
    init_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    client_name: str = DEFAULT_CLIENT_NAME,
    client_version: str = DEFAULT_CLIENT_VERSION,
) -> RemoteToolConnection:
    """Open a session to a tool provider and snapshot its tool list.

    Raises:
        ConfigurationError: If ``config`` is not a valid transport config.
        ConnectError: If the transport, the MCP handshake, or the initial
            tool listing fails. Nothing is left open in that case.
    """
    cfg = parse_transport_config(config)
    (
        ClientSession,
        StdioServerParameters,
        stdio_client,
        streamablehttp_client,
        Implementation,
    ) = _import_mcp()

    stack = AsyncExitStack()
    try:
        if isinstance(cfg, StdioTransportConfig):
            params = StdioServerParameters(
                command=cfg.command,
                args=list(cfg.args),
                env=cfg.env,
                cwd=cfg.cwd,
            )
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        else:
            streams = await stack.enter_async_context(
                streamablehttp_client(cfg.url, headers=cfg.headers)
            )
            read_stream, write_stream = streams[0], streams[1]

        session = await stack.enter_async_context(
            ClientSession(
                read_stream,
                write_stream,
                client_info=Implementation(name=client_name, version=client_version),
            )
        )
        await asyncio.wait_for(session.initialize(), timeout=init_timeout)
        tools_result = await asyncio.wait_for(session.list_tools(), timeout=init_timeout)
    except Exception as exc:
        await _close_after_failure(stack, name)
        raise ConnectError(
            f"Failed to connect to tool provider {name!r} ({cfg.transport}): "
            f"{type(exc).__name__}: {exc}",
            original=exc,
        ) from exc

    connection = RemoteToolConnection(name, cfg, session, stack, tools_result.tools)
    logger.info(
        "Connected to tool provider %r over %s: %d tools",
        name, cfg.transport, len(connection.list_tools()),
    )
    return connection


# ---------------------------------------------------------------------------
# Pool: several providers behind one registry
# ---------------------------------------------------------------------------


class RemoteToolPool:
    """Connections to several named providers, merged into one registry.

    Usage:
        async with RemoteToolPool({"calc": {"command": "python", "args": ["calc.py"]}}) as pool:
            outcome = await run_tool_loop(prompt, pool.registry, model)

    A tool name offered by two providers is a collision: the later provider
    wins and the registry records a warning (or raises if ``strict``).
    """

    def __init__(
        self,
        servers: Mapping[str, StdioTransportConfig | HttpTransportConfig | Mapping[str, Any] | str],
        *,
        init_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = DEFAULT_CLIENT_VERSION,
        strict: bool = False,
    ) -> None:
        self.servers = {name: parse_transport_config(cfg) for name, cfg in servers.items()}
        self.init_timeout = init_timeout
        self.client_name = client_name
        self.client_version = client_version
        self.connections: dict[str, RemoteToolConnection] = {}
        self.registry = ToolRegistry(strict=strict)

    async def __aenter__(self) -> "RemoteToolPool":
        try:
            for name, cfg in self.servers.items():
                connection = await connect(
                    cfg,
                    name=name,
                    init_timeout=self.init_timeout,
                    client_name=self.client_name,
                    client_version=self.client_version,
                )
                self.connections[name] = connection
                connection.register_into(self.registry)
        except BaseException:
            await self.close()
            raise
        logger.info(
            "RemoteToolPool: connected %d providers, %d tools",
            len(self.connections), len(self.registry),
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def list_tools(self) -> list[ToolDescriptor]:
        return self.registry.list_tools()

    async def close(self) -> None:
        # Reverse connect order.
        for name in reversed(list(self.connections)):
            await self.connections.pop(name).close()
