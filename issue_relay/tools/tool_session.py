"""Tool-server sessions over the MCP stdio transport.

A ToolServerSession owns one launched server process; a ToolServerPool owns
every session of one agent run and releases them all on exit.
"""

import json
from contextlib import AsyncExitStack
from typing import Any, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from pydantic import BaseModel

from issue_relay.models.schemas import ToolServerConfig
from issue_relay.utils.logger import get_logger

logger = get_logger(__name__)


class ToolCallOutcome(BaseModel):
    text: str
    is_error: bool = False


class MissingToolError(RuntimeError):
    """A launched server does not offer a tool its stage requires."""

    def __init__(self, server: str, missing: list[str]):
        self.server = server
        self.missing = missing
        super().__init__(f"Tool server '{server}' does not provide required tool(s): {', '.join(missing)}")


def _wire_field(obj: Any, wire_name: str, default: Any = None) -> Any:
    """Read an MCP model field by its wire (camelCase) name."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(by_alias=True).get(wire_name, default)
    return getattr(obj, wire_name, default)


def render_tool_content(content: list[Any]) -> str:
    """Flatten MCP content blocks into text; non-text blocks become JSON."""
    parts: list[str] = []
    for block in content or []:
        if getattr(block, "type", None) == "text":
            parts.append(block.text)
        elif hasattr(block, "model_dump"):
            parts.append(json.dumps(block.model_dump(mode="json", by_alias=True, exclude_none=True)))
        else:
            parts.append(str(block))
    return "\n".join(parts)


class ToolServerSession:
    """One launched tool-execution environment."""

    def __init__(self, config: ToolServerConfig):
        self.config = config
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None

    @property
    def name(self) -> str:
        return self.config.name

    async def start(self) -> None:
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=dict(self.config.env) if self.config.env is not None else None,
        )
        stack = AsyncExitStack()
        self._stack = stack
        read, write = await stack.enter_async_context(stdio_client(params))
        self._session = await stack.enter_async_context(ClientSession(read, write))
        await self._session.initialize()
        logger.info("Tool server started", extra={
            "action": "tool_server_start", "tool": self.name,
            "extra": {"command": self.config.command},
        })

    async def list_tools(self) -> list[Any]:
        if self._session is None:
            raise RuntimeError(f"Tool server '{self.name}' is not started")
        result = await self._session.list_tools()
        return list(result.tools)

    async def call_tool(self, tool_name: str, arguments: dict) -> ToolCallOutcome:
        if self._session is None:
            raise RuntimeError(f"Tool server '{self.name}' is not started")
        result = await self._session.call_tool(tool_name, arguments=arguments)
        return ToolCallOutcome(
            text=render_tool_content(result.content),
            is_error=bool(_wire_field(result, "isError", False)),
        )

    async def close(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            logger.info("Tool server stopped", extra={"action": "tool_server_stop", "tool": self.name})


class ToolServerPool:
    """Launches every configured server for one run and indexes their tools.

    Use as an async context manager; every started session is closed on exit,
    including when a later server fails to start.
    """

    def __init__(self, configs: dict[str, ToolServerConfig], session_cls=ToolServerSession):
        self.configs = configs
        self._session_cls = session_cls
        self._sessions: list[ToolServerSession] = []
        self._tool_index: dict[str, ToolServerSession] = {}
        self._tool_defs: list[dict] = []

    async def __aenter__(self) -> "ToolServerPool":
        try:
            for config in self.configs.values():
                session = self._session_cls(config)
                self._sessions.append(session)
                await session.start()
                await self._index_tools(session)
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _index_tools(self, session: ToolServerSession) -> None:
        allowed = session.config.allowed_tools
        discovered = await session.list_tools()
        names = {tool.name for tool in discovered}

        missing = [t for t in session.config.required_tools if t not in names]
        if missing:
            logger.error("Required tools not offered by server", extra={
                "action": "tool_missing", "tool": session.name,
                "extra": {"missing": missing, "discovered": sorted(names)},
            })
            raise MissingToolError(session.name, missing)

        if allowed is not None:
            absent = [t for t in allowed if t not in names]
            if absent:
                logger.warning("Allowed tools not offered by server", extra={
                    "action": "tool_absent", "tool": session.name, "extra": {"absent": absent},
                })

        for tool in discovered:
            if allowed is not None and tool.name not in allowed:
                continue
            if tool.name in self._tool_index:
                logger.warning("Duplicate tool name ignored", extra={
                    "action": "tool_duplicate", "tool": tool.name,
                    "extra": {"server": session.name},
                })
                continue
            self._tool_index[tool.name] = session
            self._tool_defs.append({
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": _wire_field(tool, "inputSchema") or {"type": "object", "properties": {}},
            })

    def anthropic_tools(self) -> list[dict]:
        """Tool definitions in Anthropic format."""
        return list(self._tool_defs)

    def has_tool(self, tool_name: str) -> bool:
        return tool_name in self._tool_index

    async def call(self, tool_name: str, arguments: dict) -> ToolCallOutcome:
        return await self._tool_index[tool_name].call_tool(tool_name, arguments)

    async def close(self) -> None:
        sessions, self._sessions = self._sessions, []
        self._tool_index = {}
        self._tool_defs = []
        for session in reversed(sessions):
            try:
                await session.close()
            except Exception as e:
                logger.error("Tool server shutdown failed", extra={
                    "action": "tool_server_stop_error", "tool": session.name,
                    "extra": {"error": str(e)},
                })
