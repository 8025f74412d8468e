"""
Tool registry

Maps tool names to their definition (description, JSON input schema, async
handler). Handlers are composed with hooks at registration time via ``wrap``;
the usage-tracking hook counts calls per identity before delegating.
"""

import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from mcph_Server_API.app.core.AuthNZ.identity import AuthContext
from mcph_Server_API.app.core.Storage.usage import UsageTracker

from .errors import ToolError


@dataclass
class ToolCallContext:
    """What a tool handler knows about its caller"""
    auth: AuthContext
    request_id: str
    session_id: Optional[str] = None
    log: Any = field(default=None, repr=False)

    def __post_init__(self):
        if self.log is None:
            self.log = logger.bind(
                request_id=self.request_id,
                session_id=self.session_id,
                caller_id=self.auth.caller_id,
            )

    @property
    def caller_id(self) -> str:
        return self.auth.caller_id

    @property
    def client_name(self) -> Optional[str]:
        return self.auth.client_name


ToolResult = Dict[str, Any]
ToolHandler = Callable[[Dict[str, Any], ToolCallContext], Awaitable[ToolResult]]
BeforeHook = Callable[[Dict[str, Any], ToolCallContext], Awaitable[None]]
AfterHook = Callable[[Dict[str, Any], ToolCallContext, ToolResult], Awaitable[None]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler = field(compare=False, repr=False)
    original_handler: ToolHandler = field(compare=False, repr=False)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolNotFoundError(LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool not found: {name}")


def wrap(handler: ToolHandler, before: Optional[BeforeHook] = None, after: Optional[AfterHook] = None) -> ToolHandler:
    """Compose ``before`` and ``after`` hooks around ``handler`` without mutating it"""

    @functools.wraps(handler)
    async def wrapped(args: Dict[str, Any], ctx: ToolCallContext) -> ToolResult:
        if before is not None:
            await before(args, ctx)
        result = await handler(args, ctx)
        if after is not None:
            await after(args, ctx, result)
        return result

    return wrapped


def usage_tracking_wrapper(tracker: UsageTracker, tool_name: str) -> BeforeHook:
    """Before-hook counting one call for identified callers; failures are logged, never raised"""

    async def track(args: Dict[str, Any], ctx: ToolCallContext) -> None:
        if ctx.auth.is_anonymous:
            ctx.log.debug(f"Anonymous call to {tool_name}; usage not tracked")
            return
        client = ctx.client_name or "unknown"
        ctx.log.bind(audit=True).info(f"Tool {tool_name} called by user {ctx.caller_id} from client {client}")
        try:
            usage = await tracker.increment(ctx.caller_id)
            ctx.log.info(
                f"Tool usage incremented for user {ctx.caller_id}: {tool_name}, client: {client}, "
                f"count: {usage.count}, remaining: {usage.remaining}"
            )
        except Exception as e:
            ctx.log.error(f"Error incrementing tool usage: {e}")

    return track


class ToolRegistry:
    """Name -> ToolDefinition. Last registration wins; identical re-registration is a no-op."""

    def __init__(self, usage_tracker: Optional[UsageTracker] = None):
        self.usage_tracker = usage_tracker
        self._tools: Dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        description: str,
        input_schema: Dict[str, Any],
        handler: ToolHandler,
    ) -> ToolDefinition:
        existing = self._tools.get(name)
        if (
            existing is not None
            and existing.original_handler == handler
            and existing.description == description
            and existing.input_schema == input_schema
        ):
            return existing

        wrapped = handler
        if self.usage_tracker is not None:
            wrapped = wrap(handler, before=usage_tracking_wrapper(self.usage_tracker, name))

        definition = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema,
            handler=wrapped,
            original_handler=handler,
        )
        if existing is not None:
            logger.warning(f"Tool {name} re-registered; replacing previous definition")
        self._tools[name] = definition
        return definition

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def list(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def describe_all(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    async def invoke(self, name: str, args: Dict[str, Any], ctx: ToolCallContext) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        try:
            return await tool.handler(args, ctx)
        except ToolError as e:
            ctx.log.info(f"Tool {name} returned error {e.code.value}: {e.message}")
            return e.to_result(ctx.request_id)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
