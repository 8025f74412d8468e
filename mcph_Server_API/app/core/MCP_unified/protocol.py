"""
MCP Protocol implementation

Implements JSON-RPC 2.0 envelope handling and method routing for the tool
registry: initialize, ping, tools/list, tools/call, batches and notifications.
Transports (stateless HTTP, SSE) hand parsed bodies to ``MCPProtocol`` and
serialize whatever it returns.
"""

import uuid
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from jsonschema import exceptions as jsonschema_exceptions
from jsonschema import validators as jsonschema_validators
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from mcph_Server_API.app.core.AuthNZ.identity import AuthContext, anonymous
from mcph_Server_API.app.core.Logging.log_context import mask_secrets

from .config import MCPConfig, get_config
from .registry import ToolCallContext, ToolNotFoundError, ToolRegistry


# JSON-RPC 2.0 Error Codes
class ErrorCode(IntEnum):
    """Standard JSON-RPC 2.0 error codes"""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Custom error codes (must be -32000 to -32099)
    SERVER_ERROR = -32000
    AUTHORIZATION_ERROR = -32001


class InvalidParamsException(Exception):
    """Raised when tool arguments fail schema validation"""

    def __init__(self, message: str = "Invalid params", issues: Optional[List[Dict[str, Any]]] = None):
        self.issues = issues or []
        super().__init__(message)


class MCPRequest(BaseModel):
    """MCP request following JSON-RPC 2.0 specification"""
    jsonrpc: Literal["2.0"] = Field(default="2.0")
    method: str = Field(..., min_length=1, max_length=100)
    params: Optional[Dict[str, Any]] = None
    id: Optional[Union[str, int]] = None

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        """Validate method name"""
        if any(char in v for char in ["'", '"', ';', '--', '/*', '*/']):
            raise ValueError("Invalid characters in method name")
        return v

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class MCPError(BaseModel):
    """MCP error structure"""
    code: int
    message: str
    data: Optional[Any] = None


class MCPResponse(BaseModel):
    """MCP response following JSON-RPC 2.0 specification"""
    jsonrpc: Literal["2.0"] = Field(default="2.0")
    result: Optional[Any] = None
    error: Optional[MCPError] = None
    id: Optional[Union[str, int]] = None

    @model_validator(mode="after")
    def _validate_error_result(self):
        """Ensure exactly one of result or error is set"""
        if self.error is not None and self.result is not None:
            raise ValueError("Response cannot have both result and error")
        if self.error is None and self.result is None:
            raise ValueError("Response must have either result or error")
        return self

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.error is not None:
            body["error"] = self.error.model_dump(exclude_none=True)
        else:
            body["result"] = self.result
        body["id"] = self.id
        return body


def error_envelope(code: int, message: str, request_id: Optional[Union[str, int]] = None, data: Any = None) -> Dict[str, Any]:
    """Wire-format error envelope for transport-level failures"""
    return MCPResponse(error=MCPError(code=code, message=message, data=data), id=request_id).to_wire()


class RequestContext:
    """Context for request processing"""
    def __init__(
        self,
        request_id: str,
        auth: Optional[AuthContext] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.request_id = request_id
        self.auth = auth or anonymous()
        self.session_id = session_id
        self.metadata = metadata or {}
        self.start_time = datetime.now(timezone.utc)
        self.logger = logger.bind(
            request_id=request_id,
            caller_id=self.auth.caller_id,
            client_name=self.auth.client_name,
            session_id=session_id,
        )


class MCPProtocol:
    """
    JSON-RPC dispatcher bound to one tool registry.

    Features:
    - JSON-RPC 2.0 compliance (single and batch requests)
    - Notifications never produce a response
    - Tool arguments validated against the tool's JSON Schema
    - Internal failures reported as -32603 without leaking details
    """

    def __init__(self, registry: ToolRegistry, config: Optional[MCPConfig] = None):
        self.registry = registry
        self.config = config or get_config()
        self.protocol_version = self.config.protocol_version

        self.handlers: Dict[str, Callable] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
        }

    async def process_request(
        self,
        request: Union[Dict[str, Any], List[Any], MCPRequest],
        context: Optional[RequestContext] = None
    ) -> Union[MCPResponse, List[MCPResponse], None]:
        """
        Process an MCP request and return response.

        Args:
            request: Parsed JSON body (object or batch array) or an MCPRequest
            context: Request context with identity/session info

        Returns:
            MCPResponse, a list of them for batches, or None when nothing is owed
        """
        if context is None:
            context = RequestContext(request_id=str(uuid.uuid4()))

        if isinstance(request, list):
            if not request:
                return self._error_response(ErrorCode.INVALID_REQUEST, "Invalid Request: empty batch")
            responses: List[MCPResponse] = []
            for item in request:
                resp = await self.process_request(item, context)
                if isinstance(resp, MCPResponse):
                    responses.append(resp)
            return responses if responses else None

        if not isinstance(request, MCPRequest):
            if not isinstance(request, dict):
                return self._error_response(ErrorCode.INVALID_REQUEST, "Invalid Request")
            try:
                request = MCPRequest(**request)
            except ValidationError as e:
                if "id" not in request:
                    context.logger.warning("Dropping malformed notification")
                    return None
                req_id = request.get("id")
                if not isinstance(req_id, (str, int)):
                    req_id = None
                return self._error_response(
                    ErrorCode.INVALID_REQUEST,
                    "Invalid request format",
                    req_id,
                    data={"issues": [
                        {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                        for err in e.errors()
                    ]},
                )

        log = context.logger
        log.info(f"MCP request: method={request.method}, caller={context.auth.caller_id}")

        if request.is_notification:
            await self._handle_notification(request, context)
            return None

        handler = self.handlers.get(request.method)
        if handler is None:
            return self._error_response(
                ErrorCode.METHOD_NOT_FOUND,
                f"Method not found: {request.method}",
                request.id
            )

        try:
            result = await handler(request.params or {}, context)
        except ToolNotFoundError as e:
            return self._error_response(ErrorCode.METHOD_NOT_FOUND, str(e), request.id)
        except InvalidParamsException as ive:
            data = {"issues": ive.issues} if ive.issues else None
            return self._error_response(ErrorCode.INVALID_PARAMS, str(ive), request.id, data=data)
        except Exception as e:
            log.exception(f"MCP request failed: method={request.method}, error={mask_secrets(str(e))}")
            msg = mask_secrets(str(e)) if self.config.debug_mode else "Internal error"
            return self._error_response(ErrorCode.INTERNAL_ERROR, msg, request.id)

        elapsed = (datetime.now(timezone.utc) - context.start_time).total_seconds()
        log.info(f"MCP request completed: method={request.method}, elapsed={elapsed:.3f}s")
        return MCPResponse(result=result if result is not None else {}, id=request.id)

    async def _handle_notification(self, request: MCPRequest, context: RequestContext):
        if request.method == "notifications/initialized":
            context.logger.info("Client finished initialization")
            return
        if request.method.startswith("notifications/"):
            context.logger.debug(f"Notification received: {request.method}")
            return
        handler = self.handlers.get(request.method)
        if handler is None:
            return
        try:
            await handler(request.params or {}, context)
        except Exception as e:
            context.logger.warning(f"Notification {request.method} failed: {mask_secrets(str(e))}")

    def _error_response(
        self,
        code: ErrorCode,
        message: str,
        request_id: Optional[Union[str, int]] = None,
        data: Optional[Any] = None
    ) -> MCPResponse:
        """Create an error response"""
        return MCPResponse(
            error=MCPError(code=code, message=message, data=data),
            id=request_id
        )

    # Protocol method handlers

    async def _handle_initialize(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Handle initialize request"""
        client_info = params.get("clientInfo") or {}
        context.logger.info(f"Client initializing: {client_info}")
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {
                "tools": {"listChanged": True},
                "resources": {},
                "prompts": {},
                "logging": {},
                "roots": {},
                "sampling": {},
            },
            "serverInfo": {
                "name": self.config.server_name,
                "version": self.config.server_version,
            },
        }

    async def _handle_ping(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Handle ping request"""
        return {"pong": True, "timestamp": datetime.now(timezone.utc).isoformat()}

    async def _handle_tools_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"tools": self.registry.describe_all()}

    async def _handle_tools_call(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        tool_name = params.get("name")
        if not isinstance(tool_name, str) or not tool_name:
            raise InvalidParamsException(
                "Invalid params", [{"path": "name", "message": "Tool name is required"}]
            )

        tool = self.registry.get(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name)

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidParamsException(
                "Invalid params", [{"path": "arguments", "message": "Arguments must be an object"}]
            )

        self._validate_input_schema(tool.input_schema, arguments)

        call_ctx = ToolCallContext(
            auth=context.auth,
            request_id=context.request_id,
            session_id=context.session_id,
            log=context.logger.bind(tool=tool_name),
        )
        return await self.registry.invoke(tool_name, arguments, call_ctx)

    @staticmethod
    def _validate_input_schema(schema: Dict[str, Any], args: Dict[str, Any]) -> None:
        """Raise InvalidParamsException with one issue per schema violation"""
        if not schema:
            return
        try:
            validator_cls = jsonschema_validators.validator_for(schema)
            validator = validator_cls(schema)
        except jsonschema_exceptions.SchemaError as e:
            logger.error(f"Tool input schema is invalid: {e.message}")
            raise
        issues = [
            {
                "path": ".".join(str(p) for p in err.absolute_path),
                "message": err.message,
            }
            for err in sorted(validator.iter_errors(args), key=lambda err: list(map(str, err.absolute_path)))
        ]
        if issues:
            raise InvalidParamsException("Invalid params", issues)
