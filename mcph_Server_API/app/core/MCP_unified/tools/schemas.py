"""
Input models for the crate tools.

Each model doubles as the tool's advertised ``inputSchema`` (via
``tool_input_schema``) and as the parser handlers use on their arguments, so
the protocol-level jsonschema check and the handler agree on what is valid.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mcph_Server_API.app.core.MCP_unified.protocol import InvalidParamsException


class CrateCategory(str, Enum):
    MARKDOWN = "markdown"
    CODE = "code"
    IMAGE = "image"
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"
    BINARY = "binary"
    OTHERS = "others"


class _ToolParams(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ListCratesParams(_ToolParams):
    limit: Optional[int] = Field(default=None, ge=1, le=100, description="Crates per page (default 20)")
    startAfter: Optional[str] = Field(default=None, description="ID of the last crate from the previous page")


class GetCrateParams(_ToolParams):
    id: str
    password: Optional[str] = None


class GetCrateDownloadLinkParams(_ToolParams):
    id: str
    expiresInSeconds: Optional[int] = Field(default=None, ge=1, le=86400)
    password: Optional[str] = None


class UploadCrateParams(_ToolParams):
    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "not": {
                "properties": {"isPublic": {"const": True}, "password": {"type": "string"}},
                "required": ["isPublic", "password"],
            }
        },
    )

    fileName: str
    contentType: str
    data: Optional[str] = Field(default=None, description="File body; base64 for images, UTF-8 text otherwise")
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[CrateCategory] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, str]] = None
    isPublic: bool = False
    password: Optional[str] = None

    @model_validator(mode="after")
    def _public_xor_password(self):
        if self.isPublic and self.password:
            raise ValueError("A crate cannot be both public and password-protected")
        return self


class UpdateCrateParams(_ToolParams):
    id: str
    data: Optional[str] = None
    contentType: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[CrateCategory] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, str]] = None


class ShareCrateParams(_ToolParams):
    id: str
    password: Optional[str] = None


class UnshareCrateParams(_ToolParams):
    id: str


class DeleteCrateParams(_ToolParams):
    id: str


class SearchParams(_ToolParams):
    query: str
    tags: Optional[List[str]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)


P = TypeVar("P", bound=BaseModel)


def tool_input_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    return model.model_json_schema()


def parse_args(model: Type[P], args: Dict[str, Any]) -> P:
    """Validate tool arguments; failures surface as JSON-RPC -32602 with an issue list"""
    try:
        return model.model_validate(args)
    except ValidationError as e:
        raise InvalidParamsException(
            "Invalid params",
            [
                {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e
