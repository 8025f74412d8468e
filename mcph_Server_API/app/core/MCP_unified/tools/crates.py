"""
Crate tools

A crate is a stored artifact (text, image or binary body plus metadata) with
an owner, sharing rules and an optional expiry. Bodies live in the blob store
under ``crates/<id>``; metadata documents live in the ``crates`` collection.

Every store call is bounded by ``with_timeout``. Expected outcomes such as a
missing crate or a wrong password are raised as ``ToolError`` and reach the
client as ``isError`` results; store failures propagate and become -32603.
"""

import base64
import binascii
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar
from urllib.parse import urlsplit

from loguru import logger

from mcph_Server_API.app.core.AuthNZ.identity import ANONYMOUS_CALLER_ID
from mcph_Server_API.app.core.AuthNZ.password_service import PasswordService, get_password_service
from mcph_Server_API.app.core.Storage.blob_store import BlobStore
from mcph_Server_API.app.core.Storage.metadata_store import DELETE_FIELD, MetadataStore
from mcph_Server_API.app.core.Storage.timeouts import StoreUnavailableError, with_timeout

from ..config import MCPConfig, get_config
from ..errors import CommonErrors, ToolError, ToolErrorCode, validate_required
from ..registry import ToolCallContext, ToolRegistry
from .schemas import (
    CrateCategory,
    DeleteCrateParams,
    GetCrateDownloadLinkParams,
    GetCrateParams,
    ListCratesParams,
    SearchParams,
    ShareCrateParams,
    UnshareCrateParams,
    UpdateCrateParams,
    UploadCrateParams,
    parse_args,
    tool_input_schema,
)

T = TypeVar("T")

CRATES_COLLECTION = "crates"
ANONYMOUS_CRATE_TTL = timedelta(days=30)
LIST_WINDOW = timedelta(days=30)
INLINE_URL_TTL_SECONDS = 300
DEFAULT_LINK_TTL_SECONDS = 86400
UPLOAD_URL_TTL_SECONDS = 3600
DEFAULT_LIST_LIMIT = 20
DEFAULT_SEARCH_LIMIT = 10

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\\0?%*:|"<>.\s]')
_CONVENTION_TAG = re.compile(r"^(project|type|status|priority|context):")
_HIDDEN_FIELDS = {"embedding", "searchField", "gcsPath"}

_CATEGORY_EXTENSIONS = {
    CrateCategory.JSON: ".json",
    CrateCategory.YAML: ".yaml",
    CrateCategory.IMAGE: ".png",
    CrateCategory.MARKDOWN: ".md",
    CrateCategory.CODE: ".txt",
    CrateCategory.BINARY: ".bin",
}

# Checked in order against the lower-cased content type
_CONTENT_TYPE_EXTENSIONS = [
    ("json", ".json"),
    ("yaml", ".yaml"),
    ("image/jpeg", ".jpg"),
    ("image/png", ".png"),
    ("image/gif", ".gif"),
    ("image/webp", ".webp"),
    ("image/svg", ".svg"),
    ("markdown", ".md"),
    ("text/csv", ".csv"),
    ("javascript", ".js"),
    ("typescript", ".ts"),
    ("python", ".py"),
    ("text/", ".txt"),
    ("octet-stream", ".bin"),
    ("binary", ".bin"),
]

_CODE_CONTENT_TYPES = ("javascript", "typescript", "python", "x-java", "x-c", "x-go", "x-rust", "x-sh")
_CODE_EXTENSIONS = {".js", ".ts", ".py", ".java", ".c", ".cpp", ".go", ".rs", ".sh", ".rb", ".tsx", ".jsx"}


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_category(content_type: str, file_name: Optional[str] = None) -> CrateCategory:
    """Best-effort category from content type, then file extension"""
    ct = (content_type or "").lower()
    ext = ""
    if file_name and "." in file_name:
        ext = "." + file_name.rsplit(".", 1)[1].lower()

    if ct.startswith("image/"):
        return CrateCategory.IMAGE
    if "json" in ct or ext == ".json":
        return CrateCategory.JSON
    if "yaml" in ct or ext in (".yaml", ".yml"):
        return CrateCategory.YAML
    if "markdown" in ct or ext in (".md", ".markdown"):
        return CrateCategory.MARKDOWN
    if any(marker in ct for marker in _CODE_CONTENT_TYPES) or ext in _CODE_EXTENSIONS:
        return CrateCategory.CODE
    if ct.startswith("text/"):
        return CrateCategory.TEXT
    if "octet-stream" in ct or ct.startswith("binary/"):
        return CrateCategory.BINARY
    return CrateCategory.OTHERS


def derive_file_name(title: Optional[str], category: Optional[CrateCategory], content_type: str) -> str:
    """File name for uploads that arrive without one: sanitized title plus an extension"""
    base = _UNSAFE_FILENAME_CHARS.sub("_", title or "") or "crate"
    if category is not None:
        return base + _CATEGORY_EXTENSIONS.get(category, ".dat")
    ct = (content_type or "").lower()
    for marker, extension in _CONTENT_TYPE_EXTENSIONS:
        if marker in ct:
            return base + extension
    return base + ".dat"


def build_search_field(
    title: Optional[str],
    description: Optional[str],
    tags: Optional[Iterable[str]],
    metadata: Optional[Dict[str, str]],
) -> str:
    parts = [
        title or "",
        description or "",
        " ".join(tags or []),
        " ".join(f"{k}: {v}" for k, v in (metadata or {}).items()),
    ]
    return " ".join(p for p in parts if p).lower()


def is_large_upload(category: CrateCategory, content_type: str) -> bool:
    """Bodies that go straight to the blob store through a signed URL"""
    ct = (content_type or "").lower()
    return (
        category == CrateCategory.BINARY
        or ct == "text/csv"
        or ct.startswith("application/octet-stream")
        or ct.startswith("binary/")
    )


def normalize_tags(tags: Any) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, (list, tuple)):
        return [str(t) for t in tags]
    if isinstance(tags, dict):
        return [str(v) for v in tags.values()]
    return [str(tags)]


def decode_body(data: str, category: CrateCategory, content_type: str) -> bytes:
    """Images travel base64-encoded; everything else is UTF-8 text"""
    ct = (content_type or "").lower()
    if category == CrateCategory.IMAGE and "svg" not in ct:
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise CommonErrors.invalid_input("data", "expected base64-encoded image data")
    return data.encode("utf-8")


def public_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Crate metadata safe to return to callers"""
    view = {k: v for k, v in doc.items() if k not in _HIDDEN_FIELDS}
    shared = doc.get("shared") or {}
    view["shared"] = {
        "public": bool(shared.get("public")),
        "passwordProtected": bool(shared.get("passwordHash")),
    }
    view["contentType"] = doc.get("mimeType")
    view["tags"] = normalize_tags(doc.get("tags"))
    view.setdefault("expiresAt", None)
    return view


def _summary_line(crate: Dict[str, Any]) -> str:
    tags = crate.get("tags") or []
    return (
        f"ID: {crate['id']}\nTitle: {crate.get('title') or 'Untitled'}\n"
        f"Description: {crate.get('description') or 'No description'}\n"
        f"Category: {crate.get('category') or 'N/A'}\n"
        f"Content Type: {crate.get('contentType') or 'N/A'}\n"
        f"Tags: {', '.join(tags) if tags else 'None'}\n"
    )


def _text(message: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": message}]


class CrateTools:
    """Handlers for the ``crates_*`` tools, bound to one blob and one metadata store"""

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        config: Optional[MCPConfig] = None,
        passwords: Optional[PasswordService] = None,
        clock=time.time,
    ):
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.config = config or get_config()
        self.passwords = passwords or get_password_service()
        self._clock = clock

    # Store access

    async def _meta(self, awaitable: Awaitable[T], message: str) -> T:
        return await with_timeout(awaitable, self.config.metadata_operation_timeout_seconds, message, store="metadata")

    async def _blob(self, awaitable: Awaitable[T], message: str) -> T:
        return await with_timeout(awaitable, self.config.blob_operation_timeout_seconds, message, store="blob")

    async def _load(self, crate_id: str) -> Dict[str, Any]:
        doc = await self._meta(self.metadata_store.get(CRATES_COLLECTION, crate_id), "Crate lookup timed out")
        if doc is None:
            raise CommonErrors.not_found("Crate")
        return doc

    def _is_expired(self, doc: Dict[str, Any]) -> bool:
        expires_at = _parse_iso(doc.get("expiresAt"))
        return expires_at is not None and expires_at.timestamp() < self._clock()

    # Access rules

    def _check_read_access(self, doc: Dict[str, Any], ctx: ToolCallContext, password: Optional[str]) -> None:
        owner = doc.get("ownerId")
        if not ctx.auth.is_anonymous and owner == ctx.caller_id:
            return
        shared = doc.get("shared") or {}
        if not (shared.get("public") or owner == ANONYMOUS_CALLER_ID):
            raise CommonErrors.permission_denied("access this crate")
        password_hash = shared.get("passwordHash")
        if password_hash and owner != ANONYMOUS_CALLER_ID:
            if not password:
                raise ToolError(ToolErrorCode.INVALID_PASSWORD, "Password required to access this crate")
            if not self.passwords.verify_password(password, password_hash):
                raise ToolError(ToolErrorCode.INVALID_PASSWORD, "Invalid password")

    @staticmethod
    def _require_owner(doc: Dict[str, Any], ctx: ToolCallContext, action: str) -> None:
        if ctx.auth.is_anonymous:
            raise CommonErrors.authentication_required(action)
        if doc.get("ownerId") != ctx.caller_id:
            raise CommonErrors.permission_denied(action)

    def _share_url(self, crate_id: str) -> str:
        return f"{self.config.public_base_url}/crate/{crate_id}"

    def _short_link(self, crate_id: str) -> str:
        parts = urlsplit(self.config.public_base_url)
        return f"{parts.netloc}{parts.path}/crate/{crate_id}"

    # Tools

    async def get(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(GetCrateParams, args)
        doc = await self._load(params.id)
        if self._is_expired(doc):
            raise ToolError(ToolErrorCode.RESOURCE_EXPIRED, "This crate has expired")
        self._check_read_access(doc, ctx, params.password)

        crate_id = doc["id"]
        title = doc.get("title") or crate_id
        category = doc.get("category")
        if category in (CrateCategory.OTHERS.value, CrateCategory.BINARY.value):
            return {
                "content": _text(
                    f"This crate contains {category.lower()} content. Please use the "
                    f"'crates_get_download_link' tool to get a download link for this content.\n\n"
                    f'Example: {{ "id": "{crate_id}" }}'
                )
            }

        url = await self._blob(
            self.blob_store.get_signed_download_url(doc["gcsPath"], doc.get("fileName"), INLINE_URL_TTL_SECONDS),
            "Signing download URL timed out",
        )
        try:
            body: Optional[bytes] = await self._blob(self.blob_store.get(doc["gcsPath"]), "Fetching crate content timed out")
        except (FileNotFoundError, StoreUnavailableError) as e:
            ctx.log.warning(f"Crate {crate_id} content unavailable, returning link instead: {e}")
            body = None

        if body is not None:
            await self._meta(
                self.metadata_store.increment(CRATES_COLLECTION, crate_id, "downloadCount"),
                "Download counter update timed out",
            )

        if category == CrateCategory.IMAGE.value:
            if body is None:
                return {"content": _text(f"![{title}]({url})")}
            return {
                "content": [{
                    "type": "image",
                    "data": base64.b64encode(body).decode("ascii"),
                    "mimeType": doc.get("mimeType") or "image/png",
                }]
            }

        if body is None:
            return {
                "resources": [{
                    "uri": f"crate://{crate_id}",
                    "contents": [{
                        "uri": url,
                        "title": title,
                        "description": doc.get("description"),
                        "contentType": doc.get("mimeType"),
                    }],
                }],
                "content": _text(f'Crate "{title}" is available at crate://{crate_id}'),
            }
        return {"content": _text(body.decode("utf-8", errors="replace"))}

    async def list(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(ListCratesParams, args)
        if ctx.auth.is_anonymous:
            raise CommonErrors.authentication_required("list your crates")
        limit = min(params.limit or DEFAULT_LIST_LIMIT, 100)
        cutoff = _iso(self._clock() - LIST_WINDOW.total_seconds())

        docs = await self._meta(
            self.metadata_store.query(
                CRATES_COLLECTION,
                [("ownerId", "==", ctx.caller_id), ("createdAt", ">", cutoff)],
                order_by="createdAt",
                descending=True,
                limit=limit + 1,
                start_after=params.startAfter,
            ),
            "Listing crates timed out",
        )
        has_more = len(docs) > limit
        crates = [public_view(d) for d in docs[:limit]]
        text = "\n---\n".join(_summary_line(c) for c in crates) if crates else "You don't have any crates yet."
        return {
            "crates": crates,
            "lastCrateId": crates[-1]["id"] if has_more and crates else None,
            "hasMore": has_more,
            "content": _text(text),
        }

    async def get_download_link(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(GetCrateDownloadLinkParams, args)
        doc = await self._load(params.id)
        if self._is_expired(doc):
            raise ToolError(ToolErrorCode.RESOURCE_EXPIRED, "This crate has expired")
        self._check_read_access(doc, ctx, params.password)

        expires_in = params.expiresInSeconds or DEFAULT_LINK_TTL_SECONDS
        url = await self._blob(
            self.blob_store.get_signed_download_url(doc["gcsPath"], doc.get("fileName"), expires_in),
            "Signing download URL timed out",
        )
        title = doc.get("title") or doc["id"]
        return {
            "content": _text(
                f"Download link for crate {title}: {url}\n"
                f"This link is valid for {expires_in // 3600} hours and {(expires_in % 3600) // 60} minutes."
            ),
            "url": url,
            "validForSeconds": expires_in,
            "expiresAt": _iso(self._clock() + expires_in),
        }

    async def share(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(ShareCrateParams, args)
        doc = await self._load(params.id)
        self._require_owner(doc, ctx, "share this crate")

        update: Dict[str, Any] = {"shared.public": True}
        if params.password:
            update["shared.passwordHash"] = self.passwords.hash_password(params.password)
        else:
            update["shared.passwordHash"] = DELETE_FIELD
        await self._meta(self.metadata_store.update(CRATES_COLLECTION, params.id, update), "Crate update timed out")

        share_url = self._share_url(params.id)
        ctx.log.bind(audit=True).info(
            f"Crate {params.id} shared by user {ctx.caller_id} (password={'yes' if params.password else 'no'})"
        )
        return {
            "content": _text(f"Crate {params.id} sharing settings updated. Link: {share_url}"),
            "id": params.id,
            "shareUrl": share_url,
            "crateLink": self._short_link(params.id),
        }

    async def make_public(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        ctx.log.info("crates_make_public is deprecated; use crates_share")
        validate_required(args, ("id",))
        return await self.share({"id": args.get("id")}, ctx)

    async def unshare(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(UnshareCrateParams, args)
        doc = await self._load(params.id)
        self._require_owner(doc, ctx, "unshare this crate")
        await self._meta(
            self.metadata_store.update(
                CRATES_COLLECTION,
                params.id,
                {"shared.public": False, "shared.passwordHash": DELETE_FIELD},
            ),
            "Crate update timed out",
        )
        ctx.log.bind(audit=True).info(f"Crate {params.id} unshared by user {ctx.caller_id}")
        return {"content": _text(f"Crate {params.id} has been unshared. It is now private."), "id": params.id}

    async def delete(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(DeleteCrateParams, args)
        doc = await self._load(params.id)
        self._require_owner(doc, ctx, "delete this crate")

        await self._blob(self.blob_store.delete(doc["gcsPath"]), "Deleting crate content timed out")
        await self._meta(self.metadata_store.delete(CRATES_COLLECTION, params.id), "Deleting crate metadata timed out")
        ctx.log.bind(audit=True).info(f"Crate {params.id} deleted by user {ctx.caller_id}")
        return {"content": _text(f"Crate {params.id} has been successfully deleted."), "id": params.id}

    async def search(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(SearchParams, args)
        if ctx.auth.is_anonymous:
            raise CommonErrors.authentication_required("search your crates")

        top_k = params.limit or DEFAULT_SEARCH_LIMIT
        terms = params.query.lower().split()
        wanted_tags = [t.lower() for t in params.tags or []]

        docs = await self._meta(
            self.metadata_store.query(CRATES_COLLECTION, [("ownerId", "==", ctx.caller_id)]),
            "Searching crates timed out",
        )

        scored = []
        for doc in docs:
            haystack = doc.get("searchField") or ""
            if not all(term in haystack for term in terms):
                continue
            crate_tags = normalize_tags(doc.get("tags"))
            lowered = {t.lower() for t in crate_tags}
            if not all(tag in lowered for tag in wanted_tags):
                continue
            score = 1.0 + 0.2 * sum(1 for t in crate_tags if _CONVENTION_TAG.match(t))
            view = public_view(doc)
            view["relevanceScore"] = score
            scored.append(view)

        scored.sort(key=lambda c: c["relevanceScore"], reverse=True)
        crates = scored[:top_k]

        if crates:
            text = f"Found {len(crates)} crates matching your search criteria:\n\n" + "\n---\n".join(
                _summary_line(c) + f"Relevance Score: {c['relevanceScore']:.2f}\n" for c in crates
            )
        else:
            text = "No crates found matching your search criteria."
        return {
            "crates": crates,
            "searchMetadata": {
                "query": params.query.lower(),
                "tags": params.tags or [],
                "totalResults": len(crates),
                "limit": top_k,
            },
            "content": _text(text),
        }

    async def upload(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(UploadCrateParams, args)
        owner_id = ANONYMOUS_CALLER_ID if ctx.auth.is_anonymous else ctx.caller_id
        file_name = params.fileName or derive_file_name(params.title, params.category, params.contentType)
        category = params.category or resolve_category(params.contentType, file_name)

        now = self._clock()
        crate_id = uuid.uuid4().hex
        gcs_path = f"crates/{crate_id}"
        shared: Dict[str, Any] = {"public": params.isPublic}
        if params.password:
            shared["passwordHash"] = self.passwords.hash_password(params.password)

        doc: Dict[str, Any] = {
            "title": params.title or file_name,
            "description": params.description,
            "ownerId": owner_id,
            "createdAt": _iso(now),
            "mimeType": params.contentType,
            "category": category.value,
            "gcsPath": gcs_path,
            "shared": shared,
            "size": 0,
            "downloadCount": 0,
            "fileName": file_name,
            "expiresAt": _iso(now + ANONYMOUS_CRATE_TTL.total_seconds()) if owner_id == ANONYMOUS_CALLER_ID else None,
        }
        if params.tags:
            doc["tags"] = params.tags
        if params.metadata:
            doc["metadata"] = params.metadata
        doc["searchField"] = build_search_field(doc["title"], params.description, params.tags, params.metadata)

        if params.data is None:
            if not is_large_upload(category, params.contentType):
                raise ToolError(ToolErrorCode.MISSING_REQUIRED_FIELD, "Missing data for direct upload")
            upload_url = await self._blob(
                self.blob_store.get_signed_upload_url(gcs_path, params.contentType, UPLOAD_URL_TTL_SECONDS),
                "Signing upload URL timed out",
            )
            await self._meta(self.metadata_store.put(CRATES_COLLECTION, crate_id, doc), "Saving crate timed out")
            ctx.log.bind(audit=True).info(f"Crate {crate_id} reserved for upload by {owner_id}")
            return {
                "content": _text(f"Upload your file using this URL with a PUT request: {upload_url}. Crate ID: {crate_id}"),
                "uploadUrl": upload_url,
                "crateId": crate_id,
                "gcsPath": gcs_path,
            }

        body = decode_body(params.data, category, params.contentType)
        await self._blob(self.blob_store.put(gcs_path, body, params.contentType), "Storing crate content timed out")
        doc["size"] = len(body)
        await self._meta(self.metadata_store.put(CRATES_COLLECTION, crate_id, doc), "Saving crate timed out")
        ctx.log.bind(audit=True).info(f"Crate {crate_id} uploaded by {owner_id} ({len(body)} bytes)")

        doc["id"] = crate_id
        return {
            "content": _text(f"Crate uploaded successfully. Crate ID: {crate_id}"),
            "crate": public_view(doc),
        }

    async def update(self, args: Dict[str, Any], ctx: ToolCallContext) -> Dict[str, Any]:
        params = parse_args(UpdateCrateParams, args)
        if ctx.auth.is_anonymous:
            raise ToolError(ToolErrorCode.AUTHENTICATION_REQUIRED, "Authentication required to update a crate.")
        doc = await self._load(params.id)
        if doc.get("ownerId") != ctx.caller_id:
            raise CommonErrors.permission_denied("update this crate")

        fields: Dict[str, Any] = {}
        for name in ("title", "description", "tags", "metadata"):
            value = getattr(params, name)
            if value is not None:
                fields[name] = value
        if params.category is not None:
            fields["category"] = params.category.value

        content_updated = False
        if params.data is not None:
            content_type = params.contentType or doc.get("mimeType")
            if not content_type:
                raise ToolError(
                    ToolErrorCode.MISSING_REQUIRED_FIELD, "Content type is required when updating crate content."
                )
            category = params.category or CrateCategory(doc.get("category") or resolve_category(content_type).value)
            body = decode_body(params.data, category, content_type)
            await self._blob(self.blob_store.put(doc["gcsPath"], body, content_type), "Storing crate content timed out")
            fields["mimeType"] = content_type
            fields["size"] = len(body)
            content_updated = True
        elif params.contentType:
            fields["mimeType"] = params.contentType

        if not fields:
            raise ToolError(
                ToolErrorCode.INVALID_INPUT, "No changes specified. Please provide at least one field to update."
            )

        if any(name in fields for name in ("title", "description", "tags", "metadata")):
            fields["searchField"] = build_search_field(
                fields.get("title", doc.get("title")),
                fields.get("description", doc.get("description")),
                fields.get("tags", doc.get("tags")),
                fields.get("metadata", doc.get("metadata")),
            )
        fields["updatedAt"] = _iso(self._clock())

        updated = await self._meta(
            self.metadata_store.update(CRATES_COLLECTION, params.id, fields), "Crate update timed out"
        )
        ctx.log.bind(audit=True).info(f"Crate {params.id} updated by user {ctx.caller_id}")
        if content_updated:
            message = f"Crate updated successfully. Content and metadata for crate {params.id} have been updated."
        else:
            message = f"Crate updated successfully. Metadata for crate {params.id} has been updated."
        return {"content": _text(message), "crate": public_view(updated)}

    # Registration

    def register(self, registry: ToolRegistry) -> None:
        registry.register(
            "crates_get",
            "Retrieves a crate's contents and metadata by ID. Returns text content directly, images as "
            "base64, or a pointer to crates_get_download_link for binaries. Password-protected crates "
            "need the password.",
            tool_input_schema(GetCrateParams),
            self.get,
        )
        registry.register(
            "crates_list",
            "Lists your crates from the last 30 days, newest first. Use limit (max 100) and startAfter "
            "(lastCrateId of the previous page) to paginate.",
            tool_input_schema(ListCratesParams),
            self.list,
        )
        registry.register(
            "crates_get_download_link",
            "Generates a pre-signed download URL for a crate, valid for expiresInSeconds (default 24 hours).",
            tool_input_schema(GetCrateDownloadLinkParams),
            self.get_download_link,
        )
        registry.register(
            "crates_share",
            "Makes a crate shareable by link, optionally protected by a password. Returns the share URL.",
            tool_input_schema(ShareCrateParams),
            self.share,
        )
        registry.register(
            "crates_make_public",
            "Deprecated alias for crates_share",
            tool_input_schema(UnshareCrateParams),
            self.make_public,
        )
        registry.register(
            "crates_unshare",
            "Makes a crate private again and removes any share password.",
            tool_input_schema(UnshareCrateParams),
            self.unshare,
        )
        registry.register(
            "crates_delete",
            "Permanently deletes one of your crates and its content.",
            tool_input_schema(DeleteCrateParams),
            self.delete,
        )
        registry.register(
            "crates_search",
            "Searches your crates across title, description, tags and metadata. Every query word must "
            "match; tags filter exactly. Convention tags (project:, type:, status:, priority:, context:) "
            "rank higher.",
            tool_input_schema(SearchParams),
            self.search,
        )
        registry.register(
            "crates_upload",
            "Uploads a new crate. Text goes in data as UTF-8, images as base64. Binary or CSV uploads "
            "without data return a signed URL for a PUT upload. Anonymous uploads expire after 30 days.",
            tool_input_schema(UploadCrateParams),
            self.upload,
        )
        registry.register(
            "crates_update",
            "Updates an existing crate's content and/or metadata. Only the crate owner can update it.",
            tool_input_schema(UpdateCrateParams),
            self.update,
        )
        logger.info(f"Registered {len(registry)} tools")


def register_crate_tools(
    registry: ToolRegistry,
    blob_store: BlobStore,
    metadata_store: MetadataStore,
    config: Optional[MCPConfig] = None,
) -> CrateTools:
    tools = CrateTools(blob_store, metadata_store, config=config)
    tools.register(registry)
    return tools
