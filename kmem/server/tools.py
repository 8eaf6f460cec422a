"""MCP tool server: ``kmem_store`` and ``kmem_recall`` for agent clients.

Runs over stdio or the streamable HTTP transport. The tools share the SQLite
store and searcher used by the HTTP API.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Literal, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError
from starlette.datastructures import Headers
from starlette.responses import JSONResponse

from kmem.config import KMemConfig
from kmem.errors import InvalidRequest
from kmem.memory.models import RecallRequest, StoreRequest
from kmem.retrieval.searcher import MemorySearcher
from kmem.storage.sqlite_store import SqliteMemoryStore

STORE_TOOL = "kmem_store"
RECALL_TOOL = "kmem_recall"
TRANSPORTS = ("stdio", "streamable-http")

STORE_DESCRIPTION = (
    "Store a practical knowledge memory. Levels:\n"
    "- language: syntax, keywords, core semantics\n"
    "- project: project configuration, business logic, conventions "
    "(needs project_path_pattern)\n"
    "- library: design patterns, utilities, best practices (needs library_name)"
)
RECALL_DESCRIPTION = (
    "Recall stored knowledge. Usually only query is needed: without project_context "
    "general questions search language or library memories, with it project "
    "memories matching the path are searched."
)

Level = Literal["language", "project", "library"]
Source = Literal["manual", "auto_captured"]


def _build(model, **values: Any):
    try:
        return model(**values)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(item) for item in first.get("loc", ()))
        raise InvalidRequest(f"{loc}: {first.get('msg')}") from exc


@dataclass
class MemoryTools:
    store: SqliteMemoryStore
    searcher: MemorySearcher

    def store_memory(
        self,
        level: str,
        title: str,
        content: str,
        language_tag: str = "",
        library_name: Optional[str] = None,
        project_path_pattern: Optional[str] = None,
        summary: Optional[str] = None,
        source: str = "manual",
    ) -> dict[str, Any]:
        req = _build(
            StoreRequest,
            level=level,
            title=title,
            content=content,
            language_tag=language_tag or "",
            library_name=library_name,
            project_path_pattern=project_path_pattern,
            summary=summary,
            source=source or "manual",
        )
        response = self.store.store(req)
        logging.getLogger(__name__).info("Stored memory %d from tool call", response.id)
        return response.model_dump(mode="json")

    def recall(
        self,
        query: str,
        level: Optional[str] = None,
        language_tag: Optional[str] = None,
        library_name: Optional[str] = None,
        project_context: Optional[str] = None,
        max_results: int = 0,
        min_confidence: float = 0.0,
    ) -> dict[str, Any]:
        req = _build(
            RecallRequest,
            query=query,
            level=level or None,
            language_tag=language_tag or None,
            library_name=library_name or None,
            project_context=project_context or None,
            max_results=max_results or 0,
            min_confidence=min_confidence or 0.0,
        )
        return self.searcher.search(req).model_dump(mode="json")


def create_mcp_server(
    config: KMemConfig,
    store: SqliteMemoryStore,
    searcher: MemorySearcher | None = None,
) -> FastMCP:
    tools = MemoryTools(
        store=store, searcher=searcher or MemorySearcher(store=store, config=config.search)
    )
    server = FastMCP(
        "kmem",
        host=config.server.host,
        port=config.server.port,
        streamable_http_path=config.server.mcp_path,
    )

    @server.tool(name=STORE_TOOL, description=STORE_DESCRIPTION)
    def kmem_store(
        level: Level,
        title: str,
        content: str,
        language_tag: str = "",
        library_name: Optional[str] = None,
        project_path_pattern: Optional[str] = None,
        summary: Optional[str] = None,
        source: Source = "manual",
    ) -> dict[str, Any]:
        return tools.store_memory(
            level=level,
            title=title,
            content=content,
            language_tag=language_tag,
            library_name=library_name,
            project_path_pattern=project_path_pattern,
            summary=summary,
            source=source,
        )

    @server.tool(name=RECALL_TOOL, description=RECALL_DESCRIPTION)
    def kmem_recall(
        query: str,
        level: Optional[Level] = None,
        language_tag: Optional[str] = None,
        library_name: Optional[str] = None,
        project_context: Optional[str] = None,
        max_results: int = 10,
        min_confidence: float = 0.5,
    ) -> dict[str, Any]:
        return tools.recall(
            query=query,
            level=level,
            language_tag=language_tag,
            library_name=library_name,
            project_context=project_context,
            max_results=max_results,
            min_confidence=min_confidence,
        )

    return server


class TokenAuthMiddleware:
    """ASGI wrapper that rejects HTTP requests without the expected ``X-MCP-Token``."""

    def __init__(self, app, token: str) -> None:
        self.app = app
        self.token = token

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] == "http":
            supplied = Headers(scope=scope).get("x-mcp-token", "")
            if not secrets.compare_digest(supplied.encode(), self.token.encode()):
                response = JSONResponse(
                    {
                        "error": "Unauthorized",
                        "message": "Invalid or missing X-MCP-Token header",
                    },
                    status_code=401,
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


def run_mcp_server(config: KMemConfig, transport: str = "stdio") -> None:
    if transport not in TRANSPORTS:
        raise InvalidRequest(f"unsupported MCP transport: {transport}")
    logger = logging.getLogger(__name__)
    store = SqliteMemoryStore(config.store, config.listing)
    server = create_mcp_server(config, store)
    try:
        if transport == "stdio":
            server.run(transport="stdio")
            return
        import uvicorn

        app = server.streamable_http_app()
        if config.server.mcp_token:
            app = TokenAuthMiddleware(app, config.server.mcp_token)
        logger.info(
            "MCP endpoint on http://%s:%d%s",
            config.server.host,
            config.server.port,
            config.server.mcp_path,
        )
        uvicorn.run(app, host=config.server.host, port=config.server.port)
    finally:
        store.close()
