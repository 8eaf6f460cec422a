import logging
import os
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from kmem.config import KMemConfig
from kmem.errors import InvalidRequest, KMemError
from kmem.logging_config import setup_logging
from kmem.memory.models import (
    ExportRequest,
    ImportConfirmRequest,
    KnowledgeLevel,
    KnowledgePackage,
    ListRequest,
    RecallRequest,
    StoreRequest,
)
from kmem.memory.packaging import build_export_package, candidate_error, export_filename
from kmem.reconcile import (
    ConflictClassifier,
    PreviewBuilder,
    PreviewRegistry,
    ReconciliationApplier,
)
from kmem.retrieval.searcher import MemorySearcher
from kmem.settings import build_config
from kmem.storage.sqlite_store import SqliteMemoryStore

API_PREFIX = "/api"


def envelope(data: Any = None, status_code: int = 200, headers: dict[str, str] | None = None):
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": data},
        headers=headers,
    )


def error_envelope(message: str, code: str | None, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"message": message, "code": code}},
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ()) if item != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


def create_app(
    config: KMemConfig | None = None,
    store: SqliteMemoryStore | None = None,
    registry: PreviewRegistry | None = None,
) -> FastAPI:
    setup_logging(os.getenv("KMEM_LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    config = config or build_config(os.getenv("KMEM_CONFIG_PATH"))
    if store is None:
        store = SqliteMemoryStore(config.store, config.listing)
    if registry is None:
        registry = PreviewRegistry(ttl_s=config.imports.preview_ttl_s)
    searcher = MemorySearcher(store=store, config=config.search)
    builder = PreviewBuilder(
        store=store,
        registry=registry,
        classifier=ConflictClassifier(),
        max_candidates=config.imports.max_candidates,
    )
    applier = ReconciliationApplier(store=store, registry=registry)

    app = FastAPI(title="KnowledgeMEM")
    app.state.config = config
    app.state.store = store
    app.state.registry = registry

    @app.exception_handler(KMemError)
    async def _kmem_error(request: Request, exc: KMemError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_envelope(exc.message, exc.code, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        malformed = candidate_error(exc.errors(), loc_prefix=("body",))
        if malformed is not None:
            return error_envelope(malformed.message, malformed.code, malformed.status_code)
        return error_envelope(
            _validation_message(exc), InvalidRequest.code, InvalidRequest.status_code
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = "not_found" if exc.status_code == 404 else "http_error"
        return error_envelope(str(exc.detail), code, exc.status_code)

    @app.get(f"{API_PREFIX}/memories")
    def list_memories(
        level: Optional[KnowledgeLevel] = None,
        library_name: Optional[str] = None,
        project_path_pattern: Optional[str] = None,
        language_tag: Optional[str] = None,
        limit: int = Query(default=0),
        offset: int = Query(default=0),
        order_by: Optional[str] = None,
        brief: bool = False,
    ):
        if limit < 0 or offset < 0:
            raise InvalidRequest("limit and offset must not be negative")
        if order_by and order_by not in ("created_at", "updated_at", "access_count"):
            raise InvalidRequest(f"unsupported order_by: {order_by}")
        req = ListRequest(
            level=level,
            library_name=library_name,
            project_path_pattern=project_path_pattern,
            language_tag=language_tag,
            limit=min(limit, config.listing.max_limit),
            offset=offset,
            order_by=order_by,
            brief=brief,
        )
        return envelope(store.list_memories(req))

    @app.get(f"{API_PREFIX}/memories/{{memory_id}}")
    def get_memory(memory_id: int):
        return envelope(store.get(memory_id))

    @app.post(f"{API_PREFIX}/memories")
    def create_memory(req: StoreRequest):
        result = store.store(req)
        return envelope(
            result,
            status_code=201,
            headers={"Location": f"{API_PREFIX}/memories/{result.id}"},
        )

    @app.put(f"{API_PREFIX}/memories/{{memory_id}}")
    def update_memory(memory_id: int, req: StoreRequest):
        return envelope(store.update(memory_id, req))

    @app.delete(f"{API_PREFIX}/memories/{{memory_id}}")
    def delete_memory(memory_id: int):
        store.delete(memory_id)
        return Response(status_code=204)

    @app.post(f"{API_PREFIX}/search")
    def search(req: RecallRequest):
        return envelope(searcher.search(req))

    @app.get(f"{API_PREFIX}/categories")
    def categories(language_tag: Optional[str] = None):
        return envelope(store.categories(language_tag))

    @app.post(f"{API_PREFIX}/export")
    def export(req: Optional[ExportRequest] = None):
        req = req or ExportRequest()
        package = build_export_package(store.export(req), req)
        logger.info("Exported %d memories", len(package.memories))
        return JSONResponse(
            content=package.model_dump(mode="json"),
            headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
        )

    @app.post(f"{API_PREFIX}/import")
    def preview_import(package: KnowledgePackage):
        preview, _ = builder.build_preview(package)
        return envelope(preview)

    @app.post(f"{API_PREFIX}/import/confirm")
    def confirm_import(req: ImportConfirmRequest):
        return envelope(applier.apply(req.import_id, req.strategy, req.fingerprint))

    return app
