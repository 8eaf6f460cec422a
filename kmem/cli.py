import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from kmem.config import KMemConfig
from kmem.errors import InvalidRequest, KMemError
from kmem.logging_config import setup_logging
from kmem.memory.models import (
    ExportRequest,
    KnowledgeLevel,
    ListRequest,
    MergeStrategy,
    RecallRequest,
)
from kmem.memory.packaging import build_export_package, load_package
from kmem.reconcile import PreviewBuilder, PreviewRegistry, ReconciliationApplier
from kmem.retrieval.searcher import MemorySearcher
from kmem.settings import build_config
from kmem.storage.sqlite_store import SqliteMemoryStore

LEVELS = [level.value for level in KnowledgeLevel]


def _build_store(config: KMemConfig) -> SqliteMemoryStore:
    return SqliteMemoryStore(config.store, config.listing)


def _serve(config: KMemConfig, config_path: str | None, log_level: str) -> None:
    import uvicorn

    if config_path:
        os.environ["KMEM_CONFIG_PATH"] = config_path
    os.environ.setdefault("KMEM_LOG_LEVEL", log_level)
    uvicorn.run(
        "kmem.server.app:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
    )


def _list(store: SqliteMemoryStore, args) -> None:
    response = store.list_memories(
        ListRequest(
            level=args.level,
            library_name=args.library,
            project_path_pattern=args.project,
            language_tag=args.language,
            limit=args.limit,
            offset=args.offset,
            order_by=args.order_by,
            brief=True,
        )
    )
    print(f"{len(response.results)} of {response.total}")
    for item in response.results:
        scope = item.library_name or item.project_path_pattern or item.language_tag
        print(f"#{item.id} [{item.level.value}:{scope}] {item.title} (conf={item.confidence:.2f})")


def _search(store: SqliteMemoryStore, config: KMemConfig, args) -> None:
    searcher = MemorySearcher(store=store, config=config.search)
    response = searcher.search(
        RecallRequest(
            query=args.query,
            level=args.level,
            language_tag=args.language,
            project_context=args.project_context,
            max_results=args.max_results,
        )
    )
    print(f"strategy={response.search_strategy} results={response.total}")
    for item in response.results:
        print(f"#{item.id} {item.title} | score={item.confidence:.2f}")
        if item.matched_text:
            print(f"    {item.matched_text}")


def _categories(store: SqliteMemoryStore, args) -> None:
    response = store.categories(args.language)
    print("libraries:")
    for item in response.libraries:
        print(f"  {item.name} ({item.count})")
    print("projects:")
    for item in response.projects:
        print(f"  {item.name} ({item.count})")


def _export(store: SqliteMemoryStore, args) -> None:
    req = ExportRequest(
        level=args.level,
        library_name=args.library,
        project_path_pattern=args.project,
        language_tag=args.language,
    )
    package = build_export_package(store.export(req), req)
    text = json.dumps(package.model_dump(mode="json"), ensure_ascii=False, indent=2)
    if args.out:
        Path(args.out).write_text(text, encoding="utf-8")
        print(f"Exported {len(package.memories)} memories to {args.out}")
    else:
        print(text)


def _import(store: SqliteMemoryStore, config: KMemConfig, args) -> None:
    try:
        raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidRequest(f"cannot read package {args.file}: {exc}") from exc
    package = load_package(raw)
    registry = PreviewRegistry(ttl_s=config.imports.preview_ttl_s)
    builder = PreviewBuilder(
        store=store, registry=registry, max_candidates=config.imports.max_candidates
    )
    preview, handle = builder.build_preview(package)
    print(f"total={preview.total} to_add={preview.to_add} to_update={preview.to_update}")
    for conflict in preview.conflicts:
        scope = conflict.library_name or conflict.project_path_pattern or conflict.language_tag
        print(f"  conflict: #{conflict.existing_id} [{conflict.level.value}:{scope}] {conflict.title}")
    if not args.yes:
        print("Preview only; re-run with --yes to apply.")
        return
    applier = ReconciliationApplier(store=store, registry=registry)
    result = applier.apply(handle.token, args.strategy, handle.fingerprint)
    print(
        f"Imported with {args.strategy}: added={result.added} "
        f"updated={result.updated} skipped={result.skipped}"
    )


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="KnowledgeMEM CLI")
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP API")

    mcp_cmd = sub.add_parser("mcp", help="Run the MCP tool server")
    mcp_cmd.add_argument(
        "--transport", choices=["stdio", "streamable-http"], default="stdio"
    )

    list_cmd = sub.add_parser("list", help="List memories")
    list_cmd.add_argument("--level", choices=LEVELS)
    list_cmd.add_argument("--library", help="Filter by library name")
    list_cmd.add_argument("--project", help="Filter by project path pattern")
    list_cmd.add_argument("--language", help="Language tag")
    list_cmd.add_argument("--limit", type=int, default=0)
    list_cmd.add_argument("--offset", type=int, default=0)
    list_cmd.add_argument(
        "--order-by", choices=["created_at", "updated_at", "access_count"], default=None
    )

    search_cmd = sub.add_parser("search", help="Keyword search")
    search_cmd.add_argument("query", help="Search text")
    search_cmd.add_argument("--level", choices=LEVELS)
    search_cmd.add_argument("--language", help="Language tag")
    search_cmd.add_argument("--project-context", help="Current project path")
    search_cmd.add_argument("--max-results", type=int, default=0)

    categories_cmd = sub.add_parser("categories", help="Show libraries and projects")
    categories_cmd.add_argument("--language", help="Language tag")

    export_cmd = sub.add_parser("export", help="Export memories as a knowledge package")
    export_cmd.add_argument("--level", choices=LEVELS)
    export_cmd.add_argument("--library", help="Filter by library name")
    export_cmd.add_argument("--project", help="Filter by project path pattern")
    export_cmd.add_argument("--language", help="Language tag")
    export_cmd.add_argument("--out", help="Write the package to this file instead of stdout")

    import_cmd = sub.add_parser("import", help="Preview and apply a knowledge package")
    import_cmd.add_argument("file", help="Package JSON file")
    import_cmd.add_argument(
        "--strategy",
        choices=[strategy.value for strategy in MergeStrategy],
        default=MergeStrategy.SKIP.value,
    )
    import_cmd.add_argument("--yes", action="store_true", help="Apply after previewing")

    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    config = build_config(args.config)

    if args.command == "serve":
        _serve(config, args.config, args.log_level)
        return
    if args.command == "mcp":
        from kmem.server.tools import run_mcp_server

        run_mcp_server(config, args.transport)
        return

    store = _build_store(config)
    try:
        if args.command == "list":
            _list(store, args)
        elif args.command == "search":
            _search(store, config, args)
        elif args.command == "categories":
            _categories(store, args)
        elif args.command == "export":
            _export(store, args)
        elif args.command == "import":
            _import(store, config, args)
    except KMemError as exc:
        print(f"error ({exc.code}): {exc.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
