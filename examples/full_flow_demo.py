import argparse
import asyncio
import json
from pathlib import Path

from dotenv import load_dotenv

from kmem.client import MemoryAPIClient, MemoryListSynchronizer
from kmem.logging_config import setup_logging
from kmem.memory.models import KnowledgePackage, MergeStrategy
from kmem.settings import build_config

SAMPLE_PACKAGE = {
    "version": "1.0",
    "package": {"name": "demo", "description": "Demo import", "version": "1"},
    "memories": [
        {
            "level": "library",
            "library_name": "std.collection",
            "title": "ArrayList append",
            "content": "`append` adds one element; `appendAll` adds every element of a collection.",
            "confidence": 0.9,
        },
        {
            "level": "library",
            "library_name": "std.time",
            "title": "Measuring elapsed time",
            "content": "Use `MonoTime.now()` and subtract two readings to get a Duration.",
        },
    ],
}


async def run(args) -> None:
    config = build_config(args.config)
    package = SAMPLE_PACKAGE
    if args.package:
        package = json.loads(Path(args.package).read_text(encoding="utf-8"))

    async with MemoryAPIClient(config.client) as api:
        sync = MemoryListSynchronizer(api, config.client)
        await sync.fetch()
        print(f"Loaded {len(sync.memories)} of {sync.total} memories")

        preview = await sync.preview_import(KnowledgePackage.model_validate(package))
        print(f"Preview: {preview.to_add} to add, {preview.to_update} to update")
        for conflict in preview.conflicts:
            print(f"  conflict with #{conflict.existing_id}: {conflict.title}")

        result = await sync.confirm_import(preview.import_id, args.strategy, preview.fingerprint)
        print(f"Applied: added={result.added} updated={result.updated} skipped={result.skipped}")
        print(f"List now holds {len(sync.memories)} of {sync.total} memories")


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="KnowledgeMEM import flow demo (needs `kmem serve`)")
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--package", help="Package JSON file (defaults to a built-in sample)")
    parser.add_argument(
        "--strategy",
        choices=[strategy.value for strategy in MergeStrategy],
        default=MergeStrategy.MERGE.value,
    )
    args = parser.parse_args()
    setup_logging("INFO")
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
