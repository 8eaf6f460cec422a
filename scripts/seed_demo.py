import argparse

from kmem.memory.models import KnowledgeLevel, StoreRequest
from kmem.settings import build_config
from kmem.storage.sqlite_store import SqliteMemoryStore

SAMPLE_MEMORIES = [
    StoreRequest(
        level=KnowledgeLevel.LANGUAGE,
        title="Struct declaration syntax",
        content="Declare a struct with `struct Name { var field: Type }`; members are private by default.",
    ),
    StoreRequest(
        level=KnowledgeLevel.LANGUAGE,
        title="Interface definition",
        content="An interface lists function signatures; a type implements it with `<:`.",
    ),
    StoreRequest(
        level=KnowledgeLevel.LIBRARY,
        library_name="std.collection",
        title="ArrayList append",
        content="Use `list.append(x)` to add to the end; `appendAll` takes a collection.",
    ),
    StoreRequest(
        level=KnowledgeLevel.LIBRARY,
        library_name="std.fs",
        title="Reading a file",
        content="`File.readFrom(path)` returns the whole file as bytes.",
        source="auto_captured",
    ),
    StoreRequest(
        level=KnowledgeLevel.PROJECT,
        project_path_pattern="/work/shop-*",
        title="Logging config",
        content="Our services log through `log.toml` in the repository root.",
    ),
]


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the KnowledgeMEM store with demo memories")
    parser.add_argument("--config", help="Path to YAML config file")
    args = parser.parse_args()

    config = build_config(args.config)
    store = SqliteMemoryStore(config.store, config.listing)
    for memory in SAMPLE_MEMORIES:
        store.store(memory)
    store.close()
    print(f"Seeded {len(SAMPLE_MEMORIES)} memories into {store.path}")


if __name__ == "__main__":
    main()
