import pytest

from conftest import library_memory
from kmem.errors import MemoryNotFound, ValidationFailure
from kmem.memory.models import ExportRequest, KnowledgeLevel, ListRequest, StoreRequest


def test_store_applies_defaults(store):
    manual = store.get(store.store(library_memory("A")).id)
    captured = store.get(store.store(library_memory("B", source="auto_captured")).id)
    assert manual.language_tag == "cangjie"
    assert manual.confidence == pytest.approx(1.0)
    assert captured.confidence == pytest.approx(0.7)
    assert manual.access_count == 0


@pytest.mark.parametrize(
    "req",
    [
        StoreRequest(level="library", library_name="std", title="", content="x"),
        StoreRequest(level="library", library_name="std", title="T", content=""),
        StoreRequest(level="library", title="T", content="x"),
        StoreRequest(level="project", title="T", content="x"),
    ],
)
def test_store_validation(store, req):
    with pytest.raises(ValidationFailure):
        store.store(req)


def test_get_update_delete(store):
    memory_id = store.store(library_memory("A", content="one")).id
    created = store.get(memory_id)

    updated = store.update(memory_id, library_memory("A2", content="two"))
    assert updated.id == memory_id
    assert updated.title == "A2"
    assert updated.created_at == created.created_at

    store.delete(memory_id)
    with pytest.raises(MemoryNotFound):
        store.get(memory_id)
    with pytest.raises(MemoryNotFound):
        store.delete(memory_id)


def test_list_pagination_and_brief(store):
    for i in range(5):
        store.store(library_memory(f"T{i}", content=f"body {i}"))
    store.store(StoreRequest(level="language", language_tag="rust", title="R", content="r"))

    page = store.list_memories(ListRequest(limit=2, offset=1, brief=True))
    assert page.total == 5
    assert [item.title for item in page.results] == ["T3", "T2"]
    assert all(item.content == "" for item in page.results)

    rust = store.list_memories(ListRequest(language_tag="rust"))
    assert [item.title for item in rust.results] == ["R"]


def test_list_filters_by_level_and_library(store):
    store.store(library_memory("A", library="std"))
    store.store(library_memory("B", library="net"))
    store.store(StoreRequest(level="language", title="C", content="c"))

    libs = store.list_memories(ListRequest(level=KnowledgeLevel.LIBRARY, library_name="net"))
    assert [item.title for item in libs.results] == ["B"]


def test_revision_tracks_writes_only(store):
    start = store.revision()
    memory_id = store.store(library_memory("A")).id
    after_insert = store.revision()
    assert after_insert > start

    store.bump_access(memory_id)
    assert store.revision() == after_insert
    assert store.get(memory_id).access_count == 1

    store.update_fields(memory_id, content="changed")
    assert store.revision() > after_insert


def test_update_fields_rejects_identity_columns(store):
    memory_id = store.store(library_memory("A")).id
    with pytest.raises(ValueError):
        store.update_fields(memory_id, title="B")


def test_transaction_rolls_back(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.insert(store.apply_defaults(library_memory("A")))
            raise RuntimeError("boom")
    assert store.list_memories(ListRequest()).total == 0


def test_categories_counts(store):
    store.store(library_memory("A", library="std"))
    store.store(library_memory("B", library="std"))
    store.store(library_memory("C", library="net"))
    store.store(StoreRequest(level="project", project_path_pattern="/srv/*", title="P", content="p"))

    categories = store.categories()
    assert [(item.name, item.count) for item in categories.libraries] == [("std", 2), ("net", 1)]
    assert [(item.name, item.count) for item in categories.projects] == [("/srv/*", 1)]


def test_export_carries_confidence(store):
    store.store(library_memory("A", confidence=0.3))
    store.store(library_memory("B", library="net"))

    exported = store.export(ExportRequest(library_name="std"))
    assert [item.title for item in exported] == ["A"]
    assert exported[0].confidence == pytest.approx(0.3)


def test_identity_lookup(store):
    memory_id = store.store(library_memory("A")).id
    assert store.find_identity(KnowledgeLevel.LIBRARY, "A", "std") == memory_id
    assert store.find_identity(KnowledgeLevel.LIBRARY, "a", "std") is None
    assert store.identity_of(memory_id)["library_name"] == "std"
    revision, rows = store.identity_snapshot()
    assert revision == store.revision()
    assert [row["id"] for row in rows] == [memory_id]


def test_update_rejects_identity_of_another_record(store):
    first = store.store(library_memory("A")).id
    second = store.store(library_memory("B")).id
    revision = store.revision()

    with pytest.raises(ValidationFailure, match=f"record {first}"):
        store.update(second, library_memory("A", content="clash"))
    assert store.get(second).title == "B"
    assert store.revision() == revision

    moved = store.update(second, library_memory("A", library="std.other"))
    assert moved.title == "A"
    assert store.update(first, library_memory("A", content="same key")).content == "same key"
