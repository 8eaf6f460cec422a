import pytest

from kmem.errors import MalformedCandidate
from kmem.memory.models import KnowledgeLevel, StoreRequest
from kmem.reconcile.identity import IdentityKey, IdentityResolver


def test_library_scope_is_library_name():
    key = IdentityResolver().resolve(
        StoreRequest(level="library", library_name="std", language_tag="cangjie", title="Foo")
    )
    assert key == IdentityKey(title="Foo", level=KnowledgeLevel.LIBRARY, scope="std")


def test_language_and_project_scopes():
    resolver = IdentityResolver()
    language = resolver.resolve(StoreRequest(level="language", language_tag="cangjie", title="T"))
    project = resolver.resolve(
        StoreRequest(level="project", project_path_pattern="/srv/*", language_tag="cangjie", title="T")
    )
    assert language.scope == "cangjie"
    assert project.scope == "/srv/*"
    assert language != project


def test_matching_is_case_sensitive():
    resolver = IdentityResolver()
    upper = resolver.resolve(StoreRequest(level="library", library_name="std", title="Foo"))
    lower = resolver.resolve(StoreRequest(level="library", library_name="std", title="foo"))
    assert upper != lower


def test_missing_scope_is_malformed():
    with pytest.raises(MalformedCandidate) as exc:
        IdentityResolver().resolve(StoreRequest(level="library", title="Foo"), position=3)
    assert "candidate #3" in exc.value.message
    assert "library_name" in exc.value.message


def test_blank_title_and_unknown_level_are_malformed():
    resolver = IdentityResolver()
    with pytest.raises(MalformedCandidate):
        resolver.resolve(StoreRequest(level="library", library_name="std", title="  "))
    with pytest.raises(MalformedCandidate):
        resolver.resolve_fields(level="module", title="Foo", library_name="std")


def test_index_prefers_lowest_id_and_skips_unusable_rows():
    rows = [
        {"id": 7, "level": "library", "title": "Foo", "library_name": "std"},
        {"id": 3, "level": "library", "title": "Foo", "library_name": "std"},
        {"id": 5, "level": "project", "title": "Bar", "project_path_pattern": None},
    ]
    index = IdentityResolver().index(rows)
    assert index == {IdentityKey("Foo", KnowledgeLevel.LIBRARY, "std"): 3}
