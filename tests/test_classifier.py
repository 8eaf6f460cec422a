import pytest

from conftest import library_memory
from kmem.errors import MalformedCandidate
from kmem.memory.models import ImportAction, KnowledgeLevel
from kmem.reconcile.classifier import ConflictClassifier
from kmem.reconcile.identity import IdentityKey


def test_classify_add_and_update_in_input_order():
    existing = {IdentityKey("Foo", KnowledgeLevel.LIBRARY, "std"): 11}
    candidates = [library_memory("A"), library_memory("Foo"), library_memory("B")]
    classified = ConflictClassifier().classify(candidates, existing)

    assert [item.candidate.title for item in classified] == ["A", "Foo", "B"]
    assert [item.action for item in classified] == [
        ImportAction.ADD,
        ImportAction.UPDATE,
        ImportAction.ADD,
    ]
    assert classified[1].existing_id == 11
    info = classified[1].conflict_info()
    assert info.existing_id == 11
    assert info.library_name == "std"
    assert info.action == ImportAction.UPDATE


def test_same_title_in_other_library_is_an_add():
    existing = {IdentityKey("Foo", KnowledgeLevel.LIBRARY, "std"): 1}
    classified = ConflictClassifier().classify([library_memory("Foo", library="net")], existing)
    assert not classified[0].is_conflict


def test_classification_is_repeatable():
    existing = {IdentityKey("Foo", KnowledgeLevel.LIBRARY, "std"): 1}
    candidates = [library_memory("Foo"), library_memory("Bar")]
    classifier = ConflictClassifier()
    assert classifier.classify(candidates, existing) == classifier.classify(candidates, existing)


def test_duplicate_identity_inside_package_is_rejected():
    with pytest.raises(MalformedCandidate) as exc:
        ConflictClassifier().classify([library_memory("Foo"), library_memory("Foo")], {})
    assert "candidate #1" in exc.value.message
