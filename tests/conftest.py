from dataclasses import replace

import pytest

from kmem.config import KMemConfig, StoreConfig
from kmem.memory.models import KnowledgeLevel, KnowledgePackage, StoreRequest
from kmem.reconcile import PreviewBuilder, PreviewRegistry, ReconciliationApplier
from kmem.storage.sqlite_store import SqliteMemoryStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def library_memory(title, library="std", content="content", **kwargs):
    return StoreRequest(
        level=KnowledgeLevel.LIBRARY,
        library_name=library,
        title=title,
        content=content,
        **kwargs,
    )


def package_of(*memories, version="1.0"):
    return KnowledgePackage(version=version, memories=list(memories))


@pytest.fixture
def config(tmp_path):
    base = KMemConfig.defaults()
    return replace(base, store=StoreConfig(path=str(tmp_path / "memory.db")))


@pytest.fixture
def store(config):
    store = SqliteMemoryStore(config.store, config.listing)
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return PreviewRegistry(ttl_s=900, clock=clock)


@pytest.fixture
def builder(store, registry):
    return PreviewBuilder(store=store, registry=registry, max_candidates=50)


@pytest.fixture
def applier(store, registry):
    return ReconciliationApplier(store=store, registry=registry)
