import asyncio

import httpx
import pytest

from conftest import library_memory, package_of
from kmem.client.api import MemoryAPIClient
from kmem.client.sync import MemoryListSynchronizer
from kmem.config import ClientConfig
from kmem.errors import MemoryNotFound, NetworkFailure
from kmem.memory.models import (
    ImportPreview,
    ImportResult,
    ListResponse,
    Memory,
    StoreResponse,
)
from kmem.server.app import create_app


def _memory(memory_id, title=None, content="c"):
    return Memory(
        id=memory_id,
        level="library",
        language_tag="cangjie",
        library_name="std",
        title=title or f"T{memory_id}",
        content=content,
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
    )


class FakeAPI:
    """In-memory stand-in for MemoryAPIClient."""

    def __init__(self, count=0):
        self.rows = [_memory(i) for i in range(1, count + 1)]
        self.list_calls = []
        self.fail_next = None
        self.gate = None

    async def list_memories(self, params):
        self.list_calls.append(dict(params))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            exc, self.fail_next = self.fail_next, None
            raise exc
        offset, limit = params.get("offset", 0), params.get("limit", 20)
        return ListResponse(total=len(self.rows), results=self.rows[offset : offset + limit])

    async def get_memory(self, memory_id):
        for row in self.rows:
            if row.id == memory_id:
                return row
        raise MemoryNotFound(f"memory not found: id={memory_id}", status_code=404)

    async def create_memory(self, req):
        memory_id = max([row.id for row in self.rows], default=0) + 1
        self.rows.insert(0, _memory(memory_id, title=req.title, content=req.content))
        return StoreResponse(id=memory_id, message="memory stored")

    async def update_memory(self, memory_id, req):
        memory = await self.get_memory(memory_id)
        updated = memory.model_copy(update={"title": req.title, "content": req.content})
        self.rows[self.rows.index(memory)] = updated
        return updated

    async def delete_memory(self, memory_id):
        memory = await self.get_memory(memory_id)
        self.rows.remove(memory)

    async def preview_import(self, package):
        return ImportPreview(import_id="tok", fingerprint="f", expires_at="later", total=len(package.memories))

    async def confirm_import(self, import_id, strategy, fingerprint=None):
        self.rows.append(_memory(len(self.rows) + 100, title="Imported"))
        return ImportResult(total=1, added=1)


def _sync(api, **config):
    return MemoryListSynchronizer(api, ClientConfig(page_size=20, **config))


def _run(coro):
    return asyncio.run(coro)


def test_initial_state():
    sync = _sync(FakeAPI())
    assert sync.memories == ()
    assert sync.total == 0
    assert sync.current_params == {"limit": 20, "offset": 0, "order_by": "created_at"}
    assert sync.is_empty
    assert not sync.has_more
    assert sync.error is None


def test_fetch_takes_total_from_server():
    api = FakeAPI(count=45)
    sync = _sync(api)
    _run(sync.fetch())
    assert len(sync.memories) == 20
    assert sync.total == 45
    assert sync.has_more
    assert not sync.loading


def test_load_more_pages_until_total():
    api = FakeAPI(count=45)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        lengths = []
        for _ in range(3):
            await sync.load_more()
            lengths.append(len(sync.memories))
        return lengths

    assert _run(scenario()) == [40, 45, 45]
    assert [call["offset"] for call in api.list_calls] == [0, 20, 40]
    assert [item.id for item in sync.memories] == list(range(1, 46))


def test_load_more_is_noop_while_loading():
    api = FakeAPI(count=45)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        api.gate = asyncio.Event()
        pending = asyncio.ensure_future(sync.fetch())
        await asyncio.sleep(0)
        assert sync.loading
        await sync.load_more()
        api.gate.set()
        await pending

    _run(scenario())
    assert len(api.list_calls) == 2
    assert len(sync.memories) == 20


def test_failed_fetch_resets_memories():
    api = FakeAPI(count=5)
    sync = _sync(api)
    _run(sync.fetch())
    api.fail_next = NetworkFailure("down")

    with pytest.raises(NetworkFailure):
        _run(sync.fetch({"level": "library"}))
    assert sync.memories == ()
    assert sync.error == "down"
    assert not sync.loading
    assert sync.current_params["offset"] == 0
    assert "level" not in sync.current_params


def test_failed_append_keeps_loaded_page():
    api = FakeAPI(count=45)
    sync = _sync(api)
    _run(sync.fetch())
    api.fail_next = NetworkFailure("down")

    with pytest.raises(NetworkFailure):
        _run(sync.load_more())
    assert len(sync.memories) == 20
    assert sync.error == "down"


def test_create_refetches_with_current_params():
    api = FakeAPI(count=3)
    sync = _sync(api)

    async def scenario():
        await sync.fetch({"order_by": "updated_at"})
        return await sync.create(library_memory("Fresh"))

    response = _run(scenario())
    assert response.id == 4
    assert sync.memories[0].title == "Fresh"
    assert sync.total == 4
    assert api.list_calls[-1]["order_by"] == "updated_at"
    assert not sync.loading


def test_create_after_load_more_refetches_from_first_page():
    api = FakeAPI(count=50)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        await sync.load_more()
        await sync.create(library_memory("Fresh"))

    _run(scenario())
    assert sync.memories[0].title == "Fresh"
    assert [item.id for item in sync.memories[1:4]] == [1, 2, 3]
    assert len(sync.memories) == 20
    assert sync.total == 51
    assert api.list_calls[-1]["offset"] == 0
    assert sync.current_params["offset"] == 0


def test_update_replaces_in_place():
    api = FakeAPI(count=3)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        await sync.fetch_memory(2)
        return await sync.update(2, library_memory("Renamed"))

    _run(scenario())
    assert [item.title for item in sync.memories] == ["T1", "Renamed", "T3"]
    assert sync.current_memory.title == "Renamed"
    assert len(api.list_calls) == 1


def test_delete_removes_locally():
    api = FakeAPI(count=3)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        await sync.fetch_memory(2)
        await sync.delete(2)

    _run(scenario())
    assert [item.id for item in sync.memories] == [1, 3]
    assert sync.total == 2
    assert sync.current_memory is None

    _run(sync.fetch())
    assert sync.total == 2


def test_fetch_memory_failure_sets_error():
    sync = _sync(FakeAPI(count=1))
    with pytest.raises(MemoryNotFound):
        _run(sync.fetch_memory(99))
    assert sync.error == "memory not found: id=99"
    assert not sync.current_loading
    assert sync.current_memory is None


def test_state_is_read_only_from_outside():
    sync = _sync(FakeAPI(count=2))
    _run(sync.fetch())
    params = sync.current_params
    params["offset"] = 99
    assert sync.current_params["offset"] == 0
    assert isinstance(sync.memories, tuple)


def test_set_current_memory_and_reset():
    sync = _sync(FakeAPI(count=2))
    _run(sync.fetch({"level": "library"}))
    sync.set_current_memory(_memory(7))
    assert sync.current_memory.id == 7

    sync.reset()
    assert sync.memories == ()
    assert sync.total == 0
    assert sync.current_memory is None
    assert sync.current_params == {"limit": 20, "offset": 0, "order_by": "created_at"}


def test_confirm_import_resyncs_loaded_window():
    api = FakeAPI(count=45)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        await sync.load_more()
        preview = await sync.preview_import(package_of(library_memory("X")))
        result = await sync.confirm_import(preview.import_id, "merge")
        await sync.load_more()
        return result

    result = _run(scenario())
    assert result.added == 1
    resync_call = api.list_calls[2]
    assert (resync_call["offset"], resync_call["limit"]) == (0, 40)
    assert api.list_calls[3]["offset"] == 40
    assert sync.total == 46
    assert len(sync.memories) == 46


def test_resync_after_optimistic_mutations():
    api = FakeAPI(count=5)
    sync = _sync(api, resync_after=2)

    async def scenario():
        await sync.fetch()
        await sync.delete(1)
        calls_after_first = len(api.list_calls)
        await sync.update(2, library_memory("Changed"))
        return calls_after_first

    assert _run(scenario()) == 1
    assert len(api.list_calls) == 2
    assert [item.id for item in sync.memories] == [2, 3, 4, 5]


def test_synchronizer_against_app(config, store, registry):
    app = create_app(config=config, store=store, registry=registry)
    for i in range(3):
        store.store(library_memory(f"Seed{i}"))

    async def scenario():
        client_config = ClientConfig(base_url="http://testserver/api", page_size=2, retry_backoff_s=0)
        async with MemoryAPIClient(client_config, transport=httpx.ASGITransport(app=app)) as api:
            sync = MemoryListSynchronizer(api, client_config)
            await sync.fetch()
            await sync.load_more()
            preview = await sync.preview_import(package_of(library_memory("Seed0"), library_memory("New")))
            await sync.confirm_import(preview.import_id, "skip", preview.fingerprint)
            return sync

    sync = _run(scenario())
    assert sync.total == 4
    assert len(sync.memories) == 3
    assert sync.error is None


class ListFailsAfterConfirm(FakeAPI):
    async def confirm_import(self, import_id, strategy, fingerprint=None):
        result = await super().confirm_import(import_id, strategy, fingerprint)
        self.fail_next = NetworkFailure("list down")
        return result


def test_confirm_import_returns_result_when_resync_fails():
    api = ListFailsAfterConfirm(count=5)
    sync = _sync(api)

    async def scenario():
        await sync.fetch()
        preview = await sync.preview_import(package_of(library_memory("X")))
        return await sync.confirm_import(preview.import_id, "merge")

    result = _run(scenario())
    assert result.added == 1
    assert result.total == 1
    assert sync.error == "list down"
    assert not sync.loading

    _run(sync.fetch())
    assert sync.total == 6
    assert sync.error is None
