from __future__ import annotations

import logging
from typing import Any, Mapping

from kmem.client.api import MemoryAPIClient
from kmem.config import ClientConfig
from kmem.errors import KMemError
from kmem.memory.models import (
    ImportPreview,
    ImportResult,
    KnowledgePackage,
    Memory,
    MergeStrategy,
    StoreRequest,
    StoreResponse,
)

MAX_PAGE_SIZE = 100


def _message(exc: Exception) -> str:
    if isinstance(exc, KMemError):
        return exc.message
    return str(exc) or type(exc).__name__


class MemoryListSynchronizer:
    """Client-side cache of the paginated memory list.

    All state is owned here and changed only through the async operations
    below. Concurrent fetches are not coalesced: whichever response resolves
    last determines the final state.
    """

    def __init__(
        self,
        api: MemoryAPIClient,
        config: ClientConfig | None = None,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.api = api
        self.config = config or ClientConfig()
        self.max_page_size = max_page_size
        self._pending_mutations = 0
        self._init_state()

    def _init_state(self) -> None:
        self._memories: list[Memory] = []
        self._total = 0
        self._loading = False
        self._error: str | None = None
        self._current_memory: Memory | None = None
        self._current_loading = False
        self._current_params: dict[str, Any] = self._default_params()

    def _default_params(self) -> dict[str, Any]:
        return {"limit": self.config.page_size, "offset": 0, "order_by": "created_at"}

    @property
    def memories(self) -> tuple[Memory, ...]:
        return tuple(self._memories)

    @property
    def total(self) -> int:
        return self._total

    @property
    def current_params(self) -> dict[str, Any]:
        return dict(self._current_params)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def current_loading(self) -> bool:
        return self._current_loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def current_memory(self) -> Memory | None:
        return self._current_memory

    @property
    def has_more(self) -> bool:
        return len(self._memories) < self._total

    @property
    def is_empty(self) -> bool:
        return not self._memories and not self._loading

    async def fetch(self, params: Mapping[str, Any] | None = None, append: bool = False) -> None:
        self._loading = True
        self._error = None
        query = {**self._current_params, **(params or {})}
        try:
            response = await self.api.list_memories(query)
            if append:
                self._memories.extend(response.results)
            else:
                self._memories = list(response.results)
            self._total = response.total
            self._current_params = query
        except Exception as exc:
            self._error = _message(exc)
            if not append:
                self._memories = []
            raise
        finally:
            self._loading = False

    async def load_more(self) -> None:
        if self._loading or not self.has_more:
            return
        offset = int(self._current_params.get("offset") or 0)
        limit = int(self._current_params.get("limit") or self.config.page_size)
        await self.fetch({"offset": offset + limit}, append=True)

    async def resync(self) -> None:
        """Reload everything loaded so far from offset 0, replacing the cache."""
        page_size = int(self._current_params.get("limit") or self.config.page_size)
        limit = min(max(page_size, len(self._memories)), self.max_page_size)
        self._pending_mutations = 0
        await self.fetch({"offset": 0, "limit": limit})
        # Keep the cursor on the last loaded page so load_more continues after it.
        self._current_params["limit"] = page_size
        self._current_params["offset"] = max(len(self._memories) - page_size, 0)
        logging.getLogger(__name__).debug(
            "Resynced memory list: %d of %d loaded", len(self._memories), self._total
        )

    async def fetch_memory(self, memory_id: int) -> Memory:
        self._current_loading = True
        self._error = None
        try:
            memory = await self.api.get_memory(memory_id)
            self._current_memory = memory
            return memory
        except Exception as exc:
            self._error = _message(exc)
            raise
        finally:
            self._current_loading = False

    async def create(self, data: StoreRequest) -> StoreResponse:
        self._loading = True
        self._error = None
        try:
            response = await self.api.create_memory(data)
            await self.fetch({"offset": 0})
            return response
        except Exception as exc:
            self._error = _message(exc)
            raise
        finally:
            self._loading = False

    async def update(self, memory_id: int, data: StoreRequest) -> Memory:
        self._loading = True
        self._error = None
        try:
            memory = await self.api.update_memory(memory_id, data)
            for index, item in enumerate(self._memories):
                if item.id == memory_id:
                    self._memories[index] = memory
                    break
            if self._current_memory is not None and self._current_memory.id == memory_id:
                self._current_memory = memory
        except Exception as exc:
            self._error = _message(exc)
            raise
        finally:
            self._loading = False
        await self._after_optimistic_mutation()
        return memory

    async def delete(self, memory_id: int) -> None:
        self._loading = True
        self._error = None
        try:
            await self.api.delete_memory(memory_id)
            self._memories = [item for item in self._memories if item.id != memory_id]
            self._total = max(self._total - 1, 0)
            if self._current_memory is not None and self._current_memory.id == memory_id:
                self._current_memory = None
        except Exception as exc:
            self._error = _message(exc)
            raise
        finally:
            self._loading = False
        await self._after_optimistic_mutation()

    async def _after_optimistic_mutation(self) -> None:
        threshold = self.config.resync_after
        if not threshold:
            return
        self._pending_mutations += 1
        if self._pending_mutations >= threshold:
            await self.resync()

    def set_current_memory(self, memory: Memory | None) -> None:
        self._current_memory = memory

    def reset(self) -> None:
        self._pending_mutations = 0
        self._init_state()

    async def preview_import(self, package: KnowledgePackage) -> ImportPreview:
        self._error = None
        try:
            return await self.api.preview_import(package)
        except Exception as exc:
            self._error = _message(exc)
            raise

    async def confirm_import(
        self,
        import_id: str,
        strategy: MergeStrategy | str,
        fingerprint: str | None = None,
    ) -> ImportResult:
        self._error = None
        try:
            result = await self.api.confirm_import(import_id, strategy, fingerprint)
        except Exception as exc:
            self._error = _message(exc)
            raise
        try:
            await self.resync()
        except Exception as exc:
            # The import is committed; report the refresh failure through error only.
            logging.getLogger(__name__).warning("Resync after import failed: %s", exc)
            self._error = _message(exc)
        return result
