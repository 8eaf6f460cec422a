from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kmem.config import ClientConfig
from kmem.errors import APIError, NetworkFailure, error_from_code
from kmem.memory.models import (
    CategoriesResponse,
    ExportRequest,
    ImportPreview,
    ImportResult,
    KnowledgePackage,
    ListResponse,
    Memory,
    MergeStrategy,
    RecallRequest,
    RecallResponse,
    StoreRequest,
    StoreResponse,
)

logger = logging.getLogger(__name__)


def _query_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    query: dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif hasattr(value, "value"):
            value = value.value
        query[key] = value
    return query


class MemoryAPIClient:
    """Async client for the ``/api`` endpoints.

    Unwraps the ``{success, data, error}`` envelope and raises the matching
    ``KMemError`` subclass for failures. Only GET requests are retried.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_s),
            transport=transport,
        )

    async def __aenter__(self) -> "MemoryAPIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def list_memories(self, params: Mapping[str, Any] | None = None) -> ListResponse:
        data = await self._get("/memories", params=_query_params(params))
        return ListResponse.model_validate(data)

    async def get_memory(self, memory_id: int) -> Memory:
        data = await self._get(f"/memories/{memory_id}")
        return Memory.model_validate(data)

    async def create_memory(self, req: StoreRequest) -> StoreResponse:
        data = await self._request("POST", "/memories", json=req.model_dump(mode="json"))
        return StoreResponse.model_validate(data)

    async def update_memory(self, memory_id: int, req: StoreRequest) -> Memory:
        data = await self._request(
            "PUT", f"/memories/{memory_id}", json=req.model_dump(mode="json")
        )
        return Memory.model_validate(data)

    async def delete_memory(self, memory_id: int) -> None:
        await self._request("DELETE", f"/memories/{memory_id}")

    async def search(self, req: RecallRequest) -> RecallResponse:
        data = await self._request("POST", "/search", json=req.model_dump(mode="json"))
        return RecallResponse.model_validate(data)

    async def categories(self, language_tag: str | None = None) -> CategoriesResponse:
        data = await self._get("/categories", params=_query_params({"language_tag": language_tag}))
        return CategoriesResponse.model_validate(data)

    async def export(self, req: ExportRequest | None = None) -> KnowledgePackage:
        req = req or ExportRequest()
        data = await self._request(
            "POST", "/export", json=req.model_dump(mode="json"), raw=True
        )
        return KnowledgePackage.model_validate(data)

    async def preview_import(self, package: KnowledgePackage) -> ImportPreview:
        data = await self._request("POST", "/import", json=package.model_dump(mode="json"))
        return ImportPreview.model_validate(data)

    async def confirm_import(
        self,
        import_id: str,
        strategy: MergeStrategy | str,
        fingerprint: str | None = None,
    ) -> ImportResult:
        body = {
            "import_id": import_id,
            "strategy": MergeStrategy(strategy).value,
            "fingerprint": fingerprint,
        }
        data = await self._request("POST", "/import/confirm", json=body)
        return ImportResult.model_validate(data)

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(NetworkFailure),
            stop=stop_after_attempt(max(int(self.config.max_retries), 0) + 1),
            wait=wait_exponential(multiplier=self.config.retry_backoff_s, max=8),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._request("GET", path, params=params)
        return None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        raw: bool = False,
    ) -> Any:
        try:
            response = await self._http.request(method, path, params=params, json=json)
        except httpx.TransportError as exc:
            raise NetworkFailure(f"{method} {path} failed: {exc}") from exc
        return self._decode(response, raw=raw)

    def _decode(self, response: httpx.Response, raw: bool = False) -> Any:
        if response.status_code == 204:
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            if response.is_success:
                raise NetworkFailure(
                    f"invalid JSON from {response.request.method} {response.request.url.path}"
                ) from exc
            raise APIError(
                response.text or f"HTTP {response.status_code}",
                status_code=response.status_code,
            ) from exc

        if raw and response.is_success:
            return payload
        if not isinstance(payload, dict):
            raise NetworkFailure(f"unexpected response shape: {type(payload).__name__}")
        if not response.is_success or not payload.get("success", False):
            error = payload.get("error") or {}
            raise error_from_code(
                error.get("code"),
                error.get("message") or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return payload.get("data")
