import os
from dataclasses import dataclass


def _get_env(key: str, default: str | None = None) -> str | None:
    value = os.getenv(key, default)
    if value is None or value == "":
        return default
    return value


def _get_env_str(key: str, default: str) -> str:
    return _get_env(key, default) or default


def _get_env_int(key: str, default: int) -> int:
    raw = _get_env(key, str(default))
    return int(raw) if raw is not None else default


def _get_env_float(key: str, default: float) -> float:
    raw = _get_env(key, str(default))
    return float(raw) if raw is not None else default


def _get_env_optional_int(key: str) -> int | None:
    raw = _get_env(key)
    return int(raw) if raw is not None else None


@dataclass(frozen=True)
class StoreConfig:
    path: str = "~/.kmem/memory.db"
    default_language_tag: str = "cangjie"

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            path=_get_env_str("KMEM_DB_PATH", "~/.kmem/memory.db"),
            default_language_tag=_get_env_str("KMEM_LANGUAGE_TAG", "cangjie"),
        )


@dataclass(frozen=True)
class ListConfig:
    default_limit: int = 20
    max_limit: int = 100
    default_order_by: str = "created_at"

    @classmethod
    def from_env(cls) -> "ListConfig":
        return cls(
            default_limit=_get_env_int("KMEM_LIST_LIMIT", 20),
            max_limit=_get_env_int("KMEM_LIST_MAX_LIMIT", 100),
            default_order_by=_get_env_str("KMEM_LIST_ORDER_BY", "created_at"),
        )


@dataclass(frozen=True)
class SearchConfig:
    max_results: int = 10
    min_confidence: float = 0.5
    snippet_len: int = 100

    @classmethod
    def from_env(cls) -> "SearchConfig":
        return cls(
            max_results=_get_env_int("KMEM_SEARCH_MAX_RESULTS", 10),
            min_confidence=_get_env_float("KMEM_SEARCH_MIN_CONFIDENCE", 0.5),
            snippet_len=_get_env_int("KMEM_SEARCH_SNIPPET_LEN", 100),
        )


@dataclass(frozen=True)
class ImportConfig:
    preview_ttl_s: int = 900
    max_candidates: int = 5000

    @classmethod
    def from_env(cls) -> "ImportConfig":
        return cls(
            preview_ttl_s=_get_env_int("KMEM_PREVIEW_TTL_S", 900),
            max_candidates=_get_env_int("KMEM_IMPORT_MAX_CANDIDATES", 5000),
        )


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    mcp_path: str = "/mcp"
    # Required X-MCP-Token value for the streamable HTTP transport; None disables the check.
    mcp_token: str | None = None

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=_get_env_str("KMEM_HOST", "127.0.0.1"),
            port=_get_env_int("KMEM_PORT", 8080),
            mcp_path=_get_env_str("KMEM_MCP_PATH", "/mcp"),
            mcp_token=_get_env("KMEM_MCP_TOKEN"),
        )


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = "http://127.0.0.1:8080/api"
    timeout_s: float = 10.0
    max_retries: int = 2
    retry_backoff_s: float = 0.5
    page_size: int = 20
    # Optimistic update/delete count that triggers a full resync; None disables it.
    resync_after: int | None = None

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            base_url=_get_env_str("KMEM_API_URL", "http://127.0.0.1:8080/api"),
            timeout_s=_get_env_float("KMEM_API_TIMEOUT_S", 10.0),
            max_retries=_get_env_int("KMEM_API_MAX_RETRIES", 2),
            retry_backoff_s=_get_env_float("KMEM_API_RETRY_BACKOFF_S", 0.5),
            page_size=_get_env_int("KMEM_PAGE_SIZE", 20),
            resync_after=_get_env_optional_int("KMEM_RESYNC_AFTER"),
        )


@dataclass(frozen=True)
class KMemConfig:
    store: StoreConfig
    listing: ListConfig
    search: SearchConfig
    imports: ImportConfig
    server: ServerConfig
    client: ClientConfig

    @classmethod
    def from_env(cls) -> "KMemConfig":
        return cls(
            store=StoreConfig.from_env(),
            listing=ListConfig.from_env(),
            search=SearchConfig.from_env(),
            imports=ImportConfig.from_env(),
            server=ServerConfig.from_env(),
            client=ClientConfig.from_env(),
        )

    @classmethod
    def defaults(cls) -> "KMemConfig":
        return cls(
            store=StoreConfig(),
            listing=ListConfig(),
            search=SearchConfig(),
            imports=ImportConfig(),
            server=ServerConfig(),
            client=ClientConfig(),
        )
