import os
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from kmem.config import (
    ClientConfig,
    ImportConfig,
    KMemConfig,
    ListConfig,
    SearchConfig,
    ServerConfig,
    StoreConfig,
)


def _load_yaml(path: str) -> dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")
    return data


def _overlay(base, updates: dict[str, Any], keys: list[str]):
    values = {}
    for key in keys:
        if key in updates:
            values[key] = _resolve_value(updates[key])
    return replace(base, **values) if values else base


def _resolve_value(value: Any) -> Any:
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            env_key = value[2:-1]
            return os.getenv(env_key, "")
        if value.startswith("$"):
            env_key = value[1:]
            return os.getenv(env_key, "")
    return value


def build_config(config_path: str | None = None) -> KMemConfig:
    if not config_path:
        return KMemConfig.from_env()

    raw = _load_yaml(config_path)
    store = _overlay(StoreConfig(), raw.get("store", {}), ["path", "default_language_tag"])
    listing = _overlay(
        ListConfig(), raw.get("listing", {}), ["default_limit", "max_limit", "default_order_by"]
    )
    search = _overlay(
        SearchConfig(), raw.get("search", {}), ["max_results", "min_confidence", "snippet_len"]
    )
    imports = _overlay(ImportConfig(), raw.get("imports", {}), ["preview_ttl_s", "max_candidates"])
    server = _overlay(
        ServerConfig(), raw.get("server", {}), ["host", "port", "mcp_path", "mcp_token"]
    )
    client = _overlay(
        ClientConfig(),
        raw.get("client", {}),
        [
            "base_url",
            "timeout_s",
            "max_retries",
            "retry_backoff_s",
            "page_size",
            "resync_after",
        ],
    )
    return KMemConfig(
        store=store,
        listing=listing,
        search=search,
        imports=imports,
        server=server,
        client=client,
    )
