import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def blank_to_none(value: str | None) -> str | None:
    return None if is_blank(value) else value


def split_terms(query: str) -> list[str]:
    return [term for term in re.split(r"\s+", query.strip()) if term]


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def extract_snippet(content: str, query: str, max_len: int = 100) -> str:
    if len(content) <= max_len:
        return content

    idx = content.lower().find(query.lower())
    if idx == -1:
        return content[:max_len] + "..."

    # 50 characters of context on each side of the first hit.
    start = max(idx - 50, 0)
    end = min(idx + len(query) + 50, len(content))
    text = content[start:end]
    if start > 0:
        text = "..." + text
    if end < len(content):
        text = text + "..."
    return text


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
