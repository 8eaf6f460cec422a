from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from kmem.errors import InvalidRequest, MalformedCandidate
from kmem.memory.models import (
    PACKAGE_FORMAT_VERSION,
    ExportRequest,
    KnowledgePackage,
    PackageInfo,
    StoreRequest,
)

EXPORT_PACKAGE_NAME = "kmem export"


def describe_filter(req: ExportRequest) -> str:
    parts = []
    if req.level is not None:
        parts.append(f"level={req.level.value}")
    if req.library_name:
        parts.append(f"library={req.library_name}")
    if req.project_path_pattern:
        parts.append(f"project={req.project_path_pattern}")
    if req.language_tag:
        parts.append(f"language={req.language_tag}")
    return ", ".join(parts) or "all memories"


def build_export_package(
    memories: Sequence[StoreRequest],
    req: ExportRequest | None = None,
    now: datetime | None = None,
) -> KnowledgePackage:
    now = now or datetime.now(timezone.utc)
    req = req or ExportRequest()
    return KnowledgePackage(
        version=PACKAGE_FORMAT_VERSION,
        package=PackageInfo(
            name=EXPORT_PACKAGE_NAME,
            description=f"Exported {len(memories)} memories ({describe_filter(req)})",
            tags=[req.language_tag] if req.language_tag else [],
            version=now.strftime("%Y.%m.%d.%H%M%S"),
        ),
        memories=list(memories),
    )


def export_filename(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"kmem-export-{now.strftime('%Y%m%d-%H%M%S')}.json"


def candidate_error(
    errors: Iterable[dict[str, Any]], loc_prefix: tuple[str, ...] = ()
) -> MalformedCandidate | None:
    """Turn the first pydantic error located at ``memories[N]`` into a MalformedCandidate."""
    for err in errors:
        loc = tuple(err.get("loc", ()))
        if loc[: len(loc_prefix)] != loc_prefix:
            continue
        loc = loc[len(loc_prefix) :]
        if len(loc) >= 2 and loc[0] == "memories" and isinstance(loc[1], int):
            field_path = ".".join(str(item) for item in loc[2:])
            msg = str(err.get("msg"))
            return MalformedCandidate(f"{field_path}: {msg}" if field_path else msg, position=loc[1])
    return None


def load_package(raw: Any) -> KnowledgePackage:
    try:
        return KnowledgePackage.model_validate(raw)
    except ValidationError as exc:
        malformed = candidate_error(exc.errors())
        if malformed is not None:
            raise malformed from exc
        first = exc.errors()[0]
        loc = ".".join(str(item) for item in first.get("loc", ()))
        detail = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
        raise InvalidRequest(f"invalid knowledge package: {detail}") from exc
