from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from kmem.errors import MalformedCandidate
from kmem.memory.models import KnowledgeLevel, StoreRequest
from kmem.utils import is_blank

_SCOPE_FIELDS = {
    KnowledgeLevel.LANGUAGE: "language_tag",
    KnowledgeLevel.LIBRARY: "library_name",
    KnowledgeLevel.PROJECT: "project_path_pattern",
}


@dataclass(frozen=True)
class IdentityKey:
    title: str
    level: KnowledgeLevel
    scope: str


@dataclass
class IdentityResolver:
    """Maps records to the ``(title, level, scope)`` key that decides "same concept".

    Matching is exact and case-sensitive; near-duplicate titles stay distinct.
    """

    def resolve(self, candidate: StoreRequest, position: int | None = None) -> IdentityKey:
        return self.resolve_fields(
            level=candidate.level,
            title=candidate.title,
            language_tag=candidate.language_tag,
            library_name=candidate.library_name,
            project_path_pattern=candidate.project_path_pattern,
            position=position,
        )

    def resolve_fields(
        self,
        level: KnowledgeLevel | str,
        title: str | None,
        language_tag: str | None = None,
        library_name: str | None = None,
        project_path_pattern: str | None = None,
        position: int | None = None,
    ) -> IdentityKey:
        try:
            level = KnowledgeLevel(level)
        except ValueError as exc:
            raise MalformedCandidate(f"unknown level: {level!r}", position=position) from exc
        if is_blank(title):
            raise MalformedCandidate("title is required", position=position)
        field_name = _SCOPE_FIELDS[level]
        scope = {
            "language_tag": language_tag,
            "library_name": library_name,
            "project_path_pattern": project_path_pattern,
        }[field_name]
        if is_blank(scope):
            raise MalformedCandidate(
                f"{field_name} is required for {level.value} level", position=position
            )
        return IdentityKey(title=str(title), level=level, scope=str(scope))

    def index(self, rows: Iterable[dict[str, Any]]) -> dict[IdentityKey, int]:
        """Build ``key -> id`` from store identity rows; the lowest id wins on duplicates."""
        index: dict[IdentityKey, int] = {}
        for row in sorted(rows, key=lambda item: int(item["id"])):
            try:
                key = self.resolve_fields(
                    level=row["level"],
                    title=row["title"],
                    language_tag=row.get("language_tag"),
                    library_name=row.get("library_name"),
                    project_path_pattern=row.get("project_path_pattern"),
                )
            except MalformedCandidate:
                # Legacy rows without a scope value can never match a candidate.
                continue
            index.setdefault(key, int(row["id"]))
        return index
