from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from kmem.errors import MalformedCandidate
from kmem.memory.models import ConflictInfo, ImportAction, StoreRequest
from kmem.reconcile.identity import IdentityKey, IdentityResolver


@dataclass(frozen=True)
class ClassifiedCandidate:
    position: int
    candidate: StoreRequest
    key: IdentityKey
    action: ImportAction
    existing_id: int | None = None

    @property
    def is_conflict(self) -> bool:
        return self.existing_id is not None

    def conflict_info(self) -> ConflictInfo:
        if self.existing_id is None:
            raise ValueError("candidate has no conflicting record")
        return ConflictInfo(
            existing_id=self.existing_id,
            title=self.candidate.title,
            level=self.candidate.level,
            library_name=self.candidate.library_name,
            project_path_pattern=self.candidate.project_path_pattern,
            language_tag=self.candidate.language_tag,
            action=self.action,
        )


@dataclass
class ConflictClassifier:
    resolver: IdentityResolver = field(default_factory=IdentityResolver)

    def classify(
        self,
        candidates: Sequence[StoreRequest],
        existing_index: Mapping[IdentityKey, int],
    ) -> list[ClassifiedCandidate]:
        """Label each candidate ``add`` or ``update`` (conflict), preserving input order.

        Pure: no writes, same answer for the same snapshot.
        """
        seen: dict[IdentityKey, int] = {}
        classified: list[ClassifiedCandidate] = []
        for position, candidate in enumerate(candidates):
            key = self.resolver.resolve(candidate, position=position)
            if key in seen:
                raise MalformedCandidate(
                    f"duplicate of candidate #{seen[key]} ({key.level.value} {key.scope!r} {key.title!r})",
                    position=position,
                )
            seen[key] = position
            existing_id = existing_index.get(key)
            if existing_id is None:
                classified.append(
                    ClassifiedCandidate(position, candidate, key, ImportAction.ADD)
                )
            else:
                classified.append(
                    ClassifiedCandidate(
                        position, candidate, key, ImportAction.UPDATE, existing_id=existing_id
                    )
                )
        return classified
