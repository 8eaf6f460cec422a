from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from kmem.errors import InvalidRequest, KMemError, MalformedCandidate, PreviewStale
from kmem.memory.models import ImportResult, MergeStrategy, StoreRequest
from kmem.reconcile.classifier import ClassifiedCandidate
from kmem.reconcile.identity import IdentityResolver
from kmem.reconcile.preview import PreviewHandle, PreviewRegistry, fingerprint_candidates
from kmem.storage.sqlite_store import SqliteMemoryStore
from kmem.utils import is_blank

_MERGED_TEXT_FIELDS = ("content", "summary")


def overwrite_fields(candidate: StoreRequest) -> dict[str, Any]:
    return {
        "content": candidate.content,
        "summary": candidate.summary,
        "confidence": candidate.effective_confidence(),
        "source": candidate.source,
    }


def merge_fields(existing: dict[str, Any], candidate: StoreRequest) -> dict[str, Any]:
    """Field-wise merge of a candidate into an existing record.

    A non-empty candidate value wins when the existing value is empty or the
    candidate is strictly more confident. Confidence becomes the maximum.
    """
    existing_conf = float(existing["confidence"])
    candidate_conf = candidate.effective_confidence()
    more_confident = candidate_conf > existing_conf

    changes: dict[str, Any] = {}
    for name in _MERGED_TEXT_FIELDS:
        value = getattr(candidate, name)
        if is_blank(value):
            continue
        if is_blank(existing.get(name)) or more_confident:
            changes[name] = value
    if candidate.source is not None and more_confident:
        changes["source"] = candidate.source
    changes["confidence"] = max(existing_conf, candidate_conf)
    return changes


@dataclass
class ReconciliationApplier:
    store: SqliteMemoryStore
    registry: PreviewRegistry
    resolver: IdentityResolver = field(default_factory=IdentityResolver)

    def apply(
        self,
        import_id: str,
        strategy: MergeStrategy | str,
        fingerprint: str | None = None,
    ) -> ImportResult:
        logger = logging.getLogger(__name__)
        try:
            strategy = MergeStrategy(strategy)
        except ValueError as exc:
            raise InvalidRequest(f"unknown merge strategy: {strategy!r}") from exc

        try:
            handle = self.registry.consume(import_id)
        except KMemError as exc:
            logger.warning("Import %s rejected: %s", import_id[:8], exc.message)
            raise

        try:
            self._check_fingerprint(handle, fingerprint)
            with self.store.transaction():
                self._check_drift(handle)
                result = self._write(handle, strategy)
        except PreviewStale as exc:
            logger.warning("Import %s rejected as stale: %s", import_id[:8], exc.message)
            raise
        except Exception:
            logger.exception("Import %s failed; all writes rolled back", import_id[:8])
            raise

        logger.info(
            "Import %s applied with %s: %d added, %d updated, %d skipped",
            import_id[:8],
            strategy.value,
            result.added,
            result.updated,
            result.skipped,
        )
        return result

    def _check_fingerprint(self, handle: PreviewHandle, fingerprint: str | None) -> None:
        if fingerprint_candidates(handle.candidates) != handle.fingerprint:
            raise PreviewStale("stored candidates no longer match the preview fingerprint")
        if fingerprint is not None and fingerprint != handle.fingerprint:
            raise PreviewStale("fingerprint does not match the previewed package")

    def _check_drift(self, handle: PreviewHandle) -> None:
        """Verify the store still looks the way it did when the preview was taken."""
        if self.store.revision() == handle.snapshot_version:
            return
        for item in handle.classified:
            if item.is_conflict:
                row = self.store.identity_of(item.existing_id)
                if row is None:
                    raise PreviewStale(
                        f"record {item.existing_id} ({item.key.title!r}) was deleted after preview"
                    )
                try:
                    key = self.resolver.resolve_fields(
                        level=row["level"],
                        title=row["title"],
                        language_tag=row["language_tag"],
                        library_name=row["library_name"],
                        project_path_pattern=row["project_path_pattern"],
                    )
                except MalformedCandidate as exc:
                    raise PreviewStale(
                        f"record {item.existing_id} no longer has a usable identity"
                    ) from exc
                if key != item.key:
                    raise PreviewStale(
                        f"record {item.existing_id} changed identity after preview"
                    )
            else:
                existing = self.store.find_identity(item.key.level, item.key.title, item.key.scope)
                if existing is not None:
                    raise PreviewStale(
                        f"{item.key.title!r} was created as record {existing} after preview"
                    )

    def _write(self, handle: PreviewHandle, strategy: MergeStrategy) -> ImportResult:
        added = updated = skipped = 0
        for item in handle.classified:
            if not item.is_conflict:
                self.store.insert(item.candidate)
                added += 1
            elif strategy == MergeStrategy.SKIP:
                skipped += 1
            else:
                self._update(item, strategy)
                updated += 1
        return ImportResult(
            total=added + updated,
            added=added,
            updated=updated,
            skipped=skipped,
            success=True,
        )

    def _update(self, item: ClassifiedCandidate, strategy: MergeStrategy) -> None:
        if strategy == MergeStrategy.OVERWRITE:
            changes = overwrite_fields(item.candidate)
        else:
            existing = self.store.get(item.existing_id).model_dump()
            changes = merge_fields(existing, item.candidate)
        self.store.update_fields(item.existing_id, **changes)
