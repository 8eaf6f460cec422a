from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from kmem.errors import (
    HandleAlreadyConsumed,
    MalformedCandidate,
    PreviewNotFound,
    UnsupportedPackageVersion,
    ValidationFailure,
)
from kmem.memory.models import (
    PACKAGE_FORMAT_VERSION,
    ImportPreview,
    KnowledgePackage,
    StoreRequest,
)
from kmem.reconcile.classifier import ClassifiedCandidate, ConflictClassifier
from kmem.storage.sqlite_store import SqliteMemoryStore
from kmem.utils import canonical_json, sha256_hex


def fingerprint_candidates(candidates: Sequence[StoreRequest]) -> str:
    return sha256_hex(canonical_json([item.model_dump(mode="json") for item in candidates]))


def check_package_version(version: str) -> None:
    major = version.strip().split(".", 1)[0]
    expected = PACKAGE_FORMAT_VERSION.split(".", 1)[0]
    if major != expected:
        raise UnsupportedPackageVersion(
            f"unsupported package format version {version!r} (expected {PACKAGE_FORMAT_VERSION})"
        )


@dataclass
class PreviewHandle:
    """Server-side record binding an ``import_id`` to one candidate set and snapshot."""

    token: str
    fingerprint: str
    snapshot_version: int
    expires_at: float
    candidates: tuple[StoreRequest, ...]
    classified: tuple[ClassifiedCandidate, ...]
    expires_at_iso: str = ""
    consumed: bool = False

    @property
    def to_add(self) -> int:
        return sum(1 for item in self.classified if not item.is_conflict)

    @property
    def to_update(self) -> int:
        return sum(1 for item in self.classified if item.is_conflict)


@dataclass
class PreviewRegistry:
    """Single-use, expiring preview handles.

    A consumed handle is kept as an empty tombstone for one more TTL so a
    replayed confirm reports ``HandleAlreadyConsumed`` instead of
    ``PreviewNotFound``.
    """

    ttl_s: float = 900.0
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, PreviewHandle] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def issue(
        self,
        candidates: Sequence[StoreRequest],
        classified: Sequence[ClassifiedCandidate],
        fingerprint: str,
        snapshot_version: int,
    ) -> PreviewHandle:
        now = self.clock()
        wall_expiry = datetime.now(timezone.utc) + timedelta(seconds=self.ttl_s)
        handle = PreviewHandle(
            token=secrets.token_urlsafe(24),
            fingerprint=fingerprint,
            snapshot_version=snapshot_version,
            expires_at=now + self.ttl_s,
            candidates=tuple(candidates),
            classified=tuple(classified),
            expires_at_iso=wall_expiry.isoformat(),
        )
        with self._lock:
            self._purge(now)
            self._handles[handle.token] = handle
        return handle

    def consume(self, token: str) -> PreviewHandle:
        now = self.clock()
        with self._lock:
            self._purge(now)
            handle = self._handles.get(token)
            if handle is None:
                raise PreviewNotFound(f"import preview not found or expired: {token}")
            if handle.consumed:
                raise HandleAlreadyConsumed(f"import preview already confirmed: {token}")
            self._handles[token] = replace(
                handle,
                candidates=(),
                classified=(),
                consumed=True,
                expires_at=now + self.ttl_s,
            )
        return handle

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge(self.clock())

    def _purge(self, now: float) -> int:
        expired = [token for token, handle in self._handles.items() if now >= handle.expires_at]
        for token in expired:
            del self._handles[token]
        return len(expired)


@dataclass
class PreviewBuilder:
    store: SqliteMemoryStore
    registry: PreviewRegistry
    classifier: ConflictClassifier = field(default_factory=ConflictClassifier)
    max_candidates: int = 5000

    def build_preview(self, package: KnowledgePackage) -> tuple[ImportPreview, PreviewHandle]:
        logger = logging.getLogger(__name__)
        check_package_version(package.version)
        if len(package.memories) > self.max_candidates:
            raise ValidationFailure(
                f"package holds {len(package.memories)} memories; the limit is {self.max_candidates}"
            )

        candidates = [self.store.apply_defaults(item) for item in package.memories]
        for position, candidate in enumerate(candidates):
            try:
                self.store.validate(candidate)
            except ValidationFailure as exc:
                raise MalformedCandidate(exc.message, position=position) from exc

        revision, rows = self.store.identity_snapshot()
        index = self.classifier.resolver.index(rows)
        classified = self.classifier.classify(candidates, index)

        handle = self.registry.issue(
            candidates,
            classified,
            fingerprint=fingerprint_candidates(candidates),
            snapshot_version=revision,
        )
        preview = ImportPreview(
            import_id=handle.token,
            fingerprint=handle.fingerprint,
            expires_at=handle.expires_at_iso,
            total=len(classified),
            to_add=handle.to_add,
            to_update=handle.to_update,
            conflicts=[item.conflict_info() for item in classified if item.is_conflict],
        )
        logger.info(
            "Import preview %s (%s): %d total, %d to add, %d to update",
            handle.token[:8],
            package.package.name or "unnamed package",
            preview.total,
            preview.to_add,
            preview.to_update,
        )
        return preview, handle
