from kmem.reconcile.applier import ReconciliationApplier, merge_fields, overwrite_fields
from kmem.reconcile.classifier import ClassifiedCandidate, ConflictClassifier
from kmem.reconcile.identity import IdentityKey, IdentityResolver
from kmem.reconcile.preview import (
    PreviewBuilder,
    PreviewHandle,
    PreviewRegistry,
    check_package_version,
    fingerprint_candidates,
)

__all__ = [
    "ClassifiedCandidate",
    "ConflictClassifier",
    "IdentityKey",
    "IdentityResolver",
    "PreviewBuilder",
    "PreviewHandle",
    "PreviewRegistry",
    "ReconciliationApplier",
    "check_package_version",
    "fingerprint_candidates",
    "merge_fields",
    "overwrite_fields",
]
