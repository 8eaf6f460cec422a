from kmem.memory.models import (
    PACKAGE_FORMAT_VERSION,
    CategoriesResponse,
    CategoryInfo,
    ConflictInfo,
    ExportRequest,
    ImportAction,
    ImportConfirmRequest,
    ImportPreview,
    ImportResult,
    KnowledgeLevel,
    KnowledgePackage,
    KnowledgeSource,
    ListRequest,
    ListResponse,
    Memory,
    MergeStrategy,
    PackageInfo,
    RecallRequest,
    RecallResponse,
    RecallResult,
    StoreRequest,
    StoreResponse,
    default_confidence,
)

__all__ = [
    "PACKAGE_FORMAT_VERSION",
    "CategoriesResponse",
    "CategoryInfo",
    "ConflictInfo",
    "ExportRequest",
    "ImportAction",
    "ImportConfirmRequest",
    "ImportPreview",
    "ImportResult",
    "KnowledgeLevel",
    "KnowledgePackage",
    "KnowledgeSource",
    "ListRequest",
    "ListResponse",
    "Memory",
    "MergeStrategy",
    "PackageInfo",
    "RecallRequest",
    "RecallResponse",
    "RecallResult",
    "StoreRequest",
    "StoreResponse",
    "default_confidence",
]
