from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

PACKAGE_FORMAT_VERSION = "1.0"


class KnowledgeLevel(str, Enum):
    LANGUAGE = "language"
    PROJECT = "project"
    LIBRARY = "library"


class KnowledgeSource(str, Enum):
    MANUAL = "manual"
    AUTO_CAPTURED = "auto_captured"


class MergeStrategy(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    MERGE = "merge"


class ImportAction(str, Enum):
    ADD = "add"
    UPDATE = "update"


def default_confidence(source: KnowledgeSource | str | None) -> float:
    # Hand-written notes are trusted more than captured ones.
    if source == KnowledgeSource.AUTO_CAPTURED or source == "auto_captured":
        return 0.7
    return 1.0


class StoreRequest(BaseModel):
    level: KnowledgeLevel
    language_tag: str = ""
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    title: str = ""
    content: str = ""
    summary: Optional[str] = None
    source: KnowledgeSource = KnowledgeSource.MANUAL
    # Only set by import packages; plain creates derive it from ``source``.
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def effective_confidence(self) -> float:
        if self.confidence is not None:
            return float(self.confidence)
        return default_confidence(self.source)


class StoreResponse(BaseModel):
    success: bool = True
    id: int
    message: str = ""


class Memory(BaseModel):
    id: int
    level: KnowledgeLevel
    language_tag: str
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    title: str
    content: str
    summary: Optional[str] = None
    source: KnowledgeSource = KnowledgeSource.MANUAL
    access_count: int = 0
    confidence: float = 1.0
    created_at: str
    updated_at: str
    last_accessed_at: Optional[str] = None


class ListRequest(BaseModel):
    level: Optional[KnowledgeLevel] = None
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    language_tag: Optional[str] = None
    limit: int = 0
    offset: int = 0
    order_by: Optional[str] = None
    brief: bool = False


class ListResponse(BaseModel):
    total: int = 0
    results: list[Memory] = Field(default_factory=list)


class RecallRequest(BaseModel):
    query: str
    level: Optional[KnowledgeLevel] = None
    language_tag: Optional[str] = None
    library_name: Optional[str] = None
    project_context: Optional[str] = None
    max_results: int = 0
    min_confidence: float = 0.0


class RecallResult(BaseModel):
    id: int
    level: KnowledgeLevel
    title: str
    content: str
    summary: Optional[str] = None
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    source: KnowledgeSource = KnowledgeSource.MANUAL
    confidence: float = 0.0
    access_count: int = 0
    matched_text: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RecallResponse(BaseModel):
    total: int = 0
    results: list[RecallResult] = Field(default_factory=list)
    search_strategy: str = ""


class CategoryInfo(BaseModel):
    name: str
    count: int


class CategoriesResponse(BaseModel):
    libraries: list[CategoryInfo] = Field(default_factory=list)
    projects: list[CategoryInfo] = Field(default_factory=list)


class ExportRequest(BaseModel):
    level: Optional[KnowledgeLevel] = None
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    language_tag: Optional[str] = None


class PackageInfo(BaseModel):
    name: str = ""
    description: str = ""
    author: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    version: str = ""


class KnowledgePackage(BaseModel):
    version: str = Field(min_length=1)
    package: PackageInfo = Field(default_factory=PackageInfo)
    memories: list[StoreRequest] = Field(default_factory=list)


class ConflictInfo(BaseModel):
    existing_id: int
    title: str
    level: KnowledgeLevel
    library_name: Optional[str] = None
    project_path_pattern: Optional[str] = None
    language_tag: Optional[str] = None
    action: ImportAction = ImportAction.UPDATE


class ImportPreview(BaseModel):
    import_id: str
    fingerprint: str
    expires_at: str
    total: int = 0
    to_add: int = 0
    to_update: int = 0
    conflicts: list[ConflictInfo] = Field(default_factory=list)


class ImportConfirmRequest(BaseModel):
    import_id: str
    strategy: MergeStrategy
    fingerprint: Optional[str] = None


class ImportResult(BaseModel):
    total: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    success: bool = True
