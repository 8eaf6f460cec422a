from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field

from kmem.config import SearchConfig
from kmem.errors import InvalidRequest
from kmem.memory.models import (
    KnowledgeLevel,
    KnowledgeSource,
    RecallRequest,
    RecallResponse,
    RecallResult,
)
from kmem.storage.sqlite_store import SqliteMemoryStore
from kmem.utils import extract_snippet, is_blank, split_terms

PROJECT_KEYWORDS = (
    "my project",
    "our project",
    "current project",
    "this project",
    "config file",
    "project structure",
    "我项目",
    "这里的",
    "我们",
    "当前项目",
    "配置文件",
    "项目结构",
    "我们项目",
)

LANGUAGE_KEYWORDS = (
    "syntax",
    "keyword",
    "how to define",
    "how to declare",
    "declare",
    "definition",
    "interface",
    "struct",
    "语法",
    "定义",
    "关键字",
    "类型",
    "接口",
    "函数",
    "变量",
    "类",
    "结构体",
    "如何定义",
    "怎么声明",
    "语法是什么",
)


def determine_level(query: str, project_context: str | None) -> KnowledgeLevel:
    text = query.lower()
    if project_context and any(keyword in text for keyword in PROJECT_KEYWORDS):
        return KnowledgeLevel.PROJECT
    if any(keyword in text for keyword in LANGUAGE_KEYWORDS):
        return KnowledgeLevel.LANGUAGE
    return KnowledgeLevel.LIBRARY


def matches_project_pattern(project_path: str, pattern: str | None) -> bool:
    if not pattern:
        return False
    return fnmatch.fnmatchcase(project_path, pattern)


def score_result(result: RecallResult, query: str, project_context: str | None) -> float:
    query_lower = query.lower()
    score = 0.5
    if query_lower in result.title.lower():
        score = 1.0
    elif query_lower in result.content.lower():
        score = 0.9

    if (
        result.level == KnowledgeLevel.PROJECT
        and project_context
        and matches_project_pattern(project_context, result.project_path_pattern)
    ):
        score += 0.3
    if result.level == KnowledgeLevel.LANGUAGE:
        score += 0.2
    if result.source == KnowledgeSource.MANUAL:
        score += 0.1
    if result.access_count > 10:
        score += 0.05
    return min(score, 1.0)


@dataclass
class MemorySearcher:
    store: SqliteMemoryStore
    config: SearchConfig = field(default_factory=SearchConfig)

    def search(self, req: RecallRequest) -> RecallResponse:
        logger = logging.getLogger(__name__)
        if is_blank(req.query):
            raise InvalidRequest("query is required")

        max_results = req.max_results if req.max_results > 0 else self.config.max_results
        min_confidence = req.min_confidence if req.min_confidence > 0 else self.config.min_confidence

        if req.level is not None:
            level = KnowledgeLevel(req.level)
            strategy = f"user_specified_{level.value}"
        else:
            level = determine_level(req.query, req.project_context)
            strategy = f"auto_determined_{level.value}"

        candidates = self.store.recall(
            terms=split_terms(req.query),
            level=level,
            language_tag=req.language_tag,
            project_path=req.project_context,
            limit=max_results * 2,
            library_name=req.library_name,
        )

        scored = []
        for item in candidates:
            score = score_result(item, req.query, req.project_context)
            if score < min_confidence:
                continue
            scored.append(
                item.model_copy(
                    update={
                        "confidence": score,
                        "matched_text": extract_snippet(
                            item.content, req.query, self.config.snippet_len
                        ),
                    }
                )
            )
        scored.sort(key=lambda item: item.confidence, reverse=True)
        results = scored[:max_results]

        for item in results:
            self.store.bump_access(item.id)

        logger.debug("Search %r (%s): %d results", req.query, strategy, len(results))
        return RecallResponse(total=len(results), results=results, search_strategy=strategy)
