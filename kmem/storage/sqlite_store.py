from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from kmem.config import ListConfig, StoreConfig
from kmem.errors import MemoryNotFound, ValidationFailure
from kmem.memory.models import (
    CategoriesResponse,
    CategoryInfo,
    ExportRequest,
    KnowledgeLevel,
    KnowledgeSource,
    ListRequest,
    ListResponse,
    Memory,
    RecallResult,
    StoreRequest,
    StoreResponse,
)
from kmem.utils import blank_to_none, escape_like, is_blank, utc_now_iso

_COLUMNS = (
    "id, level, language_tag, library_name, project_path_pattern, title, content, "
    "summary, source, access_count, confidence, created_at, updated_at, last_accessed_at"
)

SCOPE_COLUMNS = {
    KnowledgeLevel.LANGUAGE: "language_tag",
    KnowledgeLevel.LIBRARY: "library_name",
    KnowledgeLevel.PROJECT: "project_path_pattern",
}

_ORDER_BY = {
    "created_at": "created_at DESC, id DESC",
    "updated_at": "updated_at DESC, id DESC",
    "access_count": "access_count DESC, id DESC",
}

_UPDATABLE_FIELDS = ("content", "summary", "confidence", "source")


@dataclass
class SqliteMemoryStore:
    """SQLite-backed memory store.

    One connection shared by every caller, serialized by a re-entrant lock.
    Every content write bumps ``revision`` so callers can tell whether a
    snapshot they took earlier is still current.
    """

    config: StoreConfig
    listing: ListConfig = field(default_factory=ListConfig)

    def __post_init__(self) -> None:
        path = self.config.path
        if path != ":memory:":
            path = os.path.expanduser(path)
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        statements = [
            "CREATE TABLE IF NOT EXISTS knowledge_base ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "level TEXT NOT NULL CHECK (level IN ('language', 'project', 'library')), "
            "language_tag TEXT NOT NULL, "
            "library_name TEXT, "
            "project_path_pattern TEXT, "
            "title TEXT NOT NULL, "
            "content TEXT NOT NULL, "
            "summary TEXT, "
            "source TEXT NOT NULL DEFAULT 'manual' CHECK (source IN ('manual', 'auto_captured')), "
            "access_count INTEGER NOT NULL DEFAULT 0, "
            "confidence REAL NOT NULL DEFAULT 1.0, "
            "created_at TEXT NOT NULL, "
            "updated_at TEXT NOT NULL, "
            "last_accessed_at TEXT"
            ")",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_level ON knowledge_base(level)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_language ON knowledge_base(language_tag)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_library ON knowledge_base(library_name)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_project_pattern "
            "ON knowledge_base(project_path_pattern)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_created_at ON knowledge_base(created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_identity ON knowledge_base(level, title)",
            "CREATE TABLE IF NOT EXISTS store_meta (key TEXT PRIMARY KEY, value INTEGER NOT NULL)",
            "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('revision', 0)",
        ]
        with self._lock:
            for stmt in statements:
                self._conn.execute(stmt)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator["SqliteMemoryStore"]:
        """Run the block in one exclusive write transaction.

        Nested use joins the outer transaction; an exception anywhere rolls
        back everything written since the outermost ``transaction()``.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _bump_revision(self) -> None:
        self._conn.execute("UPDATE store_meta SET value = value + 1 WHERE key = 'revision'")

    def revision(self) -> int:
        rows = self._query("SELECT value FROM store_meta WHERE key = 'revision'")
        return int(rows[0]["value"]) if rows else 0

    def apply_defaults(self, req: StoreRequest) -> StoreRequest:
        return req.model_copy(
            update={
                "language_tag": req.language_tag or self.config.default_language_tag,
                "library_name": blank_to_none(req.library_name),
                "project_path_pattern": blank_to_none(req.project_path_pattern),
                "summary": blank_to_none(req.summary),
                "source": req.source or KnowledgeSource.MANUAL,
            }
        )

    def validate(self, req: StoreRequest) -> None:
        if is_blank(req.title) or is_blank(req.content):
            raise ValidationFailure("title and content are required")
        if req.level == KnowledgeLevel.LIBRARY and is_blank(req.library_name):
            raise ValidationFailure("library_name is required for library level")
        if req.level == KnowledgeLevel.PROJECT and is_blank(req.project_path_pattern):
            raise ValidationFailure("project_path_pattern is required for project level")

    def store(self, req: StoreRequest) -> StoreResponse:
        req = self.apply_defaults(req)
        self.validate(req)
        memory_id = self.insert(req)
        logging.getLogger(__name__).debug("Stored memory %s (%s)", memory_id, req.title)
        return StoreResponse(success=True, id=memory_id, message="memory stored")

    def insert(self, req: StoreRequest) -> int:
        now = utc_now_iso()
        with self.transaction():
            cursor = self._conn.execute(
                "INSERT INTO knowledge_base ("
                "level, language_tag, library_name, project_path_pattern, "
                "title, content, summary, source, confidence, created_at, updated_at"
                ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    req.level.value,
                    req.language_tag,
                    blank_to_none(req.library_name),
                    blank_to_none(req.project_path_pattern),
                    req.title,
                    req.content,
                    blank_to_none(req.summary),
                    req.source.value,
                    req.effective_confidence(),
                    now,
                    now,
                ),
            )
            self._bump_revision()
            return int(cursor.lastrowid)

    def get(self, memory_id: int) -> Memory:
        rows = self._query(f"SELECT {_COLUMNS} FROM knowledge_base WHERE id = ?", (memory_id,))
        if not rows:
            raise MemoryNotFound(f"memory not found: id={memory_id}")
        return self._row_to_memory(rows[0])

    def update(self, memory_id: int, req: StoreRequest) -> Memory:
        req = self.apply_defaults(req)
        self.validate(req)
        with self.transaction():
            self.get(memory_id)
            column = SCOPE_COLUMNS[req.level]
            clash = self._query(
                f"SELECT id FROM knowledge_base WHERE level = ? AND title = ? AND {column} = ? "
                "AND id != ? ORDER BY id ASC LIMIT 1",
                (req.level.value, req.title, getattr(req, column), memory_id),
            )
            if clash:
                raise ValidationFailure(
                    f"{req.level.value} memory {req.title!r} already exists as record {clash[0]['id']}"
                )
            assignments = (
                "level = ?, language_tag = ?, library_name = ?, project_path_pattern = ?, "
                "title = ?, content = ?, summary = ?, source = ?, updated_at = ?"
            )
            params: list[Any] = [
                req.level.value,
                req.language_tag,
                req.library_name,
                req.project_path_pattern,
                req.title,
                req.content,
                req.summary,
                req.source.value,
                utc_now_iso(),
            ]
            if req.confidence is not None:
                assignments += ", confidence = ?"
                params.append(float(req.confidence))
            params.append(memory_id)
            self._conn.execute(f"UPDATE knowledge_base SET {assignments} WHERE id = ?", params)
            self._bump_revision()
            return self.get(memory_id)

    def update_fields(self, memory_id: int, **fields: Any) -> None:
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return
        values = dict(fields)
        if "source" in values and isinstance(values["source"], KnowledgeSource):
            values["source"] = values["source"].value
        if "summary" in values:
            values["summary"] = blank_to_none(values["summary"])
        assignments = ", ".join(f"{key} = ?" for key in values) + ", updated_at = ?"
        params = list(values.values()) + [utc_now_iso(), memory_id]
        with self.transaction():
            cursor = self._conn.execute(
                f"UPDATE knowledge_base SET {assignments} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise MemoryNotFound(f"memory not found: id={memory_id}")
            self._bump_revision()

    def delete(self, memory_id: int) -> None:
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM knowledge_base WHERE id = ?", (memory_id,))
            if cursor.rowcount == 0:
                raise MemoryNotFound(f"memory not found: id={memory_id}")
            self._bump_revision()

    def bump_access(self, memory_id: int) -> None:
        with self.transaction():
            self._conn.execute(
                "UPDATE knowledge_base SET access_count = access_count + 1, "
                "last_accessed_at = ? WHERE id = ?",
                (utc_now_iso(), memory_id),
            )

    def _filters(
        self,
        level: KnowledgeLevel | None,
        library_name: str | None,
        project_path_pattern: str | None,
        language_tag: str | None,
    ) -> tuple[str, list[Any]]:
        where = ["language_tag = ?"]
        params: list[Any] = [language_tag or self.config.default_language_tag]
        if level is not None:
            where.append("level = ?")
            params.append(KnowledgeLevel(level).value)
        if library_name:
            where.append("library_name = ?")
            params.append(library_name)
        if project_path_pattern:
            where.append("project_path_pattern = ?")
            params.append(project_path_pattern)
        return "WHERE " + " AND ".join(where), params

    def list_memories(self, req: ListRequest) -> ListResponse:
        where, params = self._filters(
            req.level, req.library_name, req.project_path_pattern, req.language_tag
        )
        order = _ORDER_BY.get(req.order_by or self.listing.default_order_by, _ORDER_BY["created_at"])
        limit = req.limit if req.limit > 0 else self.listing.default_limit
        offset = max(req.offset, 0)
        columns = _COLUMNS.replace(" content,", " '' AS content,") if req.brief else _COLUMNS
        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) FROM knowledge_base {where}", params
            ).fetchone()[0]
            rows = self._conn.execute(
                f"SELECT {columns} FROM knowledge_base {where} ORDER BY {order} LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return ListResponse(total=int(total), results=[self._row_to_memory(row) for row in rows])

    def recall(
        self,
        terms: list[str],
        level: KnowledgeLevel | None,
        language_tag: str | None,
        project_path: str | None,
        limit: int,
        library_name: str | None = None,
    ) -> list[RecallResult]:
        where = ["language_tag = ?"]
        params: list[Any] = [language_tag or self.config.default_language_tag]
        if level is not None:
            where.append("level = ?")
            params.append(KnowledgeLevel(level).value)
        if library_name:
            where.append("library_name = ?")
            params.append(library_name)
        if project_path:
            where.append(
                "(project_path_pattern IS NULL OR project_path_pattern = '' "
                "OR ? GLOB project_path_pattern)"
            )
            params.append(project_path)
        for term in terms:
            like = f"%{escape_like(term)}%"
            where.append(
                "(title LIKE ? ESCAPE '\\' OR content LIKE ? ESCAPE '\\' "
                "OR IFNULL(summary, '') LIKE ? ESCAPE '\\')"
            )
            params.extend([like, like, like])
        rows = self._query(
            f"SELECT {_COLUMNS} FROM knowledge_base WHERE {' AND '.join(where)} "
            "ORDER BY confidence DESC, access_count DESC, id ASC LIMIT ?",
            params + [limit],
        )
        return [
            RecallResult(
                id=row["id"],
                level=KnowledgeLevel(row["level"]),
                title=row["title"],
                content=row["content"],
                summary=row["summary"],
                library_name=row["library_name"],
                project_path_pattern=row["project_path_pattern"],
                source=KnowledgeSource(row["source"]),
                confidence=float(row["confidence"]),
                access_count=int(row["access_count"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def categories(self, language_tag: str | None = None) -> CategoriesResponse:
        tag = language_tag or self.config.default_language_tag

        def _grouped(level: str, column: str) -> list[CategoryInfo]:
            rows = self._query(
                f"SELECT {column} AS name, COUNT(*) AS count FROM knowledge_base "
                f"WHERE level = ? AND {column} IS NOT NULL AND {column} != '' "
                "AND language_tag = ? "
                f"GROUP BY {column} ORDER BY count DESC, name ASC",
                (level, tag),
            )
            return [CategoryInfo(name=row["name"], count=int(row["count"])) for row in rows]

        return CategoriesResponse(
            libraries=_grouped("library", "library_name"),
            projects=_grouped("project", "project_path_pattern"),
        )

    def export(self, req: ExportRequest) -> list[StoreRequest]:
        where, params = self._filters(
            req.level, req.library_name, req.project_path_pattern, req.language_tag
        )
        rows = self._query(
            "SELECT level, language_tag, library_name, project_path_pattern, title, content, "
            f"summary, source, confidence FROM knowledge_base {where} "
            "ORDER BY created_at DESC, id DESC",
            params,
        )
        return [
            StoreRequest(
                level=KnowledgeLevel(row["level"]),
                language_tag=row["language_tag"],
                library_name=row["library_name"],
                project_path_pattern=row["project_path_pattern"],
                title=row["title"],
                content=row["content"],
                summary=row["summary"],
                source=KnowledgeSource(row["source"]),
                confidence=float(row["confidence"]),
            )
            for row in rows
        ]

    def identity_snapshot(self) -> tuple[int, list[dict[str, Any]]]:
        """Return ``(revision, identity rows)`` read under one lock."""
        with self._lock:
            revision = self.revision()
            rows = self._query(
                "SELECT id, level, title, language_tag, library_name, project_path_pattern "
                "FROM knowledge_base ORDER BY id ASC"
            )
        return revision, [dict(row) for row in rows]

    def identity_of(self, memory_id: int) -> dict[str, Any] | None:
        rows = self._query(
            "SELECT id, level, title, language_tag, library_name, project_path_pattern "
            "FROM knowledge_base WHERE id = ?",
            (memory_id,),
        )
        return dict(rows[0]) if rows else None

    def find_identity(self, level: KnowledgeLevel, title: str, scope: str) -> int | None:
        column = SCOPE_COLUMNS[KnowledgeLevel(level)]
        rows = self._query(
            f"SELECT id FROM knowledge_base WHERE level = ? AND title = ? AND {column} = ? "
            "ORDER BY id ASC LIMIT 1",
            (KnowledgeLevel(level).value, title, scope),
        )
        return int(rows[0]["id"]) if rows else None

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            level=KnowledgeLevel(row["level"]),
            language_tag=row["language_tag"],
            library_name=row["library_name"],
            project_path_pattern=row["project_path_pattern"],
            title=row["title"],
            content=row["content"],
            summary=row["summary"],
            source=KnowledgeSource(row["source"]),
            access_count=int(row["access_count"]),
            confidence=float(row["confidence"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed_at=row["last_accessed_at"],
        )
