"""
Routing memory (tier 0).

Past routing decisions are stored in a memory service as learning entries
keyed by ``slm_routing: <query>``. A new query that closely resembles a
confident, non-rejected past query reuses that decision without any model
call. Memory is append-only: feedback adds entries, it never edits or
deletes them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .config import MemoryConfig
from .errors import MalformedModelOutputError, ServiceUnavailableError
from .types import (
    FeedbackState,
    MemoryRecord,
    RoutingDecision,
    ServiceResult,
    SimilarityMatch,
    utc_timestamp,
    validate_arguments,
)

logger = logging.getLogger(__name__)

KEY_PREFIX = "slm_routing"


def memory_key(query: str) -> str:
    """Search key used for routing memories."""
    return f"{KEY_PREFIX}: {query}"


def word_overlap_similarity(a: str, b: str) -> float:
    """
    Word-overlap similarity between two queries.

    Words are whitespace-separated, lower-cased, and longer than two
    characters. Returns overlap / max(|A|, |B|), or 0.0 if either set is empty.
    """
    words_a = {w for w in a.lower().split() if len(w) > 2}
    words_b = {w for w in b.lower().split() if len(w) > 2}
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


# =============================================================================
# Memory collaborator
# =============================================================================


@dataclass
class MemoryEntry:
    """An entry in the memory service."""

    content: str
    type: str = "learning"  # learning, feedback
    importance: float = 0.5
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    id: str = ""
    created_at: float = 0.0


@runtime_checkable
class MemoryBackend(Protocol):
    """Narrow interface to the persistent memory service."""

    async def search(
        self, key: str, user_id: str | None = None, limit: int = 20
    ) -> list[MemoryEntry]:
        """Return entries most relevant to ``key``, most relevant first."""
        ...

    async def store(self, entry: MemoryEntry) -> None: ...

    async def ping(self) -> bool: ...


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    type TEXT NOT NULL,
    importance REAL NOT NULL DEFAULT 0.5,
    metadata TEXT NOT NULL DEFAULT '{}',
    user_id TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_user ON entries(user_id);
CREATE INDEX IF NOT EXISTS idx_entries_created ON entries(created_at);

CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    entry_id UNINDEXED,
    content,
    tokenize='porter'
);

CREATE TRIGGER IF NOT EXISTS entries_fts_insert AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(entry_id, content) VALUES (NEW.id, NEW.content);
END;
"""


def fts_query(text: str) -> str:
    """
    Turn free text into a safe FTS5 MATCH expression.

    Each word becomes a quoted term and terms are OR-ed, so punctuation such
    as ':' in the routing key cannot break the query syntax.
    """
    words = re.findall(r"\w+", text.lower())
    seen: list[str] = []
    for word in words:
        if word not in seen:
            seen.append(word)
    return " OR ".join(f'"{word}"' for word in seen)


class SQLiteMemoryBackend:
    """
    Memory service backed by SQLite with an FTS5 index.

    Features:
    - WAL mode for concurrent readers
    - BM25 relevance, then importance, then recency ordering
    - Optional per-user filtering
    """

    def __init__(self, db_path: str | None = None):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database, ``:memory:`` is not supported
                because each call opens its own connection.
        """
        if db_path is None:
            db_path = str(Path.home() / ".slm-router" / "memory.db")

        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _search_sync(self, key: str, user_id: str | None, limit: int) -> list[MemoryEntry]:
        match = fts_query(key)
        if not match:
            return []

        sql = """
            SELECT e.id, e.content, e.type, e.importance, e.metadata, e.user_id,
                   e.created_at, bm25(entries_fts) AS score
            FROM entries_fts f
            JOIN entries e ON f.entry_id = e.id
            WHERE entries_fts MATCH ?
        """
        params: list[Any] = [match]
        if user_id is not None:
            # Entries without a user apply to everyone
            sql += " AND (e.user_id = ? OR e.user_id IS NULL)"
            params.append(user_id)
        # BM25: lower is better
        sql += " ORDER BY score ASC, e.importance DESC, e.created_at DESC LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [self._row_to_entry(row) for row in rows]

    def _store_sync(self, entry: MemoryEntry) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO entries (id, content, type, importance, metadata, user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id or str(uuid.uuid4()),
                    entry.content,
                    entry.type,
                    entry.importance,
                    json.dumps(entry.metadata),
                    entry.user_id,
                    entry.created_at or time.time(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def _ping_sync(self) -> bool:
        conn = self._get_connection()
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        finally:
            conn.close()

    def _row_to_entry(self, row: sqlite3.Row) -> MemoryEntry:
        try:
            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            metadata = {}
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            type=row["type"],
            importance=row["importance"],
            metadata=metadata,
            user_id=row["user_id"],
            created_at=row["created_at"],
        )

    async def search(
        self, key: str, user_id: str | None = None, limit: int = 20
    ) -> list[MemoryEntry]:
        try:
            return await asyncio.to_thread(self._search_sync, key, user_id, limit)
        except sqlite3.Error as e:
            raise ServiceUnavailableError("memory", repr(e)) from e

    async def store(self, entry: MemoryEntry) -> None:
        try:
            await asyncio.to_thread(self._store_sync, entry)
        except sqlite3.Error as e:
            raise ServiceUnavailableError("memory", repr(e)) from e

    async def ping(self) -> bool:
        try:
            return await asyncio.to_thread(self._ping_sync)
        except sqlite3.Error as e:
            logger.warning(f"Memory database not reachable: {e!r}")
            return False

    def count(self) -> int:
        """Number of stored entries."""
        conn = self._get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        finally:
            conn.close()


# =============================================================================
# Memory adapter
# =============================================================================


def _normalize(query: str) -> str:
    return " ".join(query.lower().split())


@dataclass(frozen=True)
class _Rejection:
    """An incorrect-feedback marker as seen by ``find_similar``."""

    query: str
    timestamp: str
    tool_name: str | None = None


class MemoryAdapter:
    """
    Routing-specific view over a memory backend.

    Every operation returns a ServiceResult; backend failures and timeouts
    become failed results, never exceptions.
    """

    def __init__(self, backend: MemoryBackend, config: MemoryConfig | None = None):
        self.backend = backend
        self.config = config or MemoryConfig()

    async def _search(self, key: str, user_id: str | None) -> list[MemoryEntry]:
        return await asyncio.wait_for(
            self.backend.search(key, user_id=user_id, limit=self.config.search_limit),
            timeout=self.config.timeout_seconds,
        )

    async def _store(self, entry: MemoryEntry) -> None:
        await asyncio.wait_for(self.backend.store(entry), timeout=self.config.timeout_seconds)

    async def find_similar(
        self, query: str, user_id: str | None = None
    ) -> ServiceResult[SimilarityMatch | None]:
        """
        Find the best usable past decision for ``query``.

        A candidate is usable when it names a tool, its feedback is not
        incorrect, its confidence is at least ``min_confidence``, its word
        overlap with ``query`` is at least ``min_similarity``, its stored
        arguments are tool-safe, and no rejection recorded at or after it
        covers it (see ``_is_rejected``).
        """
        try:
            entries = await self._search(memory_key(query), user_id)
        except Exception as e:
            logger.warning(f"Memory search failed: {e!r}")
            return ServiceResult.failure(f"memory search failed: {e!r}")

        candidates: list[MemoryRecord] = []
        rejections: list[_Rejection] = []
        for entry in entries:
            record = MemoryRecord.from_metadata(entry.metadata, entry.user_id)
            if record.feedback == FeedbackState.INCORRECT:
                rejected_tool = entry.metadata.get("rejected_tool")
                rejections.append(
                    _Rejection(
                        query=record.query,
                        timestamp=record.timestamp,
                        tool_name=rejected_tool if isinstance(rejected_tool, str) else None,
                    )
                )
            elif record.tool_name:
                candidates.append(record)

        best: SimilarityMatch | None = None
        for record in candidates:
            if record.confidence < self.config.min_confidence:
                continue
            if self._is_rejected(record, rejections):
                continue

            similarity = word_overlap_similarity(query, record.query)
            if similarity < self.config.min_similarity:
                continue

            try:
                record = replace(record, arguments=validate_arguments(record.arguments))
            except MalformedModelOutputError as e:
                logger.debug(f"Skipping stored decision with bad arguments: {e}")
                continue

            if best is None or (similarity, record.confidence, record.timestamp) > (
                best.similarity,
                best.confidence,
                best.record.timestamp,
            ):
                best = SimilarityMatch(record=record, similarity=similarity)

        return ServiceResult.success(best)

    def _is_rejected(self, record: MemoryRecord, rejections: list[_Rejection]) -> bool:
        """
        True when a rejection marker covers ``record``.

        A marker covers records of the same normalised query, and records
        of any query at least ``min_similarity`` alike that name the tool
        the marker rejected. Only records stored at or before the marker
        are covered; a user correction stamped after it stays usable.
        """
        for rejection in rejections:
            if record.feedback == FeedbackState.USER_CORRECTED:
                if rejection.timestamp <= record.timestamp:
                    continue
            elif rejection.timestamp < record.timestamp:
                continue

            if _normalize(rejection.query) == _normalize(record.query):
                return True
            if (
                rejection.tool_name == record.tool_name
                and word_overlap_similarity(rejection.query, record.query)
                >= self.config.min_similarity
            ):
                return True
        return False

    async def record(
        self, query: str, decision: RoutingDecision, user_id: str | None = None
    ) -> ServiceResult[bool]:
        """Persist a decision; decisions without a tool are not stored."""
        if not decision.tool_name:
            return ServiceResult.success(False)

        record = MemoryRecord(
            query=query,
            tool_name=decision.tool_name,
            arguments=dict(decision.arguments),
            confidence=decision.confidence,
            tier=int(decision.tier) if decision.tier is not None else None,
            timestamp=utc_timestamp(),
            user_id=user_id,
        )
        entry = MemoryEntry(
            content=f"{memory_key(query)} → {decision.tool_name}",
            type="learning",
            importance=decision.confidence,
            metadata=record.to_metadata(),
            user_id=user_id,
        )
        try:
            await self._store(entry)
        except Exception as e:
            logger.warning(f"Memory store failed: {e!r}")
            return ServiceResult.failure(f"memory store failed: {e!r}")
        return ServiceResult.success(True)

    async def apply_feedback(
        self,
        query: str,
        correct: bool,
        corrected_tool: str | None = None,
        corrected_args: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> ServiceResult[bool]:
        """
        Record user feedback for ``query``.

        Correct feedback adds a feedback entry. Incorrect feedback adds a
        rejection marker for the query followed by a user-corrected learning
        entry for ``corrected_tool``. The marker names the tool tier 0 would
        have served for ``query``, so similar past queries lose that tool too.
        """
        entries: list[MemoryEntry] = []

        if correct:
            entries.append(
                MemoryEntry(
                    content=f"{KEY_PREFIX}_feedback: {query} → correct",
                    type="feedback",
                    importance=0.9,
                    metadata={
                        "original_query": query,
                        "feedback": FeedbackState.CORRECT.value,
                        "timestamp": utc_timestamp(),
                    },
                    user_id=user_id,
                )
            )
        else:
            marker: dict[str, Any] = {
                "original_query": query,
                "feedback": FeedbackState.INCORRECT.value,
            }
            served = await self.find_similar(query, user_id)
            if served.ok and served.value is not None:
                marker["rejected_tool"] = served.value.tool_name

            now = datetime.now(timezone.utc)
            marker["timestamp"] = now.isoformat(timespec="microseconds")
            # The correction must sort strictly after the rejection marker
            corrected_at = (now + timedelta(microseconds=1)).isoformat(timespec="microseconds")
            entries.append(
                MemoryEntry(
                    content=f"{memory_key(query)} → incorrect",
                    type="feedback",
                    importance=0.95,
                    metadata=marker,
                    user_id=user_id,
                )
            )
            if corrected_tool:
                correction = MemoryRecord(
                    query=query,
                    tool_name=corrected_tool,
                    arguments=dict(corrected_args or {}),
                    confidence=1.0,
                    tier=None,
                    feedback=FeedbackState.USER_CORRECTED,
                    timestamp=corrected_at,
                    user_id=user_id,
                )
                entries.append(
                    MemoryEntry(
                        content=f"{memory_key(query)} → {corrected_tool}",
                        type="learning",
                        importance=0.95,
                        metadata=correction.to_metadata(),
                        user_id=user_id,
                    )
                )

        try:
            for entry in entries:
                await self._store(entry)
        except Exception as e:
            logger.warning(f"Feedback store failed: {e!r}")
            return ServiceResult.failure(f"feedback store failed: {e!r}")
        return ServiceResult.success(True)

    async def build_context(self, query: str, limit: int = 5) -> ServiceResult[str | None]:
        """Plain-text summary of past routings related to ``query``."""
        try:
            entries = await self._search(memory_key(query), None)
        except Exception as e:
            logger.warning(f"Memory context failed: {e!r}")
            return ServiceResult.failure(f"memory context failed: {e!r}")

        lines = [f"- {entry.content}" for entry in entries[:limit] if entry.type == "learning"]
        return ServiceResult.success("\n".join(lines) if lines else None)

    async def recall(
        self, query: str, user_id: str | None = None
    ) -> ServiceResult[list[MemoryRecord]]:
        """Past routing records related to ``query`` that name a tool."""
        try:
            entries = await self._search(memory_key(query), user_id)
        except Exception as e:
            logger.warning(f"Memory recall failed: {e!r}")
            return ServiceResult.failure(f"Memory search failed: {e!r}")

        records = [MemoryRecord.from_metadata(entry.metadata, entry.user_id) for entry in entries]
        return ServiceResult.success([r for r in records if r.tool_name])

    async def ping(self) -> bool:
        try:
            return bool(
                await asyncio.wait_for(self.backend.ping(), timeout=self.config.timeout_seconds)
            )
        except Exception as e:
            logger.warning(f"Memory ping failed: {e!r}")
            return False


__all__ = [
    "KEY_PREFIX",
    "MemoryAdapter",
    "MemoryBackend",
    "MemoryEntry",
    "SQLiteMemoryBackend",
    "fts_query",
    "memory_key",
    "word_overlap_similarity",
]
