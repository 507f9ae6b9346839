"""Tiered memory for the agent.

Three tiers are kept:

1) short-term: recent conversation messages, oldest first,
2) working: files and functions the agent has looked at, keyed by path,
   each carrying a relevance score that decays between turns,
3) long-term: decisions and summaries of compressed conversation.

Only the long-term tier outlives the process (SQLite via aiosqlite).
"""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import aiosqlite

from codehelm.config import MemoryConfig
from codehelm.logging import get_logger

log = get_logger(__name__)

Tier = Literal["short", "working", "long"]

COMPRESSION_KEEP = 5
CONTEXT_LONG_TERM_ITEMS = 3
CONTEXT_MIN_RELEVANCE = 0.5
EXPIRED_RELEVANCE = 0.1


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


@dataclass
class MemoryItem:
    """One entry in any memory tier."""

    tier: Tier
    type: str  # message, file, function, decision, summary
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    role: str = ""
    path: str = ""
    function_name: str = ""
    line_start: int = 0
    line_end: int = 0
    tags: list[str] = field(default_factory=list)
    relevance: float = 1.0
    created_at: datetime = field(default_factory=_utcnow)
    accessed_at: datetime = field(default_factory=_utcnow)


class MemoryManager:
    """Thread-safe three-tier memory store."""

    def __init__(self, config: MemoryConfig | None = None, storage_path: Path | str | None = None):
        self.config = config or MemoryConfig()
        raw_path = storage_path if storage_path is not None else self.config.storage_path
        self.storage_path = Path(raw_path).expanduser()
        self._lock = threading.RLock()
        self._short_term: list[MemoryItem] = []
        self._working: dict[str, MemoryItem] = {}
        self._long_term: list[MemoryItem] = []

    # -- short-term ---------------------------------------------------------

    def add_message(self, role: str, content: str) -> MemoryItem:
        """Append a conversation message; the oldest is dropped over the cap."""
        item = MemoryItem(tier="short", type="message", content=content, role=role)
        with self._lock:
            self._short_term.append(item)
            overflow = len(self._short_term) - self.config.max_short_term_items
            if overflow > 0:
                del self._short_term[:overflow]
        return item

    def get_messages(self) -> list[dict[str, str]]:
        """Short-term messages as role/content dicts, oldest first."""
        with self._lock:
            return [{"role": item.role, "content": item.content} for item in self._short_term]

    def trim_oldest(self, fraction: float) -> int:
        """Drop the oldest ``fraction`` of non-system short-term messages.

        At least one message is dropped and the most recent one is always kept.

        Returns:
            Number of messages removed
        """
        with self._lock:
            system_items = [i for i in self._short_term if i.role == "system"]
            conversation = [i for i in self._short_term if i.role != "system"]
            if not conversation:
                return 0
            drop = max(1, int(len(conversation) * fraction))
            drop = min(drop, len(conversation) - 1)
            if drop <= 0:
                return 0
            self._short_term = system_items + conversation[drop:]
        log.info("Trimmed short-term memory", dropped=drop, fraction=fraction)
        return drop

    def short_term_count(self) -> int:
        with self._lock:
            return len(self._short_term)

    # -- working ------------------------------------------------------------

    def add_file(self, path: str, content: str, relevance: float = 1.0) -> MemoryItem:
        """Insert or refresh a file in working memory."""
        now = _utcnow()
        with self._lock:
            item = self._working.get(path)
            if item is not None and item.type == "file":
                item.content = content
                item.relevance = _clamp(relevance)
                item.accessed_at = now
                return item
            item = MemoryItem(
                tier="working",
                type="file",
                content=content,
                path=path,
                relevance=_clamp(relevance),
                created_at=now,
                accessed_at=now,
            )
            self._working[path] = item
            self._evict_working()
            return item

    def add_function(
        self,
        path: str,
        name: str,
        content: str,
        line_start: int = 0,
        line_end: int = 0,
    ) -> MemoryItem:
        """Record a function body, keyed by ``path::name``."""
        item = MemoryItem(
            tier="working",
            type="function",
            content=content,
            path=path,
            function_name=name,
            line_start=line_start,
            line_end=line_end,
            relevance=0.8,
        )
        with self._lock:
            self._working[f"{path}::{name}"] = item
            self._evict_working()
        return item

    def _evict_working(self) -> None:
        while len(self._working) > self.config.max_working_items:
            key = min(self._working, key=lambda k: self._working[k].relevance)
            del self._working[key]

    def get_working_item(self, key: str) -> MemoryItem | None:
        with self._lock:
            return self._working.get(key)

    def age_working_memory(self, delta: float) -> int:
        """Decay working relevance by ``delta``; items under 0.1 expire.

        Returns:
            Number of expired items
        """
        factor = 1.0 - max(0.0, float(delta))
        with self._lock:
            expired = []
            for key, item in self._working.items():
                item.relevance = _clamp(item.relevance * factor)
                if item.relevance < EXPIRED_RELEVANCE:
                    expired.append(key)
            for key in expired:
                del self._working[key]
        return len(expired)

    def update_relevance(self, item_id: str, relevance: float) -> bool:
        """Set a working item's relevance (clamped to [0, 1]) and touch it."""
        with self._lock:
            for item in self._working.values():
                if item.id == item_id:
                    item.relevance = _clamp(relevance)
                    item.accessed_at = _utcnow()
                    return True
        return False

    # -- long-term ----------------------------------------------------------

    def _append_long_term(self, item: MemoryItem) -> None:
        self._long_term.append(item)
        overflow = len(self._long_term) - self.config.max_long_term_items
        if overflow > 0:
            del self._long_term[:overflow]

    def add_decision(self, text: str, tags: list[str] | None = None) -> MemoryItem:
        item = MemoryItem(tier="long", type="decision", content=text, tags=list(tags or []))
        with self._lock:
            self._append_long_term(item)
        return item

    def add_summary(self, text: str) -> MemoryItem:
        item = MemoryItem(tier="long", type="summary", content=text, relevance=0.9)
        with self._lock:
            self._append_long_term(item)
        return item

    def get_long_term(self) -> list[MemoryItem]:
        with self._lock:
            return list(self._long_term)

    # -- compression --------------------------------------------------------

    def get_items_to_compress(self) -> list[MemoryItem]:
        """Short-term items to summarize, leaving the last few untouched."""
        with self._lock:
            if len(self._short_term) < self.config.compression_trigger:
                return []
            if len(self._short_term) <= COMPRESSION_KEEP:
                return []
            return list(self._short_term[:-COMPRESSION_KEEP])

    def compress_items(self, summary: str) -> bool:
        """Replace all but the last few short-term items with a long-term summary."""
        with self._lock:
            if len(self._short_term) <= COMPRESSION_KEEP:
                return False
            removed = len(self._short_term) - COMPRESSION_KEEP
            self._short_term = self._short_term[-COMPRESSION_KEEP:]
            self._append_long_term(
                MemoryItem(tier="long", type="summary", content=summary, relevance=0.9)
            )
        log.info("Compressed short-term memory", removed=removed)
        return True

    # -- digest -------------------------------------------------------------

    def get_context(self) -> str:
        """Markdown digest of recent long-term items and relevant working files."""
        with self._lock:
            long_term = self._long_term[-CONTEXT_LONG_TERM_ITEMS:]
            working = sorted(self._working.values(), key=lambda i: (i.path, i.function_name))

            parts: list[str] = []
            if long_term:
                parts.append("### Long-Term Memory (Lessons & Summaries)")
                for item in long_term:
                    prefix = "[Decision] " if item.type == "decision" else "- "
                    parts.append(f"{prefix}{item.content}")
                parts.append("")

            relevant = [i for i in working if i.relevance >= CONTEXT_MIN_RELEVANCE]
            if relevant:
                parts.append("### Working Context (Files Analyzed)")
                for item in relevant:
                    if item.type == "file":
                        parts.append(f"- File: `{item.path}` (Relevance: {item.relevance:.2f})")
                    elif item.type == "function":
                        parts.append(f"- Function: `{item.function_name}` in `{item.path}`")
                parts.append("")

        return "\n".join(parts)

    def clear(self, tier: Tier | None = None) -> None:
        """Clear one tier, or all of them."""
        with self._lock:
            if tier in (None, "short"):
                self._short_term.clear()
            if tier in (None, "working"):
                self._working.clear()
            if tier in (None, "long"):
                self._long_term.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "short_term": len(self._short_term),
                "working": len(self._working),
                "long_term": len(self._long_term),
            }

    # -- persistence --------------------------------------------------------

    @staticmethod
    async def _ensure_schema(db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS long_term_memory (
                position INTEGER PRIMARY KEY,
                id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                relevance REAL NOT NULL,
                created_at TEXT NOT NULL,
                accessed_at TEXT NOT NULL
            )
        """)

    async def save(self) -> bool:
        """Persist the long-term tier. Failures are logged, never raised."""
        items = self.get_long_term()
        rows = [
            (
                position,
                item.id,
                item.type,
                item.content,
                json.dumps(item.tags),
                item.relevance,
                item.created_at.isoformat(),
                item.accessed_at.isoformat(),
            )
            for position, item in enumerate(items)
        ]
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(str(self.storage_path)) as db:
                await self._ensure_schema(db)
                await db.execute("DELETE FROM long_term_memory")
                await db.executemany(
                    """
                    INSERT INTO long_term_memory
                        (position, id, type, content, tags, relevance, created_at, accessed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            log.error("Failed to save long-term memory", path=str(self.storage_path), error=str(e))
            return False
        log.debug("Saved long-term memory", path=str(self.storage_path), items=len(rows))
        return True

    async def load(self) -> bool:
        """Load the long-term tier, replacing its current contents."""
        if not self.storage_path.exists():
            return False
        try:
            async with aiosqlite.connect(str(self.storage_path)) as db:
                await self._ensure_schema(db)
                async with db.execute(
                    """
                    SELECT id, type, content, tags, relevance, created_at, accessed_at
                    FROM long_term_memory ORDER BY position
                    """
                ) as cursor:
                    rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            log.error("Failed to load long-term memory", path=str(self.storage_path), error=str(e))
            return False

        loaded: list[MemoryItem] = []
        for row in rows:
            try:
                loaded.append(MemoryItem(
                    tier="long",
                    id=row[0],
                    type=row[1],
                    content=row[2],
                    tags=list(json.loads(row[3] or "[]")),
                    relevance=float(row[4]),
                    created_at=datetime.fromisoformat(row[5]),
                    accessed_at=datetime.fromisoformat(row[6]),
                ))
            except (ValueError, TypeError) as e:
                log.warning("Skipping unreadable memory row", id=row[0], error=str(e))

        with self._lock:
            self._long_term = loaded[-self.config.max_long_term_items:]
        log.info("Loaded long-term memory", items=len(self._long_term))
        return True
