"""Full-text search over notes.

Queries the ``notes_fts`` FTS5 table and degrades to LIKE matching when
FTS5 rejects a query or is missing. A corrupted index is rebuilt once
before giving up on FTS5 for the rest of the process.
"""
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from realm_pkm.exceptions import ErrorCode, SearchError
from realm_pkm.models.db_models import rebuild_fts_index
from realm_pkm.utils import escape_like_pattern

logger = logging.getLogger(__name__)

FTS_MODE = "fts5"
FALLBACK_MODE = "fallback"

# notes_fts columns are (id, title, content, summary); snippets come from content
_CONTENT_COLUMN = 2

_OPERATORS = {"AND", "OR", "NOT", "NEAR"}
_PHRASE = re.compile(r'"((?:[^"]|"")*)"')
_PREFIX = re.compile(r"\b\w+\*")


@dataclass
class FtsHit:
    id: str
    title: str
    rank: float
    mode: str = FTS_MODE
    snippet: Optional[str] = None


def is_fts_expression(query: str) -> bool:
    """True when the query already uses FTS5 syntax (operators, phrases, prefixes)."""
    if any(word in _OPERATORS for word in query.split()):
        return True
    return query.count('"') >= 2 or bool(_PREFIX.search(query))


def quote_literal(query: str) -> str:
    """Turn arbitrary user text into a single FTS5 phrase."""
    cleaned = re.sub(r"[*^]", "", query.replace('"', '""'))
    return f'"{cleaned}"'


def split_terms(query: str) -> List[str]:
    """Plain terms of an FTS5 expression, for LIKE matching.

    Quoted phrases stay whole; operators and prefix stars are dropped.
    """
    terms = [m.group(1).replace('""', '"') for m in _PHRASE.finditer(query)]
    rest = _PHRASE.sub(" ", query)
    terms.extend(
        word.rstrip("*") for word in rest.split()
        if word not in _OPERATORS and word.rstrip("*")
    )
    return [t for t in terms if t.strip()]


def _is_corruption(error: Exception) -> bool:
    message = str(error).lower()
    return "malformed" in message or "corrupt" in message


class FtsIndex:
    """Search front for the ``notes_fts`` table.

    Args:
        engine: SQLAlchemy engine, used for rebuilds.
        session_factory: Callable returning a context-manager session.
    """

    def __init__(self, engine: Any, session_factory: Callable) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.available: bool = True

    def search(
        self,
        query: str,
        owner_id: Optional[str] = None,
        limit: int = 50,
        highlight: bool = False,
        literal: Optional[bool] = None,
    ) -> List[FtsHit]:
        """Best-ranked notes matching ``query``.

        Args:
            query: User text or an FTS5 expression.
            owner_id: Only return notes of this user.
            limit: Maximum number of hits.
            highlight: Attach a ``<mark>`` snippet of the content.
            literal: Quote the query as one phrase. ``None`` quotes it
                unless it already looks like an FTS5 expression.
        """
        if not query or not query.strip():
            return []
        if not self.available:
            return self._like_search(query, owner_id, limit)

        if literal is None:
            literal = not is_fts_expression(query)
        match = quote_literal(query) if literal else query

        try:
            return self._match(match, owner_id, limit, highlight)
        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            if not _is_corruption(e):
                logger.warning(f"FTS5 rejected query '{query}': {e}. Using LIKE search.")
                return self._like_search(query, owner_id, limit)
            corruption: Exception = e
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            if not _is_corruption(e):
                logger.error(f"FTS5 database error: {e}. Using LIKE search.")
                return self._like_search(query, owner_id, limit)
            corruption = e

        logger.error(f"FTS5 index corrupted ({corruption}), rebuilding")
        if self._attempt_recovery():
            try:
                return self._match(match, owner_id, limit, highlight)
            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                logger.error(f"FTS5 still failing after rebuild: {e}")
        logger.error("Disabling FTS5 until reset_availability() succeeds")
        self.available = False
        return self._like_search(query, owner_id, limit)

    def _match(
        self, match: str, owner_id: Optional[str], limit: int, highlight: bool
    ) -> List[FtsHit]:
        snippet_sql = (
            f", snippet(notes_fts, {_CONTENT_COLUMN}, '<mark>', '</mark>', '...', 32)"
            if highlight else ""
        )
        owner_sql = "AND n.owner_id = :owner_id" if owner_id else ""
        sql = text(f"""
            SELECT notes_fts.id, notes_fts.title, bm25(notes_fts) AS rank{snippet_sql}
            FROM notes_fts
            JOIN notes n ON n.rowid = notes_fts.rowid
            WHERE notes_fts MATCH :match {owner_sql}
            ORDER BY rank
            LIMIT :limit
        """)
        params: Dict[str, Any] = {"match": match, "limit": limit}
        if owner_id:
            params["owner_id"] = owner_id
        with self._session_factory() as session:
            rows = session.execute(sql, params).fetchall()
        return [
            FtsHit(id=row[0], title=row[1], rank=row[2],
                   snippet=row[3] if highlight else None)
            for row in rows
        ]

    def _like_search(
        self, query: str, owner_id: Optional[str], limit: int
    ) -> List[FtsHit]:
        """Every term must appear in the title or the content."""
        terms = split_terms(query) or [query.strip()]
        clauses = []
        params: Dict[str, Any] = {"limit": limit}
        for i, term in enumerate(terms):
            params[f"t{i}"] = f"%{escape_like_pattern(term)}%"
            clauses.append(
                f"(title LIKE :t{i} ESCAPE '\\' OR content LIKE :t{i} ESCAPE '\\')"
            )
        if owner_id:
            clauses.append("owner_id = :owner_id")
            params["owner_id"] = owner_id
        sql = text(f"""
            SELECT id, title FROM notes
            WHERE {' AND '.join(clauses)}
            ORDER BY updated_at DESC
            LIMIT :limit
        """)

        try:
            with self._session_factory() as session:
                rows = session.execute(sql, params).fetchall()
        except SQLAlchemyDatabaseError as e:
            raise SearchError(
                "Text search failed", query=query, code=ErrorCode.SEARCH_FAILED
            ) from e

        lowered = [t.lower() for t in terms]
        hits = []
        for note_id, title in rows:
            in_title = all(t in (title or "").lower() for t in lowered)
            hits.append(FtsHit(
                id=note_id, title=title, rank=-2.0 if in_title else -1.0, mode=FALLBACK_MODE
            ))
        hits.sort(key=lambda hit: hit.rank)
        logger.debug(f"LIKE search matched {len(hits)} notes for {len(terms)} term(s)")
        return hits

    def rebuild(self) -> int:
        """Repopulate the index from ``notes``; returns the note count."""
        return rebuild_fts_index(self.engine)

    def reset_availability(self) -> bool:
        """Run an integrity check and re-enable FTS5 if it passes."""
        try:
            with self._session_factory() as session:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 still unavailable: {e}")
            self.available = False
            return False
        self.available = True
        logger.info("FTS5 re-enabled")
        return True

    def _attempt_recovery(self) -> bool:
        try:
            count = self.rebuild()
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
        logger.info(f"FTS5 index rebuilt with {count} notes")
        return True
