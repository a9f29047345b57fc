"""
RankSheet Repositories
======================

SQL access for keywords and rank sheet snapshots.

Keyword rows are only mutated here through ``update_state``, which writes
the four pipeline-owned fields (status, status_reason, indexable,
last_refreshed_at). Rank sheets are upserted per (keyword, data_period):
a refresh of the same period replaces the snapshot, other periods are
never touched.
"""

import logging
from typing import List, Optional

from psycopg2.extras import RealDictCursor, Json

from ..data.models import Keyword, KeywordState, KeywordStatus, RankSheet, RankSheetHistoryEntry
from .pool import Database

logger = logging.getLogger(__name__)

KEYWORD_COLUMNS = """
    id, slug, keyword, category, marketplace, top_n, is_active,
    status, status_reason, indexable, priority, last_refreshed_at
"""


class KeywordRepository:
    """Reads and state updates for ranksheet.keywords."""

    def __init__(self, db: Database):
        self.db = db

    def get_by_slug(self, slug: str) -> Optional[Keyword]:
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {KEYWORD_COLUMNS} FROM ranksheet.keywords WHERE slug = %s LIMIT 1",
                    (slug,),
                )
                row = cur.fetchone()
        return Keyword.from_row(row) if row else None

    def list_active(self, limit: int) -> List[Keyword]:
        """Active keywords, highest priority first."""
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {KEYWORD_COLUMNS}
                    FROM ranksheet.keywords
                    WHERE is_active = TRUE
                    ORDER BY priority DESC, id ASC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = cur.fetchall()
        return [Keyword.from_row(r) for r in rows]

    def list_by_status(self, status: KeywordStatus, limit: int) -> List[Keyword]:
        """Active keywords in ``status``, most recently refreshed first."""
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {KEYWORD_COLUMNS}
                    FROM ranksheet.keywords
                    WHERE is_active = TRUE AND status = %s
                    ORDER BY last_refreshed_at DESC NULLS LAST, id ASC
                    LIMIT %s
                    """,
                    (status.value, limit),
                )
                rows = cur.fetchall()
        return [Keyword.from_row(r) for r in rows]

    def update_state(self, keyword_id: int, state: KeywordState) -> None:
        """Write the pipeline-owned fields of one keyword."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE ranksheet.keywords
                    SET status = %s,
                        status_reason = %s,
                        indexable = %s,
                        last_refreshed_at = %s,
                        updated_at = NOW()
                    WHERE id = %s
                    """,
                    (
                        state.status.value,
                        state.status_reason,
                        state.indexable,
                        state.last_refreshed_at,
                        keyword_id,
                    ),
                )
        logger.debug(f"Keyword {keyword_id} -> {state.status.value}")


class RankSheetRepository:
    """Snapshot writes and history reads for ranksheet.rank_sheets."""

    HISTORY_LIMIT = 4

    def __init__(self, db: Database):
        self.db = db

    def get_history(
        self,
        keyword_id: int,
        exclude_period: Optional[str] = None,
        limit: int = HISTORY_LIMIT,
    ) -> List[RankSheetHistoryEntry]:
        """Latest prior snapshots of a keyword, newest period first."""
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT data_period, updated_at, valid_count, readiness_level
                    FROM ranksheet.rank_sheets
                    WHERE keyword_id = %s
                      AND (%s::text IS NULL OR data_period <> %s)
                    ORDER BY data_period DESC
                    LIMIT %s
                    """,
                    (keyword_id, exclude_period, exclude_period, limit),
                )
                rows = cur.fetchall()
        return [
            RankSheetHistoryEntry(
                data_period=r["data_period"],
                updated_at=r["updated_at"],
                valid_count=r["valid_count"],
                readiness_level=r["readiness_level"],
            )
            for r in rows
        ]

    def upsert(self, sheet: RankSheet) -> int:
        """Insert or replace the snapshot for (keyword, data_period). Returns its id."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ranksheet.rank_sheets (
                        keyword_id, data_period, report_date, mode, valid_count,
                        readiness_level, rows, history, metadata
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (keyword_id, data_period) DO UPDATE SET
                        report_date = EXCLUDED.report_date,
                        mode = EXCLUDED.mode,
                        valid_count = EXCLUDED.valid_count,
                        readiness_level = EXCLUDED.readiness_level,
                        rows = EXCLUDED.rows,
                        history = EXCLUDED.history,
                        metadata = EXCLUDED.metadata,
                        updated_at = NOW()
                    RETURNING id
                    """,
                    (
                        sheet.keyword_id,
                        sheet.data_period,
                        sheet.report_date,
                        sheet.mode.value,
                        sheet.valid_count,
                        sheet.readiness_level.value,
                        Json([row.to_dict() for row in sheet.rows]),
                        Json([entry.to_dict() for entry in sheet.history]),
                        Json(sheet.metadata),
                    ),
                )
                sheet_id = cur.fetchone()[0]
        logger.debug(f"Rank sheet {sheet_id} written for keyword {sheet.keyword_id} ({sheet.data_period})")
        return sheet_id
