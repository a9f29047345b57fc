"""Apply the bundled DDL (``schema.sql``) to the configured database."""

import logging
from pathlib import Path

from .pool import Database

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def load_schema_sql() -> str:
    return SCHEMA_PATH.read_text(encoding="utf-8")


def apply_schema(db: Database) -> None:
    """Create the ranksheet schema, tables and indexes if missing."""
    sql = load_schema_sql()
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
    logger.info(f"Schema applied from {SCHEMA_PATH.name}")
