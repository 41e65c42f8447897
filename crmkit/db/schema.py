"""
Schema bootstrap.
Applies the bundled schema.sql (idempotent, CREATE ... IF NOT EXISTS).
"""

import logging
from pathlib import Path

from crmkit.db.connection import get_db_cursor

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / 'schema.sql'


def apply_schema() -> None:
    sql = SCHEMA_FILE.read_text(encoding='utf-8')
    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute(sql)
    logger.info(f"Applied schema from {SCHEMA_FILE.name}")
