"""
Database Connection Management
Handles PostgreSQL connections with context manager pattern.
"""

import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
import logging

from crmkit.config import config
from crmkit.errors import StoreError

logger = logging.getLogger(__name__)


def _store_message(exc: psycopg2.Error) -> str:
    """Driver message as the server reported it, without the trailing newline."""
    return (getattr(exc, 'pgerror', None) or str(exc)).strip()


@contextmanager
def get_db_connection():
    """
    Context manager for database connections.
    Automatically commits on success, rollbacks on error, and closes connection.
    Driver errors surface as StoreError carrying the server's message.

    Usage:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM contacts WHERE user_id = %s", (user_id,))
            results = cur.fetchall()
    """
    conn = None
    try:
        conn = psycopg2.connect(config.DATABASE_URL)
        logger.debug("Database connection established")
        yield conn
        conn.commit()
        logger.debug("Transaction committed")
    except psycopg2.Error as e:
        if conn:
            conn.rollback()
        logger.error(f"Transaction rolled back due to store error: {e}")
        raise StoreError(_store_message(e)) from e
    except Exception as e:
        if conn:
            conn.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
        raise
    finally:
        if conn:
            conn.close()
            logger.debug("Database connection closed")


@contextmanager
def get_db_cursor(dict_cursor=True):
    """
    Context manager for database cursor.
    Returns RealDictCursor by default for row-as-dict results.

    Usage:
        with get_db_cursor() as cur:
            cur.execute("SELECT * FROM deals WHERE id = %s AND user_id = %s", (deal_id, user_id))
            deal = cur.fetchone()  # Returns dict-like object
    """
    with get_db_connection() as conn:
        cursor_factory = RealDictCursor if dict_cursor else None
        cur = conn.cursor(cursor_factory=cursor_factory)
        try:
            yield cur
        finally:
            cur.close()
