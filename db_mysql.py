import logging

from mysql.connector.pooling import MySQLConnectionPool
from config import Config

log = logging.getLogger(__name__)

# Pool is built on first use so importing the app never opens a socket
_pool = None


def _get_pool():
    global _pool
    if _pool is None:
        _pool = MySQLConnectionPool(
            pool_name="sigb_pool",
            pool_size=Config.DB_POOL_SIZE,
            host=Config.DB_HOST,
            port=Config.DB_PORT,
            user=Config.DB_USER,
            password=Config.DB_PASSWORD,
            database=Config.DB_NAME,
            charset="utf8mb4",
            autocommit=True,
        )
        log.info("MySQL pool ready (%s@%s/%s)", Config.DB_USER, Config.DB_HOST, Config.DB_NAME)
    return _pool


def get_conn():
    """Get a pooled MySQL connection to the library DB."""
    return _get_pool().get_connection()


def fetch_all(sql, params=()):
    """Run a SELECT and return every row as a dict."""
    conn = get_conn()
    cur = conn.cursor(dictionary=True)
    try:
        cur.execute(sql, params)
        return cur.fetchall()
    finally:
        cur.close()
        conn.close()


def fetch_one(sql, params=()):
    rows = fetch_all(sql, params)
    return rows[0] if rows else None


def fetch_value(sql, params=(), default=0):
    """First column of the first row, or `default`."""
    row = fetch_one(sql, params)
    if not row:
        return default
    value = next(iter(row.values()))
    return default if value is None else value


def execute(sql, params=()):
    """Run a write statement and return the affected row count."""
    conn = get_conn()
    cur = conn.cursor()
    try:
        cur.execute(sql, params)
        return cur.rowcount
    finally:
        cur.close()
        conn.close()


class transaction:
    """
    Context manager for multi-statement work on one connection.

        with transaction() as cur:
            cur.execute(...)

    Commits on success, rolls back and re-raises on error.
    """

    def __init__(self):
        self.conn = None
        self.cur = None

    def __enter__(self):
        self.conn = get_conn()
        self.conn.autocommit = False
        self.cur = self.conn.cursor(dictionary=True)
        return self.cur

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.cur.close()
            self.conn.autocommit = True
            self.conn.close()
        return False
