import os
from psycopg.rows import dict_row
from contextlib import contextmanager
from typing import Optional

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/pos_ledger"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default

# Pool sizing defaults are conservative for local/dev. Override via
# DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened on first use so importing the app (tests, workers) does not dial the DB.
_pool: Optional[ConnectionPool] = None


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            conninfo=DATABASE_URL,
            min_size=_POOL_MIN,
            max_size=_POOL_MAX,
            kwargs={"row_factory": dict_row},
        )
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and returns the connection to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pools() -> None:
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None


def set_restaurant_context(conn, restaurant_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid with the extended query protocol; use set_config().
        cur.execute(
            "SELECT set_config('app.current_restaurant_id', %s::text, true)",
            (str(restaurant_id),),
        )
