import psycopg
from contextlib import contextmanager

from config import get_settings


@contextmanager
def get_conn():
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(get_settings().database_url) as conn:
        conn.autocommit = False
        yield conn
