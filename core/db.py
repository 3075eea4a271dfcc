"""
core/db.py -- Engine construction and timestamp helpers shared by the stores.

SQLite specifics, applied per connection because PRAGMAs and transaction
modes are not inherited from the pool:

  WAL journal mode lets readers proceed while a writer holds the lock.

  BEGIN IMMEDIATE for every transaction. pysqlite's default deferred BEGIN
  takes the write lock only at the first write, so two transactions that both
  read a row and then write can deadlock or lose an update. Taking the lock
  up front makes each store transaction a true serialization point, which
  is what the counter and rotation statements rely on under concurrency.
  Waiting writers block on the driver's busy timeout instead of failing.

Other backends (PostgreSQL) get a plain engine: single-statement UPDATE /
DELETE with a row count check is already atomic there.

Layer rule: no imports from api/, auth/, teams/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    # Hand transaction control to SQLAlchemy; _sqlite_on_begin emits BEGIN.
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _sqlite_on_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync handlers in a worker thread pool.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 10
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_on_connect)
        event.listen(engine, "begin", _sqlite_on_begin)
    return engine


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO 8601 so stored timestamps compare correctly as strings."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def new_id() -> str:
    return str(uuid.uuid4())
