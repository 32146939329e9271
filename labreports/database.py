"""
database.py

Oracle connection handling for the registration view.

All connection plumbing lives here. RegistrationSource and StateTransitioner
call these helpers and never manage python-oracledb connections by hand. The
report engine renders from the same schema, so its ``userid`` argument is
built from the same ``database`` credentials.

Connection
----------
The scheduler owns one ``oracledb`` session pool for read queries and closes
it exactly once on shutdown. Each query borrows a connection for its own
duration only, so no connection is ever held across a report invocation or a
network call. The final status update deliberately bypasses the pool and
opens its own connection through ``open_connection``.

Client mode
-----------
Older database servers need the Oracle Instant Client (thick mode). When
``database.lib_dir`` is set the client libraries are loaded from there before
the first connection; otherwise python-oracledb runs in thin mode.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import oracledb

LOG = logging.getLogger(__name__)


def init_client(config: Dict[str, Any]) -> None:
    """Load the Oracle Instant Client when ``database.lib_dir`` is configured."""
    lib_dir = config["database"].get("lib_dir")
    if not lib_dir:
        return
    try:
        oracledb.init_oracle_client(lib_dir=lib_dir)
        LOG.info("Oracle Instant Client initialized in thick mode from %s", lib_dir)
    except oracledb.ProgrammingError as exc:
        # Raised when the client was already loaded with other settings.
        LOG.warning("Oracle client initialization warning: %s", exc)


def report_userid(config: Dict[str, Any]) -> str:
    """Return the ``user/password@connect_string`` credentials for the report engine."""
    database = config["database"]
    userid = database["user"]
    if database.get("password"):
        userid = f"{userid}/{database['password']}"
    return f"{userid}@{database['connect_string']}"


def _connect_params(config: Dict[str, Any]) -> Dict[str, Any]:
    database = config["database"]
    return {
        "user": database["user"],
        "password": database.get("password") or None,
        "dsn": database["connect_string"],
        "tcp_connect_timeout": database.get("connect_timeout_seconds", 10),
    }


def create_pool(config: Dict[str, Any]) -> oracledb.ConnectionPool:
    """
    Create the read-query session pool from the ``database`` config section.
    One connection is checked out and pinged so an unreachable database
    fails here rather than on the first poll.
    Raises oracledb.Error when the database is unreachable.
    """
    init_client(config)
    database = config["database"]
    pool = oracledb.create_pool(
        min=database.get("pool_min", 1),
        max=database.get("pool_max", 5),
        increment=1,
        **_connect_params(config),
    )
    try:
        with pool.acquire() as conn:
            conn.ping()
    except oracledb.Error:
        pool.close(force=True)
        raise
    LOG.info("Database connection pool created successfully")
    return pool


def open_connection(config: Dict[str, Any], call_timeout_seconds: Optional[float] = None):
    """Open a standalone autocommit connection outside the pool.

    ``call_timeout_seconds`` bounds every round trip on the connection, so a
    statement stuck on a row lock is cancelled by the driver.
    """
    init_client(config)
    conn = oracledb.connect(**_connect_params(config))
    conn.autocommit = True
    if call_timeout_seconds:
        conn.call_timeout = int(call_timeout_seconds * 1000)
    return conn


@contextmanager
def pooled_connection(pool) -> Iterator[Any]:
    """Context manager: borrow a connection from the pool, return it after use."""
    conn = pool.acquire()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.release(conn)


def close_pool(pool) -> None:
    """Close every connection in the pool; safe to call on a closed pool."""
    if pool is None:
        return
    try:
        pool.close(force=True)
    except oracledb.InterfaceError as exc:
        LOG.debug("Connection pool already closed: %s", exc)
        return
    LOG.info("Database connection pool closed")
