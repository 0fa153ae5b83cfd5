from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, NamedTuple, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import connection as PGConnection
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from .errors import ConnectionFailed
from .policy import EffectivePolicy
from .relations import ForeignKeyEdge, TableDescriptor
from .sql_render import ErrorLoggingCursorParam
from .utils import format_error


class BatchOutcome(NamedTuple):
    selected: int
    deleted: int


@contextmanager
def pooled_connection(engine: Engine) -> Iterator[PGConnection]:
    """
    Borrow a raw DBAPI connection from the engine's pool and always give it
    back. Anything left uncommitted is rolled back on the way out.
    """
    try:
        conn = engine.raw_connection()
    except (sa_exc.OperationalError, sa_exc.InterfaceError, psycopg2.OperationalError) as e:
        raise ConnectionFailed(format_error(e)) from e
    try:
        yield conn
    finally:
        conn.close()


def list_base_tables(conn: PGConnection) -> List[TableDescriptor]:
    """
    Base tables outside the system schemas, ordered by schema and name.
    """
    q = r"""
    SELECT table_schema, table_name
    FROM information_schema.tables
    WHERE table_type = 'BASE TABLE'
      AND table_schema NOT IN ('pg_catalog', 'information_schema')
      AND table_schema NOT LIKE 'pg\_%'
    ORDER BY table_schema, table_name
    """
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        cur.execute(q)
        return [TableDescriptor(schema, name) for schema, name in cur.fetchall()]


def list_foreign_keys(conn: PGConnection) -> List[ForeignKeyEdge]:
    """
    Every distinct (child, parent) pair behind a foreign key constraint,
    whether or not either side is configured for purging.
    """
    q = """
    SELECT DISTINCT
      n_child.nspname AS child_schema,
      c_child.relname AS child_table,
      n_parent.nspname AS parent_schema,
      c_parent.relname AS parent_table
    FROM pg_constraint c
      JOIN pg_class c_child ON c.conrelid = c_child.oid
      JOIN pg_namespace n_child ON n_child.oid = c_child.relnamespace
      JOIN pg_class c_parent ON c.confrelid = c_parent.oid
      JOIN pg_namespace n_parent ON n_parent.oid = c_parent.relnamespace
    WHERE c.contype = 'f'
    ORDER BY 1, 2, 3, 4
    """
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        cur.execute(q)
        rows = cur.fetchall()
    return [
        ForeignKeyEdge(TableDescriptor(cs, ct), TableDescriptor(ps, pt))
        for cs, ct, ps, pt in rows
    ]


def build_conditions_sql(condition_fields) -> sql.Composed:
    """
    "f1" < %(cutoff)s AND "f2" < %(cutoff)s ... ; the cutoff is always bound.
    """
    clauses = [
        sql.SQL("{} < {}").format(sql.Identifier(f), sql.Placeholder("cutoff"))
        for f in condition_fields
    ]
    return sql.SQL(" AND ").join(clauses)


def build_delete_batch_sql(table: TableDescriptor, policy: EffectivePolicy) -> sql.Composed:
    """
    Select up to %(limit)s eligible primary keys and delete them in the same
    statement, so nothing can slip in between selection and deletion.
    Returns one row: (rows selected, rows deleted).

    Rows with a NULL key can never be matched by key, so they are not selected.
    """
    return sql.SQL(
        "WITH batch AS ("
        "SELECT {pk} FROM {tbl} WHERE {conds} AND {pk} IS NOT NULL LIMIT {limit}"
        "), removed AS ("
        "DELETE FROM {tbl} WHERE {pk} IN (SELECT {pk} FROM batch) RETURNING 1"
        ") "
        "SELECT (SELECT COUNT(*) FROM batch), (SELECT COUNT(*) FROM removed)"
    ).format(
        pk=sql.Identifier(policy.primary_key_field),
        tbl=sql.Identifier(table.schema, table.name),
        conds=build_conditions_sql(policy.condition_fields),
        limit=sql.Placeholder("limit"),
    )


def build_count_sql(table: TableDescriptor, policy: EffectivePolicy) -> sql.Composed:
    return sql.SQL("SELECT COUNT(*) FROM {tbl} WHERE {conds}").format(
        tbl=sql.Identifier(table.schema, table.name),
        conds=build_conditions_sql(policy.condition_fields),
    )


def set_statement_timeout(conn: PGConnection, seconds: int) -> None:
    if not seconds:
        return
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        # LOCAL: only lasts until the current transaction ends
        cur.execute("SET LOCAL statement_timeout = %s", (f"{seconds}s",))


def delete_batch(conn: PGConnection,
                 table: TableDescriptor,
                 policy: EffectivePolicy,
                 cutoff: datetime,
                 batch_size: int,
                 statement_timeout: int = 0) -> BatchOutcome:
    """
    Run one batch as its own transaction. The caller owns rollback on failure.
    """
    set_statement_timeout(conn, statement_timeout)
    params: Dict[str, Any] = {"cutoff": cutoff, "limit": batch_size}
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        cur.execute(build_delete_batch_sql(table, policy), params)
        selected, deleted = cur.fetchone()
    conn.commit()
    return BatchOutcome(int(selected), int(deleted))


def count_eligible_rows(conn: PGConnection,
                        table: TableDescriptor,
                        policy: EffectivePolicy,
                        cutoff: datetime,
                        statement_timeout: int = 0) -> int:
    set_statement_timeout(conn, statement_timeout)
    with conn.cursor(cursor_factory=ErrorLoggingCursorParam) as cur:
        cur.execute(build_count_sql(table, policy), {"cutoff": cutoff})
        count = cur.fetchone()[0]
    conn.rollback()
    return int(count)


def introspect(conn: PGConnection) -> Tuple[List[TableDescriptor], List[ForeignKeyEdge]]:
    tables = list_base_tables(conn)
    edges = list_foreign_keys(conn)
    conn.rollback()
    return tables, edges
