"""
Runs the purge database by database, table by table, in dependency order.

Every table ends up as a TableResult; a failing table never stops the
tables after it. A database whose schema cannot be read is reported and
skipped.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy import exc as sa_exc

from . import pg
from .cleaner import count_table, purge_table
from .config import PurgeConfig, RunOptions
from .errors import DeleteBatchFailed, PolicyError, PurgeCancelled, SchemaIntrospectionFailed
from .policy import DatabasePolicy, GlobalPolicy, merge_policy
from .relations import TableDescriptor, build_order, filter_configured_tables
from .utils import call_with_retry, format_duration, format_error

DELETED = "deleted"
DRY_RUN = "dry_run"
SKIPPED = "skipped"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class TableResult:
    table: TableDescriptor
    status: str
    rows: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == FAILED


@dataclass
class DatabaseResult:
    name: str
    tables: List[TableResult] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def rows(self) -> int:
        return sum(t.rows for t in self.tables if t.status in (DELETED, CANCELLED))


@dataclass
class PurgeSummary:
    databases: List[DatabaseResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_rows(self) -> int:
        return sum(db.rows for db in self.databases)

    @property
    def failed_tables(self) -> List[TableResult]:
        return [t for db in self.databases for t in db.tables if t.failed]

    @property
    def failed_databases(self) -> List[DatabaseResult]:
        return [db for db in self.databases if db.error is not None]

    def succeeded(self, fail_on_table_error: bool = False) -> bool:
        if self.cancelled or self.failed_databases:
            return False
        return not (fail_on_table_error and self.failed_tables)


def compute_cutoff(today: date, older_than_days: int) -> datetime:
    """Midnight of today minus older_than_days."""
    return datetime.combine(today, datetime.min.time()) - timedelta(days=older_than_days)


def _introspect(engine, database: str, options: RunOptions):
    def read_schema():
        with pg.pooled_connection(engine) as conn:
            return pg.introspect(conn)

    try:
        return call_with_retry(read_schema, what=f"schema introspection of '{database}'",
                               max_retries=options.max_retries, retry_delay=options.retry_delay)
    except Exception as e:
        raise SchemaIntrospectionFailed(database, format_error(e)) from e


def purge_one_table(engine,
                    table: TableDescriptor,
                    global_policy: GlobalPolicy,
                    database_policy: DatabasePolicy,
                    options: RunOptions,
                    today: date,
                    stop_event: Optional[threading.Event] = None) -> TableResult:
    table_policy = database_policy.table_policy_for(table)
    if table_policy is not None and not table_policy.enable:
        logging.warning(f"[SKIP] Table '{table}' skipped due to disabled")
        return TableResult(table, SKIPPED)

    try:
        policy = merge_policy(global_policy, database_policy, table_policy, table_name=table.qualified)
    except PolicyError as e:
        logging.error(f"[ERROR] Invalid policy for table '{table}': {e}")
        return TableResult(table, FAILED, error=str(e))

    cutoff = compute_cutoff(today, policy.older_than_days)
    try:
        if options.dry_run:
            return TableResult(table, DRY_RUN, rows=count_table(engine, table, policy, cutoff, options))
        return TableResult(table, DELETED, rows=purge_table(engine, table, policy, cutoff, options, stop_event))
    except PurgeCancelled as e:
        logging.warning(f"[CANCEL] {e}")
        return TableResult(table, CANCELLED, rows=e.rows_deleted)
    except DeleteBatchFailed as e:
        logging.error(f"[ERROR] Failed to purge table '{table}': {e.cause}")
        return TableResult(table, FAILED, error=str(e.cause))
    except Exception as e:
        logging.exception(f"[ERROR] Unexpected error purging table '{table}': {e}")
        return TableResult(table, FAILED, error=format_error(e))


def purge_database(name: str,
                   global_policy: GlobalPolicy,
                   database_policy: DatabasePolicy,
                   options: RunOptions,
                   today: Optional[date] = None,
                   stop_event: Optional[threading.Event] = None) -> DatabaseResult:
    today = today or date.today()
    result = DatabaseResult(name)
    logging.info(f"[START] Running cleanup for database '{name}'")
    try:
        engine = create_engine(global_policy.connection_string_for(name), pool_pre_ping=True)
    except sa_exc.ArgumentError as e:
        logging.error(f"[ERROR] Invalid connection string for database '{name}': {e}")
        result.error = f"invalid connection string: {e}"
        return result
    except Exception as e:
        # e.g. the URL names a dialect whose driver is not installed
        logging.exception(f"[ERROR] Cannot create engine for database '{name}': {e}")
        result.error = f"cannot create engine: {format_error(e)}"
        return result
    try:
        try:
            logging.info(f"[SCHEMA] {name}: Reading all tables...")
            tables, edges = _introspect(engine, name, options)
        except SchemaIntrospectionFailed as e:
            logging.error(f"[ERROR] {e}")
            result.error = str(e)
            return result

        candidates = filter_configured_tables(tables, database_policy)
        logging.info(f"[SCHEMA] {name}: {len(candidates)} of {len(tables)} table(s) configured for purge; "
                     f"ordering by dependencies...")
        ordered = build_order(candidates, edges)

        for table in ordered:
            if stop_event is not None and stop_event.is_set():
                result.cancelled = True
                break
            table_start_time = time.time()
            table_result = purge_one_table(engine, table, global_policy, database_policy,
                                           options, today, stop_event)
            result.tables.append(table_result)
            logging.info(f"[TIMING] Table '{table}' completed in {format_duration(time.time() - table_start_time)}")
            if table_result.status == CANCELLED:
                result.cancelled = True
                break
    finally:
        engine.dispose()

    logging.info(f"[DONE] Finished cleanup for database '{name}': {result.rows} rows deleted")
    return result


def run_purge(config: PurgeConfig,
              today: Optional[date] = None,
              stop_event: Optional[threading.Event] = None) -> PurgeSummary:
    policy = config.policy
    summary = PurgeSummary()
    logging.info(f"[START] Purging databases: {', '.join(policy.databases)}")
    for name, database_policy in policy.databases.items():
        if stop_event is not None and stop_event.is_set():
            summary.cancelled = True
            break
        db_result = purge_database(name, policy, database_policy, config.options, today, stop_event)
        summary.databases.append(db_result)
        if db_result.cancelled:
            summary.cancelled = True
            break
    return summary


def log_summary(summary: PurgeSummary) -> None:
    logging.info("[SUMMARY] Per-table results:")
    for db in summary.databases:
        if db.error is not None:
            logging.info(f"  - {db.name}: FAILED ({db.error})")
            continue
        for t in db.tables:
            line = f"  - {db.name}/{t.table}: {t.status}, {t.rows} rows"
            if t.error:
                line += f" ({t.error})"
            logging.info(line)
    failed = summary.failed_tables
    if failed:
        logging.warning(f"[SUMMARY] {len(failed)} table(s) failed: {', '.join(str(t.table) for t in failed)}")
    if summary.cancelled:
        logging.warning("[SUMMARY] Run was cancelled before completion")
    logging.info(f"[TOTAL] {summary.total_rows} rows deleted")
