import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import psycopg2
from sqlalchemy.engine import Engine

from . import pg
from .config import RunOptions
from .errors import DeleteBatchFailed, PurgeCancelled
from .policy import EffectivePolicy
from .relations import TableDescriptor
from .utils import call_with_retry, format_duration, format_error, is_transient


def _with_connection(engine: Engine, fn: Callable):
    """
    Run fn(conn) on a pooled connection. A connection that failed with a
    transient error is invalidated so the pool does not hand it out again.
    """
    with pg.pooled_connection(engine) as conn:
        try:
            return fn(conn)
        except Exception as e:
            if is_transient(e) and hasattr(conn, "invalidate"):
                conn.invalidate()
            else:
                try:
                    conn.rollback()
                except psycopg2.Error as rb:
                    logging.warning(f"[ERROR] Rollback failed after error on this connection: {format_error(rb)}")
            raise


def purge_table(engine: Engine,
                table: TableDescriptor,
                policy: EffectivePolicy,
                cutoff: datetime,
                options: RunOptions,
                stop_event: Optional[threading.Event] = None) -> int:
    """
    Delete every row of table whose condition fields are all older than
    cutoff, batch_size rows per round trip, and return the number deleted.

    Each batch commits on its own, so a failure part way through keeps the
    earlier batches and a re-run simply continues. The loop stops when a
    batch deletes nothing, or when it selected fewer than batch_size rows
    (nothing eligible was left behind it). A batch shrunk by a concurrent
    delete still selected a full batch, so the loop goes on.

    Raises DeleteBatchFailed on database errors (transient ones are retried
    first) and PurgeCancelled when stop_event is set between batches.
    """
    total_deleted = 0
    batches = 0
    start_time = time.time()
    fields = ", ".join(policy.condition_fields)
    logging.info(f"[START] Purging '{table}' where {fields} < {cutoff} "
                 f"(older than {policy.older_than_days} days, key {policy.primary_key_field})")

    while True:
        if stop_event is not None and stop_event.is_set():
            raise PurgeCancelled(table.qualified, total_deleted)

        batch_start_time = time.time()
        try:
            outcome = call_with_retry(
                lambda: _with_connection(
                    engine,
                    lambda conn: pg.delete_batch(conn, table, policy, cutoff,
                                                 options.batch_size, options.statement_timeout),
                ),
                what=f"delete batch on '{table}'",
                max_retries=options.max_retries,
                retry_delay=options.retry_delay,
            )
        except Exception as e:
            raise DeleteBatchFailed(table.qualified, format_error(e)) from e

        batches += 1
        total_deleted += outcome.deleted
        logging.info(f"[BATCH] {table}: Deleted {outcome.deleted} rows in {format_duration(time.time() - batch_start_time)}. "
                     f"Total deleted: {total_deleted}")
        if outcome.deleted == 0 or outcome.selected < options.batch_size:
            break

    logging.info(f"[DONE] Table '{table}' purged, total deleted: {total_deleted} in {batches} batch(es), "
                 f"{format_duration(time.time() - start_time)}")
    return total_deleted


def count_table(engine: Engine,
                table: TableDescriptor,
                policy: EffectivePolicy,
                cutoff: datetime,
                options: RunOptions) -> int:
    """Dry run: how many rows purge_table would delete right now."""
    try:
        count = call_with_retry(
            lambda: _with_connection(
                engine,
                lambda conn: pg.count_eligible_rows(conn, table, policy, cutoff, options.statement_timeout),
            ),
            what=f"count on '{table}'",
            max_retries=options.max_retries,
            retry_delay=options.retry_delay,
        )
    except Exception as e:
        raise DeleteBatchFailed(table.qualified, format_error(e)) from e
    logging.info(f"[DRY-RUN] Would delete {count} rows from {table} (before {cutoff}).")
    return count
