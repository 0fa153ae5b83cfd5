"""Shared fakes for db_purger tests: no live database is needed."""

import pytest

from db_purger.config import RunOptions
from db_purger.policy import DatabasePolicy, EffectivePolicy, GlobalPolicy, TablePolicy
from db_purger.relations import ForeignKeyEdge, TableDescriptor


def T(qualified: str) -> TableDescriptor:
    return TableDescriptor.parse(qualified)


def E(child: str, parent: str) -> ForeignKeyEdge:
    return ForeignKeyEdge(T(child), T(parent))


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = -1
        self._result = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, vars=None):
        self.conn.executed.append((query, vars))
        if self.conn.fail_with is not None:
            raise self.conn.fail_with
        if isinstance(query, str) and query.lstrip().upper().startswith("SET"):
            return
        if isinstance(vars, dict) and "limit" in vars:
            # an int means the whole selection was deleted
            outcome = self.conn.rowcounts.pop(0)
            selected, deleted = outcome if isinstance(outcome, tuple) else (outcome, outcome)
            self._result = [(selected, deleted)]
            self.rowcount = 1
        elif self.conn.results:
            self._result = self.conn.results.pop(0)

    def fetchall(self):
        return list(self._result)

    def fetchone(self):
        return self._result[0]


class FakeConnection:
    def __init__(self, rowcounts=None, results=None, fail_with=None):
        self.rowcounts = list(rowcounts or [])
        self.results = list(results or [])
        self.fail_with = fail_with
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.invalidated = False

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def invalidate(self):
        self.invalidated = True


class FakeEngine:
    """Hands out the given connections in order, reusing the last one."""

    def __init__(self, *connections):
        self.connections = list(connections)
        self.handed_out = []
        self.disposed = False

    def raw_connection(self):
        conn = self.connections.pop(0) if len(self.connections) > 1 else self.connections[0]
        self.handed_out.append(conn)
        return conn

    def dispose(self):
        self.disposed = True


@pytest.fixture
def options():
    return RunOptions(batch_size=1000, statement_timeout=300, max_retries=2, retry_delay=0.0)


@pytest.fixture
def policy():
    return EffectivePolicy(primary_key_field="id", older_than_days=90, condition_fields=("created_at",))


@pytest.fixture
def global_policy():
    return GlobalPolicy(
        primary_key_field="id",
        older_than_days=90,
        condition_fields=("created_at",),
        connection_string="postgresql://u:p@localhost:5432/[DbName]",
        databases={
            "billing": DatabasePolicy(tables={
                "invoices": TablePolicy(),
                "invoice_lines": TablePolicy(),
                "customers": TablePolicy(older_than_days=365),
            }),
        },
    )
