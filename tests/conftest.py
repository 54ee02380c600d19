import threading

import psycopg
import pytest
from prometheus_client import CollectorRegistry
from psycopg_pool import PoolTimeout

from shardload.metrics import MetricsCollector


class FakeClock:
    """Manual clock; every read advances it by `tick`."""

    def __init__(self, start=100.0, tick=0.0):
        self.now = start
        self.tick = tick
        self.sleeps = []

    def __call__(self):
        now = self.now
        self.now += self.tick
        return now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        conn = self.conn
        conn.queries += 1
        conn.executed.append((query, params))
        if conn.on_query is not None:
            conn.on_query(conn, query, params)
        if conn.fail_queries and conn.queries in conn.fail_queries:
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        self._rows = list(conn.rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def __iter__(self):
        return iter(self._rows)


class FakeConnection:
    """Stand-in for a psycopg connection: cursor(), execute() (ping), close()."""

    def __init__(self, rows=(), fail_ping=False, fail_queries=(), on_query=None):
        self.rows = list(rows)
        self.fail_ping = fail_ping
        self.fail_queries = set(fail_queries)
        self.on_query = on_query
        self.queries = 0
        self.pings = 0
        self.executed = []
        self.closed = False

    def cursor(self):
        if self.closed:
            raise psycopg.OperationalError("the connection is closed")
        return FakeCursor(self)

    def execute(self, query, params=None):
        if self.closed or self.fail_ping:
            raise psycopg.OperationalError("ping failed")
        self.pings += 1

    def close(self):
        self.closed = True


class FakeTarget:
    """
    Stand-in for DatabaseTarget.

    The first `acquire_failures` acquisitions raise PoolTimeout; after that
    connections come from `factory`. Tracks how many connections are out.
    """

    def __init__(self, name='test0001', conninfo='', pool_config=None,
                 factory=FakeConnection, acquire_failures=0, acquire_error=None):
        self.name = name
        self.conninfo = conninfo
        self.pool_config = pool_config
        self.factory = factory
        self.acquire_failures = acquire_failures
        self.acquire_error = acquire_error
        self.lock = threading.Lock()
        self.acquire_calls = 0
        self.outstanding = 0
        self.max_outstanding = 0
        self.connections = []
        self.released = []
        self.events = []
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def acquire(self):
        with self.lock:
            self.acquire_calls += 1
            self.events.append('acquire')
            if self.acquire_error is not None:
                raise self.acquire_error
            if self.acquire_calls <= self.acquire_failures:
                raise PoolTimeout("couldn't get a connection after 5.00 sec")
            conn = self.factory()
            self.connections.append(conn)
            self.outstanding += 1
            self.max_outstanding = max(self.max_outstanding, self.outstanding)
            return conn

    def release(self, conn):
        with self.lock:
            self.events.append('release')
            self.released.append(conn)
            self.outstanding -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector(
        {'export_json': False, 'export_csv': False},
        registry=CollectorRegistry()
    )
