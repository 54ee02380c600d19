import random

import psycopg
import pytest
from psycopg import sql

from conftest import FakeConnection
from shardload.catalog import TableDescriptor
from shardload.queries import JOIN_PROBE_ROWS, LookupStatus, QueryExecutor, classify_error

TABLE = TableDescriptor('sbtest3', 1, 900)
JOIN_TABLES = ['sbtest1', 'sbtest2', 'sbtest3', 'sbtest4']


def test_point_lookup_found():
    conn = FakeConnection(rows=[('abc-123',)])

    result = QueryExecutor().point_lookup(conn, TABLE, 7)

    assert result.status is LookupStatus.FOUND
    assert result.value == 'abc-123'
    assert result.latency >= 0
    query, params = conn.executed[0]
    assert params == (7,)
    assert sql.Identifier('sbtest3') in list(query)


def test_point_lookup_no_row_is_not_an_error():
    result = QueryExecutor().point_lookup(FakeConnection(), TABLE, 7)

    assert result.status is LookupStatus.NOT_FOUND
    assert result.error is None
    assert not result.failed


def test_point_lookup_failure():
    conn = FakeConnection(fail_queries={1})

    result = QueryExecutor().point_lookup(conn, TABLE, 7)

    assert result.failed
    assert isinstance(result.error, psycopg.OperationalError)


def test_point_lookup_on_closed_connection_fails():
    conn = FakeConnection()
    conn.close()

    assert QueryExecutor().point_lookup(conn, TABLE, 1).failed


def test_lookup_statement_cached_per_table():
    executor = QueryExecutor()
    other = TableDescriptor('sbtest4', 1, 10)

    assert executor.lookup_statement(TABLE) is executor.lookup_statement(TABLE)
    assert executor.lookup_statement(TABLE) != executor.lookup_statement(other)


def test_join_probe_consumes_rows():
    rows = [(f'c{i}', f'c{i}', None, f'c{i}') for i in range(JOIN_PROBE_ROWS)]
    conn = FakeConnection(rows=rows)

    result = QueryExecutor(JOIN_TABLES).join_probe(conn, 10000, random.Random(1))

    assert result.status is LookupStatus.FOUND
    assert result.value == JOIN_PROBE_ROWS
    query, (start_id,) = conn.executed[0]
    identifiers = [part for part in query if isinstance(part, sql.Identifier)]
    assert identifiers == [sql.Identifier(name) for name in JOIN_TABLES]
    assert 1 <= start_id <= 10000 - JOIN_PROBE_ROWS


def test_join_probe_start_id_in_range():
    executor = QueryExecutor(JOIN_TABLES)
    rng = random.Random(7)
    conn = FakeConnection()

    for _ in range(500):
        executor.join_probe(conn, 150, rng)

    starts = [params[0] for _, params in conn.executed]
    assert min(starts) >= 1
    assert max(starts) <= 50


def test_join_probe_requires_large_max_id():
    with pytest.raises(ValueError):
        QueryExecutor(JOIN_TABLES).join_probe(FakeConnection(), JOIN_PROBE_ROWS, random.Random())


def test_join_probe_failure():
    result = QueryExecutor(JOIN_TABLES).join_probe(
        FakeConnection(fail_queries={1}), 10000, random.Random()
    )

    assert result.failed


def test_join_probe_needs_four_tables():
    with pytest.raises(ValueError):
        QueryExecutor(['sbtest1', 'sbtest2'])

    with pytest.raises(ValueError):
        QueryExecutor().join_statement()


@pytest.mark.parametrize("exc, expected", [
    (psycopg.OperationalError("server closed the connection"), "connection"),
    (psycopg.errors.QueryCanceled("canceling statement due to statement timeout"), "timeout_statement"),
    (psycopg.errors.UndefinedTable('relation "sbtest9" does not exist'), "undefined_table"),
    (psycopg.ProgrammingError("syntax error"), "other"),
])
def test_classify_error(exc, expected):
    assert classify_error(exc) == expected
