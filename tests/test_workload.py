import logging
import random
import threading

import pytest

from conftest import FakeClock, FakeConnection, FakeTarget
from shardload.catalog import TableDescriptor, build_catalog
from shardload.database import ConnectionLifecycle, RetryPolicy
from shardload.queries import QueryExecutor
from shardload.workload import Deadline, Worker, WorkerSession, WorkerState

JOIN_TABLES = ['sbtest1', 'sbtest2', 'sbtest3', 'sbtest4']


def make_worker(target, clock, metrics, catalog, duration=1.0, pacing=0.0,
                lifecycle=None, executor=None, **kwargs):
    deadline = Deadline.after(duration, clock)
    lifecycle = lifecycle or ConnectionLifecycle(deadline=deadline, sleep=clock.sleep)
    return Worker(
        worker_id=f"{target.name}-0",
        session=WorkerSession(target, lifecycle),
        catalog=catalog,
        executor=executor or QueryExecutor(),
        metrics=metrics,
        deadline=deadline,
        sleep_after_query=pacing,
        rng=random.Random(42),
        sleep=clock.sleep,
        **kwargs
    )


def test_deadline(clock):
    deadline = Deadline.after(10, clock)

    assert deadline.expires_at == 110.0
    assert not deadline.expired()
    assert deadline.remaining() == 10.0

    clock.now = 110.5
    assert deadline.expired()
    assert deadline.remaining() == 0.0


def test_sampled_keys_stay_in_range(clock, metrics):
    catalog = build_catalog(3, 10000, 5, 900, 2, 334800)
    worker = make_worker(FakeTarget(), clock, metrics, catalog)

    for _ in range(10000):
        table, key = worker.pick()
        assert table.min_key <= key <= table.max_key


def test_sampled_keys_cover_whole_range(clock, metrics):
    catalog = (TableDescriptor('sbtest1', 5, 8),)
    worker = make_worker(FakeTarget(), clock, metrics, catalog)

    keys = {worker.pick()[1] for _ in range(1000)}

    assert keys == {5, 6, 7, 8}


def test_single_table_single_worker(metrics):
    clock = FakeClock(tick=0.001)
    target = FakeTarget()
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    worker = make_worker(target, clock, metrics, catalog, duration=1.0, pacing=0.0)

    report = worker.run()

    conn = target.connections[0]
    keys = [params[0] for _, params in conn.executed]
    assert report.queries >= 1
    assert report.not_found == report.queries
    assert report.failed == 0
    assert report.reconnects == 0
    assert all(1 <= k <= 10 for k in keys)
    assert target.acquire_calls == 1
    assert worker.state is WorkerState.STOPPED
    assert target.released == [conn]
    assert target.outstanding == 0


def test_induced_failure_reconnects_once(clock, metrics, caplog):
    healthy = []

    def factory():
        if not healthy:
            healthy.append(True)
            return FakeConnection(rows=[('x',)], fail_queries={3})
        return FakeConnection(rows=[('x',)])

    target = FakeTarget(factory=factory)
    catalog = build_catalog(2, 100, 0, 0, 0, 0)
    worker = make_worker(target, clock, metrics, catalog, duration=1.0, pacing=0.1)

    with caplog.at_level(logging.ERROR, logger='shardload.workload'):
        report = worker.run()

    first, second = target.connections
    assert report.failed == 1
    assert report.reconnects == 1
    assert target.acquire_calls == 2
    assert first.closed
    assert first.queries == 3
    assert second.queries > 0
    assert report.found == report.queries - 1
    assert target.max_outstanding == 1
    assert target.outstanding == 0

    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert 'DB=test0001' in errors[0]
    assert 'table=sbtest' in errors[0]
    assert 'k=' in errors[0]


def test_reconnect_closes_old_before_acquiring_new(clock, metrics):
    conns = iter([FakeConnection(fail_queries={1}), FakeConnection()])
    target = FakeTarget(factory=lambda: next(conns))
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    worker = make_worker(target, clock, metrics, catalog, duration=0.25, pacing=0.1)

    worker.run()

    assert target.events == ['acquire', 'release', 'acquire', 'release']


def test_exactly_one_connection_while_running(clock, metrics):
    target = FakeTarget()
    observed = []

    def on_query(conn, query, params):
        observed.append((target.outstanding, worker.session.conn is conn))

    target.factory = lambda: FakeConnection(on_query=on_query, fail_queries={2, 5})
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    worker = make_worker(target, clock, metrics, catalog, duration=2.0, pacing=0.1)

    worker.run()

    assert observed
    assert all(outstanding == 1 and owned for outstanding, owned in observed)


def test_no_query_issued_after_deadline_plus_pacing(clock, metrics):
    times = []
    target = FakeTarget(factory=lambda: FakeConnection(on_query=lambda *a: times.append(clock.now)))
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    start = clock.now
    worker = make_worker(target, clock, metrics, catalog, duration=1.0, pacing=0.15)

    report = worker.run()

    assert report.queries == len(times) > 1
    assert max(times) <= start + 1.0 + 0.15


def test_join_probe_failure_is_not_fatal(clock, metrics):
    target = FakeTarget(factory=lambda: FakeConnection(rows=[('x',)], fail_queries={1}))
    catalog = build_catalog(4, 1000, 0, 0, 0, 0)
    worker = make_worker(target, clock, metrics, catalog, duration=0.5, pacing=0.1,
                         executor=QueryExecutor(JOIN_TABLES), join_probe_max_id=1000)

    report = worker.run()

    assert metrics.join_probe_counts == {'success': 0, 'error': 1}
    assert report.queries > 0
    assert report.failed == 0
    assert target.acquire_calls == 1


def test_join_probe_runs_once_at_warmup(clock, metrics):
    target = FakeTarget(factory=lambda: FakeConnection(rows=[('a', 'b', 'c', 'd')]))
    catalog = build_catalog(4, 1000, 0, 0, 0, 0)
    worker = make_worker(target, clock, metrics, catalog, duration=0.5, pacing=0.1,
                         executor=QueryExecutor(JOIN_TABLES), join_probe_max_id=1000)

    report = worker.run()

    conn = target.connections[0]
    assert metrics.join_probe_counts == {'success': 1, 'error': 0}
    assert conn.queries == report.queries + 1


def test_unreachable_database_stops_worker(clock, metrics):
    target = FakeTarget(acquire_failures=1000)
    deadline = Deadline.after(1.0, clock)
    lifecycle = ConnectionLifecycle(RetryPolicy(delay_seconds=0.05, max_attempts=3),
                                    deadline=deadline, sleep=clock.sleep)
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    worker = make_worker(target, clock, metrics, catalog, lifecycle=lifecycle)

    report = worker.run()

    assert report.queries == 0
    assert worker.state is WorkerState.STOPPED
    assert target.acquire_calls == 3


def test_stop_event_ends_worker(clock, metrics):
    stop = threading.Event()
    stop.set()
    target = FakeTarget()
    catalog = (TableDescriptor('sbtest1', 1, 10),)
    worker = make_worker(target, clock, metrics, catalog, stop_event=stop)

    report = worker.run()

    assert report.queries == 0
    assert target.outstanding == 0


def test_session_holds_one_connection():
    target = FakeTarget()
    session = WorkerSession(target, ConnectionLifecycle(sleep=lambda s: None))

    session.connect()
    with pytest.raises(RuntimeError):
        session.connect()

    session.release()
    assert session.conn is None
    session.release()
    assert target.outstanding == 0


def test_empty_catalog_rejected(clock, metrics):
    with pytest.raises(ValueError):
        make_worker(FakeTarget(), clock, metrics, ())
