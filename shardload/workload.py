"""
Workload execution module: one worker per long-lived connection.
"""

import enum
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .catalog import TableDescriptor
from .database import ConnectionLifecycle, ReconnectAborted
from .metrics import MetricsCollector
from .queries import LookupResult, LookupStatus, QueryExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deadline:
    """Process-wide stop time, read by every worker."""
    expires_at: float
    clock: Callable[[], float] = field(default=time.monotonic, compare=False, repr=False)

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> 'Deadline':
        return cls(clock() + seconds, clock)

    def expired(self) -> bool:
        return self.clock() > self.expires_at

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())


class WorkerState(enum.Enum):
    STARTING = "starting"
    WARMUP = "warmup"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class WorkerReport:
    """Per-worker counters returned when the worker stops."""
    worker_id: str
    database: str
    queries: int = 0
    found: int = 0
    not_found: int = 0
    failed: int = 0
    reconnects: int = 0

    def record(self, result: LookupResult):
        self.queries += 1
        if result.status is LookupStatus.FOUND:
            self.found += 1
        elif result.status is LookupStatus.NOT_FOUND:
            self.not_found += 1
        else:
            self.failed += 1


class WorkerSession:
    """
    The single connection a worker owns.

    A session holds at most one connection. Replacing it closes and returns
    the old one before a new one is requested.
    """

    def __init__(self, target, lifecycle: ConnectionLifecycle):
        self.target = target
        self.lifecycle = lifecycle
        self.conn = None

    @property
    def database(self) -> str:
        return self.target.name

    def connect(self):
        if self.conn is not None:
            raise RuntimeError(f"session for DB {self.database} already holds a connection")
        self.conn = self.lifecycle.acquire_healthy(self.target)
        return self.conn

    def discard(self):
        conn, self.conn = self.conn, None
        if conn is not None:
            self.lifecycle.discard(self.target, conn)

    def reconnect(self):
        self.discard()
        return self.connect()

    def release(self):
        conn, self.conn = self.conn, None
        if conn is not None:
            self.target.release(conn)


class Worker:
    """Issues paced random point lookups on one connection until the deadline."""

    def __init__(self, worker_id: str, session: WorkerSession,
                 catalog: Sequence[TableDescriptor], executor: QueryExecutor,
                 metrics: MetricsCollector, deadline: Deadline,
                 sleep_after_query: float = 0.0,
                 rng: Optional[random.Random] = None,
                 join_probe_max_id: Optional[int] = None,
                 stop_event: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize worker.

        Args:
            worker_id: Identifier used in log lines (test0001-3)
            session: Session owning this worker's connection
            catalog: Tables to pick from, shared read-only
            executor: QueryExecutor instance
            metrics: MetricsCollector instance
            deadline: Shared run deadline
            sleep_after_query: Pacing delay in seconds after each lookup
            rng: Random generator owned by this worker
            join_probe_max_id: Upper id bound for the warm-up join probe,
                None to skip it
            stop_event: Set to stop before the deadline
            sleep: Sleep function
        """
        if not catalog:
            raise ValueError("catalog is empty")

        self.worker_id = worker_id
        self.session = session
        self.catalog = catalog
        self.executor = executor
        self.metrics = metrics
        self.deadline = deadline
        self.sleep_after_query = sleep_after_query
        self.rng = rng or random.Random()
        self.join_probe_max_id = join_probe_max_id
        self.stop_event = stop_event
        self.sleep = sleep

        self.state = WorkerState.STARTING
        self.report = WorkerReport(worker_id, session.database)

    @property
    def database(self) -> str:
        return self.session.database

    def _should_stop(self) -> bool:
        if self.stop_event is not None and self.stop_event.is_set():
            return True
        return self.deadline.expired()

    def pick(self) -> tuple[TableDescriptor, int]:
        """Uniformly pick a table, then a key inside its range."""
        table = self.rng.choice(self.catalog)
        return table, table.min_key + self.rng.randrange(table.key_span)

    def run(self) -> WorkerReport:
        """
        Run the worker through STARTING, WARMUP, RUNNING and STOPPED.

        Returns:
            Counters for this worker
        """
        logger.info(f"Worker {self.worker_id} starting")
        self.metrics.worker_started()

        try:
            self.state = WorkerState.STARTING
            self.session.connect()

            self.state = WorkerState.WARMUP
            self._warmup()

            self.state = WorkerState.RUNNING
            self._run_loop()
        except ReconnectAborted as e:
            logger.warning(f"Worker {self.worker_id} stopping: {e}")
        finally:
            self.state = WorkerState.STOPPED
            self.session.release()
            self.metrics.worker_stopped()

        logger.info(f"Worker {self.worker_id} stopped after {self.report.queries} queries "
                    f"(failed={self.report.failed}, reconnects={self.report.reconnects})")
        return self.report

    def _warmup(self):
        if self.join_probe_max_id is None:
            return

        result = self.executor.join_probe(self.session.conn, self.join_probe_max_id, self.rng)
        self.metrics.record_join_probe(not result.failed)

        if result.failed:
            logger.warning(f"DB={self.database} join probe failed: {result.error}")
        else:
            logger.debug(f"DB={self.database} join probe read {result.value} rows "
                         f"in {result.latency * 1000:.1f} ms")

    def _run_loop(self):
        while not self._should_stop():
            table, key = self.pick()

            result = self.executor.point_lookup(self.session.conn, table, key)
            self.metrics.record_lookup(self.database, result)
            self.report.record(result)

            if result.failed:
                logger.error(f"DB={self.database} table={table.name} k={key} "
                             f"query failed: {result.error}")
                # The failed lookup is not retried
                self.session.reconnect()
                self.report.reconnects += 1
                self.metrics.record_reconnect(self.database)

            if self.sleep_after_query > 0:
                self.sleep(self.sleep_after_query)
