"""
Fleet orchestration: opens every database target and runs all workers.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from .catalog import build_catalog
from .database import (ConnectionLifecycle, DatabaseTarget, RetryPolicy,
                       StartupError, build_conninfo, database_name)
from .metrics import MetricsCollector
from .queries import QueryExecutor
from .workload import Deadline, Worker, WorkerSession

logger = logging.getLogger(__name__)


class StaggeredLauncher:
    """
    Spreads worker spawns over time.

    Sleeps worker_delay between consecutive spawns of one batch and
    batch_delay before every batch but the first.
    """

    def __init__(self, worker_delay: float = 0.01, batch_delay: float = 0.05,
                 sleep: Callable[[float], None] = time.sleep):
        self.worker_delay = worker_delay
        self.batch_delay = batch_delay
        self.sleep = sleep
        self.launched = 0
        self.batches = 0
        self._in_batch = 0

    def _pause(self, delay: float):
        if delay > 0:
            self.sleep(delay)

    def start_batch(self):
        if self.batches:
            self._pause(self.batch_delay)
        self.batches += 1
        self._in_batch = 0

    def launch(self, spawn: Callable, *args, **kwargs):
        """Call spawn(*args, **kwargs) after the stagger delay and return its result."""
        if self._in_batch:
            self._pause(self.worker_delay)
        self._in_batch += 1
        self.launched += 1
        return spawn(*args, **kwargs)


@dataclass
class FleetReport:
    """Aggregated outcome of a run."""
    workers: list = field(default_factory=list)
    crashed: int = 0
    duration: float = 0.0

    @property
    def queries(self) -> int:
        return sum(r.queries for r in self.workers)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.workers)

    @property
    def reconnects(self) -> int:
        return sum(r.reconnects for r in self.workers)


class FleetOrchestrator:
    """Runs threads_per_db workers against each of db_count databases."""

    def __init__(self, config: dict, metrics: MetricsCollector,
                 target_factory: Callable = DatabaseTarget,
                 launcher: Optional[StaggeredLauncher] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize fleet orchestrator.

        Args:
            config: Full, validated configuration dictionary
            metrics: MetricsCollector instance
            target_factory: Builds a target from (name, conninfo, pool_config)
            launcher: Spawn stagger strategy (default: from workload config)
            clock: Monotonic clock for the deadline
            sleep: Sleep function used by workers and retries
        """
        self.config = config
        self.metrics = metrics
        self.target_factory = target_factory
        self.clock = clock
        self.sleep = sleep

        self.db_config = config['database']
        self.tables_config = config['tables']
        self.workload_config = config['workload']

        self.db_count = self.db_config['db_count']
        self.threads_per_db = self.workload_config['threads_per_db']
        self.duration_seconds = self.workload_config['duration_seconds']
        self.sleep_after_query = self.workload_config['sleep_after_query_ms'] / 1000.0

        self.launcher = launcher or StaggeredLauncher(
            worker_delay=self.workload_config['worker_stagger_ms'] / 1000.0,
            batch_delay=self.workload_config['database_stagger_ms'] / 1000.0,
            sleep=sleep
        )
        self.retry_policy = RetryPolicy(
            delay_seconds=self.workload_config['reconnect_delay_ms'] / 1000.0,
            max_attempts=self.workload_config.get('max_reconnect_attempts')
        )

        self.stop_event = threading.Event()
        self.targets = []

    def build_catalog(self):
        t = self.tables_config
        return build_catalog(
            t['big_table_num'], t['rows_per_big_table'],
            t['small_table_num'], t['rows_per_small_table'],
            t['small_partition_table_num'], t['rows_per_small_partition_table']
        )

    def open_targets(self):
        """
        Open the pool of every database and probe it.

        Raises:
            StartupError: If any database is unreachable; pools already
                opened are closed first
        """
        pool_config = dict(self.db_config.get('pool', {}))
        if not pool_config.get('max_size'):
            pool_config['max_size'] = self.threads_per_db

        for index in range(1, self.db_count + 1):
            name = database_name(index)
            target = self.target_factory(name, build_conninfo(self.db_config['dsn'], name), pool_config)
            try:
                target.open()
            except StartupError:
                self.close()
                raise
            self.targets.append(target)

    def close(self):
        for target in self.targets:
            target.close()
        self.targets = []

    def stop(self):
        """Ask every worker to stop at its next deadline check."""
        self.stop_event.set()

    def _seeder(self) -> random.Random:
        seed = self.workload_config.get('seed')
        if seed is None:
            return random.SystemRandom()
        return random.Random(seed)

    def run(self) -> FleetReport:
        """
        Run the whole fleet until the deadline.

        Returns:
            FleetReport with the per-worker counters

        Raises:
            StartupError: If a database target cannot be reached
        """
        catalog = self.build_catalog()
        logger.info(f"Starting workload with {self.db_count} DB(s), each DB has "
                    f"{self.threads_per_db} threads, {len(catalog)} tables ...")

        self.open_targets()

        join_probe = self.workload_config.get('join_probe', False)
        executor = QueryExecutor(
            join_tables=[table.name for table in catalog[:4]] if join_probe else ()
        )
        join_probe_max_id = self.tables_config['rows_per_big_table'] if join_probe else None

        deadline = Deadline.after(self.duration_seconds, self.clock)
        lifecycle = ConnectionLifecycle(self.retry_policy, deadline=deadline,
                                        stop_event=self.stop_event, sleep=self.sleep)
        seeder = self._seeder()

        report = FleetReport()
        start = self.clock()
        total_workers = self.db_count * self.threads_per_db

        try:
            with ThreadPoolExecutor(max_workers=total_workers, thread_name_prefix='worker') as pool:
                try:
                    futures = {}
                    for target in self.targets:
                        self.launcher.start_batch()
                        for i in range(self.threads_per_db):
                            worker = Worker(
                                worker_id=f"{target.name}-{i}",
                                session=WorkerSession(target, lifecycle),
                                catalog=catalog,
                                executor=executor,
                                metrics=self.metrics,
                                deadline=deadline,
                                sleep_after_query=self.sleep_after_query,
                                rng=random.Random(seeder.getrandbits(64)),
                                join_probe_max_id=join_probe_max_id,
                                stop_event=self.stop_event,
                                sleep=self.sleep
                            )
                            future = self.launcher.launch(pool.submit, worker.run)
                            futures[future] = worker.worker_id

                    logger.info(f"All {len(futures)} workers launched, "
                                f"{deadline.remaining():.1f}s left in the run")

                    for future in as_completed(futures):
                        try:
                            report.workers.append(future.result())
                        except Exception as e:
                            report.crashed += 1
                            logger.error(f"Worker {futures[future]} crashed: {e}", exc_info=True)
                except KeyboardInterrupt:
                    logger.warning("Interrupted, waiting for workers to stop")
                    self.stop()
                    raise
        finally:
            self.close()

        report.duration = self.clock() - start
        logger.info(f"Stop workload with {self.db_count} DB(s) x {self.threads_per_db} threads: "
                    f"{report.queries:,} queries, {report.failed:,} failed, "
                    f"{report.reconnects:,} reconnects in {report.duration:.2f}s")
        return report
