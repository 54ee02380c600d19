"""
Metrics collection and export module using Prometheus client.
"""

import csv
import json
import logging
import random
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

from .queries import LookupResult, LookupStatus, classify_error

logger = logging.getLogger(__name__)
ERROR_TYPES = ("connection", "timeout_statement", "undefined_table", "other")
STATUSES = tuple(status.value for status in LookupStatus)


def percentile(sorted_values: list, p: float) -> float:
    """Linear-interpolated percentile of an already sorted list."""
    n = len(sorted_values)
    k = (n - 1) * p / 100
    f = int(k)
    c = f + 1 if (f + 1) < n else f
    if f == c:
        return sorted_values[f]
    return sorted_values[f] * (c - k) + sorted_values[c] * (k - f)


class MetricsCollector:
    """Collects and exports lookup latency and outcome metrics."""

    def __init__(self, config: dict, registry=REGISTRY):
        """
        Initialize metrics collector.

        Args:
            config: Metrics configuration dictionary
            registry: Prometheus registry to register the collectors in
        """
        self.config = config
        self.prometheus_port = config.get('prometheus_port')
        self.output_dir = Path(config.get('output_dir', 'results'))
        self.export_json = config.get('export_json', True)
        self.export_csv = config.get('export_csv', True)
        self.max_latency_samples = config.get('max_latency_samples', 100000)
        self.latency_buckets = config.get('latency_buckets',
                                          [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0])

        # Thread-safe storage, keyed by database name
        self.lock = threading.Lock()
        self._rng = random.Random()
        self.latency_samples = defaultdict(list)
        self.latency_total_counts = defaultdict(int)
        self.latency_sums = defaultdict(float)
        self.latency_mins = {}
        self.latency_maxs = {}
        self.status_counts = defaultdict(lambda: {status: 0 for status in STATUSES})
        self.error_type_counts = defaultdict(lambda: defaultdict(int))
        self.reconnect_counts = defaultdict(int)
        self.join_probe_counts = {'success': 0, 'error': 0}

        self._setup_prometheus_metrics(registry)
        self.http_server_started = False

    def _setup_prometheus_metrics(self, registry):
        """Setup Prometheus metrics."""
        self.latency_histogram = Histogram(
            'lookup_latency_seconds',
            'Point lookup latency in seconds',
            ['database'],
            buckets=self.latency_buckets,
            registry=registry
        )

        self.lookups_counter = Counter(
            'lookups_total',
            'Total number of point lookups',
            ['database', 'status'],
            registry=registry
        )

        self.errors_counter = Counter(
            'lookup_errors_total',
            'Failed point lookups by error type',
            ['database', 'error_type'],
            registry=registry
        )

        self.reconnects_counter = Counter(
            'reconnects_total',
            'Connections replaced after a failed lookup',
            ['database'],
            registry=registry
        )

        self.join_probes_counter = Counter(
            'join_probes_total',
            'Warm-up join probes',
            ['status'],
            registry=registry
        )

        self.active_workers_gauge = Gauge(
            'active_workers',
            'Number of running workers',
            registry=registry
        )

    def start_http_server(self):
        """Start HTTP server for Prometheus metrics endpoint."""
        if self.prometheus_port is None or self.http_server_started:
            return
        try:
            start_http_server(self.prometheus_port)
            self.http_server_started = True
            logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            logger.error(f"Failed to start metrics HTTP server: {e}")

    def record_lookup(self, database: str, result: LookupResult):
        """
        Record a single point lookup result.

        Args:
            database: Database the lookup ran against
            result: Outcome returned by the query executor
        """
        status = result.status.value
        latency = result.latency
        error_type = classify_error(result.error) if result.failed else None

        self.latency_histogram.labels(database=database).observe(latency)
        self.lookups_counter.labels(database=database, status=status).inc()
        if error_type is not None:
            self.errors_counter.labels(database=database, error_type=error_type).inc()

        with self.lock:
            self.status_counts[database][status] += 1
            self.latency_total_counts[database] += 1
            self.latency_sums[database] += latency
            current_min = self.latency_mins.get(database)
            current_max = self.latency_maxs.get(database)
            self.latency_mins[database] = latency if current_min is None else min(current_min, latency)
            self.latency_maxs[database] = latency if current_max is None else max(current_max, latency)

            # Reservoir sample: at most max_latency_samples per database
            samples = self.latency_samples[database]
            if not self.max_latency_samples or len(samples) < self.max_latency_samples:
                samples.append(latency)
            else:
                j = self._rng.randint(1, self.latency_total_counts[database])
                if j <= self.max_latency_samples:
                    samples[j - 1] = latency

            if error_type is not None:
                self.error_type_counts[database][error_type] += 1

    def record_reconnect(self, database: str):
        self.reconnects_counter.labels(database=database).inc()
        with self.lock:
            self.reconnect_counts[database] += 1

    def record_join_probe(self, success: bool):
        status = 'success' if success else 'error'
        self.join_probes_counter.labels(status=status).inc()
        with self.lock:
            self.join_probe_counts[status] += 1

    def worker_started(self):
        self.active_workers_gauge.inc()

    def worker_stopped(self):
        self.active_workers_gauge.dec()

    def get_summary_statistics(self) -> dict:
        """
        Calculate summary statistics from collected data.

        Returns:
            Dictionary with summary statistics per database
        """
        with self.lock:
            summary = {}

            for database, total_count in self.latency_total_counts.items():
                samples = self.latency_samples.get(database)
                if not total_count or not samples:
                    continue

                sorted_latencies = sorted(samples)
                counts = self.status_counts[database]
                error_types = self.error_type_counts.get(database, {})

                summary[database] = {
                    'count': total_count,
                    'found': counts['found'],
                    'not_found': counts['not_found'],
                    'failed': counts['failed'],
                    'reconnects': self.reconnect_counts.get(database, 0),
                    'min_latency_ms': self.latency_mins[database] * 1000,
                    'max_latency_ms': self.latency_maxs[database] * 1000,
                    'mean_latency_ms': (self.latency_sums[database] / total_count) * 1000,
                    'p50_latency_ms': percentile(sorted_latencies, 50) * 1000,
                    'p95_latency_ms': percentile(sorted_latencies, 95) * 1000,
                    'p99_latency_ms': percentile(sorted_latencies, 99) * 1000,
                    'errors_by_type': {
                        error_type: error_types.get(error_type, 0)
                        for error_type in ERROR_TYPES
                    },
                }

            return summary

    def export_results(self, run_config: dict, duration: float,
                       base_filename: Optional[str] = None) -> dict:
        """
        Export results to JSON and CSV files.

        Args:
            run_config: Full run configuration
            duration: Run duration in seconds
            base_filename: Output file stem (default: derived from config and time)

        Returns:
            Summary statistics dictionary
        """
        summary = self.get_summary_statistics()

        for stats in summary.values():
            stats['ops_per_sec'] = stats['count'] / duration if duration > 0 else 0.0

        if not (self.export_json or self.export_csv):
            return summary

        self.output_dir.mkdir(parents=True, exist_ok=True)

        if base_filename is None:
            db_count = run_config.get('database', {}).get('db_count', 0)
            threads = run_config.get('workload', {}).get('threads_per_db', 0)
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            base_filename = f"shardload_db{db_count}_t{threads}_{timestamp}"

        total_ops = sum(s['count'] for s in summary.values())

        if self.export_json:
            json_file = self.output_dir / f"{base_filename}.json"
            result_data = {
                'config': run_config,
                'duration_seconds': duration,
                'summary': summary,
                'join_probes': dict(self.join_probe_counts),
                'total_operations': total_ops,
                'operations_per_second': total_ops / duration if duration > 0 else 0.0
            }

            with open(json_file, 'w') as f:
                json.dump(result_data, f, indent=2)

            logger.info(f"Results exported to {json_file}")

        if self.export_csv:
            summary_csv = self.output_dir / f"{base_filename}_summary.csv"
            with open(summary_csv, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow([
                    'database', 'count', 'found', 'not_found', 'failed', 'reconnects',
                    'min_ms', 'max_ms', 'mean_ms', 'p50_ms', 'p95_ms', 'p99_ms',
                    'ops_per_sec', *ERROR_TYPES
                ])

                for database, stats in sorted(summary.items()):
                    error_types = stats['errors_by_type']
                    writer.writerow([
                        database,
                        stats['count'],
                        stats['found'],
                        stats['not_found'],
                        stats['failed'],
                        stats['reconnects'],
                        f"{stats['min_latency_ms']:.3f}",
                        f"{stats['max_latency_ms']:.3f}",
                        f"{stats['mean_latency_ms']:.3f}",
                        f"{stats['p50_latency_ms']:.3f}",
                        f"{stats['p95_latency_ms']:.3f}",
                        f"{stats['p99_latency_ms']:.3f}",
                        f"{stats['ops_per_sec']:.3f}",
                        *(error_types[error_type] for error_type in ERROR_TYPES),
                    ])

            logger.info(f"Summary exported to {summary_csv}")

        return summary

    def print_summary(self, summary: dict, duration: float):
        """Print summary statistics to console."""
        print("\n" + "=" * 80)
        print("LOAD RUN SUMMARY")
        print("=" * 80)

        total_ops = sum(s['count'] for s in summary.values())
        total_failed = sum(s['failed'] for s in summary.values())
        total_reconnects = sum(s['reconnects'] for s in summary.values())
        throughput = total_ops / duration if duration > 0 else 0.0

        print(f"\nOverall:")
        print(f"  Duration: {duration:.2f} seconds")
        print(f"  Total Lookups: {total_ops:,}")
        print(f"  Failed: {total_failed:,}")
        print(f"  Reconnects: {total_reconnects:,}")
        print(f"  Throughput: {throughput:.2f} ops/sec")

        print("\nPer-Database Latency (milliseconds):")
        print(f"{'Database':<12} {'Count':>10} {'Failed':>8} {'Min':>8} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
        print("-" * 92)

        for database, stats in sorted(summary.items()):
            print(f"{database:<12} {stats['count']:>10,} {stats['failed']:>8,} "
                  f"{stats['min_latency_ms']:>8.2f} "
                  f"{stats['mean_latency_ms']:>8.2f} "
                  f"{stats['p50_latency_ms']:>8.2f} "
                  f"{stats['p95_latency_ms']:>8.2f} "
                  f"{stats['p99_latency_ms']:>8.2f} "
                  f"{stats['max_latency_ms']:>8.2f}")

        print("=" * 80 + "\n")
