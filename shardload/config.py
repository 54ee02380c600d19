"""
Configuration management module.
"""

import argparse
import copy
import logging
from pathlib import Path
from typing import Optional

import yaml
from psycopg import ProgrammingError
from psycopg.conninfo import conninfo_to_dict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'database': {
        # Address prefix; the database name (test0001, ...) is appended per target
        'dsn': 'host=127.0.0.1 port=5432 user=postgres',
        'db_count': 10,
        'pool': {
            'min_size': 1,
            'max_size': None,  # defaults to threads_per_db
            'acquire_timeout_seconds': 5.0,
            'open_timeout_seconds': 30.0,
            'connect_timeout_seconds': 10,
        },
    },
    'tables': {
        'big_table_num': 67,
        'rows_per_big_table': 10000,
        'small_table_num': 334,
        'rows_per_small_table': 900,
        # e.g. 372 partitions * 900 rows each
        'small_partition_table_num': 3,
        'rows_per_small_partition_table': 334800,
    },
    'workload': {
        'threads_per_db': 17,
        'sleep_after_query_ms': 359,
        'duration_seconds': 600,
        'join_probe': True,
        'reconnect_delay_ms': 50,
        'max_reconnect_attempts': None,
        'worker_stagger_ms': 10,
        'database_stagger_ms': 50,
        'seed': None,
    },
    'metrics': {
        'prometheus_port': None,
        'output_dir': 'results',
        'export_json': True,
        'export_csv': True,
        'max_latency_samples': 100000,
        'latency_buckets': [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    },
}

# argparse dest -> (section, key)
CLI_OVERRIDES = {
    'db_num': ('database', 'db_count'),
    'dsn': ('database', 'dsn'),
    'big_table_num': ('tables', 'big_table_num'),
    'rows_per_big_table': ('tables', 'rows_per_big_table'),
    'small_table_num': ('tables', 'small_table_num'),
    'rows_per_small_table': ('tables', 'rows_per_small_table'),
    'small_partition_table_num': ('tables', 'small_partition_table_num'),
    'rows_per_small_partition_table': ('tables', 'rows_per_small_partition_table'),
    'threads_per_db': ('workload', 'threads_per_db'),
    'sleep_after_query_ms': ('workload', 'sleep_after_query_ms'),
    'testing_time_seconds': ('workload', 'duration_seconds'),
    'seed': ('workload', 'seed'),
    'prometheus_port': ('metrics', 'prometheus_port'),
    'output_dir': ('metrics', 'output_dir'),
}

JOIN_PROBE_TABLES = 4
JOIN_PROBE_MIN_ROWS = 101


def _check_type(name: str, default, value):
    """Reject a value whose type differs from the built-in default."""
    if default is None:
        # Optional integers: max_size, max_reconnect_attempts, seed, prometheus_port
        ok = value is None or (isinstance(value, int) and not isinstance(value, bool))
    elif isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, int) and not name.endswith(('_seconds', '_ms')):
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif isinstance(default, (int, float)):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        ok = isinstance(value, type(default))

    if not ok:
        raise ValueError(f"{name} has the wrong type, got: {value!r}")


def _merge(base: dict, override: dict, path: str = '') -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        name = f"{path}.{key}" if path else key
        if key not in base:
            raise ValueError(f"Unknown configuration key: {name}")

        default = base[key]
        if isinstance(default, dict):
            # An empty section (all children commented out) keeps the defaults
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ValueError(f"{name} must be a mapping, got: {value!r}")
            merged[key] = _merge(default, value, name)
        else:
            _check_type(name, default, value)
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file over the built-in defaults.

    Args:
        config_path: Path to YAML configuration file, None for defaults only

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        logger.info("No configuration file given, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_file, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration file must hold a mapping: {config_path}")

    unknown = set(loaded) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    logger.info("Configuration loaded successfully")
    return _merge(DEFAULT_CONFIG, loaded)


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Apply command-line flags that were given on top of the configuration."""
    for dest, (section, key) in CLI_OVERRIDES.items():
        value = getattr(args, dest, None)
        if value is not None:
            config[section][key] = value

    if getattr(args, 'skip_join_probe', False):
        config['workload']['join_probe'] = False

    return config


def validate_config(config: dict):
    """
    Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    database = config['database']
    tables = config['tables']
    workload = config['workload']

    if not database.get('dsn'):
        raise ValueError("database.dsn must be set")
    try:
        conninfo_to_dict(database['dsn'])
    except ProgrammingError as e:
        raise ValueError(f"database.dsn is not a valid connection string: {e}") from e
    if database['db_count'] < 1:
        raise ValueError(f"database.db_count must be >= 1, got: {database['db_count']}")
    if workload['threads_per_db'] < 1:
        raise ValueError(f"workload.threads_per_db must be >= 1, got: {workload['threads_per_db']}")
    if workload['duration_seconds'] <= 0:
        raise ValueError(f"workload.duration_seconds must be > 0, got: {workload['duration_seconds']}")

    for key in ('sleep_after_query_ms', 'reconnect_delay_ms', 'worker_stagger_ms', 'database_stagger_ms'):
        if workload[key] < 0:
            raise ValueError(f"workload.{key} must be >= 0, got: {workload[key]}")

    max_attempts = workload.get('max_reconnect_attempts')
    if max_attempts is not None and max_attempts < 1:
        raise ValueError(f"workload.max_reconnect_attempts must be >= 1 or null, got: {max_attempts}")

    groups = [
        ('big_table_num', 'rows_per_big_table'),
        ('small_table_num', 'rows_per_small_table'),
        ('small_partition_table_num', 'rows_per_small_partition_table'),
    ]
    for count_key, rows_key in groups:
        if tables[count_key] < 0:
            raise ValueError(f"tables.{count_key} must be >= 0, got: {tables[count_key]}")
        if tables[count_key] > 0 and tables[rows_key] < 1:
            raise ValueError(f"tables.{rows_key} must be >= 1, got: {tables[rows_key]}")

    if sum(tables[count_key] for count_key, _ in groups) == 0:
        raise ValueError("tables: at least one table is required")

    if workload.get('join_probe'):
        if tables['big_table_num'] < JOIN_PROBE_TABLES:
            raise ValueError(
                f"join probe needs {JOIN_PROBE_TABLES} big tables, got: {tables['big_table_num']} "
                f"(disable it with workload.join_probe: false)"
            )
        if tables['rows_per_big_table'] < JOIN_PROBE_MIN_ROWS:
            raise ValueError(
                f"join probe needs rows_per_big_table >= {JOIN_PROBE_MIN_ROWS}, "
                f"got: {tables['rows_per_big_table']}"
            )

    logger.info("Configuration validation passed")


def setup_logging(level: str = "INFO"):
    """
    Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_args(argv: Optional[list] = None):
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description='Sharded read-only load generator for PostgreSQL-compatible clusters'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to YAML configuration file (default: built-in defaults)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )

    parser.add_argument('--db-num', type=int, help='Number of databases (default: 10)')
    parser.add_argument('--dsn', type=str,
                        help='Connection string prefix; the database name is appended')
    parser.add_argument('--big-table-num', type=int, help='Number of big tables (default: 67)')
    parser.add_argument('--rows-per-big-table', type=int, help='Rows per big table (default: 10000)')
    parser.add_argument('--small-table-num', type=int, help='Number of small tables (default: 334)')
    parser.add_argument('--rows-per-small-table', type=int, help='Rows per small table (default: 900)')
    parser.add_argument('--small-partition-table-num', type=int,
                        help='Number of small partition tables (default: 3)')
    parser.add_argument('--rows-per-small-partition-table', '--rows-pre-small-partition-tables', type=int,
                        help='Rows per small partition table in total (default: 334800)')
    parser.add_argument('--threads-per-db', '--threads-pre-db', type=int,
                        help='Threads (long connections) per DB (default: 17)')
    parser.add_argument('--sleep-after-query-ms', type=int,
                        help='Sleep duration in ms after each query (default: 359)')
    parser.add_argument('--testing-time-seconds', type=int,
                        help='Testing time in seconds (default: 600)')
    parser.add_argument('--seed', type=int, help='Base seed for per-worker random generators')
    parser.add_argument('--prometheus-port', type=int, help='Expose Prometheus metrics on this port')
    parser.add_argument('--output-dir', type=str, help='Directory for result files')

    parser.add_argument(
        '--skip-join-probe',
        action='store_true',
        help='Skip the warm-up join probe'
    )

    return parser.parse_args(argv)
