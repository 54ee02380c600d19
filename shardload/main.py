"""
Main entry point for the sharded read load generator.
"""

import logging
import sys

from .config import apply_overrides, load_config, parse_args, setup_logging, validate_config
from .database import StartupError
from .fleet import FleetOrchestrator
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)


def main(argv=None):
    """Main execution function."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    logger.info("=" * 80)
    logger.info("Sharded Read Load Generator")
    logger.info("=" * 80)

    try:
        config = apply_overrides(load_config(args.config), args)
        validate_config(config)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    db_config = config['database']
    tables_config = config['tables']
    workload_config = config['workload']

    logger.info(f"Run Configuration:")
    logger.info(f"  Databases: {db_config['db_count']} x {workload_config['threads_per_db']} threads")
    logger.info(f"  Tables: {tables_config['big_table_num']} big, "
                f"{tables_config['small_table_num']} small, "
                f"{tables_config['small_partition_table_num']} partitioned")
    logger.info(f"  Pacing: {workload_config['sleep_after_query_ms']} ms after each query")
    logger.info(f"  Duration: {workload_config['duration_seconds']}s")

    metrics = MetricsCollector(config['metrics'])
    metrics.start_http_server()

    try:
        report = FleetOrchestrator(config, metrics).run()
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Run interrupted by user")
        return 130

    if report.crashed:
        logger.warning(f"{report.crashed} worker(s) stopped on an unexpected error")

    summary = metrics.export_results(config, report.duration)
    metrics.print_summary(summary, report.duration)

    logger.info("=" * 80)
    logger.info("Load run completed")
    logger.info("=" * 80)
    return 0


if __name__ == '__main__':
    sys.exit(main())
