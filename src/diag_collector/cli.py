#!/usr/bin/env python3
"""Command line entry point: ``diag-collector collect`` and ``diag-collector job-profiles``."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from diag_collector import fleet
from diag_collector.__version__ import __version__
from diag_collector.config import CollectConfig, load_config
from diag_collector.copy_strategy import STRATEGIES
from diag_collector.exceptions import CollectorError, ConfigValidationError
from diag_collector.job_profiles import ProfileDownloader, calculate_job_profile_settings, collect_job_profiles
from diag_collector.logging_config import add_logging_args, configure_logging
from diag_collector.queries import collect_query_records, find_query_files
from diag_collector.remote import LocalCollector
from diag_collector.shutdown import CancelToken, ShutdownCoordinator, install_signal_handlers, restore_signal_handlers

logger = logging.getLogger(__name__)

COMMAND_COLLECT = "collect"
COMMAND_JOB_PROFILES = "job-profiles"
EXIT_INTERRUPTED = 130


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="diag-collector", description="Cluster diagnostic collector.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    add_logging_args(parser)
    sub = parser.add_subparsers(dest="command")

    collect = sub.add_parser(COMMAND_COLLECT, help="Collect configuration, logs and GC logs from every node.")
    collect.add_argument("--config", type=Path, default=None, help="YAML configuration file.")
    collect.add_argument("-c", "--coordinator", default=None, help="Coordinator host selector.")
    collect.add_argument("-e", "--executors", default=None, help="Executor host selector.")
    collect.add_argument("-o", "--output", default=None, help="Archive path (.tar, .tgz, .tar.gz, .zip).")
    collect.add_argument("--conf-dir", default=None, help="Server configuration directory on each node.")
    collect.add_argument("--log-dir", default=None, help="Server log directory on each node.")
    collect.add_argument("--gc-log-override", default=None, help="GC log directory, skips process inspection.")
    collect.add_argument("--log-age", dest="log_age_days", type=int, default=None, help="Only logs modified in the last N days.")
    collect.add_argument(
        "--exclude",
        dest="exclude_files",
        action="append",
        default=None,
        help="Glob of file names to skip (repeatable).",
    )
    collect.add_argument("--copy-strategy", choices=STRATEGIES, default=None, help="Layout of the archive.")
    collect.add_argument("--find-max-depth", type=int, default=None, help="Directory depth searched on each node.")
    collect.add_argument("--size-limit-bytes", type=int, default=None, help="Skip files larger than this.")
    collect.add_argument("--work-dir", type=Path, default=None, help="Parent directory for staging files.")

    profiles = sub.add_parser(COMMAND_JOB_PROFILES, help="Download the most interesting job profiles.")
    profiles.add_argument("--config", type=Path, default=None, help="YAML configuration file.")
    profiles.add_argument("--endpoint", default=None, help="REST endpoint, e.g. http://localhost:9047.")
    profiles.add_argument("--queries-dir", default=None, help="Directory holding queries.json files.")
    profiles.add_argument("--output-dir", default=None, help="Where profile zips are written.")
    profiles.add_argument("--total", type=int, default=None, help="Total number of profiles to download.")
    profiles.add_argument("--slow-exec", type=int, default=None)
    profiles.add_argument("--slow-planning", type=int, default=None)
    profiles.add_argument("--high-cost", type=int, default=None)
    profiles.add_argument("--recent-errors", type=int, default=None)
    profiles.add_argument("--threads", type=int, default=None, help="Concurrent downloads.")
    return parser.parse_args(argv)


def _collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "coordinator",
        "executors",
        "output",
        "conf_dir",
        "log_dir",
        "gc_log_override",
        "log_age_days",
        "exclude_files",
        "copy_strategy",
        "find_max_depth",
        "size_limit_bytes",
    )
    return {key: getattr(args, key) for key in keys}


def _job_profile_overrides(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "endpoint",
        "queries_dir",
        "output_dir",
        "total",
        "slow_exec",
        "slow_planning",
        "high_cost",
        "recent_errors",
        "threads",
    )
    return {"job_profiles": {key: getattr(args, key) for key in keys}}


def _run_collect(args: argparse.Namespace, shutdown: ShutdownCoordinator) -> int:
    config = load_config(args.config, overrides=_collect_overrides(args))
    collector = LocalCollector(shutdown.token)
    summary = fleet.execute(
        collector,
        config.to_collection_args(work_dir=args.work_dir),
        shutdown=shutdown,
    )
    logger.info(
        "wrote %s: %d files from %d/%d nodes",
        config.output,
        len(summary.collected_files),
        summary.number_nodes_contacted,
        summary.total_nodes_attempted,
    )
    return 0


def run_job_profiles(config: CollectConfig, token: CancelToken | None = None) -> int:
    jp = config.job_profiles
    budget = calculate_job_profile_settings(
        jp.total,
        slow_exec=jp.slow_exec,
        slow_planning=jp.slow_planning,
        high_cost=jp.high_cost,
        recent_errors=jp.recent_errors,
        has_credentials=bool(config.access_token),
    )
    if budget.total == 0:
        logger.info("no job profiles requested, skipping")
        return 0
    if not jp.queries_dir:
        raise ConfigValidationError("job_profiles.queries_dir is required to select job profiles")
    files = find_query_files(Path(jp.queries_dir))
    if not files:
        logger.warning("no queries.json files found in %s, skipping job profiles", jp.queries_dir)
        return 0
    records = collect_query_records(files)
    downloader = ProfileDownloader(jp.endpoint, config.access_token, Path(jp.output_dir), cancel_token=token)
    result = collect_job_profiles(records, budget, downloader, threads=jp.threads, cancel_token=token)
    logger.info("downloaded %d of %d job profiles", result.collected - result.failed, result.tried)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(level=args.log_level, fmt=args.log_format)

    if not args.command:
        print(f"No command specified. Use '{COMMAND_COLLECT}' or '{COMMAND_JOB_PROFILES}'.", file=sys.stderr)
        return 1

    shutdown = ShutdownCoordinator()
    previous = install_signal_handlers(shutdown)
    try:
        if args.command == COMMAND_COLLECT:
            return _run_collect(args, shutdown)
        config = load_config(args.config, overrides=_job_profile_overrides(args))
        return run_job_profiles(config, shutdown.token)
    except CollectorError as exc:
        logger.error("%s", exc, extra=exc.as_log_fields())
        return 1
    except KeyboardInterrupt:
        logger.warning("interrupted")
        return EXIT_INTERRUPTED
    finally:
        shutdown.cleanup()
        restore_signal_handlers(previous)


if __name__ == "__main__":
    raise SystemExit(main())
