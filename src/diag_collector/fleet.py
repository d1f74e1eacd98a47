"""Fleet-wide capture: one concurrent capture per host, merged into one archive."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from diag_collector.archive import archive_files, extract_prestaged_bundles
from diag_collector.capture import (
    DEFAULT_FIND_MAX_DEPTH,
    HostCaptureConfiguration,
    HostCaptureResult,
    capture_host,
)
from diag_collector.copy_strategy import COORDINATOR, EXECUTOR, build_copy_strategy
from diag_collector.exceptions import CollectorError, HostResolutionError
from diag_collector.filesystem import DIR_PERMS, Filesystem, RealFilesystem
from diag_collector.gclog import DEFAULT_PROCESS_SUFFIX
from diag_collector.logging_config import LogContext
from diag_collector.remote import Collector
from diag_collector.shutdown import ShutdownCoordinator
from diag_collector.summary import CollectionSummary, write_summary


@dataclass(frozen=True)
class CollectionArgs:
    coordinator: str
    executors: str
    output: Path
    conf_dir: str = "/opt/dremio/conf"
    log_dir: str = "/var/log/dremio"
    gc_log_override: str = ""
    log_age_days: int = 0
    exclude_files: tuple[str, ...] = ()
    copy_strategy: str = "default"
    find_max_depth: int = DEFAULT_FIND_MAX_DEPTH
    size_limit_bytes: int = 0
    process_suffix: str = DEFAULT_PROCESS_SUFFIX
    work_dir: Path | None = None


def resolve_hosts(collector: Collector, selector: str, role: str, *, required: bool) -> list[str]:
    """Resolve a host selector; an empty optional selector means no hosts of that role.

    Raises:
        HostResolutionError: If the lookup fails or a requested selector matches nothing.
    """
    if not selector.strip():
        if required:
            raise HostResolutionError(f"no {role} selector given", selector=selector, role=role)
        return []
    try:
        hosts = list(collector.find_hosts(selector))
    except (CollectorError, OSError) as exc:
        raise HostResolutionError(
            f"unable to find {role} hosts for {selector!r} due to error {exc}",
            selector=selector,
            role=role,
        ) from exc
    if not hosts:
        raise HostResolutionError(f"selector {selector!r} matched no {role} hosts", selector=selector, role=role)
    return hosts


def _remove_tree(path: str, logger: logging.Logger) -> None:
    if not os.path.exists(path):
        return
    logger.info("cleaning up temp directory %s", path)
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning("unable to remove %s due to error %s, it will need to be removed manually", path, exc)


def execute(
    collector: Collector,
    args: CollectionArgs,
    *,
    filesystem: Filesystem | None = None,
    shutdown: ShutdownCoordinator | None = None,
    logger: logging.Logger | None = None,
) -> CollectionSummary:
    """Capture every resolved host concurrently and write ``args.output``.

    Individual file and host failures end up in the summary; only host
    resolution and archive construction errors are raised.
    """
    log = logger or logging.getLogger(__name__)
    fs = filesystem or RealFilesystem()
    start = datetime.now(timezone.utc)

    coordinators = resolve_hosts(collector, args.coordinator, COORDINATOR, required=True)
    executors = resolve_hosts(collector, args.executors, EXECUTOR, required=False)
    log.info("found %d coordinators and %d executors", len(coordinators), len(executors))

    tmp_dir = tempfile.mkdtemp(prefix="diag-collector-", dir=str(args.work_dir) if args.work_dir else None)
    if shutdown is not None:
        shutdown.add(lambda: _remove_tree(tmp_dir, log), f"removing temp directory {tmp_dir}")
    try:
        staging = Path(tmp_dir) / time.strftime("%Y%m%d-%H%M%S-DDC", time.gmtime())
        fs.mkdirs(str(staging), DIR_PERMS)
        strategy = build_copy_strategy(args.copy_strategy, str(staging))

        merged = HostCaptureResult()
        lock = threading.Lock()
        contacted = 0

        def _capture(host: str, is_coordinator: bool) -> HostCaptureResult:
            role = COORDINATOR if is_coordinator else EXECUTOR
            with LogContext(host=host, role=role):
                conf = HostCaptureConfiguration(
                    host=host,
                    is_coordinator=is_coordinator,
                    collector=collector,
                    filesystem=fs,
                    copy_strategy=strategy,
                    conf_dir=args.conf_dir,
                    log_dir=args.log_dir,
                    gc_log_override=args.gc_log_override,
                    log_age_days=args.log_age_days,
                    exclude_files=tuple(args.exclude_files),
                    find_max_depth=args.find_max_depth,
                    size_limit_bytes=args.size_limit_bytes,
                    process_suffix=args.process_suffix,
                    logger=log,
                )
                return capture_host(conf)

        hosts = [(h, True) for h in coordinators] + [(h, False) for h in executors]
        with ThreadPoolExecutor(max_workers=max(1, len(hosts)), thread_name_prefix="diag-host") as pool:
            futures = {pool.submit(_capture, host, is_coord): host for host, is_coord in hosts}
            for future in as_completed(futures):
                host = futures[future]
                try:
                    result = future.result()
                except Exception:
                    log.exception("capture of host %s failed unexpectedly", host)
                    continue
                with lock:
                    merged.extend(result)
                    contacted += 1

        merged.collected.extend(
            extract_prestaged_bundles(staging, exclude=[f.path for f in merged.collected])
        )

        summary = CollectionSummary(
            start_time=start,
            end_time=datetime.now(timezone.utc),
            total_nodes_attempted=len(hosts),
            number_nodes_contacted=contacted,
            collected_files=list(merged.collected),
            failed_files=list(merged.failed),
            skipped_files=list(merged.skipped),
            coordinators=coordinators,
            executors=executors,
        )
        summary_file = write_summary(summary, staging)
        log.info(
            "collected %d files (%d bytes), %d failed, %d skipped",
            len(summary.collected_files),
            summary.total_bytes_collected,
            len(summary.failed_files),
            len(summary.skipped_files),
        )
        archive_files(args.output, tmp_dir, summary.collected_files + [summary_file])
        return summary
    finally:
        _remove_tree(tmp_dir, log)
