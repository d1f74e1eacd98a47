"""Per-host capture of configuration, server logs and GC logs.

Every file is classified exactly once as collected, failed or skipped.
Failures never abort the host: a failed copy becomes a :class:`FailedFile`
and a failed directory listing leaves that category empty.
"""

from __future__ import annotations

import fnmatch
import logging
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field

from diag_collector.copy_strategy import CopyStrategy, node_type, resolve_node_identity
from diag_collector.exceptions import CollectorError, FindError
from diag_collector.filesystem import Filesystem
from diag_collector.gclog import DEFAULT_PROCESS_SUFFIX, resolve_gc_log_location
from diag_collector.remote import Collector

CONF_CATEGORY = "conf"
LOG_CATEGORY = "log"
DEFAULT_FIND_MAX_DEPTH = 4


@dataclass(frozen=True)
class CapturedFile:
    path: str
    size: int


@dataclass(frozen=True)
class FailedFile:
    path: str
    error: str


@dataclass
class HostCaptureResult:
    collected: list[CapturedFile] = field(default_factory=list)
    failed: list[FailedFile] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def extend(self, other: HostCaptureResult) -> None:
        self.collected.extend(other.collected)
        self.failed.extend(other.failed)
        self.skipped.extend(other.skipped)


@dataclass(frozen=True)
class HostCaptureConfiguration:
    host: str
    is_coordinator: bool
    collector: Collector
    filesystem: Filesystem
    copy_strategy: CopyStrategy
    conf_dir: str
    log_dir: str
    gc_log_override: str = ""
    log_age_days: int = 0
    exclude_files: tuple[str, ...] = ()
    find_max_depth: int = DEFAULT_FIND_MAX_DEPTH
    size_limit_bytes: int = 0
    process_suffix: str = DEFAULT_PROCESS_SUFFIX
    logger: logging.Logger | None = field(default=None, compare=False, repr=False)

    @property
    def log(self) -> logging.Logger:
        return self.logger or logging.getLogger(__name__)


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    name = posixpath.basename(path)
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def find_files(conf: HostCaptureConfiguration, search_dir: str, *, filter_by_age: bool) -> list[str]:
    """List regular files under ``search_dir`` on the host.

    Raises:
        FindError: If the search base is a bare wildcard or the listing failed.
    """
    if search_dir.strip() == "*":
        raise FindError("wildcard search bases rejected", context={"host": conf.host, "search_dir": search_dir})
    args = ["find", search_dir, "-maxdepth", str(conf.find_max_depth), "-type", "f"]
    if filter_by_age and conf.log_age_days > 0:
        args += ["-mtime", f"-{conf.log_age_days}"]
    try:
        out = conf.collector.execute(conf.host, conf.is_coordinator, *args)
    except (CollectorError, OSError) as exc:
        raise FindError(
            f"file search failed due to error {exc}",
            context={"host": conf.host, "search_dir": search_dir},
        ) from exc
    return [line.strip() for line in out.splitlines() if line.strip()]


def _remote_size(conf: HostCaptureConfiguration, path: str) -> int | None:
    try:
        out = conf.collector.execute(conf.host, conf.is_coordinator, "stat", "-c", "%s", path)
        return int(out.strip())
    except (CollectorError, OSError, ValueError) as exc:
        conf.log.debug("host %s unable to read size of %s: %s", conf.host, path, exc)
        return None


def _relative_path(path: str, root: str) -> str:
    root = posixpath.normpath(root)
    norm = posixpath.normpath(path)
    if norm == root or not norm.startswith(root.rstrip("/") + "/"):
        return posixpath.basename(norm)
    return posixpath.relpath(norm, root)


def copy_files(
    conf: HostCaptureConfiguration,
    category: str,
    base_dir: str,
    files: Iterable[str],
) -> HostCaptureResult:
    result = HostCaptureResult()
    log = conf.log
    for source in files:
        if is_excluded(source, conf.exclude_files):
            log.info("host %s file %s was excluded from collection as requested", conf.host, source)
            result.skipped.append(source)
            continue
        if conf.size_limit_bytes > 0:
            size = _remote_size(conf, source)
            if size is not None and size > conf.size_limit_bytes:
                log.warning(
                    "host %s file %s is %d bytes, greater than the limit of %d, skipping collection",
                    conf.host,
                    source,
                    size,
                    conf.size_limit_bytes,
                )
                result.skipped.append(source)
                continue

        identity = resolve_node_identity(source, conf.host, conf.is_coordinator)
        dest_dir = conf.copy_strategy.create_path(category, identity.host, node_type(identity.is_coordinator))
        destination = posixpath.join(dest_dir, _relative_path(source, identity.anchor or base_dir))
        try:
            conf.filesystem.mkdirs(posixpath.dirname(destination))
            out = conf.collector.copy_from_host(conf.host, conf.is_coordinator, source, destination)
        except (CollectorError, OSError) as exc:
            log.error("unable to copy %s from host %s due to error %s", source, conf.host, exc)
            result.failed.append(FailedFile(path=destination, error=str(exc)))
            continue
        if out:
            log.debug("host %s copy output: %s", conf.host, out.strip())
        try:
            size = conf.filesystem.stat(destination)
        except OSError as exc:
            log.warning("cannot get file size for file %s due to error %s, storing size as 0", destination, exc)
            size = 0
        result.collected.append(CapturedFile(path=destination, size=size))
        log.info("host %s copied %s to %s", conf.host, source, destination)
    return result


def _find_or_empty(conf: HostCaptureConfiguration, search_dir: str, *, filter_by_age: bool, what: str) -> list[str]:
    try:
        return find_files(conf, search_dir, filter_by_age=filter_by_age)
    except FindError as exc:
        conf.log.error("host %s unable to find %s files in %s: %s", conf.host, what, search_dir, exc)
        return []


def capture_host(conf: HostCaptureConfiguration) -> HostCaptureResult:
    """Collect configuration, server logs and GC logs for one host."""
    result = HostCaptureResult()
    log = conf.log

    conf_files = _find_or_empty(conf, conf.conf_dir, filter_by_age=False, what="configuration")
    result.extend(copy_files(conf, CONF_CATEGORY, conf.conf_dir, conf_files))

    filter_logs = conf.log_age_days > 0
    log_files = _find_or_empty(conf, conf.log_dir, filter_by_age=filter_logs, what="log")
    log.info("host %s finished finding %d files to copy out of the log directory", conf.host, len(log_files))
    result.extend(copy_files(conf, LOG_CATEGORY, conf.log_dir, log_files))

    try:
        location = resolve_gc_log_location(
            conf.collector,
            conf.host,
            conf.is_coordinator,
            override=conf.gc_log_override,
            process_suffix=conf.process_suffix,
        )
    except CollectorError as exc:
        log.warning("host %s unable to find gc log location, skipping gc logs: %s", conf.host, exc)
        return result

    already_found = {posixpath.normpath(path) for path in log_files}
    gc_candidates = _find_or_empty(conf, location.directory, filter_by_age=filter_logs, what="gc log")
    gc_logs = [
        path
        for path in gc_candidates
        if fnmatch.fnmatchcase(posixpath.basename(path), location.pattern)
        and posixpath.normpath(path) not in already_found
    ]
    result.extend(copy_files(conf, LOG_CATEGORY, location.directory, gc_logs))
    return result
