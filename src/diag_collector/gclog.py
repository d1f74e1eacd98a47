"""Locate GC logs from the startup flags of the running server process.

Both JVM directive families are understood::

    -Xloggc:/var/log/dremio/gc.log                      (JDK 8)
    -Xlog:gc*:file=/var/log/dremio/gc-%t.log:time       (JDK 9+)

The JVM applies flags left to right, so the last qualifying directive wins.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass

from diag_collector.exceptions import CollectorError, GCLogResolutionError
from diag_collector.remote import Collector

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_SUFFIX = "DremioDaemon"

_LEGACY_PREFIX = "-Xloggc:"
_UNIFIED_PREFIX = "-Xlog:"
_TOKEN_RE = re.compile(r"%[tpTP]")


@dataclass(frozen=True)
class GCLogLocation:
    directory: str
    pattern: str


def _unified_file(token: str) -> str | None:
    for option in token[len(_UNIFIED_PREFIX) :].split(":"):
        if option.startswith("file="):
            return option[len("file=") :].strip("\"'")
    return None


def _location_from_file(path: str) -> GCLogLocation:
    name = _TOKEN_RE.sub("*", posixpath.basename(path))
    pattern = re.sub(r"\*+", "*", f"*{name}*")
    return GCLogLocation(directory=posixpath.dirname(path) or ".", pattern=pattern)


def parse_gc_log_from_flags(startup_flags: str) -> GCLogLocation | None:
    """Return the GC log location named by the last directive, or None when absent."""
    last: str | None = None
    for token in startup_flags.split():
        if token.startswith(_LEGACY_PREFIX):
            value = token[len(_LEGACY_PREFIX) :].strip("\"'")
            if value:
                last = value
        elif token.startswith(_UNIFIED_PREFIX):
            value = _unified_file(token)
            if value:
                last = value
    if last is None:
        return None
    return _location_from_file(last)


def parse_pid(process_list: str, suffix: str = DEFAULT_PROCESS_SUFFIX) -> int:
    """Find the PID in ``jcmd -l`` output whose main class ends with ``suffix``."""
    for line in process_list.splitlines():
        line = line.strip()
        if not line.endswith(suffix):
            continue
        tokens = line.split()
        if len(tokens) < 2 or not tokens[0].isdigit():
            raise GCLogResolutionError(
                f"unexpected process line {line!r}, expected '<pid> <main class>'",
                context={"line": line},
            )
        return int(tokens[0])
    raise GCLogResolutionError(
        f"unable to find a process ending in {suffix!r}",
        context={"suffix": suffix},
    )


def resolve_gc_log_location(
    collector: Collector,
    host: str,
    is_coordinator: bool,
    *,
    override: str = "",
    process_suffix: str = DEFAULT_PROCESS_SUFFIX,
) -> GCLogLocation:
    """Resolve where ``host`` writes its GC logs.

    An explicit ``override`` directory short-circuits process inspection and
    matches every file in it.

    Raises:
        GCLogResolutionError: If no process or no GC log directive was found.
    """
    if override:
        return GCLogLocation(directory=override.rstrip("/") or "/", pattern="*")
    try:
        pid = parse_pid(collector.execute(host, is_coordinator, "jcmd", "-l"), process_suffix)
        flags = collector.execute(host, is_coordinator, "ps", "-f", str(pid))
    except GCLogResolutionError:
        raise
    except (CollectorError, OSError) as exc:
        raise GCLogResolutionError(
            f"unable to find gc logs due to error '{exc}'",
            context={"host": host},
        ) from exc
    location = parse_gc_log_from_flags(flags)
    if location is None:
        raise GCLogResolutionError(
            f"no -Xloggc or -Xlog file= flag found for pid {pid} on host {host}",
            context={"host": host, "pid": pid},
        )
    logger.debug("host %s gc logs at %s/%s", host, location.directory, location.pattern)
    return location
