"""Remote execution capability.

The capture engine only talks to hosts through the :class:`Collector`
protocol; transport backends (kubectl, ssh) plug in behind it. The
:class:`LocalCollector` backend runs everything on the current machine and is
what ``diag-collector collect`` uses.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from diag_collector.exceptions import DependencyMissingError, RemoteCommandError
from diag_collector.secrets import redact_args, redact_string
from diag_collector.shutdown import CancelToken
from diag_collector.utils import truncate

# how often a blocking command checks the cancel token
_POLL_SECONDS = 0.1


class Collector(Protocol):
    def execute(self, host: str, is_coordinator: bool, *args: str) -> str: ...

    def copy_from_host(self, host: str, is_coordinator: bool, source: str, destination: str) -> str: ...

    def find_hosts(self, selector: str) -> list[str]: ...


def run_cmd(
    cmd: list[str],
    *,
    cancel: CancelToken | None = None,
    cwd: Path | None = None,
    host: str = "localhost",
) -> str:
    """Run a command and return its combined stdout/stderr output.

    The process is polled so a cancelled token terminates it at the next poll.

    Raises:
        RemoteCommandError: If the command exits with a non-zero status.
        CancelledError: If ``cancel`` was set before or while the command ran.
        DependencyMissingError: If the executable is not installed.
    """
    if cancel is not None:
        cancel.raise_if_cancelled(f"command {cmd[0]}")
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except FileNotFoundError as exc:
        raise DependencyMissingError(
            f"host {host} has no '{cmd[0]}' executable on PATH",
            dependency=cmd[0],
        ) from exc
    while True:
        try:
            raw, _ = proc.communicate(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                proc.kill()
                proc.communicate()
                cancel.raise_if_cancelled(f"command {cmd[0]}")
    output = raw.decode("utf-8", errors="ignore")
    if proc.returncode != 0:
        shown = redact_string(" ".join(cmd))
        raise RemoteCommandError(
            f"host {host} command '{shown}' exited with status {proc.returncode}: {truncate(output.strip(), 500)}",
            host=host,
            args=redact_args(cmd),
            output=output,
            returncode=proc.returncode,
        )
    return output


def split_selector(selector: str) -> list[str]:
    """Split a comma separated host list, dropping blanks and duplicates."""
    hosts: list[str] = []
    for item in selector.split(","):
        host = item.strip()
        if host and host not in hosts:
            hosts.append(host)
    return hosts


class LocalCollector:
    """Collector backend for the machine the tool runs on.

    Every host name is treated as an alias for the local machine, so a
    selector such as ``localhost`` resolves to itself.
    """

    def __init__(self, cancel: CancelToken | None = None, *, logger: logging.Logger | None = None) -> None:
        self.cancel = cancel
        self.logger = logger or logging.getLogger(__name__)

    def execute(self, host: str, is_coordinator: bool, *args: str) -> str:
        self.logger.debug("host %s executing %s", host, redact_string(" ".join(args)))
        return run_cmd(list(args), cancel=self.cancel, host=host)

    def copy_from_host(self, host: str, is_coordinator: bool, source: str, destination: str) -> str:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled(f"copy of {source}")
        dest = Path(destination)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        return ""

    def find_hosts(self, selector: str) -> list[str]:
        return split_selector(selector)
