"""
Shared pytest fixtures for diag-collector tests.

Provides common fakes and fixtures for:
- Cluster hosts reachable through a scripted collector backend
- Historical query records
- Staging filesystems
"""

from __future__ import annotations

import json
import posixpath
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if SRC_ROOT.is_dir():
    sys.path.insert(0, str(SRC_ROOT))

from diag_collector.exceptions import RemoteCommandError  # noqa: E402
from diag_collector.filesystem import MemoryFilesystem  # noqa: E402
from diag_collector.queries import QueryRecord  # noqa: E402
from diag_collector.remote import split_selector  # noqa: E402


# =============================================================================
# Scripted collector backend
# =============================================================================


@dataclass
class FakeHost:
    """What one cluster node looks like to the capture engine."""

    files: dict[str, bytes] = field(default_factory=dict)
    # files older than any -mtime filter
    old_files: set[str] = field(default_factory=set)
    jcmd_output: str | None = None
    ps_output: str = ""
    fail_copy: set[str] = field(default_factory=set)
    fail_find: set[str] = field(default_factory=set)


class FakeCollector:
    """Collector backend that answers from in-memory host descriptions.

    Copies land in ``filesystem`` when one is given, otherwise on the real
    disk at the destination path.
    """

    def __init__(
        self,
        hosts: dict[str, FakeHost],
        *,
        filesystem: MemoryFilesystem | None = None,
        unresolvable: bool = False,
    ) -> None:
        self.hosts = hosts
        self.filesystem = filesystem
        self.unresolvable = unresolvable
        self.commands: list[tuple[str, bool, tuple[str, ...]]] = []
        self.copies: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def _fail(self, host: str, args: tuple[str, ...], message: str) -> RemoteCommandError:
        return RemoteCommandError(message, host=host, args=list(args), output=message, returncode=1)

    def execute(self, host: str, is_coordinator: bool, *args: str) -> str:
        with self._lock:
            self.commands.append((host, is_coordinator, args))
        node = self.hosts[host]
        if args[0] == "find":
            search_dir = args[1].rstrip("/")
            if search_dir in node.fail_find:
                raise self._fail(host, args, f"find: '{search_dir}': Permission denied")
            recent_only = "-mtime" in args
            found = [
                path
                for path in sorted(node.files)
                if path.startswith(search_dir + "/") and not (recent_only and path in node.old_files)
            ]
            return "".join(f"{path}\n" for path in found)
        if args[0] == "jcmd":
            if node.jcmd_output is None:
                raise self._fail(host, args, "jcmd: command not found")
            return node.jcmd_output
        if args[0] == "ps":
            return node.ps_output
        if args[0] == "stat":
            return f"{len(node.files[args[-1]])}\n"
        raise self._fail(host, args, f"unexpected command {args[0]}")

    def copy_from_host(self, host: str, is_coordinator: bool, source: str, destination: str) -> str:
        node = self.hosts[host]
        if source in node.fail_copy:
            raise self._fail(host, ("cp", source, destination), f"cp: cannot open '{source}'")
        data = node.files[source]
        if self.filesystem is not None:
            self.filesystem.write_file(destination, data)
        else:
            target = Path(destination)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        with self._lock:
            self.copies.append((host, source, destination))
        return ""

    def find_hosts(self, selector: str) -> list[str]:
        if self.unresolvable:
            raise RemoteCommandError("no route to cluster", host="", args=["get", "hosts", selector])
        return [host for host in split_selector(selector) if host in self.hosts]

    def executed(self, command: str) -> list[tuple[str, ...]]:
        return [args for _, _, args in self.commands if args[0] == command]


def daemon_host(
    *,
    conf: dict[str, bytes] | None = None,
    logs: dict[str, bytes] | None = None,
    gc_flags: str = "-Xloggc:/var/log/dremio/gc.log",
) -> FakeHost:
    """A node running the server daemon with the usual directory layout."""
    files: dict[str, bytes] = {}
    for name, data in (conf or {"dremio.conf": b"paths.local: /data\n"}).items():
        files[posixpath.join("/opt/dremio/conf", name)] = data
    for name, data in (logs or {"server.log": b"started\n", "gc.log": b"gc pause\n"}).items():
        files[posixpath.join("/var/log/dremio", name)] = data
    return FakeHost(
        files=files,
        jcmd_output="4242 com.dremio.dac.daemon.DremioDaemon\n9001 jdk.jcmd/sun.tools.jcmd.JCmd -l\n",
        ps_output=f"UID PID PPID C STIME TTY TIME CMD\ndremio 4242 1 0 10:00 ? 00:01:00 java {gc_flags} -cp x\n",
    )


@pytest.fixture
def make_daemon_host() -> Callable[..., FakeHost]:
    return daemon_host


@pytest.fixture
def memory_fs() -> MemoryFilesystem:
    return MemoryFilesystem()


# =============================================================================
# Query record fixtures
# =============================================================================


@pytest.fixture
def query_records() -> list[QueryRecord]:
    """Twelve queries with distinct rankings under every criterion."""
    records = []
    for i in range(12):
        records.append(
            QueryRecord(
                query_id=f"q{i:02d}",
                outcome="FAILED" if i % 3 == 0 else "COMPLETED",
                query_cost=float((i * 7) % 12),
                execution_planning_time=float((i * 5) % 12),
                running_time=float(i),
                submitted_time=float(1_700_000_000 + i),
            )
        )
    return records


@pytest.fixture
def queries_jsonl_writer() -> Callable[[Path, list[dict[str, Any]]], None]:
    """Write queries.json style rows, one JSON object per line."""

    def _write(path: Path, rows: list[dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row) + "\n")

    return _write
