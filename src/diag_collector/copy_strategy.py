"""Destination layouts for files copied off cluster nodes.

Two layouts are supported::

    default                          healthcheck
    <base>/coordinators/<node>/log   <base>/log/<node>-C
    <base>/executors/<node>/conf     <base>/conf/<node>-E

Kubernetes pod names (``dremio-master-0``, ``dremio-executor-1`` ...) already
say which role they are, so the healthcheck layout does not suffix them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import PurePosixPath

COORDINATOR = "coordinator"
EXECUTOR = "executor"

_K8S_MARKERS = ("dremio-master", "dremio-executor", "dremio-coordinator")

STRATEGIES = ("default", "healthcheck")


def node_type(is_coordinator: bool) -> str:
    return COORDINATOR if is_coordinator else EXECUTOR


@dataclass(frozen=True)
class CopyStrategy:
    name: str
    base_dir: str

    def create_path(self, file_type: str, source: str, node: str) -> str:
        """Return the directory a ``file_type`` file from ``source`` is copied into."""
        if self.name == "healthcheck":
            if any(marker in source for marker in _K8S_MARKERS):
                leaf = source
            else:
                leaf = f"{source}-C" if node == COORDINATOR else f"{source}-E"
            return os.path.join(self.base_dir, file_type, leaf)
        group = "coordinators" if node == COORDINATOR else "executors"
        return os.path.join(self.base_dir, group, source, file_type)


def build_copy_strategy(name: str, base_dir: str) -> CopyStrategy:
    if name not in STRATEGIES:
        raise ValueError(f"unknown copy strategy {name!r}, expected one of {', '.join(STRATEGIES)}")
    return CopyStrategy(name=name, base_dir=base_dir)


@dataclass(frozen=True)
class NodeIdentity:
    host: str
    is_coordinator: bool
    # directory below which the remaining path is the file's own sub-path
    anchor: str | None = None


def resolve_node_identity(path: str, host: str, is_coordinator: bool) -> NodeIdentity:
    """Apply shared-filesystem topology correction to a discovered file.

    When a directory component of ``path`` is ``executor`` the file belongs
    to an executor named by the next directory component. A ``coordinator``
    component only switches the role; the single coordinator directory of a
    shared layout has no per-node children. Otherwise the host and role passed
    in are kept.
    """
    parts = PurePosixPath(path).parts[:-1]
    for index, part in enumerate(parts):
        if part == EXECUTOR:
            if index + 1 < len(parts):
                return NodeIdentity(
                    host=parts[index + 1],
                    is_coordinator=False,
                    anchor=str(PurePosixPath(*parts[: index + 2])),
                )
            return NodeIdentity(host=host, is_coordinator=False, anchor=str(PurePosixPath(*parts[: index + 1])))
        if part == COORDINATOR:
            return NodeIdentity(host=host, is_coordinator=True, anchor=str(PurePosixPath(*parts[: index + 1])))
    return NodeIdentity(host=host, is_coordinator=is_coordinator)
