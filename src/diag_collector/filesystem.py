"""Filesystem capability used for staging collected files.

:class:`RealFilesystem` backs normal runs; :class:`MemoryFilesystem` lets the
capture engine be exercised in tests without touching disk.
"""

from __future__ import annotations

import errno
import os
import shutil
import threading
from pathlib import Path, PurePosixPath
from typing import Protocol

DIR_PERMS = 0o750
FILE_PERMS = 0o600


class Filesystem(Protocol):
    def stat(self, path: str) -> int: ...

    def write_file(self, path: str, data: bytes, perms: int = FILE_PERMS) -> None: ...

    def mkdirs(self, path: str, perms: int = DIR_PERMS) -> None: ...

    def remove_tree(self, path: str) -> None: ...


class RealFilesystem:
    def stat(self, path: str) -> int:
        return os.stat(path).st_size

    def write_file(self, path: str, data: bytes, perms: int = FILE_PERMS) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        os.chmod(target, perms)

    def mkdirs(self, path: str, perms: int = DIR_PERMS) -> None:
        Path(path).mkdir(mode=perms, parents=True, exist_ok=True)

    def remove_tree(self, path: str) -> None:
        shutil.rmtree(path, ignore_errors=False)


class MemoryFilesystem:
    """Thread-safe in-memory filesystem keyed by normalised POSIX path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.files: dict[str, bytes] = {}
        self.perms: dict[str, int] = {}
        self.dirs: set[str] = set()

    @staticmethod
    def _key(path: str) -> str:
        return str(PurePosixPath(os.path.normpath(path)))

    def stat(self, path: str) -> int:
        key = self._key(path)
        with self._lock:
            if key in self.files:
                return len(self.files[key])
            if key in self.dirs:
                return 0
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), path)

    def write_file(self, path: str, data: bytes, perms: int = FILE_PERMS) -> None:
        key = self._key(path)
        with self._lock:
            self.files[key] = bytes(data)
            self.perms[key] = perms
            self.dirs.update(str(parent) for parent in PurePosixPath(key).parents)

    def mkdirs(self, path: str, perms: int = DIR_PERMS) -> None:
        key = PurePosixPath(self._key(path))
        with self._lock:
            self.dirs.add(str(key))
            self.dirs.update(str(parent) for parent in key.parents)

    def remove_tree(self, path: str) -> None:
        prefix = self._key(path)
        with self._lock:
            for key in [k for k in self.files if k == prefix or k.startswith(prefix + "/")]:
                del self.files[key]
                self.perms.pop(key, None)
            self.dirs = {d for d in self.dirs if not (d == prefix or d.startswith(prefix + "/"))}

    def read_file(self, path: str) -> bytes:
        with self._lock:
            return self.files[self._key(path)]
