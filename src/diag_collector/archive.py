"""Deterministic packaging of collected files and safe bundle extraction.

The container format is chosen from the destination extension:

- ``.tar``: plain tar
- ``.tar.gz`` / ``.tgz``: tar, then gzip of the tar
- ``.zip``: deflated zip
- ``.gz``: a single gzip-compressed file (heap dumps and other large artifacts)

Entry names are the file path with the base directory stripped, so they keep
their leading ``/``. Entries are sorted by name and written with fixed
permissions, timestamps and ownership, so identical inputs give identical
bytes regardless of the order hosts finished in.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import stat
import tarfile
import zipfile
from collections.abc import Iterable
from pathlib import Path

from diag_collector.capture import CapturedFile
from diag_collector.exceptions import ArchiveError, PathTraversalError

logger = logging.getLogger(__name__)

ENTRY_MODE = 0o600
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_CHUNK = 1024 * 1024


def archive_entry_name(path: str, base_dir: str) -> str:
    base = os.path.normpath(base_dir).rstrip("/")
    norm = os.path.normpath(path)
    if not norm.startswith(base + "/"):
        raise ArchiveError(
            f"file {path} is not under archive base directory {base_dir}",
            context={"path": path, "base_dir": base_dir},
        )
    return norm[len(base) :]


def _regular_entries(base_dir: str, files: Iterable[CapturedFile]) -> list[tuple[str, str]]:
    entries: dict[str, str] = {}
    for collected in files:
        try:
            st = os.stat(collected.path)
        except OSError as exc:
            logger.warning("skipping %s, unable to stat it: %s", collected.path, exc)
            continue
        if not stat.S_ISREG(st.st_mode):
            continue
        entries[archive_entry_name(collected.path, base_dir)] = collected.path
    return sorted(entries.items())


def tar_files(dest: Path, base_dir: str, files: Iterable[CapturedFile]) -> int:
    """Write a plain tar of ``files``; returns the number of entries."""
    entries = _regular_entries(base_dir, files)
    with tarfile.open(dest, "w", format=tarfile.PAX_FORMAT) as tf:
        for name, source in entries:
            logger.debug("taring file %s", source)
            info = tarfile.TarInfo(name=name)
            info.size = os.stat(source).st_size
            info.mode = ENTRY_MODE
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            with open(source, "rb") as fh:
                tf.addfile(info, fh)
    return len(entries)


def zip_files(dest: Path, base_dir: str, files: Iterable[CapturedFile]) -> int:
    entries = _regular_entries(base_dir, files)
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, source in entries:
            logger.debug("zipping file %s", source)
            info = zipfile.ZipInfo(filename=name, date_time=ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (stat.S_IFREG | ENTRY_MODE) << 16
            with open(source, "rb") as src, zf.open(info, "w") as dst:
                shutil.copyfileobj(src, dst, _CHUNK)
    return len(entries)


def gzip_file(dest: Path, source: Path) -> None:
    """Gzip one file with no embedded name and a zero header mtime."""
    logger.debug("gzipping file %s into %s", source, dest)
    with open(source, "rb") as src, open(dest, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            shutil.copyfileobj(src, gz, _CHUNK)


def archive_files(output: Path, base_dir: str, files: list[CapturedFile]) -> Path:
    """Package ``files`` into ``output`` using the format its extension names.

    Raises:
        ArchiveError: For an unsupported extension, a file outside ``base_dir``,
            a ``.gz`` target without exactly one regular file, or an I/O failure.
    """
    name = output.name.lower()
    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        if name.endswith(".zip"):
            count = zip_files(output, base_dir, files)
        elif name.endswith(".tar.gz") or name.endswith(".tgz"):
            stem = output.name[: -len(".tar.gz")] if name.endswith(".tar.gz") else output.name[: -len(".tgz")]
            temp_tar = output.with_name(stem + ".tar")
            try:
                count = tar_files(temp_tar, base_dir, files)
                gzip_file(output, temp_tar)
            finally:
                temp_tar.unlink(missing_ok=True)
        elif name.endswith(".tar"):
            count = tar_files(output, base_dir, files)
        elif name.endswith(".gz"):
            regular = _regular_entries(base_dir, files)
            if len(regular) != 1:
                raise ArchiveError(
                    f"gzip output {output} takes exactly one file, got {len(regular)}",
                    context={"output": str(output), "files": len(regular)},
                )
            gzip_file(output, Path(regular[0][1]))
            count = 1
        else:
            raise ArchiveError(
                f"unsupported archive extension for {output}, use .tar, .tar.gz, .tgz, .zip or .gz",
                context={"output": str(output)},
            )
    except OSError as exc:
        raise ArchiveError(f"unable to write archive {output} due to error {exc}", context={"output": str(output)}) from exc
    logger.info("wrote %d files to %s", count, output)
    return output


def sanitize_archive_path(destination: str, entry: str) -> str:
    """Return where ``entry`` lands under ``destination``.

    Raises:
        PathTraversalError: If the entry resolves outside ``destination``.
    """
    root = os.path.normpath(os.path.abspath(destination))
    target = os.path.normpath(os.path.join(root, entry.lstrip("/")))
    if target != root and not target.startswith(root.rstrip("/") + "/"):
        raise PathTraversalError(
            f"content filepath is tainted: {entry}",
            entry=entry,
            destination=destination,
        )
    return target


def extract_tar_gz(archive_path: Path, dest_dir: Path) -> list[CapturedFile]:
    """Extract a gzip tar bundle into ``dest_dir`` after validating every entry.

    Nothing is written when any entry is unsafe.

    Raises:
        PathTraversalError: If an entry or link escapes ``dest_dir``.
        ArchiveError: For links, device files or unreadable bundles.
    """
    extracted: list[CapturedFile] = []
    try:
        with tarfile.open(archive_path, "r:gz") as tf:
            members = tf.getmembers()
            for member in members:
                sanitize_archive_path(str(dest_dir), member.name)
                if member.issym() or member.islnk() or member.isdev():
                    raise ArchiveError(
                        f"link or device entry not allowed: {member.name}",
                        context={"entry": member.name, "archive": str(archive_path)},
                    )
            for member in members:
                target = Path(sanitize_archive_path(str(dest_dir), member.name))
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                src = tf.extractfile(member)
                if src is None:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst, _CHUNK)
                os.chmod(target, ENTRY_MODE)
                extracted.append(CapturedFile(path=str(target), size=member.size))
    except (tarfile.TarError, OSError) as exc:
        raise ArchiveError(
            f"unable to extract {archive_path} due to error {exc}",
            context={"archive": str(archive_path)},
        ) from exc
    logger.info("TAR extraction complete: archive=%s files=%d", archive_path, len(extracted))
    return extracted


def extract_prestaged_bundles(output_root: Path, *, exclude: Iterable[str] = ()) -> list[CapturedFile]:
    """Extract and delete every ``*.tar.gz`` under ``output_root``.

    Paths in ``exclude`` (files collected verbatim from hosts) are left alone.
    A bundle that fails extraction is logged and kept out of the result; the
    remaining bundles are still processed.
    """
    skip = {os.path.normpath(p) for p in exclude}
    files: list[CapturedFile] = []
    for bundle in sorted(output_root.rglob("*.tar.gz")):
        if os.path.normpath(str(bundle)) in skip:
            continue
        try:
            files.extend(extract_tar_gz(bundle, output_root))
        except ArchiveError as exc:
            logger.error("unable to extract bundle %s: %s", bundle, exc, extra=exc.as_log_fields())
            continue
        bundle.unlink()
    return files
