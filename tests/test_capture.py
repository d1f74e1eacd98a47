from __future__ import annotations

import logging
from typing import Any

import pytest

from conftest import FakeCollector, FakeHost
from diag_collector.capture import (
    CapturedFile,
    HostCaptureConfiguration,
    capture_host,
    copy_files,
    find_files,
    is_excluded,
)
from diag_collector.copy_strategy import build_copy_strategy
from diag_collector.exceptions import FindError
from diag_collector.filesystem import MemoryFilesystem

STAGE = "/stage"


def _conf(collector: FakeCollector, fs: MemoryFilesystem, host: str = "10.0.0.1", **overrides: Any) -> HostCaptureConfiguration:
    values: dict[str, Any] = {
        "host": host,
        "is_coordinator": True,
        "collector": collector,
        "filesystem": fs,
        "copy_strategy": build_copy_strategy("default", STAGE),
        "conf_dir": "/opt/dremio/conf",
        "log_dir": "/var/log/dremio",
    }
    values.update(overrides)
    return HostCaptureConfiguration(**values)


def test_is_excluded_matches_base_name_only() -> None:
    assert is_excluded("/var/log/dremio/server.tmp", ["*.tmp"])
    assert not is_excluded("/var/log/tmp.d/server.log", ["tmp*"])
    assert not is_excluded("/var/log/dremio/server.log", [])


class TestFindFiles:
    def test_bare_wildcard_rejected(self, memory_fs: MemoryFilesystem) -> None:
        collector = FakeCollector({"10.0.0.1": FakeHost()}, filesystem=memory_fs)
        with pytest.raises(FindError) as excinfo:
            find_files(_conf(collector, memory_fs), "*", filter_by_age=False)
        assert excinfo.value.code == "find_failed"
        assert collector.commands == []

    def test_age_filter_adds_mtime(self, memory_fs: MemoryFilesystem) -> None:
        collector = FakeCollector({"10.0.0.1": FakeHost()}, filesystem=memory_fs)
        find_files(_conf(collector, memory_fs, log_age_days=3, find_max_depth=2), "/var/log/dremio", filter_by_age=True)
        assert collector.executed("find") == [
            ("find", "/var/log/dremio", "-maxdepth", "2", "-type", "f", "-mtime", "-3"),
        ]

    def test_no_age_filter_for_configuration(self, memory_fs: MemoryFilesystem) -> None:
        collector = FakeCollector({"10.0.0.1": FakeHost()}, filesystem=memory_fs)
        find_files(_conf(collector, memory_fs, log_age_days=3), "/opt/dremio/conf", filter_by_age=False)
        assert "-mtime" not in collector.executed("find")[0]

    def test_listing_failure_is_wrapped(self, memory_fs: MemoryFilesystem) -> None:
        host = FakeHost(fail_find={"/var/log/dremio"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        with pytest.raises(FindError, match="Permission denied"):
            find_files(_conf(collector, memory_fs), "/var/log/dremio", filter_by_age=False)


class TestCopyFiles:
    def test_excluded_file_is_skipped_even_if_copy_would_succeed(self, memory_fs: MemoryFilesystem) -> None:
        host = FakeHost(files={"/var/log/dremio/a.log": b"a", "/var/log/dremio/b.tmp": b"b"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        conf = _conf(collector, memory_fs, exclude_files=("*.tmp",))

        result = copy_files(conf, "log", "/var/log/dremio", sorted(host.files))

        assert [f.path for f in result.collected] == ["/stage/coordinators/10.0.0.1/log/a.log"]
        assert result.skipped == ["/var/log/dremio/b.tmp"]
        assert result.failed == []
        assert all(source != "/var/log/dremio/b.tmp" for _, source, _ in collector.copies)

    def test_nested_path_is_preserved(self, memory_fs: MemoryFilesystem) -> None:
        host = FakeHost(files={"/var/log/dremio/archive/server.2024-01-01.log.gz": b"old"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        result = copy_files(_conf(collector, memory_fs), "log", "/var/log/dremio", list(host.files))
        assert result.collected == [
            CapturedFile(path="/stage/coordinators/10.0.0.1/log/archive/server.2024-01-01.log.gz", size=3)
        ]

    def test_failed_copy_is_recorded_and_host_continues(
        self, memory_fs: MemoryFilesystem, caplog: pytest.LogCaptureFixture
    ) -> None:
        host = FakeHost(
            files={"/var/log/dremio/a.log": b"a", "/var/log/dremio/b.log": b"bb"},
            fail_copy={"/var/log/dremio/a.log"},
        )
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        with caplog.at_level(logging.ERROR):
            result = copy_files(_conf(collector, memory_fs), "log", "/var/log/dremio", sorted(host.files))

        assert [f.path for f in result.failed] == ["/stage/coordinators/10.0.0.1/log/a.log"]
        assert "cannot open" in result.failed[0].error
        assert result.collected == [CapturedFile(path="/stage/coordinators/10.0.0.1/log/b.log", size=2)]
        assert "unable to copy /var/log/dremio/a.log" in caplog.text

    def test_size_limit_skips_large_files(self, memory_fs: MemoryFilesystem) -> None:
        host = FakeHost(files={"/var/log/dremio/big.log": b"x" * 100, "/var/log/dremio/small.log": b"x"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        result = copy_files(
            _conf(collector, memory_fs, size_limit_bytes=10), "log", "/var/log/dremio", sorted(host.files)
        )
        assert result.skipped == ["/var/log/dremio/big.log"]
        assert [f.size for f in result.collected] == [1]

    def test_shared_executor_directory_is_attributed_to_its_node(self, memory_fs: MemoryFilesystem) -> None:
        source = "/shared/logs/executor/exec-7/server.log"
        host = FakeHost(files={source: b"exec"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        result = copy_files(_conf(collector, memory_fs), "log", "/shared/logs", [source])
        assert [f.path for f in result.collected] == ["/stage/executors/exec-7/log/server.log"]

    def test_every_file_classified_once(self, memory_fs: MemoryFilesystem) -> None:
        files = {
            "/var/log/dremio/keep.log": b"1",
            "/var/log/dremio/drop.tmp": b"2",
            "/var/log/dremio/broken.log": b"3",
        }
        host = FakeHost(files=files, fail_copy={"/var/log/dremio/broken.log"})
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)
        result = copy_files(
            _conf(collector, memory_fs, exclude_files=("*.tmp",)), "log", "/var/log/dremio", sorted(files)
        )
        assert len(result.collected) + len(result.failed) + len(result.skipped) == len(files)


class TestCaptureHost:
    def test_collects_conf_logs_and_gc_logs(self, memory_fs: MemoryFilesystem, make_daemon_host) -> None:
        host = make_daemon_host(
            conf={"dremio.conf": b"conf", "dremio-env": b"env"},
            logs={"server.log": b"log"},
            gc_flags="-Xloggc:/var/log/gc/server.gc",
        )
        host.files["/var/log/gc/server.gc"] = b"gc"
        host.files["/var/log/gc/unrelated.txt"] = b"nope"
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)

        result = capture_host(_conf(collector, memory_fs))

        assert sorted(f.path for f in result.collected) == [
            "/stage/coordinators/10.0.0.1/conf/dremio-env",
            "/stage/coordinators/10.0.0.1/conf/dremio.conf",
            "/stage/coordinators/10.0.0.1/log/server.gc",
            "/stage/coordinators/10.0.0.1/log/server.log",
        ]
        assert memory_fs.read_file("/stage/coordinators/10.0.0.1/log/server.gc") == b"gc"

    def test_gc_logs_in_log_dir_are_not_copied_twice(self, memory_fs: MemoryFilesystem, make_daemon_host) -> None:
        host = make_daemon_host(gc_flags="-Xloggc:/var/log/dremio//gc.log")
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)

        result = capture_host(_conf(collector, memory_fs))

        gc_copies = [source for _, source, _ in collector.copies if source.endswith("gc.log")]
        assert gc_copies == ["/var/log/dremio/gc.log"]
        assert len(result.collected) == 3

    def test_unresolvable_gc_logs_still_return_other_files(
        self, memory_fs: MemoryFilesystem, caplog: pytest.LogCaptureFixture
    ) -> None:
        host = FakeHost(files={"/var/log/dremio/server.log": b"log"}, jcmd_output=None)
        collector = FakeCollector({"10.0.0.2": host}, filesystem=memory_fs)
        with caplog.at_level(logging.WARNING):
            result = capture_host(_conf(collector, memory_fs, host="10.0.0.2", is_coordinator=False))

        assert [f.path for f in result.collected] == ["/stage/executors/10.0.0.2/log/server.log"]
        assert "unable to find gc log location" in caplog.text

    def test_failed_listing_leaves_category_empty(self, memory_fs: MemoryFilesystem, make_daemon_host) -> None:
        host = make_daemon_host()
        host.fail_find.add("/opt/dremio/conf")
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)

        result = capture_host(_conf(collector, memory_fs))

        assert sorted(f.path for f in result.collected) == [
            "/stage/coordinators/10.0.0.1/log/gc.log",
            "/stage/coordinators/10.0.0.1/log/server.log",
        ]
        assert result.failed == []

    def test_log_age_applies_to_logs_only(self, memory_fs: MemoryFilesystem, make_daemon_host) -> None:
        host = make_daemon_host(logs={"server.log": b"new", "server.1.log": b"old"})
        host.old_files = {"/var/log/dremio/server.1.log", "/opt/dremio/conf/dremio.conf"}
        collector = FakeCollector({"10.0.0.1": host}, filesystem=memory_fs)

        result = capture_host(_conf(collector, memory_fs, log_age_days=7, gc_log_override="/var/log/dremio"))

        assert sorted(f.path for f in result.collected) == [
            "/stage/coordinators/10.0.0.1/conf/dremio.conf",
            "/stage/coordinators/10.0.0.1/log/server.log",
        ]
