from __future__ import annotations

import pytest

from conftest import FakeCollector, FakeHost
from diag_collector.exceptions import GCLogResolutionError
from diag_collector.gclog import GCLogLocation, parse_gc_log_from_flags, parse_pid, resolve_gc_log_location


class TestParseGcLogFromFlags:
    def test_legacy_directive(self) -> None:
        location = parse_gc_log_from_flags("java -Xms1g -Xloggc:/var/log/dremio/server.gc -cp x")
        assert location == GCLogLocation(directory="/var/log/dremio", pattern="*server.gc*")

    def test_unified_directive(self) -> None:
        location = parse_gc_log_from_flags("java -Xlog:gc*:file=/opt/dremio/logs/gc.log:time,uptime:filecount=5")
        assert location == GCLogLocation(directory="/opt/dremio/logs", pattern="*gc.log*")

    def test_last_directive_wins(self) -> None:
        flags = "java -Xloggc:/tmp/old/gc.log -Xlog:gc*:file=/var/log/dremio/gc.log -Xloggc:/var/log/new/server.gc"
        location = parse_gc_log_from_flags(flags)
        assert location is not None
        assert location.directory == "/var/log/new"
        assert location.pattern == "*server.gc*"

    def test_repeated_legacy_directive(self) -> None:
        location = parse_gc_log_from_flags("-Xloggc:/a/gc.log -Xloggc:/b/gc.log")
        assert location == GCLogLocation(directory="/b", pattern="*gc.log*")

    def test_unified_directive_without_file_is_ignored(self) -> None:
        flags = "java -Xloggc:/var/log/dremio/gc.log -Xlog:gc*:stdout"
        location = parse_gc_log_from_flags(flags)
        assert location is not None
        assert location.directory == "/var/log/dremio"

    def test_time_and_pid_tokens_become_wildcards(self) -> None:
        location = parse_gc_log_from_flags("-Xlog:gc:file=/var/log/dremio/gc-%t-%p.log")
        assert location is not None
        assert location.pattern == "*gc-*-*.log*"

    def test_no_directive(self) -> None:
        assert parse_gc_log_from_flags("java -Xmx4g -cp /opt/dremio/jars") is None


class TestParsePid:
    def test_finds_daemon(self) -> None:
        out = "9001 jdk.jcmd/sun.tools.jcmd.JCmd -l\n4242 com.dremio.dac.daemon.DremioDaemon\n"
        assert parse_pid(out) == 4242

    def test_custom_suffix(self) -> None:
        assert parse_pid("77 org.example.Server\n", "Server") == 77

    def test_missing_process(self) -> None:
        with pytest.raises(GCLogResolutionError) as excinfo:
            parse_pid("9001 jdk.jcmd/sun.tools.jcmd.JCmd -l\n")
        assert excinfo.value.code == "gc_log_unresolved"
        assert excinfo.value.context == {"suffix": "DremioDaemon"}

    def test_malformed_line(self) -> None:
        with pytest.raises(GCLogResolutionError, match="unexpected process line"):
            parse_pid("DremioDaemon\n")


class TestResolveGcLogLocation:
    def test_inspects_running_process(self, make_daemon_host) -> None:
        collector = FakeCollector({"node1": make_daemon_host(gc_flags="-Xloggc:/var/log/dremio/gc.log")})
        location = resolve_gc_log_location(collector, "node1", True)
        assert location == GCLogLocation(directory="/var/log/dremio", pattern="*gc.log*")
        assert collector.executed("ps") == [("ps", "-f", "4242")]

    def test_override_skips_process_inspection(self, make_daemon_host) -> None:
        collector = FakeCollector({"node1": make_daemon_host()})
        location = resolve_gc_log_location(collector, "node1", False, override="/data/gc/")
        assert location == GCLogLocation(directory="/data/gc", pattern="*")
        assert collector.commands == []

    def test_remote_failure_is_wrapped(self) -> None:
        collector = FakeCollector({"node1": FakeHost(jcmd_output=None)})
        with pytest.raises(GCLogResolutionError) as excinfo:
            resolve_gc_log_location(collector, "node1", False)
        assert excinfo.value.context == {"host": "node1"}
        assert "jcmd: command not found" in str(excinfo.value)

    def test_process_without_gc_flags(self, make_daemon_host) -> None:
        collector = FakeCollector({"node1": make_daemon_host(gc_flags="-Xmx4g")})
        with pytest.raises(GCLogResolutionError) as excinfo:
            resolve_gc_log_location(collector, "node1", True)
        assert excinfo.value.context == {"host": "node1", "pid": 4242}
