# tests/engine/test_teardown.py
"""Tests for Teardown: idempotent, best-effort cleanup."""

from pathlib import Path

import pytest

from spire_harness.contracts.enums import ServiceName
from spire_harness.contracts.types import ProcessHandle, RunLayout
from spire_harness.engine.supervisor import write_pid_record
from spire_harness.engine.teardown import Teardown
from tests.engine.orchestrator_test_helpers import FakeSupervisor


def _populate(layout: RunLayout, server_pid: int = 100, agent_pid: int = 200) -> None:
    """Leave behind everything a run creates."""
    write_pid_record(layout.server_pid_file, server_pid)
    write_pid_record(layout.agent_pid_file, agent_pid)
    layout.token_file.write_text("tok\n")
    (layout.server_data_dir / "private").mkdir(parents=True)
    (layout.server_data_dir / "private" / "api.sock").touch()
    (layout.agent_data_dir / "public").mkdir(parents=True)
    layout.log_dir.mkdir(parents=True)
    layout.server_log.write_text("server output\n")
    layout.agent_log.write_text("agent output\n")


class TestTeardown:
    def test_stops_agent_then_server(self, layout: RunLayout) -> None:
        _populate(layout)
        supervisor = FakeSupervisor(alive={100, 200})

        report = Teardown(layout, supervisor).down()

        assert [(h.name, h.pid) for h in report.stopped] == [(ServiceName.AGENT, 200), (ServiceName.SERVER, 100)]
        assert report.clean

    def test_removes_markers_and_private_state(self, layout: RunLayout) -> None:
        _populate(layout)

        report = Teardown(layout, FakeSupervisor(alive={100, 200})).down()

        assert not layout.server_pid_file.exists()
        assert not layout.agent_pid_file.exists()
        assert not layout.token_file.exists()
        assert not layout.server_data_dir.exists()
        assert not layout.agent_data_dir.exists()
        assert layout.server_data_dir in report.removed

    def test_removes_service_logs(self, layout: RunLayout) -> None:
        _populate(layout)

        report = Teardown(layout, FakeSupervisor(alive={100, 200})).down()

        assert not layout.server_log.exists()
        assert not layout.agent_log.exists()
        assert not layout.log_dir.exists()
        assert layout.server_log in report.removed

    def test_log_directory_with_other_files_kept(self, layout: RunLayout) -> None:
        _populate(layout)
        (layout.log_dir / "tests.log").write_text("suite output\n")

        report = Teardown(layout, FakeSupervisor()).down()

        assert report.clean
        assert not layout.server_log.exists()
        assert sorted(p.name for p in layout.log_dir.iterdir()) == ["tests.log"]

    def test_logs_kept_when_disabled(self, layout: RunLayout) -> None:
        _populate(layout)

        Teardown(layout, FakeSupervisor(), remove_logs=False).down()

        assert layout.server_log.read_text() == "server output\n"
        assert layout.agent_log.exists()
        assert not layout.token_file.exists()

    def test_stray_markers_removed(self, layout: RunLayout) -> None:
        layout.state_dir.mkdir(parents=True)
        (layout.state_dir / "old.pid").write_text("1\n")
        (layout.state_dir / "stale.token").write_text("x\n")
        (layout.state_dir / ".server.pid.tmp").write_text("9\n")
        (layout.state_dir / "server.conf").write_text("keep me\n")

        Teardown(layout, FakeSupervisor()).down()

        assert sorted(p.name for p in layout.state_dir.iterdir()) == ["server.conf"]

    def test_nothing_to_do_is_clean(self, layout: RunLayout) -> None:
        supervisor = FakeSupervisor()

        report = Teardown(layout, supervisor).down()

        assert report.clean
        assert report.stopped == []
        assert report.removed == []

    def test_second_call_is_noop(self, layout: RunLayout) -> None:
        _populate(layout)
        teardown = Teardown(layout, FakeSupervisor(alive={100, 200}))

        teardown.down()
        second = teardown.down()

        assert second.clean
        assert second.stopped == []
        assert second.removed == []

    def test_already_exited_process_is_not_an_error(self, layout: RunLayout) -> None:
        _populate(layout)

        report = Teardown(layout, FakeSupervisor(alive=set())).down()

        assert report.clean
        assert report.stopped == []
        assert not layout.server_pid_file.exists()

    def test_tracked_and_recorded_handles_merged(self, layout: RunLayout) -> None:
        write_pid_record(layout.server_pid_file, 100)
        tracked = [ProcessHandle(name=ServiceName.SERVER, pid=100, log_path=None, pid_file=layout.server_pid_file)]
        supervisor = FakeSupervisor(alive={100})

        report = Teardown(layout, supervisor).down(tracked=tracked)

        assert [h.pid for h in report.stopped] == [100]

    def test_tracked_handle_without_record_still_stopped(self, layout: RunLayout) -> None:
        tracked = [ProcessHandle(name=ServiceName.AGENT, pid=300, log_path=None, pid_file=layout.agent_pid_file)]

        report = Teardown(layout, FakeSupervisor(alive={300})).down(tracked=tracked)

        assert [h.pid for h in report.stopped] == [300]

    def test_recover_handles(self, layout: RunLayout) -> None:
        _populate(layout)

        handles = Teardown(layout, FakeSupervisor()).recover_handles()

        assert [h.name for h in handles] == [ServiceName.AGENT, ServiceName.SERVER]


class TestFailureIsolation:
    """One failing step never stops the others and never raises."""

    def test_stop_failure_recorded_and_server_still_stopped(self, layout: RunLayout) -> None:
        _populate(layout)

        class AgentStopFails(FakeSupervisor):
            def stop(self, handle: ProcessHandle) -> bool:
                if handle.name == ServiceName.AGENT:
                    raise OSError("signal failed")
                return super().stop(handle)

        supervisor = AgentStopFails(alive={100, 200})

        report = Teardown(layout, supervisor).down()

        assert [h.pid for h in report.stopped] == [100]
        assert len(report.errors) == 1
        assert "stop agent" in report.errors[0]
        assert not layout.token_file.exists()

    def test_directory_removal_failure_recorded(self, layout: RunLayout) -> None:
        _populate(layout)

        def failing_rmtree(path: Path) -> None:
            raise PermissionError(13, "Permission denied", str(path))

        report = Teardown(layout, FakeSupervisor(alive={100, 200}), remove_tree=failing_rmtree).down()

        assert not report.clean
        assert len(report.errors) == 2
        assert len(report.stopped) == 2
        assert not layout.server_pid_file.exists()

    def test_unreadable_pid_record_skipped(self, layout: RunLayout) -> None:
        layout.state_dir.mkdir(parents=True)
        layout.server_pid_file.write_text("garbage")

        def recover_raises(name: ServiceName, pid_file: Path) -> ProcessHandle | None:
            raise ValueError("invalid literal for int()")

        supervisor = FakeSupervisor()
        supervisor.recover = recover_raises  # type: ignore[method-assign]

        report = Teardown(layout, supervisor).down()

        assert len(report.errors) == 2
        assert not layout.server_pid_file.exists()

    @pytest.mark.parametrize("attempts", [1, 3])
    def test_repeated_calls_never_raise(self, layout: RunLayout, attempts: int) -> None:
        _populate(layout)
        teardown = Teardown(layout, FakeSupervisor(alive={100, 200}))

        reports = [teardown.down() for _ in range(attempts)]

        assert sum(len(r.stopped) for r in reports) == 2
