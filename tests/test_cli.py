"""Tests for mdview.cli.

Tests cover:
- serve: already running, stale cleanup messages, daemon start, errors
- stop: outcomes, not-running, deleted file
- list: empty, table, JSON
- view: foreground run, --no-open
- Legacy ``mdview FILE`` routing and --version
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

from typer.testing import CliRunner

from mdview import __version__
from mdview._types import DaemonErrorKind, DaemonizeResult, Instance, RegistryErrorKind, StopOutcome
from mdview.cli import _route_legacy_args, app
from mdview.daemon import DaemonError
from mdview.registry import RegistryError

runner = CliRunner()

# The CLI functions use lazy imports like:
#   from mdview import find_running, stop_instance
# So we patch on the mdview module itself.


def _instance(file_path, pid=12345, port=6914):
    return Instance(
        pid=pid,
        port=port,
        file_path=file_path,
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        log_file=file_path.with_suffix(".log"),
    )


class TestServeCommand:
    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["serve", str(tmp_path / "nope.md")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_directory_rejected(self, tmp_path):
        result = runner.invoke(app, ["serve", str(tmp_path)])
        assert result.exit_code == 1
        assert "not a file" in result.output

    def test_already_running(self, md_file):
        existing = _instance(md_file)
        with (
            patch("mdview.find_running", return_value=(existing, [])),
            patch("mdview.daemonize") as mock_daemonize,
        ):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 0
        assert "Already serving" in result.output
        assert "http://localhost:6914" in result.output
        assert "pid=12345" in result.output
        mock_daemonize.assert_not_called()

    def test_reports_stale_cleanup(self, md_file, tmp_path):
        stale = _instance(tmp_path / "old.md", pid=999)
        with (
            patch("mdview.find_running", return_value=(None, [stale])),
            patch("mdview.find_available_port", return_value=6920),
            patch("mdview.daemonize", return_value=DaemonizeResult.PARENT),
        ):
            result = runner.invoke(app, ["serve", str(md_file), "--no-open"])
        assert result.exit_code == 0
        assert "Cleaned up stale instance" in result.output
        assert "old.md" in result.output

    def test_parent_prints_url_and_log(self, md_file, data_dir):
        with (
            patch("mdview.find_running", return_value=(None, [])),
            patch("mdview.find_available_port", return_value=6920),
            patch("mdview.daemonize", return_value=DaemonizeResult.PARENT) as mock_daemonize,
            patch("mdview.run_daemon") as mock_run,
            patch("mdview.open_browser") as mock_browser,
            patch("mdview.cli.time.sleep"),
        ):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 0
        assert "http://localhost:6920" in result.output
        assert "README-6920.log" in result.output
        mock_daemonize.assert_called_once_with(data_dir / "logs" / "README-6920.log")
        mock_browser.assert_called_once_with("http://localhost:6920")
        mock_run.assert_not_called()

    def test_no_open(self, md_file):
        with (
            patch("mdview.find_running", return_value=(None, [])),
            patch("mdview.find_available_port", return_value=6920),
            patch("mdview.daemonize", return_value=DaemonizeResult.PARENT),
            patch("mdview.open_browser") as mock_browser,
        ):
            result = runner.invoke(app, ["serve", str(md_file), "--no-open"])
        assert result.exit_code == 0
        mock_browser.assert_not_called()

    def test_daemon_branch_runs_server(self, md_file, data_dir):
        with (
            patch("mdview.find_running", return_value=(None, [])),
            patch("mdview.find_available_port", return_value=6920),
            patch("mdview.daemonize", return_value=DaemonizeResult.DAEMON),
            patch("mdview.run_daemon") as mock_run,
            patch("mdview.open_browser") as mock_browser,
        ):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 0
        mock_run.assert_called_once_with(md_file, 6920, data_dir / "logs" / "README-6920.log")
        mock_browser.assert_not_called()

    def test_no_port(self, md_file):
        with (
            patch("mdview.find_running", return_value=(None, [])),
            patch("mdview.find_available_port", return_value=None),
        ):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 1
        assert "Could not find an available port" in result.output

    def test_daemonize_failure(self, md_file):
        err = DaemonError(DaemonErrorKind.FORK, OSError(11, "Resource temporarily unavailable"))
        with (
            patch("mdview.find_running", return_value=(None, [])),
            patch("mdview.find_available_port", return_value=6920),
            patch("mdview.daemonize", side_effect=err),
        ):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 1
        assert "fork failed" in result.output

    def test_registry_failure(self, md_file):
        err = RegistryError(RegistryErrorKind.LOCK_FAILED, "busy")
        with patch("mdview.find_running", side_effect=err):
            result = runner.invoke(app, ["serve", str(md_file)])
        assert result.exit_code == 1
        assert "Error loading state" in result.output


class TestStopCommand:
    def test_not_running(self, md_file):
        with patch("mdview.stop_instance", side_effect=LookupError("No running instance found")):
            result = runner.invoke(app, ["stop", str(md_file)])
        assert result.exit_code == 1
        assert "No running instance" in result.output

    def test_signalled(self, md_file):
        inst = _instance(md_file, pid=4242)
        with patch("mdview.stop_instance", return_value=(inst, StopOutcome.SIGNALLED)) as mock_stop:
            result = runner.invoke(app, ["stop", str(md_file)])
        assert result.exit_code == 0
        assert "Sent stop signal to mdview (pid=4242)" in result.output
        assert "Stopped serving" in result.output
        mock_stop.assert_called_once_with(md_file)

    def test_stale(self, md_file):
        inst = _instance(md_file, pid=4242)
        with patch("mdview.stop_instance", return_value=(inst, StopOutcome.STALE)):
            result = runner.invoke(app, ["stop", str(md_file)])
        assert result.exit_code == 0
        assert "not running (stale entry)" in result.output
        assert "Stopped serving" in result.output

    def test_failed_signal_still_removed(self, md_file):
        inst = _instance(md_file, pid=4242)
        with patch("mdview.stop_instance", return_value=(inst, StopOutcome.FAILED)):
            result = runner.invoke(app, ["stop", str(md_file)])
        assert result.exit_code == 0
        assert "Failed to stop process 4242" in result.output
        assert "Stopped serving" in result.output

    def test_deleted_file(self, md_file):
        inst = _instance(md_file)
        md_file.unlink()
        with patch("mdview.stop_instance", return_value=(inst, StopOutcome.STOPPED)) as mock_stop:
            result = runner.invoke(app, ["stop", str(md_file)])
        assert result.exit_code == 0
        mock_stop.assert_called_once_with(md_file)


class TestListCommand:
    def test_empty(self):
        with patch("mdview.list_instances", return_value=[]):
            result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No running mdview instances" in result.output

    def test_table(self, md_file):
        inst = _instance(md_file, pid=12345, port=6917)
        with (
            patch("mdview.list_instances", return_value=[inst]),
            patch("mdview.Registry.is_process_running", return_value=True),
        ):
            result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "PID" in result.output
        assert "12345" in result.output
        assert "6917" in result.output
        assert str(md_file) in result.output
        assert "(stale)" not in result.output

    def test_marks_stale(self, md_file):
        with (
            patch("mdview.list_instances", return_value=[_instance(md_file)]),
            patch("mdview.Registry.is_process_running", return_value=False),
        ):
            result = runner.invoke(app, ["list"])
        assert "(stale)" in result.output

    def test_json(self, md_file):
        inst = _instance(md_file)
        with patch("mdview.list_instances", return_value=[inst]):
            result = runner.invoke(app, ["list", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data == [inst.to_dict()]

    def test_out_of_range_pid_recovers(self, md_file, data_dir):
        entry = _instance(md_file).to_dict()
        entry["pid"] = 2**40
        data_dir.mkdir(parents=True)
        (data_dir / "instances.json").write_text(
            json.dumps({"version": 1, "instances": {entry["file_path"]: entry}})
        )
        result = runner.invoke(app, ["list"])
        assert result.exception is None
        assert result.exit_code == 0
        assert "No running mdview instances" in result.output
        assert (data_dir / "instances.json.bak").exists()

    def test_json_empty(self):
        with patch("mdview.list_instances", return_value=[]):
            result = runner.invoke(app, ["list", "--json"])
        assert json.loads(result.output) == []


class TestViewCommand:
    def test_runs_foreground(self, md_file):
        with (
            patch("mdview.find_available_port", return_value=6930),
            patch("mdview.configure_logging"),
            patch("mdview.run_foreground") as mock_run,
        ):
            result = runner.invoke(app, ["view", str(md_file)])
        assert result.exit_code == 0
        assert "http://localhost:6930" in result.output
        mock_run.assert_called_once_with(md_file, 6930, open_in_browser=True)

    def test_no_open(self, md_file):
        with (
            patch("mdview.find_available_port", return_value=6930),
            patch("mdview.configure_logging"),
            patch("mdview.run_foreground") as mock_run,
        ):
            runner.invoke(app, ["view", str(md_file), "--no-open"])
        mock_run.assert_called_once_with(md_file, 6930, open_in_browser=False)

    def test_server_error(self, md_file):
        with (
            patch("mdview.find_available_port", return_value=6930),
            patch("mdview.configure_logging"),
            patch("mdview.run_foreground", side_effect=OSError("Address already in use")),
        ):
            result = runner.invoke(app, ["view", str(md_file)])
        assert result.exit_code == 1
        assert "Address already in use" in result.output


class TestLegacyRouting:
    def test_bare_file_becomes_view(self):
        assert _route_legacy_args(["README.md"]) == ["view", "README.md"]
        assert _route_legacy_args(["README.md", "--no-open"]) == ["view", "README.md", "--no-open"]

    def test_subcommands_untouched(self):
        for args in (["serve", "a.md"], ["stop", "a.md"], ["list"], ["view", "a.md"]):
            assert _route_legacy_args(args) == args

    def test_options_untouched(self):
        assert _route_legacy_args(["--version"]) == ["--version"]
        assert _route_legacy_args([]) == []


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output
