"""
Tests for the deadman command line.

Errors go to stderr with exit status 1; status output goes to stdout.
"""

from unittest.mock import patch

import pytest

from deadman.cli import main
from deadman.commands import WatchdogStatus
from deadman.errors import PreconditionError


@pytest.fixture(autouse=True)
def isolated_env(temp_dir, monkeypatch):
    monkeypatch.setenv("DEADMAN_RECORD_DIR", str(temp_dir / "records"))
    monkeypatch.setenv("DEADMAN_LOG_DIR", str(temp_dir / "logs"))
    monkeypatch.setenv("HOME", str(temp_dir))
    monkeypatch.delenv("DEADMAN_CONFIG", raising=False)
    monkeypatch.chdir(temp_dir)


class TestHelp:

    def test_help_command(self, capsys):
        assert main(["help"]) == 0
        out = capsys.readouterr().out
        assert "defuse" in out
        assert "WARNING" in out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: deadman" in capsys.readouterr().out


class TestArgumentErrors:

    def test_unknown_command(self, capsys):
        assert main(["explode", "i-1234"]) == 1
        assert "error:" in capsys.readouterr().err

    def test_non_integer_timeout(self, capsys):
        assert main(["own", "i-1234", "soon"]) == 1
        captured = capsys.readouterr()
        assert "usage:" in captured.err
        assert captured.out == ""

    def test_zero_timeout(self, capsys):
        assert main(["control", "i-1234", "0"]) == 1
        assert "positive integer" in capsys.readouterr().err

    def test_missing_resource(self, capsys):
        assert main(["reset"]) == 1


class TestRecordCommands:

    def test_reset_without_record_succeeds(self, capsys):
        assert main(["reset", "i-1234"]) == 0
        assert capsys.readouterr().out == ""

    def test_done_without_record_fails(self, capsys):
        assert main(["done", "i-1234"]) == 1
        captured = capsys.readouterr()
        assert "No watchdog record" in captured.err
        assert captured.out == ""

    def test_detonate_then_done(self, temp_dir):
        from deadman.record import RecordStore

        store = RecordStore(temp_dir / "records")
        store.create("i-1234", 5150)

        assert main(["detonate", "i-1234"]) == 0
        assert store.read("i-1234").last_reset_time == 0.0

        assert main(["done", "i-1234"]) == 0
        assert not store.exists("i-1234")

    def test_record_dir_option(self, temp_dir):
        from deadman.record import RecordStore

        store = RecordStore(temp_dir / "elsewhere")
        store.create("i-1234", 5150)

        assert main(["--record-dir", str(temp_dir / "elsewhere"), "done", "i-1234"]) == 0
        assert not store.exists("i-1234")


class TestArmAndStatus:

    @patch("deadman.cli.WatchdogCommands")
    def test_arm_prints_pid(self, mock_commands, capsys):
        mock_commands.return_value.arm.return_value = 5150

        assert main(["control", "i-1234", "120", "--profile", "lab"]) == 0

        assert capsys.readouterr().out.strip() == "5150"
        args = mock_commands.return_value.arm.call_args[0]
        assert args[1:] == ("i-1234", 120, "lab")

    @patch("deadman.cli.WatchdogCommands")
    def test_status_lists_all(self, mock_commands, capsys):
        mock_commands.return_value.list_status.return_value = [
            WatchdogStatus(resource_id="i-1", pid=1, alive=True, mode="own", seconds_since_reset=5.0),
        ]

        assert main(["status"]) == 0
        assert capsys.readouterr().out == "i-1 own pid=1 alive last-reset=5s-ago\n"

    @patch("deadman.cli.WatchdogCommands")
    def test_status_dead_process_fails(self, mock_commands, capsys):
        mock_commands.return_value.status.side_effect = PreconditionError("No watchdog process for 'i-1'")

        assert main(["status", "i-1"]) == 1
        captured = capsys.readouterr()
        assert "No watchdog process" in captured.err
        assert captured.out == ""

    @patch("deadman.cli.WatchdogCommands")
    def test_defuse_warns_on_stderr(self, mock_commands, capsys):
        assert main(["defuse", "i-1234"]) == 0
        assert "warning" in capsys.readouterr().err
        mock_commands.return_value.defuse.assert_called_once_with("i-1234")


class TestConfigErrors:

    def test_missing_explicit_config(self, capsys, temp_dir):
        assert main(["--config", str(temp_dir / "nope.yaml"), "reset", "i-1234"]) == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_bad_log_level_in_config_is_usage_error(self, capsys, temp_dir):
        path = temp_dir / "deadman.yaml"
        path.write_text("log_level: chatty\n")

        assert main(["--config", str(path), "reset", "i-1234"]) == 1

        err = capsys.readouterr().err
        assert "usage:" in err
        assert "Invalid log_level 'chatty'" in err
