"""
Tests for the spawned process entry point (python -m deadman.daemon).
"""

from unittest.mock import patch

import pytest

from deadman import daemon as daemon_module
from deadman.controller import WatchdogMode
from deadman.errors import RareConditionError

ARGV = ["control", "i-1234", "120", "--record-dir", "/tmp/deadman-test", "--profile", "lab"]


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("deadman.daemon.setup_logging"):
        yield


class TestDaemonMain:

    @patch("deadman.daemon.WatchdogDaemon")
    def test_exit_code_from_run(self, mock_daemon):
        mock_daemon.return_value.run.return_value = 2

        with pytest.raises(SystemExit) as exc:
            daemon_module.main(ARGV)

        assert exc.value.code == 2
        kwargs = mock_daemon.call_args[1]
        assert kwargs["mode"] is WatchdogMode.CONTROL
        assert kwargs["reset_timeout"] == 120
        assert kwargs["profile"] == "lab"
        mock_daemon.return_value.shutdown.install.assert_called_once_with()

    @patch("deadman.daemon.WatchdogDaemon")
    def test_rare_condition_exits_one(self, mock_daemon):
        mock_daemon.return_value.run.side_effect = RareConditionError("too many")

        with pytest.raises(SystemExit) as exc:
            daemon_module.main(ARGV)

        assert exc.value.code == 1

    @patch("deadman.daemon.WatchdogDaemon")
    def test_crash_exits_one(self, mock_daemon):
        mock_daemon.return_value.run.side_effect = RuntimeError("boom")

        with pytest.raises(SystemExit) as exc:
            daemon_module.main(ARGV)

        assert exc.value.code == 1

    def test_invalid_rules_exit_one(self):
        with pytest.raises(SystemExit) as exc:
            daemon_module.main(ARGV + ["--watch-timeout", "0"])

        assert exc.value.code == 1
