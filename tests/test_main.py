"""Tests for the command-line entry point."""

import signal
from unittest.mock import patch

import pytest

from bootshelf import main
from bootshelf.__version__ import __version__
from bootshelf.logging import logger
from bootshelf.main import install_signal_handlers
from bootshelf.storage.exceptions import NotDeployedError


@pytest.fixture(autouse=True)
def cli_environment(tmp_path):
    """Keep logs in tmp_path and leave process signal handlers alone."""
    with patch("bootshelf.main.install_signal_handlers"), patch(
        "bootshelf.main.settings.load_settings"
    ):
        yield tmp_path / "logs"
    logger.remove()


@pytest.fixture
def controller():
    with patch("bootshelf.main.LifecycleController") as mock_class:
        yield mock_class.return_value


def run(argv, log_dir):
    return main.main(["--log-dir", str(log_dir), *argv])


class TestParser:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main.main(["--version"])
        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_help_lists_commands(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main.main(["--help"])
        assert excinfo.value.code == 0
        out = capsys.readouterr().out
        assert "deploy <device> <vendor/release> <path-or-url>" in out
        assert "list <device>" in out

    def test_unknown_option_exits_with_error_status(self, capsys):
        assert main.main(["--bogus", "list", "/dev/sdb"]) == main.EXIT_ERROR
        assert "unrecognized arguments: --bogus" in capsys.readouterr().err

    def test_flags(self):
        args = main.build_parser().parse_args(["-d", "deploy", "/dev/sdb", "a/b", "x.iso"])
        assert args.debug is True
        assert args.command == "deploy"
        assert args.args == ["/dev/sdb", "a/b", "x.iso"]


class TestMain:
    def test_list_prints_lines(self, controller, cli_environment, capsys):
        controller.run.return_value = ["acme/gadget", "acme/widget (backup)"]

        assert run(["list", "/dev/sdb"], cli_environment) == main.EXIT_OK

        controller.run.assert_called_once_with(["list", "/dev/sdb"])
        assert capsys.readouterr().out == "acme/gadget\nacme/widget (backup)\n"

    def test_no_command_is_passed_as_empty_argv(self, controller, cli_environment):
        controller.run.return_value = []
        run([], cli_environment)
        controller.run.assert_called_once_with([])

    def test_error_prints_one_line_and_exits_nonzero(self, controller, cli_environment, capsys):
        controller.run.side_effect = NotDeployedError("acme/widget")

        assert run(["revert", "/dev/sdb", "acme/widget"], cli_environment) == main.EXIT_ERROR

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == "ERROR: Image 'acme/widget' is not deployed\n"

    def test_os_error_prints_one_line(self, controller, cli_environment, capsys):
        controller.run.side_effect = OSError(30, "Read-only file system", "/tmp/bootshelf-x")

        assert run(["remove", "/dev/sdb", "acme/widget"], cli_environment) == main.EXIT_ERROR

        err = capsys.readouterr().err
        assert err.count("\n") == 1
        assert err.startswith("ERROR: I/O error: ")
        assert "Read-only file system" in err

    def test_interrupt(self, controller, cli_environment, capsys):
        controller.run.side_effect = KeyboardInterrupt("SIGTERM")

        assert run(["update", "/dev/sdb", "acme/widget"], cli_environment) == main.EXIT_ERROR
        assert "Interrupted (SIGTERM)" in capsys.readouterr().err

    def test_ctrl_c(self, controller, cli_environment, capsys):
        controller.run.side_effect = KeyboardInterrupt()

        assert run(["update", "/dev/sdb", "acme/widget"], cli_environment) == main.EXIT_ERROR
        assert "Interrupted (SIGINT)" in capsys.readouterr().err

    def test_writes_operation_log(self, controller, cli_environment):
        controller.run.side_effect = NotDeployedError("acme/widget")

        run(["clean", "/dev/sdb", "acme/widget"], cli_environment)
        logger.complete()

        assert "is not deployed" in (cli_environment / "operations.log").read_text()


class TestSignals:
    def test_raise_interrupt_names_signal(self):
        with pytest.raises(KeyboardInterrupt, match="SIGTERM"):
            main._raise_interrupt(signal.SIGTERM, None)

    def test_install_signal_handlers(self):
        with patch("bootshelf.main.signal.signal") as mock_signal:
            install_signal_handlers()

        installed = {c.args[0]: c.args[1] for c in mock_signal.call_args_list}
        assert installed == {
            signal.SIGTERM: main._raise_interrupt,
            signal.SIGHUP: main._raise_interrupt,
        }
