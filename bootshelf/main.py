import argparse
import signal
import sys
from pathlib import Path

from bootshelf.__version__ import __version__
from bootshelf.config import settings
from bootshelf.domain import Command
from bootshelf.logging import LoggerFactory, setup_logging
from bootshelf.services.lifecycle import LifecycleController
from bootshelf.storage.exceptions import StorageError


EXIT_OK = 0
EXIT_ERROR = 1

EPILOG = "commands:\n" + "\n".join(f"  {command.usage}" for command in Command) + """

An image is named vendor/release. Images live on the data partition as
<store-root>/<vendor>/<release>/active, with the version replaced by the
last update kept as .../backup until it is reverted or cleaned.
"""


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(signal.Signals(signum).name)


def install_signal_handlers() -> None:
    """Turn SIGTERM and SIGHUP into KeyboardInterrupt so cleanup code runs."""
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, _raise_interrupt)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bootshelf",
        description="Manage bootable OS images on a removable drive",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("command", nargs="?", help="One of: " + ", ".join(c.value for c in Command))
    parser.add_argument("args", nargs="*", help="Command arguments")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exit_request:
        # argparse exits 2 on usage errors; --help and --version exit 0.
        if exit_request.code in (0, None):
            raise
        return EXIT_ERROR

    settings.load_settings()
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    install_signal_handlers()

    command_argv = [args.command, *args.args] if args.command else []
    controller = LifecycleController()
    try:
        for line in controller.run(command_argv):
            print(line)
    except StorageError as error:
        log.error(str(error))
        return EXIT_ERROR
    except OSError as error:
        log.error(f"I/O error: {error}")
        return EXIT_ERROR
    except KeyboardInterrupt as error:
        reason = str(error) or "SIGINT"
        log.error(f"Interrupted ({reason})")
        return EXIT_ERROR
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
