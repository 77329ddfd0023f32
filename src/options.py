"""Command line option model for the master.

Parses argv into an immutable OptionSet. The only side effects are the
ones the flags themselves demand: --logdest opens its destination, and
the removed --parseonly flag exits the process immediately.
"""

import argparse
import enum
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import EXIT_FAILURE, get_version
from logdest import Destination, open_destination

HELP = """
confmaster-master -- The configuration master daemon
========

SYNOPSIS
--------
The central configuration server. Functions as a certificate authority
by default.


USAGE
-----
confmaster master [-D|--daemonize|--no-daemonize] [-d|--debug] [-h|--help]
  [-l|--logdest <file>|console|syslog] [-v|--verbose] [-V|--version]
  [--compile <node-name>] [--config <file>] [--configprint <names>]


DESCRIPTION
-----------
This command starts an instance of the master, running as a daemon and
serving catalogs, files, reports and certificates over HTTPS. The master
can also be hosted by a WSGI application server; when this is the case,
this executable is not used.


OPTIONS
-------
* --daemonize:
  Send the process into the background. This is the default.

* --no-daemonize:
  Do not send the process into the background.

* --debug:
  Enable full debugging.

* --help:
  Print this help message.

* --logdest:
  Where to send messages. Choose between syslog, the console, and a log
  file. Defaults to sending messages to syslog, or the console if
  debugging or verbosity is enabled.

* --verbose:
  Enable verbosity.

* --version:
  Print the version number and exit.

* --compile:
  Compile a catalog and output it in JSON. Uses facts cached in the
  yaml directory to compile the catalog.

* --config:
  Read settings from this file instead of /etc/confmaster/master.yaml.

* --configprint:
  Print the value of one or more settings (comma-separated, or 'all')
  and exit.


DIAGNOSTICS
-----------
When running as a standalone daemon, the master accepts the following
signals:

* SIGHUP:
  Restart the master server.
* SIGINT and SIGTERM:
  Shut down the master server.
* SIGUSR2:
  Close file descriptors for log files and reopen them. Used with logrotate.
"""

PARSEONLY_MESSAGE = (
    "--parseonly has been removed. "
    "Please use 'confmaster parser validate <manifest>'"
)


class InvalidOption(Exception):
    """Bad command line input."""


class ServiceMode(enum.Enum):
    COMPILE_ONCE = "compile"
    SERVE = "serve"


@dataclass(frozen=True)
class OptionSet:
    """Parsed command line options. Never mutated after parsing."""

    debug: bool = False
    verbose: bool = False
    embedded: bool = False
    target_client: Optional[str] = None
    log_destination: Optional[Destination] = None
    daemonize: Optional[bool] = None
    config_path: Optional[Path] = None
    configprint: tuple = ()

    @property
    def mode(self) -> ServiceMode:
        if self.target_client is not None:
            return ServiceMode.COMPILE_ONCE
        return ServiceMode.SERVE

    @property
    def level(self) -> Optional[int]:
        """Requested log level; debug wins over verbose."""
        if self.debug:
            return logging.DEBUG
        if self.verbose:
            return logging.INFO
        return None


class _ParseOnlyAction(argparse.Action):
    """Reject the removed --parseonly flag and exit at once."""

    def __call__(self, parser, namespace, values, option_string=None):
        print(PARSEONLY_MESSAGE)
        sys.exit(EXIT_FAILURE)


class _LogDestAction(argparse.Action):
    """Open a log destination; warn and continue if it cannot be opened."""

    def __call__(self, parser, namespace, values, option_string=None):
        try:
            setattr(namespace, self.dest, open_destination(values))
        except (ValueError, OSError) as e:
            print(f"Could not open log destination '{values}': {e}", file=sys.stderr)


class _HelpAction(argparse.Action):
    def __call__(self, parser, namespace, values, option_string=None):
        print(HELP)
        sys.exit(0)


class _OptionParser(argparse.ArgumentParser):
    def error(self, message):
        raise InvalidOption(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _OptionParser(prog="confmaster master", add_help=False, allow_abbrev=False)
    parser.add_argument("--help", "-h", action=_HelpAction, nargs=0)
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=get_version(),
    )
    parser.add_argument("--debug", "-d", action="store_true")
    parser.add_argument("--verbose", "-v", action="store_true")
    # Internal: set by the WSGI entry point only
    parser.add_argument("--rack", dest="embedded", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--compile", "-c", dest="target_client", metavar="NODE")
    parser.add_argument(
        "--logdest", "-l",
        dest="log_destination",
        action=_LogDestAction,
        metavar="DEST",
        default=None,
    )
    parser.add_argument("--daemonize", "-D", dest="daemonize", action="store_true", default=None)
    parser.add_argument("--no-daemonize", dest="daemonize", action="store_false")
    parser.add_argument("--config", dest="config_path", type=Path)
    parser.add_argument("--configprint", default="")
    parser.add_argument("--parseonly", action=_ParseOnlyAction, nargs=0, help=argparse.SUPPRESS)
    return parser


def parse_options(argv: list[str]) -> OptionSet:
    """Parse command line arguments.

    Args:
        argv: Arguments after the program name

    Returns:
        Immutable OptionSet

    Raises:
        InvalidOption: On unknown flags or missing values
        SystemExit: For --help, --version and --parseonly
    """
    args = _build_parser().parse_args(argv)

    if args.target_client is not None and not args.target_client.strip():
        raise InvalidOption("--compile requires a node name")

    configprint = tuple(
        name.strip() for name in args.configprint.split(",") if name.strip()
    )

    return OptionSet(
        debug=args.debug,
        verbose=args.verbose,
        embedded=args.embedded,
        target_client=args.target_client,
        log_destination=args.log_destination,
        daemonize=args.daemonize,
        config_path=args.config_path,
        configprint=configprint,
    )
