"""Log destination selection and management.

Destinations:
- console: stderr (stdout is reserved for compiled catalogs)
- syslog: local syslog socket, UDP localhost if no socket exists
- file: any other value is treated as a log file path

Selection policy (select_destinations):
- --debug / --verbose raise the level (debug wins) and, unless the
  process daemonizes or runs embedded, add the console.
- Without an explicit destination, fall back to syslog.
"""

import logging
import sys
from dataclasses import dataclass, field
from logging.handlers import SysLogHandler
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
SYSLOG_FORMAT = "confmaster-master: [%(levelname)s] %(message)s"
SYSLOG_SOCKET = Path("/dev/log")

DEFAULT_LEVEL = logging.WARNING


@dataclass(frozen=True)
class Destination:
    """A log destination: kind is 'console', 'syslog' or 'file'."""

    kind: str
    target: str = ""

    def __str__(self) -> str:
        return self.target if self.kind == "file" else self.kind


CONSOLE = Destination("console")
SYSLOG = Destination("syslog")


def parse_destination(spec: str) -> Destination:
    """Map a --logdest value to a Destination.

    Raises:
        ValueError: If the value is empty
    """
    spec = spec.strip()
    if not spec:
        raise ValueError("Empty log destination")
    if spec in ("console", "syslog"):
        return Destination(spec)
    return Destination("file", str(Path(spec).expanduser()))


def open_destination(spec: str) -> Destination:
    """Parse and verify that a destination can be written to.

    File destinations get their parent directory created and are opened
    once for append.

    Raises:
        ValueError: Invalid destination value
        OSError: File cannot be created or opened
    """
    dest = parse_destination(spec)
    if dest.kind == "file":
        path = Path(dest.target)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8"):
            pass
    return dest


@dataclass
class LogPlan:
    """Level and destinations chosen for this process."""

    level: int = DEFAULT_LEVEL
    destinations: list = field(default_factory=list)


def select_destinations(options, daemonize: bool) -> LogPlan:
    """Choose log level and destinations from parsed options.

    Args:
        options: OptionSet from the option model
        daemonize: Whether the service will detach from the terminal

    Returns:
        LogPlan with at least one destination
    """
    plan = LogPlan()
    explicit = options.log_destination is not None
    if explicit:
        plan.destinations.append(options.log_destination)

    if options.debug or options.verbose:
        plan.level = logging.DEBUG if options.debug else logging.INFO
        if not (daemonize or options.embedded):
            if CONSOLE not in plan.destinations:
                plan.destinations.append(CONSOLE)
            explicit = True

    if not explicit:
        plan.destinations.append(SYSLOG)
    return plan


def _syslog_address():
    if SYSLOG_SOCKET.exists():
        return str(SYSLOG_SOCKET)
    return ("localhost", 514)


class LogManager:
    """Owns the root logger handlers for the process."""

    def __init__(self, root: logging.Logger | None = None):
        self.root = root or logging.getLogger()
        self.handlers: dict[Destination, logging.Handler] = {}

    def _create_handler(self, dest: Destination) -> logging.Handler:
        if dest.kind == "console":
            handler: logging.Handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        elif dest.kind == "syslog":
            handler = SysLogHandler(address=_syslog_address())
            handler.setFormatter(logging.Formatter(SYSLOG_FORMAT))
        else:
            handler = logging.FileHandler(dest.target, mode="a", encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        return handler

    def add(self, dest: Destination) -> logging.Handler:
        """Install a destination (no-op if already installed)."""
        if dest in self.handlers:
            return self.handlers[dest]
        handler = self._create_handler(dest)
        self.root.addHandler(handler)
        self.handlers[dest] = handler
        return handler

    def apply(self, plan: LogPlan):
        """Set the level and install every destination of the plan."""
        self.root.setLevel(plan.level)
        for dest in plan.destinations:
            self.add(dest)
        logger.debug("Logging to %s", ", ".join(str(d) for d in plan.destinations))

    def use_console(self):
        """Force console output (compile-once mode)."""
        self.add(CONSOLE)

    def reopen(self):
        """Close and reopen file destinations in place (log rotation)."""
        for dest, handler in self.handlers.items():
            if dest.kind != "file":
                continue
            stream = open(dest.target, "a", encoding="utf-8")
            old = handler.setStream(stream)
            if old is not None:
                old.close()
        logger.info("Reopened log files")

    def redirect_console(self, stream):
        """Point console handlers at a new stream (after daemonizing)."""
        for dest, handler in self.handlers.items():
            if dest.kind == "console":
                handler.setStream(stream)

    def close(self):
        """Remove and close every installed handler."""
        for handler in self.handlers.values():
            self.root.removeHandler(handler)
            handler.close()
        self.handlers.clear()
