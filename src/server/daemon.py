"""Lifecycle controller for the native master daemon.

Owns daemonization, the PID file, and the signal-to-transition mapping:

    STARTING -> RUNNING -> RESTARTING -> RUNNING
                        -> SHUTTING_DOWN -> STOPPED

Signals (installed once RUNNING):
    SIGHUP           restart the listener
    SIGINT, SIGTERM  shut down
    SIGUSR2          reopen log files (no state change)

Signal handlers only queue a command; the main thread applies it, so a
transition never runs inside a request thread and always waits for
in-flight requests to drain.
"""

import enum
import logging
import os
import queue
import select
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from common import EXIT_FAILURE, EXIT_OK, SetupFailure

logger = logging.getLogger(__name__)

RESTART = "restart"
STOP = "stop"
REOPEN = "reopen"

SIGNAL_COMMANDS = {
    signal.SIGHUP: RESTART,
    signal.SIGINT: STOP,
    signal.SIGTERM: STOP,
    signal.SIGUSR2: REOPEN,
}

READY_TIMEOUT = 60.0
REBIND_ATTEMPTS = 3
REBIND_DELAY = 1.0


class LifecycleState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def read_pid(pid_file: Path) -> Optional[int]:
    """Read PID from file. Returns None if file doesn't exist or is invalid."""
    try:
        return int(pid_file.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


class Daemon:
    """Process-scoped lifecycle controller.

    Other components may read the current state through `state`; only
    this class changes it.
    """

    def __init__(self, argv=None, pid_file: Optional[Path] = None, log_manager=None):
        self.argv = list(argv or [])
        self.pid_file = Path(pid_file) if pid_file else None
        self.log_manager = log_manager
        self.transport = None
        self.exit_code = EXIT_OK
        self._state = LifecycleState.STARTING
        self._lock = threading.Lock()
        self._commands: queue.SimpleQueue = queue.SimpleQueue()
        self._ready_fd: Optional[int] = None

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    def _set_state(self, state: LifecycleState):
        with self._lock:
            previous, self._state = self._state, state
        logger.debug("Lifecycle: %s -> %s", previous.value, state.value)

    # Startup

    def trap_startup_cancel(self):
        """Make an interrupt during startup exit at once with status 0."""
        signal.signal(signal.SIGINT, self._cancel_startup)

    def _cancel_startup(self, signum, frame):
        print("Cancelling startup", file=sys.stderr)
        sys.exit(EXIT_OK)

    def daemonize(self):
        """Double-fork into the background.

        The launching process blocks until the daemon reports that its
        listener is up, then exits 0 (or 1 if startup failed).
        """
        read_fd, write_fd = os.pipe()

        # First fork
        pid = os.fork()
        if pid > 0:
            # Parent: wait for ready signal from daemon
            os.close(write_fd)
            sys.exit(self._parent_wait(read_fd))

        # Child 1: new session leader
        os.setsid()

        # Second fork
        pid = os.fork()
        if pid > 0:
            os._exit(0)

        # Daemon (Child 2)
        os.close(read_fd)
        os.chdir("/")
        os.umask(0o022)

        devnull = os.open(os.devnull, os.O_RDWR)
        for fd in (sys.stdin.fileno(), sys.stdout.fileno(), sys.stderr.fileno()):
            os.dup2(devnull, fd)
        os.close(devnull)

        self._ready_fd = write_fd
        logger.debug("Daemonized (PID %d)", os.getpid())

    def _parent_wait(self, read_fd: int, timeout: float = READY_TIMEOUT) -> int:
        """Parent waits for the daemon's ready signal.

        Returns:
            Exit code: 0 = daemon running, 1 = error.
        """
        # Reap first child
        os.wait()

        ready, _, _ = select.select([read_fd], [], [], timeout)
        if not ready:
            os.close(read_fd)
            print("Error: Timed out waiting for master to start", file=sys.stderr)
            return EXIT_FAILURE

        data = os.read(read_fd, 64).decode().strip()
        os.close(read_fd)

        if data != "ready":
            print(f"Error: Master failed to start: {data or 'no status'}", file=sys.stderr)
            return EXIT_FAILURE
        return EXIT_OK

    def _notify_parent(self, message: str):
        if self._ready_fd is None:
            return
        try:
            os.write(self._ready_fd, f"{message}\n".encode())
        finally:
            os.close(self._ready_fd)
            self._ready_fd = None

    # PID file

    def write_pid(self):
        """Record our PID, refusing to start over a live process.

        Raises:
            SetupFailure: If another live process owns the PID file
        """
        if self.pid_file is None:
            return
        existing = read_pid(self.pid_file)
        if existing and existing != os.getpid() and process_alive(existing):
            raise SetupFailure(
                f"Master already running (PID {existing}, {self.pid_file})", code="E306"
            )
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}\n")

    def remove_pid(self):
        """Remove the PID file if it is ours."""
        if self.pid_file is None:
            return
        if read_pid(self.pid_file) == os.getpid():
            self.pid_file.unlink(missing_ok=True)

    # Signals

    def _queue_signal(self, signum, frame):
        # Signal context: SimpleQueue.put is the only reentrant-safe put
        self._commands.put(SIGNAL_COMMANDS[signum])

    def trap_signals(self):
        for signum in SIGNAL_COMMANDS:
            signal.signal(signum, self._queue_signal)

    def request(self, command: str):
        """Queue a lifecycle command (restart, stop, reopen)."""
        self._commands.put(command)

    # Running

    def start(self, transport) -> int:
        """Start the transport and run until stopped.

        Returns:
            Process exit code

        Raises:
            SetupFailure: If the PID file or listener cannot be set up
        """
        if getattr(transport, "protocols", None) is not None:
            raise ValueError("Embedded transports are not run by the daemon")
        self.transport = transport
        try:
            self.write_pid()
            self.trap_signals()
            self.transport.start()
        except (SetupFailure, RuntimeError, OSError) as e:
            self._notify_parent("error")
            self.remove_pid()
            if isinstance(e, SetupFailure):
                raise
            raise SetupFailure(f"Could not start listener: {e}", code="E307") from e

        self._set_state(LifecycleState.RUNNING)
        self._notify_parent("ready")
        logger.info("Master running (PID %d)", os.getpid())
        return self.run()

    def run(self) -> int:
        """Apply queued commands until the daemon stops.

        An error escaping a transition still stops the listener and
        releases the PID file.
        """
        try:
            while self.state is not LifecycleState.STOPPED:
                try:
                    command = self._commands.get(timeout=1.0)
                except queue.Empty:
                    continue
                self.dispatch(command)
        finally:
            if self.state is not LifecycleState.STOPPED:
                logger.error("Lifecycle loop exited unexpectedly; shutting down")
                self.stop(exit_code=EXIT_FAILURE)
        return self.exit_code

    def dispatch(self, command: str):
        if command == RESTART:
            self.restart()
        elif command == STOP:
            self.stop()
        elif command == REOPEN:
            self.reopen_logs()
        else:
            logger.warning("Ignoring unknown lifecycle command: %s", command)

    def restart(self):
        """Drain and rebind the listener without leaving the process."""
        if self.state is not LifecycleState.RUNNING:
            logger.warning("Restart ignored in state %s", self.state.value)
            return
        self._set_state(LifecycleState.RESTARTING)
        logger.warning("Restarting master")
        self.transport.shutdown()

        for attempt in range(1, REBIND_ATTEMPTS + 1):
            try:
                self.transport.start()
                break
            except (RuntimeError, OSError) as e:
                logger.error("Rebind attempt %d/%d failed: %s", attempt, REBIND_ATTEMPTS, e)
                if attempt < REBIND_ATTEMPTS:
                    time.sleep(REBIND_DELAY)
        else:
            logger.error("Could not rebind listener; shutting down")
            self.stop(exit_code=EXIT_FAILURE)
            return

        self._set_state(LifecycleState.RUNNING)
        logger.info("Master restarted")

    def stop(self, exit_code: int = EXIT_OK):
        """Drain, release the PID file and stop."""
        if self.state in (LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED):
            return
        self._set_state(LifecycleState.SHUTTING_DOWN)
        logger.warning("Shutting down master")
        if self.transport is not None:
            self.transport.shutdown()
        self.remove_pid()
        self.exit_code = exit_code
        self._set_state(LifecycleState.STOPPED)

    def reopen_logs(self):
        """Reopen file log destinations; state is unchanged."""
        if self.log_manager is None:
            return
        try:
            self.log_manager.reopen()
        except OSError as e:
            logger.error("Could not reopen log files: %s", e)
