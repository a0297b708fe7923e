"""Process inspection and signalling for the proxy and tunnel binaries."""

import os
import signal
from enum import Enum

import psutil
import structlog

from .exceptions import ProcessError
from .logging import get_logger


class ProcessKind(str, Enum):
    """Kinds of external processes pgboundary manages."""

    PROXY = "pgbouncer"
    TUNNEL = "boundary"


class ProcessProber:
    """Answers whether a pid is alive *and* belongs to the expected binary.

    Existence alone is not enough: the kernel recycles pids, so a stale pid
    file or fragment tag may point at an unrelated process. Every positive
    answer therefore requires an identity match on the executable name or
    command line. Inspection errors degrade to "not alive".
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None):
        self.logger = logger or get_logger(__name__)

    def process_identity(self, pid: int) -> ProcessKind | None:
        """Return the kind of process running as ``pid``, if it is one we know."""
        if pid <= 0:
            return None

        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()
            name = proc.name()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except (psutil.AccessDenied, OSError) as e:
            self.logger.debug("Cannot inspect process", pid=pid, error=str(e))
            return None

        executable = os.path.basename(cmdline[0]) if cmdline else ""
        for kind in ProcessKind:
            if executable.startswith(kind.value) or name.startswith(kind.value):
                return kind
        return None

    def exists(self, pid: int) -> bool:
        """Check whether a process with ``pid`` exists at all."""
        if pid <= 0:
            return False
        try:
            return psutil.pid_exists(pid)
        except OSError as e:
            self.logger.debug("Cannot check pid existence", pid=pid, error=str(e))
            return False

    def is_alive(self, pid: int, expected: ProcessKind) -> bool:
        """Check that ``pid`` exists and is identified as ``expected``."""
        if not self.exists(pid):
            return False

        identity = self.process_identity(pid)
        if identity != expected:
            self.logger.debug(
                "Pid does not belong to expected process",
                pid=pid,
                expected=expected.value,
                found=identity.value if identity else None,
            )
            return False

        self.logger.debug("Found live process", pid=pid, kind=expected.value)
        return True

    def find_processes(self, kind: ProcessKind) -> list[int]:
        """Scan the process table for every live process of ``kind``.

        The calling process is never included.
        """
        own_pid = os.getpid()
        found = []
        for pid in psutil.pids():
            if pid == own_pid:
                continue
            if self.process_identity(pid) == kind:
                found.append(pid)

        self.logger.debug("Scanned process table", kind=kind.value, found=found)
        return found

    def send_signal(self, pid: int, sig: signal.Signals) -> None:
        """Deliver ``sig`` to ``pid``.

        Raises:
            ProcessLookupError: If the process vanished
            ProcessError: If the signal could not be delivered
        """
        self.logger.debug("Sending signal", pid=pid, signal=sig.name)
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            raise
        except OSError as e:
            raise ProcessError(f"Failed to send {sig.name} to process {pid}: {e}") from e

    def terminate(self, pid: int) -> None:
        """Send SIGTERM to ``pid``; a process that is already gone is not an error.

        Raises:
            ProcessError: If the signal could not be delivered
        """
        try:
            self.send_signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.logger.debug("Process already gone", pid=pid)
