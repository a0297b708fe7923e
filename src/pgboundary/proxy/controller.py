"""pgbouncer process control.

The pid file written by pgbouncer is the only record of a running instance.
It is re-read on every call and never cached: another invocation may have
started or stopped pgbouncer in the meantime.
"""

import signal
import subprocess
from enum import Enum
from pathlib import Path

import structlog

from ..common.exceptions import BinaryNotFoundError, ProcessError
from ..common.logging import get_logger
from ..common.process import ProcessKind, ProcessProber
from ..config import ProxySettings

START_TIMEOUT = 30.0


class ProxyAction(str, Enum):
    """What the controller did to pgbouncer."""

    STARTED = "started"
    RELOADED = "reloaded"
    STOPPED = "stopped"
    ALREADY_STOPPED = "already_stopped"


class ProxyController:
    """Starts, reloads and terminates pgbouncer."""

    def __init__(
        self,
        settings: ProxySettings,
        prober: ProcessProber | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.settings = settings
        self.logger = logger or get_logger(__name__)
        self.prober = prober or ProcessProber(logger=self.logger)

    @property
    def pidfile(self) -> Path:
        return self.settings.pidfile

    def read_pid(self) -> int | None:
        """Read the pid file; a missing or garbled file means no pid."""
        try:
            content = self.pidfile.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning("Cannot read pid file", pidfile=str(self.pidfile), error=str(e))
            return None

        try:
            pid = int(content)
        except ValueError:
            self.logger.warning("Invalid pid in pid file", pidfile=str(self.pidfile), content=content)
            return None
        return pid if pid > 0 else None

    def is_running(self) -> tuple[bool, int | None]:
        """Check whether the pid file names a live pgbouncer.

        Returns:
            (running, pid); pid is None unless running
        """
        pid = self.read_pid()
        if pid is not None and self.prober.is_alive(pid, ProcessKind.PROXY):
            return True, pid
        return False, None

    def start(self) -> None:
        """Launch pgbouncer as a daemon.

        Returns once the daemon has been launched; readiness is not awaited.

        Raises:
            BinaryNotFoundError: If the pgbouncer binary is missing
            ProcessError: If pgbouncer refuses to start
        """
        command = [self.settings.binary, "--daemon", str(self.settings.conffile)]
        self.logger.info(
            "Starting pgbouncer",
            conffile=str(self.settings.conffile),
            workdir=str(self.settings.workdir),
        )
        try:
            result = subprocess.run(
                command,
                cwd=self.settings.workdir,
                capture_output=True,
                text=True,
                timeout=START_TIMEOUT,
                check=False,
            )
        except FileNotFoundError as e:
            raise BinaryNotFoundError(f"Binary not found: {self.settings.binary}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProcessError(f"failed to start pgbouncer: {e}") from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            raise ProcessError(f"failed to start pgbouncer: {message or f'exit status {result.returncode}'}")

    def ensure_running(self) -> ProxyAction:
        """Make pgbouncer pick up the current configuration.

        A verified running instance gets SIGHUP so pooled sessions of other
        connections survive; otherwise a fresh instance is started.
        """
        running, pid = self.is_running()
        if running and pid is not None:
            try:
                self.prober.send_signal(pid, signal.SIGHUP)
            except ProcessLookupError:
                self.logger.info("pgbouncer exited before reload, starting it", pid=pid)
            else:
                self.logger.info("Reloaded pgbouncer", pid=pid)
                return ProxyAction.RELOADED
        else:
            self.logger.debug("pgbouncer not running", pidfile=str(self.pidfile))

        self.start()
        return ProxyAction.STARTED

    def shutdown(self) -> ProxyAction:
        """Gracefully terminate a verified running pgbouncer.

        Returns:
            STOPPED if a signal was delivered, ALREADY_STOPPED if there was
            nothing to shut down

        Raises:
            ProcessError: If the signal could not be delivered
        """
        running, pid = self.is_running()
        if not running or pid is None:
            self.logger.info("No running pgbouncer to shut down", pidfile=str(self.pidfile))
            return ProxyAction.ALREADY_STOPPED

        try:
            self.prober.send_signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.logger.info("pgbouncer already exited", pid=pid)
            return ProxyAction.ALREADY_STOPPED

        self.logger.info("Sent SIGTERM to pgbouncer", pid=pid)
        return ProxyAction.STOPPED
