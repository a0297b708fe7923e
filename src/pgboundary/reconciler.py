"""Connection lifecycle: connect, disconnect, shut everything down.

Every operation re-derives the current state from pgbouncer's config and
the process table, changes it, and re-derives it again to confirm the change
took. There is no transaction log; each step is idempotent, so re-running an
operation after a crash converges instead of needing a rollback.
"""

from collections.abc import Callable
from enum import Enum
from typing import TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .common.exceptions import (
    FragmentError,
    OrphanedResourceError,
    PgBoundaryError,
    ProcessError,
    ShutdownError,
    TunnelError,
)
from .common.logging import get_logger
from .common.process import ProcessKind, ProcessProber
from .config import AppConfig
from .proxy.controller import ProxyAction, ProxyController
from .proxy.fragments import FragmentStore
from .registry import ConnectionRegistry
from .tunnel.boundary import BoundaryProvisioner
from .tunnel.interfaces import TunnelProvisioner

T = TypeVar("T")


class Outcome(str, Enum):
    """Result of a lifecycle operation.

    ``ALREADY_CONNECTED``, ``NOT_FOUND`` and ``NOTHING_FOUND`` are warnings:
    the system was already in the requested state.
    """

    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    DISCONNECTED = "disconnected"
    NOT_FOUND = "not_found"
    SHUTDOWN = "shutdown"
    NOTHING_FOUND = "nothing_found"

    @property
    def is_warning(self) -> bool:
        return self in (Outcome.ALREADY_CONNECTED, Outcome.NOT_FOUND, Outcome.NOTHING_FOUND)


class OperationResult(BaseModel):
    """What a lifecycle operation did."""

    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    target: str | None = None
    tunnel_pid: int | None = None
    proxy_action: ProxyAction | None = None
    tunnel_pids: list[int] = Field(default_factory=list)
    message: str = ""


class ConnectionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    tunnel_pid: int
    tunnel_alive: bool


class StatusReport(BaseModel):
    """pgbouncer state plus every connection found in its config."""

    model_config = ConfigDict(frozen=True)

    proxy_running: bool
    pid: int | None = None
    connections: list[ConnectionStatus] = Field(default_factory=list)


class TargetInfo(BaseModel):
    """A configured target with its effective scopes."""

    model_config = ConfigDict(frozen=True)

    name: str
    host: str
    target: str
    database: str
    auth_scope: str
    target_scope: str


class Reconciler:
    """Keeps tunnels, fragments and pgbouncer in agreement."""

    def __init__(
        self,
        config: AppConfig,
        store: FragmentStore,
        registry: ConnectionRegistry,
        controller: ProxyController,
        provisioner: TunnelProvisioner,
        prober: ProcessProber,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.controller = controller
        self.provisioner = provisioner
        self.prober = prober
        self.logger = logger or get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> "Reconciler":
        """Wire up the default collaborators for ``config``."""
        logger = logger or get_logger(__name__)
        prober = ProcessProber(logger=logger)
        store = FragmentStore(
            config.proxy.conffile, config.tunnel.fragment_dir, logger=logger
        )
        return cls(
            config=config,
            store=store,
            registry=ConnectionRegistry(store, prober=prober, logger=logger),
            controller=ProxyController(config.proxy, prober=prober, logger=logger),
            provisioner=BoundaryProvisioner(
                binary=config.tunnel.binary,
                settle_time=config.tunnel.settle_time,
                prober=prober,
                logger=logger,
            ),
            prober=prober,
            logger=logger,
        )

    def connect(self, name: str) -> OperationResult:
        """Start a tunnel for ``name`` and expose it through pgbouncer.

        Raises:
            TargetNotFoundError: If ``name`` is not configured
            ExternalToolError: If the broker or pgbouncer fails
            OrphanedResourceError: If the tunnel started but its fragment
                could not be written
            PgBoundaryError: If the connection is not visible afterwards
        """
        target = self.config.get_target(name)
        log = self.logger.bind(target=name)

        if self.registry.is_connected(name):
            log.warning("Target is already connected")
            return OperationResult(
                outcome=Outcome.ALREADY_CONNECTED,
                target=name,
                message=f"target {name!r} is already connected",
            )

        handle = self.provisioner.start(
            target,
            self.config.auth_scope_for(target),
            self.config.target_scope_for(target),
            self.config.auth.method,
        )

        try:
            self.store.write(name, handle, target.database)
        except FragmentError as e:
            log.error("Fragment write failed, tunnel left running", tunnel_pid=handle.pid)
            raise OrphanedResourceError(
                f"failed to update pgbouncer configuration for target {name!r}: {e}",
                resource=f"tunnel pid {handle.pid}",
            ) from e

        action = self.controller.ensure_running()

        if not self.registry.is_connected(name):
            raise PgBoundaryError(f"target {name!r} is not visible in pgbouncer config after connect")

        log.info("Target connected", tunnel_pid=handle.pid, proxy_action=action.value)
        return OperationResult(
            outcome=Outcome.CONNECTED,
            target=name,
            tunnel_pid=handle.pid,
            proxy_action=action,
        )

    def disconnect(self, name: str) -> OperationResult:
        """Tear down the connection for ``name``.

        When no tracked tunnel remains afterwards pgbouncer is shut down and
        the generated fragments cleared; otherwise it is reloaded.

        Raises:
            TunnelError: If the tunnel could not be terminated; the fragment
                is kept as the only record of it
            OrphanedResourceError: If the tunnel was terminated but the
                fragment could not be removed
            ShutdownError: If stopping pgbouncer or clearing the config
                failed after the last connection; both are always attempted
        """
        log = self.logger.bind(target=name)
        fragment = self.registry.lookup(name)
        if fragment is None:
            log.warning("Connection not found")
            return OperationResult(
                outcome=Outcome.NOT_FOUND,
                target=name,
                message=f"connection {name!r} not found",
            )

        if fragment.tracked and self.prober.is_alive(fragment.tunnel_pid, ProcessKind.TUNNEL):
            try:
                self.prober.terminate(fragment.tunnel_pid)
            except ProcessError as e:
                raise TunnelError(
                    f"failed to kill boundary process {fragment.tunnel_pid} for {name!r}: {e}"
                ) from e
            log.info("Terminated tunnel", tunnel_pid=fragment.tunnel_pid)

        try:
            self.store.remove(name)
        except FragmentError as e:
            raise OrphanedResourceError(
                f"tunnel for {name!r} stopped but its fragment could not be removed: {e}",
                resource=str(fragment.path),
            ) from e

        errors: list[Exception] = []
        action: ProxyAction | None
        if self.registry.has_tracked_tunnels():
            action = self.controller.ensure_running()
        else:
            log.info("No more tunnel connections, shutting down pgbouncer")
            action = self._attempt(errors, "shut down pgbouncer", self.controller.shutdown)
            self._attempt(errors, "clean pgbouncer config", self.store.clear)

        result = OperationResult(
            outcome=Outcome.DISCONNECTED,
            target=name,
            tunnel_pid=fragment.tunnel_pid or None,
            proxy_action=action,
        )
        if errors:
            raise ShutdownError(errors, result=result)

        if self.registry.is_connected(name):
            raise PgBoundaryError(f"target {name!r} still present in pgbouncer config after disconnect")

        log.info("Target disconnected", proxy_action=action.value if action else None)
        return result

    def disconnect_all(self) -> OperationResult:
        """Stop pgbouncer and every tunnel on the host, then clear fragments.

        Tunnels are found by scanning processes rather than from fragments,
        so tunnels whose fragment was lost are stopped too. Each step runs
        even if an earlier one failed.

        Raises:
            ShutdownError: Carrying every failure and the partial result
        """
        errors: list[Exception] = []
        proxy_action = self._attempt(errors, "shut down pgbouncer", self.controller.shutdown)
        tunnel_pids = self._attempt(errors, "shut down tunnels", self.provisioner.shutdown_all) or []
        self._attempt(errors, "clean pgbouncer config", self.store.clear)

        if tunnel_pids:
            outcome = Outcome.SHUTDOWN
            message = f"stopped {len(tunnel_pids)} boundary process(es)"
        else:
            outcome = Outcome.NOTHING_FOUND
            message = "no boundary processes found"

        result = OperationResult(
            outcome=outcome,
            proxy_action=proxy_action,
            tunnel_pids=tunnel_pids,
            message=message,
        )
        if errors:
            raise ShutdownError(errors, result=result)

        self.logger.info("Shutdown complete", outcome=outcome.value, tunnel_pids=tunnel_pids)
        return result

    def _attempt(self, errors: list[Exception], what: str, step: Callable[[], T]) -> T | None:
        """Run one best-effort cleanup step, collecting its failure in ``errors``."""
        try:
            return step()
        except PgBoundaryError as e:
            self.logger.warning(f"Failed to {what}", error=str(e))
            errors.append(e)
            return None

    def status(self) -> StatusReport:
        """Report pgbouncer state and every connection in its config."""
        running, pid = self.controller.is_running()
        connections = [
            ConnectionStatus(name=name, tunnel_pid=state.tunnel_pid, tunnel_alive=state.tunnel_alive)
            for name, state in self.registry.snapshot().items()
        ]
        return StatusReport(proxy_running=running, pid=pid, connections=connections)

    def list_targets(self) -> list[TargetInfo]:
        """Every configured target with its effective scopes."""
        return [
            TargetInfo(
                name=target.name,
                host=target.host,
                target=target.target,
                database=target.database,
                auth_scope=self.config.auth_scope_for(target),
                target_scope=self.config.target_scope_for(target),
            )
            for target in sorted(self.config.targets.values(), key=lambda t: t.name)
        ]
