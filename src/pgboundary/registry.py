"""Which targets are connected, derived from pgbouncer's config."""

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .common.logging import get_logger
from .common.process import ProcessKind, ProcessProber
from .proxy.fragments import ConnectionFragment, FragmentStore


class ConnectionState(BaseModel):
    """Snapshot entry for one connected target."""

    model_config = ConfigDict(frozen=True)

    tunnel_pid: int = Field(ge=0, description="0 when the fragment is untracked")
    tunnel_alive: bool = Field(description="Tunnel pid is a live boundary process")


class ConnectionRegistry:
    """Read-only view over the fragment store.

    Nothing is stored here: every query re-reads the fragments. A target
    whose tunnel died but whose fragment survived is still reported, with
    ``tunnel_alive=False``, so the inconsistency stays visible.
    """

    def __init__(
        self,
        store: FragmentStore,
        prober: ProcessProber | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.store = store
        self.logger = logger or get_logger(__name__)
        self.prober = prober or ProcessProber(logger=self.logger)

    def lookup(self, target: str) -> ConnectionFragment | None:
        return self.store.find(target)

    def is_connected(self, target: str) -> bool:
        return self.lookup(target) is not None

    def snapshot(self) -> dict[str, ConnectionState]:
        """Map every connected target to its tunnel pid and liveness."""
        states: dict[str, ConnectionState] = {}
        for fragment in self.store.list():
            if fragment.name in states:
                self.logger.warning(
                    "Target has more than one fragment",
                    target=fragment.name,
                    path=str(fragment.path),
                )
                continue
            alive = fragment.tracked and self.prober.is_alive(
                fragment.tunnel_pid, ProcessKind.TUNNEL
            )
            if fragment.tracked and not alive:
                self.logger.warning(
                    "Tunnel for connected target is not running",
                    target=fragment.name,
                    tunnel_pid=fragment.tunnel_pid,
                )
            states[fragment.name] = ConnectionState(
                tunnel_pid=fragment.tunnel_pid, tunnel_alive=alive
            )
        return states

    def has_tracked_tunnels(self) -> bool:
        """Whether any remaining fragment is owned by a tunnel we started."""
        return any(fragment.tracked for fragment in self.store.list())
