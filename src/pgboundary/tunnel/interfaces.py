"""Protocol interfaces for tunnel provisioning."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..config import Target
    from .models import TunnelHandle


class TunnelProvisioner(Protocol):
    """Starts brokered tunnels and tears all of them down."""

    def start(
        self, target: Target, auth_scope: str, target_scope: str, auth_method: str
    ) -> TunnelHandle:
        """Start a tunnel to ``target`` and return its handle."""
        ...

    def shutdown_all(self) -> list[int]:
        """Terminate every tunnel process on the host, returning their pids."""
        ...
