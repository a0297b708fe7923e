"""Credential-brokered tunnels."""

from .boundary import BoundaryProvisioner
from .interfaces import TunnelProvisioner
from .models import TunnelHandle

__all__ = [
    "BoundaryProvisioner",
    "TunnelHandle",
    "TunnelProvisioner",
]
