"""pgboundary - Boundary brokered database tunnels behind pgbouncer."""

from .common.exceptions import (
    AuthenticationError,
    BinaryNotFoundError,
    ConfigurationError,
    ExternalToolError,
    FragmentError,
    OrphanedResourceError,
    PgBoundaryError,
    ProcessError,
    ProvisioningError,
    ShutdownError,
    TargetNotFoundError,
    TunnelError,
)
from .common.logging import get_logger, setup_logging
from .common.process import ProcessKind, ProcessProber
from .config import AppConfig, Target, load_config, load_config_from_default_locations
from .proxy import ConnectionFragment, FragmentStore, ProxyAction, ProxyController
from .reconciler import (
    ConnectionStatus,
    OperationResult,
    Outcome,
    Reconciler,
    StatusReport,
)
from .registry import ConnectionRegistry, ConnectionState
from .tunnel import BoundaryProvisioner, TunnelHandle, TunnelProvisioner

__version__ = "0.1.0"


__all__ = [
    # Lifecycle
    "Reconciler",
    "OperationResult",
    "Outcome",
    "StatusReport",
    "ConnectionStatus",
    # Components
    "ConnectionRegistry",
    "ConnectionState",
    "FragmentStore",
    "ConnectionFragment",
    "ProxyController",
    "ProxyAction",
    "ProcessProber",
    "ProcessKind",
    "BoundaryProvisioner",
    "TunnelProvisioner",
    "TunnelHandle",
    # Configuration
    "AppConfig",
    "Target",
    "load_config",
    "load_config_from_default_locations",
    # Exceptions
    "PgBoundaryError",
    "ConfigurationError",
    "TargetNotFoundError",
    "ExternalToolError",
    "BinaryNotFoundError",
    "AuthenticationError",
    "ProvisioningError",
    "ProcessError",
    "TunnelError",
    "FragmentError",
    "OrphanedResourceError",
    "ShutdownError",
    # Logging
    "get_logger",
    "setup_logging",
]
