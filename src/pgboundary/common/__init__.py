"""Common utilities and shared functionality."""

from .exceptions import (
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
from .logging import get_logger, setup_logging
from .process import ProcessKind, ProcessProber
from .utils import mask_sensitive_data, sanitize_log_data, validate_non_empty_string

__all__ = [
    # Process inspection
    "ProcessKind",
    "ProcessProber",
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
    # Utils
    "validate_non_empty_string",
    "mask_sensitive_data",
    "sanitize_log_data",
]
