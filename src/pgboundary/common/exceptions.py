"""Custom exceptions for pgboundary."""


class PgBoundaryError(Exception):
    """Base exception for all pgboundary errors."""
    pass


class ConfigurationError(PgBoundaryError):
    """Raised when configuration is invalid."""
    pass


class TargetNotFoundError(ConfigurationError):
    """Raised when a target name is not defined in the configuration."""

    def __init__(self, target: str):
        super().__init__(f"target {target!r} not found in configuration")
        self.target = target


class ExternalToolError(PgBoundaryError):
    """Raised when an external binary fails.

    The tool's own diagnostic output is kept in ``stderr`` so callers can
    surface it unchanged.
    """

    def __init__(self, message: str, stderr: str | None = None):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.stderr = stderr


class BinaryNotFoundError(ExternalToolError):
    """Raised when a required binary is not found or not executable."""
    pass


class AuthenticationError(ExternalToolError):
    """Raised when authentication against the credential broker fails."""
    pass


class ProvisioningError(ExternalToolError):
    """Raised when a tunnel could not be established."""
    pass


class ProcessError(PgBoundaryError):
    """Raised when signalling or starting a process fails."""
    pass


class TunnelError(PgBoundaryError):
    """Raised when a tunnel process could not be terminated."""
    pass


class FragmentError(PgBoundaryError):
    """Raised when a config fragment cannot be written or removed."""
    pass


class OrphanedResourceError(PgBoundaryError):
    """Raised when a partial failure leaves a resource behind.

    ``resource`` names what was left over (a tunnel pid or a fragment path)
    so it can be cleaned up by a later full shutdown.
    """

    def __init__(self, message: str, resource: str):
        super().__init__(f"{message} (orphaned: {resource})")
        self.resource = resource


class ShutdownError(PgBoundaryError):
    """Raised when one or more steps of a full shutdown failed."""

    def __init__(self, errors: list[Exception], result: object | None = None):
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"shutdown finished with {len(errors)} error(s): {details}")
        self.errors = errors
        self.result = result
