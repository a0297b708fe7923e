"""Tunnel provisioning through the Boundary CLI."""

import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from ..common.exceptions import (
    AuthenticationError,
    BinaryNotFoundError,
    ExternalToolError,
    ProcessError,
    ProvisioningError,
    TunnelError,
)
from ..common.logging import get_logger
from ..common.process import ProcessKind, ProcessProber
from ..config import DEFAULT_SETTLE_TIME, Target
from .models import (
    AuthenticateResponse,
    BrokerListResponse,
    ConnectResponse,
    TunnelHandle,
)

GLOBAL_SCOPE = "global"
TOKEN_ENV_VAR = "BOUNDARY_TOKEN"
COMMAND_TIMEOUT = 45.0
ABANDON_TIMEOUT = 5.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class BoundaryProvisioner:
    """Provisions tunnels by shelling out to ``boundary``.

    Authentication and credential brokering are delegated to the CLI. The
    ``connect`` process is spawned in its own session so it outlives this
    process; its pid is what the reconciler tracks afterwards.
    """

    def __init__(
        self,
        binary: str = "boundary",
        settle_time: float = DEFAULT_SETTLE_TIME,
        prober: ProcessProber | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        """Initialize the provisioner.

        Args:
            binary: Boundary CLI executable
            settle_time: Seconds to wait for ``boundary connect`` to print
                its connection descriptor
            prober: Process prober used by ``shutdown_all``
            logger: Logger to report progress on
        """
        self.binary = binary
        self.settle_time = settle_time
        self.logger = logger or get_logger(__name__)
        self.prober = prober or ProcessProber(logger=self.logger)

    def _run_json(
        self,
        args: list[str],
        model: type[ModelT],
        error_cls: type[ExternalToolError] = ProvisioningError,
    ) -> ModelT:
        command = [self.binary, *args]
        self.logger.debug("Running broker command", command=command[:3])
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT,
                check=False,
            )
        except FileNotFoundError as e:
            raise BinaryNotFoundError(f"Binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"'{' '.join(command[:3])}' timed out after {COMMAND_TIMEOUT}s") from e

        if result.returncode != 0:
            raise error_cls(f"'{' '.join(command[:3])}' failed", stderr=result.stderr)

        try:
            return model.model_validate_json(result.stdout)
        except ValidationError as e:
            raise error_cls(f"unexpected output from '{' '.join(command[:3])}': {e}") from e

    def resolve_scope_id(self, host: str, scope_name: str) -> str:
        """Map a scope name to its id; ``global`` is its own id."""
        if scope_name == GLOBAL_SCOPE:
            return GLOBAL_SCOPE

        response = self._run_json(
            ["scopes", "list", "-scope-id", GLOBAL_SCOPE, "-addr", host, "-format", "json"],
            BrokerListResponse,
        )
        for item in response.items:
            if item.name == scope_name:
                return item.id
        raise ProvisioningError(f"scope {scope_name!r} not found")

    def resolve_auth_method_id(self, host: str, scope_id: str, method: str) -> str:
        """Pick the first auth method of type ``method`` in ``scope_id``."""
        response = self._run_json(
            ["auth-methods", "list", "-scope-id", scope_id, "-addr", host, "-format", "json"],
            BrokerListResponse,
            error_cls=AuthenticationError,
        )
        self.logger.debug(
            "Found auth methods",
            scope_id=scope_id,
            methods=[(item.id, item.type) for item in response.items],
        )
        for item in response.items:
            if item.type == method:
                return item.id
        raise AuthenticationError(f"no {method} auth method found in scope {scope_id}")

    def authenticate(self, host: str, scope_id: str, method: str) -> str:
        """Authenticate against the broker and return a session token."""
        auth_method_id = self.resolve_auth_method_id(host, scope_id, method)
        self.logger.info("Authenticating", host=host, method=method, auth_method_id=auth_method_id)
        response = self._run_json(
            [
                "authenticate",
                method,
                "-scope-id",
                scope_id,
                "-auth-method-id",
                auth_method_id,
                "-addr",
                host,
                "-keyring-type",
                "none",
                "-format",
                "json",
            ],
            AuthenticateResponse,
            error_cls=AuthenticationError,
        )
        return response.token

    def start(
        self, target: Target, auth_scope: str, target_scope: str, auth_method: str
    ) -> TunnelHandle:
        """Authenticate and start a ``boundary connect`` tunnel for ``target``.

        Raises:
            BinaryNotFoundError: If the boundary CLI is not installed
            AuthenticationError: If authentication fails
            ProvisioningError: If the tunnel does not come up within the
                settle time
        """
        scope_id = self.resolve_scope_id(target.host, auth_scope)
        token = self.authenticate(target.host, scope_id, auth_method)

        command = [
            self.binary,
            "connect",
            "-target-name",
            target.target,
            "-target-scope-name",
            target_scope,
            "-addr",
            target.host,
            "-token",
            f"env://{TOKEN_ENV_VAR}",
            "-format",
            "json",
        ]
        env = {**os.environ, TOKEN_ENV_VAR: token}

        with tempfile.TemporaryDirectory(prefix="boundary-") as tmp_dir:
            output_path = Path(tmp_dir) / "connection.json"
            error_path = Path(tmp_dir) / "connection.err"
            with output_path.open("w") as stdout, error_path.open("w") as stderr:
                try:
                    process = subprocess.Popen(
                        command,
                        stdout=stdout,
                        stderr=stderr,
                        stdin=subprocess.DEVNULL,
                        env=env,
                        start_new_session=True,
                    )
                except FileNotFoundError as e:
                    raise BinaryNotFoundError(f"Binary not found: {self.binary}") from e
                except OSError as e:
                    raise ProvisioningError(f"failed to start boundary connect: {e}") from e

            self.logger.info(
                "Started tunnel process",
                target=target.name,
                tunnel_pid=process.pid,
                settle_time=self.settle_time,
            )
            time.sleep(self.settle_time)

            try:
                descriptor = ConnectResponse.model_validate_json(output_path.read_text())
            except (OSError, ValidationError) as e:
                stderr_text = error_path.read_text() if error_path.exists() else ""
                self._abandon(process)
                raise ProvisioningError(
                    f"failed to parse connection response for {target.name!r}",
                    stderr=stderr_text or str(e),
                ) from e

            if not descriptor.credentials:
                self._abandon(process)
                raise ProvisioningError("no credentials found in connection response")

        credential = descriptor.credentials[0].credential
        handle = TunnelHandle(
            pid=process.pid,
            host=descriptor.address,
            port=descriptor.port,
            username=credential.username,
            password=credential.password,
        )
        self.logger.info("Tunnel established", target=target.name, **handle.log_fields())
        return handle

    def _abandon(self, process: subprocess.Popen[bytes]) -> None:
        if process.poll() is None:
            self.logger.warning("Terminating tunnel that did not come up", tunnel_pid=process.pid)
            process.terminate()
            try:
                process.wait(timeout=ABANDON_TIMEOUT)
            except subprocess.TimeoutExpired:
                self.logger.warning("Tunnel did not exit, force killing", tunnel_pid=process.pid)
                process.kill()
                process.wait()

    def shutdown_all(self) -> list[int]:
        """Terminate every boundary process on the host.

        Every process is attempted even if an earlier one fails.

        Returns:
            Pids that were signalled; empty when none were found

        Raises:
            TunnelError: If any process could not be terminated
        """
        pids = self.prober.find_processes(ProcessKind.TUNNEL)
        failures = []
        for pid in pids:
            try:
                self.prober.terminate(pid)
                self.logger.info("Terminated tunnel process", tunnel_pid=pid)
            except ProcessError as e:
                self.logger.error("Failed to terminate tunnel process", tunnel_pid=pid, error=str(e))
                failures.append(f"{pid}: {e}")

        if failures:
            raise TunnelError(f"failed to kill boundary processes: {', '.join(failures)}")
        return pids
