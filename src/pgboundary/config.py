"""Static configuration for pgboundary.

The configuration file is INI formatted::

    [pgbouncer]
    workdir = ./work
    conffile = pgbouncer.ini

    [scopes]
    auth = auth
    target = target

    [auth]
    method = oidc

    [targets]
    app1 = host=https://boundary.example.com target=app1-ro
    app2 = host=https://boundary.example.com target=app2-ro database=custom_db auth=scope1

Targets are immutable once loaded. The pgbouncer pid file location is read
from pgbouncer's own configuration so there is a single source of truth.
"""

import configparser
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .common.exceptions import ConfigurationError, TargetNotFoundError
from .common.logging import get_logger
from .common.utils import validate_non_empty_string

logger = get_logger(__name__)

CONFIG_FILE_NAME = "pgboundary.ini"
CONFIG_ENV_VAR = "PGBOUNDARY_CONFIG"
DEFAULT_AUTH_METHOD = "oidc"
DEFAULT_SETTLE_TIME = 3.0

_READ_WRITE_SUFFIX = re.compile(r"-(ro|rw)$")


def derive_database_name(target: str) -> str:
    """Derive a database name from a broker target identifier.

    ``app1-ro`` and ``app1-rw`` both become ``app1``; remaining dashes are
    dropped (``billing-api-ro`` -> ``billingapi``).
    """
    return _READ_WRITE_SUFFIX.sub("", target).replace("-", "")


class Target(BaseModel):
    """A database reachable through the credential broker."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Logical target name")
    host: str = Field(..., description="Broker address (https://...)")
    target: str = Field(..., min_length=1, description="Broker target identifier")
    database: str = Field(default="", description="Database name on the remote side")
    auth: str | None = Field(default=None, description="Auth scope override")
    scope: str | None = Field(default=None, description="Target scope override")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Broker host must be an https URL."""
        v = validate_non_empty_string(v, "host")
        if not v.startswith("https://"):
            raise ValueError(f"host must start with https:// (got: {v})")
        return v

    @model_validator(mode="before")
    @classmethod
    def fill_database(cls, data: Any) -> Any:
        """Derive the database name from the target when not given."""
        if isinstance(data, dict) and not data.get("database") and data.get("target"):
            data = {**data, "database": derive_database_name(str(data["target"]).strip())}
        return data

    @classmethod
    def parse(cls, name: str, value: str) -> "Target":
        """Parse a ``key=value key=value`` target definition.

        Unknown keys and tokens without ``=`` are ignored.

        Raises:
            ConfigurationError: If required fields are missing or invalid
        """
        fields: dict[str, str] = {}
        for part in value.split():
            key, sep, val = part.partition("=")
            if sep and key in ("host", "target", "database", "auth", "scope"):
                fields[key] = val

        if not fields.get("host") or not fields.get("target"):
            raise ConfigurationError(
                f"target {name!r} must have at least host and target fields"
            )

        try:
            return cls(name=name, **fields)
        except ValidationError as e:
            raise ConfigurationError(f"invalid target {name!r}: {e}") from e


class ProxySettings(BaseModel):
    """Where pgbouncer lives and how to run it."""

    model_config = ConfigDict(frozen=True)

    workdir: Path = Field(..., description="Working directory pgbouncer is started in")
    conffile: Path = Field(..., description="pgbouncer.ini, absolute")
    pidfile: Path = Field(..., description="pgbouncer pid file, absolute")
    auth_file: str | None = Field(default=None, description="pgbouncer auth_file")
    binary: str = Field(default="pgbouncer", description="pgbouncer executable")


class ScopeSettings(BaseModel):
    """Default broker scopes used when a target has no override."""

    model_config = ConfigDict(frozen=True)

    auth: str = Field(default="global")
    target: str = Field(default="")


class AuthSettings(BaseModel):
    """Broker authentication settings."""

    model_config = ConfigDict(frozen=True)

    method: str = Field(default=DEFAULT_AUTH_METHOD, min_length=1)


class TunnelSettings(BaseModel):
    """Settings for spawning broker tunnels."""

    model_config = ConfigDict(frozen=True)

    binary: str = Field(default="boundary", description="Broker CLI executable")
    settle_time: float = Field(
        default=DEFAULT_SETTLE_TIME,
        gt=0,
        le=60.0,
        description="Seconds to wait for the connection descriptor",
    )
    fragment_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "pgboundary",
        description="Directory holding generated pgbouncer fragments",
    )


class AppConfig(BaseModel):
    """Complete pgboundary configuration."""

    model_config = ConfigDict(frozen=True)

    proxy: ProxySettings
    scopes: ScopeSettings = Field(default_factory=ScopeSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)
    targets: dict[str, Target] = Field(default_factory=dict)

    def get_target(self, name: str) -> Target:
        """Look up a target by name.

        Raises:
            TargetNotFoundError: If no such target is configured
        """
        try:
            return self.targets[name]
        except KeyError:
            raise TargetNotFoundError(name) from None

    def auth_scope_for(self, target: Target) -> str:
        return target.auth or self.scopes.auth

    def target_scope_for(self, target: Target) -> str:
        return target.scope or self.scopes.target


def _read_ini(path: Path) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(delimiters=("=",), interpolation=None)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    try:
        with path.open(encoding="utf-8") as f:
            parser.read_file(f)
    except OSError as e:
        raise ConfigurationError(f"failed to read config file {path}: {e}") from e
    except configparser.Error as e:
        raise ConfigurationError(f"failed to parse config file {path}: {e}") from e
    return parser


def read_pgbouncer_settings(path: Path) -> dict[str, str]:
    """Extract the ``[pgbouncer]`` section values from pgbouncer's own config.

    pgbouncer configs contain ``%include`` directives that configparser does
    not understand, so the file is scanned line by line.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"failed to read pgbouncer config: {e}") from e

    values: dict[str, str] = {}
    in_section = False
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith((";", "#", "%include")):
            continue
        if stripped.startswith("[") and stripped.endswith("]"):
            in_section = stripped[1:-1].strip() == "pgbouncer"
            continue
        if in_section:
            key, sep, value = stripped.partition("=")
            if sep:
                values[key.strip()] = value.strip()
    return values


def load_config(path: str | Path) -> AppConfig:
    """Load and validate a pgboundary configuration file.

    Args:
        path: Path to pgboundary.ini

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file or any target definition is invalid
    """
    path = Path(path)
    parser = _read_ini(path)
    config_dir = path.resolve().parent

    if not parser.has_section("pgbouncer"):
        raise ConfigurationError(f"missing [pgbouncer] section in {path}")

    workdir = Path(parser.get("pgbouncer", "workdir", fallback="."))
    if not workdir.is_absolute():
        workdir = config_dir / workdir
    workdir = Path(os.path.normpath(workdir))

    conffile_value = parser.get("pgbouncer", "conffile", fallback="")
    if not conffile_value:
        raise ConfigurationError("pgbouncer conffile is not set")
    conffile = workdir / conffile_value

    pgbouncer = read_pgbouncer_settings(conffile)
    if not pgbouncer.get("pidfile"):
        raise ConfigurationError("pidfile not found in pgbouncer config")

    options = parser["pgboundary"] if parser.has_section("pgboundary") else {}
    tunnel_fields: dict[str, object] = {}
    if options.get("boundary_binary"):
        tunnel_fields["binary"] = options["boundary_binary"]
    if options.get("settle_time"):
        tunnel_fields["settle_time"] = options["settle_time"]
    if options.get("fragment_dir"):
        fragment_dir = Path(options["fragment_dir"]).expanduser()
        if not fragment_dir.is_absolute():
            fragment_dir = Path(os.path.normpath(config_dir / fragment_dir))
        tunnel_fields["fragment_dir"] = fragment_dir

    targets = {}
    if parser.has_section("targets"):
        for name, value in parser.items("targets"):
            targets[name] = Target.parse(name, value)

    try:
        config = AppConfig(
            proxy=ProxySettings(
                workdir=workdir,
                conffile=conffile,
                pidfile=workdir / pgbouncer["pidfile"],
                auth_file=pgbouncer.get("auth_file"),
                binary=options.get("pgbouncer_binary") or "pgbouncer",
            ),
            scopes=ScopeSettings(
                auth=parser.get("scopes", "auth", fallback="") or "global",
                target=parser.get("scopes", "target", fallback=""),
            ),
            auth=AuthSettings(
                method=parser.get("auth", "method", fallback="") or DEFAULT_AUTH_METHOD
            ),
            tunnel=TunnelSettings(**tunnel_fields),  # type: ignore[arg-type]
            targets=targets,
        )
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration in {path}: {e}") from e

    logger.debug(
        "Configuration loaded",
        path=str(path),
        conffile=str(config.proxy.conffile),
        targets=sorted(config.targets),
    )
    return config


def default_config_locations() -> list[Path]:
    """Candidate config locations, most specific first."""
    locations = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        locations.append(Path(env_path).expanduser())

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    locations.extend(
        [
            Path(CONFIG_FILE_NAME),
            Path.home() / ".pgboundary" / CONFIG_FILE_NAME,
            Path(xdg_config_home) / "pgboundary" / CONFIG_FILE_NAME,
        ]
    )
    return locations


def load_config_from_default_locations() -> AppConfig:
    """Load the first configuration that parses from the default locations.

    Raises:
        ConfigurationError: If no location yields a valid configuration
    """
    locations = default_config_locations()
    first_error: ConfigurationError | None = None

    for location in locations:
        logger.debug("Checking for config", location=str(location))
        try:
            return load_config(location)
        except ConfigurationError as e:
            if first_error is None:
                first_error = e

    searched = ", ".join(str(location) for location in locations)
    raise ConfigurationError(
        f"could not find configuration file in default locations ({searched}): {first_error}"
    )
