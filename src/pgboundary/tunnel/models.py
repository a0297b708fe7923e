"""Tunnel models.

``TunnelHandle`` is what a provisioned tunnel hands back to the reconciler.
The remaining models describe the JSON the broker CLI prints with
``-format json``.
"""

from pydantic import BaseModel, ConfigDict, Field

from ..common.utils import sanitize_log_data


class TunnelHandle(BaseModel):
    """A running tunnel and the credentials it brokered."""

    model_config = ConfigDict(frozen=True)

    pid: int = Field(gt=0, description="Pid of the tunnel process")
    host: str = Field(min_length=1, description="Local bind address")
    port: int = Field(ge=1, le=65535, description="Local bind port")
    username: str = Field(description="Brokered database user")
    password: str = Field(repr=False, description="Brokered database password")

    def log_fields(self) -> dict[str, object]:
        """Fields safe to attach to a log event."""
        fields = sanitize_log_data(self.model_dump())
        fields["tunnel_pid"] = fields.pop("pid")
        return fields


class BrokerItem(BaseModel):
    """An entry of a broker ``list`` response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    type: str = ""


class BrokerListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[BrokerItem] = Field(default_factory=list)


class _AuthAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)


class _AuthItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    attributes: _AuthAttributes


class AuthenticateResponse(BaseModel):
    """Response of ``boundary authenticate``."""

    model_config = ConfigDict(extra="ignore")

    item: _AuthItem

    @property
    def token(self) -> str:
        return self.item.attributes.token


class _Credential(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str
    password: str = Field(repr=False)


class _BrokeredCredential(BaseModel):
    model_config = ConfigDict(extra="ignore")

    credential: _Credential


class ConnectResponse(BaseModel):
    """Connection descriptor printed by ``boundary connect``."""

    model_config = ConfigDict(extra="ignore")

    address: str
    port: int = Field(ge=1, le=65535)
    credentials: list[_BrokeredCredential] = Field(default_factory=list)
