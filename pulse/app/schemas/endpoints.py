from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class EndpointConfig(BaseModel):
    """Connection details for one upstream API, as handed over by the config loader."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    host: str
    port: int | None = Field(default=None, ge=1, le=65535)
    token_id: str | None = Field(default=None, alias="tokenId")
    token_secret: str | None = Field(default=None, alias="tokenSecret")
    allow_self_signed_certs: bool = Field(default=True, alias="allowSelfSignedCerts")
    enabled: bool = True
    use_resilient_dns: bool = Field(default=False, alias="useResilientDns")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def has_credentials(self) -> bool:
        return bool(self.token_id and self.token_secret)


class VirtClusterEndpoint(EndpointConfig):
    kind: Literal["pve"] = "pve"
    port: int | None = Field(default=8006, ge=1, le=65535)


class BackupServerEndpoint(EndpointConfig):
    kind: Literal["pbs"] = "pbs"
    port: int | None = Field(default=8007, ge=1, le=65535)
    auth_method: str = Field(default="token", alias="authMethod")
    node_name: str | None = Field(default=None, alias="nodeName")
