from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

AZURE_CLI_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"


class CloudEnvironment(BaseModel):
    """Endpoint set for one Azure cloud."""

    name: str
    authority_host: str
    resource_manager_endpoint: str
    management_scope: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    def authority(self, tenant: str) -> str:
        return f"{self.authority_host.rstrip('/')}/{tenant}"


AZURE = CloudEnvironment(
    name="AzureCloud",
    authority_host="https://login.microsoftonline.com",
    resource_manager_endpoint="https://management.azure.com/",
    management_scope="https://management.azure.com/.default",
)
AZURE_CHINA = CloudEnvironment(
    name="AzureChinaCloud",
    authority_host="https://login.chinacloudapi.cn",
    resource_manager_endpoint="https://management.chinacloudapi.cn/",
    management_scope="https://management.chinacloudapi.cn/.default",
)
AZURE_US_GOVERNMENT = CloudEnvironment(
    name="AzureUSGovernment",
    authority_host="https://login.microsoftonline.us",
    resource_manager_endpoint="https://management.usgovcloudapi.net/",
    management_scope="https://management.usgovcloudapi.net/.default",
)

KNOWN_ENVIRONMENTS: Dict[str, CloudEnvironment] = {
    env.name.lower(): env for env in (AZURE, AZURE_CHINA, AZURE_US_GOVERNMENT)
}


def get_environment(name: Optional[str]) -> CloudEnvironment:
    """Look up a cloud by name, case-insensitively. ``None`` means AzureCloud."""
    if not name:
        return AZURE
    try:
        return KNOWN_ENVIRONMENTS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown Azure environment: {name}") from None


class SecretRef(BaseModel):
    """Reference to a secret without storing it in configuration files.

    Only environment variables and inline values are resolved. Inline values
    are meant for local development.
    """

    env: Optional[str] = Field(
        default=None, description="Environment variable name containing the secret"
    )
    value: Optional[str] = Field(
        default=None,
        description="Inline value (use only for local development; avoid in production)",
    )

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            env_value = os.getenv(self.env)
            if env_value:
                return env_value
            raise ValueError(f"Environment variable {self.env} is not set")
        if self.value:
            return self.value
        raise ValueError("No secret reference provided for resolution")


class ClientSecretAuth(BaseModel):
    type: Literal["client_secret"]
    client_id: str
    home_tenant_id: str
    client_secret: SecretRef

    model_config = ConfigDict(extra="forbid")


class CertificateAuth(BaseModel):
    type: Literal["certificate"]
    client_id: str
    home_tenant_id: str
    certificate_path: Path
    certificate_thumbprint: str
    certificate_password: Optional[SecretRef] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("certificate_thumbprint")
    @classmethod
    def normalize_thumbprint(cls, value: str) -> str:
        thumbprint = value.replace(":", "").strip().upper()
        if not thumbprint:
            raise ValueError("certificate_thumbprint is required for certificate auth")
        return thumbprint


class ManagedIdentityAuth(BaseModel):
    type: Literal["managed_identity"]
    client_id: Optional[str] = Field(
        default=None, description="Optional user-assigned managed identity client ID"
    )

    model_config = ConfigDict(extra="forbid")


class RefreshTokenAuth(BaseModel):
    type: Literal["refresh_token"]
    refresh_token: SecretRef
    client_id: str = Field(
        default=AZURE_CLI_CLIENT_ID,
        description="Public client the refresh token was issued to",
    )

    model_config = ConfigDict(extra="forbid")


AuthConfig = Union[ClientSecretAuth, CertificateAuth, ManagedIdentityAuth, RefreshTokenAuth]


class TenantPruning(str, Enum):
    """Rule deciding which discovered tenants survive ``initialize``.

    ``contributing`` keeps every tenant that owns at least one subscription in
    the merged view. ``duplicates_only`` reproduces the older behaviour where
    only tenants whose subscriptions collided with an earlier tenant's were
    kept.
    """

    CONTRIBUTING = "contributing"
    DUPLICATES_ONLY = "duplicates_only"


class DiscoverySettings(BaseModel):
    max_workers: int = Field(default=8, ge=1)
    timeout: Optional[float] = Field(
        default=60.0, gt=0, description="Deadline in seconds for the per-tenant listing pass"
    )
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    tenant_pruning: TenantPruning = TenantPruning.CONTRIBUTING

    model_config = ConfigDict(extra="forbid")


class TokenCacheSettings(BaseModel):
    refresh_margin: float = Field(
        default=300.0, ge=0, description="Seconds before expiry at which a token is refreshed"
    )
    fetch_timeout: Optional[float] = Field(default=60.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class AccountConfig(BaseModel):
    environment: str = AZURE.name
    auth: AuthConfig = Field(discriminator="type")
    tenant_ids: Optional[List[str]] = Field(
        default=None, description="Known tenants; discovered from the home tenant when omitted"
    )
    selected_subscriptions: List[str] = Field(default_factory=list)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    token_cache: TokenCacheSettings = Field(default_factory=TokenCacheSettings)

    model_config = ConfigDict(extra="forbid")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, value: str) -> str:
        return get_environment(value).name

    @property
    def cloud(self) -> CloudEnvironment:
        return get_environment(self.environment)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "AccountConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)
