from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from azure.core.credentials import AccessToken

from .config import CloudEnvironment
from .providers import TokenFetcher


def resource_to_scope(resource: str) -> str:
    """Map a v1 resource URI (``https://management.azure.com/``) to a v2 ``/.default`` scope."""
    if resource.endswith("/.default"):
        return resource
    return f"{resource.rstrip('/')}/.default"


@dataclass(frozen=True)
class LegacyCredential:
    """Resource-based credential for callers written against the older SDK shape.

    Holds no state of its own; every call goes to the wrapped fetcher, which
    keeps its own token memo.
    """

    environment: CloudEnvironment
    domain: str
    credential: TokenFetcher
    default_subscription_id: Optional[str] = None

    def _access_token(self, resource: Optional[str]) -> AccessToken:
        scope = resource_to_scope(resource) if resource else self.environment.management_scope
        return self.credential.get_token(scope)

    def get_token(self, resource: Optional[str] = None) -> str:
        return self._access_token(resource).token

    @property
    def token(self) -> Dict[str, object]:
        access_token = self._access_token(None)
        return {
            "access_token": access_token.token,
            "expires_on": access_token.expires_on,
            "token_type": "Bearer",
        }

    def signed_session(self, session: Optional[httpx.Client] = None) -> httpx.Client:
        session = session or httpx.Client()
        session.headers["Authorization"] = f"Bearer {self.get_token()}"
        return session


def to_legacy_credential(
    environment: CloudEnvironment,
    tenant_id: str,
    credential: TokenFetcher,
    subscription_id: Optional[str] = None,
) -> LegacyCredential:
    return LegacyCredential(
        environment=environment,
        domain=tenant_id,
        credential=credential,
        default_subscription_id=subscription_id,
    )
