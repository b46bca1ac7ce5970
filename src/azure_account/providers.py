from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Protocol

import msal
from azure.core.credentials import AccessToken
from azure.identity import ManagedIdentityCredential

from .audit import JsonAuditLogger
from .config import (
    CertificateAuth,
    ClientSecretAuth,
    CloudEnvironment,
    ManagedIdentityAuth,
    RefreshTokenAuth,
)
from .errors import AuthenticationDenied, NotConfiguredError, ProviderUnavailable

logger = logging.getLogger(__name__)

COMMON_TENANT = "organizations"

# AAD error codes meaning the identity has no standing in the tenant.
_DENIAL_ERRORS = {"invalid_grant", "interaction_required", "consent_required", "unauthorized_client"}
_DENIAL_AADSTS_CODES = {50020, 50076, 50079, 53003, 65001, 700016, 7000112}


class TokenFetcher(Protocol):
    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        ...


class CredentialProvider(Protocol):
    """Source of token fetchers for the home tenant and any other tenant."""

    auth_method: str

    def common_credential(self) -> TokenFetcher:
        ...

    def credential_for_tenant(self, tenant_id: str) -> TokenFetcher:
        ...


def access_token_from_result(result: Optional[Dict[str, Any]], tenant_id: str) -> AccessToken:
    """Convert an MSAL result dict into an ``AccessToken`` or raise a classified error."""
    if result and "access_token" in result:
        expires_in = int(result.get("expires_in", 3600))
        return AccessToken(result["access_token"], int(time.time()) + expires_in)

    result = result or {}
    error = result.get("error")
    codes = set(result.get("error_codes") or [])
    message = f"Token acquisition failed for tenant {tenant_id}: {json.dumps(result)}"
    if error in _DENIAL_ERRORS or codes & _DENIAL_AADSTS_CODES:
        raise AuthenticationDenied(message, tenant_id=tenant_id)
    raise ProviderUnavailable(message, tenant_id=tenant_id)


class _MsalConfidentialFetcher:
    """Token fetcher for one tenant backed by an MSAL confidential client."""

    def __init__(self, app: msal.ConfidentialClientApplication, tenant_id: str, audit: JsonAuditLogger):
        self.app = app
        self.tenant_id = tenant_id
        self.audit = audit

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        try:
            result = self.app.acquire_token_for_client(scopes=list(scopes), claims_challenge=kwargs.get("claims"))
        except (ValueError, OSError) as exc:
            raise ProviderUnavailable(f"MSAL request failed for tenant {self.tenant_id}", self.tenant_id) from exc
        token = access_token_from_result(result, self.tenant_id)
        self.audit.info("acquired_app_token", tenant_id=self.tenant_id, auth_type="confidential_client")
        return token


class _ConfidentialClientProvider:
    """Shared logic for service principals authenticating with MSAL."""

    auth_method = "service_principal"

    def __init__(
        self,
        client_id: str,
        home_tenant_id: str,
        environment: CloudEnvironment,
        audit_logger: Optional[JsonAuditLogger] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id
        self.home_tenant_id = home_tenant_id
        self.environment = environment
        self.audit = audit_logger or JsonAuditLogger()
        self.timeout = timeout
        self._token_cache = msal.TokenCache()

    def _client_credential(self) -> Any:
        raise NotImplementedError

    def common_credential(self) -> TokenFetcher:
        return self.credential_for_tenant(self.home_tenant_id)

    def credential_for_tenant(self, tenant_id: str) -> TokenFetcher:
        app = msal.ConfidentialClientApplication(
            client_id=self.client_id,
            client_credential=self._client_credential(),
            authority=self.environment.authority(tenant_id),
            token_cache=self._token_cache,
            timeout=self.timeout,
        )
        return _MsalConfidentialFetcher(app, tenant_id, self.audit)


class ClientSecretProvider(_ConfidentialClientProvider):
    def __init__(self, auth_config: ClientSecretAuth, environment: CloudEnvironment, **kwargs: Any):
        super().__init__(auth_config.client_id, auth_config.home_tenant_id, environment, **kwargs)
        self.auth_config = auth_config

    def _client_credential(self) -> Any:
        return self.auth_config.client_secret.resolve()


class CertificateProvider(_ConfidentialClientProvider):
    def __init__(self, auth_config: CertificateAuth, environment: CloudEnvironment, **kwargs: Any):
        super().__init__(auth_config.client_id, auth_config.home_tenant_id, environment, **kwargs)
        self.auth_config = auth_config
        self._certificate: Optional[Dict[str, Any]] = None

    def _client_credential(self) -> Any:
        if self._certificate is None:
            self._certificate = self._load_certificate(Path(self.auth_config.certificate_path))
        return self._certificate

    def _load_certificate(self, path: Path) -> Dict[str, Any]:
        password = None
        if self.auth_config.certificate_password:
            password = self.auth_config.certificate_password.resolve()
        try:
            with path.open("rb") as handle:
                certificate_bytes = handle.read()
        except OSError as exc:
            raise NotConfiguredError(f"Failed to read certificate at {path}: {exc}") from exc

        return {
            "private_key": certificate_bytes.decode("utf-8"),
            "thumbprint": self.auth_config.certificate_thumbprint,
            "passphrase": password,
        }


class _RefreshTokenFetcher:
    def __init__(self, provider: "RefreshTokenProvider", tenant_id: str):
        self.provider = provider
        self.tenant_id = tenant_id

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return self.provider.acquire(self.tenant_id, list(scopes), kwargs.get("claims"))


class RefreshTokenProvider:
    """Redeems one user refresh token against any tenant's authority.

    The common credential targets the ``organizations`` authority, which is
    enough to enumerate tenants. When AAD rotates the refresh token the new
    one replaces the old for every tenant.
    """

    auth_method = "refresh_token"

    def __init__(
        self,
        refresh_token: str,
        environment: CloudEnvironment,
        client_id: str,
        audit_logger: Optional[JsonAuditLogger] = None,
        timeout: Optional[float] = None,
    ):
        if not refresh_token:
            raise NotConfiguredError("A refresh token is required")
        self.environment = environment
        self.client_id = client_id
        self.audit = audit_logger or JsonAuditLogger()
        self.timeout = timeout
        self._refresh_token = refresh_token
        self._lock = Lock()
        self._apps: Dict[str, msal.PublicClientApplication] = {}

    def common_credential(self) -> TokenFetcher:
        return _RefreshTokenFetcher(self, COMMON_TENANT)

    def credential_for_tenant(self, tenant_id: str) -> TokenFetcher:
        return _RefreshTokenFetcher(self, tenant_id)

    def _app(self, tenant_id: str) -> msal.PublicClientApplication:
        with self._lock:
            app = self._apps.get(tenant_id)
            if app is None:
                app = msal.PublicClientApplication(
                    client_id=self.client_id,
                    authority=self.environment.authority(tenant_id),
                    timeout=self.timeout,
                )
                self._apps[tenant_id] = app
            return app

    def acquire(self, tenant_id: str, scopes: list, claims: Optional[str] = None) -> AccessToken:
        app = self._app(tenant_id)
        with self._lock:
            refresh_token = self._refresh_token
        try:
            result = app.acquire_token_by_refresh_token(refresh_token, scopes=scopes, claims_challenge=claims)
        except (ValueError, OSError) as exc:
            raise ProviderUnavailable(f"MSAL request failed for tenant {tenant_id}", tenant_id) from exc
        token = access_token_from_result(result, tenant_id)
        rotated = result.get("refresh_token")
        if rotated:
            with self._lock:
                self._refresh_token = rotated
        self.audit.info("acquired_user_token", tenant_id=tenant_id, auth_type="refresh_token")
        return token


class ManagedIdentityProvider:
    """Managed identities live in a single tenant; every tenant maps to the same credential."""

    auth_method = "managed_identity"

    def __init__(self, auth_config: ManagedIdentityAuth, audit_logger: Optional[JsonAuditLogger] = None):
        self.credential = ManagedIdentityCredential(client_id=auth_config.client_id)
        self.audit = audit_logger or JsonAuditLogger()

    def common_credential(self) -> TokenFetcher:
        return self.credential

    def credential_for_tenant(self, tenant_id: str) -> TokenFetcher:
        self.audit.debug("managed_identity_tenant_ignored", tenant_id=tenant_id)
        return self.credential


def build_provider(
    auth_config: Any,
    environment: CloudEnvironment,
    audit_logger: Optional[JsonAuditLogger] = None,
    timeout: Optional[float] = None,
) -> CredentialProvider:
    if isinstance(auth_config, ClientSecretAuth):
        return ClientSecretProvider(auth_config, environment, audit_logger=audit_logger, timeout=timeout)
    if isinstance(auth_config, CertificateAuth):
        return CertificateProvider(auth_config, environment, audit_logger=audit_logger, timeout=timeout)
    if isinstance(auth_config, RefreshTokenAuth):
        return RefreshTokenProvider(
            auth_config.refresh_token.resolve(),
            environment,
            auth_config.client_id,
            audit_logger=audit_logger,
            timeout=timeout,
        )
    if isinstance(auth_config, ManagedIdentityAuth):
        return ManagedIdentityProvider(auth_config, audit_logger=audit_logger)

    raise ValueError("Unsupported authentication configuration")
