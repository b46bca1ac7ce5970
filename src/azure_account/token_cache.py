from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from azure.core.credentials import AccessToken

from .audit import JsonAuditLogger
from .errors import NotAuthenticatedError, TokenFetchTimeout
from .providers import CredentialProvider, TokenFetcher

logger = logging.getLogger(__name__)

ScopeKey = Tuple[str, ...]


class CachedCredential:
    """Tenant-scoped token fetcher that memoizes tokens per scope set.

    A token is reused until ``refresh_margin`` seconds before it expires.
    Refreshes are single-flighted: while one caller is fetching, other
    callers asking for the same scopes wait for that fetch and share its
    result or its exception. Failed fetches are not remembered.
    """

    def __init__(
        self,
        tenant_id: str,
        credential: TokenFetcher,
        refresh_margin: float = 300.0,
        fetch_timeout: Optional[float] = None,
        audit_logger: Optional[JsonAuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.tenant_id = tenant_id
        self.credential = credential
        self.refresh_margin = refresh_margin
        self.fetch_timeout = fetch_timeout
        self.audit = audit_logger or JsonAuditLogger()
        self._clock = clock
        self._lock = Lock()
        self._tokens: Dict[ScopeKey, AccessToken] = {}
        self._in_flight: Dict[ScopeKey, "Future[AccessToken]"] = {}

    def _is_fresh(self, token: AccessToken) -> bool:
        return token.expires_on - self.refresh_margin > self._clock()

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        requested_tenant = kwargs.pop("tenant_id", None)
        if requested_tenant and requested_tenant.lower() != self.tenant_id.lower():
            raise ValueError(
                f"Credential for tenant {self.tenant_id} cannot issue tokens for tenant {requested_tenant}"
            )
        if not scopes:
            raise ValueError("At least one scope is required")
        if kwargs.get("claims"):
            # claims challenges must reach the identity provider
            return self.credential.get_token(*scopes, **kwargs)

        key: ScopeKey = tuple(sorted(set(scopes)))
        with self._lock:
            cached = self._tokens.get(key)
            if cached is not None and self._is_fresh(cached):
                return cached
            flight = self._in_flight.get(key)
            leader = flight is None
            if flight is None:
                flight = Future()
                self._in_flight[key] = flight

        if not leader:
            try:
                return flight.result(timeout=self.fetch_timeout)
            except FutureTimeoutError as exc:
                raise TokenFetchTimeout(
                    f"Timed out waiting for a token refresh on tenant {self.tenant_id}", self.tenant_id
                ) from exc

        try:
            token = self.credential.get_token(*scopes, **kwargs)
        except BaseException as exc:
            with self._lock:
                self._in_flight.pop(key, None)
            flight.set_exception(exc)
            self.audit.warning("token_refresh_failed", tenant_id=self.tenant_id, scopes=key, error=exc)
            raise

        with self._lock:
            self._tokens[key] = token
            self._in_flight.pop(key, None)
        flight.set_result(token)
        self.audit.debug("token_refreshed", tenant_id=self.tenant_id, scopes=key, expires_on=token.expires_on)
        return token

    def fetch(self, scopes: Sequence[str]) -> AccessToken:
        return self.get_token(*scopes)


class TokenCache:
    """One :class:`CachedCredential` per tenant, created on first use."""

    def __init__(
        self,
        provider: CredentialProvider,
        refresh_margin: float = 300.0,
        fetch_timeout: Optional[float] = None,
        audit_logger: Optional[JsonAuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.refresh_margin = refresh_margin
        self.fetch_timeout = fetch_timeout
        self.audit = audit_logger or JsonAuditLogger()
        self._clock = clock
        self._lock = Lock()
        self._entries: Dict[str, CachedCredential] = {}
        self._pending: Dict[str, "Future[CachedCredential]"] = {}
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    def tenant_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def resolve(self, tenant_id: str) -> CachedCredential:
        """Return the tenant's credential, creating it on first use.

        The provider is called outside the cache-wide lock. Concurrent first
        requests for the same tenant wait on one pending fill; a failed fill
        is dropped so the next request retries.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        with self._lock:
            if self._closed:
                raise NotAuthenticatedError("The account has been logged out")
            entry = self._entries.get(tenant_id)
            if entry is not None:
                return entry
            pending = self._pending.get(tenant_id)
            leader = pending is None
            if pending is None:
                pending = Future()
                self._pending[tenant_id] = pending

        if not leader:
            try:
                return pending.result(timeout=self.fetch_timeout)
            except FutureTimeoutError as exc:
                raise TokenFetchTimeout(
                    f"Timed out waiting for the credential of tenant {tenant_id}", tenant_id
                ) from exc

        try:
            entry = CachedCredential(
                tenant_id,
                self.provider.credential_for_tenant(tenant_id),
                refresh_margin=self.refresh_margin,
                fetch_timeout=self.fetch_timeout,
                audit_logger=self.audit,
                clock=self._clock,
            )
            with self._lock:
                self._pending.pop(tenant_id, None)
                if self._closed:
                    raise NotAuthenticatedError("The account has been logged out")
                self._entries[tenant_id] = entry
        except BaseException as exc:
            with self._lock:
                self._pending.pop(tenant_id, None)
            pending.set_exception(exc)
            raise

        pending.set_result(entry)
        self.audit.info("tenant_credential_created", tenant_id=tenant_id)
        return entry

    def get_access_token(self, tenant_id: str, scopes: Sequence[str]) -> AccessToken:
        return self.resolve(tenant_id).get_token(*scopes)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._entries = {}
