from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Protocol

import httpx

from .audit import JsonAuditLogger
from .config import CloudEnvironment
from .errors import AuthenticationDenied, ProviderUnavailable
from .providers import TokenFetcher

logger = logging.getLogger(__name__)

API_VERSION = "2020-01-01"
_RETRY_STATUSES = (429, 503, 504)


class DiscoveryClient(Protocol):
    def list_tenants(self) -> List[str]:
        ...

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        ...


class ManagementClient:
    """Resource Manager client for tenant and subscription discovery.

    Requests are authorized with whatever token fetcher it is given, so one
    instance sees exactly what that tenant-scoped identity can see.
    Throttling responses are retried with backoff; 401/403 become
    :class:`AuthenticationDenied`.
    """

    def __init__(
        self,
        credential: TokenFetcher,
        environment: CloudEnvironment,
        audit_logger: Optional[JsonAuditLogger] = None,
        tenant_id: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.credential = credential
        self.environment = environment
        self.audit = audit_logger or JsonAuditLogger()
        self.tenant_id = tenant_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = httpx.Client(timeout=self.timeout, transport=transport)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ManagementClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _auth_header(self) -> Dict[str, str]:
        token = self.credential.get_token(self.environment.management_scope)
        return {"Authorization": f"Bearer {token.token}"}

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers.update(self._auth_header())
        backoff = 1.0

        attempt = 0
        while True:
            attempt += 1
            response = self.session.request(method, url, headers=headers, **kwargs)
            if response.status_code in _RETRY_STATUSES:
                if attempt > self.max_retries:
                    self.audit.error(
                        "arm_retries_exhausted",
                        tenant_id=self.tenant_id,
                        status=response.status_code,
                        attempts=attempt,
                        url=url,
                    )
                    raise ProviderUnavailable(
                        "Maximum retry attempts exceeded for Resource Manager request", self.tenant_id
                    )
                retry_after = self._get_retry_after_seconds(response) or backoff
                self.audit.warning(
                    "arm_throttled",
                    tenant_id=self.tenant_id,
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                time.sleep(retry_after)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code in (401, 403):
                self.audit.warning(
                    "arm_request_denied",
                    tenant_id=self.tenant_id,
                    status=response.status_code,
                    url=url,
                )
                raise AuthenticationDenied(
                    f"Listing denied with HTTP {response.status_code}: {response.text}",
                    tenant_id=self.tenant_id,
                )

            if response.status_code >= 400:
                self.audit.error(
                    "arm_request_failed",
                    tenant_id=self.tenant_id,
                    status=response.status_code,
                    url=url,
                    body=response.text,
                )
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise ProviderUnavailable(
                        f"Resource Manager returned HTTP {response.status_code}", tenant_id=self.tenant_id
                    ) from exc

            self.audit.debug(
                "arm_request_succeeded",
                tenant_id=self.tenant_id,
                status=response.status_code,
                url=url,
            )
            return response

    def _get_retry_after_seconds(self, response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def _paged(self, path: str) -> Iterator[Dict[str, Any]]:
        base = self.environment.resource_manager_endpoint.rstrip("/")
        url: Optional[str] = f"{base}{path}"
        params: Optional[Dict[str, str]] = {"api-version": API_VERSION}
        while url:
            data = self.request("GET", url, params=params).json()
            yield from data.get("value", [])
            # nextLink already carries its query string
            url = data.get("nextLink")
            params = None

    def list_tenants(self) -> List[str]:
        return [item["tenantId"] for item in self._paged("/tenants") if item.get("tenantId")]

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": item["subscriptionId"],
                "displayName": item.get("displayName") or item["subscriptionId"],
                "state": item.get("state"),
            }
            for item in self._paged("/subscriptions")
            if item.get("subscriptionId")
        ]
