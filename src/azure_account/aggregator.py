from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .audit import JsonAuditLogger
from .config import CloudEnvironment, TenantPruning, get_environment
from .errors import DiscoveryTimeout, LoginFailureError, ProviderUnavailable, is_authentication_denied
from .management_client import DiscoveryClient, ManagementClient
from .models import AccountEntity, SubscriptionEntity
from .providers import CredentialProvider, TokenFetcher

logger = logging.getLogger(__name__)

ClientFactory = Callable[[TokenFetcher, CloudEnvironment, Optional[str]], DiscoveryClient]


@dataclass
class TenantListing:
    tenant_id: str
    subscriptions: List[SubscriptionEntity] = field(default_factory=list)
    error: Optional[BaseException] = None


class TenantAggregator:
    """Discovers tenants and subscriptions for one identity and merges them.

    Tenants are listed in parallel, but results are merged in the order of
    the tenant list so the canonical owner of a subscription seen under
    several tenants does not depend on which call finished first.
    """

    def __init__(
        self,
        audit_logger: Optional[JsonAuditLogger] = None,
        client_factory: Optional[ClientFactory] = None,
        max_workers: int = 8,
        timeout: Optional[float] = None,
        pruning: TenantPruning = TenantPruning.CONTRIBUTING,
        request_timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.audit = audit_logger or JsonAuditLogger()
        self.client_factory = client_factory or self._default_client_factory
        self.max_workers = max_workers
        self.timeout = timeout
        self.pruning = pruning
        self.request_timeout = request_timeout
        self.max_retries = max_retries

    def _default_client_factory(
        self, credential: TokenFetcher, environment: CloudEnvironment, tenant_id: Optional[str]
    ) -> DiscoveryClient:
        return ManagementClient(
            credential,
            environment,
            audit_logger=self.audit,
            tenant_id=tenant_id,
            timeout=self.request_timeout,
            max_retries=self.max_retries,
        )

    def initialize(self, entity: AccountEntity, provider: CredentialProvider) -> AccountEntity:
        correlation_id = str(uuid.uuid4())
        environment = get_environment(entity.environment)
        builder = entity.to_builder()
        builder.environment = environment.name

        tenant_ids = list(entity.tenant_ids or [])
        if not tenant_ids:
            tenant_ids = self.discover_tenants(provider, environment, correlation_id)
        tenant_ids = list(dict.fromkeys(tenant_ids))

        listings = self.list_subscriptions(provider, environment, tenant_ids, correlation_id)

        merged: Dict[str, SubscriptionEntity] = {}
        valid_tenants: List[str] = []
        for tenant_id in tenant_ids:
            listing = listings[tenant_id]
            if listing.error is not None:
                if is_authentication_denied(listing.error):
                    self.audit.warning(
                        "tenant_skipped",
                        tenant_id=tenant_id,
                        correlation_id=correlation_id,
                        reason=listing.error,
                    )
                else:
                    self.audit.error(
                        "tenant_listing_failed",
                        tenant_id=tenant_id,
                        correlation_id=correlation_id,
                        error=listing.error,
                    )
                    builder.fail(listing.error)
                continue

            for subscription in listing.subscriptions:
                if subscription.key in merged:
                    if self.pruning is TenantPruning.DUPLICATES_ONLY:
                        _append_unique(valid_tenants, tenant_id)
                    continue
                merged[subscription.key] = subscription
                if self.pruning is TenantPruning.CONTRIBUTING:
                    _append_unique(valid_tenants, tenant_id)

        builder.tenant_ids = valid_tenants
        builder.subscriptions = list(merged.values())
        if not merged:
            builder.authenticated = False
        snapshot = builder.build()

        self.audit.info(
            "account_initialized",
            correlation_id=correlation_id,
            authenticated=snapshot.authenticated,
            tenants=list(snapshot.tenant_ids or ()),
            subscription_count=len(snapshot.subscriptions),
        )
        return snapshot

    def discover_tenants(
        self, provider: CredentialProvider, environment: CloudEnvironment, correlation_id: Optional[str] = None
    ) -> List[str]:
        try:
            client = self.client_factory(provider.common_credential(), environment, None)
            try:
                tenant_ids = client.list_tenants()
            finally:
                _close(client)
        except Exception as exc:
            self.audit.error("tenant_discovery_failed", correlation_id=correlation_id, error=exc)
            raise LoginFailureError("Failed to list tenants for the signed-in identity") from exc

        self.audit.info("tenants_discovered", correlation_id=correlation_id, tenants=tenant_ids)
        return tenant_ids

    def list_subscriptions(
        self,
        provider: CredentialProvider,
        environment: CloudEnvironment,
        tenant_ids: Sequence[str],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, TenantListing]:
        listings: Dict[str, TenantListing] = {}
        if not tenant_ids:
            return listings

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tenant_ids)), thread_name_prefix="tenant-discovery"
        )
        try:
            futures: Dict[str, Future] = {
                tenant_id: executor.submit(self._list_tenant, provider, environment, tenant_id)
                for tenant_id in tenant_ids
            }
            for tenant_id, future in futures.items():
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    listings[tenant_id] = TenantListing(tenant_id, subscriptions=future.result(timeout=remaining))
                except FutureTimeoutError:
                    future.cancel()
                    listings[tenant_id] = TenantListing(
                        tenant_id,
                        error=DiscoveryTimeout(f"Listing subscriptions timed out for tenant {tenant_id}", tenant_id),
                    )
                except Exception as exc:
                    listings[tenant_id] = TenantListing(tenant_id, error=exc)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.audit.debug(
            "tenant_listings_collected",
            correlation_id=correlation_id,
            succeeded=[t for t, listing in listings.items() if listing.error is None],
            failed=[t for t, listing in listings.items() if listing.error is not None],
        )
        return listings

    def _list_tenant(
        self, provider: CredentialProvider, environment: CloudEnvironment, tenant_id: str
    ) -> List[SubscriptionEntity]:
        try:
            credential = provider.credential_for_tenant(tenant_id)
        except Exception as exc:
            raise ProviderUnavailable(f"No credential available for tenant {tenant_id}", tenant_id) from exc

        client = self.client_factory(credential, environment, tenant_id)
        try:
            items = client.list_subscriptions()
        finally:
            _close(client)

        return [
            SubscriptionEntity(
                id=item["id"],
                name=item.get("displayName") or item["id"],
                tenant_id=tenant_id,
                environment=environment.name,
                state=item.get("state"),
            )
            for item in items
        ]


def _append_unique(values: List[str], value: str) -> None:
    if value not in values:
        values.append(value)


def _close(client: object) -> None:
    close = getattr(client, "close", None)
    if callable(close):
        close()
