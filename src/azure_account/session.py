from __future__ import annotations

import logging
import time
from enum import Enum
from threading import Lock, RLock
from typing import Callable, List, Optional, Sequence, Tuple

from azure.core.credentials import AccessToken

from .aggregator import TenantAggregator
from .audit import JsonAuditLogger
from .config import AccountConfig, CloudEnvironment, get_environment
from .errors import NotAuthenticatedError, NotConfiguredError, UnknownSubscriptionError
from .legacy import LegacyCredential, to_legacy_credential
from .models import AccountEntity, SubscriptionEntity
from .providers import CredentialProvider, build_provider
from .selector import SubscriptionSelector
from .token_cache import CachedCredential, TokenCache

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INITIALIZED = "initialized"
    LOGGED_OUT = "logged_out"


class AccountSession:
    """Account lifecycle and per-subscription credential lookup.

    An entity and a credential provider are attached, ``initialize`` runs
    discovery once, and afterwards credentials are handed out per
    subscription from a per-tenant cache. ``logout`` drops the entity,
    the provider and every cached credential; a new ``initialize`` with a
    freshly attached entity and provider is needed to use the session again.
    """

    def __init__(
        self,
        entity: Optional[AccountEntity] = None,
        provider: Optional[CredentialProvider] = None,
        audit_logger: Optional[JsonAuditLogger] = None,
        aggregator: Optional[TenantAggregator] = None,
        selector: Optional[SubscriptionSelector] = None,
        refresh_margin: float = 300.0,
        fetch_timeout: Optional[float] = None,
        default_selection: Sequence[str] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.audit = audit_logger or JsonAuditLogger()
        self.aggregator = aggregator or TenantAggregator(audit_logger=self.audit)
        self.selector = selector or SubscriptionSelector(audit_logger=self.audit)
        self.refresh_margin = refresh_margin
        self.fetch_timeout = fetch_timeout
        self.default_selection = [default_selection] if isinstance(default_selection, str) else list(default_selection)
        self._clock = clock
        self._lock = RLock()
        self._initialize_lock = Lock()
        self._entity = entity
        self._provider = provider
        self._cache: Optional[TokenCache] = None
        self._state = SessionState.UNAUTHENTICATED

    @classmethod
    def from_config(
        cls,
        config: AccountConfig,
        entity: Optional[AccountEntity] = None,
        provider: Optional[CredentialProvider] = None,
        audit_logger: Optional[JsonAuditLogger] = None,
    ) -> "AccountSession":
        audit = audit_logger or JsonAuditLogger()
        provider = provider or build_provider(
            config.auth, config.cloud, audit_logger=audit, timeout=config.discovery.request_timeout
        )
        if entity is None:
            entity = AccountEntity(
                environment=config.cloud.name,
                tenant_ids=tuple(config.tenant_ids) if config.tenant_ids else None,
                auth_method=getattr(provider, "auth_method", None),
            )
        aggregator = TenantAggregator(
            audit_logger=audit,
            max_workers=config.discovery.max_workers,
            timeout=config.discovery.timeout,
            pruning=config.discovery.tenant_pruning,
            request_timeout=config.discovery.request_timeout,
            max_retries=config.discovery.max_retries,
        )
        return cls(
            entity=entity,
            provider=provider,
            audit_logger=audit,
            aggregator=aggregator,
            refresh_margin=config.token_cache.refresh_margin,
            fetch_timeout=config.token_cache.fetch_timeout,
            default_selection=config.selected_subscriptions,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def entity(self) -> Optional[AccountEntity]:
        return self._entity

    @entity.setter
    def entity(self, entity: Optional[AccountEntity]) -> None:
        with self._lock:
            self._entity = entity

    @property
    def provider(self) -> Optional[CredentialProvider]:
        return self._provider

    @provider.setter
    def provider(self, provider: Optional[CredentialProvider]) -> None:
        with self._lock:
            if provider is self._provider:
                return
            self._provider = provider
            self._discard_cache()

    @property
    def token_cache(self) -> Optional[TokenCache]:
        return self._cache

    @property
    def environment(self) -> CloudEnvironment:
        entity = self._entity
        return get_environment(entity.environment if entity else None)

    def initialize(self) -> AccountEntity:
        with self._initialize_lock:
            with self._lock:
                entity, provider = self._entity, self._provider
            if entity is None:
                raise NotConfiguredError("Cannot initialize from a missing account entity")
            if provider is None:
                raise NotConfiguredError("No credential provider is attached to the account")

            snapshot = self.aggregator.initialize(entity, provider)
            if snapshot.authenticated and self.default_selection:
                snapshot = self.selector.select(snapshot, self.default_selection)

            with self._lock:
                if self._provider is not provider:
                    raise NotAuthenticatedError("The account was logged out during initialization")
                self._entity = snapshot
                self._state = SessionState.INITIALIZED
            return snapshot

    def is_authenticated(self) -> bool:
        with self._lock:
            return (
                self._state is SessionState.INITIALIZED
                and self._entity is not None
                and self._entity.authenticated
            )

    def subscriptions(self) -> List[SubscriptionEntity]:
        entity = self._entity
        return list(entity.subscriptions) if entity else []

    def selected_subscriptions(self) -> List[SubscriptionEntity]:
        entity = self._entity
        return list(entity.selected_subscriptions) if entity else []

    def select(self, subscription_ids: Sequence[str]) -> List[SubscriptionEntity]:
        with self._lock:
            if self._state is not SessionState.INITIALIZED or self._entity is None:
                raise NotAuthenticatedError("Please login first.")
            self._entity = self.selector.select(self._entity, subscription_ids)
            return list(self._entity.selected_subscriptions)

    def subscription(self, subscription_id: str) -> SubscriptionEntity:
        entity = self._entity
        found = entity.find_subscription(subscription_id) if entity else None
        if found is None:
            raise UnknownSubscriptionError(subscription_id)
        return found

    def cached_tenant_ids(self) -> List[str]:
        cache = self._cache
        return cache.tenant_ids() if cache else []

    def _require_authenticated(self) -> Tuple[AccountEntity, TokenCache]:
        with self._lock:
            entity = self._entity
            if self._state is not SessionState.INITIALIZED or entity is None or not entity.authenticated:
                error = entity.error if entity is not None else None
                raise NotAuthenticatedError("Please login first.") from error
            if self._provider is None:
                raise NotConfiguredError("Azure account should be initialized with a credential provider first.")
            if self._cache is None:
                self._cache = TokenCache(
                    self._provider,
                    refresh_margin=self.refresh_margin,
                    fetch_timeout=self.fetch_timeout,
                    audit_logger=self.audit,
                    clock=self._clock,
                )
            return entity, self._cache

    def get_credential(self, subscription_id: str) -> Optional[CachedCredential]:
        entity, cache = self._require_authenticated()
        subscription = entity.find_subscription(subscription_id)
        if subscription is None or not subscription.tenant_id:
            self.audit.warning("unknown_subscription", subscription_id=subscription_id)
            return None
        return cache.resolve(subscription.tenant_id)

    def get_legacy_credential(self, subscription_id: str) -> Optional[LegacyCredential]:
        entity, cache = self._require_authenticated()
        subscription = entity.find_subscription(subscription_id)
        if subscription is None or not subscription.tenant_id:
            self.audit.warning("unknown_subscription", subscription_id=subscription_id)
            return None
        return to_legacy_credential(
            get_environment(entity.environment),
            subscription.tenant_id,
            cache.resolve(subscription.tenant_id),
            subscription_id=subscription.id,
        )

    def get_access_token(self, subscription_id: str, scopes: Optional[Sequence[str]] = None) -> AccessToken:
        credential = self.get_credential(subscription_id)
        if credential is None:
            raise UnknownSubscriptionError(subscription_id)
        return credential.get_token(*(scopes or [self.environment.management_scope]))

    def _discard_cache(self) -> None:
        if self._cache is not None:
            self._cache.close()
            self._cache = None

    def logout(self) -> "AccountSession":
        with self._lock:
            dropped = len(self._cache) if self._cache is not None else 0
            self._entity = None
            self._provider = None
            self._discard_cache()
            self._state = SessionState.LOGGED_OUT
        self.audit.info("account_logged_out", dropped_credentials=dropped)
        return self
