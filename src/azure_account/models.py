from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Tuple

from .config import AZURE


@dataclass(frozen=True)
class SubscriptionEntity:
    id: str
    name: str
    tenant_id: str
    environment: str = AZURE.name
    selected: bool = False
    state: Optional[str] = None

    @property
    def key(self) -> str:
        return self.id.lower()

    def matches(self, subscription_id: str) -> bool:
        return self.key == subscription_id.lower()


@dataclass(frozen=True)
class AccountEntity:
    """Immutable snapshot of what an identity can reach.

    ``tenant_ids`` is ``None`` until tenants are known. A snapshot is never
    edited; discovery and selection produce a new one through
    :class:`AccountEntityBuilder`.
    """

    environment: str = AZURE.name
    tenant_ids: Optional[Tuple[str, ...]] = None
    subscriptions: Tuple[SubscriptionEntity, ...] = ()
    selected_subscriptions: Tuple[SubscriptionEntity, ...] = ()
    authenticated: bool = True
    error: Optional[BaseException] = field(default=None, compare=False)
    auth_method: Optional[str] = None

    def find_subscription(self, subscription_id: str) -> Optional[SubscriptionEntity]:
        for subscription in self.subscriptions:
            if subscription.matches(subscription_id):
                return subscription
        return None

    def to_builder(self) -> "AccountEntityBuilder":
        return AccountEntityBuilder(
            environment=self.environment,
            tenant_ids=None if self.tenant_ids is None else list(self.tenant_ids),
            subscriptions=list(self.subscriptions),
            authenticated=self.authenticated,
            error=self.error,
            auth_method=self.auth_method,
        )


class AccountEntityBuilder:
    """Mutable staging area for the next :class:`AccountEntity` snapshot."""

    def __init__(
        self,
        environment: str = AZURE.name,
        tenant_ids: Optional[List[str]] = None,
        subscriptions: Optional[List[SubscriptionEntity]] = None,
        authenticated: bool = True,
        error: Optional[BaseException] = None,
        auth_method: Optional[str] = None,
    ):
        self.environment = environment
        self.tenant_ids = tenant_ids
        self.subscriptions: List[SubscriptionEntity] = subscriptions or []
        self.authenticated = authenticated
        self.error = error
        self.auth_method = auth_method

    def fail(self, error: BaseException) -> "AccountEntityBuilder":
        self.authenticated = False
        self.error = error
        return self

    def mark_selected(self, subscription_ids: Iterable[str]) -> "AccountEntityBuilder":
        wanted = {subscription_id.lower() for subscription_id in subscription_ids}
        self.subscriptions = [
            replace(s, selected=True) if s.key in wanted and not s.selected else s
            for s in self.subscriptions
        ]
        return self

    def build(self) -> AccountEntity:
        subscriptions = tuple(self.subscriptions)
        return AccountEntity(
            environment=self.environment,
            tenant_ids=None if self.tenant_ids is None else tuple(self.tenant_ids),
            subscriptions=subscriptions,
            selected_subscriptions=tuple(s for s in subscriptions if s.selected),
            authenticated=self.authenticated,
            error=self.error,
            auth_method=self.auth_method,
        )

