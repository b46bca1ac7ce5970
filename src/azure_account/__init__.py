"""Multi-tenant Azure account sessions.

Discovers every tenant and subscription an identity can reach, merges them
into one account view, and hands out cached, tenant-scoped credentials per
subscription.
"""
from __future__ import annotations

from .aggregator import TenantAggregator
from .audit import InMemoryAuditStore, JsonAuditLogger
from .config import AccountConfig, CloudEnvironment, TenantPruning, get_environment
from .errors import (
    AccountError,
    AuthenticationDenied,
    DiscoveryTimeout,
    LoginFailureError,
    NotAuthenticatedError,
    NotConfiguredError,
    ProviderUnavailable,
    TokenFetchTimeout,
    UnknownSubscriptionError,
)
from .legacy import LegacyCredential
from .models import AccountEntity, SubscriptionEntity
from .providers import CredentialProvider, TokenFetcher, build_provider
from .selector import SubscriptionSelector
from .session import AccountSession, SessionState
from .token_cache import CachedCredential, TokenCache

__all__ = [
    "AccountConfig",
    "AccountEntity",
    "AccountError",
    "AccountSession",
    "AuthenticationDenied",
    "CachedCredential",
    "CloudEnvironment",
    "CredentialProvider",
    "DiscoveryTimeout",
    "InMemoryAuditStore",
    "JsonAuditLogger",
    "LegacyCredential",
    "LoginFailureError",
    "NotAuthenticatedError",
    "NotConfiguredError",
    "ProviderUnavailable",
    "SessionState",
    "SubscriptionEntity",
    "SubscriptionSelector",
    "TenantAggregator",
    "TenantPruning",
    "TokenCache",
    "TokenFetchTimeout",
    "TokenFetcher",
    "UnknownSubscriptionError",
    "build_provider",
    "get_environment",
]
