from __future__ import annotations

from typing import Iterator, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import CredentialUnavailableError


class AccountError(Exception):
    """Base class for account session failures."""


class LoginFailureError(AccountError):
    """The top-level identity could not be used to discover tenants."""


class AuthenticationDenied(AccountError):
    """The identity is not authorized for the requested tenant or resource."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class ProviderUnavailable(AccountError):
    """A credential or listing call failed for a reason other than denial."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class DiscoveryTimeout(ProviderUnavailable):
    pass


class TokenFetchTimeout(ProviderUnavailable):
    pass


class NotAuthenticatedError(AccountError):
    pass


class NotConfiguredError(AccountError):
    pass


class UnknownSubscriptionError(AccountError, KeyError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription {subscription_id} is not available to this account")
        self.subscription_id = subscription_id

    def __str__(self) -> str:
        return self.args[0]


def iter_causes(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` followed by its explicit or implicit causes, outermost first."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def is_authentication_denied(exc: BaseException) -> bool:
    """True when the failure comes from the identity being refused, not from an unreachable credential."""
    for cause in iter_causes(exc):
        if isinstance(cause, CredentialUnavailableError):
            return False
        if isinstance(cause, (AuthenticationDenied, ClientAuthenticationError)):
            return True
    return False
