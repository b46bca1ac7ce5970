"""Fakes shared across the test suite.

``FakeProvider`` hands out counting token fetchers per tenant and
``FakeBackend`` plays the Resource Manager listing API, including slow
tenants and failing tenants.
"""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Union

import pytest
from azure.core.credentials import AccessToken

from azure_account.audit import InMemoryAuditStore, JsonAuditLogger
from azure_account.config import AZURE


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    def __init__(
        self,
        tenant_id: str,
        clock: FakeClock,
        lifetime: int = 3600,
        errors: Optional[List[BaseException]] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.tenant_id = tenant_id
        self.clock = clock
        self.lifetime = lifetime
        self.errors = list(errors or [])
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0
        self.scopes: List[tuple] = []
        self._lock = threading.Lock()

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        with self._lock:
            self.calls += 1
            call = self.calls
            self.scopes.append(scopes)
            error = self.errors.pop(0) if self.errors else None
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if error is not None:
            raise error
        return AccessToken(f"{self.tenant_id}-token-{call}", int(self.clock()) + self.lifetime)


class FakeProvider:
    auth_method = "fake"

    def __init__(self, clock: Optional[FakeClock] = None, failing_tenants: Optional[Dict[str, BaseException]] = None):
        self.clock = clock or FakeClock()
        self.failing_tenants = failing_tenants or {}
        self.fetchers: Dict[str, FakeFetcher] = {}
        self.requested: List[str] = []
        self._lock = threading.Lock()

    def common_credential(self) -> FakeFetcher:
        return self.credential_for_tenant("organizations")

    def credential_for_tenant(self, tenant_id: str) -> FakeFetcher:
        with self._lock:
            self.requested.append(tenant_id)
            if tenant_id in self.failing_tenants:
                raise self.failing_tenants[tenant_id]
            return self.fetchers.setdefault(tenant_id, FakeFetcher(tenant_id, self.clock))


Listing = Union[List[str], BaseException]


class FakeBackend:
    """Stand-in for the Resource Manager tenants/subscriptions endpoints."""

    def __init__(
        self,
        tenants: Optional[List[str]] = None,
        subscriptions: Optional[Dict[str, Listing]] = None,
        tenant_error: Optional[BaseException] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.tenants = tenants or []
        self.subscriptions = subscriptions or {}
        self.tenant_error = tenant_error
        self.delays = delays or {}
        self.release = threading.Event()
        self.tenant_calls = 0
        self.listed: List[str] = []
        self.closed = 0
        self._lock = threading.Lock()

    def factory(self, credential: Any, environment: Any, tenant_id: Optional[str]) -> "FakeClient":
        return FakeClient(self, tenant_id)


class FakeClient:
    def __init__(self, backend: FakeBackend, tenant_id: Optional[str]):
        self.backend = backend
        self.tenant_id = tenant_id

    def list_tenants(self) -> List[str]:
        self.backend.tenant_calls += 1
        if self.backend.tenant_error is not None:
            raise self.backend.tenant_error
        return list(self.backend.tenants)

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        delay = self.backend.delays.get(self.tenant_id)
        if delay:
            self.backend.release.wait(timeout=delay)
        with self.backend._lock:
            self.backend.listed.append(self.tenant_id)
        listing = self.backend.subscriptions.get(self.tenant_id, [])
        if isinstance(listing, BaseException):
            raise listing
        return [{"id": sub_id, "displayName": f"Subscription {sub_id}"} for sub_id in listing]

    def close(self) -> None:
        self.backend.closed += 1


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture()
def audit_logger(audit_store: InMemoryAuditStore) -> JsonAuditLogger:
    return JsonAuditLogger(name="azure_account.tests", store=audit_store)


@pytest.fixture()
def provider(clock: FakeClock) -> FakeProvider:
    return FakeProvider(clock=clock)


@pytest.fixture()
def environment():
    return AZURE
