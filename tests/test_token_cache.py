from __future__ import annotations

import threading
import time

import pytest

from azure_account.errors import NotAuthenticatedError, ProviderUnavailable, TokenFetchTimeout
from azure_account.token_cache import CachedCredential, TokenCache

from conftest import FakeFetcher, FakeProvider

SCOPE = "https://management.azure.com/.default"


def run_in_threads(count, target):
    results, errors = [], []
    lock = threading.Lock()

    def worker():
        try:
            value = target()
        except Exception as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    return threads, results, errors


def test_token_is_reused_within_validity_window(clock, audit_logger):
    fetcher = FakeFetcher("T1", clock)
    credential = CachedCredential("T1", fetcher, refresh_margin=300, audit_logger=audit_logger, clock=clock)

    first = credential.get_token(SCOPE)
    clock.advance(1000)
    second = credential.get_token(SCOPE)

    assert first is second
    assert fetcher.calls == 1


def test_token_is_refreshed_inside_safety_margin(clock, audit_logger):
    fetcher = FakeFetcher("T1", clock, lifetime=3600)
    credential = CachedCredential("T1", fetcher, refresh_margin=300, audit_logger=audit_logger, clock=clock)

    credential.get_token(SCOPE)
    clock.advance(3301)
    refreshed = credential.get_token(SCOPE)

    assert fetcher.calls == 2
    assert refreshed.token == "T1-token-2"


def test_scope_sets_are_memoized_independently(clock, audit_logger):
    fetcher = FakeFetcher("T1", clock)
    credential = CachedCredential("T1", fetcher, audit_logger=audit_logger, clock=clock)

    credential.get_token(SCOPE)
    credential.get_token("https://graph.microsoft.com/.default")
    credential.fetch([SCOPE])

    assert fetcher.calls == 2


def test_concurrent_callers_share_one_refresh(clock, audit_logger):
    gate = threading.Event()
    fetcher = FakeFetcher("T1", clock, gate=gate)
    credential = CachedCredential("T1", fetcher, fetch_timeout=5, audit_logger=audit_logger, clock=clock)
    threads, results, errors = run_in_threads(6, lambda: credential.get_token(SCOPE))

    threads[0].start()
    assert fetcher.started.wait(timeout=2)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.1)
    gate.set()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert fetcher.calls == 1
    assert {token.token for token in results} == {"T1-token-1"}
    assert len(results) == 6


def test_failed_refresh_reaches_every_waiter_and_is_not_cached(clock, audit_logger, audit_store):
    gate = threading.Event()
    failure = ProviderUnavailable("token endpoint unreachable", tenant_id="T1")
    fetcher = FakeFetcher("T1", clock, errors=[failure], gate=gate)
    credential = CachedCredential("T1", fetcher, fetch_timeout=5, audit_logger=audit_logger, clock=clock)
    threads, results, errors = run_in_threads(4, lambda: credential.get_token(SCOPE))

    threads[0].start()
    assert fetcher.started.wait(timeout=2)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.1)
    gate.set()
    for thread in threads:
        thread.join(timeout=5)

    assert results == []
    assert len(errors) == 4
    assert all(error is failure for error in errors)
    assert fetcher.calls == 1

    retried = credential.get_token(SCOPE)
    assert retried.token == "T1-token-2"
    assert fetcher.calls == 2
    assert len(audit_store.find("token_refresh_failed")) == 1


def test_waiter_gives_up_after_fetch_timeout(clock, audit_logger):
    gate = threading.Event()
    fetcher = FakeFetcher("T1", clock, gate=gate)
    credential = CachedCredential("T1", fetcher, fetch_timeout=0.1, audit_logger=audit_logger, clock=clock)
    leader = threading.Thread(target=lambda: credential.get_token(SCOPE))
    leader.start()
    try:
        assert fetcher.started.wait(timeout=2)
        with pytest.raises(TokenFetchTimeout):
            credential.get_token(SCOPE)
    finally:
        gate.set()
        leader.join(timeout=5)

    assert fetcher.calls == 1


def test_foreign_tenant_request_is_rejected(clock, audit_logger):
    credential = CachedCredential("T1", FakeFetcher("T1", clock), audit_logger=audit_logger, clock=clock)

    with pytest.raises(ValueError):
        credential.get_token(SCOPE, tenant_id="T2")

    assert credential.get_token(SCOPE, tenant_id="t1").token == "T1-token-1"


def test_claims_challenge_bypasses_memo(clock, audit_logger):
    fetcher = FakeFetcher("T1", clock)
    credential = CachedCredential("T1", fetcher, audit_logger=audit_logger, clock=clock)

    credential.get_token(SCOPE)
    credential.get_token(SCOPE, claims='{"access_token": {"nbf": {"essential": true}}}')
    credential.get_token(SCOPE)

    assert fetcher.calls == 2


def test_cache_keeps_one_entry_per_tenant(provider, audit_logger, clock):
    cache = TokenCache(provider, audit_logger=audit_logger, clock=clock)

    first = cache.resolve("T1")
    again = cache.resolve("T1")
    other = cache.resolve("T2")

    assert first is again
    assert first is not other
    assert len(cache) == 2
    assert provider.requested == ["T1", "T2"]
    assert cache.get_access_token("T1", [SCOPE]).token.startswith("T1-")
    assert cache.get_access_token("T2", [SCOPE]).token.startswith("T2-")


def test_concurrent_resolve_creates_single_entry(provider, audit_logger, clock):
    cache = TokenCache(provider, audit_logger=audit_logger, clock=clock)
    threads, results, errors = run_in_threads(8, lambda: cache.resolve("T1"))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert len({id(entry) for entry in results}) == 1
    assert provider.requested == ["T1"]


def test_closed_cache_refuses_lookups(provider, audit_logger, clock):
    cache = TokenCache(provider, audit_logger=audit_logger, clock=clock)
    cache.resolve("T1")

    cache.close()

    assert len(cache) == 0
    assert cache.closed
    with pytest.raises(NotAuthenticatedError):
        cache.resolve("T1")


class GatedProvider(FakeProvider):
    """Provider whose credential creation for one tenant blocks until released."""

    def __init__(self, clock, slow_tenant, errors=None):
        super().__init__(clock=clock)
        self.slow_tenant = slow_tenant
        self.entered = threading.Event()
        self.release = threading.Event()
        self.errors = list(errors or [])

    def credential_for_tenant(self, tenant_id):
        if tenant_id == self.slow_tenant:
            self.entered.set()
            self.release.wait(timeout=5)
            if self.errors:
                with self._lock:
                    self.requested.append(tenant_id)
                raise self.errors.pop(0)
        return super().credential_for_tenant(tenant_id)


def test_slow_tenant_does_not_block_other_tenants(clock, audit_logger):
    provider = GatedProvider(clock, "SLOW")
    cache = TokenCache(provider, fetch_timeout=5, audit_logger=audit_logger, clock=clock)
    slow = threading.Thread(target=lambda: cache.resolve("SLOW"))
    slow.start()
    try:
        assert provider.entered.wait(timeout=2)
        fast = threading.Thread(target=lambda: cache.resolve("FAST"))
        fast.start()
        fast.join(timeout=1)

        assert not fast.is_alive()
        assert cache.tenant_ids() == ["FAST"]
    finally:
        provider.release.set()
        slow.join(timeout=5)

    assert sorted(cache.tenant_ids()) == ["FAST", "SLOW"]


def test_concurrent_first_lookups_share_one_fill(clock, audit_logger):
    provider = GatedProvider(clock, "T1")
    cache = TokenCache(provider, fetch_timeout=5, audit_logger=audit_logger, clock=clock)
    threads, results, errors = run_in_threads(5, lambda: cache.resolve("T1"))

    threads[0].start()
    assert provider.entered.wait(timeout=2)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.1)
    provider.release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert len({id(entry) for entry in results}) == 1
    assert provider.requested == ["T1"]


def test_failed_fill_is_not_kept(clock, audit_logger):
    failure = ProviderUnavailable("authority discovery failed", tenant_id="T1")
    provider = GatedProvider(clock, "T1", errors=[failure])
    provider.release.set()
    cache = TokenCache(provider, audit_logger=audit_logger, clock=clock)

    with pytest.raises(ProviderUnavailable):
        cache.resolve("T1")
    assert len(cache) == 0

    assert cache.resolve("T1").tenant_id == "T1"
    assert provider.requested == ["T1", "T1"]


class Interrupted(BaseException):
    pass


def test_interrupted_refresh_does_not_strand_later_callers(clock, audit_logger):
    fetcher = FakeFetcher("T1", clock, errors=[Interrupted()])
    credential = CachedCredential("T1", fetcher, audit_logger=audit_logger, clock=clock)

    with pytest.raises(Interrupted):
        credential.get_token(SCOPE)

    assert credential.get_token(SCOPE).token == "T1-token-2"
    assert fetcher.calls == 2
