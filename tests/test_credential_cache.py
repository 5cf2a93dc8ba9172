import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from acp.auth.cache import CredentialCache
from acp.errors import CredentialError
from acp.models import Credential


T0 = datetime(2026, 2, 10, 9, 0, tzinfo=UTC)


@dataclass
class FakeClock:
    now: datetime = T0

    def __call__(self) -> datetime:
        return self.now


@dataclass
class FakeProvider:
    calls: int = 0
    fail: bool = False
    gate: threading.Event | None = None
    entered: threading.Event = field(default_factory=threading.Event)

    def fetch_token(self) -> str:
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise CredentialError("token request rejected", status=500, body="oops")
        return f"token-{self.calls}"


def test_reuses_credential_within_validity_window() -> None:
    clock = FakeClock()
    provider = FakeProvider()
    cache = CredentialCache(provider=provider, clock=clock)

    first = cache.get_valid_credential()
    clock.now = T0 + timedelta(minutes=30)
    second = cache.get_valid_credential()

    assert provider.calls == 1
    assert first is second
    assert first.issued_at == T0
    assert first.expires_at == T0 + timedelta(hours=1)


def test_renews_once_after_expiry() -> None:
    clock = FakeClock()
    provider = FakeProvider()
    cache = CredentialCache(provider=provider, clock=clock)

    cache.get_valid_credential()
    clock.now = T0 + timedelta(hours=1, seconds=1)
    renewed = cache.get_valid_credential()

    assert provider.calls == 2
    assert renewed.token == "token-2"
    assert renewed.expires_at == clock.now + timedelta(hours=1)


def test_renews_inside_refresh_threshold() -> None:
    clock = FakeClock()
    provider = FakeProvider()
    cache = CredentialCache(provider=provider, clock=clock)

    cache.get_valid_credential()
    clock.now = T0 + timedelta(minutes=55)
    cache.get_valid_credential()
    cache.get_valid_credential()

    assert provider.calls == 2


def test_failure_propagates_and_next_call_retries() -> None:
    provider = FakeProvider(fail=True)
    cache = CredentialCache(provider=provider, clock=FakeClock())

    with pytest.raises(CredentialError) as exc:
        cache.get_valid_credential()
    assert exc.value.status == 500
    assert cache.credential is None

    provider.fail = False
    assert cache.get_valid_credential().token == "token-2"


def test_concurrent_callers_share_one_renewal() -> None:
    gate = threading.Event()
    provider = FakeProvider(gate=gate)
    cache = CredentialCache(provider=provider, clock=FakeClock())
    results: list[Credential] = []

    def _call() -> None:
        results.append(cache.get_valid_credential())

    first = threading.Thread(target=_call)
    first.start()
    assert provider.entered.wait(timeout=5)
    waiters = [threading.Thread(target=_call) for _ in range(3)]
    for t in waiters:
        t.start()

    gate.set()
    for t in [first, *waiters]:
        t.join(timeout=5)

    assert provider.calls == 1
    assert len(results) == 4
    assert {c.token for c in results} == {"token-1"}


def test_invalidate_forces_renewal() -> None:
    provider = FakeProvider()
    cache = CredentialCache(provider=provider, clock=FakeClock())
    cache.get_valid_credential()
    cache.invalidate()
    cache.get_valid_credential()
    assert provider.calls == 2


def test_validity_must_exceed_threshold() -> None:
    with pytest.raises(ValueError):
        CredentialCache(provider=FakeProvider(), validity=timedelta(minutes=5), refresh_threshold=timedelta(minutes=5))


def test_credential_invariant() -> None:
    with pytest.raises(ValueError):
        Credential(token="t", issued_at=T0, expires_at=T0)
    c = Credential(token="abcdefghijkl", issued_at=T0, expires_at=T0 + timedelta(hours=1))
    assert c.is_usable(T0 + timedelta(minutes=54), timedelta(minutes=5))
    assert not c.is_usable(T0 + timedelta(minutes=55), timedelta(minutes=5))
    assert c.token_preview() == "abcdefgh…"
