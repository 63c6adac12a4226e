"""Tests for the credential stores: the in-process fallback and the Redis pop path."""

import asyncio

from edutenant.storage.memory import MemoryCredentialStore
from edutenant.storage.redis_cache import SyncRedisCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def test_set_get_and_ttl():
    clock = FakeClock()
    store = MemoryCredentialStore(clock=clock)
    await store.set("refresh_token:abc", {"subject_id": "u1"}, 60)

    assert await store.get("refresh_token:abc") == {"subject_id": "u1"}
    assert await store.ttl("refresh_token:abc") == 60
    clock.advance(20.5)
    assert await store.ttl("refresh_token:abc") == 40


async def test_entries_expire():
    clock = FakeClock()
    store = MemoryCredentialStore(clock=clock)
    await store.set("invite_professor:t", {"email": "a@b.com"}, 10)
    clock.advance(10)

    assert await store.get("invite_professor:t") is None
    assert await store.ttl("invite_professor:t") == -2
    assert await store.pop("invite_professor:t") is None
    assert await store.delete("invite_professor:t") == 0


async def test_delete_reports_count():
    store = MemoryCredentialStore()
    await store.set("refresh_token:abc", {"subject_id": "u1"}, 60)
    assert await store.delete("refresh_token:abc") == 1
    assert await store.delete("refresh_token:abc") == 0


async def test_pop_is_single_use():
    store = MemoryCredentialStore()
    await store.set("refresh_token:abc", {"subject_id": "u1"}, 60)

    assert await store.pop("refresh_token:abc") == {"subject_id": "u1"}
    assert await store.pop("refresh_token:abc") is None


async def test_concurrent_pops_return_value_once():
    store = MemoryCredentialStore()
    await store.set("invite_diretor:tok", {"email": "d@escola.com"}, 60)

    results = await asyncio.gather(*(store.pop("invite_diretor:tok") for _ in range(10)))
    assert sum(1 for r in results if r is not None) == 1


async def test_values_are_copied():
    store = MemoryCredentialStore()
    value = {"extra": {"disciplina": "Matemática"}}
    await store.set("invite_professor:t", value, 60)
    value["extra"]["disciplina"] = "História"

    fetched = await store.get("invite_professor:t")
    assert fetched["extra"]["disciplina"] == "Matemática"


async def test_keys_by_prefix_skips_expired():
    clock = FakeClock()
    store = MemoryCredentialStore(clock=clock)
    await store.set("refresh_token:a", {}, 5)
    await store.set("refresh_token:b", {}, 50)
    await store.set("reset_password:c", {}, 50)
    clock.advance(10)

    assert await store.keys("refresh_token:") == ["refresh_token:b"]


async def test_rate_limit_token_bucket():
    clock = FakeClock()
    store = MemoryCredentialStore(clock=clock)

    for _ in range(3):
        assert await store.check_rate_limit("login:ip:1", 3, 60) is True
    allowed, remaining, reset = await store.check_rate_limit(
        "login:ip:1", 3, 60, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert reset > 0

    clock.advance(21)
    assert await store.check_rate_limit("login:ip:1", 3, 60) is True
    assert await store.check_rate_limit("login:ip:2", 3, 60) is True


class GetdelOnlyClient:
    """Stands in for a redis client; only GETDEL is available for pops."""

    def __init__(self, values):
        self.values = dict(values)
        self.calls = []

    def getdel(self, key):
        self.calls.append(key)
        return self.values.pop(key, None)


async def test_redis_pop_uses_getdel():
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache.client = GetdelOnlyClient({"refresh_token:abc": '{"subject_id": "u1"}'})

    assert await cache.pop("refresh_token:abc") == {"subject_id": "u1"}
    assert await cache.pop("refresh_token:abc") is None
    assert cache.client.calls == ["refresh_token:abc", "refresh_token:abc"]
