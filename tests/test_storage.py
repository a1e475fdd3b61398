import threading
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docprescrip.service.runtime import Runtime, _mask_url_password
from docprescrip.storage.errors import ConstraintViolation
from docprescrip.storage.memory import MemoryStore
from docprescrip.storage.memory_cache import MemoryCache
from docprescrip.storage.postgres import PostgresStore, _constraint_field
from docprescrip.storage.redis_cache import RedisCache


def _doctor_fields(**overrides):
    fields = {"email": "park@ppth.org", "name": "Chi Park", "phone": "+15550100100"}
    fields.update(overrides)
    return fields


class TestMemoryStore:
    def test_create_and_find(self):
        store = MemoryStore()
        doctor = store.create_account(_doctor_fields())

        assert doctor.id.startswith("dr_")
        assert store.find_by_email("park@ppth.org") == doctor
        assert store.find_by_phone("+15550100100") == doctor
        assert store.find_by_id(doctor.id) == doctor

    def test_duplicate_email_rejected(self):
        store = MemoryStore()
        store.create_account(_doctor_fields())
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_account(_doctor_fields(phone=None))
        assert exc_info.value.detail == {"field": "email"}

    def test_duplicate_phone_rejected(self):
        store = MemoryStore()
        store.create_account(_doctor_fields())
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_account(_doctor_fields(email="other@ppth.org"))
        assert exc_info.value.detail == {"field": "phone"}

    def test_blank_phones_do_not_collide(self):
        store = MemoryStore()
        store.create_account(_doctor_fields(phone=""))
        store.create_account(_doctor_fields(email="other@ppth.org", phone=""))
        assert store.find_by_phone("") is None

    def test_concurrent_creates_admit_one(self):
        store = MemoryStore()
        results = []

        def create():
            try:
                results.append(store.create_account(_doctor_fields()))
            except ConstraintViolation:
                results.append(None)

        threads = [threading.Thread(target=create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len([r for r in results if r]) == 1

    def test_update_fields_allow_list(self):
        store = MemoryStore()
        doctor = store.create_account(_doctor_fields())
        with pytest.raises(ValueError):
            store.update_fields(doctor.id, {"email": "new@ppth.org"})

        updated = store.update_fields(doctor.id, {"degree": "MD"})
        assert updated.degree == "MD"
        assert updated.updated_at >= doctor.updated_at

    def test_update_unknown_doctor(self):
        assert MemoryStore().update_fields("dr_missing", {"degree": "MD"}) is None

    def test_access_key_single_use(self):
        store = MemoryStore()
        store.create_access_key("DP-1")
        with pytest.raises(ConstraintViolation):
            store.create_access_key("DP-1")

        assert store.consume_access_key("DP-1", "dr_a")
        assert not store.consume_access_key("DP-1", "dr_b")
        assert store.get_access_key("DP-1").used_by == "dr_a"
        assert not store.consume_access_key("DP-missing", "dr_a")

    def test_release_only_undoes_own_claim(self):
        store = MemoryStore()
        store.create_access_key("DP-2")
        store.consume_access_key("DP-2", "dr_a")

        assert not store.release_access_key("DP-2", "dr_b")
        assert store.release_access_key("DP-2", "dr_a")
        assert not store.get_access_key("DP-2").is_used
        assert store.consume_access_key("DP-2", "dr_b")


class TestPostgresStoreUnit:
    def _store(self):
        store: PostgresStore = PostgresStore.__new__(PostgresStore)
        store.pool = MagicMock()
        store.logger = MagicMock()
        return store

    @pytest.mark.parametrize(
        "constraint,field",
        [("doctor_phone_key", "phone"), ("doctor_email_key", "email"), ("access_key_pkey", "key")],
    )
    def test_constraint_field(self, constraint, field):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
        assert _constraint_field(exc) == field

    def test_update_rejects_unknown_columns_before_sql(self):
        store = self._store()
        with pytest.raises(ValueError):
            store.update_fields("dr_1", {"id": "dr_2"})
        store.pool.connection.assert_not_called()

    def test_find_by_blank_phone_skips_query(self):
        store = self._store()
        assert store.find_by_phone("") is None
        store.pool.connection.assert_not_called()


class TestMemoryCache:
    async def test_ttl_semantics(self, clock):
        cache = MemoryCache(clock=clock)
        assert await cache.ttl("absent") is None
        await cache.set("k", "v", 30)
        assert await cache.ttl("k") == 30
        clock.advance(31)
        assert await cache.get("k") is None

    async def test_getdel_is_single_use(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 30)
        assert await cache.getdel("k") == "v"
        assert await cache.getdel("k") is None

    async def test_increment_keeps_first_expiry(self, clock):
        cache = MemoryCache(clock=clock)
        assert await cache.increment("c", 60) == 1
        clock.advance(50)
        assert await cache.increment("c", 60) == 2
        clock.advance(11)
        assert await cache.increment("c", 60) == 1

    async def test_sliding_window_admits_limit_per_window(self, clock):
        cache = MemoryCache(clock=clock)
        results = [(await cache.check_rate_limit("b", 2, 60))[0] for _ in range(3)]
        assert results == [True, True, False]

        clock.advance(59)
        allowed, remaining, reset_after = await cache.check_rate_limit("b", 2, 60)
        assert (allowed, remaining, reset_after) == (False, 0, 1)

        clock.advance(1)
        allowed, remaining, _ = await cache.check_rate_limit("b", 2, 60)
        assert allowed
        assert remaining == 1

    async def test_push_capped(self, clock):
        cache = MemoryCache(clock=clock)
        for i in range(5):
            await cache.push_capped("l", str(i), max_entries=3, ttl_seconds=60)
        assert await cache.list_range("l") == ["4", "3", "2"]
        assert await cache.list_range("l", 0, 0) == ["4"]


class TestRedisCacheUnit:
    def _cache(self):
        cache = RedisCache("redis://localhost:6379/15")
        cache.client = MagicMock()
        return cache

    @pytest.mark.parametrize("raw,expected", [(-2, None), (-1, 0), (17, 17)])
    async def test_ttl_normalisation(self, raw, expected):
        cache = self._cache()
        cache.client.ttl = AsyncMock(return_value=raw)
        assert await cache.ttl("k") == expected

    async def test_delete_without_keys_skips_round_trip(self):
        cache = self._cache()
        cache.client.delete = AsyncMock()
        assert await cache.delete() == 0
        cache.client.delete.assert_not_called()

    async def test_sliding_window_result_is_unpacked(self):
        cache = self._cache()
        cache._sliding_window = AsyncMock(return_value=[0, 0, 42])
        assert await cache.check_rate_limit("pin:rate:203.0.113.7", 10, 60) == (False, 0, 42)
        kwargs = cache._sliding_window.await_args.kwargs
        assert kwargs["keys"] == [RedisCache._normalize_rate_key("pin:rate:203.0.113.7")]
        assert kwargs["args"][1:3] == [60, 10]

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("pin:rate:203.0.113.7")
        assert key.startswith("rate:")
        assert "203.0.113.7" not in key


class TestRuntime:
    def test_mask_url_password(self):
        assert _mask_url_password("redis://:secret@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None

    def test_redis_required_outside_test_mode(self, settings):
        strict = settings.model_copy(
            update={"test_mode": False, "allow_redis_fallback_dev": False, "redis_url": None}
        )
        with patch("docprescrip.service.runtime.get_settings", return_value=strict):
            with pytest.raises(RuntimeError, match="Redis is required"):
                Runtime()

    def test_dev_fallback_uses_memory_cache(self, settings):
        relaxed = settings.model_copy(
            update={"test_mode": False, "allow_redis_fallback_dev": True, "redis_url": None}
        )
        with patch("docprescrip.service.runtime.get_settings", return_value=relaxed):
            runtime = Runtime()
        assert isinstance(runtime.cache, MemoryCache)
        assert isinstance(runtime.store, MemoryStore)
