from storefront_chat.core import cache as cache_module
from storefront_chat.core.cache import CacheClient, MemoryCache
from storefront_chat.core.metrics import metrics


class _BrokenRedis:
    def get(self, key):
        raise ConnectionError("redis down")

    def set(self, key, value):
        raise ConnectionError("redis down")

    def setex(self, key, ttl, value):
        raise ConnectionError("redis down")

    def delete(self, key):
        raise ConnectionError("redis down")


def test_memory_cache_expires_entries(monkeypatch):
    now = {"value": 1000.0}
    monkeypatch.setattr(cache_module.time, "time", lambda: now["value"])
    local = MemoryCache()

    local.set("k", {"a": 1}, ttl=10)
    assert local.get("k") == {"a": 1}

    now["value"] += 11
    assert local.get("k") is None


def test_cache_without_redis_url_uses_memory():
    client = CacheClient(None)

    client.set_json("k", {"a": 1}, ttl=60)

    assert client.backend == "memory"
    assert client.get_json("k") == {"a": 1}
    client.delete("k")
    assert client.get_json("k") is None


def test_redis_errors_fall_back_to_memory_and_are_counted():
    metrics.reset()
    client = CacheClient(None)
    client._redis = _BrokenRedis()
    client._redis_enabled = True

    client.set_json("k", {"a": 1}, ttl=60)

    assert client.get_json("k") == {"a": 1}
    snapshot = metrics.snapshot()
    assert snapshot.get("sc_cache_errors_total{op=set}") == 1
    assert snapshot.get("sc_cache_errors_total{op=get}") == 1


def test_get_cache_is_shared_until_reset(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    cache_module.reset_cache()

    first = cache_module.get_cache()

    assert cache_module.get_cache() is first
    cache_module.reset_cache()
    assert cache_module.get_cache() is not first
