import asyncio
import io

import pytest
import redis
from PIL import Image

from libdesk.services.cache_manager import CacheManager
from libdesk.services.covers import optimize_image
from libdesk.services.notification_hub import NotificationHub


def test_memory_cache():
    cache = CacheManager(namespace="test", use_redis=False)
    cache.set("books:1", {"title": "Dune"})
    cache.set("books:2", {"title": "Emma"})
    cache.set("users:1", {"name": "Anna"})

    assert cache.get("books:1") == {"title": "Dune"}
    assert cache.get("missing") is None
    assert cache.invalidate_pattern("books*") == 2
    assert cache.get("books:2") is None
    assert cache.size() == 1

    stats = cache.get_stats()
    assert stats["redis_available"] is False
    assert stats["hits"] == 1
    assert stats["misses"] == 2


def test_memory_cache_expiry():
    cache = CacheManager(namespace="test", use_redis=False)
    cache.set("short", "value", ttl_seconds=0)
    assert cache.get("short") is None
    assert cache.delete("short") is False


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


def test_redis_miss_is_not_served_from_memory():
    shared = FakeRedis()
    worker_a = CacheManager(namespace="test", use_redis=False)
    worker_b = CacheManager(namespace="test", use_redis=False)
    worker_a.redis_client = worker_b.redis_client = shared

    worker_a.set("books:list", ["Dune"])
    assert worker_a.get("books:list") == ["Dune"]
    # another worker drops the key
    worker_b.delete("books:list")

    assert worker_a.get("books:list") is None
    assert worker_a.get_stats()["redis_hits"] == 1


def test_memory_is_used_when_redis_fails():
    class BrokenRedis(FakeRedis):
        def get(self, key):
            raise redis.ConnectionError("down")

    cache = CacheManager(namespace="test", use_redis=False)
    cache.redis_client = BrokenRedis()
    cache.set("books:list", ["Dune"])
    assert cache.get("books:list") == ["Dune"]
    assert cache.get_stats()["memory_hits"] == 1


def _png(width, height, mode="RGBA"):
    data = io.BytesIO()
    Image.new(mode, (width, height)).save(data, format="PNG")
    return data.getvalue()


def test_optimize_image_shrinks_and_converts():
    result = Image.open(io.BytesIO(optimize_image(_png(1800, 1200), max_width=600)))
    assert result.format == "JPEG"
    assert result.mode == "RGB"
    assert result.size == (600, 400)


def test_optimize_image_keeps_small_images():
    result = Image.open(io.BytesIO(optimize_image(_png(200, 300, "RGB"), max_width=600)))
    assert result.size == (200, 300)


def test_optimize_image_rejects_other_files():
    with pytest.raises(ValueError):
        optimize_image(b"%PDF-1.4 not an image")


class FakeSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken

    async def accept(self):
        pass

    async def send_json(self, payload):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


def test_hub_push_and_drop_broken_sockets():
    hub = NotificationHub()
    good, broken = FakeSocket(), FakeSocket(broken=True)

    async def scenario():
        await hub.connect(good, "u1")
        await hub.connect(broken, "u1")
        delivered = await hub.push("u1", {"type": "pong"})
        return delivered

    assert asyncio.run(scenario()) == 1
    assert good.sent == [{"type": "pong"}]
    assert hub.connection_count() == 1

    hub.disconnect(good, "u1")
    assert not hub.is_connected("u1")
