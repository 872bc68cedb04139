from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from dtmstore.boltstore import BoltStore
from dtmstore.redisstore import RedisStore
from dtmstore.registry import SingletonFactory, StoreRegistry


def make_config(driver):
    store = SimpleNamespace(
        driver=driver,
        data_expire=604800,
        finished_data_expire=86400,
        redis_prefix="{a}",
        host="localhost",
        port=6379,
        user="",
        password="",
    )
    return SimpleNamespace(store=store, retry_interval=10)


def test_singleton_factory_creates_once():
    calls = []

    def creator():
        calls.append(1)
        return object()

    factory = SingletonFactory(creator)
    first = factory.get_storage()
    second = factory.get_storage()
    assert first is second
    assert len(calls) == 1


def test_singleton_factory_threads_share_instance():
    calls = []
    sentinel = object()

    def creator():
        calls.append(1)
        return sentinel

    factory = SingletonFactory(creator)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: factory.get_storage(), range(8)))
    assert results == [sentinel] * 8
    assert factory.get_storage() is sentinel
    assert len(calls) == 1


def test_registry_boltdb(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    registry = StoreRegistry(make_config("boltdb"))
    store = registry.get_store()
    try:
        assert isinstance(store, BoltStore)
        assert registry.get_store() is store
        assert store.retry_interval == 10
        assert (tmp_path / "dtm.bolt").exists()
    finally:
        store.close()


def test_registry_redis_is_lazy_singleton():
    config = make_config("redis")
    registry = StoreRegistry(config)
    store = registry.get_store()
    assert isinstance(store, RedisStore)
    assert store.config is config
    assert registry.get_store() is store


def test_registry_unknown_driver():
    registry = StoreRegistry(make_config("nosuch"))
    with pytest.raises(ValueError):
        registry.get_store()


def test_registry_follows_config_driver():
    config = make_config("nosuch")
    registry = StoreRegistry(config)
    config.store.driver = "redis"
    store = registry.get_store()
    assert store.config is config
    assert store.config.store.driver == "redis"
    assert registry.get_store() is store


class FlakyStore:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def ping(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("down")


def test_wait_store_up_retries_until_ping_succeeds():
    registry = StoreRegistry(make_config("fake"))
    flaky = FlakyStore(failures=2)
    registry.factories["fake"] = SingletonFactory(lambda: flaky)
    registry.wait_store_up(interval=0)
    assert flaky.calls == 3


def test_wait_store_up_immediate():
    registry = StoreRegistry(make_config("fake"))
    healthy = FlakyStore(failures=0)
    registry.factories["fake"] = SingletonFactory(lambda: healthy)
    registry.wait_store_up(interval=0)
    assert healthy.calls == 1