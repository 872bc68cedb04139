"""Choosing and holding the store named by the configuration."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from dtmstore.boltstore import BoltStore
from dtmstore.models import Store
from dtmstore.redisstore import RedisStore

logger = logging.getLogger(__name__)


class SingletonFactory:
    """Builds a store on first request and hands out that same store afterwards."""

    def __init__(self, creator: Callable[[], Any]) -> None:
        self._creator = creator
        self._store: Any = None
        self._created = False
        self._lock = threading.Lock()

    def get_storage(self) -> Store:
        """Return the store, creating it on the first call."""
        with self._lock:
            if not self._created:
                self._store = self._creator()
                self._created = True
            return self._store


class StoreRegistry:
    """Maps store drivers to factories and returns the configured store.

    ``factories`` may be extended with further drivers.
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self.factories: dict[str, SingletonFactory] = {
            "boltdb": SingletonFactory(
                lambda: BoltStore(self.config.store.data_expire, self.config.retry_interval)
            ),
            "redis": SingletonFactory(lambda: RedisStore(self.config)),
        }

    def get_store(self) -> Store:
        """Return the store for the configured driver."""
        driver = self.config.store.driver
        factory = self.factories.get(driver)
        if factory is None:
            raise ValueError(f"unsupported store driver: {driver}")
        return factory.get_storage()

    def wait_store_up(self, interval: float = 3.0) -> None:
        """Block until the configured store answers a ping."""
        while True:
            try:
                self.get_store().ping()
            except Exception as exc:  # any failure means the store is not up yet
                logger.info("wait store up: %s", exc)
                time.sleep(interval)
            else:
                return