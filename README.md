# dtmstore

The storage layer of a distributed transaction manager. It keeps global
transactions, their branches and versioned key-value records (topic
subscriptions, for instance) behind one abstract `Store` interface
(`dtmstore.models`), with two back ends:

- `BoltStore` (`dtmstore.boltstore`): an embedded store in a single local file,
  `./dtm.bolt` by default. It is built on `dtmstore.buckets`, a small set of
  named buckets of byte-ordered keys kept in an SQLite file.
- `RedisStore` (`dtmstore.redisstore`): Redis, with multi-key state changes made
  atomically through Lua scripts.

## Installation

```
pip install dtmstore
```

For running the tests:

```
pip install "dtmstore[test]"
pytest
```

## Configuration

`dtmstore.config.load_config(conf_file=None)` builds a `Config` with its
defaults, overrides them from environment variables, then from the optional
YAML file, and finally checks the result with `check_config`. YAML keys use the
capitalised names (`Store: {Driver: redis, Host: localhost, Port: 6379}`,
`RetryInterval: 10`). Environment variable names are the same keys upper-cased
with underscores, for example `STORE_DRIVER`, `STORE_HOST`, `RETRY_INTERVAL`
and `HTTP_PORT`.

```python
from dtmstore.config import load_config

config = load_config("conf.yml")
print(config.store.driver, config.retry_interval)
```

A configuration that breaks the rules (a `RetryInterval` under 10, a
`TimeoutToFail` under `RetryInterval`, a mysql/postgres or redis driver without
host or port, and so on) raises `ConfigError`.

## Choosing a store

`StoreRegistry` picks the back end named by `config.store.driver` (`boltdb` or
`redis`) and builds it only once:

```python
from dtmstore.registry import StoreRegistry

registry = StoreRegistry(config)
registry.wait_store_up(interval=3)   # retries ping until it succeeds
store = registry.get_store()
```

A store can also be built directly, e.g. `BoltStore(data_expire, retry_interval,
path="my.db")` or `RedisStore(config, client=my_redis_client)`. On opening,
`BoltStore` deletes transactions finished more than `data_expire` seconds ago.

## Working with transactions

```python
from datetime import datetime, timedelta

from dtmstore.models import TransBranchStore, TransGlobalStore, UniqueConflictError

trans = TransGlobalStore(
    gid="order-1",
    trans_type="saga",
    status="submitted",
    next_cron_time=datetime.now().astimezone() + timedelta(seconds=10),
)
branches = [TransBranchStore(gid="order-1", branch_id="01", op="action", status="prepared")]
try:
    store.may_save_new_trans(trans, branches)
except UniqueConflictError:
    trans = store.find_trans_global_store("order-1")

print([b.status for b in store.find_branches("order-1")])
due = store.lock_one_global_trans(timedelta(0))   # a due transaction, or None
```

Scans take a position string and return `(items, next_position)`; an empty
next position means the scan is complete:

```python
from dtmstore.models import TransGlobalScanCondition

items, position = store.scan_trans_global_stores("", 100, TransGlobalScanCondition(status="submitted"))
```

Operations on missing records, or records not in the expected state, raise
`NotFoundError`; inserting a record that already exists raises
`UniqueConflictError`. Both derive from `StorageError`.

## Topics

`dtmstore.topics` keeps topic subscribers as key-value records in category
`topics`:

```python
from dtmstore.topics import TopicMap, subscribe, unsubscribe

subscribe(store, "orders", "http://localhost:8081/api/order", "order service")
topics = TopicMap()
topics.refresh(store)
print(topics.urls("orders"))
unsubscribe(store, "orders", "http://localhost:8081/api/order")
```

Invalid requests (empty topic or URL, a URL already subscribed, an unknown
topic or URL) raise `TopicError`.

## What this package does not do

- It is storage only: there is no transaction server, no HTTP, gRPC or
  JSON-RPC API, no command-line program and no background job that retries
  or processes transactions.
- There is no SQL back end. The configuration accepts the `mysql`, `postgres`
  and `sqlserver` drivers, but `StoreRegistry.get_store` raises `ValueError`
  for them unless a factory for that driver is added to
  `StoreRegistry.factories`.