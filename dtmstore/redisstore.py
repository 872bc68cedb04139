"""Transaction store kept in Redis, with multi-key updates done by Lua scripts."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import redis

from dtmstore.config import Config, StoreConfig
from dtmstore.models import (
    KVStore,
    NotFoundError,
    Store,
    TransBranchStore,
    TransGlobalScanCondition,
    TransGlobalStore,
    UniqueConflictError,
)

logger = logging.getLogger(__name__)

_RESULT_ERRORS: dict[str, type[Exception]] = {
    "NOT_FOUND": NotFoundError,
    "UNIQUE_CONFLICT": UniqueConflictError,
}

_LUA_MAY_SAVE_NEW_TRANS = """-- MaySaveNewTrans
local g = redis.call('GET', KEYS[1])
if g ~= false then
	return 'UNIQUE_CONFLICT'
end

redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[2])
redis.call('SET', KEYS[4], ARGV[6], 'EX', ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[5])
for k = 7, table.getn(ARGV) do
	redis.call('RPUSH', KEYS[2], ARGV[k])
end
redis.call('EXPIRE', KEYS[2], ARGV[2])
"""

_LUA_LOCK_GLOBAL_SAVE_BRANCHES = """-- LockGlobalSaveBranches
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[3] then
	return 'NOT_FOUND'
end
local start = ARGV[4]
-- check duplicates for workflow
if start == "-1" then
	local t = cjson.decode(ARGV[5])
	local bs = redis.call('LRANGE', KEYS[2], 0, -1)
	for i = 1, table.getn(bs) do
		local c = cjson.decode(bs[i])
		if t['branch_id'] == c['branch_id'] and t['op'] == c['op'] then
			return 'UNIQUE_CONFLICT'
		end
	end
end
for k = 5, table.getn(ARGV) do
	if start == "-1" then
		redis.call('RPUSH', KEYS[2], ARGV[k])
	else
		redis.call('LSET', KEYS[2], start+k-5, ARGV[k])
	end
end
redis.call('EXPIRE', KEYS[2], ARGV[2])
"""

_LUA_CHANGE_GLOBAL_STATUS = """-- ChangeGlobalStatus
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[4] then
  return 'NOT_FOUND'
end
redis.call('SET', KEYS[1],  ARGV[3], 'EX', ARGV[2])
redis.call('SET', KEYS[4],  ARGV[7], 'EX', ARGV[2])
if ARGV[5] == '1' then
	redis.call('ZREM', KEYS[3], ARGV[6])
	redis.call('EXPIRE', KEYS[1], ARGV[8])
	redis.call('EXPIRE', KEYS[2], ARGV[8])
	redis.call('EXPIRE', KEYS[4], ARGV[8])
end
"""

_LUA_LOCK_ONE_GLOBAL_TRANS = """-- LockOneGlobalTrans
local r = redis.call('ZRANGE', KEYS[3], 0, 0, 'WITHSCORES')
local gid = r[1]
if gid == nil then
	return 'NOT_FOUND'
end

if tonumber(r[2]) > tonumber(ARGV[3]) then
	return 'NOT_FOUND'
end
redis.call('ZADD', KEYS[3], ARGV[4], gid)
return gid
"""

_LUA_RESET_CRON_TIME = """-- ResetCronTime
local r = redis.call('ZRANGEBYSCORE', KEYS[3], ARGV[3], '+inf', 'LIMIT', 0, ARGV[5]+1)
local i = 0
for score,gid in pairs(r) do
	if i == tonumber(ARGV[5]) then
		i = i + 1
		break
	end
	redis.call('ZADD', KEYS[3], ARGV[4], gid)
	i = i + 1
end
return tostring(i)
"""

_LUA_TOUCH_CRON_TIME = """-- TouchCronTime
local old = redis.call('GET', KEYS[4])
if old ~= ARGV[5] then
	return 'NOT_FOUND'
end
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[6])
redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[2])
"""

_LUA_UPDATE_BRANCHES = """-- UpdateBranches
local updates = cjson.decode(ARGV[1])
local bs = redis.call('LRANGE', KEYS[1], 0, -1)
local n = 0
for k = 2, table.getn(ARGV) do
	local t = cjson.decode(ARGV[k])
	local found = false
	for i = 1, table.getn(bs) do
		local c = cjson.decode(bs[i])
		if c['branch_id'] == t['branch_id'] and c['op'] == t['op'] then
			for _, f in ipairs(updates) do
				c[f] = t[f]
			end
			bs[i] = cjson.encode(c)
			redis.call('LSET', KEYS[1], i - 1, bs[i])
			found = true
		end
	end
	if not found then
		redis.call('RPUSH', KEYS[1], ARGV[k])
		table.insert(bs, ARGV[k])
	end
	n = n + 1
end
return tostring(n)
"""

_LUA_UPDATE_KV = """-- UpdateKV
local oldJson = redis.call('GET', KEYS[1])
if oldJson == false then
	return 'NOT_FOUND'
end
local old = cjson.decode(oldJson)
if tostring(old.version) == ARGV[1] then
	redis.call('SET', KEYS[1], ARGV[2])
else
	return 'NOT_FOUND'
end
"""

_LUA_CREATE_KV = """-- CreateKV
local key = redis.call('GET', KEYS[1])
if key ~= false then
	return 'UNIQUE_CONFLICT'
end
redis.call('SET', KEYS[1], ARGV[1])
"""


def _now() -> datetime:
    return datetime.now().astimezone()


def _unix(value: datetime | None) -> int:
    if value is None:
        raise ValueError("next_cron_time is not set")
    return int(value.timestamp())


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


@dataclass
class ArgList:
    """Keys and arguments handed to a Lua script.

    Keys: global record, branch list, cron index, status. Arguments start
    with the key prefix and the data expiry.
    """

    prefix: str = ""
    keys: list[str] = field(default_factory=list)
    args: list[Any] = field(default_factory=list)

    def append_gid(self, gid: str) -> ArgList:
        self.keys.append(f"{self.prefix}_g_{gid}")
        self.keys.append(f"{self.prefix}_b_{gid}")
        self.keys.append(f"{self.prefix}_u")
        self.keys.append(f"{self.prefix}_s_{gid}")
        return self

    def append_raw(self, value: Any) -> ArgList:
        if isinstance(value, bool):
            value = 1 if value else 0
        self.args.append(value)
        return self

    def append_object(self, value: Any) -> ArgList:
        to_json = getattr(value, "to_json", None)
        return self.append_raw(to_json() if callable(to_json) else json.dumps(value))

    def append_branches(self, branches: list[TransBranchStore]) -> ArgList:
        for branch in branches:
            self.append_raw(branch.to_json())
        return self


def new_arg_list(store_conf: StoreConfig) -> ArgList:
    """An argument list holding the key prefix and data expiry."""
    args = ArgList(prefix=store_conf.redis_prefix)
    return args.append_raw(store_conf.redis_prefix).append_object(store_conf.data_expire)


def handle_redis_result(ret: Any) -> str:
    """Turn a script's reply into a string, raising for the error markers."""
    logger.debug("result is: %r", ret)
    text = "" if ret is None else _text(ret)
    error = _RESULT_ERRORS.get(text)
    if error is not None:
        raise error()
    return text


class RedisStore(Store):
    """Store backed by a Redis server."""

    def __init__(self, config: Config, client: Any = None) -> None:
        self.config = config
        self._client = client
        self._lock = threading.Lock()

    @property
    def _store_conf(self) -> StoreConfig:
        return self.config.store

    @property
    def client(self) -> Any:
        """The Redis client, connected on first use."""
        with self._lock:
            if self._client is None:
                store = self._store_conf
                logger.debug("connecting to redis: %s:%s", store.host, store.port)
                self._client = redis.Redis(
                    host=store.host,
                    port=store.port,
                    username=store.user or None,
                    password=store.password or None,
                    decode_responses=True,
                )
            return self._client

    def _key(self, kind: str, name: str) -> str:
        return f"{self._store_conf.redis_prefix}_{kind}_{name}"

    def _kv_key(self, cat: str, key: str) -> str:
        return f"{self._store_conf.redis_prefix}_kv_{cat}_{key}"

    def _call_lua(self, args: ArgList, script: str) -> str:
        logger.debug("calling lua. keys: %s args: %s", args.keys, args.args)
        ret = self.client.eval(script, len(args.keys), *args.keys, *args.args)
        return handle_redis_result(ret)

    def _expire_kwargs(self) -> dict[str, int]:
        expire = self._store_conf.data_expire
        return {"ex": expire} if expire > 0 else {}

    def ping(self) -> None:
        self.client.ping()

    def populate_data(self, skip_drop: bool) -> None:
        if skip_drop:
            return
        self.client.flushall()
        logger.info("call redis flushall")

    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None:
        logger.debug("calling FindTransGlobalStore: %s", gid)
        raw = self.client.get(self._key("g", gid))
        return TransGlobalStore.from_json(raw) if raw is not None else None

    def _scan_values(self, position: str, limit: int, pattern: str, accept):
        """Scan keys matching pattern; ``accept`` collects values and returns the count."""
        cursor = int(position) if position else 0
        found = 0
        while True:
            limit -= found
            cursor, keys = self.client.scan(
                cursor=cursor, match=pattern, count=limit if limit > 0 else None
            )
            cursor = int(cursor)
            logger.debug("scan %s: next cursor %d keys %d", pattern, cursor, len(keys))
            if keys:
                found = accept(self.client.mget(keys), limit)
            if found >= limit or cursor == 0:
                break
        return str(cursor) if cursor > 0 else ""

    def scan_trans_global_stores(
        self, position: str, limit: int, condition: TransGlobalScanCondition
    ) -> tuple[list[TransGlobalStore], str]:
        globals_: list[TransGlobalStore] = []

        def accept(values: list[Any], current_limit: int) -> int:
            for raw in values:
                if raw is None:
                    continue
                trans = TransGlobalStore.from_json(raw)
                if condition.matches(trans):
                    globals_.append(trans)
                if len(globals_) >= current_limit:
                    break
            return len(globals_)

        pattern = f"{self._store_conf.redis_prefix}_g_*"
        next_position = self._scan_values(position, limit, pattern, accept)
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        logger.debug("calling FindBranches: %s", gid)
        values = self.client.lrange(self._key("b", gid), 0, -1)
        return [TransBranchStore.from_json(value) for value in values]

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        by_gid: dict[str, list[TransBranchStore]] = defaultdict(list)
        for branch in branches:
            by_gid[branch.gid].append(branch)
        affected = 0
        for gid, group in by_gid.items():
            args = ArgList(prefix=self._store_conf.redis_prefix)
            args.keys.append(self._key("b", gid))
            args.append_object(list(updates)).append_branches(group)
            affected += int(self._call_lua(args, _LUA_UPDATE_BRANCHES) or 0)
        return affected

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        args = (
            new_arg_list(self._store_conf)
            .append_gid(gid)
            .append_raw(status)
            .append_raw(branch_start)
            .append_branches(branches)
        )
        self._call_lua(args, _LUA_LOCK_GLOBAL_SAVE_BRANCHES)

    def may_save_new_trans(
        self, global_trans: TransGlobalStore, branches: list[TransBranchStore]
    ) -> None:
        args = (
            new_arg_list(self._store_conf)
            .append_gid(global_trans.gid)
            .append_object(global_trans)
            .append_raw(_unix(global_trans.next_cron_time))
            .append_raw(global_trans.gid)
            .append_raw(global_trans.status)
            .append_branches(branches)
        )
        global_trans.steps = []
        global_trans.payloads = []
        self._call_lua(args, _LUA_MAY_SAVE_NEW_TRANS)

    def change_global_status(
        self, global_trans: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        old = global_trans.status
        global_trans.status = new_status
        args = (
            new_arg_list(self._store_conf)
            .append_gid(global_trans.gid)
            .append_object(global_trans)
            .append_raw(old)
            .append_raw(finished)
            .append_raw(global_trans.gid)
            .append_raw(new_status)
            .append_object(self._store_conf.finished_data_expire)
        )
        self._call_lua(args, _LUA_CHANGE_GLOBAL_STATUS)

    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None:
        expired = int((_now() + expire_in).timestamp())
        next_time = int((_now() + timedelta(seconds=self.config.retry_interval)).timestamp())
        args = new_arg_list(self._store_conf).append_gid("").append_raw(expired).append_raw(next_time)
        while True:
            try:
                gid = self._call_lua(args, _LUA_LOCK_ONE_GLOBAL_TRANS)
            except NotFoundError:
                return None
            trans = self.find_trans_global_store(gid)
            if trans is not None:
                return trans

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        next_time = int(_now().timestamp())
        timeout_timestamp = int((_now() + after).timestamp())
        args = (
            new_arg_list(self._store_conf)
            .append_gid("")
            .append_raw(timeout_timestamp)
            .append_raw(next_time)
            .append_raw(limit)
        )
        succeed_count = int(self._call_lua(args, _LUA_RESET_CRON_TIME))
        if succeed_count > limit:
            return limit, True
        return succeed_count, False

    def reset_trans_global_cron_time(self, global_trans: TransGlobalStore) -> None:
        now = _now()
        global_trans.next_cron_time = now
        global_trans.update_time = now
        self.client.set(
            self._key("g", global_trans.gid), global_trans.to_json(), **self._expire_kwargs()
        )

    def touch_cron_time(
        self, global_trans: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        global_trans.update_time = _now()
        global_trans.next_cron_time = next_cron_time
        global_trans.next_cron_interval = next_cron_interval
        args = (
            new_arg_list(self._store_conf)
            .append_gid(global_trans.gid)
            .append_object(global_trans)
            .append_raw(_unix(global_trans.next_cron_time))
            .append_raw(global_trans.status)
            .append_raw(global_trans.gid)
        )
        self._call_lua(args, _LUA_TOUCH_CRON_TIME)

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        logger.debug("calling ScanKV: %s %s %d", cat, position, limit)
        kvs: list[KVStore] = []

        def accept(values: list[Any], current_limit: int) -> int:
            kvs.extend(KVStore.from_json(raw) for raw in values if raw is not None)
            return len(kvs)

        pattern = f"{self._store_conf.redis_prefix}_kv_{cat}_*"
        next_position = self._scan_values(position, limit, pattern, accept)
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        pattern = f"{self._store_conf.redis_prefix}_kv_"
        if cat:
            pattern += f"{cat}_"
        if key:
            keys = [pattern + key]
        else:
            keys = list(self.client.scan_iter(match=pattern + "*"))
        if not keys:
            return []
        return [KVStore.from_json(raw) for raw in self.client.mget(keys) if raw is not None]

    def update_kv(self, kv: KVStore) -> None:
        kv.update_time = _now()
        old_version = kv.version
        kv.version = old_version + 1
        args = ArgList(prefix=self._store_conf.redis_prefix)
        args.keys.append(self._kv_key(kv.cat, kv.k))
        args.append_raw(old_version).append_object(kv)
        self._call_lua(args, _LUA_UPDATE_KV)

    def delete_kv(self, cat: str, key: str) -> None:
        if self.client.delete(self._kv_key(cat, key)) == 0:
            raise NotFoundError()

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = _now()
        kv = KVStore(cat=cat, k=key, v=value, version=1, create_time=now, update_time=now)
        args = ArgList(prefix=self._store_conf.redis_prefix)
        args.keys.append(self._kv_key(cat, key))
        args.append_object(kv)
        self._call_lua(args, _LUA_CREATE_KV)