"""Transaction store kept in a local bucket database file."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from datetime import datetime, timedelta

from dtmstore.buckets import BucketDB, Transaction
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

BUCKET_GLOBAL = b"global"
BUCKET_BRANCHES = b"branches"
BUCKET_INDEX = b"index"
BUCKET_KV = b"kv"
ALL_BUCKETS = [BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_INDEX, BUCKET_KV]

_BRANCH_COLUMNS = {
    "url",
    "bin_data",
    "op",
    "status",
    "finish_time",
    "rollback_time",
    "create_time",
    "update_time",
}


def _now() -> datetime:
    return datetime.now().astimezone()


def _unix(value: datetime | None) -> int:
    if value is None:
        raise ValueError("next_cron_time is not set")
    return int(value.timestamp())


def initialize_buckets(db: BucketDB) -> None:
    """Make sure every bucket the store uses exists."""
    with db.update() as tx:
        for name in ALL_BUCKETS:
            tx.create_bucket_if_not_exists(name)


def cleanup_expired_data(expire: timedelta, db: BucketDB) -> None:
    """Delete transactions finished or rolled back longer than ``expire`` ago."""
    if expire <= timedelta(0):
        return
    last_keep_time = _now() - expire
    with db.update() as tx:
        bucket = tx.bucket(BUCKET_GLOBAL)
        if bucket is None:
            return
        expired: set[str] = set()
        for key, value in bucket.items():
            trans = TransGlobalStore.from_json(value)
            done_time = trans.finish_time or trans.rollback_time
            if done_time is not None and last_keep_time > done_time:
                expired.add(key.decode("utf-8"))
        cleanup_global_with_gids(tx, expired)
        cleanup_branch_with_gids(tx, expired)
        cleanup_index_with_gids(tx, expired)


def cleanup_global_with_gids(tx: Transaction, gids: Iterable[str] | None) -> None:
    """Delete the global records of the given gids."""
    bucket = tx.bucket(BUCKET_GLOBAL)
    if bucket is None:
        return
    gids = list(gids or ())
    logger.debug("Start to cleanup %d gids", len(gids))
    for gid in gids:
        logger.debug("Start to delete gid: %s", gid)
        bucket.delete(gid)


def cleanup_branch_with_gids(tx: Transaction, gids: Iterable[str] | None) -> None:
    """Delete the branches of the given gids."""
    bucket = tx.bucket(BUCKET_BRANCHES)
    if bucket is None:
        return
    branch_keys: list[bytes] = []
    for gid in gids or ():
        for key, value in bucket.items(gid):
            if TransBranchStore.from_json(value).gid != gid:
                break
            branch_keys.append(key)
    logger.debug("Start to cleanup %d branches", len(branch_keys))
    for key in branch_keys:
        logger.debug("Start to delete branch: %r", key)
        bucket.delete(key)


def cleanup_index_with_gids(tx: Transaction, gids: Iterable[str] | None) -> None:
    """Delete the cron index entries of the given gids."""
    bucket = tx.bucket(BUCKET_INDEX)
    if bucket is None:
        return
    wanted = set(gids or ())
    index_keys: list[bytes] = []
    for key in bucket.keys():
        parts = key.decode("utf-8", errors="replace").split("-")
        if len(parts) != 2:
            continue
        if parts[1] in wanted:
            index_keys.append(key)
    logger.debug("Start to cleanup %d indexes", len(index_keys))
    for key in index_keys:
        logger.debug("Start to delete index: %r", key)
        bucket.delete(key)


def _get_global(tx: Transaction, gid: str) -> TransGlobalStore | None:
    raw = tx.bucket(BUCKET_GLOBAL).get(gid)
    return TransGlobalStore.from_json(raw) if raw is not None else None


def _get_branches(tx: Transaction, gid: str) -> list[TransBranchStore]:
    branches = []
    for _, value in tx.bucket(BUCKET_BRANCHES).items(gid):
        branch = TransBranchStore.from_json(value)
        if branch.gid != gid:
            break
        branches.append(branch)
    return branches


def _put_global(tx: Transaction, trans: TransGlobalStore) -> None:
    tx.bucket(BUCKET_GLOBAL).put(trans.gid, trans.to_json())


def _branch_key(gid: str, index: int) -> str:
    return f"{gid}{index:03d}"


def _put_branches(tx: Transaction, branches: list[TransBranchStore], start: int) -> None:
    if start == -1:
        first = branches[0]
        existing = _get_branches(tx, first.gid)
        if any(b.branch_id == first.branch_id and b.op == first.op for b in existing):
            raise UniqueConflictError()
        start = len(existing)
    bucket = tx.bucket(BUCKET_BRANCHES)
    for offset, branch in enumerate(branches):
        bucket.put(_branch_key(branch.gid, offset + start), branch.to_json())


def _index_key(unix: int, gid: str) -> str:
    return f"{unix}-{gid}"


def _del_index(tx: Transaction, unix: int, gid: str) -> None:
    tx.bucket(BUCKET_INDEX).delete(_index_key(unix, gid))


def _put_index(tx: Transaction, unix: int, gid: str) -> None:
    tx.bucket(BUCKET_INDEX).put(_index_key(unix, gid), gid)


def _kv_key(cat: str, key: str) -> str:
    return f"{cat}-{key}"


def _get_kv(tx: Transaction, cat: str, key: str) -> KVStore | None:
    raw = tx.bucket(BUCKET_KV).get(_kv_key(cat, key))
    return KVStore.from_json(raw) if raw is not None else None


def _put_kv(tx: Transaction, kv: KVStore) -> None:
    tx.bucket(BUCKET_KV).put(_kv_key(kv.cat, kv.k), kv.to_json())


class BoltStore(Store):
    """Store backed by a single local database file."""

    def __init__(
        self,
        data_expire: int,
        retry_interval: int,
        path: str | os.PathLike[str] = "./dtm.bolt",
    ) -> None:
        self.data_expire = data_expire
        self.retry_interval = retry_interval
        db = BucketDB(path, timeout=1.0)
        initialize_buckets(db)
        cleanup_expired_data(timedelta(seconds=data_expire), db)
        self._db = db

    def close(self) -> None:
        """Close the database file."""
        self._db.close()

    def ping(self) -> None:
        return None

    def populate_data(self, skip_drop: bool) -> None:
        if skip_drop:
            return
        with self._db.update() as tx:
            for name in (BUCKET_INDEX, BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_KV):
                tx.delete_bucket(name)
            for name in (BUCKET_INDEX, BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_KV):
                tx.create_bucket(name)
        logger.info("Reset all data for boltdb")

    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None:
        with self._db.view() as tx:
            return _get_global(tx, gid)

    def scan_trans_global_stores(
        self, position: str, limit: int, condition: TransGlobalScanCondition
    ) -> tuple[list[TransGlobalStore], str]:
        globals_: list[TransGlobalStore] = []
        start = position.encode("utf-8")
        with self._db.view() as tx:
            for key, value in tx.bucket(BUCKET_GLOBAL).items(start):
                if key == start:
                    continue
                trans = TransGlobalStore.from_json(value)
                if not condition.matches(trans):
                    continue
                globals_.append(trans)
                if len(globals_) == limit:
                    break
        next_position = "" if len(globals_) < limit else globals_[-1].gid
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        with self._db.view() as tx:
            return _get_branches(tx, gid)

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        unknown = set(updates) - _BRANCH_COLUMNS
        if unknown:
            raise ValueError(f"cannot update branch columns: {sorted(unknown)}")
        affected = 0
        with self._db.update() as tx:
            bucket = tx.bucket(BUCKET_BRANCHES)
            for branch in branches:
                target_key = None
                existing = None
                count = 0
                for key, value in bucket.items(branch.gid):
                    stored = TransBranchStore.from_json(value)
                    if stored.gid != branch.gid:
                        break
                    count += 1
                    if stored.branch_id == branch.branch_id and stored.op == branch.op:
                        target_key, existing = key, stored
                if existing is None:
                    bucket.put(_branch_key(branch.gid, count), branch.to_json())
                else:
                    for column in updates:
                        setattr(existing, column, getattr(branch, column))
                    bucket.put(target_key, existing.to_json())
                affected += 1
        return affected

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        with self._db.update() as tx:
            trans = _get_global(tx, gid)
            if trans is None or trans.status != status:
                raise NotFoundError()
            _put_branches(tx, branches, branch_start)

    def may_save_new_trans(
        self, global_trans: TransGlobalStore, branches: list[TransBranchStore]
    ) -> None:
        with self._db.update() as tx:
            if _get_global(tx, global_trans.gid) is not None:
                raise UniqueConflictError()
            _put_global(tx, global_trans)
            _put_index(tx, _unix(global_trans.next_cron_time), global_trans.gid)
            _put_branches(tx, branches, 0)

    def change_global_status(
        self, global_trans: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        old = global_trans.status
        global_trans.status = new_status
        with self._db.update() as tx:
            stored = _get_global(tx, global_trans.gid)
            if stored is None or stored.status != old:
                raise NotFoundError()
            if finished:
                _del_index(tx, _unix(stored.next_cron_time), stored.gid)
            _put_global(tx, global_trans)

    def touch_cron_time(
        self, global_trans: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        old_unix = _unix(global_trans.next_cron_time)
        global_trans.update_time = _now()
        global_trans.next_cron_time = next_cron_time
        global_trans.next_cron_interval = next_cron_interval
        with self._db.update() as tx:
            stored = _get_global(tx, global_trans.gid)
            if stored is None or stored.gid != global_trans.gid:
                raise NotFoundError()
            _del_index(tx, old_unix, global_trans.gid)
            _put_global(tx, global_trans)
            _put_index(tx, _unix(global_trans.next_cron_time), global_trans.gid)

    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None:
        trans: TransGlobalStore | None = None
        bound = str(int((_now() + expire_in).timestamp())).encode("ascii")
        with self._db.update() as tx:
            index = tx.bucket(BUCKET_INDEX)
            to_delete = []
            for key, value in index.items():
                if key > bound or not (trans is None or trans.is_finished()):
                    break
                trans = _get_global(tx, value.decode("utf-8"))
                to_delete.append(key)
            for key in to_delete:
                index.delete(key)
            if trans is not None and not trans.is_finished():
                next_time = _now() + timedelta(seconds=self.retry_interval)
                trans.next_cron_time = next_time
                _put_global(tx, trans)
                # the new index entry must be written after the deletes, keys may coincide
                _put_index(tx, _unix(next_time), trans.gid)
        return trans

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        next_time = _now()
        bound = str(int((_now() + after).timestamp())).encode("ascii")
        succeed_count = 0
        has_remaining = False
        with self._db.update() as tx:
            index = tx.bucket(BUCKET_INDEX)
            for key, value in index.items(bound):
                if succeed_count == limit:
                    has_remaining = True
                    break
                index.delete(key)
                trans = _get_global(tx, value.decode("utf-8"))
                if trans is None:
                    continue
                trans.next_cron_time = next_time
                _put_global(tx, trans)
                _put_index(tx, _unix(next_time), trans.gid)
                succeed_count += 1
        return succeed_count, has_remaining

    def reset_trans_global_cron_time(self, global_trans: TransGlobalStore) -> None:
        with self._db.update() as tx:
            stored = _get_global(tx, global_trans.gid)
            if stored is None:
                raise NotFoundError()
            now = _now()
            stored.next_cron_time = now
            stored.update_time = now
            _put_global(tx, stored)

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        kvs: list[KVStore] = []
        start = position.encode("utf-8")
        prefix = cat.encode("utf-8")
        with self._db.view() as tx:
            for key, value in tx.bucket(BUCKET_KV).items(start):
                if key == start or not key.startswith(prefix):
                    continue
                kvs.append(KVStore.from_json(value))
                if len(kvs) == limit:
                    break
        next_position = "" if len(kvs) < limit else _kv_key(cat, kvs[-1].k)
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        with self._db.view() as tx:
            if cat and key:
                kv = _get_kv(tx, cat, key)
                return [kv] if kv is not None else []
            prefix = cat.encode("utf-8")
            return [
                KVStore.from_json(value)
                for k, value in tx.bucket(BUCKET_KV).items()
                if k.startswith(prefix)
            ]

    def update_kv(self, kv: KVStore) -> None:
        kv.update_time = _now()
        old_version = kv.version
        kv.version = old_version + 1
        with self._db.update() as tx:
            stored = _get_kv(tx, kv.cat, kv.k)
            if stored is None or stored.version != old_version:
                raise NotFoundError()
            _put_kv(tx, kv)

    def delete_kv(self, cat: str, key: str) -> None:
        with self._db.update() as tx:
            if _get_kv(tx, cat, key) is None:
                raise NotFoundError()
            tx.bucket(BUCKET_KV).delete(_kv_key(cat, key))

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = _now()
        kv = KVStore(cat=cat, k=key, v=value, version=1, create_time=now, update_time=now)
        with self._db.update() as tx:
            if _get_kv(tx, cat, key) is not None:
                raise UniqueConflictError()
            _put_kv(tx, kv)