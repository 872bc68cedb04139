"""Records kept by a transaction store and the interface every store implements."""

from __future__ import annotations

import abc
import base64
import json
import re
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any

STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_SUCCEED = "succeed"
STATUS_FAILED = "failed"
STATUS_ABORTING = "aborting"


class StorageError(Exception):
    """Base class for errors reported by a store."""


class NotFoundError(StorageError):
    """The item asked for does not exist, or is not in the expected state."""

    def __init__(self, message: str = "storage: NotFound") -> None:
        super().__init__(message)


class UniqueConflictError(StorageError):
    """The item conflicts with an existing one on a unique key."""

    def __init__(self, message: str = "storage: UniqueKeyConflict") -> None:
        super().__init__(message)


_FRACTION = re.compile(r"\.(\d+)")
_SKIP = {"skip": True}
_FLATTEN = {"flatten": True}


def _parse_time(text: Any) -> datetime | None:
    if text is None or text == "":
        return None
    if isinstance(text, datetime):
        return text
    value = str(text).strip()
    if value[-1:] in ("Z", "z"):
        value = value[:-1] + "+00:00"
    # Sub-microsecond digits cannot be represented; keep six.
    value = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], value, count=1)
    return datetime.fromisoformat(value)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, list):
        return [dict(v) if isinstance(v, dict) else v for v in value]
    if isinstance(value, dict):
        return dict(value)
    return value


def _decode(default: Any, raw: Any) -> Any:
    if default is None:
        return _parse_time(raw)
    if isinstance(default, bytes):
        return base64.b64decode(raw) if raw else b""
    if isinstance(default, bool):
        return bool(raw)
    if isinstance(default, int):
        return int(raw or 0)
    if isinstance(default, str):
        return raw or ""
    if isinstance(default, list):
        return [dict(v) if isinstance(v, dict) else v for v in raw or []]
    if isinstance(default, dict):
        return dict(raw or {})
    return raw


def _record_to_dict(record: Any, omit_empty: bool = True) -> dict[str, Any]:
    """JSON form driven by the dataclass fields; empty fields are left out if asked."""
    data: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if f.metadata.get("skip"):
            continue
        if f.metadata.get("flatten"):
            data.update(value.to_dict())
        elif value or not omit_empty:
            data[f.name] = _encode(value)
    return data


def _record_from_dict(cls: Any, data: dict[str, Any]) -> Any:
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.metadata.get("skip"):
            continue
        if f.metadata.get("flatten"):
            kwargs[f.name] = f.default_factory.from_dict(data)  # type: ignore[misc, union-attr]
            continue
        default = f.default_factory() if f.default is MISSING else f.default  # type: ignore[misc]
        kwargs[f.name] = _decode(default, data.get(f.name))
    return cls(**kwargs)


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"))


@dataclass
class TransOptions:
    """Per-transaction options supplied by the client."""

    wait_result: bool = False
    timeout_to_fail: int = 0
    request_timeout: int = 0
    retry_interval: int = 0
    branch_headers: dict[str, str] = field(default_factory=dict)
    retry_limit: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransOptions:
        return _record_from_dict(cls, data)

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> TransOptions:
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class TransGlobalExt:
    """Extra data of a global transaction, stored serialised in ext_data."""

    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class TransGlobalScanCondition:
    """Filter applied when scanning global transactions."""

    status: str = ""
    trans_type: str = ""
    create_time_start: datetime | None = None
    create_time_end: datetime | None = None

    def matches(self, trans: TransGlobalStore) -> bool:
        """Return True when the transaction passes every set filter."""
        if self.status and trans.status != self.status:
            return False
        if self.trans_type and trans.trans_type != self.trans_type:
            return False
        if self.create_time_start is not None:
            if trans.create_time is None or not trans.create_time > self.create_time_start:
                return False
        if self.create_time_end is not None:
            if trans.create_time is None or not trans.create_time < self.create_time_end:
                return False
        return True


@dataclass
class TransGlobalStore:
    """A global transaction as kept by a store."""

    gid: str = ""
    trans_type: str = ""
    status: str = ""
    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    steps: list[dict[str, str]] = field(default_factory=list)
    payloads: list[str] = field(default_factory=list)
    bin_payloads: list[bytes] = field(default_factory=list, metadata=_SKIP)
    query_prepared: str = ""
    protocol: str = ""
    finish_time: datetime | None = None
    rollback_time: datetime | None = None
    result: str = ""
    rollback_reason: str = ""
    options: str = ""
    custom_data: str = ""
    next_cron_interval: int = 0
    next_cron_time: datetime | None = None
    owner: str = ""
    ext: TransGlobalExt = field(default_factory=TransGlobalExt, metadata=_SKIP)
    ext_data: str = ""
    trans_options: TransOptions = field(default_factory=TransOptions, metadata=_FLATTEN)

    def is_finished(self) -> bool:
        """Return True once the transaction has succeeded or failed."""
        return self.status in (STATUS_FAILED, STATUS_SUCCEED)

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransGlobalStore:
        return _record_from_dict(cls, data)

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> TransGlobalStore:
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class TransBranchStore:
    """One branch operation of a global transaction; binary data is base64 in JSON."""

    gid: str = ""
    branch_id: str = ""
    op: str = ""
    status: str = ""
    url: str = ""
    bin_data: bytes = b""
    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None
    finish_time: datetime | None = None
    rollback_time: datetime | None = None
    error: Exception | None = field(default=None, metadata=_SKIP)

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransBranchStore:
        return _record_from_dict(cls, data)

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> TransBranchStore:
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class KVStore:
    """A versioned key-value pair within a category."""

    cat: str = ""
    k: str = ""
    v: str = ""
    version: int = 0
    id: int = 0
    create_time: datetime | None = None
    update_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self, omit_empty=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KVStore:
        return _record_from_dict(cls, data)

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> KVStore:
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


class Store(abc.ABC):
    """Interface of a transaction store.

    Scans take a position string and return ``(items, next_position)``;
    an empty next position means the scan is complete. ``branch_start`` of -1
    appends branches; otherwise they overwrite from that index. Missing items
    raise NotFoundError, duplicates UniqueConflictError.
    """

    @abc.abstractmethod
    def ping(self) -> None: ...

    @abc.abstractmethod
    def populate_data(self, skip_drop: bool) -> None: ...

    @abc.abstractmethod
    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None: ...

    @abc.abstractmethod
    def scan_trans_global_stores(
        self, position: str, limit: int, condition: TransGlobalScanCondition
    ) -> tuple[list[TransGlobalStore], str]: ...

    @abc.abstractmethod
    def find_branches(self, gid: str) -> list[TransBranchStore]: ...

    @abc.abstractmethod
    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int: ...

    @abc.abstractmethod
    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None: ...

    @abc.abstractmethod
    def may_save_new_trans(
        self, global_trans: TransGlobalStore, branches: list[TransBranchStore]
    ) -> None: ...

    @abc.abstractmethod
    def change_global_status(
        self, global_trans: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None: ...

    @abc.abstractmethod
    def touch_cron_time(
        self, global_trans: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None: ...

    @abc.abstractmethod
    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None: ...

    @abc.abstractmethod
    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]: ...

    @abc.abstractmethod
    def reset_trans_global_cron_time(self, global_trans: TransGlobalStore) -> None: ...

    @abc.abstractmethod
    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]: ...

    @abc.abstractmethod
    def find_kv(self, cat: str, key: str) -> list[KVStore]: ...

    @abc.abstractmethod
    def update_kv(self, kv: KVStore) -> None: ...

    @abc.abstractmethod
    def delete_kv(self, cat: str, key: str) -> None: ...

    @abc.abstractmethod
    def create_kv(self, cat: str, key: str, value: str) -> None: ...