"""Server configuration: defaults, environment variables and a YAML file."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DTM_METRICS_PORT = 8889
MYSQL = "mysql"
REDIS = "redis"
BOLTDB = "boltdb"
POSTGRES = "postgres"
SQLSERVER = "sqlserver"


class ConfigError(ValueError):
    """The configuration is invalid."""


def _opt(name: str, default: Any = None, factory: Any = None) -> Any:
    """A field known in YAML and the environment by ``name``."""
    if factory is not None:
        return field(default_factory=factory, metadata={"yaml": name})
    return field(default=default, metadata={"yaml": name})


@dataclass
class MicroService:
    """Microservice settings for gRPC."""

    driver: str = _opt("Driver", "default")
    target: str = _opt("Target", "")
    end_point: str = _opt("EndPoint", "")


@dataclass
class HTTPMicroService:
    """Microservice settings for HTTP based registries."""

    driver: str = _opt("Driver", "default")
    registry_type: str = _opt("RegistryType", "")
    registry_address: str = _opt("RegistryAddress", "")
    registry_options: str = _opt("RegistryOptions", "{}")
    target: str = _opt("Target", "")
    end_point: str = _opt("EndPoint", "")


@dataclass
class LogConfig:
    """Log output settings."""

    outputs: str = _opt("Outputs", "stderr")
    rotation_enable: int = _opt("RotationEnable", 0)
    rotation_config_json: str = _opt("RotationConfigJSON", "{}")


@dataclass
class StoreConfig:
    """Storage backend settings."""

    driver: str = _opt("Driver", BOLTDB)
    host: str = _opt("Host", "")
    port: int = _opt("Port", 0)
    user: str = _opt("User", "")
    password: str = _opt("Password", "")
    db: str = _opt("Db", "dtm")
    schema: str = _opt("Schema", "public")
    max_open_conns: int = _opt("MaxOpenConns", 500)
    max_idle_conns: int = _opt("MaxIdleConns", 500)
    conn_max_life_time: int = _opt("ConnMaxLifeTime", 5)
    data_expire: int = _opt("DataExpire", 604800)
    finished_data_expire: int = _opt("FinishedDataExpire", 86400)
    redis_prefix: str = _opt("RedisPrefix", "{a}")

    def is_db(self) -> bool:
        """Return True for the SQL drivers."""
        return self.driver in (MYSQL, POSTGRES, SQLSERVER)

    def get_db_conf(self) -> dict[str, Any]:
        """Connection settings for an SQL database."""
        return {
            "driver": self.driver,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "db": self.db,
            "schema": self.schema,
        }


@dataclass
class Config:
    """Configuration of the transaction server."""

    store: StoreConfig = _opt("Store", factory=StoreConfig)
    trans_cron_interval: int = _opt("TransCronInterval", 3)
    timeout_to_fail: int = _opt("TimeoutToFail", 35)
    retry_interval: int = _opt("RetryInterval", 10)
    request_timeout: int = _opt("RequestTimeout", 3)
    http_port: int = _opt("HttpPort", 36789)
    grpc_port: int = _opt("GrpcPort", 36790)
    json_rpc_port: int = _opt("JsonRpcPort", 36791)
    micro_service: MicroService = _opt("MicroService", factory=MicroService)
    http_micro_service: HTTPMicroService = _opt("HttpMicroService", factory=HTTPMicroService)
    update_branch_sync: int = _opt("UpdateBranchSync", 0)
    update_branch_async_goroutine_num: int = _opt("UpdateBranchAsyncGoroutineNum", 1)
    log_level: str = _opt("LogLevel", "info")
    log: LogConfig = _opt("Log", factory=LogConfig)
    time_zone_offset: str = _opt("TimeZoneOffset", "")
    config_update_interval: int = _opt("ConfigUpdateInterval", 3)
    alert_retry_limit: int = _opt("AlertRetryLimit", 3)
    alert_web_hook: str = _opt("AlertWebHook", "")
    admin_base_path: str = _opt("AdminBasePath", "")

    def to_dict(self) -> dict[str, Any]:
        """Nested mapping keyed by the YAML names."""
        return _to_dict(self)


def _yaml_name(f: Any) -> str:
    return f.metadata.get("yaml", f.name)


def _to_dict(conf: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for f in fields(conf):
        value = getattr(conf, f.name)
        result[_yaml_name(f)] = _to_dict(value) if is_dataclass(value) else value
    return result


def to_underscore_upper(key: str) -> str:
    """Turn a field path like ``MicroService_Driver`` into ``MICRO_SERVICE_DRIVER``."""
    key = key.strip("_")
    key = re.sub(r"([A-Z])([A-Z][a-z])", r"\1_\2", key)
    key = re.sub(r"([a-z])([A-Z]+)", r"\1_\2", key)
    return key.upper()


def _parse_int(text: str, name: str) -> int:
    try:
        return int(text)
    except ValueError as exc:
        raise ConfigError(f"invalid integer for {name}: {text!r}") from exc


def load_from_env(prefix: str, conf: Any) -> None:
    """Fill a configuration object from environment variables, falling back to defaults."""
    if not is_dataclass(conf) or isinstance(conf, type):
        raise TypeError(f"should be a dataclass instance, but {type(conf).__name__} found")
    for f in fields(conf):
        path = f"{prefix}_{_yaml_name(f)}"
        current = getattr(conf, f.name)
        if is_dataclass(current):
            load_from_env(path, current)
            continue
        env_name = to_underscore_upper(path)
        raw = os.environ.get(env_name, "")
        default = f.default
        if isinstance(default, str):
            setattr(conf, f.name, raw or default)
        elif isinstance(default, int):
            setattr(conf, f.name, _parse_int(raw, env_name) if raw else default)
        else:
            raise TypeError(f"unsupported type: {type(default).__name__}")


def _apply_mapping(conf: Any, data: dict[str, Any]) -> None:
    for f in fields(conf):
        name = _yaml_name(f)
        if name not in data:
            continue
        value = data[name]
        current = getattr(conf, f.name)
        if is_dataclass(current):
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigError(f"{name} should be a mapping")
            _apply_mapping(current, value)
        elif isinstance(f.default, int):
            if value is None:
                setattr(conf, f.name, 0)
            elif isinstance(value, int):
                setattr(conf, f.name, int(value))
            else:
                raise ConfigError(f"invalid integer for {name}: {value!r}")
        else:
            setattr(conf, f.name, "" if value is None else str(value))


def check_config(conf: Config) -> None:
    """Raise ConfigError when the configuration cannot be used."""
    if conf.retry_interval < 10:
        raise ConfigError("RetryInterval should not be less than 10")
    if conf.timeout_to_fail < conf.retry_interval:
        raise ConfigError("TimeoutToFail should not be less than RetryInterval")
    store = conf.store
    if store.driver == BOLTDB:
        return
    if store.driver in (MYSQL, POSTGRES):
        if store.host == "":
            raise ConfigError("Db host not valid ")
        if store.port == 0:
            raise ConfigError("Db port not valid ")
        if store.user == "":
            raise ConfigError("Db user not valid ")
        if store.schema == "":
            raise ConfigError("Postgres schema not valid")
    elif store.driver == REDIS:
        if store.host == "":
            raise ConfigError("Redis host not valid")
        if store.port == 0:
            raise ConfigError("Redis port not valid")


def load_config(conf_file: str | os.PathLike[str] | None = None) -> Config:
    """Load configuration from the environment and then the optional YAML file."""
    conf = Config()
    load_from_env("", conf)
    if conf_file:
        content = yaml.safe_load(Path(conf_file).read_text(encoding="utf-8"))
        if content is None:
            content = {}
        if not isinstance(content, dict):
            raise ConfigError(f"config file {conf_file} should hold a mapping")
        _apply_mapping(conf, content)
    logger.info(
        "config file: %s loaded config is: \n%s",
        conf_file or "",
        json.dumps(conf.to_dict(), indent=2),
    )
    check_config(conf)
    return conf