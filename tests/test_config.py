import pytest
import yaml

from dtmstore.config import (
    MYSQL,
    POSTGRES,
    REDIS,
    Config,
    ConfigError,
    MicroService,
    StoreConfig,
    check_config,
    load_config,
    load_from_env,
    to_underscore_upper,
)

_ENV_NAMES = [
    "STORE_DRIVER",
    "STORE_HOST",
    "STORE_PORT",
    "RETRY_INTERVAL",
    "TIMEOUT_TO_FAIL",
    "HTTP_PORT",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _error_of(conf):
    with pytest.raises(ConfigError) as info:
        check_config(conf)
    return str(info.value)


def test_to_underscore_upper():
    assert to_underscore_upper("MicroService_Driver") == "MICRO_SERVICE_DRIVER"
    assert to_underscore_upper("_Store_Driver") == "STORE_DRIVER"


def test_load_from_env(monkeypatch):
    monkeypatch.setenv("T_DRIVER", "d1")
    ms = MicroService()
    load_from_env("T", ms)
    assert ms.driver == "d1"


def test_load_from_env_restores_defaults(clean_env):
    conf = Config()
    conf.store.driver = "other"
    conf.retry_interval = 99
    load_from_env("", conf)
    assert conf.store.driver == "boltdb"
    assert conf.retry_interval == Config().retry_interval


def test_load_from_env_reads_ints(clean_env):
    clean_env.setenv("HTTP_PORT", "1234")
    clean_env.setenv("STORE_PORT", "6379")
    conf = Config()
    load_from_env("", conf)
    assert conf.http_port == 1234
    assert conf.store.port == 6379


def test_load_from_env_rejects_bad_int(clean_env):
    clean_env.setenv("HTTP_PORT", "abc")
    with pytest.raises(ConfigError):
        load_from_env("", Config())


def test_load_from_env_rejects_non_dataclass():
    with pytest.raises(TypeError):
        load_from_env("", {"a": 1})


def test_check_config():
    conf = Config()
    conf.retry_interval = 1
    assert _error_of(conf) == "RetryInterval should not be less than 10"

    conf.retry_interval = 10
    conf.timeout_to_fail = 5
    assert _error_of(conf) == "TimeoutToFail should not be less than RetryInterval"

    conf.timeout_to_fail = 20
    assert check_config(conf) is None

    conf.store = StoreConfig(driver=MYSQL, host="")
    assert _error_of(conf) == "Db host not valid "

    conf.store = StoreConfig(driver=MYSQL, host="127.0.0.1")
    assert _error_of(conf) == "Db port not valid "

    conf.store = StoreConfig(driver=MYSQL, host="127.0.0.1", port=8686)
    assert _error_of(conf) == "Db user not valid "

    conf.store = StoreConfig(driver=POSTGRES, host="127.0.0.1", port=8686, user="postgres", schema="")
    assert _error_of(conf) == "Postgres schema not valid"

    conf.store = StoreConfig(driver=REDIS, host="", port=8686)
    assert _error_of(conf) == "Redis host not valid"

    conf.store = StoreConfig(driver=REDIS, host="127.0.0.1", port=0)
    assert _error_of(conf) == "Redis port not valid"


@pytest.mark.parametrize("attr", ["retry_interval", "timeout_to_fail"])
def test_small_intervals_rejected(attr):
    conf = Config()
    setattr(conf, attr, 9)
    with pytest.raises(ConfigError):
        check_config(conf)


def test_store_is_db():
    assert StoreConfig(driver=MYSQL).is_db()
    assert StoreConfig(driver="sqlserver").is_db()
    assert not StoreConfig(driver=REDIS).is_db()
    db_conf = StoreConfig(driver=MYSQL, host="h", port=3306, user="u").get_db_conf()
    assert db_conf["host"] == "h"
    assert db_conf["port"] == 3306
    assert db_conf["schema"] == "public"


def test_to_dict_uses_yaml_names():
    data = Config().to_dict()
    assert data["Store"]["Driver"] == "boltdb"
    assert data["HttpPort"] == 36789
    assert data["MicroService"]["Driver"] == "default"


def test_load_config_from_yaml(clean_env, tmp_path):
    path = tmp_path / "conf.yml"
    path.write_text(
        "Store:\n  Driver: redis\n  Host: localhost\n  Port: 6379\nRetryInterval: 15\nLogLevel: debug\n",
        encoding="utf-8",
    )
    conf = load_config(path)
    assert conf.store.driver == "redis"
    assert conf.store.port == 6379
    assert conf.retry_interval == 15
    assert conf.log_level == "debug"
    assert conf.store.redis_prefix == "{a}"


def test_load_config_without_file(clean_env):
    assert load_config() == Config()


def test_load_config_round_trip(clean_env, tmp_path):
    original = Config()
    original.store.driver = REDIS
    original.store.host = "localhost"
    original.store.port = 6379
    original.admin_base_path = "/admin"
    path = tmp_path / "conf.yml"
    path.write_text(yaml.safe_dump(original.to_dict()), encoding="utf-8")
    assert load_config(path) == original


def test_load_config_invalid(clean_env, tmp_path):
    path = tmp_path / "conf.yml"
    path.write_text("RetryInterval: 5\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="RetryInterval should not be less than 10"):
        load_config(path)