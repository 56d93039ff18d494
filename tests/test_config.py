import copy

import pytest
import yaml

from contentgen.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_profiles_file,
    load_runtime_config,
    resolve_queue_strategy,
    set_runtime_config,
)
from contentgen.storage import init_db


def test_bootstrap_creates_runtime_config(tmp_path):
    conn = init_db()
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(tmp_path):
    conn = init_db()
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["app"]["name"] == "Test"


def test_set_runtime_config_rejects_invalid(tmp_path):
    conn = init_db()
    invalid = {"app": {"name": "Bad"}}
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, invalid)
    assert "Invalid config.runtime" in str(excinfo.value)


def test_defaults(conn):
    config = load_runtime_config(conn)

    assert config.queue.strategy == "auto"
    assert config.jobs.max_attempts == 3
    assert config.llm.provider == "google"
    assert config.llm.repair_on_parse_error is True
    assert config.generation.default_post_count == 7
    assert config.admin_token is None


def test_yaml_file_overrides_defaults(conn, tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump({"worker": {"concurrency": 4}, "llm": {"model": "gemini-1.5-pro"}}),
        encoding="utf-8",
    )

    config = load_runtime_config(conn, str(path))

    assert config.worker.concurrency == 4
    assert config.llm.model == "gemini-1.5-pro"
    assert config.llm.temperature == DEFAULT_CONFIG["llm"]["temperature"]


def test_env_overrides_file(conn, tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump({"worker": {"concurrency": 4}}), encoding="utf-8")
    monkeypatch.setenv("CG_CONFIG_PATH", str(path))
    monkeypatch.setenv("CG_WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("CG_LLM_API_KEY", "key-1")
    monkeypatch.setenv("CG_ADMIN_TOKEN", "admin")

    config = load_runtime_config(conn)

    assert config.worker.concurrency == 8
    assert config.llm.api_key == "key-1"
    assert config.admin_token == "admin"


def test_gemini_api_key_fallback(conn, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")

    assert load_runtime_config(conn).llm.api_key == "gemini-key"


def test_invalid_values_are_rejected(conn, tmp_path, monkeypatch):
    monkeypatch.setenv("CG_QUEUE_STRATEGY", "carrier-pigeon")
    with pytest.raises(ConfigError) as excinfo:
        load_runtime_config(conn)
    assert "queue.strategy" in str(excinfo.value)

    monkeypatch.setenv("CG_QUEUE_STRATEGY", "poll")
    monkeypatch.setenv("CG_WORKER_CONCURRENCY", "many")
    with pytest.raises(ConfigError):
        load_runtime_config(conn)


def test_unknown_keys_and_missing_file(conn, tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump({"llm": {"temprature": 0.5}}), encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        load_runtime_config(conn, str(path))
    assert "unknown" in str(excinfo.value)

    with pytest.raises(ConfigError):
        load_runtime_config(conn, str(tmp_path / "missing.yml"))


def test_resolve_queue_strategy(conn, monkeypatch):
    config = load_runtime_config(conn)

    assert resolve_queue_strategy(config, db_url="") == "poll"
    assert resolve_queue_strategy(config, db_url="postgresql://db/app") == "postgres"

    monkeypatch.setenv("CG_QUEUE_STRATEGY", "postgres")
    with pytest.raises(ConfigError):
        resolve_queue_strategy(load_runtime_config(conn), db_url="")

    monkeypatch.setenv("CG_QUEUE_STRATEGY", "redis")
    with pytest.raises(ConfigError):
        resolve_queue_strategy(load_runtime_config(conn), db_url="")
    monkeypatch.setenv("CG_REDIS_URL", "redis://localhost:6379/0")
    assert resolve_queue_strategy(load_runtime_config(conn), db_url="") == "redis"


def test_load_profiles_file(tmp_path):
    path = tmp_path / "profiles.yml"
    path.write_text(
        yaml.safe_dump({"profiles": [{"user_id": "u1", "brand_name": "Acme", "kind": "brand"}]}),
        encoding="utf-8",
    )

    assert load_profiles_file(str(path)) == [{"user_id": "u1", "brand_name": "Acme", "kind": "brand"}]

    path.write_text(yaml.safe_dump([{"user_id": "u1"}]), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_profiles_file(str(path))
