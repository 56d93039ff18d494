from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .db import get_db_url, is_postgres_url
from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


QUEUE_STRATEGIES = {"auto", "postgres", "redis", "poll"}
LLM_PROVIDERS = {"google", "openai_compatible"}


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class QueueConfig:
    strategy: str
    redis_url: str
    channel_name: str
    redis_key: str
    listen_timeout_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    max_attempts: int
    sweep_interval_seconds: int
    sweep_min_age_seconds: int


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    model: str
    base_url: str
    api_key: str
    timeout_seconds: int
    temperature: float
    top_p: float
    top_k: int
    max_output_tokens: int
    repair_on_parse_error: bool
    max_attempts: int
    backoff_seconds: float


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float


@dataclass(frozen=True)
class GenerationConfig:
    default_post_count: int
    max_post_count: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    queue: QueueConfig
    jobs: JobsConfig
    worker: WorkerConfig
    llm: LLMConfig
    store_retry: RetryConfig
    generation: GenerationConfig
    admin_token: str | None = None


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "contentgen",
    },
    "queue": {
        "strategy": "auto",
        "redis_url": "",
        "channel_name": "jobs",
        "redis_key": "contentgen:jobs",
        "listen_timeout_seconds": 5,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "max_attempts": 3,
        "sweep_interval_seconds": 30,
        "sweep_min_age_seconds": 10,
    },
    "worker": {
        "concurrency": 1,
    },
    "llm": {
        "provider": "google",
        "model": "gemini-1.5-flash",
        "base_url": "",
        "timeout_seconds": 60,
        "temperature": 0.9,
        "top_p": 1.0,
        "top_k": 1,
        "max_output_tokens": 8192,
        "repair_on_parse_error": True,
        "max_attempts": 3,
        "backoff_seconds": 2.0,
    },
    "store_retry": {
        "max_attempts": 5,
        "base_delay_seconds": 0.2,
        "max_delay_seconds": 5.0,
    },
    "generation": {
        "default_post_count": 7,
        "max_post_count": 30,
    },
}

CONFIG_KEY = "config.runtime"

# env var -> (section, key, caster)
_ENV_OVERRIDES: list[tuple[str, str, str, Any]] = [
    ("CG_QUEUE_STRATEGY", "queue", "strategy", str),
    ("CG_REDIS_URL", "queue", "redis_url", str),
    ("CG_LLM_PROVIDER", "llm", "provider", str),
    ("CG_LLM_MODEL", "llm", "model", str),
    ("CG_LLM_BASE_URL", "llm", "base_url", str),
    ("CG_WORKER_CONCURRENCY", "worker", "concurrency", int),
]


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn, path: str | None = None) -> Config:
    """Build the effective config.

    Precedence, lowest first: defaults, ``config.runtime`` in the settings
    table, the YAML file at ``path`` (or ``CG_CONFIG_PATH``), environment.
    """
    cfg = _deep_copy(get_runtime_config(conn))
    file_path = path or os.environ.get("CG_CONFIG_PATH")
    if file_path:
        cfg = _deep_merge(cfg, load_config_file(file_path))
    _apply_env_overrides(cfg)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    data = _read_yaml(path) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def load_profiles_file(path: str) -> list[dict[str, Any]]:
    data = _read_yaml(path)
    if isinstance(data, dict):
        data = data.get("profiles")
    if not isinstance(data, list):
        raise ConfigError(f"Profiles file must contain a list of profiles: {path}")
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"profiles[{index}] must be a mapping")
        if not item.get("user_id") or not item.get("brand_name"):
            raise ConfigError(f"profiles[{index}] requires user_id and brand_name")
    return data


def _read_yaml(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"File not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"File is not valid YAML: {path}: {exc}") from exc


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    if cfg["queue"]["strategy"] not in QUEUE_STRATEGIES:
        errors.append(
            "config.runtime.queue.strategy must be one of " + ", ".join(sorted(QUEUE_STRATEGIES))
        )
    if cfg["llm"]["provider"] not in LLM_PROVIDERS:
        errors.append(
            "config.runtime.llm.provider must be one of " + ", ".join(sorted(LLM_PROVIDERS))
        )
    for path, value in (
        ("worker.concurrency", cfg["worker"]["concurrency"]),
        ("jobs.max_attempts", cfg["jobs"]["max_attempts"]),
        ("llm.max_attempts", cfg["llm"]["max_attempts"]),
        ("llm.timeout_seconds", cfg["llm"]["timeout_seconds"]),
        ("store_retry.max_attempts", cfg["store_retry"]["max_attempts"]),
        ("generation.default_post_count", cfg["generation"]["default_post_count"]),
    ):
        if value < 1:
            errors.append(f"config.runtime.{path} must be >= 1")
    generation = cfg["generation"]
    if generation["default_post_count"] > generation["max_post_count"]:
        errors.append("config.runtime.generation.default_post_count exceeds max_post_count")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    for env_name, section, key, caster in _ENV_OVERRIDES:
        raw = os.environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            cfg[section][key] = caster(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"{env_name} is invalid: {raw}") from exc


def resolve_queue_strategy(config: Config, db_url: str | None = None) -> str:
    """Map ``auto`` to a concrete strategy and check its connection settings."""
    db_url = db_url if db_url is not None else get_db_url()
    strategy = config.queue.strategy
    if strategy == "auto":
        return "postgres" if is_postgres_url(db_url) else "poll"
    if strategy == "postgres" and not is_postgres_url(db_url):
        raise ConfigError("queue strategy postgres requires a PostgreSQL CG_DB_URL")
    if strategy == "redis" and not config.queue.redis_url:
        raise ConfigError("queue strategy redis requires CG_REDIS_URL")
    return strategy


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    queue_cfg = cfg.get("queue") or {}
    jobs_cfg = cfg.get("jobs") or {}
    worker_cfg = cfg.get("worker") or {}
    llm_cfg = cfg.get("llm") or {}
    retry_cfg = cfg.get("store_retry") or {}
    generation_cfg = cfg.get("generation") or {}

    app = AppConfig(name=str(app_cfg.get("name")))
    queue = QueueConfig(
        strategy=str(queue_cfg.get("strategy")),
        redis_url=str(queue_cfg.get("redis_url") or ""),
        channel_name=str(queue_cfg.get("channel_name")),
        redis_key=str(queue_cfg.get("redis_key")),
        listen_timeout_seconds=int(queue_cfg.get("listen_timeout_seconds")),
    )
    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        max_attempts=int(jobs_cfg.get("max_attempts")),
        sweep_interval_seconds=int(jobs_cfg.get("sweep_interval_seconds")),
        sweep_min_age_seconds=int(jobs_cfg.get("sweep_min_age_seconds")),
    )
    worker = WorkerConfig(concurrency=int(worker_cfg.get("concurrency")))
    api_key = os.environ.get("CG_LLM_API_KEY") or os.environ.get("GEMINI_API_KEY") or ""
    llm = LLMConfig(
        provider=str(llm_cfg.get("provider")),
        model=str(llm_cfg.get("model")),
        base_url=str(llm_cfg.get("base_url") or ""),
        api_key=api_key.strip(),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        temperature=float(llm_cfg.get("temperature")),
        top_p=float(llm_cfg.get("top_p")),
        top_k=int(llm_cfg.get("top_k")),
        max_output_tokens=int(llm_cfg.get("max_output_tokens")),
        repair_on_parse_error=bool(llm_cfg.get("repair_on_parse_error")),
        max_attempts=int(llm_cfg.get("max_attempts")),
        backoff_seconds=float(llm_cfg.get("backoff_seconds")),
    )
    store_retry = RetryConfig(
        max_attempts=int(retry_cfg.get("max_attempts")),
        base_delay_seconds=float(retry_cfg.get("base_delay_seconds")),
        max_delay_seconds=float(retry_cfg.get("max_delay_seconds")),
    )
    generation = GenerationConfig(
        default_post_count=int(generation_cfg.get("default_post_count")),
        max_post_count=int(generation_cfg.get("max_post_count")),
    )
    admin_token = os.environ.get("CG_ADMIN_TOKEN", "").strip() or None
    return Config(
        app=app,
        queue=queue,
        jobs=jobs,
        worker=worker,
        llm=llm,
        store_retry=store_retry,
        generation=generation,
        admin_token=admin_token,
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
