from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_BASE_DIR = Path("~/.local/share/mergetrain")
MAX_COMMIT_LOOKBACK = 100
REQUIRED_ENV_VARS = ("GITLAB_HOST", "GITLAB_TOKEN", "GITLAB_PROJECT", "GITLAB_BOT_NAME")


@dataclass(frozen=True)
class GitLabConfig:
    host: str
    token: str = field(repr=False)
    project: str
    bot_name: str
    timeout_seconds: int = 60


@dataclass(frozen=True)
class TrainConfig:
    rebase_limit: int = 1
    cancel_stale_pipelines: bool = True
    reassign_on_pipeline_failure: bool = True
    claim_label: str | None = None
    commit_lookback: int = MAX_COMMIT_LOOKBACK


@dataclass(frozen=True)
class RuntimeConfig:
    poll_interval_seconds: int = 600
    snapshot_worker_count: int = 4
    base_dir: Path = DEFAULT_BASE_DIR.expanduser()
    log_to_file: bool = False


@dataclass(frozen=True)
class AppConfig:
    gitlab: GitLabConfig
    train: TrainConfig = TrainConfig()
    runtime: RuntimeConfig = RuntimeConfig()


class ConfigError(ValueError):
    pass


def load_config(path: Path | None = None, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    data: dict[str, object] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        with path.open("rb") as fh:
            data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    train_data = _optional_table(data, "train") or {}
    gitlab_data = _optional_table(data, "gitlab") or {}

    gitlab = GitLabConfig(
        host=_require_env(env, "GITLAB_HOST"),
        token=_require_env(env, "GITLAB_TOKEN"),
        project=_require_env(env, "GITLAB_PROJECT"),
        bot_name=_require_env(env, "GITLAB_BOT_NAME"),
        timeout_seconds=_int_with_default(gitlab_data, "timeout_seconds", 60),
    )
    train = TrainConfig(
        rebase_limit=_int_with_default(train_data, "rebase_limit", 1),
        cancel_stale_pipelines=_bool_with_default(train_data, "cancel_stale_pipelines", True),
        reassign_on_pipeline_failure=_bool_with_default(
            train_data, "reassign_on_pipeline_failure", True
        ),
        claim_label=_optional_str(train_data, "claim_label"),
        commit_lookback=_int_with_default(train_data, "commit_lookback", MAX_COMMIT_LOOKBACK),
    )
    runtime = RuntimeConfig(
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 600),
        snapshot_worker_count=_int_with_default(runtime_data, "snapshot_worker_count", 4),
        base_dir=Path(
            _str_with_default(runtime_data, "base_dir", str(DEFAULT_BASE_DIR))
        ).expanduser(),
        log_to_file=_bool_with_default(runtime_data, "log_to_file", False),
    )

    if gitlab.timeout_seconds < 1:
        raise ConfigError("gitlab.timeout_seconds must be >= 1")
    if train.rebase_limit < 1:
        raise ConfigError("train.rebase_limit must be >= 1")
    if not 1 <= train.commit_lookback <= MAX_COMMIT_LOOKBACK:
        raise ConfigError(f"train.commit_lookback must be between 1 and {MAX_COMMIT_LOOKBACK}")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.snapshot_worker_count < 1:
        raise ConfigError("runtime.snapshot_worker_count must be >= 1")

    return AppConfig(gitlab=gitlab, train=train, runtime=runtime)


def _require_env(env: Mapping[str, str], key: str) -> str:
    value = env.get(key, "").strip()
    if not value:
        raise ConfigError(f"Environment variable {key} is required and must be non-empty")
    return value


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    # bool is an int subclass.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value
