from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
import os
from pathlib import Path
import re
import tomllib
from typing import Literal, cast


TagBackend = Literal["git", "github"]

DEFAULT_API_BASE_URL = "https://api.appstoreconnect.apple.com/v1"
DEFAULT_STATE_DIR = "~/.storesync"
DEFAULT_RELEASE_NOTES = "Bug fixes and improvements"

# Environment variable -> (TOML table, key)
_ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("APP_STORE_CONNECT_API_KEY_ID", "app_store", "key_id"),
    ("APP_STORE_CONNECT_ISSUER_ID", "app_store", "issuer_id"),
    ("APP_STORE_CONNECT_API_KEY_CONTENT", "app_store", "private_key"),
    ("APP_BUNDLE_ID", "app_store", "bundle_id"),
    ("APP_NAME", "app_store", "app_name"),
    ("APP_ID", "app_store", "app_id"),
    ("GITHUB_REPO_OWNER", "repo", "owner"),
    ("GITHUB_REPO_NAME", "repo", "name"),
    ("IOS_REPO_PATH", "repo", "local_path"),
    ("XCODE_WORKFLOW_ID", "deploy", "workflow_id"),
    ("STORESYNC_STATE_DIR", "runtime", "state_dir"),
)
_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class AppStoreConfig:
    key_id: str
    issuer_id: str
    private_key: str
    bundle_id: str
    app_name: str
    app_id: str | None = None
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str = "main"
    remote: str = "origin"
    local_path: Path | None = None
    tag_backend: TagBackend = "git"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path
    dry_run: bool = False
    lock_stale_seconds: int = 30 * 60


@dataclass(frozen=True)
class DeployConfig:
    workflow_id: str | None = None
    resubmit_rejected: bool = False
    release_notes_locale: str = "en-US"
    default_release_notes: str = DEFAULT_RELEASE_NOTES


@dataclass(frozen=True)
class AppConfig:
    app_store: AppStoreConfig
    repo: RepoConfig
    runtime: RuntimeConfig
    deploy: DeployConfig

    @property
    def lock_path(self) -> Path:
        # One lock per monitored app/repository pair.
        raw = f"{self.app_store.bundle_id}--{self.repo.owner}-{self.repo.name}"
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", raw)
        return self.runtime.state_dir / f"{safe}.lock"

    @property
    def release_sync_enabled(self) -> bool:
        return self.repo.tag_backend == "github" or self.repo.local_path is not None


class ConfigError(ValueError):
    pass


def load_config(
    path: Path | None,
    *,
    environ: Mapping[str, str] | None = None,
    dry_run: bool | None = None,
) -> AppConfig:
    data: dict[str, object] = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with path.open("rb") as fh:
            data = tomllib.load(fh)

    env = os.environ if environ is None else environ
    tables = {
        name: dict(_optional_table(data, name) or {})
        for name in ("app_store", "repo", "runtime", "deploy")
    }
    for env_name, table, key in _ENV_OVERRIDES:
        value = env.get(env_name, "").strip()
        if value:
            tables[table][key] = value

    app_store = _parse_app_store_config(tables["app_store"])
    repo = _parse_repo_config(tables["repo"])
    runtime = RuntimeConfig(
        state_dir=Path(
            _str_with_default(tables["runtime"], "state_dir", DEFAULT_STATE_DIR)
        ).expanduser(),
        dry_run=_bool_with_default(tables["runtime"], "dry_run", False),
        lock_stale_seconds=_int_with_default(tables["runtime"], "lock_stale_seconds", 30 * 60),
    )
    if dry_run or env.get("DRY_RUN", "").strip().lower() in _TRUTHY:
        runtime = replace(runtime, dry_run=True)
    if runtime.lock_stale_seconds < 60:
        raise ConfigError("runtime.lock_stale_seconds must be >= 60")

    deploy = DeployConfig(
        workflow_id=_optional_str(tables["deploy"], "workflow_id"),
        resubmit_rejected=_bool_with_default(tables["deploy"], "resubmit_rejected", False),
        release_notes_locale=_str_with_default(tables["deploy"], "release_notes_locale", "en-US"),
        default_release_notes=_str_with_default(
            tables["deploy"], "default_release_notes", DEFAULT_RELEASE_NOTES
        ),
    )
    return AppConfig(app_store=app_store, repo=repo, runtime=runtime, deploy=deploy)


def _parse_app_store_config(data: dict[str, object]) -> AppStoreConfig:
    private_key = _optional_str(data, "private_key")
    key_path = _optional_str(data, "private_key_path")
    if private_key is None and key_path is not None:
        try:
            private_key = Path(key_path).expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"private_key_path could not be read: {exc}") from exc
    if private_key is None:
        raise ConfigError(
            "private_key is required (APP_STORE_CONNECT_API_KEY_CONTENT or "
            "app_store.private_key_path)"
        )
    timeout = data.get("request_timeout_seconds", 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError("request_timeout_seconds must be a positive number")
    return AppStoreConfig(
        key_id=_require_str(data, "key_id"),
        issuer_id=_require_str(data, "issuer_id"),
        private_key=private_key,
        bundle_id=_require_str(data, "bundle_id"),
        app_name=_require_str(data, "app_name"),
        app_id=_optional_str(data, "app_id"),
        api_base_url=_str_with_default(data, "api_base_url", DEFAULT_API_BASE_URL).rstrip("/"),
        request_timeout_seconds=float(timeout),
    )


def _parse_repo_config(data: dict[str, object]) -> RepoConfig:
    local_path = _optional_str(data, "local_path")
    return RepoConfig(
        owner=_require_str(data, "owner"),
        name=_require_str(data, "name"),
        default_branch=_str_with_default(data, "default_branch", "main"),
        remote=_str_with_default(data, "remote", "origin"),
        local_path=Path(local_path).expanduser() if local_path is not None else None,
        tag_backend=_parse_tag_backend(data.get("tag_backend", "git")),
    )


def _parse_tag_backend(value: object) -> TagBackend:
    if not isinstance(value, str):
        raise ConfigError("tag_backend must be one of: git, github")
    normalized = value.strip().lower()
    if normalized not in {"git", "github"}:
        raise ConfigError("tag_backend must be one of: git, github")
    return cast(TagBackend, normalized)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value
