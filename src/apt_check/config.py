from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

import yaml

from apt_check.index_client import IndexAuth, IndexSettings

DEFAULT_URL = "http://archive.ubuntu.com/ubuntu"
DEFAULT_DIST = "jammy"

_CONFIG_TABLE = "apt_check"
_CONFIG_NAMES = ("apt-check.toml", "apt-check.yaml", "apt-check.yml")

_DEFAULTS: dict[str, Any] = {
    "url": DEFAULT_URL,
    "distro": DEFAULT_DIST,
    "path": None,
    "key": None,
    "raw_key": False,
    "timeout_s": 30.0,
    "retries": 2,
    "components": [],
    "architectures": [],
    "check_files": False,
    "max_concurrency": 4,
    "probe_concurrency": 16,
    "cache_ttl_s": 24 * 60 * 60,
    "use_cache": False,
    "refresh": False,
    "log_level": "INFO",
    "bearer_token": None,
    "basic_username": None,
    "basic_password": None,
}

# 环境变量 -> 配置键；列表类取值以逗号分隔
_ENV_VARS = {
    "APT_CHECK_URL": "url",
    "APT_CHECK_DISTRO": "distro",
    "APT_CHECK_PATH": "path",
    "APT_CHECK_KEY": "key",
    "APT_CHECK_COMPONENTS": "components",
    "APT_CHECK_ARCHITECTURES": "architectures",
    "APT_CHECK_BEARER_TOKEN": "bearer_token",
    "APT_CHECK_BASIC_USERNAME": "basic_username",
    "APT_CHECK_BASIC_PASSWORD": "basic_password",
    "APT_CHECK_LOG_LEVEL": "log_level",
}
_LIST_KEYS = {"components", "architectures"}


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    apt-check 的运行配置（可来自配置文件、环境变量与 CLI 参数合并）。
    """

    index: IndexSettings
    components: tuple[str, ...] = ()
    architectures: tuple[str, ...] = ()
    check_files: bool = False
    max_concurrency: int = 4
    probe_concurrency: int = 16
    cache_ttl_s: int = 24 * 60 * 60
    use_cache: bool = False
    refresh: bool = False
    log_level: str = "INFO"


def discover_config_file(cwd: Path) -> Path | None:
    """
    按 .apt-check.* 优先、apt-check.* 其次的顺序查找当前目录下的配置文件。
    """
    for prefix in (".", ""):
        for name in _CONFIG_NAMES:
            candidate = cwd / f"{prefix}{name}"
            if candidate.is_file():
                return candidate
    return None


def read_config_table(path: Path) -> dict[str, Any]:
    """
    读取配置文件中的 [apt_check] 表；文件不存在时抛出 OSError。
    """
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".toml":
        data = tomllib.loads(text)
    elif path.suffix.lower() in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML in {path}: {exc}") from exc
    else:
        raise ValueError(f"unsupported config file type: {path.name}")

    table = data.get(_CONFIG_TABLE) if isinstance(data, dict) else None
    return dict(table) if isinstance(table, dict) else {}


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, key in _ENV_VARS.items():
        raw = os.environ.get(var)
        if not raw:
            continue
        if key in _LIST_KEYS:
            overrides[key] = [part.strip() for part in raw.split(",") if part.strip()]
        else:
            overrides[key] = raw
    return overrides


def _auth_from(merged: dict[str, Any]) -> IndexAuth | None:
    bearer = merged["bearer_token"] or None
    user = merged["basic_username"] or None
    password = merged["basic_password"] or None
    if bearer is None and (user is None or password is None):
        return None
    return IndexAuth(bearer_token=bearer, basic_username=user, basic_password=password)


def load_config(config_path: str | None) -> AppConfig:
    """
    依次合并默认值、配置文件与环境变量（后者优先），生成 AppConfig。
    """
    path = Path(config_path) if config_path else discover_config_file(Path.cwd())

    merged = dict(_DEFAULTS)
    if path is not None:
        merged.update({k: v for k, v in read_config_table(path).items() if k in _DEFAULTS and v is not None})
    merged.update(_env_overrides())

    settings = IndexSettings(
        url=str(merged["url"]),
        dist=str(merged["distro"]),
        timeout_s=float(merged["timeout_s"]),
        retries=int(merged["retries"]),
        auth=_auth_from(merged),
        path=None if merged["path"] is None else str(merged["path"]),
        key_url=merged["key"] or None,
        raw_key=bool(merged["raw_key"]),
    )
    return AppConfig(
        index=settings,
        components=tuple(str(c) for c in merged["components"]),
        architectures=tuple(str(a) for a in merged["architectures"]),
        check_files=bool(merged["check_files"]),
        max_concurrency=int(merged["max_concurrency"]),
        probe_concurrency=int(merged["probe_concurrency"]),
        cache_ttl_s=int(merged["cache_ttl_s"]),
        use_cache=bool(merged["use_cache"]),
        refresh=bool(merged["refresh"]),
        log_level=str(merged["log_level"]).upper(),
    )
