from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_RAW_BASE_URL = "https://raw.githubusercontent.com"
DEFAULT_WEB_HOSTS = ("github.com",)
DEFAULT_RAW_HOSTS = ("raw.githubusercontent.com",)
DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class Config:
    api_url: str = DEFAULT_API_URL
    raw_base_url: str = DEFAULT_RAW_BASE_URL
    web_hosts: tuple[str, ...] = DEFAULT_WEB_HOSTS
    raw_hosts: tuple[str, ...] = DEFAULT_RAW_HOSTS
    token: str | None = None  # GitHub token, only sent to api_url
    timeout_s: float = DEFAULT_TIMEOUT_S


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("PINFILE_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("pinfile") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    # JSON has no tuples.
    for key in ("web_hosts", "raw_hosts"):
        value = filtered.get(key)
        if isinstance(value, list):
            filtered[key] = tuple(str(v).strip().lower() for v in value if str(v).strip())
        elif key in filtered:
            filtered.pop(key)
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (mainly for tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def merge_env(base: Config) -> Config:
    """Apply PINFILE_* environment overrides on top of a loaded config."""
    api_url = os.getenv("PINFILE_API_URL") or base.api_url
    raw_base_url = os.getenv("PINFILE_RAW_BASE_URL") or base.raw_base_url
    token = os.getenv("PINFILE_TOKEN") or base.token
    timeout_s: Any = os.getenv("PINFILE_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s
    return Config(
        api_url=api_url,
        raw_base_url=raw_base_url,
        web_hosts=base.web_hosts,
        raw_hosts=base.raw_hosts,
        token=token,
        timeout_s=timeout_s_f,
    )


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
