"""Configuration loading for the synchronisation service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .directory import resolve_database_path
from .scheduler import DEFAULT_INTERVAL_MINUTES, MAX_INTERVAL_MINUTES, MIN_INTERVAL_MINUTES

logger = logging.getLogger("vpnsync.config")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_flag(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute() or base_path is None:
        return candidate.resolve(strict=False)
    return (base_path / candidate).resolve(strict=False)


def _split_tokens(raw: object) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        items = str(raw).split(",")
    return tuple(token.strip() for token in items if token.strip())


@dataclass(frozen=True)
class SSHSettings:
    """Remote Docker host reached over SSH."""

    hostname: str
    username: str
    private_key_path: Path
    port: int = 22
    passphrase: Optional[str] = None
    allow_unknown_hosts: bool = False
    known_hosts_file: Optional[Path] = None

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "SSHSettings":
        required_fields = {"hostname", "username", "private_key_path"}
        missing = required_fields - set(data.keys())
        if missing:
            raise ValueError(f"Missing required ssh configuration fields: {', '.join(sorted(missing))}")

        known_hosts = data.get("known_hosts_file")
        return SSHSettings(
            hostname=str(data["hostname"]),
            username=str(data["username"]),
            private_key_path=_resolve_path(data["private_key_path"], base_path),
            port=int(data.get("port", 22)),  # type: ignore[arg-type]
            passphrase=str(data["passphrase"]) if data.get("passphrase") is not None else None,
            allow_unknown_hosts=_env_flag(data.get("allow_unknown_hosts"), False),
            known_hosts_file=_resolve_path(known_hosts, base_path) if known_hosts else None,
        )


@dataclass(frozen=True)
class SyncSettings:
    """Runtime settings; see :func:`load_settings` for their sources."""

    database_path: Path = field(default_factory=lambda: resolve_database_path(None))
    container_name: str = "openvpn-as"
    sacli_path: str = "sacli"
    command_timeout: float = 30.0
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    run_on_startup: bool = False
    scheduler_enabled: bool = True
    history_size: int = 10
    docker_host: Optional[str] = None
    ssh: Optional[SSHSettings] = None
    api_tokens: Tuple[str, ...] = ()


def _coerce_interval(raw: object) -> int:
    try:
        minutes = int(str(raw).strip())
    except (TypeError, ValueError):
        minutes = -1
    if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
        logger.warning(
            "Invalid sync interval %r; using default of %d minutes",
            raw,
            DEFAULT_INTERVAL_MINUTES,
        )
        return DEFAULT_INTERVAL_MINUTES
    return minutes


def _coerce_positive_float(raw: object, name: str) -> float:
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def _coerce_positive_int(raw: object, name: str) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a whole number") from exc
    if value < 1:
        raise ValueError(f"{name} must be at least 1")
    return value


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the YAML configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "vpnsync.yaml").resolve(strict=False)


def _load_yaml(config_path: Path) -> Dict[str, object]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return raw


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncSettings:
    """Build settings from an optional YAML file overridden by ``VPNSYNC_*`` variables."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("VPNSYNC_CONFIG"))

    raw: Dict[str, object] = {}
    base_path: Path | None = None
    if path.exists():
        raw = _load_yaml(path)
        base_path = path.parent
        logger.info("Loaded configuration from %s", path)

    settings = SyncSettings()

    database_path = env.get("VPNSYNC_DB_PATH") or raw.get("database_path")
    if database_path:
        settings = replace(
            settings,
            database_path=_resolve_path(database_path, None if env.get("VPNSYNC_DB_PATH") else base_path),
        )

    overrides: Dict[str, object] = {}

    container = env.get("VPNSYNC_CONTAINER") or raw.get("container_name")
    if container:
        overrides["container_name"] = str(container).strip()

    sacli_path = env.get("VPNSYNC_SACLI") or raw.get("sacli_path")
    if sacli_path:
        overrides["sacli_path"] = str(sacli_path).strip()

    timeout = env.get("VPNSYNC_COMMAND_TIMEOUT") or raw.get("command_timeout")
    if timeout is not None:
        overrides["command_timeout"] = _coerce_positive_float(timeout, "command_timeout")

    interval = env.get("VPNSYNC_INTERVAL_MINUTES") or raw.get("interval_minutes")
    if interval is not None:
        overrides["interval_minutes"] = _coerce_interval(interval)

    overrides["run_on_startup"] = _env_flag(
        env.get("VPNSYNC_RUN_ON_STARTUP", raw.get("run_on_startup")), settings.run_on_startup
    )
    overrides["scheduler_enabled"] = _env_flag(
        env.get("VPNSYNC_SCHEDULER_ENABLED", raw.get("scheduler_enabled")), settings.scheduler_enabled
    )

    history_size = env.get("VPNSYNC_HISTORY_SIZE") or raw.get("history_size")
    if history_size is not None:
        overrides["history_size"] = _coerce_positive_int(history_size, "history_size")

    docker_host = env.get("VPNSYNC_DOCKER_HOST") or raw.get("docker_host")
    if docker_host:
        overrides["docker_host"] = str(docker_host).strip()

    tokens = env.get("VPNSYNC_API_TOKENS") or raw.get("api_tokens")
    if tokens:
        overrides["api_tokens"] = _split_tokens(tokens)

    ssh_raw = raw.get("ssh")
    ssh_env_host = env.get("VPNSYNC_SSH_HOST")
    if ssh_env_host:
        ssh_raw = {
            **(ssh_raw if isinstance(ssh_raw, dict) else {}),
            "hostname": ssh_env_host,
            **{
                key: env[name]
                for key, name in (
                    ("username", "VPNSYNC_SSH_USER"),
                    ("private_key_path", "VPNSYNC_SSH_KEY"),
                    ("port", "VPNSYNC_SSH_PORT"),
                )
                if env.get(name)
            },
        }
    if ssh_raw:
        if not isinstance(ssh_raw, dict):
            raise ValueError("The 'ssh' configuration block must be a mapping")
        overrides["ssh"] = SSHSettings.from_dict(ssh_raw, base_path=base_path)

    return replace(settings, **overrides)


__all__ = ["SyncSettings", "SSHSettings", "load_settings", "resolve_config_path"]
