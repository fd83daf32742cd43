"""Global configuration for OpenBroadcast.

Every option resolves in order: ``OPENBROADCAST_<KEY>`` environment variable,
then ``openbroadcast.toml``, then the built-in default.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

ENV_PREFIX = "OPENBROADCAST_"
FANOUT_MODES = ("best_effort", "atomic")


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _fanout_mode(value: Any) -> str:
    normalized = str(value).strip().lower().replace("-", "_")
    if normalized not in FANOUT_MODES:
        raise ValueError(
            f"Unknown fanout mode {value!r}; expected one of {', '.join(FANOUT_MODES)}"
        )
    return normalized


def _positive_int(value: Any) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"Expected a positive integer, got {value!r}")
    return number


def _non_negative_int(value: Any) -> int:
    number = int(value)
    if number < 0:
        raise ValueError(f"Expected zero or more, got {value!r}")
    return number


@dataclass(frozen=True)
class Option:
    default: Any
    cast: Callable[[Any], Any]


OPTIONS: dict[str, Option] = {
    "fanout_mode": Option("best_effort", _fanout_mode),
    "messages_per_page": Option(10, _positive_int),
    "reconcile_interval_minutes": Option(15, _positive_int),
    "enable_scheduler": Option(True, _boolify),
    "seed_events": Option(2, _non_negative_int),
    "seed_attendees_per_event": Option(5, _non_negative_int),
    "seed_invites_per_event": Option(5, _non_negative_int),
    "app_host": Option("0.0.0.0", str),
    "app_port": Option(8000, _positive_int),
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    config_path: Path
    fanout_mode: str
    messages_per_page: int
    reconcile_interval_minutes: int
    enable_scheduler: bool
    seed_events: int
    seed_attendees_per_event: int
    seed_invites_per_event: int
    app_host: str
    app_port: int
    root_token_key: str = "root_admin_token"


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _resolve_option(key: str, file_values: dict[str, Any]) -> Any:
    option = OPTIONS[key]
    raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
    if raw is None:
        raw = file_values.get(key, option.default)
    return option.cast(raw)


def _absolute(path: str | Path, base_dir: Path) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else base_dir / candidate


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv(f"{ENV_PREFIX}BASE_DIR", Path.cwd()))
    config_path = Path(
        config_override
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or base_dir / "openbroadcast.toml"
    )
    file_values = _read_toml(config_path)

    data_dir = _absolute(
        os.getenv(f"{ENV_PREFIX}DATA_DIR") or file_values.get("data_dir") or "data",
        base_dir,
    )
    db_setting = os.getenv(f"{ENV_PREFIX}DB") or file_values.get("database_path")
    database_path = (
        _absolute(db_setting, base_dir) if db_setting else data_dir / "openbroadcast.db"
    )

    loaded = Settings(
        base_dir=base_dir,
        data_dir=data_dir,
        database_path=database_path,
        config_path=config_path,
        **{key: _resolve_option(key, file_values) for key in OPTIONS},
    )
    loaded.data_dir.mkdir(parents=True, exist_ok=True)
    return loaded


def settings_as_dict(current: Settings) -> dict[str, Any]:
    values: dict[str, Any] = {
        "base_dir": str(current.base_dir),
        "data_dir": str(current.data_dir),
        "database_path": str(current.database_path),
    }
    values.update({key: getattr(current, key) for key in OPTIONS})
    return values


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(values: dict[str, Any], *, path: Path) -> None:
    body = "".join(
        f"{key} = {_toml_literal(values[key])}\n" for key in sorted(values)
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# OpenBroadcast configuration\n" + body, encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Merge known ``updates`` into the TOML file and reload module settings."""
    global settings
    target_path = path or settings.config_path
    merged = _read_toml(target_path)
    for key, value in updates.items():
        if key in OPTIONS:
            merged[key] = OPTIONS[key].cast(value)
    write_config_file(merged, path=target_path)
    settings = load_settings(target_path)
    return settings


settings = load_settings()
