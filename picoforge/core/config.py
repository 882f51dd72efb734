"""Engine configuration loaded from the user's config directory."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

from jsonschema import ValidationError

from picoforge.core.errors import ConfigError
from picoforge.core.profile_loader import load_schema_validator, read_yaml


@dataclass(frozen=True)
class EngineConfig:
    exchange_timeout_s: float = 5.0
    max_continuations: int = 16
    lock_token_ttl_s: float = 60.0
    diagnostics_buffer: int = 256


def config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "picoforge/config.yaml"


def load_config(path: Path | None = None) -> EngineConfig:
    path = path or config_path()
    if not path.exists():
        return EngineConfig()

    doc = read_yaml(path, error=ConfigError, load_error=ConfigError)
    try:
        load_schema_validator("config.schema.json").validate(doc)
    except ValidationError as exc:
        where = ".".join(str(p) for p in exc.path)
        raise ConfigError(f"Invalid config {path}{f' ({where})' if where else ''}: {exc.message}") from exc

    known = {f.name for f in fields(EngineConfig)}
    return EngineConfig(**{key: value for key, value in doc.items() if key in known})
