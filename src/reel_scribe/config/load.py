"""Configuration loading helpers for Reel-Scribe."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping, MutableMapping
from copy import deepcopy
from pathlib import Path
from typing import Any, cast

import yaml
from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError

__all__ = ["ConfigError", "load_config", "section"]

PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "configs"
SCHEMA_PATH = Path(__file__).with_name("schema.json")
ENV_PREFIX = "REEL_SCRIBE_"
ENV_SEPARATOR = "__"


class ConfigError(RuntimeError):
    """Raised when configuration loading or validation fails."""


def load_config(
    env: str = "dev",
    *,
    config_dir: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    validate: bool = True,
) -> dict[str, Any]:
    """Load the configuration for the requested environment.

    Layers, later ones winning:
        1. ``configs/{env}.yaml`` (or ``.yml``) from ``config_dir``.
        2. The ``overrides`` mapping.
        3. ``REEL_SCRIBE_*`` environment variables, ``__`` separating nested keys, e.g.
           ``REEL_SCRIBE_PROVIDERS__GLADIA__MAX_RETRIES=5``.
    """

    base_dir = Path(config_dir) if config_dir is not None else CONFIG_DIR
    config = _load_yaml_config(_resolve_config_path(base_dir, env))

    if overrides:
        config = _deep_merge(config, overrides)

    config = _apply_env_overrides(config)

    if validate:
        _validate_config(config)

    return config


def section(config: Mapping[str, Any], *keys: str) -> dict[str, Any]:
    """Return a nested mapping section, or an empty dict when any level is missing."""
    current: Any = config
    for key in keys:
        if not isinstance(current, Mapping):
            return {}
        current = current.get(key)
    return dict(current) if isinstance(current, Mapping) else {}


def _resolve_config_path(base_dir: Path, env: str) -> Path:
    for suffix in (".yaml", ".yml"):
        candidate = base_dir / f"{env}{suffix}"
        if candidate.exists():
            return candidate
    raise FileNotFoundError(f"Configuration file not found for environment '{env}' in {base_dir}.")


def _load_yaml_config(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Unable to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping in {path}.")
    return data


def _deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge two mappings without mutating either."""
    result: dict[str, Any] = deepcopy(dict(base))
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _deep_merge(current, value)
        else:
            result[key] = deepcopy(value)
    return result


def _apply_env_overrides(config: Mapping[str, Any]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for raw_key, raw_value in os.environ.items():
        if not raw_key.startswith(ENV_PREFIX):
            continue
        tokens = _parse_env_key(raw_key)
        if tokens:
            _set_nested_value(overrides, tokens, _coerce_env_value(raw_value))

    if overrides:
        return _deep_merge(config, overrides)
    return deepcopy(dict(config))


def _parse_env_key(env_key: str) -> list[str]:
    raw_path = env_key[len(ENV_PREFIX) :]
    return [
        token.strip().lower().replace("-", "_")
        for token in raw_path.split(ENV_SEPARATOR)
        if token.strip()
    ]


def _set_nested_value(target: MutableMapping[str, Any], keys: Iterable[str], value: Any) -> None:
    keys = list(keys)
    if not keys:
        return
    current: MutableMapping[str, Any] = target
    for key in keys[:-1]:
        existing = current.get(key)
        if not isinstance(existing, MutableMapping):
            existing = {}
            current[key] = existing
        current = existing
    current[keys[-1]] = value


def _coerce_env_value(raw_value: str) -> Any:
    """Interpret environment strings as YAML scalars (``"3"`` -> 3, ``"true"`` -> True)."""
    if raw_value == "":
        return ""
    try:
        return yaml.safe_load(raw_value)
    except yaml.YAMLError:
        return raw_value


def _load_schema() -> dict[str, Any]:
    with SCHEMA_PATH.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ConfigError("Configuration schema must be a JSON object.")
    return cast(dict[str, Any], data)


def _validate_config(config: Mapping[str, Any]) -> None:
    validator = Draft7Validator(_load_schema())
    errors: list[ValidationError] = sorted(
        validator.iter_errors(config), key=lambda err: [str(piece) for piece in err.path]
    )
    if not errors:
        return

    lines = []
    for error in errors:
        path = ".".join(str(piece) for piece in error.path) or "<root>"
        lines.append(f"- {path}: {error.message}")
    raise ConfigError("Configuration validation failed:\n" + "\n".join(lines)) from errors[0]
