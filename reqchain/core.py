"""reqchain core - config loading, .env loading, profile selection."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqchain"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqchain.yaml",
    ".reqchain.yml",
    "reqchain.yaml",
    "reqchain.yml",
]

CONFIG_SECTIONS = ("apis", "chains", "profiles", "globalVariables")


class ConfigError(Exception):
    """Configuration is missing, malformed, or names something undefined."""


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (hard - no fallthrough if missing)
      2. .reqchain.yaml (variants) in CWD
      3. ~/.reqchain/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config file. Returns empty sections if not found.

    Stores '_config_dir' in the returned dict so the env file can be
    resolved relative to the config file.
    """
    empty: dict[str, Any] = {key: {} for key in CONFIG_SECTIONS}
    empty.update({"plugins": [], "config": {}, "_config_dir": None})
    if config_path is None:
        return empty
    path = Path(config_path)
    if not path.exists():
        return empty
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    config = {key: data.get(key) or {} for key in CONFIG_SECTIONS}
    config["plugins"] = data.get("plugins") or []
    config["config"] = data.get("config") or {}
    config["_config_dir"] = path.resolve().parent
    return config


def load_env(env_file: str | None, base_dir: str | Path | None = ".") -> dict[str, str]:
    """Load .env file and merge with os.environ.

    .env values take precedence over os.environ.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir or ".") / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
        else:
            logger.warning("Env file not found: %s", dotenv_path)
    return env


def select_profiles(
    config: dict,
    cli_profiles: tuple[str, ...] | list[str] = (),
    use_defaults: bool = True,
) -> list[str]:
    """Default profiles first, then CLI profiles (later wins when merged)."""
    names: list[str] = []
    if use_defaults:
        default = (config.get("config") or {}).get("defaultProfile")
        if isinstance(default, str):
            names.append(default)
        elif default:
            names.extend(default)
    names.extend(cli_profiles)
    profiles = config.get("profiles") or {}
    for name in names:
        if name not in profiles:
            raise ConfigError(f"Profile '{name}' not found in configuration")
    return names


def merge_profiles(names: list[str], profiles: dict[str, dict]) -> dict[str, Any]:
    """Merge named profiles left to right."""
    merged: dict[str, Any] = {}
    for name in names:
        for key, value in (profiles.get(name) or {}).items():
            if key in merged:
                logger.debug("Profile '%s' overrides '%s'", name, key)
            else:
                logger.debug("Profile '%s' sets '%s'", name, key)
            merged[key] = value
    return merged


def parse_variables(var_specs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``-v key=value`` options."""
    variables: dict[str, str] = {}
    for spec in var_specs:
        if "=" not in spec:
            raise ConfigError(f"Invalid variable '{spec}'. Expected key=value")
        key, value = spec.split("=", 1)
        variables[key.strip()] = value
    return variables
