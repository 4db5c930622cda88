"""Environment handling for config files: ``${VAR}`` substitution and env files."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from ezdeploy.lib.errors import ConfigError
from ezdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_env_values(data: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Apply ``${VAR}`` substitution to every string inside parsed config data.

    Runs after YAML parsing, so references in comments are ignored and
    substituted values are never re-parsed as YAML.

    Args:
        data: Parsed configuration (mappings, lists and scalars)
        environ: Mapping to resolve from (defaults to ``os.environ``)

    Returns:
        A copy of ``data`` with every reference substituted

    Raises:
        ConfigError: If any referenced variable is not set; all missing
            names are reported together
    """
    env = os.environ if environ is None else environ
    missing: list[str] = []

    def _walk(value: Any) -> Any:
        if isinstance(value, str):
            return _substitute(value, env, missing)
        if isinstance(value, dict):
            return {key: _walk(item) for key, item in value.items()}
        if isinstance(value, list):
            return [_walk(item) for item in value]
        return value

    result = _walk(data)
    _raise_missing(missing)
    return result


def _substitute(text: str, env: Mapping[str, str], missing: list[str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in env:
            if name not in missing:
                missing.append(name)
            return match.group(0)
        return env[name]

    return _ENV_VAR_PATTERN.sub(_replace, text)


def _raise_missing(missing: list[str]) -> None:
    if missing:
        raise ConfigError(
            "environment",
            "Undefined environment variable(s) referenced in config: "
            + ", ".join(missing),
        )


def load_env_file(path: str | Path) -> dict[str, str]:
    """Parse a ``KEY=VALUE`` env file.

    Blank lines and ``#`` comments are ignored, surrounding quotes are
    stripped and ``export`` prefixes are accepted. Keys without a value are
    dropped.

    Args:
        path: Env file path

    Returns:
        Ordered mapping of keys to values

    Raises:
        ConfigError: If the file cannot be read
    """
    env_path = Path(path)
    if not env_path.is_file():
        raise ConfigError("environment.file", f"Env file not found: {env_path}")
    try:
        raw = dotenv_values(env_path, interpolate=False)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(
            "environment.file", f"Failed to read env file {env_path}: {e}"
        ) from e

    values = {key: value for key, value in raw.items() if value is not None}
    logger.debug(f"Loaded {len(values)} variable(s) from {env_path}")
    return values
