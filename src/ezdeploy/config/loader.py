"""Configuration loader for ezdeploy.

This module provides the ConfigLoader class for loading, parsing, and
validating a deployment configuration from either a YAML file or a shell
``KEY="value"`` file.
"""

from __future__ import annotations

import copy
import os
import re
import shlex
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from ezdeploy.config.defaults import (
    DEFAULT_CONFIG,
    DEFAULT_ENV_FILE,
    DEFAULT_SSH_KEY_PATH,
    REQUIRED_FIELDS,
    SHELL_KEY_MAP,
)
from ezdeploy.config.env import load_env_file, substitute_env_values
from ezdeploy.config.validator import error_fields, flatten_pydantic_errors
from ezdeploy.lib.errors import ConfigError
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.models.deployment import DeploymentConfig

logger = get_logger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")
SHELL_SUFFIXES = (".sh", ".env", ".conf")

_SHELL_ASSIGNMENT = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override dict into base dict (in-place).

    For nested dicts, merging is recursive. For other types, override
    completely replaces base.

    Args:
        base: Base dictionary to merge into (modified in-place)
        override: Dictionary with values to override
    """
    for key, override_value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(override_value, dict)
        ):
            _deep_merge(base[key], override_value)
        else:
            base[key] = override_value


def _set_path(data: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def _get_path(data: dict[str, Any], dotted: str) -> Any:
    node: Any = data
    for key in dotted.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def _expand_home(value: str) -> str:
    """Expand ``$HOME``, ``${HOME}`` and a leading ``~`` in a shell value."""
    home = os.path.expanduser("~")
    value = value.replace("${HOME}", home).replace("$HOME", home)
    return os.path.expanduser(value)


def parse_shell_config(text: str) -> dict[str, Any]:
    """Parse a shell ``KEY="value"`` config into the nested config layout.

    Bash arrays (``INGRESS_HOSTS=("a" "b")``) become lists, comments and
    blank lines are ignored, and ``IMAGE=name:tag`` is split into the image
    name and tag. Unknown keys are ignored with a debug log.

    Args:
        text: Shell config file content

    Returns:
        Nested dictionary in the same layout as the YAML format

    Raises:
        ConfigError: If a line cannot be tokenized
    """
    data: dict[str, Any] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = _SHELL_ASSIGNMENT.match(line)
        if not match:
            logger.debug(f"Skipping non-assignment line {lineno}: {line}")
            continue
        key, raw_value = match.group(1), match.group(2).strip()

        try:
            if raw_value.startswith("("):
                inner = raw_value[1 : raw_value.rindex(")")]
                value: Any = [_expand_home(item) for item in shlex.split(inner)]
            else:
                tokens = shlex.split(raw_value, comments=True)
                value = _expand_home(tokens[0]) if tokens else ""
        except ValueError as e:
            raise ConfigError(key, f"Cannot parse line {lineno}: {e}") from e

        if key == "IMAGE":
            name, _, tag = str(value).partition(":")
            _set_path(data, "application.image.name", name)
            if tag:
                _set_path(data, "application.image.tag", tag)
            continue

        dotted = SHELL_KEY_MAP.get(key)
        if dotted is None:
            logger.debug(f"Ignoring unknown config key {key}")
            continue
        if value == "" and dotted != "ingress.hosts":
            continue
        _set_path(data, dotted, value)
    return data


class ConfigLoader:
    """Loads and validates deployment configuration files.

    This class handles:
    - Detecting the file format (YAML or shell key/value)
    - Environment variable substitution in YAML files
    - Merging defaults underneath the file content
    - Reporting every missing required field in a single error
    - Reading the environment file into the configuration
    - Converting pydantic errors into human-readable messages
    """

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        """Initialize the loader.

        Args:
            environ: Environment used for ``${VAR}`` substitution
                (defaults to ``os.environ``)
        """
        self._environ = environ

    def parse_file(self, file_path: str | Path) -> dict[str, Any]:
        """Parse a config file into a nested dictionary.

        Args:
            file_path: Path to the config file

        Returns:
            Parsed configuration dictionary (empty when the file is empty)

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        path = Path(file_path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                "config_file",
                f"Configuration file not found at {file_path}. "
                "Please ensure the file exists at this path.",
            ) from e

        suffix = path.suffix.lower()
        if suffix in YAML_SUFFIXES:
            return self._parse_yaml(text, str(path))
        if suffix in SHELL_SUFFIXES:
            return parse_shell_config(text)

        try:
            parsed = self._parse_yaml(text, str(path))
        except ConfigError:
            parsed = {}
        if parsed:
            return parsed
        return parse_shell_config(text)

    def _parse_yaml(self, text: str, source: str) -> dict[str, Any]:
        try:
            content = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse", f"Failed to parse YAML file {source}: {str(e)}"
            ) from e
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                "yaml_parse", f"Top level of {source} must be a mapping"
            )
        return substitute_env_values(content, self._environ)

    def load(self, file_path: str | Path) -> DeploymentConfig:
        """Load and validate a deployment configuration.

        This method:
        1. Parses the file (YAML with env substitution, or shell format)
        2. Checks every required field and reports all missing ones at once
        3. Merges defaults underneath the parsed values
        4. Resolves and reads the environment file
        5. Validates against the DeploymentConfig schema

        Args:
            file_path: Path to the configuration file

        Returns:
            Validated, immutable DeploymentConfig

        Raises:
            ConfigError: If the file is missing, unparsable, or invalid
        """
        path = Path(file_path)
        raw = self.parse_file(path)

        missing = [field for field in REQUIRED_FIELDS if not _get_path(raw, field)]
        if missing:
            raise ConfigError(
                missing[0],
                "Missing required field(s): " + ", ".join(missing),
                fields=missing,
            )

        merged = copy.deepcopy(DEFAULT_CONFIG)
        _deep_merge(merged, raw)

        ssh = merged["server"]["ssh"]
        if ssh.get("method", "key") == "key" and not ssh.get("key_path"):
            ssh["key_path"] = DEFAULT_SSH_KEY_PATH
        if ssh.get("key_path"):
            ssh["key_path"] = _expand_home(str(ssh["key_path"]))

        merged["environment"] = self._resolve_environment(
            merged.get("environment") or {}, path.parent
        )

        try:
            config = DeploymentConfig(**merged)
        except PydanticValidationError as e:
            error_messages = flatten_pydantic_errors(e)
            fields = error_fields(e)
            error_text = "\n".join(error_messages)
            raise ConfigError(
                fields[0] if fields else "config",
                f"Invalid configuration in {file_path}:\n{error_text}",
                fields=fields,
            ) from e

        logger.info(
            f"Loaded configuration for project '{config.project_name}' "
            f"targeting {config.server.user}@{config.server.ip}"
        )
        return config

    def _resolve_environment(
        self, environment: dict[str, Any], base_dir: Path
    ) -> dict[str, Any]:
        """Resolve the env file path and read its values.

        An explicitly configured env file must exist. The default ``.env``
        is optional and only logged when absent.
        """
        explicit = environment.get("file")
        file_name = str(explicit) if explicit else DEFAULT_ENV_FILE
        env_path = Path(_expand_home(file_name))
        if not env_path.is_absolute():
            env_path = base_dir / env_path

        resolved = dict(environment)
        resolved["file"] = str(env_path)
        if env_path.is_file():
            resolved["values"] = load_env_file(env_path)
        elif explicit:
            raise ConfigError("environment.file", f"Env file not found: {env_path}")
        else:
            logger.warning(
                f"No env file at {env_path}; the workload ConfigMap will be empty"
            )
            resolved["file"] = None
            resolved["values"] = {}
        return resolved


def load_config(file_path: str | Path) -> DeploymentConfig:
    """Load a deployment configuration with a default ConfigLoader."""
    return ConfigLoader().load(file_path)
