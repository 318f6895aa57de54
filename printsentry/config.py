from __future__ import annotations

import argparse
import socket
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from printsentry.log import get_logger
from printsentry.models import AgentConfiguration

logger = get_logger("config")

# Sections whose keys map one-to-one onto AgentConfiguration fields.
AGENT_SECTIONS = ("agent", "central", "network", "intervals")


class ConfigError(ValueError):
    """Raised when configuration files cannot be read or validated."""


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from, in increasing priority:
    1. ~/.printsentry.toml
    2. ./printsentry.toml
    3. ``path`` if given (must exist)

    Returns a dictionary of configuration values.
    """
    paths = [
        (Path.home() / ".printsentry.toml", False),
        (Path("printsentry.toml"), False),
    ]
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigError(f"config file not found: {explicit}")
        paths.append((explicit, True))

    config: Dict[str, Any] = {}
    for candidate, required in paths:
        if not candidate.exists():
            continue
        try:
            with candidate.open("rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            if required:
                raise ConfigError(f"failed to load config {candidate}: {e}") from e
            logger.warning("failed to load config %s: %s", candidate, e)
            continue
        # Later files override earlier ones key by key
        _deep_update(config, data)
    return config


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and key in target and isinstance(target[key], dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


def _default_agent_id() -> str:
    return f"agent-{socket.gethostname().split('.')[0].lower()}"


def agent_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the agent-related sections into AgentConfiguration keyword args."""
    settings: Dict[str, Any] = {}
    for section in AGENT_SECTIONS:
        values = config.get(section)
        if isinstance(values, dict):
            settings.update(values)
    return settings


def build_agent_configuration(
    config: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None
) -> AgentConfiguration:
    settings = agent_settings(config)
    for key, value in (overrides or {}).items():
        if value is not None:
            settings[key] = value
    settings.setdefault("agent_id", _default_agent_id())
    settings.setdefault("agent_name", settings["agent_id"])
    try:
        return AgentConfiguration.model_validate(settings)
    except ValidationError as e:
        raise ConfigError(f"invalid agent configuration: {e}") from e


def merge_configuration(
    current: AgentConfiguration, changes: Dict[str, Any]
) -> AgentConfiguration:
    """Return a new snapshot with ``changes`` (field names or camelCase) applied.

    Raises pydantic.ValidationError when the result is invalid.
    """
    data = current.model_dump()
    data.update(_normalise_keys(changes))
    return AgentConfiguration.model_validate(data)


def _normalise_keys(changes: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {
        field.alias: name
        for name, field in AgentConfiguration.model_fields.items()
        if field.alias
    }
    return {aliases.get(key, key): value for key, value in changes.items()}


def apply_config(parser: argparse.ArgumentParser, config: Dict[str, Any]) -> None:
    """
    Apply ``[cli]`` configuration values to the argument parser defaults.

    Example config:
    [cli]
    verbose = true
    """
    defaults = config.get("cli")
    if isinstance(defaults, dict):
        parser.set_defaults(**defaults)
