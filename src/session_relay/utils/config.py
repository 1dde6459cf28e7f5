"""Configuration loading for Session Relay."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from session_relay import constants
from session_relay.models.config import RelayConfig

LOG = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


def config_path() -> Path:
    override = os.environ.get(constants.CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return constants.CONFIG_FILE


def load_config(path: Optional[Path] = None) -> RelayConfig:
    """Load the relay configuration, falling back to defaults when no file exists."""
    target = path or config_path()
    if not target.exists():
        LOG.info("No config at %s; using defaults", target)
        return RelayConfig()
    try:
        raw = json.loads(target.read_text(encoding="utf-8"))
        return RelayConfig.model_validate(raw)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Invalid config {target}: {exc}") from exc


def write_default_config(path: Optional[Path] = None, force: bool = False) -> Path:
    """Write a default config file and return its location."""
    target = path or config_path()
    if target.exists() and not force:
        return target
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = RelayConfig().model_dump(by_alias=True, exclude_none=True)
    target.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return target


def run_buffer_dir(config: RelayConfig) -> Path:
    if config.buffer_dir:
        return Path(config.buffer_dir).expanduser()
    return constants.RUN_BUFFER_DIR
