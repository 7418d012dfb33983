"""
Settings loader — reads keg's own configuration (not package manifests).

Resolution order for the config file:
    --config flag  >  KEG_CONFIG env var  >  ~/.config/keg/config.yml

A missing file is not an error: every setting has a default.
KEG_PREFIX / KEG_STATE_DIR override the file, and an explicit
``prefix`` argument (the ``--prefix`` flag) overrides everything.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from keg.core.models.layout import InstallLayout, LayoutConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("~/.config/keg/config.yml")
DEFAULT_PREFIX = Path("~/.local")
DEFAULT_STATE_DIR = Path("~/.keg")


class ConfigError(Exception):
    """Raised when keg's configuration file is invalid."""

    exit_code = 2


class FetchConfig(BaseModel):
    """Download behaviour."""

    timeout: float = 60.0          # per request, seconds
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = 1.0
    max_delay: float = 30.0
    deadline: float = 600.0        # whole fetch incl. retries, seconds


class Settings(BaseModel):
    """Resolved keg settings."""

    prefix: Path = DEFAULT_PREFIX
    state_dir: Path = DEFAULT_STATE_DIR
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    lock_timeout: float = 30.0
    smoke_timeout: float = 30.0

    @model_validator(mode="after")
    def _state_outside_prefix(self) -> Settings:
        # Lock files and the install log must never land in the destination root.
        prefix = self.prefix.expanduser().resolve()
        state = self.resolved_state_dir
        if state.is_relative_to(prefix) or prefix.is_relative_to(state):
            raise ValueError(
                f"state_dir {state} and prefix {prefix} must not contain each other"
            )
        return self

    def install_layout(self) -> InstallLayout:
        return InstallLayout.for_prefix(self.prefix, self.layout)

    @property
    def resolved_state_dir(self) -> Path:
        return self.state_dir.expanduser().resolve()

    @property
    def receipts_dir(self) -> Path:
        return self.resolved_state_dir / "receipts"

    @property
    def locks_dir(self) -> Path:
        return self.resolved_state_dir / "locks"

    @property
    def install_log_path(self) -> Path:
        return self.resolved_state_dir / "install.ndjson"


def find_config_file() -> Path | None:
    """Locate the config file from KEG_CONFIG or the default location."""
    env_path = os.environ.get("KEG_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    default = DEFAULT_CONFIG_FILE.expanduser()
    return default if default.is_file() else None


def load_settings(
    path: Path | None = None,
    *,
    prefix: Path | str | None = None,
) -> Settings:
    """Load settings from YAML, apply env overrides, then ``prefix``.

    Args:
        path: Explicit config file. If None, uses :func:`find_config_file`.
        prefix: Destination root override (highest precedence).

    Raises:
        ConfigError: If the file exists but cannot be read or validated,
            or if an explicit ``path`` does not exist.
    """
    explicit = path is not None
    if path is None:
        path = find_config_file()

    data: dict = {}
    if path is not None:
        if not path.is_file():
            if explicit or os.environ.get("KEG_CONFIG"):
                raise ConfigError(f"Config file not found: {path}")
        else:
            logger.debug("Loading settings from %s", path)
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigError(f"Cannot read {path}: {e}") from e
            try:
                loaded = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ConfigError(
                    f"Expected a YAML mapping in {path}, got {type(loaded).__name__}"
                )
            data = loaded

    # Env overrides
    if os.environ.get("KEG_PREFIX"):
        data["prefix"] = os.environ["KEG_PREFIX"]
    if os.environ.get("KEG_STATE_DIR"):
        data["state_dir"] = os.environ["KEG_STATE_DIR"]
    if prefix is not None:
        data["prefix"] = str(prefix)

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid keg configuration: {e}") from e

    logger.debug("Settings: prefix=%s state_dir=%s", settings.prefix, settings.state_dir)
    return settings
