"""Settings — YAML file plus ``IMGFLOW_*`` environment overrides."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from imgflow.core.artifacts import FilesystemArtifactStore, MemoryArtifactStore
from imgflow.core.errors import ConfigurationError
from imgflow.core.moderation import ModerationGate, Moderator
from imgflow.core.registry import CapabilityRegistry
from imgflow.core.scheduler import Scheduler
from imgflow.providers import (
    ClaudeTextProvider,
    ClaudeVisionProvider,
    FilesystemSaveProvider,
    HttpSaveProvider,
    ShellGenerator,
    ShellTransformProvider,
)
from imgflow.providers.claude import DEFAULT_MODEL

logger = logging.getLogger(__name__)

ENV_PREFIX = "IMGFLOW_"
CONFIG_ENV = "IMGFLOW_CONFIG"


class Settings(BaseSettings):
    """Runtime settings.

    Values passed to the constructor (the YAML file) are overridden by
    ``IMGFLOW_<NAME>`` environment variables. Mapping-valued settings read
    JSON from the environment.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, case_sensitive=False, extra="forbid")

    output_dir: str | None = None
    collect_timeout: float = Field(default=30.0, gt=0)
    max_fan_out: int = Field(default=16, ge=1)
    moderation_enabled: bool = True
    moderation_strict: bool = False
    save_default: str = "fs"
    save_base_dir: str | None = None
    transform_default: str | None = None
    claude_model: str = DEFAULT_MODEL
    shell_generators: dict[str, str] = Field(default_factory=dict)
    shell_transforms: dict[str, str] = Field(default_factory=dict)
    http_save: dict[str, Any] | None = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings


def _read_file(path: str | Path) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(Path(path).read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}", cause=e) from e
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return loaded


def load_settings(path: str | Path | None = None) -> Settings:
    """Build Settings from an optional YAML file, then environment overrides.

    ``path`` defaults to ``$IMGFLOW_CONFIG`` when set. Unknown keys and
    badly typed values raise ``ConfigurationError``.
    """
    path = path or os.environ.get(CONFIG_ENV)
    values = _read_file(path) if path else {}
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}", cause=e) from e


def build_registry(settings: Settings) -> CapabilityRegistry:
    """Register the built-in providers described by ``settings``."""
    registry = CapabilityRegistry(
        default_transform=settings.transform_default or ("shell" if settings.shell_transforms else None),
        default_save=settings.save_default,
    )
    for name, command in settings.shell_generators.items():
        registry.register_generator(name, ShellGenerator(command))
    if settings.shell_transforms:
        registry.register_transform("shell", ShellTransformProvider(settings.shell_transforms))

    registry.register_text("claude", ClaudeTextProvider(model=settings.claude_model))
    registry.register_vision("claude", ClaudeVisionProvider(model=settings.claude_model))

    registry.register_save("fs", FilesystemSaveProvider(settings.save_base_dir), aliases=("file",))
    if settings.http_save is not None:
        uploader = HttpSaveProvider(
            method=settings.http_save.get("method", "PUT"),
            headers=settings.http_save.get("headers"),
        )
        registry.register_save("https", uploader, aliases=("http",))

    logger.debug("Built %r", registry)
    return registry


def build_scheduler(
    settings: Settings,
    registry: CapabilityRegistry | None = None,
    moderator: Moderator | None = None,
) -> Scheduler:
    """Scheduler wired with the moderation gate and artifact store from ``settings``."""
    if settings.moderation_enabled and moderator is None:
        logger.warning("Moderation is enabled but no moderator is configured; images are not checked")
    gate = ModerationGate(moderator, enabled=settings.moderation_enabled, strict=settings.moderation_strict)
    store = FilesystemArtifactStore(settings.output_dir) if settings.output_dir else MemoryArtifactStore()
    return Scheduler(
        registry if registry is not None else build_registry(settings),
        moderation=gate,
        artifact_store=store,
        collect_timeout=settings.collect_timeout,
    )
