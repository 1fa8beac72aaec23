"""
Configuration loader — reads nodelink.yml and lockfiles into models.

Settings precedence (highest first):

    CLI flags  >  NODELINK_* environment variables  >  nodelink.yml  >  defaults

Lockfiles are YAML (or JSON, which YAML parses too) documents with a
``root`` index and a ``packages`` list, one entry per graph node in
index order.
"""

from __future__ import annotations

import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from nodelink.core.errors import GraphError
from nodelink.core.models.graph import Graph
from nodelink.core.models.options import (
    DEFAULT_CONCURRENCY,
    DEFAULT_SCRIPT_CONCURRENCY,
    LinkerOptions,
)

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "nodelink.yml"

ENV_PREFIX = "NODELINK_"


class ConfigError(Exception):
    """Raised when linker configuration is invalid or missing."""


class Strategy(StrEnum):
    """On-disk layout to install with."""

    ISOLATED = "isolated"
    HOISTED = "hoisted"


class LinkerSettings(BaseModel):
    """User-facing linker settings (nodelink.yml + environment)."""

    strategy: Strategy = Strategy.HOISTED
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    script_concurrency: int = Field(default=DEFAULT_SCRIPT_CONCURRENCY, ge=1)
    cache: Path | None = None
    prefer_copy: bool = False
    validate_content: bool = Field(default=False, alias="validate")
    ignore_scripts: bool = False

    model_config = {"populate_by_name": True, "extra": "forbid"}

    def to_options(self, root: Path, **kwargs: Any) -> LinkerOptions:
        """Build the immutable per-operation options.

        Extra keyword arguments (``actual_tree`` and the observer
        callbacks) are passed straight through.
        """
        cache = self.cache
        if cache is not None and not cache.is_absolute():
            cache = root / cache
        return LinkerOptions(
            root=root,
            concurrency=self.concurrency,
            script_concurrency=self.script_concurrency,
            cache=cache,
            prefer_copy=self.prefer_copy,
            validate=self.validate_content,
            **kwargs,
        )


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for nodelink.yml starting from the given directory, walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_yaml(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field_name, field in LinkerSettings.model_fields.items():
        key = field.alias or field_name
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value is not None and value != "":
            overrides[key] = value
    return overrides


def load_settings(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> LinkerSettings:
    """Load linker settings.

    Args:
        path: Explicit config path.  If None, searches upward; a missing
            file just means defaults.
        environ: Environment to read overrides from (default: os.environ).

    Raises:
        ConfigError: The file is unreadable or invalid.
    """
    data: dict[str, Any] = {}
    if path is None:
        path = find_config_file()
    elif not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    if path is not None:
        logger.debug("Loading linker config from %s", path)
        loaded = _read_yaml(path)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")
        # The YAML may wrap everything under a "linker" key or be flat
        data = dict(loaded.get("linker", loaded))

    data.update(_env_overrides(dict(os.environ if environ is None else environ)))

    try:
        settings = LinkerSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid linker configuration: {e}") from e

    if settings.cache is not None and path is not None and not settings.cache.is_absolute():
        settings = settings.model_copy(update={"cache": path.parent / settings.cache})
    return settings


def load_graph(path: Path) -> Graph:
    """Load a lockfile into a Graph.

    Raises:
        GraphError: The lockfile is unreadable or does not describe a
            valid graph.
    """
    try:
        data = _read_yaml(path)
    except ConfigError as e:
        raise GraphError(str(e)) from e
    if not isinstance(data, dict) or not isinstance(data.get("packages"), list):
        raise GraphError(f"Lockfile {path} must be a mapping with a 'packages' list")

    packages = data["packages"]
    for entry in packages:
        if not isinstance(entry, dict):
            raise GraphError(f"Lockfile {path} has a non-mapping package entry: {entry!r}")
    try:
        graph = Graph.from_packages(packages, root=int(data.get("root", 0)))
    except (ValidationError, TypeError, ValueError) as e:
        raise GraphError(f"Invalid lockfile {path}: {e}") from e
    logger.debug("Loaded lockfile %s with %d packages", path, len(graph))
    return graph
