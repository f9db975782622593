"""
Configuration loading.

The main YAML file is read first, then every ``*.yaml`` in the sibling
``<name>.d/`` directory is merged on top in lexical order, so packaged
defaults and site overrides can live side by side.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from . import ARCHIVE_CONFIG
from .errors import ConfigError
from .models import ArchiveConfig

logger = logging.getLogger("skarchive.config")


def _merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def fragment_dir(config_path: Path) -> Path:
    """Directory holding drop-in fragments for ``config_path``."""
    return config_path.with_name(config_path.stem + ".d")


def load_raw(config_path: Path) -> dict[str, Any]:
    """Read the main file plus its drop-in fragments, merged, unvalidated."""
    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")

    data = _read_yaml(config_path)
    fragments = fragment_dir(config_path)
    if fragments.is_dir():
        for fragment in sorted(fragments.glob("*.yaml")):
            logger.debug("Merging config fragment %s", fragment)
            data = _merge(data, _read_yaml(fragment))
    return data


def load_config(config_path: Optional[Path] = None) -> ArchiveConfig:
    """Load and validate the archive configuration.

    Args:
        config_path: Main YAML file. Defaults to $SKARCHIVE_CONFIG.

    Returns:
        Validated ArchiveConfig with the signing passphrase resolved.

    Raises:
        ConfigError: On unreadable files, bad YAML, or invalid values.
    """
    path = Path(config_path or ARCHIVE_CONFIG).expanduser()
    data = load_raw(path)

    try:
        config = ArchiveConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration in {path}: {exc}") from exc

    return resolve_secrets(config)


def resolve_secrets(config: ArchiveConfig) -> ArchiveConfig:
    """Read the signing passphrase from its file when one is configured."""
    signing = config.signing_key
    if signing is not None and signing.passphrase_file is not None:
        pfile = signing.passphrase_file.expanduser()
        try:
            signing.passphrase = pfile.read_text(encoding="utf-8").rstrip("\n")
        except OSError as exc:
            raise ConfigError(f"cannot read signing passphrase file {pfile}: {exc}") from exc
    return config
