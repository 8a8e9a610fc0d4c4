"""Persist the non-default option set to ``config/dockerfile.yml``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .options import BASE_DEFAULTS, SCALAR_OPTIONS, STRUCTURAL_OPTIONS, Options, option_name

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("config") / "dockerfile.yml"

CONFIG_HEADER = "# generated by rails-dockerizer, please keep options sorted\n---\n"


def config_path(root: Path) -> Path:
    return Path(root) / CONFIG_PATH


def load_config(root: Path) -> Dict[str, Any]:
    """Return the persisted ``options`` mapping, or an empty dict when absent or malformed."""
    path = config_path(root)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("Unable to read %s: %s", path, exc)
        return {}

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed %s: %s", path, exc)
        return {}

    if not isinstance(data, dict):
        return {}
    options = data.get("options")
    return options if isinstance(options, dict) else {}


def config_diff(options: Options) -> Dict[str, Any]:
    """Compare ``options`` field by field against the builtin defaults."""
    config: Dict[str, Any] = {}

    for name in SCALAR_OPTIONS:
        key = option_name(name)
        value = getattr(options, name)
        if value != BASE_DEFAULTS[key]:
            config[key] = value

    for key in STRUCTURAL_OPTIONS:
        stages = {stage: value for stage, value in getattr(options, key).items() if value}
        if stages:
            config[key] = stages

    return config


def dump_config(config: Dict[str, Any]) -> str:
    body = yaml.safe_dump({"options": config}, default_flow_style=False, sort_keys=True)
    return CONFIG_HEADER + body


def save_config(root: Path, options: Options) -> Optional[Path]:
    """Write the config file when options differ from defaults, otherwise remove a stale one.

    Returns the written path, or ``None`` when nothing was persisted.
    """
    path = config_path(root)
    config = config_diff(options)

    if not config:
        if path.exists():
            logger.info("Removing %s; all options are at their defaults", path)
            path.unlink()
        return None

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_config(config), encoding="utf-8")
    return path
