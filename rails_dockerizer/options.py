"""Typed option record, builtin defaults and stage-partitioned option merging."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

STAGES = ("base", "build", "deploy")

# Stage-partitioned structures persisted under their own keys.
STRUCTURAL_OPTIONS = ("packages", "envs", "args", "instructions")

# Per-invocation values that are never persisted.
EPHEMERAL_OPTIONS = ("remove_packages",)


def _stage_lists() -> Dict[str, List[str]]:
    return {stage: [] for stage in STAGES}


def _stage_maps() -> Dict[str, Dict[str, str]]:
    return {stage: {} for stage in STAGES}


def _stage_texts() -> Dict[str, Optional[str]]:
    return {stage: None for stage in STAGES}


@dataclass
class Options:
    """Every generator option with its builtin default.

    Scalar fields map one-to-one to persisted option names (underscores become
    hyphens, e.g. ``max_idle`` is stored as ``max-idle``).
    """

    alpine: bool = False
    bin_cd: bool = False
    cache: bool = False
    ci: bool = False
    compose: bool = False
    fullstaq: bool = False
    git_suppresses_deployment: bool = False
    jemalloc: bool = False
    label: Dict[str, str] = field(default_factory=dict)
    link: bool = False
    litefs: bool = False
    lock: bool = True
    max_idle: Optional[str] = None
    migrate: str = ""
    mysql: bool = False
    nginx: bool = False
    parallel: bool = False
    passenger: bool = False
    platform: Optional[str] = None
    postgresql: bool = False
    precompile: Optional[str] = None
    precompiled_gems: bool = True
    prepare: bool = True
    private_gemserver_domain: Optional[str] = None
    procfile: str = ""
    redis: bool = False
    registry: str = ""
    rollbar: bool = False
    root: bool = False
    sentry: bool = False
    sqlite3: bool = False
    sqlserver: bool = False
    sudo: bool = False
    swap: Optional[str] = None
    thruster: bool = False
    tigris: bool = False
    variant: Optional[str] = None
    windows: bool = False
    yjit: bool = False

    packages: Dict[str, List[str]] = field(default_factory=_stage_lists)
    envs: Dict[str, Dict[str, str]] = field(default_factory=_stage_maps)
    args: Dict[str, Dict[str, str]] = field(default_factory=_stage_maps)
    instructions: Dict[str, Optional[str]] = field(default_factory=_stage_texts)
    remove_packages: Dict[str, List[str]] = field(default_factory=_stage_lists)

    def explicit_database(self) -> bool:
        """True when a non-default database was requested explicitly."""
        return self.postgresql or self.mysql or self.sqlserver

    @property
    def image_variant(self) -> str:
        return self.variant or ("alpine" if self.alpine else "slim")


def option_name(attribute: str) -> str:
    return attribute.replace("_", "-")


SCALAR_OPTIONS = tuple(
    f.name for f in fields(Options) if f.name not in STRUCTURAL_OPTIONS + EPHEMERAL_OPTIONS
)

_DEFAULT_OPTIONS = Options()

BASE_DEFAULTS: Dict[str, Any] = {
    option_name(name): getattr(_DEFAULT_OPTIONS, name) for name in SCALAR_OPTIONS
}


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    logger.warning("Ignoring package list of unexpected type %s", type(value).__name__)
    return []


def _string_map(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, Mapping):
        logger.warning("Ignoring key/value option of unexpected type %s", type(value).__name__)
        return {}
    return {str(key): "" if item is None else str(item) for key, item in value.items()}


def _stage_value(value: Any, stage: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(stage)
    return None


def _unique(items: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def drop_blank(values: Mapping[str, str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if value is not None and str(value).strip()}


def _coerce(key: str, value: Any) -> Any:
    default = BASE_DEFAULTS[key]
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        logger.warning("Option %s expects true/false, got %r; using default", key, value)
        return default
    if isinstance(default, dict):
        return _string_map(value)
    # a blank YAML value means "not set"
    if value is None:
        return default
    return str(value)


def merge_options(
    persisted: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Options:
    """Layer builtin defaults, persisted options and per-invocation overrides.

    ``persisted`` is the ``options`` mapping of a config file. ``overrides``
    uses the command line names (``add-deploy``, ``env-build``, ...); keys with
    a ``None`` value are treated as not given.
    """
    persisted = dict(persisted or {})
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}

    values: Dict[str, Any] = {}
    for name in SCALAR_OPTIONS:
        key = option_name(name)
        value = copy.deepcopy(BASE_DEFAULTS[key])
        if key in persisted:
            value = _coerce(key, persisted[key])
        if key in overrides:
            value = _coerce(key, overrides[key])
        values[name] = value

    labels = {**_string_map(persisted.get("label")), **_string_map(overrides.get("label"))}
    values["label"] = drop_blank(labels)

    packages: Dict[str, List[str]] = {}
    removals: Dict[str, List[str]] = {}
    envs: Dict[str, Dict[str, str]] = {}
    args: Dict[str, Dict[str, str]] = {}
    instructions: Dict[str, Optional[str]] = {}

    for stage in STAGES:
        removed = _unique(_string_list(overrides.get(f"remove-{stage}")))
        seed = _string_list(_stage_value(persisted.get("packages"), stage))
        added = _string_list(overrides.get(f"add-{stage}"))
        packages[stage] = [name for name in _unique(seed + added) if name not in removed]
        removals[stage] = removed

        envs[stage] = drop_blank(
            {
                **_string_map(_stage_value(persisted.get("envs"), stage)),
                **_string_map(overrides.get(f"env-{stage}")),
            }
        )
        args[stage] = drop_blank(
            {
                **_string_map(_stage_value(persisted.get("args"), stage)),
                **_string_map(overrides.get(f"arg-{stage}")),
            }
        )

        instructions[stage] = (
            _stage_value(persisted.get("instructions"), stage)
            or overrides.get(f"instructions-{stage}")
            or None
        )

    return Options(
        **values,
        packages=packages,
        envs=envs,
        args=args,
        instructions=instructions,
        remove_packages=removals,
    )
