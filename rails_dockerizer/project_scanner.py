"""Scan a Rails project tree and produce the facts that drive generation."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

import yaml

from .errors import LockfileParseError, ScanError

logger = logging.getLogger(__name__)

SQLITE3 = "sqlite3"
POSTGRESQL = "postgresql"
MYSQL = "mysql"
SQLSERVER = "sqlserver"

DATABASE_ENGINES = (SQLITE3, POSTGRESQL, MYSQL, SQLSERVER)

# Adapter names accepted from config/database.yml.
ADAPTER_ENGINES = {
    "postgresql": POSTGRESQL,
    "mysql": MYSQL,
    "mysql2": MYSQL,
    "trilogy": MYSQL,
    "sqlserver": SQLSERVER,
}

# The adapter `rails new` writes by default; it says nothing about intent.
PLACEHOLDER_ADAPTER = "sqlite3"

# Checked in order; sqlite3 last as it is often only used in development.
DRIVER_PRECEDENCE: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (POSTGRESQL, ("pg",)),
    (MYSQL, ("mysql2", "trilogy", "activerecord-trilogy-adapter")),
    (SQLSERVER, ("activerecord-sqlserver-adapter",)),
    (SQLITE3, ("sqlite3",)),
)


@dataclass(frozen=True)
class LockedSpec:
    name: str
    version: str
    source: str
    dependencies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Lockfile:
    specs: Tuple[LockedSpec, ...] = ()
    ruby_version: Optional[str] = None

    def names(self) -> List[str]:
        return [spec.name for spec in self.specs]


@dataclass(frozen=True)
class GemfileManifest:
    dependencies: Tuple[str, ...] = ()
    git_dependencies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectFacts:
    """Everything the scanner learned about a project. Built once per run."""

    root_path: str = ""
    dependencies: FrozenSet[str] = frozenset()
    node_dependencies: FrozenSet[str] = frozenset()
    database_engine: str = SQLITE3
    database_explicit: bool = False
    uses_git: bool = False
    uses_action_cable: bool = False
    uses_redis_cache: bool = False
    uses_vips: bool = False
    uses_puppeteer: bool = False
    uses_bootsnap: bool = False
    package_json_present: bool = False
    bun_lockfile_present: bool = False
    fly_toml_present: bool = False
    includes_jobs: bool = False
    locked_versions: Mapping[str, str] = field(default_factory=dict)
    locked_dependencies: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    lockfile_ruby_version: Optional[str] = None
    ruby_version_file: Optional[str] = None
    production_database: Optional[str] = None

    @property
    def uses_redis(self) -> bool:
        return self.uses_action_cable or self.uses_redis_cache

    def has_gem(self, name: str) -> bool:
        return name in self.dependencies


_CONFLICT_MARKER = re.compile(r"^(<{7}|={7}|>{7})", re.MULTILINE)
_SOURCE_SECTIONS = {"GEM", "GIT", "PATH", "PLUGIN SOURCE"}
_SPEC_LINE = re.compile(r"^ {4}(\S+) \(([^)]+)\)\s*$")
_SPEC_DEPENDENCY_LINE = re.compile(r"^ {6}(\S+)(?: \(.*\))?\s*$")
_RUBY_VERSION = re.compile(r"ruby (\d+\.\d+\.\d+)")


def parse_lockfile(text: str) -> Lockfile:
    """Parse the sections of a Gemfile.lock that matter for image generation."""
    if _CONFLICT_MARKER.search(text):
        raise LockfileParseError("Gemfile.lock contains merge conflict markers")

    specs: List[Tuple[str, str, str, List[str]]] = []
    ruby_version: Optional[str] = None
    section: Optional[str] = None
    in_specs = False

    for line in text.splitlines():
        if not line.strip():
            continue
        if not line.startswith(" "):
            section = line.strip()
            in_specs = False
            continue
        if section is None:
            raise LockfileParseError(f"Unexpected indented line before any section: {line!r}")

        if section in _SOURCE_SECTIONS:
            if line.strip() == "specs:":
                in_specs = True
                continue
            if not in_specs:
                continue
            spec_match = _SPEC_LINE.match(line)
            if spec_match:
                specs.append((spec_match.group(1), spec_match.group(2), section, []))
                continue
            dependency_match = _SPEC_DEPENDENCY_LINE.match(line)
            if dependency_match and specs:
                specs[-1][3].append(dependency_match.group(1))
        elif section == "RUBY VERSION":
            version_match = _RUBY_VERSION.search(line)
            if version_match:
                ruby_version = version_match.group(1)

    return Lockfile(
        specs=tuple(
            LockedSpec(name=name, version=version, source=source, dependencies=tuple(deps))
            for name, version, source, deps in specs
        ),
        ruby_version=ruby_version,
    )


_GEM_LINE = re.compile(r"""^\s*gem\s*\(?\s*["']([^"']+)["'](.*)$""")
_GIT_OPTION = re.compile(r"""(?:\b(?:git|github|gist|bitbucket)\s*:|:(?:git|github)\s*=>)""")
_GIT_BLOCK = re.compile(r"""^\s*(?:git|github)\s*\(?\s*["']""")
_BLOCK_START = re.compile(r"\bdo\s*(\|[^|]*\|)?\s*$|^\s*(?:if|unless|case|begin)\b")
_BLOCK_END = re.compile(r"^\s*end\b")
_INLINE_BLOCK = re.compile(r"\bdo\b|^\s*(?:if|unless|case|begin)\b")
_INLINE_END = re.compile(r"\bend\s*$")
_INLINE_GEM = re.compile(r"""\bgem\s*\(?\s*["']([^"']+)["'](.*)$""")


def parse_gemfile(text: str) -> GemfileManifest:
    """Extract declared gems, noting those fetched from a git repository."""
    dependencies: List[str] = []
    git_dependencies: List[str] = []
    blocks: List[bool] = []

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].rstrip()
        if not line.strip():
            continue

        # `if X then gem "y" end` opens and closes on the same line
        one_liner = bool(_INLINE_BLOCK.search(line) and _INLINE_END.search(line))
        if _BLOCK_START.search(line) and not one_liner:
            blocks.append(bool(_GIT_BLOCK.match(line)))
            continue
        if _BLOCK_END.match(line):
            if blocks:
                blocks.pop()
            continue

        match = _GEM_LINE.match(line) or (_INLINE_GEM.search(line) if one_liner else None)
        if not match:
            continue
        name, rest = match.group(1), match.group(2)
        dependencies.append(name)
        in_git = any(blocks) or (one_liner and bool(_GIT_BLOCK.match(line)))
        if _GIT_OPTION.search(rest) or in_git:
            git_dependencies.append(name)

    return GemfileManifest(dependencies=tuple(dependencies), git_dependencies=tuple(git_dependencies))


def _load_file_content(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def _load_yaml(path: Path) -> Optional[Any]:
    content = _load_file_content(path)
    if content is None:
        return None
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed %s: %s", path, exc)
        return None


def _load_json(path: Path) -> Optional[Any]:
    content = _load_file_content(path)
    if content is None:
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed %s: %s", path, exc)
        return None


def _load_lockfile(path: Path) -> Optional[Lockfile]:
    content = _load_file_content(path)
    if content is None:
        return None
    try:
        return parse_lockfile(content)
    except LockfileParseError as exc:
        logger.warning("Ignoring unparseable %s: %s", path, exc)
        return None


def _load_gemfile(path: Path) -> Optional[GemfileManifest]:
    if not path.is_file():
        return None
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ScanError(f"Unable to read {path}: {exc}") from exc
    return parse_gemfile(content)


def _production_section(config: Any) -> Dict[str, Any]:
    if not isinstance(config, dict):
        return {}
    production = config.get("production")
    if not isinstance(production, dict):
        return {}
    # multi-database configs nest the primary connection one level down
    if "adapter" not in production and isinstance(production.get("primary"), dict):
        return production["primary"]
    return production


def detect_database(adapter: Optional[str], dependencies: FrozenSet[str]) -> Tuple[str, bool]:
    """Return ``(engine, explicit)`` following adapter, then driver gem, then sqlite3.

    A ``sqlite3`` adapter is the generated default and does not short circuit
    the driver gem checks.
    """
    if adapter and adapter != PLACEHOLDER_ADAPTER and adapter in ADAPTER_ENGINES:
        return ADAPTER_ENGINES[adapter], True

    for engine, drivers in DRIVER_PRECEDENCE:
        if any(driver in dependencies for driver in drivers):
            return engine, True

    return SQLITE3, adapter == PLACEHOLDER_ADAPTER


def _node_dependencies(package_json: Any) -> Set[str]:
    if not isinstance(package_json, dict):
        return set()
    section = package_json.get("dependencies")
    if not isinstance(section, dict):
        return set()
    return set(section.keys())


def scan_project(root_path: str | os.PathLike, detect_git: Optional[bool] = None) -> ProjectFacts:
    """Read the project tree and populate a :class:`ProjectFacts`.

    ``detect_git`` controls whether git-sourced gems are reported; ``None``
    detects them unless ``RAILS_ENV=test`` so that test output stays stable.
    """
    root = Path(root_path).expanduser().resolve()
    try:
        entries = {entry.name for entry in root.iterdir()}
    except OSError as exc:
        raise ScanError(f"Unable to read project directory {root}: {exc}") from exc

    if detect_git is None:
        detect_git = os.environ.get("RAILS_ENV") != "test"

    dependencies: Set[str] = set()
    uses_git = False
    locked_versions: Dict[str, str] = {}
    locked_dependencies: Dict[str, Tuple[str, ...]] = {}
    lockfile_ruby_version: Optional[str] = None

    lockfile = _load_lockfile(root / "Gemfile.lock") if "Gemfile.lock" in entries else None
    if lockfile is not None:
        dependencies.update(lockfile.names())
        uses_git = any(spec.source == "GIT" for spec in lockfile.specs)
        for spec in lockfile.specs:
            locked_versions[spec.name] = spec.version
            locked_dependencies[spec.name] = spec.dependencies
        lockfile_ruby_version = lockfile.ruby_version

    manifest = _load_gemfile(root / "Gemfile")
    if manifest is not None:
        dependencies.update(manifest.dependencies)
        uses_git = uses_git or bool(manifest.git_dependencies)

    gems = frozenset(dependencies)

    production = _production_section(_load_yaml(root / "config" / "database.yml"))
    adapter = production.get("adapter")
    engine, explicit = detect_database(adapter if isinstance(adapter, str) else None, gems)
    production_database = production.get("database")

    package_json_present = "package.json" in entries
    package_json = _load_json(root / "package.json") if package_json_present else None
    node_dependencies = frozenset(_node_dependencies(package_json))

    uses_action_cable = any(path.is_file() for path in root.glob("app/channels/*.rb"))

    production_rb = _load_file_content(root / "config" / "environments" / "production.rb")
    uses_redis_cache = bool(production_rb and re.search(r"redis", production_rb, re.IGNORECASE))

    includes_jobs = any(
        path.is_file() and path.name != "application_job.rb" for path in root.glob("app/jobs/*.rb")
    )

    ruby_version_file = _load_file_content(root / ".ruby-version")

    facts = ProjectFacts(
        root_path=str(root),
        dependencies=gems,
        node_dependencies=node_dependencies,
        database_engine=engine,
        database_explicit=explicit,
        uses_git=uses_git and detect_git,
        uses_action_cable=uses_action_cable,
        uses_redis_cache=uses_redis_cache,
        uses_vips="ruby-vips" in gems,
        uses_puppeteer="puppeteer" in gems or "puppeteer" in node_dependencies,
        uses_bootsnap="bootsnap" in gems,
        package_json_present=package_json_present,
        bun_lockfile_present=bool({"bun.lockb", "bun.config.js"} & entries),
        fly_toml_present="fly.toml" in entries,
        includes_jobs=includes_jobs,
        locked_versions=locked_versions,
        locked_dependencies=locked_dependencies,
        lockfile_ruby_version=lockfile_ruby_version,
        ruby_version_file=ruby_version_file.strip() if ruby_version_file else None,
        production_database=production_database if isinstance(production_database, str) else None,
    )
    logger.debug("Scanned %s: database=%s gems=%d", root, facts.database_engine, len(gems))
    return facts
