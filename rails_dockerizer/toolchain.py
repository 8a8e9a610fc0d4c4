"""Resolve Ruby, Node, Yarn and Bun versions with silent, bounded fallbacks."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .project_scanner import ProjectFacts

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 10

DEFAULT_RUBY_VERSION = "3.3.6"
DEFAULT_YARN_VERSION = "1.22.19"
NODE_LTS = "lts"

_VERSION = re.compile(r"\d+\.\d+\.\d+")
_ENGINE_VERSION = re.compile(r"\A(\d+\.)+(\d+|x)\Z")


@dataclass(frozen=True)
class Toolchain:
    ruby_version: str = DEFAULT_RUBY_VERSION
    node_version: Optional[str] = None
    yarn_version: Optional[str] = None
    bun_version: Optional[str] = None


def probe_version(command: List[str], timeout: float = PROBE_TIMEOUT) -> Optional[str]:
    """Run ``command`` and return the first x.y.z in its output, or None on any failure."""
    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Version probe %s failed: %s", " ".join(command), exc)
        return None

    match = _VERSION.search(completed.stdout or "")
    return match.group(0) if match else None


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def _package_json(root: Path) -> dict:
    text = _read_text(root / "package.json")
    if text is None:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def ruby_version(root: Path, facts: ProjectFacts) -> str:
    for candidate in (facts.ruby_version_file, facts.lockfile_ruby_version):
        if candidate:
            match = _VERSION.search(candidate)
            if match:
                return match.group(0)
    return probe_version(["ruby", "--version"]) or DEFAULT_RUBY_VERSION


def node_version(root: Path) -> str:
    """Pinned node version, else the installed one, else ``lts``."""
    pinned = _read_text(root / ".node-version")
    if pinned:
        match = _VERSION.search(pinned)
        if match:
            return match.group(0)

    engines = _package_json(root).get("engines")
    if isinstance(engines, dict):
        declared = engines.get("node")
        if isinstance(declared, str) and _ENGINE_VERSION.match(declared):
            return declared

    return probe_version(["node", "--version"]) or NODE_LTS


def yarn_version(root: Path) -> str:
    if os.environ.get("RAILS_ENV") == "test":
        # yarn install instructions changed in v2
        return DEFAULT_YARN_VERSION

    manager = str(_package_json(root).get("packageManager") or "")
    if manager.startswith("yarn@"):
        return manager[len("yarn@"):]

    return probe_version(["yarn", "--version"]) or DEFAULT_YARN_VERSION


def bun_version() -> Optional[str]:
    return probe_version(["bun", "--version"])


def detect_toolchain(root: Path, facts: ProjectFacts) -> Toolchain:
    root = Path(root)
    uses_execjs = facts.has_gem("execjs") or facts.has_gem("grover")
    uses_node = facts.package_json_present and not facts.bun_lockfile_present

    return Toolchain(
        ruby_version=ruby_version(root, facts),
        node_version=node_version(root) if uses_node or uses_execjs else None,
        yarn_version=yarn_version(root) if uses_node else None,
        bun_version=bun_version() if facts.bun_lockfile_present else None,
    )
