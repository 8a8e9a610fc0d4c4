"""Per-stage environment variables, build arguments and option value parsing."""

from __future__ import annotations

import json
import logging
import platform as host_platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .options import STAGES, Options, drop_blank
from .tech_detector import Capabilities, version_tuple

logger = logging.getLogger(__name__)

MALLOC_CONF = "dirty_decay_ms:1000,narenas:2,background_thread:true"

# Stages whose variables may reference each other keep insertion order.
ORDERED_STAGES = frozenset({"build"})


@dataclass(frozen=True)
class StageVariables:
    base: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()
    deploy: Tuple[str, ...] = ()

    def stage(self, name: str) -> Tuple[str, ...]:
        return getattr(self, name)


@dataclass(frozen=True)
class StageArgs:
    base: Mapping[str, str]
    build: Mapping[str, str]
    deploy: Mapping[str, str]

    def stage(self, name: str) -> Mapping[str, str]:
        return getattr(self, name)


def target_arch(options: Options) -> str:
    """CPU architecture of the target image, from ``--platform`` or the host."""
    machine = (options.platform or host_platform.machine() or "").lower()
    if "arm64" in machine or "aarch64" in machine:
        return "aarch64"
    return "x86_64"


def jemalloc_preload(options: Options) -> str:
    if options.alpine:
        return "/usr/lib/libjemalloc.so.2"
    return f"/usr/lib/{target_arch(options)}-linux-gnu/libjemalloc.so.2"


def _intrinsic_env(caps: Capabilities, options: Options, stage: str) -> Dict[str, str]:
    env: Dict[str, str] = {}

    if stage == "base":
        env["RAILS_ENV"] = "production"
        env["BUNDLE_PATH"] = "/usr/local/bundle"
        env["BUNDLE_WITHOUT"] = "development" if options.ci else "development:test"
        if options.lock and not (options.git_suppresses_deployment and caps.uses_git):
            env["BUNDLE_DEPLOYMENT"] = "1"

    elif stage == "deploy":
        if (options.nginx and not caps.using_passenger) or caps.using_litefs:
            env["PORT"] = "3001"

        rails = version_tuple(caps.rails_version)
        if rails and rails[:2] < (7, 1):
            env["RAILS_LOG_TO_STDOUT"] = "1"
            if not options.nginx:
                env["RAILS_SERVE_STATIC_FILES"] = "true"

    return env


def _capability_env(caps: Capabilities, options: Options, stage: str) -> Dict[str, str]:
    env: Dict[str, str] = {}

    if stage == "base":
        if caps.using_litestack:
            env["LITESTACK_DATA_PATH"] = "/data"

    elif stage == "build":
        if caps.using_execjs and caps.node_version and not caps.node_lts:
            env["PATH"] = "/usr/local/node/bin:$PATH"
        if caps.using_puppeteer:
            env["PUPPETEER_SKIP_CHROMIUM_DOWNLOAD"] = "true"

    elif stage == "deploy":
        if caps.deploy_database == "sqlite3":
            if caps.using_litefs:
                env["DATABASE_URL"] = "sqlite3:///litefs/production.sqlite3"
            else:
                env["DATABASE_URL"] = "sqlite3:///data/production.sqlite3"

        if options.yjit:
            env["RUBY_YJIT_ENABLE"] = "1"

        if options.jemalloc and not options.fullstaq:
            env["LD_PRELOAD"] = jemalloc_preload(options)
            env["MALLOC_CONF"] = MALLOC_CONF

        if caps.using_puppeteer:
            if caps.has_gem("grover"):
                env["GROVER_NO_SANDBOX"] = "true"
            if caps.has_gem("puppeteer-ruby"):
                env["PUPPETEER_RUBY_NO_SANDBOX"] = "1"
            if options.platform and "amd" in options.platform:
                env["PUPPETEER_EXECUTABLE_PATH"] = "/usr/bin/google-chrome"
            else:
                env["PUPPETEER_EXECUTABLE_PATH"] = "/usr/bin/chromium"

    return env


def stage_env(caps: Capabilities, options: Options, stage: str) -> Dict[str, str]:
    """Resolved variables for one stage as a mapping, user values winning."""
    env = _intrinsic_env(caps, options, stage)
    env.update(_capability_env(caps, options, stage))
    env.update({name: f"${name}" for name in options.args[stage]})
    env.update(options.envs[stage])
    return drop_blank(env)


def resolve_env(caps: Capabilities, options: Options, stage: str) -> List[str]:
    """``KEY="value"`` lines for a Dockerfile ``ENV`` instruction."""
    env = stage_env(caps, options, stage)
    lines = [f"{key}={json.dumps(value)}" for key, value in env.items()]
    if stage in ORDERED_STAGES:
        return lines
    return sorted(lines)


def resolve_stage_env(caps: Capabilities, options: Options) -> StageVariables:
    return StageVariables(**{stage: tuple(resolve_env(caps, options, stage)) for stage in STAGES})


def resolve_args(options: Options, stage: str) -> Dict[str, str]:
    return drop_blank(options.args[stage])


def resolve_stage_args(options: Options) -> StageArgs:
    return StageArgs(**{stage: resolve_args(options, stage) for stage in STAGES})


def all_args(options: Options) -> Dict[str, str]:
    """Every build argument, including the runtime user ids unless running as root."""
    args: Dict[str, str] = {}
    if not options.root:
        args["UID"] = "${UID:-1000}"
        args["GID"] = "${GID:-${UID:-1000}}"
    for stage in STAGES:
        args.update(resolve_args(options, stage))
    return args


def stage_instructions(root: Path, options: Options, stage: str) -> Optional[str]:
    """Custom Dockerfile instructions for ``stage``; scripts are run rather than inlined."""
    path = options.instructions.get(stage)
    if not path:
        return None
    try:
        instructions = (Path(root) / path).read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Skipping %s instructions, cannot read %s: %s", stage, path, exc)
        return None

    if instructions.startswith("#!"):
        label = "custom instructions" if stage == "base" else f"custom {stage} instructions"
        return f"# {label}\nRUN {path.strip()}"
    return instructions.rstrip("\n")


def private_gemserver_env_variable_name(domain: Optional[str]) -> Optional[str]:
    """Bundler credential variable for a gem server, e.g. ``BUNDLE_GEMS__EXAMPLE__COM``."""
    if not domain or not domain.strip():
        return None
    return "BUNDLE_" + domain.strip().upper().replace(".", "__")


SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}

# ActiveSupport's calendar approximations.
_YEAR = 31556952
_MONTH = 2629746

_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_ISO8601 = re.compile(
    r"P(?:(?P<years>\d+(?:\.\d+)?)Y)?(?:(?P<months>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<weeks>\d+(?:\.\d+)?)W)?(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?",
    re.IGNORECASE,
)
_TOKEN = re.compile(r"(\d+(?:\.\d+)?)([a-zA-Z])")

_ISO_UNITS = {
    "years": _YEAR,
    "months": _MONTH,
    "weeks": SECONDS["w"],
    "days": SECONDS["d"],
    "hours": SECONDS["h"],
    "minutes": SECONDS["m"],
    "seconds": SECONDS["s"],
}


def parse_iso8601_duration(text: str) -> Optional[float]:
    match = _ISO8601.fullmatch(text)
    if not match or not any(match.groupdict().values()) or text.upper().endswith("T"):
        return None
    return sum(float(value) * _ISO_UNITS[unit] for unit, value in match.groupdict().items() if value)


def parse_max_idle(value: Optional[str]) -> Optional[float]:
    """Idle timeout in seconds; ``None`` means run forever.

    Accepts a plain number of seconds (``300``), an ISO-8601 duration
    (``PT5M``) or shorthand tokens (``5m``, ``1h30m``). Anything else is
    treated as unset.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "infinity":
        return None
    if _NUMBER.fullmatch(text):
        return float(text)
    if text[0] in "pP":
        return parse_iso8601_duration(text)

    tokens = _TOKEN.findall(text)
    if not tokens or "".join(number + unit for number, unit in tokens) != text.replace(" ", ""):
        return None
    total = 0.0
    for number, unit in tokens:
        seconds = SECONDS.get(unit.lower())
        if seconds is None:
            return None
        total += float(number) * seconds
    return total


SWAP_SUFFIXES = {
    "kib": 1024,
    "k": 1024,
    "kb": 1000,
    "mib": 1048576,
    "m": 1048576,
    "mb": 1000000,
    "gib": 1073741824,
    "g": 1073741824,
    "gb": 1000000000,
}

_SWAP = re.compile(r"(\d+)(" + "|".join(SWAP_SUFFIXES) + r")?", re.IGNORECASE)


def parse_swap(value: Optional[str]) -> Optional[int]:
    """Swap size in MiB, or ``None`` when unset or unparseable."""
    if not value:
        return None
    match = _SWAP.fullmatch(value.strip().lower())
    if not match:
        return None
    size = int(match.group(1)) * SWAP_SUFFIXES.get(match.group(2) or "", 1)
    return round(size / 1048576.0)
