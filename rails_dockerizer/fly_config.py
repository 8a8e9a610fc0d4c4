"""Keep an existing fly.toml in step with the generated Dockerfile."""

from __future__ import annotations

import json
import logging
import re
from typing import Dict, Optional

from .dockerfile_generator import GenerationPlan
from .env_resolver import parse_swap
from .options import Options
from .tech_detector import Capabilities, dbprep_command, procfile

logger = logging.getLogger(__name__)

FLY_TOML = "fly.toml"
SQLITE_DATABASE_URL = "sqlite3:///data/production.sqlite3"
THRUSTER_HTTP_PORT = "8080"


def fly_processes(caps: Capabilities, options: Options) -> Optional[Dict[str, str]]:
    """Process groups for fly.toml, or ``None`` when there is no worker."""
    if not (caps.using_sidekiq or caps.using_solidq):
        return None

    processes = procfile(caps, options)
    if len(processes) > 1:
        groups = {"app": "foreman start --procfile=Procfile.prod"}
    else:
        groups = {"app": next(iter(processes.values()))}

    if caps.using_sidekiq:
        groups["sidekiq"] = "bundle exec sidekiq"
    elif caps.using_solidq:
        groups["solidq"] = "bundle exec rake solid_queue:start"
    return groups


def needs_fly_update(plan: GenerationPlan) -> bool:
    caps, options = plan.capabilities, plan.options
    if not caps.fly_toml_present:
        return False
    return bool(
        fly_processes(caps, options)
        or not options.prepare
        or options.swap
        or caps.deploy_database == "sqlite3"
    )


def _replace_section(toml: str, name: str, replacement: str) -> str:
    pattern = re.compile(r"\[" + re.escape(name) + r"\].*?(\n\n|\n?\Z)", re.DOTALL)
    return pattern.sub(lambda match: replacement + match.group(1), toml, count=1)


def _workdir(dockerfile: str) -> Optional[str]:
    found = re.findall(r"^\s*WORKDIR\s+(\S+)", dockerfile, re.MULTILINE)
    return found[-1] if found else None


def update_fly_toml(toml: str, plan: GenerationPlan, dockerfile: str = "") -> str:
    """Return ``toml`` with processes, release command, mounts, swap and statics applied."""
    caps, options = plan.capabilities, plan.options

    groups = fly_processes(caps, options)
    if groups:
        if "[processes]" in toml:
            body = "\n".join(f"  {name} = {json.dumps(command)}" for name, command in groups.items())
            toml = _replace_section(toml, "processes", "[processes]\n" + body)
        else:
            toml += "\n[processes]\n"
            toml += "".join(f"  {name} = {json.dumps(command)}\n" for name, command in groups.items())
            toml += "\n"
            app = "app" if "app" in groups else next(iter(groups))
            toml = toml.replace(
                "[http_service]\n", f"[http_service]\n  processes = [{json.dumps(app)}]\n", 1
            )

    if not options.prepare:
        deploy = f"[deploy]\n  release_command = {json.dumps(dbprep_command(caps, options))}\n\n"
        if "[deploy]" in toml:
            pattern = re.compile(r"\[deploy\].*?(\n\n|\n?\Z)", re.DOTALL)
            toml = pattern.sub(lambda match: deploy, toml, count=1)
        else:
            toml += deploy

    if caps.deploy_database == "sqlite3" and "[mounts]" not in toml:
        toml += '[mounts]\n  source="data"\n  destination="/data"\n\n'

    swap = parse_swap(options.swap)
    if swap is not None:
        if "swap_size_mb" in toml:
            toml = re.sub(r"swap_size_mb.*", f"swap_size_mb = {swap}", toml, count=1)
        else:
            toml += f"swap_size_mb = {swap}\n\n"
    elif options.swap:
        logger.warning("Ignoring unparseable swap size %r", options.swap)

    if not (options.nginx or caps.using_passenger or caps.using_thruster):
        workdir = _workdir(dockerfile) or "/rails"
        if "[statics]" not in toml:
            toml += f'[[statics]]\n  guest_path = "{workdir}/public"\n  url_prefix = "/"\n\n'

    return toml


def fly_env_additions(toml: str, dockerfile: str, caps: Capabilities, options: Options) -> Optional[str]:
    """Append an ``[[env]]`` block for variables the Dockerfile does not set.

    Returns the updated text, or ``None`` when nothing needs to change.
    """
    env: Dict[str, str] = {}
    if (options.sqlite3 or caps.sqlite3) and "DATABASE_URL" not in dockerfile:
        env["DATABASE_URL"] = SQLITE_DATABASE_URL
    if caps.using_thruster and "HTTP_PORT" not in dockerfile:
        env["HTTP_PORT"] = THRUSTER_HTTP_PORT

    if not env or "[[env]]" in toml:
        return None
    return toml + "\n[[env]]\n" + "\n".join(f"  {key} = {json.dumps(value)}" for key, value in env.items())
