"""Assemble the render context and produce the Dockerfile and its companion files."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .env_resolver import (
    StageArgs,
    StageVariables,
    parse_max_idle,
    parse_swap,
    private_gemserver_env_variable_name,
    resolve_stage_args,
    resolve_stage_env,
    stage_instructions,
)
from .options import Options
from .package_resolver import (
    ResolvedPackages,
    base_gems,
    base_repos,
    base_requirements,
    deploy_repos,
    pkg_cache,
    pkg_cleanup,
    pkg_install,
    pkg_update,
    resolve_packages,
)
from .project_scanner import ProjectFacts, scan_project
from .tech_detector import Capabilities, dbprep_command, detect_capabilities, procfile, uses_foreman
from .template_engine import render_template
from .toolchain import Toolchain, detect_toolchain

logger = logging.getLogger(__name__)

ASSET_GEMS = ("sprockets-rails", "propshaft", "sprockets")
WRITABLE_DIRS = ("db", "log", "storage", "tmp")
NODE_LOCKFILES = ("yarn.lock", "package-lock.json", "pnpm-lock.yaml")


@dataclass
class RenderResult:
    """A rendered artifact, relative to the project root."""

    path: str
    content: str
    template_used: str
    mode: Optional[int] = None


@dataclass(frozen=True)
class GenerationPlan:
    """Everything derived for one run, from scan to resolved stage values."""

    root: Path
    options: Options
    facts: ProjectFacts
    toolchain: Toolchain
    capabilities: Capabilities
    packages: ResolvedPackages
    env: StageVariables
    args: StageArgs


def plan_generation(root: Path, options: Options, detect_git: Optional[bool] = None) -> GenerationPlan:
    """Scan the project once and resolve capabilities, packages, env and args."""
    root = Path(root).expanduser().resolve()
    facts = scan_project(root, detect_git=detect_git)
    toolchain = detect_toolchain(root, facts)
    caps = detect_capabilities(facts, options, toolchain)
    return GenerationPlan(
        root=root,
        options=options,
        facts=facts,
        toolchain=toolchain,
        capabilities=caps,
        packages=resolve_packages(caps, options),
        env=resolve_stage_env(caps, options),
        args=resolve_stage_args(options),
    )


def binfile_fixups(root: Path, options: Options) -> List[str]:
    """Shell commands that make bin/ scripts runnable inside a Linux image."""
    rubies: List[str] = []
    has_cr = False
    not_executable = False

    bin_dir = Path(root) / "bin"
    binfiles = sorted(path for path in bin_dir.glob("*") if path.is_file()) if bin_dir.is_dir() else []
    for path in binfiles:
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.debug("Skipping unreadable %s: %s", path, exc)
            continue
        shebang = data.split(b"\n", 1)[0].decode("utf-8", errors="replace")
        match = re.match(r"#!/usr/bin/env (ruby\S*)", shebang)
        if match and match.group(1) != "ruby" and match.group(1) not in rubies:
            rubies.append(match.group(1))
        has_cr = has_cr or b"\r" in data
        not_executable = not_executable or not os.access(path, os.X_OK)

    fixups = [f"sed -i 's/{re.escape(ruby)}$/ruby/' bin/*" for ruby in rubies]

    # CRLF line endings break shebangs
    if has_cr or (os.name == "nt" and fixups) or options.windows:
        fixups.insert(0, 'sed -i "s/\\r$//g" bin/*')
    if not_executable or options.windows:
        fixups.insert(0, "chmod +x bin/*")
    if options.bin_cd:
        fixups.append(
            "grep -l '#!/usr/bin/env ruby' /rails/bin/* | "
            "xargs sed -i '/^#!/aDir.chdir File.expand_path(\"..\", __dir__)'"
        )
    return fixups


def _cache_mounts(options: Options) -> str:
    if not options.cache:
        return ""
    mounts = [
        f"--mount=type=cache,id={name},sharing=locked,target={target}"
        for name, target in pkg_cache(options).items()
    ]
    return " \\\n    ".join(mounts) + " \\\n    "


def _node_install(root: Path, yarn_version: Optional[str]) -> Dict[str, Any]:
    lockfiles = [name for name in NODE_LOCKFILES if (root / name).exists()]
    if "yarn.lock" in lockfiles:
        major = int(yarn_version.split(".")[0]) if yarn_version and yarn_version[0].isdigit() else 1
        command = "yarn install --immutable" if major >= 2 else "yarn install --frozen-lockfile"
    elif "package-lock.json" in lockfiles:
        command = "npm ci"
    elif "pnpm-lock.yaml" in lockfiles:
        command = "npx pnpm install --frozen-lockfile"
    else:
        command = "npm install"
    return {"node_lock_files": ["package.json"] + lockfiles, "node_install_command": command}


def server_command(plan: GenerationPlan) -> List[str]:
    caps, options = plan.capabilities, plan.options
    if options.procfile.strip():
        return ["foreman", "start", f"--procfile={options.procfile.strip()}"]
    processes = procfile(caps, options)
    if len(processes) > 1:
        return ["foreman", "start", "--procfile=Procfile.prod"]
    if caps.using_passenger:
        return ["nginx"]
    if caps.using_thruster:
        return ["./bin/thrust", "./bin/rails", "server"]
    return ["./bin/rails", "server"]


def _server_test(command: List[str]) -> str:
    if len(command) == 1:
        return f'[ "${{@: -1:1}}" == "{command[0]}" ]'
    return f'[ "${{@: -2:1}}" == "{command[-2]}" ] && [ "${{@: -1:1}}" == "{command[-1]}" ]'


def _server_description(command: List[str], caps: Capabilities) -> str:
    if command[0] == "foreman":
        return "foreman"
    if command[0] == "nginx":
        return "nginx"
    if caps.using_thruster:
        return "Thruster"
    return "Rails"


def _exposed_port(caps: Capabilities, options: Options) -> int:
    if options.nginx or caps.using_passenger or caps.using_thruster:
        return 80
    return 3000


def _app_name(root: Path) -> str:
    return re.sub(r"[^a-z0-9]+", "_", root.name.lower()).strip("_") or "app"


def build_context(plan: GenerationPlan) -> Dict[str, Any]:
    """Explicit render context shared by every template."""
    root, options, caps = plan.root, plan.options, plan.capabilities
    command = server_command(plan)
    precompile_assets = options.precompile != "defer" and (
        any(caps.has_gem(gem) for gem in ASSET_GEMS) or (root / "app" / "assets").is_dir()
    )

    context: Dict[str, Any] = {
        "app_name": _app_name(root),
        "ruby_version": caps.ruby_version,
        "platform_flag": f"--platform={options.platform} " if options.platform else "",
        "registry": options.registry,
        "image_variant": options.image_variant,
        "alpine": options.alpine,
        "fullstaq": options.fullstaq,
        "jemalloc": options.jemalloc,
        "link_flag": " --link" if options.link else "",
        "cache": options.cache,
        "cache_mounts": _cache_mounts(options),
        "pkg_update": pkg_update(options),
        "pkg_install": pkg_install(options),
        "pkg_cleanup": pkg_cleanup(options),
        "base_repos": base_repos(caps, options),
        "deploy_repos": deploy_repos(caps, options, plan.packages.canonical.deploy),
        "base_requirements": base_requirements(caps),
        "base_packages": list(plan.packages.target.base),
        "build_packages": list(plan.packages.target.build),
        "deploy_packages": list(plan.packages.target.deploy),
        "base_env": list(plan.env.base),
        "build_env": list(plan.env.build),
        "deploy_env": list(plan.env.deploy),
        "base_args": dict(plan.args.base),
        "build_args": dict(plan.args.build),
        "deploy_args": dict(plan.args.deploy),
        "base_gems": base_gems(caps, options),
        "base_instructions": stage_instructions(root, options, "base"),
        "build_instructions": stage_instructions(root, options, "build"),
        "deploy_instructions": stage_instructions(root, options, "deploy"),
        "private_gemserver_variable": private_gemserver_env_variable_name(
            options.private_gemserver_domain
        ),
        "precompiled_gems": options.precompiled_gems,
        "depend_on_bootsnap": caps.depend_on_bootsnap,
        "netpop_bug": caps.netpop_bug,
        "using_node": caps.using_node,
        "using_bun": caps.using_bun,
        "parallel": caps.parallel,
        "node_version": caps.node_version,
        "node_lts": caps.node_lts,
        "yarn_version": plan.toolchain.yarn_version,
        "bun_version": plan.toolchain.bun_version,
        "binfile_fixups": binfile_fixups(root, options),
        "precompile_assets": precompile_assets,
        "precompile_deferred": options.precompile == "defer",
        "using_passenger": caps.using_passenger,
        "using_litefs": caps.using_litefs,
        "using_redis": caps.using_redis,
        "using_sidekiq": caps.using_sidekiq,
        "max_idle": parse_max_idle(options.max_idle),
        "nginx": options.nginx,
        "run_as_root": options.root,
        "sudo": options.sudo,
        "user_id": "1000",
        "group_id": "1000",
        "writable_dirs": [name for name in WRITABLE_DIRS if (root / name).exists()] or list(WRITABLE_DIRS),
        "uses_foreman": uses_foreman(caps, options) and not options.procfile.strip(),
        "procfile": procfile(caps, options),
        "command": command,
        "server_description": _server_description(command, caps),
        "server_test": _server_test(command),
        "exposed_port": _exposed_port(caps, options),
        "labels": dict(sorted(options.label.items())),
        "prepare": options.prepare,
        "dbprep_command": dbprep_command(caps, options),
        "swap_mb": parse_swap(options.swap),
        "fly_toml_present": caps.fly_toml_present,
        "deploy_database": caps.deploy_database,
        "web_volumes": compose_web_volumes(plan),
        "extra_ignores": more_docker_ignores(root, caps),
    }
    if caps.using_node:
        context.update(_node_install(root, plan.toolchain.yarn_version))
    else:
        context.update({"node_lock_files": [], "node_install_command": ""})
    return context


def more_docker_ignores(root: Path, caps: Capabilities) -> List[str]:
    lines: List[str] = []

    if caps.has_gem("vite_ruby"):
        try:
            gitignore = (root / ".gitignore").read_text(encoding="utf-8")
        except OSError:
            gitignore = ""
        section = re.search(r"^# Vite.*?\n\n", gitignore, re.MULTILINE | re.DOTALL)
        if section:
            lines += [line for line in section.group(0).splitlines() if line and line != "node_modules"]

    # files uploaded with Shrine in development
    if caps.has_gem("shrine"):
        lines.append("/public/uploads/*")

    return lines


def compose_web_volumes(plan: GenerationPlan) -> List[str]:
    volumes = {"log", "storage"}
    database = plan.facts.production_database
    if plan.capabilities.deploy_database == "sqlite3" and database and re.match(r"^\w", database):
        directory = os.path.dirname(database)
        if directory:
            volumes.add(directory)
    return sorted(volumes)


def render_dockerfile(context: Dict[str, Any]) -> RenderResult:
    return RenderResult(
        path="Dockerfile",
        content=render_template("Dockerfile.j2", context),
        template_used="Dockerfile.j2",
    )


def generate_artifacts(plan: GenerationPlan) -> List[RenderResult]:
    """Render every artifact the plan calls for."""
    context = build_context(plan)
    results = [
        render_dockerfile(context),
        RenderResult(
            path=".dockerignore",
            content=render_template("dockerignore.j2", context),
            template_used="dockerignore.j2",
        ),
        RenderResult(
            path="bin/docker-entrypoint",
            content=render_template("docker-entrypoint.j2", context),
            template_used="docker-entrypoint.j2",
            mode=0o755,
        ),
    ]

    if plan.options.compose:
        results.append(
            RenderResult(
                path="docker-compose.yml",
                content=render_template("docker-compose.yml.j2", context),
                template_used="docker-compose.yml.j2",
            )
        )

    node_version = plan.capabilities.node_version or ""
    if plan.capabilities.using_node and re.fullmatch(r"\d+\.\d+\.\d+", node_version):
        results.append(
            RenderResult(
                path=".node-version",
                content=render_template("node-version.j2", context),
                template_used="node-version.j2",
            )
        )

    return results
