"""Command line interface for rails-dockerizer."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config_store import load_config, save_config
from .dockerfile_checker import check_dockerfile
from .dockerfile_generator import GenerationPlan, RenderResult, generate_artifacts, plan_generation
from .errors import RailsDockerizerError
from .fly_config import FLY_TOML, fly_env_additions, needs_fly_update, update_fly_toml
from .options import BASE_DEFAULTS, STAGES, merge_options

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHECK_FAILED = 42

OPTION_HELP = {
    "alpine": "use alpine as the base image",
    "bin-cd": "modify binstubs to set the working directory",
    "cache": "use build caching to speed up builds",
    "ci": "include test gems in the bundle",
    "compose": "generate a docker-compose.yml file",
    "fullstaq": "use fullstaq ruby images",
    "git-suppresses-deployment": "do not set BUNDLE_DEPLOYMENT when the bundle has git sources",
    "jemalloc": "use jemalloc to reduce memory usage",
    "label": "labels for the final image (KEY:VALUE)",
    "link": "use COPY --link",
    "litefs": "replicate sqlite3 databases using litefs",
    "lock": "lock the bundle with BUNDLE_DEPLOYMENT",
    "max-idle": "exit the server after this much idle time",
    "migrate": "custom database migration command",
    "mysql": "include mysql support",
    "nginx": "serve static files with nginx",
    "parallel": "use a multi-stage build to install gems and node modules in parallel",
    "passenger": "serve the application with Phusion Passenger",
    "platform": "target platform for the image (e.g. linux/arm64)",
    "postgresql": "include postgresql support",
    "precompile": "if set to 'defer', assets:precompile runs at deploy time",
    "precompiled-gems": "use precompiled platform gems",
    "prepare": "run db:prepare before starting the server",
    "private-gemserver-domain": "domain of a private gem server needing credentials",
    "procfile": "custom Procfile to start services",
    "redis": "include redis libraries",
    "registry": "registry prefix for the ruby image",
    "rollbar": "record the rollbar preference",
    "root": "run the application as root",
    "sentry": "record the sentry preference",
    "sqlite3": "include sqlite3 support",
    "sqlserver": "include SQL Server support",
    "sudo": "install and configure sudo for the rails user",
    "swap": "allocate swap space (e.g. 512M)",
    "thruster": "serve the application through thruster",
    "tigris": "record the tigris preference",
    "variant": "ruby image variant (defaults to slim, or alpine)",
    "windows": "make bin/ scripts usable when generated on Windows",
    "yjit": "enable YJIT",
}

OPTION_ALIASES = {
    "postgresql": "--postgres",
    "sqlite3": "--sqlite",
}

STAGE_ALIASES = {
    "add-deploy": "--add",
    "remove-deploy": "--remove",
    "env-deploy": "--env",
    "arg-base": "--arg",
    "instructions-deploy": "--instructions",
}


def _key_value(text: str) -> Tuple[str, str]:
    key, sep, value = text.partition(":")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY:VALUE, got {text!r}")
    return key, value


def _flags(name: str, aliases: Dict[str, str]) -> List[str]:
    flags = [f"--{name}"]
    if name in aliases:
        flags.append(aliases[name])
    return flags


def _add_option_arguments(parser: argparse.ArgumentParser) -> None:
    for key, default in BASE_DEFAULTS.items():
        dest = key.replace("-", "_")
        flags = _flags(key, OPTION_ALIASES)
        help_text = OPTION_HELP.get(key)
        if isinstance(default, bool):
            parser.add_argument(*flags, dest=dest, action=argparse.BooleanOptionalAction, default=None, help=help_text)
        elif isinstance(default, dict):
            parser.add_argument(
                *flags, dest=dest, nargs="+", action="extend", type=_key_value, metavar="KEY:VALUE", help=help_text
            )
        else:
            parser.add_argument(*flags, dest=dest, default=None, help=help_text)


def _add_stage_arguments(parser: argparse.ArgumentParser) -> None:
    for stage in STAGES:
        parser.add_argument(
            *_flags(f"add-{stage}", STAGE_ALIASES),
            dest=f"add_{stage}",
            nargs="+",
            action="extend",
            metavar="PACKAGE",
            help=f"additional packages to install in the {stage} stage",
        )
        parser.add_argument(
            *_flags(f"remove-{stage}", STAGE_ALIASES),
            dest=f"remove_{stage}",
            nargs="+",
            action="extend",
            metavar="PACKAGE",
            help=f"packages to leave out of the {stage} stage",
        )
        parser.add_argument(
            *_flags(f"env-{stage}", STAGE_ALIASES),
            dest=f"env_{stage}",
            nargs="+",
            action="extend",
            type=_key_value,
            metavar="KEY:VALUE",
            help=f"environment variables for the {stage} stage",
        )
        parser.add_argument(
            *_flags(f"arg-{stage}", STAGE_ALIASES),
            dest=f"arg_{stage}",
            nargs="+",
            action="extend",
            type=_key_value,
            metavar="KEY:VALUE",
            help=f"build arguments for the {stage} stage",
        )
        parser.add_argument(
            *_flags(f"instructions-{stage}", STAGE_ALIASES),
            dest=f"instructions_{stage}",
            default=None,
            metavar="FILE",
            help=f"file with extra Dockerfile instructions for the {stage} stage",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rails-dockerizer",
        description="Generate a production Dockerfile and companion files for a Rails application.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser(
        "generate",
        help="Generate Dockerfile, .dockerignore, entrypoint and related files.",
    )
    generate.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Root of the Rails application (default: current directory).",
    )
    generate.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the generated files instead of writing them.",
    )
    generate.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing files.",
    )
    generate.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    _add_option_arguments(generate)
    _add_stage_arguments(generate)

    return parser


def collect_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Command line values keyed by option name; options not given are omitted."""
    overrides: Dict[str, Any] = {}

    for key, default in BASE_DEFAULTS.items():
        value = getattr(args, key.replace("-", "_"), None)
        if value is None:
            continue
        overrides[key] = dict(value) if isinstance(default, dict) else value

    for stage in STAGES:
        for prefix in ("add", "remove"):
            value = getattr(args, f"{prefix}_{stage}", None)
            if value:
                overrides[f"{prefix}-{stage}"] = list(value)
        for prefix in ("env", "arg"):
            value = getattr(args, f"{prefix}_{stage}", None)
            if value:
                overrides[f"{prefix}-{stage}"] = dict(value)
        instructions = getattr(args, f"instructions_{stage}", None)
        if instructions:
            overrides[f"instructions-{stage}"] = instructions

    return overrides


def _write_output(path: Path, content: str, overwrite: bool = True, mode: Optional[int] = None) -> bool:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() and not overwrite:
        return False
    path.write_text(content, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)
    return True


def _summarize(plan: GenerationPlan, generated_files: List[str]) -> str:
    caps = plan.capabilities
    parts = [
        f"Ruby: {caps.ruby_version}",
        f"Rails: {caps.rails_version or 'unknown'}",
        f"Database: {caps.deploy_database}",
        f"JavaScript: {'node' if caps.using_node else 'bun' if caps.using_bun else 'none'}",
        f"Generated: {', '.join(generated_files) if generated_files else 'nothing'}",
    ]
    return " | ".join(parts)


def _print_dry_run(results: List[RenderResult]) -> None:
    for result in results:
        print(f"==> {result.path} <==")
        print(result.content, end="" if result.content.endswith("\n") else "\n")


def _update_fly_toml(plan: GenerationPlan) -> Optional[str]:
    fly_path = plan.root / FLY_TOML
    dockerfile_path = plan.root / "Dockerfile"
    dockerfile = dockerfile_path.read_text(encoding="utf-8") if dockerfile_path.exists() else ""

    toml = fly_path.read_text(encoding="utf-8")
    original = toml
    if needs_fly_update(plan):
        toml = update_fly_toml(toml, plan, dockerfile)
    toml = fly_env_additions(toml, dockerfile, plan.capabilities, plan.options) or toml

    if toml == original:
        return None
    fly_path.write_text(toml, encoding="utf-8")
    return FLY_TOML


def handle_generate(args: argparse.Namespace) -> int:
    root = Path(args.path).expanduser().resolve()
    options = merge_options(load_config(root), collect_overrides(args))
    plan = plan_generation(root, options)
    results = generate_artifacts(plan)

    if args.dry_run:
        _print_dry_run(results)
        return EXIT_OK

    generated_files: List[str] = []
    kept_dockerfile = False
    for result in results:
        if _write_output(root / result.path, result.content, overwrite=args.force, mode=result.mode):
            logger.info("create %s", result.path)
            generated_files.append(result.path)
        else:
            logger.info("skip %s (exists, use --force to overwrite)", result.path)
            kept_dockerfile = kept_dockerfile or result.path == "Dockerfile"

    if plan.capabilities.fly_toml_present:
        updated = _update_fly_toml(plan)
        if updated:
            logger.info("update %s", updated)
            generated_files.append(updated)

    config_file = save_config(root, options)
    if config_file:
        generated_files.append(str(config_file.relative_to(root)))

    print(_summarize(plan, generated_files))

    if kept_dockerfile:
        dockerfile = (root / "Dockerfile").read_text(encoding="utf-8")
        warnings = check_dockerfile(dockerfile, plan.packages, plan.capabilities)
        for warning in warnings:
            print(f"\n{warning}", file=sys.stderr)
        if warnings:
            return EXIT_CHECK_FAILED

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.command == "generate":
        try:
            return handle_generate(args)
        except (RailsDockerizerError, OSError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_ERROR
    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
