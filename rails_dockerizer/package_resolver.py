"""Compute the OS packages installed in each Dockerfile stage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .options import STAGES, Options
from .tech_detector import Capabilities, uses_foreman, version_tuple

# Debian package name -> Alpine package name. Unlisted names are the same on both.
ALPINE_MAPPINGS = {
    "build-essential": "build-base",
    "chromium-sandbox": "chromium-chromedriver",
    "default-libmysqlclient-dev": "mysql-client",
    "default-mysql-client": "mysql-client",
    "freetds-bin": "freetds",
    "libicu-dev": "icu-dev",
    "libjemalloc": "jemalloc-dev",
    "libjemalloc2": "jemalloc",
    "libjpeg-dev": "jpeg-dev",
    "libmagickwand-dev": "imagemagick-libs",
    "libsqlite3-0": "sqlite-dev",
    "libtiff-dev": "tiff-dev",
    "libvips": "vips-dev",
    "node-gyp": "gyp",
    "pkg-config": "pkgconfig",
    "python": "python3",
    "python-is-python3": "python3",
    "redis-tools": "redis",
}


@dataclass(frozen=True)
class StagePackages:
    base: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()
    deploy: Tuple[str, ...] = ()

    def stage(self, name: str) -> Tuple[str, ...]:
        return getattr(self, name)


@dataclass(frozen=True)
class ResolvedPackages:
    """Canonical (Debian) names and the names for the target image."""

    canonical: StagePackages
    target: StagePackages


def alpinize(packages: Iterable[str]) -> List[str]:
    return sorted({ALPINE_MAPPINGS.get(package, package) for package in packages})


def native_python_package(ruby_version: str) -> str:
    """Python package node-gyp needs on the Debian release shipped with this Ruby image."""
    version = version_tuple(ruby_version)
    if version[:2] == (2, 7):
        bullseye = version >= (2, 7, 4)
    elif version[:2] == (3, 0):
        bullseye = version >= (3, 0, 2)
    elif version[:1] == (2,):
        bullseye = False
    else:
        bullseye = True
    return "python-is-python3" if bullseye else "python"


def base_rules(caps: Capabilities, options: Options) -> List[str]:
    packages: List[str] = []

    if caps.using_execjs:
        packages += ["nodejs", "npm"] if caps.node_lts else ["curl"]

    if caps.using_puppeteer:
        packages += ["curl", "gnupg"]

    # libicu63 in buster, libicu67 in bullseye, libicu72 in bookworm...
    if caps.uses_charlock_holmes:
        packages.append("libicu-dev")

    if caps.uses_webp:
        packages += ["libjpeg-dev", "libpng-dev", "libtiff-dev", "libwebp-dev"]

    if caps.using_passenger:
        packages.append("passenger")

    if options.alpine:
        packages.append("tzdata")

    return packages


def build_rules(caps: Capabilities, options: Options) -> List[str]:
    packages: List[str] = []

    if caps.using_node:
        packages += ["node-gyp", "pkg-config", native_python_package(caps.ruby_version)]
        if not (caps.using_execjs or caps.using_puppeteer):
            packages.append("curl")
    if caps.node_lts and not caps.using_execjs:
        packages += ["nodejs", "npm"]
    if caps.using_bun:
        packages += ["curl", "unzip"]

    if caps.uses_vips:
        packages.append("libvips")
    if caps.uses_rmagick:
        packages += ["pkg-config", "libmagickwand-dev"]

    if caps.sqlite3:
        packages.append("pkg-config")
    if caps.postgresql:
        packages.append("libpq-dev")
    if caps.sqlserver:
        packages.append("freetds-dev")
    if caps.mysql and not caps.using_trilogy:
        packages.append("default-libmysqlclient-dev")

    if caps.uses_git:
        packages.append("git")
    if options.fullstaq:
        packages.append("libyaml-dev")

    packages.append("build-essential")
    return packages


def deploy_rules(caps: Capabilities, options: Options, foreman: bool = False) -> List[str]:
    packages: List[str] = []

    if caps.using_puppeteer:
        if options.platform and "amd" in options.platform:
            packages.append("google-chrome-stable")
        else:
            packages += ["chromium", "chromium-sandbox"]

    if caps.uses_vips:
        packages.append("libvips")
    if caps.uses_imagemagick:
        packages.append("imagemagick")
    if options.jemalloc and not options.fullstaq:
        packages.append("libjemalloc2")

    if caps.postgresql:
        packages.append("postgresql-client")
    if caps.mysql:
        packages.append("default-mysql-client")
    if caps.sqlserver:
        packages.append("freetds-bin")
    if caps.sqlite3 and "sqlite3" not in options.packages["deploy"]:
        packages.append("libsqlite3-0")
    if caps.using_litefs:
        packages += ["ca-certificates", "fuse3", "sudo"]

    if caps.using_redis:
        packages.append("redis-tools")

    if caps.using_passenger:
        packages.append("libnginx-mod-http-passenger")
    if options.nginx or caps.using_passenger:
        packages.append("nginx")
    if foreman:
        packages.append("ruby-foreman")

    # healthchecks
    packages.append("curl")
    if options.sudo:
        packages.append("sudo")
    if options.alpine:
        if caps.has_gem("sqlite3"):
            packages.append("sqlite-libs")
        if caps.has_gem("pg"):
            packages.append("libpq")

    return packages


def finalize_stage(seed: Iterable[str], derived: Iterable[str], removed: Iterable[str]) -> List[str]:
    """Seed plus derived packages, minus removals, deduplicated and sorted."""
    excluded = set(removed)
    return sorted({package for package in list(seed) + list(derived) if package not in excluded})


def resolve_packages(caps: Capabilities, options: Options) -> ResolvedPackages:
    derived: Dict[str, List[str]] = {
        "base": base_rules(caps, options),
        "build": build_rules(caps, options),
        "deploy": deploy_rules(caps, options, uses_foreman(caps, options)),
    }

    canonical = {
        stage: tuple(
            finalize_stage(options.packages[stage], derived[stage], options.remove_packages[stage])
        )
        for stage in STAGES
    }
    if options.alpine:
        target = {stage: tuple(alpinize(canonical[stage])) for stage in STAGES}
    else:
        target = dict(canonical)

    return ResolvedPackages(canonical=StagePackages(**canonical), target=StagePackages(**target))


def base_gems(caps: Capabilities, options: Options) -> List[str]:
    gems = ["bundler"]
    # https://github.com/rubygems/rubygems/issues/6082
    if options.ci and options.lock and caps.has_gem("debug"):
        if version_tuple(caps.ruby_version) < (3, 2, 2):
            gems += [gem for gem in ("irb", "reline") if not caps.has_gem(gem)]
    return sorted(gems)


def base_requirements(caps: Capabilities) -> str:
    requirements = []
    if caps.using_execjs:
        requirements.append("nodejs")
    if caps.using_puppeteer:
        requirements.append("chrome")
    if caps.uses_charlock_holmes:
        requirements.append("charlock_holmes")
    return " and ".join(requirements)


def pkg_update(options: Options) -> str:
    return "apk update" if options.alpine else "apt-get update -qq"


def pkg_install(options: Options) -> str:
    return "apk add" if options.alpine else "apt-get install --no-install-recommends -y"


def pkg_cache(options: Options) -> Dict[str, str]:
    if options.alpine:
        return {"dev-apk-cache": "/var/cache/apk"}
    return {"dev-apt-cache": "/var/cache/apt", "dev-apt-lib": "/var/lib/apt"}


def pkg_cleanup(options: Options) -> str:
    return "/var/cache/apk/*" if options.alpine else "/var/lib/apt/lists /var/cache/apt/archives"


def _repo_preamble(options: Options, packages: List[str], repos: List[str]) -> str:
    if not repos:
        return ""
    lines = [f"{pkg_update(options)} &&", f"{pkg_install(options)} {' '.join(sorted(set(packages)))} &&"]
    return " \\\n    ".join(lines + repos) + " && \\\n    "


def base_repos(caps: Capabilities, options: Options) -> str:
    """Shell prefix that registers extra apt repositories for the base stage."""
    if not caps.using_passenger:
        return ""
    return _repo_preamble(
        options,
        ["gnupg", "curl"],
        [
            "curl https://oss-binaries.phusionpassenger.com/auto-software-signing-gpg-key.txt |",
            "  gpg --dearmor > /etc/apt/trusted.gpg.d/phusion.gpg &&",
            "bash -c 'echo deb https://oss-binaries.phusionpassenger.com/apt/passenger "
            "$(source /etc/os-release; echo $VERSION_CODENAME) main > /etc/apt/sources.list.d/passenger.list'",
        ],
    )


def deploy_repos(caps: Capabilities, options: Options, deploy_packages: Iterable[str]) -> str:
    if not (caps.using_puppeteer and "google-chrome-stable" in deploy_packages):
        return ""
    return _repo_preamble(
        options,
        ["gnupg", "curl"],
        [
            "curl https://dl-ssl.google.com/linux/linux_signing_key.pub |",
            "  gpg --dearmor > /etc/apt/trusted.gpg.d/google-archive.gpg &&",
            'echo "deb http://dl.google.com/linux/chrome/deb/ stable main" >> '
            "/etc/apt/sources.list.d/google-chrome.list",
        ],
    )
