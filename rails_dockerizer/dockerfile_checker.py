"""Consistency checks of an existing Dockerfile against the current project."""

from __future__ import annotations

import re
from typing import List, Optional

from .package_resolver import ResolvedPackages
from .tech_detector import Capabilities

NETPOP_BUG_URL = "https://github.com/ruby/ruby/pull/11006"
NETPOP_FIX = 'RUN sed -i "/net-pop (0.1.2)/a\\      net-protocol" Gemfile.lock'


def missing_packages(dockerfile: str, packages: ResolvedPackages) -> List[str]:
    """Base and build packages that never appear as a word in ``dockerfile``."""
    words = set(re.findall(r"[-\w]+", dockerfile))
    wanted = set(packages.target.base) | set(packages.target.build)
    return sorted(wanted - words)


def dockerfile_ruby_version(dockerfile: str) -> Optional[str]:
    match = re.search(r"ARG RUBY_VERSION=(\d+\.\d+\.\d+)", dockerfile)
    return match.group(1) if match else None


def check_dockerfile(dockerfile: str, packages: ResolvedPackages, caps: Capabilities) -> List[str]:
    """Warnings about ``dockerfile``; an empty list means it looks current."""
    warnings: List[str] = []

    missing = missing_packages(dockerfile, packages)
    if missing:
        warnings.append(f"The following packages are missing from the Dockerfile: {', '.join(missing)}")

    ruby_version = dockerfile_ruby_version(dockerfile)
    if ruby_version and caps.ruby_version and ruby_version != caps.ruby_version:
        warnings.append(
            f"The Ruby version in the Dockerfile ({ruby_version}) does not match "
            f"the Ruby version of the Rails app ({caps.ruby_version})"
        )

    if caps.netpop_bug and "net-pop" not in dockerfile:
        warnings.append(
            f"Ruby {caps.ruby_version} net-pop bug detected, see {NETPOP_BUG_URL}. "
            "Change your Ruby version, regenerate the Dockerfile, "
            f"or add the following to your Dockerfile:\n{NETPOP_FIX}"
        )

    return warnings
