"""Derive runtime capabilities from project facts and user options."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from .options import Options
from .project_scanner import MYSQL, POSTGRESQL, SQLITE3, SQLSERVER, ProjectFacts
from .toolchain import Toolchain

# Ruby release whose bundled net-pop gem lacks its net-protocol dependency.
# https://github.com/ruby/ruby/pull/11006
NETPOP_BUG_RUBY = "3.3.3"

MYSQL_DRIVERS = ("mysql2", "trilogy", "activerecord-trilogy-adapter")
TRILOGY_DRIVERS = ("trilogy", "activerecord-trilogy-adapter")


@dataclass(frozen=True)
class Capabilities:
    gems: FrozenSet[str] = frozenset()

    postgresql: bool = False
    mysql: bool = False
    sqlserver: bool = False
    sqlite3: bool = False
    deploy_database: str = SQLITE3
    using_trilogy: bool = False
    has_mysql_gem: bool = False

    using_node: bool = False
    using_bun: bool = False
    using_execjs: bool = False
    using_puppeteer: bool = False
    parallel: bool = False

    using_redis: bool = False
    using_sidekiq: bool = False
    using_solidq: bool = False

    using_passenger: bool = False
    using_thruster: bool = False
    using_litefs: bool = False
    using_litestack: bool = False

    uses_git: bool = False
    uses_vips: bool = False
    uses_rmagick: bool = False
    uses_imagemagick: bool = False
    uses_charlock_holmes: bool = False
    uses_webp: bool = False
    depend_on_bootsnap: bool = False

    fly_toml_present: bool = False
    netpop_bug: bool = False

    ruby_version: str = ""
    node_version: Optional[str] = None
    rails_version: Optional[str] = None

    def has_gem(self, name: str) -> bool:
        return name in self.gems

    @property
    def node_lts(self) -> bool:
        return self.node_version == "lts"


def version_tuple(version: Optional[str]) -> Tuple[int, ...]:
    if not version:
        return ()
    return tuple(int(part) for part in re.findall(r"\d+", version))


def _rails_version(facts: ProjectFacts) -> Optional[str]:
    return facts.locked_versions.get("railties") or facts.locked_versions.get("rails")


def detect_netpop_bug(facts: ProjectFacts, ruby_version: str) -> bool:
    """Ruby 3.3.3 with a net-pop lacking net-protocol in its locked dependencies."""
    if ruby_version != NETPOP_BUG_RUBY or "net-pop" not in facts.locked_dependencies:
        return False
    return len(facts.locked_dependencies["net-pop"]) == 0


def detect_capabilities(
    facts: ProjectFacts,
    options: Options,
    toolchain: Optional[Toolchain] = None,
) -> Capabilities:
    """Combine explicit options with detected facts, one OR per capability."""
    toolchain = toolchain or Toolchain()
    gems = facts.dependencies

    def has(*names: str) -> bool:
        return any(name in gems for name in names)

    postgresql = options.postgresql or facts.database_engine == POSTGRESQL
    mysql = options.mysql or facts.database_engine == MYSQL
    sqlserver = options.sqlserver or facts.database_engine == SQLSERVER
    sqlite3 = options.sqlite3 or (
        facts.database_engine == SQLITE3
        and (facts.database_explicit or not options.explicit_database())
    )

    using_trilogy = has(*TRILOGY_DRIVERS)
    has_mysql_gem = has(*MYSQL_DRIVERS)

    # pg/mysql in the bundle is evidence of intent since DATABASE_URL can
    # override config/database.yml at runtime.
    if postgresql or has("pg"):
        deploy_database = POSTGRESQL
    elif mysql or has_mysql_gem:
        deploy_database = MYSQL
    elif sqlserver:
        deploy_database = SQLSERVER
    else:
        deploy_database = SQLITE3

    using_bun = facts.bun_lockfile_present
    using_node = facts.package_json_present and not using_bun
    using_sidekiq = has("sidekiq")

    return Capabilities(
        gems=gems,
        postgresql=postgresql,
        mysql=mysql,
        sqlserver=sqlserver,
        sqlite3=sqlite3,
        deploy_database=deploy_database,
        using_trilogy=using_trilogy,
        has_mysql_gem=has_mysql_gem,
        using_node=using_node,
        using_bun=using_bun,
        using_execjs=has("execjs", "grover"),
        using_puppeteer=has("grover", "puppeteer-ruby") or facts.uses_puppeteer,
        parallel=options.parallel and (using_node or using_bun),
        # a worker gem needs the datastore even if redis was switched off
        using_redis=options.redis or facts.uses_redis or using_sidekiq,
        using_sidekiq=using_sidekiq,
        using_solidq=has("solid_queue") and facts.includes_jobs,
        using_passenger=options.passenger or bool(options.max_idle),
        using_thruster=options.thruster or has("thruster"),
        using_litefs=options.litefs,
        using_litestack=has("litestack"),
        uses_git=facts.uses_git,
        uses_vips=facts.uses_vips,
        uses_rmagick=has("rmagick"),
        uses_imagemagick=has("rmagick", "mini_magick"),
        uses_charlock_holmes=has("charlock_holmes"),
        uses_webp=has("webp-ffi"),
        depend_on_bootsnap=facts.uses_bootsnap,
        fly_toml_present=facts.fly_toml_present,
        netpop_bug=detect_netpop_bug(facts, toolchain.ruby_version),
        ruby_version=toolchain.ruby_version,
        node_version=toolchain.node_version,
        rails_version=_rails_version(facts),
    )


def procfile(caps: Capabilities, options: Options) -> Dict[str, str]:
    """Processes the image starts, keyed by name."""
    if caps.using_passenger:
        return {"nginx": "nginx"}
    if options.nginx:
        return {
            "nginx": '/usr/sbin/nginx -g "daemon off;"',
            "rails": "./bin/rails server -p 3001",
        }
    if caps.using_thruster:
        return {"rails": "bundle exec thrust ./bin/rails server"}
    return {"rails": "./bin/rails server"}


def dbprep_command(caps: Capabilities, options: Options) -> str:
    if options.migrate.strip():
        return options.migrate
    rails = version_tuple(caps.rails_version)
    if rails and rails[0] < 6:
        return "./bin/rails db:migrate"
    return "./bin/rails db:prepare"


def uses_foreman(caps: Capabilities, options: Options) -> bool:
    return bool(options.procfile.strip()) or len(procfile(caps, options)) > 1
