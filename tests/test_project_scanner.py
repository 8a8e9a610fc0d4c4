"""Tests for the project scanner: lockfile, Gemfile, database and feature facts."""

from __future__ import annotations

import logging

import pytest

from rails_dockerizer.errors import LockfileParseError, ScanError
from rails_dockerizer.project_scanner import (
    MYSQL,
    POSTGRESQL,
    SQLITE3,
    SQLSERVER,
    detect_database,
    parse_gemfile,
    parse_lockfile,
    scan_project,
)

GIT_LOCKFILE = """\
GIT
  remote: https://github.com/example/widget.git
  revision: 0123456789abcdef
  specs:
    widget (0.1.0)

GEM
  remote: https://rubygems.org/
  specs:
    net-pop (0.1.2)
    pg (1.5.4)
    rails (7.1.3)
      actionpack (= 7.1.3)
      railties (= 7.1.3)

RUBY VERSION
   ruby 3.3.3p89
"""


# ── Gemfile.lock ──


class TestParseLockfile:
    def test_specs_and_sources(self):
        lockfile = parse_lockfile(GIT_LOCKFILE)
        assert lockfile.names() == ["widget", "net-pop", "pg", "rails"]
        sources = {spec.name: spec.source for spec in lockfile.specs}
        assert sources["widget"] == "GIT"
        assert sources["pg"] == "GEM"

    def test_spec_dependencies(self):
        lockfile = parse_lockfile(GIT_LOCKFILE)
        specs = {spec.name: spec for spec in lockfile.specs}
        assert specs["rails"].dependencies == ("actionpack", "railties")
        assert specs["net-pop"].dependencies == ()

    def test_ruby_version(self):
        assert parse_lockfile(GIT_LOCKFILE).ruby_version == "3.3.3"

    def test_empty_text(self):
        lockfile = parse_lockfile("")
        assert lockfile.specs == ()
        assert lockfile.ruby_version is None

    def test_conflict_markers_raise(self):
        text = GIT_LOCKFILE + "<<<<<<< HEAD\n    pg (1.5.5)\n=======\n>>>>>>> main\n"
        with pytest.raises(LockfileParseError):
            parse_lockfile(text)

    def test_indented_line_before_section_raises(self):
        with pytest.raises(LockfileParseError):
            parse_lockfile("    rails (7.1.3)\n")


# ── Gemfile ──


class TestParseGemfile:
    def test_declared_gems(self):
        manifest = parse_gemfile('gem "rails"\ngem \'pg\', "~> 1.1"\n# gem "ignored"\n')
        assert manifest.dependencies == ("rails", "pg")
        assert manifest.git_dependencies == ()

    def test_git_option(self):
        manifest = parse_gemfile('gem "widget", github: "example/widget"\ngem "rails"\n')
        assert manifest.git_dependencies == ("widget",)

    def test_git_block(self):
        text = (
            'git "https://github.com/example/tools.git" do\n'
            '  gem "hammer"\n'
            "end\n"
            'gem "rails"\n'
        )
        manifest = parse_gemfile(text)
        assert manifest.git_dependencies == ("hammer",)

    def test_conditional_block_does_not_leak_git(self):
        text = (
            'git "https://github.com/example/tools.git" do\n'
            '  if ENV["SAW"]\n'
            '    gem "saw"\n'
            "  end\n"
            '  gem "hammer"\n'
            "end\n"
            'group :development do\n'
            '  gem "web-console"\n'
            "end\n"
        )
        manifest = parse_gemfile(text)
        assert manifest.git_dependencies == ("saw", "hammer")
        assert "web-console" in manifest.dependencies

    def test_one_line_conditional(self):
        text = 'gem "a"\nif ENV["B"] then gem "b" end\ngem "c"\n'
        manifest = parse_gemfile(text)
        assert manifest.dependencies == ("a", "b", "c")
        assert manifest.git_dependencies == ()

    def test_one_line_git_block(self):
        manifest = parse_gemfile('git "https://github.com/example/tools.git" do gem "saw" end\ngem "rails"\n')
        assert manifest.dependencies == ("saw", "rails")
        assert manifest.git_dependencies == ("saw",)


# ── Database detection ──


class TestDetectDatabase:
    def test_adapter_wins(self):
        assert detect_database("postgresql", frozenset({"mysql2"})) == (POSTGRESQL, True)

    def test_trilogy_adapter_is_mysql(self):
        assert detect_database("trilogy", frozenset()) == (MYSQL, True)

    def test_placeholder_adapter_falls_through_to_driver(self):
        assert detect_database("sqlite3", frozenset({"pg", "sqlite3"})) == (POSTGRESQL, True)

    def test_driver_precedence(self):
        assert detect_database(None, frozenset({"mysql2", "activerecord-sqlserver-adapter"})) == (MYSQL, True)
        assert detect_database(None, frozenset({"activerecord-sqlserver-adapter"})) == (SQLSERVER, True)

    def test_placeholder_adapter_alone(self):
        assert detect_database("sqlite3", frozenset()) == (SQLITE3, True)

    def test_nothing_declared(self):
        assert detect_database(None, frozenset()) == (SQLITE3, False)


# ── scan_project ──


class TestScanProject:
    def test_minimal_project(self, make_project):
        facts = scan_project(make_project())
        assert facts.has_gem("rails")
        assert facts.has_gem("railties")
        assert facts.locked_versions["railties"] == "7.1.3"
        assert facts.database_engine == SQLITE3
        assert facts.database_explicit is False
        assert facts.ruby_version_file == "3.3.6"
        assert facts.lockfile_ruby_version == "3.3.6"
        assert not facts.uses_redis
        assert not facts.package_json_present
        assert not facts.fly_toml_present

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(ScanError):
            scan_project(tmp_path / "does-not-exist")

    def test_database_yml_adapter(self, make_project):
        root = make_project(
            {"config/database.yml": "production:\n  adapter: postgresql\n  database: app_production\n"}
        )
        facts = scan_project(root)
        assert facts.database_engine == POSTGRESQL
        assert facts.database_explicit is True
        assert facts.production_database == "app_production"

    def test_multi_database_primary(self, make_project):
        root = make_project(
            {
                "config/database.yml": (
                    "production:\n"
                    "  primary:\n"
                    "    adapter: mysql2\n"
                    "    database: app\n"
                    "  cache:\n"
                    "    adapter: sqlite3\n"
                )
            }
        )
        assert scan_project(root).database_engine == MYSQL

    def test_malformed_database_yml_is_ignored(self, make_project, caplog):
        root = make_project({"config/database.yml": "production: [unclosed\n"})
        with caplog.at_level(logging.WARNING):
            facts = scan_project(root)
        assert facts.database_engine == SQLITE3
        assert "Ignoring malformed" in caplog.text

    def test_unparseable_lockfile_is_ignored(self, make_project, caplog):
        root = make_project({"Gemfile.lock": "<<<<<<< HEAD\n=======\n>>>>>>> main\n"})
        with caplog.at_level(logging.WARNING):
            facts = scan_project(root)
        assert facts.has_gem("rails")
        assert facts.locked_versions == {}
        assert "Ignoring unparseable" in caplog.text

    def test_channels_imply_redis(self, make_project):
        root = make_project({"app/channels/chat_channel.rb": "class ChatChannel; end\n"})
        facts = scan_project(root)
        assert facts.uses_action_cable
        assert facts.uses_redis

    def test_redis_cache_store(self, make_project):
        root = make_project(
            {
                "config/environments/production.rb": (
                    "Rails.application.configure do\n"
                    "  config.cache_store = :redis_cache_store\n"
                    "end\n"
                )
            }
        )
        facts = scan_project(root)
        assert facts.uses_redis_cache
        assert facts.uses_redis

    def test_jobs_other_than_application_job(self, make_project):
        root = make_project({"app/jobs/application_job.rb": "class ApplicationJob; end\n"})
        assert not scan_project(root).includes_jobs

        (root / "app" / "jobs" / "cleanup_job.rb").write_text("class CleanupJob; end\n")
        assert scan_project(root).includes_jobs

    def test_node_and_bun(self, make_project):
        root = make_project({"package.json": '{"dependencies": {"puppeteer": "^21.0.0"}}'})
        facts = scan_project(root)
        assert facts.package_json_present
        assert facts.uses_puppeteer
        assert not facts.bun_lockfile_present

        (root / "bun.lockb").write_bytes(b"\x00")
        assert scan_project(root).bun_lockfile_present

    def test_git_detection_toggle(self, make_project):
        root = make_project({"Gemfile.lock": GIT_LOCKFILE})
        assert scan_project(root, detect_git=True).uses_git
        assert not scan_project(root, detect_git=False).uses_git

    def test_git_detection_skipped_under_test_env(self, make_project):
        root = make_project({"Gemfile.lock": GIT_LOCKFILE})
        assert not scan_project(root).uses_git

    def test_locked_dependencies(self, make_project):
        root = make_project({"Gemfile.lock": GIT_LOCKFILE})
        facts = scan_project(root)
        assert facts.locked_dependencies["net-pop"] == ()
        assert facts.lockfile_ruby_version == "3.3.3"
