"""Tests for toolchain version resolution; no external commands are run."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

from rails_dockerizer.project_scanner import ProjectFacts, scan_project
from rails_dockerizer.toolchain import (
    DEFAULT_RUBY_VERSION,
    DEFAULT_YARN_VERSION,
    NODE_LTS,
    detect_toolchain,
    node_version,
    probe_version,
    ruby_version,
    yarn_version,
)


class TestProbeVersion:
    def test_extracts_version(self):
        completed = MagicMock(stdout="ruby 3.2.2 (2023-03-30 revision e51014f9c0) [x86_64-linux]\n")
        with patch("rails_dockerizer.toolchain.subprocess.run", return_value=completed) as run:
            assert probe_version(["ruby", "--version"]) == "3.2.2"
        assert run.call_args.kwargs["timeout"] > 0

    def test_missing_executable(self):
        with patch("rails_dockerizer.toolchain.subprocess.run", side_effect=FileNotFoundError("node")):
            assert probe_version(["node", "--version"]) is None

    def test_timeout(self):
        error = subprocess.TimeoutExpired(cmd=["yarn"], timeout=1)
        with patch("rails_dockerizer.toolchain.subprocess.run", side_effect=error):
            assert probe_version(["yarn", "--version"]) is None

    def test_failed_command(self):
        error = subprocess.CalledProcessError(returncode=1, cmd=["bun"])
        with patch("rails_dockerizer.toolchain.subprocess.run", side_effect=error):
            assert probe_version(["bun", "--version"]) is None

    def test_no_version_in_output(self):
        with patch("rails_dockerizer.toolchain.subprocess.run", return_value=MagicMock(stdout="unknown")):
            assert probe_version(["ruby", "--version"]) is None


class TestRubyVersion:
    def test_ruby_version_file_first(self, tmp_path):
        facts = ProjectFacts(ruby_version_file="ruby-3.2.3", lockfile_ruby_version="3.1.0")
        assert ruby_version(tmp_path, facts) == "3.2.3"

    def test_lockfile_second(self, tmp_path):
        facts = ProjectFacts(lockfile_ruby_version="3.1.4")
        assert ruby_version(tmp_path, facts) == "3.1.4"

    def test_probe_then_default(self, tmp_path):
        with patch("rails_dockerizer.toolchain.probe_version", return_value="3.2.0"):
            assert ruby_version(tmp_path, ProjectFacts()) == "3.2.0"
        assert ruby_version(tmp_path, ProjectFacts()) == DEFAULT_RUBY_VERSION


class TestNodeVersion:
    def test_node_version_file(self, tmp_path):
        (tmp_path / ".node-version").write_text("20.11.1\n")
        assert node_version(tmp_path) == "20.11.1"

    def test_engines(self, tmp_path):
        (tmp_path / "package.json").write_text('{"engines": {"node": "18.x"}}')
        assert node_version(tmp_path) == "18.x"

    def test_engine_range_is_ignored(self, tmp_path):
        (tmp_path / "package.json").write_text('{"engines": {"node": ">=18"}}')
        assert node_version(tmp_path) == NODE_LTS

    def test_probe(self, tmp_path):
        with patch("rails_dockerizer.toolchain.probe_version", return_value="21.1.0"):
            assert node_version(tmp_path) == "21.1.0"


class TestYarnVersion:
    def test_test_environment_uses_default(self, tmp_path):
        (tmp_path / "package.json").write_text('{"packageManager": "yarn@4.1.0"}')
        assert yarn_version(tmp_path) == DEFAULT_YARN_VERSION

    def test_package_manager(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RAILS_ENV", "production")
        (tmp_path / "package.json").write_text('{"packageManager": "yarn@4.1.0"}')
        assert yarn_version(tmp_path) == "4.1.0"

    def test_malformed_package_json(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RAILS_ENV", "production")
        (tmp_path / "package.json").write_text("{not json")
        assert yarn_version(tmp_path) == DEFAULT_YARN_VERSION


class TestDetectToolchain:
    def test_minimal_project(self, make_project):
        root = make_project()
        toolchain = detect_toolchain(root, scan_project(root))
        assert toolchain.ruby_version == "3.3.6"
        assert toolchain.node_version is None
        assert toolchain.yarn_version is None
        assert toolchain.bun_version is None

    def test_node_project(self, make_project):
        root = make_project({"package.json": "{}", ".node-version": "20.11.1\n"})
        toolchain = detect_toolchain(root, scan_project(root))
        assert toolchain.node_version == "20.11.1"
        assert toolchain.yarn_version == DEFAULT_YARN_VERSION
