"""Tests for stage environment variables, build args and option value parsing."""

from __future__ import annotations

import logging

import pytest

from rails_dockerizer.env_resolver import (
    MALLOC_CONF,
    all_args,
    jemalloc_preload,
    parse_max_idle,
    parse_swap,
    private_gemserver_env_variable_name,
    resolve_env,
    resolve_stage_env,
    stage_env,
    stage_instructions,
)
from rails_dockerizer.options import Options, merge_options
from rails_dockerizer.project_scanner import ProjectFacts
from rails_dockerizer.tech_detector import Capabilities, detect_capabilities
from rails_dockerizer.toolchain import Toolchain


def caps_for(options: Options, *gems: str, **facts) -> Capabilities:
    return detect_capabilities(ProjectFacts(dependencies=frozenset(gems), **facts), options)


# ── Stage variables ──


class TestStageEnv:
    def test_base_defaults(self):
        env = stage_env(caps_for(Options()), Options(), "base")
        assert env == {
            "BUNDLE_DEPLOYMENT": "1",
            "BUNDLE_PATH": "/usr/local/bundle",
            "BUNDLE_WITHOUT": "development:test",
            "RAILS_ENV": "production",
        }

    def test_ci_keeps_test_group(self):
        options = merge_options({"ci": True})
        assert stage_env(caps_for(options), options, "base")["BUNDLE_WITHOUT"] == "development"

    def test_user_value_overrides_derived(self):
        options = merge_options({}, {"env-build": {"PUPPETEER_SKIP_CHROMIUM_DOWNLOAD": "false"}})
        caps = caps_for(options, "grover")
        assert stage_env(caps, options, "build")["PUPPETEER_SKIP_CHROMIUM_DOWNLOAD"] == "false"

    def test_blank_user_value_is_dropped(self):
        options = merge_options({}, {"env-deploy": {"EMPTY": "", "KEPT": "yes"}})
        env = stage_env(caps_for(options), options, "deploy")
        assert "EMPTY" not in env
        assert env["KEPT"] == "yes"

    def test_args_are_exposed_as_variables(self):
        options = merge_options({}, {"arg-build": {"GIT_REV": "unknown"}})
        assert stage_env(caps_for(options), options, "build")["GIT_REV"] == "$GIT_REV"

    def test_sqlite_database_url(self):
        env = stage_env(caps_for(Options()), Options(), "deploy")
        assert env["DATABASE_URL"] == "sqlite3:///data/production.sqlite3"

    def test_litefs_database_url(self):
        options = merge_options({"litefs": True})
        env = stage_env(caps_for(options), options, "deploy")
        assert env["DATABASE_URL"] == "sqlite3:///litefs/production.sqlite3"
        assert env["PORT"] == "3001"

    def test_old_rails_logs_to_stdout(self):
        caps = caps_for(Options(), "rails", locked_versions={"rails": "7.0.8"})
        env = stage_env(caps, Options(), "deploy")
        assert env["RAILS_LOG_TO_STDOUT"] == "1"
        assert env["RAILS_SERVE_STATIC_FILES"] == "true"

    def test_git_policy(self):
        caps = caps_for(Options(), uses_git=True)
        assert "BUNDLE_DEPLOYMENT" in stage_env(caps, Options(), "base")
        options = merge_options({"git-suppresses-deployment": True})
        assert "BUNDLE_DEPLOYMENT" not in stage_env(caps, options, "base")

    def test_unlocked_bundle(self):
        options = merge_options({"lock": False})
        assert "BUNDLE_DEPLOYMENT" not in stage_env(caps_for(options), options, "base")


class TestJemalloc:
    def test_preload_follows_target_platform(self):
        options = merge_options({"jemalloc": True, "platform": "linux/arm64"})
        env = stage_env(caps_for(options), options, "deploy")
        assert env["LD_PRELOAD"] == "/usr/lib/aarch64-linux-gnu/libjemalloc.so.2"
        assert env["MALLOC_CONF"] == MALLOC_CONF

    def test_amd64_platform(self):
        options = merge_options({"platform": "linux/amd64"})
        assert jemalloc_preload(options) == "/usr/lib/x86_64-linux-gnu/libjemalloc.so.2"

    def test_alpine(self):
        assert jemalloc_preload(merge_options({"alpine": True})) == "/usr/lib/libjemalloc.so.2"

    def test_fullstaq_bundles_jemalloc(self):
        options = merge_options({"jemalloc": True, "fullstaq": True})
        assert "LD_PRELOAD" not in stage_env(caps_for(options), options, "deploy")


class TestResolveEnv:
    def test_values_are_quoted(self):
        lines = resolve_env(caps_for(Options()), Options(), "base")
        assert 'RAILS_ENV="production"' in lines

    def test_base_and_deploy_sorted(self):
        options = merge_options({}, {"env-deploy": {"ZED": "1", "ALPHA": "2"}})
        stages = resolve_stage_env(caps_for(options), options)
        assert list(stages.deploy) == sorted(stages.deploy)
        assert list(stages.base) == sorted(stages.base)

    def test_build_keeps_insertion_order(self):
        options = merge_options({}, {"env-build": {"ZED": "1", "ALPHA": "$ZED"}})
        lines = resolve_env(caps_for(options), options, "build")
        assert lines == ['ZED="1"', 'ALPHA="$ZED"']


class TestArgs:
    def test_all_args_includes_user_ids(self):
        options = merge_options({}, {"arg-deploy": {"RELEASE": "1.0"}})
        args = all_args(options)
        assert args["UID"] == "${UID:-1000}"
        assert args["RELEASE"] == "1.0"

    def test_root_has_no_user_ids(self):
        assert "UID" not in all_args(merge_options({"root": True}))


# ── Value parsing ──


class TestParseMaxIdle:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("300", 300.0),
            ("PT5M", 300.0),
            ("P1DT2H", 93600.0),
            ("5m", 300.0),
            ("1h30m", 5400.0),
            ("2.5s", 2.5),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_max_idle(value) == expected

    @pytest.mark.parametrize("value", [None, "", "infinity", "Infinity", "soon", "5x", "P", "PT"])
    def test_unset_or_garbage(self, value):
        assert parse_max_idle(value) is None


class TestParseSwap:
    @pytest.mark.parametrize(
        "value,expected",
        [("512M", 512), ("1g", 1024), ("1GB", 954), ("1048576", 1), ("2048kib", 2)],
    )
    def test_sizes(self, value, expected):
        assert parse_swap(value) == expected

    def test_garbage(self):
        assert parse_swap("lots") is None
        assert parse_swap(None) is None


class TestMisc:
    def test_private_gemserver_variable(self):
        assert private_gemserver_env_variable_name("gems.example.com") == "BUNDLE_GEMS__EXAMPLE__COM"
        assert private_gemserver_env_variable_name("  ") is None

    def test_script_instructions_are_run(self, tmp_path):
        (tmp_path / "setup.sh").write_text("#!/bin/sh\necho hi\n")
        options = merge_options({"instructions": {"build": "setup.sh"}})
        assert stage_instructions(tmp_path, options, "build") == "# custom build instructions\nRUN setup.sh"

    def test_plain_instructions_are_inlined(self, tmp_path):
        (tmp_path / "extra.dockerfile").write_text("RUN echo hi\n")
        options = merge_options({}, {"instructions-deploy": "extra.dockerfile"})
        assert stage_instructions(tmp_path, options, "deploy") == "RUN echo hi"

    def test_missing_instructions_file(self, tmp_path, caplog):
        options = merge_options({}, {"instructions-base": "missing.dockerfile"})
        with caplog.at_level(logging.WARNING):
            assert stage_instructions(tmp_path, options, "base") is None
        assert "missing.dockerfile" in caplog.text

    def test_node_path_for_pinned_execjs(self):
        caps = detect_capabilities(
            ProjectFacts(dependencies=frozenset({"execjs"})),
            Options(),
            Toolchain(node_version="20.11.1"),
        )
        assert stage_env(caps, Options(), "build")["PATH"] == "/usr/local/node/bin:$PATH"
