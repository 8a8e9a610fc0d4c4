"""Shared pytest fixtures for rails-dockerizer tests."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable, Dict, Optional
from unittest.mock import patch

import pytest

MINIMAL_GEMFILE = """\
source "https://rubygems.org"

gem "rails", "~> 7.1.3"
gem "puma"
"""

MINIMAL_LOCKFILE = """\
GEM
  remote: https://rubygems.org/
  specs:
    puma (6.4.2)
      nio4r (~> 2.0)
    nio4r (2.7.0)
    rails (7.1.3)
      railties (= 7.1.3)
    railties (7.1.3)

PLATFORMS
  ruby

DEPENDENCIES
  puma
  rails (~> 7.1.3)

RUBY VERSION
   ruby 3.3.6p108

BUNDLED WITH
   2.5.6
"""


def write_files(root: Path, files: Dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")
    return root


@pytest.fixture(autouse=True)
def test_environment(monkeypatch):
    """Stable environment: RAILS_ENV=test and no external version probes."""
    monkeypatch.setenv("RAILS_ENV", "test")
    monkeypatch.delenv("RAILS_DOCKERIZER_TEMPLATES_DIR", raising=False)
    with patch("rails_dockerizer.toolchain.probe_version", return_value=None):
        yield


@pytest.fixture
def make_project(tmp_path) -> Callable[..., Path]:
    """Build a minimal Rails project, with extra or replaced files."""

    def _make(files: Optional[Dict[str, str]] = None, gems: str = "", locked: str = "") -> Path:
        root = tmp_path / "demo-app"
        root.mkdir(exist_ok=True)
        gemfile = MINIMAL_GEMFILE + textwrap.dedent(gems)
        lockfile = MINIMAL_LOCKFILE
        if locked:
            lockfile = lockfile.replace("    railties (7.1.3)\n", "    railties (7.1.3)\n" + locked, 1)
        base = {
            "Gemfile": gemfile,
            "Gemfile.lock": lockfile,
            ".ruby-version": "3.3.6\n",
            "config/environments/production.rb": "Rails.application.configure do\nend\n",
        }
        base.update(files or {})
        return write_files(root, {name: content for name, content in base.items() if content is not None})

    return _make
