"""Tests for braid.config.Config defaults and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from braid.config import (
    DEFAULT_MAX_PARALLEL,
    DEFAULT_MAX_REVIEW_RETRIES,
    DEFAULT_QUALITY_THRESHOLD,
    Config,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("BRAID_MAX_PARALLEL", "BRAID_QUALITY_THRESHOLD", "BRAID_MAX_REVIEW_RETRIES", "BRAID_STATE_DIR"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path: Path):
    cfg = Config(workspace_dir=str(tmp_path))
    assert cfg.max_parallel == DEFAULT_MAX_PARALLEL
    assert cfg.quality_threshold == DEFAULT_QUALITY_THRESHOLD == 9.5
    assert cfg.max_review_retries == DEFAULT_MAX_REVIEW_RETRIES == 3
    assert cfg.integration_branch == "main"
    assert cfg.remote == "origin"
    assert cfg.skip_review is False


def test_env_overrides(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("BRAID_MAX_PARALLEL", "7")
    monkeypatch.setenv("BRAID_QUALITY_THRESHOLD", "8.5")
    monkeypatch.setenv("BRAID_MAX_REVIEW_RETRIES", "5")
    monkeypatch.setenv("BRAID_STATE_DIR", "/var/lib/braid")

    cfg = Config(workspace_dir=str(tmp_path))

    assert cfg.max_parallel == 7
    assert cfg.quality_threshold == 8.5
    assert cfg.max_review_retries == 5
    assert cfg.state_dir == "/var/lib/braid"


def test_explicit_values_beat_env(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("BRAID_MAX_PARALLEL", "7")
    cfg = Config(workspace_dir=str(tmp_path), max_parallel=2)
    assert cfg.max_parallel == 2


@pytest.mark.parametrize("raw", ["lots", "", "  "])
def test_bad_env_values_fall_back_to_default(monkeypatch, tmp_path: Path, raw: str):
    monkeypatch.setenv("BRAID_MAX_PARALLEL", raw)
    monkeypatch.setenv("BRAID_QUALITY_THRESHOLD", raw)
    cfg = Config(workspace_dir=str(tmp_path))
    assert cfg.max_parallel == DEFAULT_MAX_PARALLEL
    assert cfg.quality_threshold == DEFAULT_QUALITY_THRESHOLD


def test_non_positive_ceiling_clamped_to_one(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("BRAID_MAX_PARALLEL", "-3")
    monkeypatch.setenv("BRAID_MAX_REVIEW_RETRIES", "0")
    cfg = Config(workspace_dir=str(tmp_path))
    assert cfg.max_parallel == 1
    assert cfg.max_review_retries == 1


def test_groups_dir_relative_to_workspace(tmp_path: Path):
    cfg = Config(workspace_dir=str(tmp_path))
    assert cfg.groups_dir == tmp_path / ".braid" / "groups"


def test_groups_dir_absolute_state_dir(tmp_path: Path):
    cfg = Config(workspace_dir=str(tmp_path / "ws"), state_dir=str(tmp_path / "state"))
    assert cfg.groups_dir == tmp_path / "state" / "groups"


def test_workspace_defaults_to_repo_root(git_repo: Path, monkeypatch):
    monkeypatch.chdir(git_repo)
    assert Config().workspace.resolve() == git_repo.resolve()
