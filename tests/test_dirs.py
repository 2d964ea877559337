from pathlib import Path

import pytest

from meshcore import dirs
from meshcore.dirs import (
    DEFAULT_DIR_NAME,
    HOME_ENV,
    DataDirError,
    config_path,
    data_dir,
    rosters_dir,
    secrets_dir,
    states_dir,
    updates_dir,
)


def test_env_override_is_used(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV, str(tmp_path))
    assert data_dir() == tmp_path


def test_env_override_is_trimmed(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV, f"  {tmp_path}\n")
    assert data_dir() == tmp_path


def test_blank_env_falls_back_to_home(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV, "   ")
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    assert data_dir() == tmp_path / DEFAULT_DIR_NAME


def test_unset_env_falls_back_to_home(monkeypatch, tmp_path):
    monkeypatch.delenv(HOME_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    assert data_dir() == tmp_path / DEFAULT_DIR_NAME


def test_unresolvable_home_raises(monkeypatch):
    monkeypatch.delenv(HOME_ENV, raising=False)

    def _no_home(cls):
        raise RuntimeError("Could not determine home directory.")

    monkeypatch.setattr(Path, "home", classmethod(_no_home))
    with pytest.raises(DataDirError):
        data_dir()


def test_subdirectories_hang_off_data_dir(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV, str(tmp_path))
    assert rosters_dir() == tmp_path / "mesh" / "rosters"
    assert states_dir() == tmp_path / "mesh" / "states"
    assert secrets_dir() == tmp_path / ".secrets"
    assert updates_dir() == tmp_path / "updates"
    assert config_path() == tmp_path / "config.json"


def test_rosters_and_states_are_distinct_siblings(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV, str(tmp_path))
    assert rosters_dir() != states_dir()
    assert rosters_dir().parent == states_dir().parent


def test_paths_are_not_created(monkeypatch, tmp_path):
    target = tmp_path / "fresh"
    monkeypatch.setenv(HOME_ENV, str(target))
    assert dirs.config_path().parent == target
    assert not target.exists()