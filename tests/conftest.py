"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

import dirstat.core.walker as walker_mod
from dirstat.settings import Settings


@pytest.fixture(autouse=True)
def isolate_settings(tmp_path, monkeypatch):
    """Point settings at a temp config dir and drop the shared instance."""
    config_home = tmp_path / "config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setattr(Settings, "_instance", None)
    return config_home / "dirstat" / "settings.json"


@pytest.fixture
def sample_dir(tmp_path):
    """A 100-byte file plus a subdirectory holding two 50-byte files."""
    root = tmp_path / "root"
    root.mkdir()
    (root / "a.bin").write_bytes(b"a" * 100)
    sub = root / "sub"
    sub.mkdir()
    (sub / "b.bin").write_bytes(b"b" * 50)
    (sub / "c.bin").write_bytes(b"c" * 50)
    return root


@pytest.fixture
def wide_dir(tmp_path):
    """Five subdirectories with five 10-byte files each."""
    root = tmp_path / "wide"
    root.mkdir()
    for d in range(5):
        sub = root / f"d{d}"
        sub.mkdir()
        for f in range(5):
            (sub / f"f{f}.dat").write_bytes(b"x" * 10)
    return root


@pytest.fixture
def sub_on_other_device(monkeypatch):
    """Make every directory named ``sub`` look like a mount point of another device."""
    real_lstat = walker_mod._lstat

    def fake_lstat(dirent):
        st = real_lstat(dirent)
        if dirent.name != "sub":
            return st
        fields = list(st)
        fields[2] = st.st_dev + 1  # st_dev
        return os.stat_result(fields)

    monkeypatch.setattr(walker_mod, "_lstat", fake_lstat)
