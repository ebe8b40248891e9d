from __future__ import annotations

import os

import pytest

from roguemind.envutil import env_bool, env_float, env_int, is_enabled, load_env_file


@pytest.mark.parametrize("raw,expected", [("1", True), (" YES ", True), ("on", True), ("0", False), ("nah", False)])
def test_is_enabled(raw, expected):
    assert is_enabled(raw) is expected


def test_numbers_are_clamped_and_fall_back(monkeypatch):
    monkeypatch.setenv("RM_INT", "900")
    monkeypatch.setenv("RM_FLOAT", "abc")
    monkeypatch.delenv("RM_BOOL", raising=False)

    assert env_int("RM_INT", 5, 1, 10) == 10
    assert env_float("RM_FLOAT", 0.5, 0.0, 1.0) == 0.5
    assert env_bool("RM_BOOL", True) is True


def test_load_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# oracle settings\n"
        "RM_ORACLE_MODEL='deepseek-chat'\n"
        "export RM_TICK=0.25\n"
        "RM_KEEP=from-file\n"
        "not a pair\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("RM_KEEP", "from-shell")
    for key in ("RM_ORACLE_MODEL", "RM_TICK"):
        monkeypatch.delenv(key, raising=False)

    assert load_env_file(env_file) == 2
    assert os.environ["RM_ORACLE_MODEL"] == "deepseek-chat"
    assert os.environ["RM_TICK"] == "0.25"
    assert os.environ["RM_KEEP"] == "from-shell"

    for key in ("RM_ORACLE_MODEL", "RM_TICK"):
        os.environ.pop(key, None)


def test_missing_env_file_is_ignored(tmp_path):
    assert load_env_file(tmp_path / "absent.env") == 0
