"""Tests for the abraxas CLI."""

import re
from uuid import uuid4

import pytest
from typer.testing import CliRunner

from abraxas.cli.main import app
from abraxas.config import Settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    for name in Settings.model_fields:
        monkeypatch.delenv(f"ABRAXAS_{name.upper()}", raising=False)


def test_gen_key_prints_64_hex_chars():
    result = runner.invoke(app, ["gen-key"])
    assert result.exit_code == 0
    assert re.fullmatch(r"[0-9a-f]{64}", result.stdout.strip())


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "Abraxas" in result.stdout


def test_config_show_masks_token(monkeypatch):
    monkeypatch.setenv("ABRAXAS_SPRITES_TOKEN", "super-secret")
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "super-secret" not in result.stdout
    assert "sprites_token: ***REDACTED***" in result.stdout
    assert "webhook_base_url: http://localhost:8000" in result.stdout


def test_config_show_marks_unset_values():
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "sprites_token: (not set)" in result.stdout
    assert "database_url: (not set)" in result.stdout


def test_errors_lists_every_code():
    result = runner.invoke(app, ["errors"])
    assert result.exit_code == 0
    for code in ("E-1001", "E-2001", "E-3001", "E-4001", "E-5001"):
        assert code in result.stdout


def test_errors_filtered_by_category():
    result = runner.invoke(app, ["errors", "--category", "sandbox"])
    assert result.exit_code == 0
    assert "E-3001" in result.stdout
    assert "E-3002" in result.stdout
    assert "E-2001" not in result.stdout


def test_errors_unknown_category_fails():
    result = runner.invoke(app, ["errors", "--category", "billing"])
    assert result.exit_code == 1
    assert "Unknown category" in result.stdout


def test_missing_config_file_fails(tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "none.yaml"), "config", "show"])
    assert result.exit_code == 1


def test_sandbox_list_without_token_fails():
    result = runner.invoke(app, ["sandbox", "list"])
    assert result.exit_code == 1
    assert "E-3001" in result.stdout


def test_user_add_and_duplicate():
    email = f"{uuid4().hex[:8]}@example.com"
    created = runner.invoke(app, ["user", "add", email, "--name", "Ada"])
    assert created.exit_code == 0
    assert "User created" in created.stdout

    duplicate = runner.invoke(app, ["user", "add", email])
    assert duplicate.exit_code == 1

    listed = runner.invoke(app, ["user", "list"])
    assert listed.exit_code == 0
    assert "Users" in listed.stdout
