"""Tests for CLI commands using Typer's CliRunner with a temporary partners file."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from persona_gate import cli
from persona_gate.config import Config, PartnersConfig, load_config
from persona_gate.claims import decode_token

from conftest import SECRET

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_config(tmp_path, monkeypatch):
    """Point the CLI at a temp partners file instead of ~/.persona-gate."""
    monkeypatch.setenv("CLI_ACME_SECRET", SECRET.decode())
    partners_file = tmp_path / "partners.yaml"
    partners_file.write_text(
        "partners:\n"
        "  - partner_id: acme\n"
        "    shared_secret: ${CLI_ACME_SECRET}\n"
        "    granted_scopes: [\"experiences:read\"]\n"
    )
    config = Config(partners=PartnersConfig(path=str(partners_file)))
    monkeypatch.setattr(cli, "_config", config)
    return config


def test_issue_and_verify_embed_token():
    issued = runner.invoke(cli.app, ["issue-token", "acme", "--subject", "user-1", "--meta", "room=lobby"])
    assert issued.exit_code == 0, issued.output
    token = issued.output.strip()
    assert decode_token(token).claims.meta == {"room": "lobby"}

    verified = runner.invoke(cli.app, ["verify-token", token, "--flow", "embed"])
    assert verified.exit_code == 0, verified.output
    assert "valid" in verified.output
    assert '"subject": "user-1"' in verified.output


def test_issue_api_token_requires_scope():
    result = runner.invoke(cli.app, ["issue-token", "acme", "--subject", "svc", "--flow", "api"])
    assert result.exit_code == 1


def test_issue_and_verify_api_token():
    issued = runner.invoke(
        cli.app, ["issue-token", "acme", "--subject", "svc", "--flow", "api", "--scope", "experiences:read"]
    )
    assert issued.exit_code == 0, issued.output
    result = runner.invoke(cli.app, ["verify-token", issued.output.strip(), "--flow", "api"])
    assert result.exit_code == 0, result.output


def test_issue_unknown_partner():
    result = runner.invoke(cli.app, ["issue-token", "initech", "--subject", "u"])
    assert result.exit_code == 1
    assert "Unknown partner" in result.output


def test_verify_rejects_wrong_flow():
    issued = runner.invoke(cli.app, ["issue-token", "acme", "--subject", "u"])
    result = runner.invoke(cli.app, ["verify-token", issued.output.strip(), "--flow", "api"])
    assert result.exit_code == 1
    assert "reason=" in result.output


def test_bad_meta_pair():
    result = runner.invoke(cli.app, ["issue-token", "acme", "--subject", "u", "--meta", "novalue"])
    assert result.exit_code == 1


def test_partners_listing_hides_secret():
    result = runner.invoke(cli.app, ["partners"])
    assert result.exit_code == 0
    assert "acme" in result.output
    assert SECRET.decode() not in result.output


def test_config_show_and_get():
    shown = runner.invoke(cli.app, ["config", "show"])
    assert shown.exit_code == 0
    assert json.loads(shown.output)["auth"]["max_token_age_seconds"] == 86400

    got = runner.invoke(cli.app, ["config", "get", "auth.clock_skew_seconds"])
    assert got.exit_code == 0
    assert got.output.strip() == "0"


def test_config_get_unknown_key():
    assert runner.invoke(cli.app, ["config", "get", "auth.nope"]).exit_code == 1


def test_config_set_writes_file(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    result = runner.invoke(cli.app, ["config", "set", "auth.clock_skew_seconds", "15"])
    assert result.exit_code == 0, result.output
    assert load_config(tmp_path / ".persona-gate" / "config.yaml").auth.clock_skew_seconds == 15

    got = runner.invoke(cli.app, ["config", "get", "auth.clock_skew_seconds"])
    assert got.output.strip() == "15"


def test_config_set_rejects_bad_value(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    result = runner.invoke(cli.app, ["config", "set", "auth.clock_skew_seconds", "soon"])
    assert result.exit_code == 1
    assert not (tmp_path / ".persona-gate" / "config.yaml").exists()


def test_config_set_unknown_key(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert runner.invoke(cli.app, ["config", "set", "auth.nope", "1"]).exit_code == 1
