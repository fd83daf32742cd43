from __future__ import annotations

import json

from typer.testing import CliRunner

from openbroadcast import cli, config

runner = CliRunner()


def _json_tail(output: str) -> dict:
    return json.loads(output[output.index("{") :])


def test_config_set_persists_values(monkeypatch, tmp_path):
    monkeypatch.setenv("OPENBROADCAST_BASE_DIR", str(tmp_path))
    monkeypatch.delenv("OPENBROADCAST_FANOUT_MODE", raising=False)
    monkeypatch.setattr(config, "settings", config.load_settings())
    config_path = tmp_path / "openbroadcast.toml"

    result = runner.invoke(
        cli.app,
        [
            "config",
            "--config-path",
            str(config_path),
            "--set",
            "messages_per_page=25",
            "--fanout-mode",
            "atomic",
        ],
    )

    assert result.exit_code == 0, result.output
    effective = _json_tail(result.output)
    assert effective["fanout_mode"] == "atomic"
    assert effective["messages_per_page"] == 25
    assert 'fanout_mode = "atomic"' in config_path.read_text(encoding="utf-8")


def test_config_rejects_unknown_key(monkeypatch, tmp_path):
    monkeypatch.setenv("OPENBROADCAST_BASE_DIR", str(tmp_path))
    result = runner.invoke(
        cli.app,
        ["config", "--config-path", str(tmp_path / "x.toml"), "--set", "colour=red"],
    )
    assert result.exit_code != 0


def test_config_rejects_invalid_fanout_mode(monkeypatch, tmp_path):
    monkeypatch.setenv("OPENBROADCAST_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(config, "settings", config.load_settings())
    result = runner.invoke(
        cli.app,
        ["config", "--config-path", str(tmp_path / "x.toml"), "--fanout-mode", "never"],
    )
    assert result.exit_code == 1


def test_reconcile_command_reports_counts():
    result = runner.invoke(cli.app, ["reconcile"])
    assert result.exit_code == 0, result.output
    assert "Reconcile complete: 0 messages delivered for 0 invites" in result.output
