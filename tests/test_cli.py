"""
Tests for the command line interface.
"""
import json
import os

import pytest

from incident_hub import __version__
from incident_hub.cli import create_parser, main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("INCIDENT_HUB_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


def _run(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_version(capsys):
    assert _run(["version"]) == 0
    assert f"incident-hub version {__version__}" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert _run([]) == 1
    assert "usage: incident-hub" in capsys.readouterr().out


def test_config_show_masks_secrets(capsys, monkeypatch):
    monkeypatch.setenv("INCIDENT_HUB_CHAT_TOKEN", "xoxb-secret")
    monkeypatch.setenv("INCIDENT_HUB_PORT", "9001")

    assert _run(["config"]) == 0

    shown = json.loads(capsys.readouterr().out)
    assert shown["chat_token"] == "***"
    assert shown["port"] == 9001
    assert shown["bot_token"] == ""


def test_config_validate(capsys, tmp_path):
    config_file = tmp_path / "hub.yaml"
    config_file.write_text("retry:\n  multiplier: 0.5\n")

    assert _run(["-c", str(config_file), "config", "validate"]) == 1
    assert "retry_multiplier must be at least 1.0" in capsys.readouterr().out

    config_file.write_text("retry:\n  multiplier: 3\n")
    assert _run(["-c", str(config_file), "config", "validate"]) == 0


def test_serve_options():
    args = create_parser().parse_args(["--debug", "serve", "--port", "9999"])

    assert args.debug is True
    assert args.port == 9999
