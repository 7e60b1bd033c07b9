"""Tests for the command-line interface."""

import json
from pathlib import Path

from fieldlink import cli


def _write_rules(path: Path) -> None:
    path.write_text(
        json.dumps(
            {
                "alarms": [
                    {
                        "id": "A1",
                        "deviceId": "D1",
                        "rules": [
                            {"parameter": "DCV", "upper": 100},
                            {"parameter": "ACI", "lower": 0},
                        ],
                    },
                    {"id": "A2", "deviceId": "D1", "active": False},
                    {"id": "A3", "deviceId": "D2"},
                ]
            }
        ),
        encoding="utf-8",
    )


def test_show_config_masks_password(tmp_path: Path, capsys):
    config_path = tmp_path / "fieldlink.cfg"
    config_path.write_text("[broker]\nusername = hub\npassword = secret\n")

    assert cli.main(["-c", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {config_path}" in output
    assert "[broker]" in output
    assert "username = hub" in output
    assert "secret" not in output


def test_check_rules_summarises_devices(tmp_path: Path, capsys):
    rules_path = tmp_path / "rules.json"
    _write_rules(rules_path)

    exit_code = cli.main(
        ["-c", str(tmp_path / "fieldlink.cfg"), "check-rules", str(rules_path)]
    )

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "3 alarm(s)" in output
    assert "D1: 2 alarm(s), 1 active, 2 threshold rule(s)" in output
    assert "D2: 1 alarm(s), 1 active, 0 threshold rule(s)" in output


def test_check_rules_uses_configured_path(tmp_path: Path, capsys):
    rules_path = tmp_path / "rules.json"
    _write_rules(rules_path)
    config_path = tmp_path / "fieldlink.cfg"
    config_path.write_text(f"[alarms]\nrules_path = {rules_path}\n")

    assert cli.main(["-c", str(config_path), "check-rules"]) == 0
    assert "3 alarm(s)" in capsys.readouterr().out


def test_check_rules_reports_invalid_file(tmp_path: Path, capsys):
    rules_path = tmp_path / "rules.json"
    rules_path.write_text('{"alarms": [{"id": "A1"}]}', encoding="utf-8")

    exit_code = cli.main(
        ["-c", str(tmp_path / "fieldlink.cfg"), "check-rules", str(rules_path)]
    )

    assert exit_code == 1
    assert "missing 'deviceId'" in capsys.readouterr().out


def test_check_rules_without_path(tmp_path: Path, capsys):
    exit_code = cli.main(["-c", str(tmp_path / "fieldlink.cfg"), "check-rules"])

    assert exit_code == 1
    assert "rules_path is not set" in capsys.readouterr().out


def test_start_runs_app(tmp_path: Path, monkeypatch):
    started = []
    monkeypatch.setattr(cli.FieldlinkApp, "start", classmethod(lambda cls, cfg: started.append(cfg)))

    assert cli.main(["-c", str(tmp_path / "fieldlink.cfg"), "start"]) == 0
    assert started[0].path == tmp_path / "fieldlink.cfg"
