"""Tests for the command line interface."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from timely.cli import build_parser, main
from timely.models import DaemonStatus


@pytest.fixture
def run(temp_dir, monkeypatch):
    for var in ("TIMELY_DATA_DIR", "TIMELY_HUB_URL", "TIMELY_SYNC_ENABLED"):
        monkeypatch.delenv(var, raising=False)

    def _run(*argv):
        return main(["--config-dir", temp_dir, *argv])

    return _run


def _json(capsys):
    return json.loads(capsys.readouterr().out)


def test_no_command_prints_help(run, capsys):
    assert run() == 1
    assert "usage: timely" in capsys.readouterr().out


def test_categorize_set_and_list(run, capsys):
    assert run("--json", "categorize", "set", "Obsidian", "work/writing") == 0
    added = _json(capsys)
    assert added["ok"] is True
    assert added["data"]["category"] == "work/writing"
    assert added["data"]["field"] == "app"

    assert run("--json", "categorize", "list") == 0
    rules = _json(capsys)["data"]
    assert rules[0]["pattern"] == "Obsidian"
    assert rules[0]["is_builtin"] is False
    assert any(rule["pattern"] == "Xcode" for rule in rules)


def test_categorize_set_url_domain(run, capsys):
    assert run("categorize", "set", "*.atlassian.net", "work", "--field", "url_domain") == 0
    assert "url_domain '*.atlassian.net' -> work" in capsys.readouterr().out


def test_categorize_delete(run, capsys):
    run("--json", "categorize", "set", "Obsidian", "work/writing")
    rule_id = _json(capsys)["data"]["rule_id"]

    assert run("--json", "categorize", "delete", str(rule_id)) == 0
    assert _json(capsys)["data"] == {"deleted": True, "rule_id": rule_id, "recategorized": 0}


def test_categorize_delete_unknown_rule(run, capsys):
    assert run("--json", "categorize", "delete", "99999") == 1
    error = json.loads(capsys.readouterr().err)
    assert error["ok"] is False
    assert error["error_code"] == "rule_not_found"


def test_devices_list_empty(run, capsys):
    assert run("devices") == 0
    assert "No devices registered" in capsys.readouterr().out


def test_sync_push_without_hub(run, capsys):
    assert run("sync", "push") == 1
    assert capsys.readouterr().err.startswith("Error:")


def test_daemon_status_not_running(run, capsys):
    assert run("--json", "daemon", "status") == 0
    assert _json(capsys)["data"] == {"running": False, "pid": None}


def test_hub_serve_uses_config_defaults(run, temp_dir):
    with patch("timely.cli.serve") as mock_serve:
        assert run("hub", "serve", "--port", "9000") == 0

    kwargs = mock_serve.call_args.kwargs
    assert kwargs["port"] == 9000
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["api_key"] is None


def test_parser_rejects_unknown_field():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["categorize", "set", "x", "work", "--field", "bogus"])


def test_daemon_start_reports_started_daemon(run, capsys):
    with patch("timely.cli.ActivityDaemon.start"), patch(
        "timely.cli.ActivityDaemon.wait_for_start",
        return_value=DaemonStatus(running=True, pid=4242),
    ):
        assert run("--json", "daemon", "start") == 0

    assert _json(capsys)["data"] == {"running": True, "pid": 4242}


def test_export_without_events_is_no_data(run, capsys):
    assert run("--json", "export", "--from", "7d") == 1
    assert json.loads(capsys.readouterr().err)["error_code"] == "no_data"


def test_export_rejects_bad_time(run, capsys):
    assert run("export", "--from", "someday") == 1
    assert "Cannot parse" in capsys.readouterr().err


def test_import_then_export_csv(run, capsys, temp_dir):
    path = Path(temp_dir) / "events.json"
    path.write_text(
        json.dumps([
            {"timestamp": "2024-01-15T14:00:00+00:00", "duration": 30.0,
             "app": "Code", "title": "main.py", "category_name": "work/coding"},
        ]),
        encoding="utf-8",
    )

    assert run("--json", "import", str(path)) == 0
    assert _json(capsys)["data"]["imported"] == 1

    exported = run(
        "export", "--format", "csv",
        "--from", "2024-01-15T00:00:00Z", "--to", "2024-01-16T00:00:00Z",
    )
    assert exported == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[1] == "2024-01-15T14:00:00+00:00,30.0,Code,main.py,,,work/coding,false"


def test_config_set_get_and_list(run, capsys, temp_dir):
    assert run("config", "set", "sync_interval", "600") == 0
    assert capsys.readouterr().out.strip() == "sync_interval = 600"

    assert run("--json", "config", "get", "sync_interval") == 0
    assert _json(capsys)["data"] == {"sync_interval": 600}

    assert run("--json", "config", "list") == 0
    assert _json(capsys)["data"]["sync_interval"] == 600

    saved = json.loads((Path(temp_dir) / "settings.json").read_text(encoding="utf-8"))
    assert saved["sync_interval"] == 600


def test_config_set_unknown_key(run, capsys):
    assert run("--json", "config", "set", "colour", "blue") == 1
    assert json.loads(capsys.readouterr().err)["error_code"] == "config_error"


def test_config_reset(run, capsys):
    run("config", "set", "sync_enabled", "yes")
    capsys.readouterr()

    assert run("--json", "config", "reset") == 0
    assert _json(capsys)["data"]["sync_enabled"] is False
