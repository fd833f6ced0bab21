from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from kustoprobe.cli import main


def test_cli_help() -> None:
    runner = CliRunner()
    res = runner.invoke(main, ["--help"])
    assert res.exit_code == 0
    assert "kustoprobe" in res.output
    for cmd in ("run", "ingest", "query"):
        assert cmd in res.output


def test_cli_run_json_report(fake_cluster, cluster_env: Path) -> None:
    runner = CliRunner()
    res = runner.invoke(main, ["run", "--visibility-timeout", "0", "--rows", "3", "--json"])
    assert res.exit_code == 0, res.output
    body = json.loads(res.stdout.strip().splitlines()[-1])
    assert body["ok"] is True
    assert body["table"] == "ravpateTable"
    assert body["ingest"]["success"] is True
    assert len(body["rows"]) == 1
    assert body["rows"][0]["Timestamp"] == body["record"]["Timestamp"].replace("T", " ").replace("Z", "+00:00")
    assert fake_cluster.query_clients[0].queries[0][1] == "ravpateTable | order by Timestamp desc | take 3"


def test_cli_run_ingest_failure_exits_nonzero(fake_cluster, cluster_env: Path) -> None:
    fake_cluster.terminal = "failure"
    runner = CliRunner()
    res = runner.invoke(main, ["run", "--table", "otherTable"])
    assert res.exit_code == 1
    assert "ingest" in str(res.exception)


def test_cli_ingest_no_wait(fake_cluster, cluster_env: Path) -> None:
    fake_cluster.terminal = None
    runner = CliRunner()
    res = runner.invoke(main, ["ingest", "--no-wait", "--first-name", "Py", "--no-flag"])
    assert res.exit_code == 0, res.output
    body = json.loads(res.stdout.strip().splitlines()[-1])
    assert body["status"] == "queued"
    assert body["record"]["FirstName"] == "Py"
    assert body["record"]["Isgood"] is False
    assert fake_cluster.rows[0][1:] == ("Py", "Isgood", False)


def test_cli_query_prints_rows(fake_cluster, cluster_env: Path) -> None:
    fake_cluster.add_row(datetime(2024, 1, 1, tzinfo=timezone.utc), "Sql", "Isgood", True)
    runner = CliRunner()
    res = runner.invoke(main, ["query", "--rows", "1"])
    assert res.exit_code == 0, res.output
    body = json.loads(res.stdout.strip().splitlines()[-1])
    assert body["FirstName"] == "Sql"
    assert fake_cluster.query_clients[0].closed == 1


def test_entrypoint_exit_codes(fake_cluster, cluster_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from kustoprobe.cli import entrypoint

    fake_cluster.reject_query = True
    monkeypatch.setattr("sys.argv", ["kustoprobe", "query"])
    with pytest.raises(SystemExit) as ei:
        entrypoint()
    assert ei.value.code == 1

    monkeypatch.setattr("sys.argv", ["kustoprobe", "--help"])
    with pytest.raises(SystemExit) as ei:
        entrypoint()
    assert ei.value.code == 0
