import json
import os

import pytest

import cli

RELEASE = "2026.1"


@pytest.fixture(autouse=True)
def _no_dotenv(monkeypatch):
    monkeypatch.setenv("DISABLE_DOTENV", "1")


def _write_batch(tmp_path, name, synced_at, rows):
    path = tmp_path / name
    path.write_text(
        json.dumps({"source": "tfs-weekly-sync", "syncedAtUtc": synced_at, "rows": rows}),
        encoding="utf-8",
    )
    return str(path)


def _row(work_item_id, state):
    return {"workItemId": work_item_id, "type": "Task", "state": state, "release": RELEASE}


def test_load_dotenv_does_not_override(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text(
        "# comment\nexport RH_TEST_A='one'\nRH_TEST_B=two\nnot a pair\n", encoding="utf-8"
    )
    monkeypatch.setenv("RH_TEST_B", "kept")
    monkeypatch.delenv("RH_TEST_A", raising=False)

    assert cli._load_dotenv(env) == 1
    assert cli._load_dotenv(tmp_path / "missing.env") == 0

    assert os.environ["RH_TEST_A"] == "one"
    assert os.environ["RH_TEST_B"] == "kept"
    monkeypatch.delenv("RH_TEST_A")


def test_resolve_db_type_rejects_unknown_backends():
    assert cli._resolve_db_type("sqlite:///x.db", None) == "sqlite"
    with pytest.raises(SystemExit):
        cli._resolve_db_type("clickhouse://localhost", None)


def test_parser_requires_release_for_reports():
    parser = cli.build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["report", "scope"])
    ns = parser.parse_args(["report", "aging", "--release", RELEASE, "--stale-days", "3"])
    assert ns.analyzer == "aging"
    assert ns.stale_days == 3


def test_ingest_then_report(tmp_path, capsys):
    db = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    first = _write_batch(
        tmp_path, "run1.json", "2026-03-02T09:00:00Z", [_row(1, "Active"), _row(2, "New")]
    )
    second = _write_batch(
        tmp_path, "run2.json", "2026-03-09T09:00:00Z", [_row(1, "Closed"), _row(3, "New")]
    )

    assert cli.main(["init-db", "--db", db]) == 0
    assert cli.main(["ingest", "--db", db, "--file", first]) == 0
    assert cli.main(["ingest", "--db", db, "--file", second]) == 0
    capsys.readouterr()

    assert cli.main(["report", "scope", "--db", db, "--release", RELEASE]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["baseline_scope"] == 2
    assert report["added_ids"] == [3]
    assert report["removed_ids"] == [2]
    assert report["predictability_pct"] == 50

    assert cli.main(["releases", "--db", db]) == 0
    releases = json.loads(capsys.readouterr().out)
    assert releases["releases"][0]["item_count"] == 3


def test_ingest_accepts_bare_row_list(tmp_path, capsys):
    db = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    path = tmp_path / "rows.json"
    path.write_text(json.dumps([_row(1, "Active")]), encoding="utf-8")

    code = cli.main(
        ["ingest", "--db", db, "--file", str(path), "--synced-at", "2026-03-02T09:00:00Z"]
    )

    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["count"] == 1
    assert out["runAt"].startswith("2026-03-02T09:00:00")


def test_report_errors_exit_non_zero(tmp_path):
    db = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    assert cli.main(["report", "scope", "--db", db, "--release", "  "]) == 1


def test_fixtures_generate(tmp_path, capsys):
    db = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"

    assert cli.main(
        ["fixtures", "generate", "--db", db, "--release", "R7", "--seed", "2", "--runs", "3"]
    ) == 0
    capsys.readouterr()

    assert cli.main(["report", "burnup", "--db", db, "--release", "R7"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert len(report["points"]) == 3
    assert report["insufficient_data"] is False
