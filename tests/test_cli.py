import json

import pytest

from regtruth import cli
from regtruth.context import build_context
from regtruth.storage import count_discovered_items, init_db, list_sources

SOURCES_YAML = """
sources:
  - id: tax-authority
    name: Tax Authority
    domain: gov.example
    authority_level: GUIDANCE
    priority_tier: HIGH
    sitemap_url: https://gov.example/sitemap.xml
"""


@pytest.fixture
def env(tmp_path, monkeypatch, fetcher):
    monkeypatch.delenv("RT_CONFIG", raising=False)
    monkeypatch.delenv("RT_BACKFILL_ENABLED", raising=False)
    monkeypatch.setenv("RT_DATA_DIR", str(tmp_path))
    monkeypatch.setattr(
        cli,
        "build_context",
        lambda config, conn, logger, **kwargs: build_context(config, conn, logger, fetcher=fetcher, extractors=[]),
    )
    sources = tmp_path / "sources.yml"
    sources.write_text(SOURCES_YAML, encoding="utf-8")
    return sources


def _json_lines(out):
    return [json.loads(line) for line in out.splitlines() if line.startswith(("{", "["))]


def test_sources_import(env, tmp_path):
    assert cli.main(["sources", "import", str(env)]) == 0

    conn = init_db(str(tmp_path / "state.sqlite3"))
    try:
        assert [source.id for source in list_sources(conn)] == ["tax-authority"]
    finally:
        conn.close()


def test_sources_import_missing_file(env, tmp_path):
    assert cli.main(["sources", "import", str(tmp_path / "absent.yml")]) == 1


def test_backfill_requires_kill_switch(env, tmp_path, capsys):
    cli.main(["sources", "import", str(env)])
    capsys.readouterr()

    code = cli.main(["backfill", "run", "--source", "tax-authority"])

    assert code == 2
    assert "RT_BACKFILL_ENABLED=true" in capsys.readouterr().err
    conn = init_db(str(tmp_path / "state.sqlite3"))
    try:
        assert conn.execute("SELECT COUNT(*) FROM backfill_runs").fetchone()[0] == 0
    finally:
        conn.close()


def test_backfill_dry_run_is_allowed_without_kill_switch(env, tmp_path, fetcher, capsys):
    cli.main(["sources", "import", str(env)])
    fetcher.add(
        "https://gov.example/sitemap.xml",
        '<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<url><loc>https://gov.example/a</loc></url><url><loc>https://gov.example/b</loc></url></urlset>",
        "application/xml",
    )
    capsys.readouterr()

    code = cli.main(["backfill", "run", "--source", "tax-authority", "--dry-run", "--delay-ms", "0"])

    assert code == 0
    run = _json_lines(capsys.readouterr().out)[-1]
    assert run["dry_run"] is True
    assert run["status"] == "COMPLETED"
    assert run["would_queue_count"] == 2
    conn = init_db(str(tmp_path / "state.sqlite3"))
    try:
        assert count_discovered_items(conn) == 0
    finally:
        conn.close()


def test_backfill_rejects_bad_dates(env):
    with pytest.raises(SystemExit):
        cli.main(["backfill", "run", "--source", "tax-authority", "--dry-run", "--date-from", "01/02/2024"])


def test_backfill_status_unknown_run(env):
    assert cli.main(["backfill", "status", "missing"]) == 1


def test_queues_command_prints_contracts(env, capsys):
    assert cli.main(["queues"]) == 0
    output = _json_lines(capsys.readouterr().out)[-1]
    assert [contract["name"] for contract in output["contracts"]][:2] == ["fetch", "ocr"]


def test_health_command_exit_code_follows_gates(env, capsys):
    assert cli.main(["health"]) == 0
    snapshot = _json_lines(capsys.readouterr().out)[-1]
    assert snapshot["gates"]["ok"] is True


def test_rules_decide_unknown_rule(env, capsys):
    assert cli.main(["rules", "decide", "missing", "approve", "--reviewer", "analyst"]) == 1
    assert "error:" in capsys.readouterr().err
