import json

from websets.presentation.cli import main as cli_main


def test_parse_rows_and_columns():
    assert cli_main.parse_rows("0-2, 5,,7", 10) == [0, 1, 2, 5, 7]
    assert cli_main.parse_rows(None, 3) == [0, 1, 2]
    assert cli_main.parse_column("Email:email") == {"name": "Email", "type": "email"}
    assert cli_main.parse_column("Company") == {"name": "Company", "type": "text"}


def test_cli_parser_flags():
    parser = cli_main.create_parser()
    args = parser.parse_args(["--db-url", "sqlite://", "enrich", "ws1", "email", "--rows", "0-4", "--user-id", "u1"])
    assert args.command == "enrich"
    assert args.rows == "0-4"
    assert args.user_id == "u1"
    assert args.db_url == "sqlite://"


def test_cli_create_import_and_versions(tmp_path, db_url, capsys):
    assert cli_main.run_cli(["--db-url", db_url, "create", "Leads", "--column", "Company", "--column", "Email:email"]) == 0
    webset = json.loads(capsys.readouterr().out)
    assert [c["type"] for c in webset["columns"]] == ["text", "email"]

    source = tmp_path / "leads.csv"
    source.write_text("Company,Email\nAcme,\nGlobex,sales@globex.example\n", encoding="utf-8")
    assert cli_main.run_cli(["--db-url", db_url, "import-csv", str(source), "--webset-id", webset["id"]]) == 0
    assert "imported 2 rows as v2" in capsys.readouterr().out

    assert cli_main.run_cli(["--db-url", db_url, "versions", webset["id"]]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("v2\tcli\tImported 2 rows")
    assert lines[1].startswith("v1\t")

    assert cli_main.run_cli(["--db-url", db_url, "restore", webset["id"], "1"]) == 0
    assert "restored as v3" in capsys.readouterr().out

    assert cli_main.run_cli(["--db-url", db_url, "verify", webset["id"]]) == 0


def test_cli_import_creates_webset_from_header(tmp_path, db_url, capsys):
    source = tmp_path / "companies.csv"
    source.write_text("Name,Site\nAcme,https://acme.example\n", encoding="utf-8")

    assert cli_main.run_cli(["--db-url", db_url, "import-csv", str(source)]) == 0
    out = capsys.readouterr().out
    assert "imported 1 rows as v2" in out


def test_cli_enrich_and_export(monkeypatch, engine, leads, llm_provider, capsys):
    monkeypatch.setattr(cli_main, "WebsetsEngine", lambda db_url=None: engine)

    assert cli_main.run_cli(["enrich", leads.id, "email", "--rows", "0-1"]) == 0
    out = capsys.readouterr().out
    assert "completed 2/2 rows, 0 failed" in out

    assert cli_main.run_cli(["export", leads.id, "-f", "json"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["status"] == "completed"
    assert status["export_url"].endswith(".json")


def test_cli_verify_reports_problems(monkeypatch, engine, leads, capsys):
    engine.webset_store.write_cell(leads.id, row=0, column="email", value="nope")
    monkeypatch.setattr(cli_main, "WebsetsEngine", lambda db_url=None: engine)

    assert cli_main.run_cli(["verify", leads.id]) == 2
    report = json.loads(capsys.readouterr().out)
    assert report["is_valid"] is False


def test_cli_errors_exit_nonzero(db_url, capsys):
    assert cli_main.run_cli(["--db-url", db_url, "job", "missing"]) == 1
    assert "enrichment job not found" in capsys.readouterr().err
    assert cli_main.run_cli(["--version"]) == 0
