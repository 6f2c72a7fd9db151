"""
CLI entry point

Operates on the same database as the API; enrichment and export jobs run
inline and the command returns once they reach a terminal state.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

from websets.application.engine import WebsetsEngine
from websets.domain.errors import WebsetError
from websets.utils.logging_config import Logger

# Load local .env automatically for CLI workflows using provider keys.
load_dotenv(find_dotenv(usecwd=True), override=False)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="websets",
        description="Websets - versioned datasets with LLM column enrichment",
    )
    parser.add_argument("--version", "-V", action="store_true", help="print version and exit")
    parser.add_argument("--db-url", default=None, help="SQLAlchemy URL (default: WEBSETS_DB_URL)")

    subparsers = parser.add_subparsers(dest="command", help="available commands")

    seed = subparsers.add_parser("seed-providers", help="upsert providers from a YAML file")
    seed.add_argument("path", help="YAML file with a 'providers' list")

    create = subparsers.add_parser("create", help="create an empty webset")
    create.add_argument("name")
    create.add_argument("--description", default="")
    create.add_argument(
        "--column",
        action="append",
        dest="columns",
        default=[],
        help="column as name[:type], repeatable",
    )

    imp = subparsers.add_parser("import-csv", help="append CSV rows, creating the webset if needed")
    imp.add_argument("path")
    imp.add_argument("--webset-id", default=None)
    imp.add_argument("--name", default=None, help="name for a new webset (default: file stem)")

    enrich = subparsers.add_parser("enrich", help="enrich one column for a set of rows")
    enrich.add_argument("webset_id")
    enrich.add_argument("column")
    enrich.add_argument("--rows", default=None, help="e.g. 0-4,7 (default: all rows)")
    enrich.add_argument("--prompt", default=None)
    enrich.add_argument("--llm-provider", default=None)
    enrich.add_argument("--search-provider", default=None)
    enrich.add_argument("--user-id", default=None)

    job = subparsers.add_parser("job", help="show an enrichment job")
    job.add_argument("job_id")

    versions = subparsers.add_parser("versions", help="list versions of a webset")
    versions.add_argument("webset_id")

    restore = subparsers.add_parser("restore", help="restore a webset to an earlier version")
    restore.add_argument("webset_id")
    restore.add_argument("version", help="version number or id")

    export = subparsers.add_parser("export", help="export the current version")
    export.add_argument("webset_id")
    export.add_argument("--format", "-f", default="csv")
    export.add_argument("--file-name", default=None)

    verify = subparsers.add_parser("verify", help="check a webset for integrity problems")
    verify.add_argument("webset_id")

    usage = subparsers.add_parser("usage", help="provider usage summary")
    usage.add_argument("--days", type=int, default=7)

    return parser


def parse_rows(value: Optional[str], row_count: int) -> List[int]:
    """Expand ``"0-4,7"`` into row indices; ``None`` means every row."""
    if not value:
        return list(range(row_count))
    rows: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            rows.extend(range(int(lo), int(hi) + 1))
        else:
            rows.append(int(part))
    return rows


def parse_column(raw: str) -> Dict[str, Any]:
    name, _, col_type = raw.partition(":")
    return {"name": name.strip(), "type": (col_type or "text").strip()}


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def run_cli(args: Optional[List[str]] = None) -> int:
    """
    Returns:
        exit code
    """
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.version:
        print("websets v0.1.0")
        return 0

    if not parsed.command:
        parser.print_help()
        return 0

    Logger.init()
    engine = WebsetsEngine(parsed.db_url)
    try:
        if parsed.command == "seed-providers":
            _print(engine.provider_store.seed_from_yaml(parsed.path))

        elif parsed.command == "create":
            webset = engine.webset_store.create_webset(
                name=parsed.name,
                description=parsed.description,
                columns=[parse_column(c) for c in parsed.columns],
                created_by="cli",
            )
            _print(webset.to_dict())

        elif parsed.command == "import-csv":
            return _run_import(engine, parsed)

        elif parsed.command == "enrich":
            return asyncio.run(_run_enrich(engine, parsed))

        elif parsed.command == "job":
            _print(engine.orchestrator.get_status(parsed.job_id).to_dict())

        elif parsed.command == "versions":
            for v in engine.webset_store.list_versions(parsed.webset_id):
                print(f"v{v.version}\t{v.changed_by}\t{v.change_description or ''}")

        elif parsed.command == "restore":
            v = engine.webset_store.restore(parsed.webset_id, parsed.version, changed_by="cli")
            print(f"restored as v{v.version}: {v.change_description}")

        elif parsed.command == "export":
            return asyncio.run(_run_export(engine, parsed))

        elif parsed.command == "verify":
            report = engine.integrity.verify_webset(parsed.webset_id)
            _print(report.to_dict())
            return 0 if report.is_valid else 2

        elif parsed.command == "usage":
            _print(engine.usage_store.summarize(days=parsed.days))

        return 0

    except (WebsetError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()
        Logger.close()


def _run_import(engine: WebsetsEngine, parsed: argparse.Namespace) -> int:
    path = Path(parsed.path)
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        header = list(reader.fieldnames or [])
        records = [dict(r) for r in reader]

    webset_id = parsed.webset_id
    if webset_id is None:
        webset = engine.webset_store.create_webset(
            name=parsed.name or path.stem,
            columns=[{"name": h} for h in header],
            created_by="cli",
        )
        webset_id = webset.id

    version = engine.webset_store.append_rows(webset_id, records, changed_by="cli")
    print(f"webset {webset_id}: imported {len(records)} rows as v{version.version}")
    return 0


async def _run_enrich(engine: WebsetsEngine, parsed: argparse.Namespace) -> int:
    try:
        webset = engine.webset_store.require_webset(parsed.webset_id)
        job_id = await engine.orchestrator.submit(
            webset.id,
            parsed.column,
            parse_rows(parsed.rows, webset.row_count),
            prompt=parsed.prompt,
            llm_provider_id=parsed.llm_provider,
            search_provider_id=parsed.search_provider,
            user_id=parsed.user_id,
        )
        job = await engine.orchestrator.join(job_id)
    finally:
        await engine.gateway.close()

    print(
        f"job {job.id}: {job.status.value} {job.completed_rows}/{job.total_rows} rows, "
        f"{job.failed_rows} failed"
    )
    for failure in job.failures:
        print(f"  row {failure.row}: {failure.kind.value} {failure.message}")
    return 0 if job.status.value == "completed" else 1


async def _run_export(engine: WebsetsEngine, parsed: argparse.Namespace) -> int:
    export_id = await engine.exporter.start_export(parsed.webset_id, parsed.format, parsed.file_name)
    export = await engine.exporter.join(export_id)
    _print(export.to_status())
    return 0 if export.status.value == "completed" else 1


if __name__ == "__main__":
    sys.exit(run_cli())
