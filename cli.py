#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

from analytics.states import load_state_taxonomy
from exceptions import InvalidRequestException, ReleaseHealthException
from storage import create_store, detect_db_type

REPO_ROOT = Path(__file__).resolve().parent
DEFAULT_DB_URL = "sqlite+aiosqlite:///./release_health.db"
ANALYZERS = ("scope", "burnup", "aging", "throughput", "dependencies", "flow")


def _load_dotenv(path: Path) -> int:
    """
    Load a .env file into process environment (without overriding existing vars).

    Keeps dependencies minimal (avoids python-dotenv).
    """
    if not path.exists():
        return 0
    loaded = 0
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key or key in os.environ:
            continue
        if (len(value) >= 2) and ((value[0] == value[-1]) and value[0] in {"'", '"'}):
            value = value[1:-1]
        os.environ[key] = value
        loaded += 1
    return loaded


def _default_db() -> str:
    return os.getenv("DATABASE_URL") or os.getenv("DB_CONN_STRING") or DEFAULT_DB_URL


def _resolve_db_type(db_url: str, db_type: Optional[str]) -> str:
    if db_type:
        resolved = db_type.lower()
    else:
        try:
            resolved = detect_db_type(db_url)
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc

    if resolved not in {"postgres", "sqlite"}:
        raise SystemExit("DB_TYPE must be 'postgres' or 'sqlite'")
    return resolved


async def _run_with_store(db_url: str, db_type: str, handler) -> Any:
    store = create_store(db_url, db_type)
    async with store:
        return await handler(store)


def _print_model(model) -> None:
    print(model.model_dump_json(by_alias=True, indent=2))


def _read_batch(path: Path) -> dict:
    """
    Read an ingestion file: either the POST body object or a bare list of rows.
    """
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Cannot read {path}: {exc}") from exc
    if isinstance(payload, list):
        return {"rows": payload}
    if not isinstance(payload, dict):
        raise SystemExit(f"{path} must contain a JSON object or array")
    return payload


def _cmd_init_db(ns: argparse.Namespace) -> int:
    db_type = _resolve_db_type(ns.db, ns.db_type)

    async def _handler(store):
        await store.ensure_tables()
        logging.info("Tables ready on %s backend", db_type)

    asyncio.run(_run_with_store(ns.db, db_type, _handler))
    return 0


def _cmd_ingest(ns: argparse.Namespace) -> int:
    from pydantic import ValidationError

    from release_health_ops.api.models.filters import SyncRequest
    from release_health_ops.api.services.ingest import ingest_batch

    db_type = _resolve_db_type(ns.db, ns.db_type)
    payload = _read_batch(Path(ns.file))
    if ns.source:
        payload["source"] = ns.source
    if ns.synced_at:
        payload["syncedAtUtc"] = ns.synced_at
    try:
        request = SyncRequest.model_validate(payload)
    except ValidationError as exc:
        raise SystemExit(f"Invalid batch file {ns.file}: {exc}") from exc

    async def _handler(store):
        await store.ensure_tables()
        return await ingest_batch(store, request)

    _print_model(asyncio.run(_run_with_store(ns.db, db_type, _handler)))
    return 0


def _cmd_report(ns: argparse.Namespace) -> int:
    from release_health_ops.api.services import release as release_service

    db_type = _resolve_db_type(ns.db, ns.db_type)
    taxonomy = load_state_taxonomy(ns.taxonomy)

    async def _handler(store):
        if ns.analyzer == "scope":
            return await release_service.build_scope_response(
                store, release=ns.release, taxonomy=taxonomy
            )
        if ns.analyzer == "burnup":
            return await release_service.build_burnup_response(
                store, release=ns.release, bucket=ns.bucket, taxonomy=taxonomy
            )
        if ns.analyzer == "aging":
            return await release_service.build_aging_response(
                store, release=ns.release, stale_days=ns.stale_days, taxonomy=taxonomy
            )
        if ns.analyzer == "throughput":
            return await release_service.build_throughput_response(
                store, release=ns.release, taxonomy=taxonomy
            )
        if ns.analyzer == "dependencies":
            return await release_service.build_dependency_response(
                store, release=ns.release, taxonomy=taxonomy
            )
        if ns.analyzer == "flow":
            return await release_service.build_flow_response(
                store, release=ns.release, window_days=ns.window_days, taxonomy=taxonomy
            )
        raise InvalidRequestException(f"Unknown analyzer: {ns.analyzer}")

    _print_model(asyncio.run(_run_with_store(ns.db, db_type, _handler)))
    return 0


def _cmd_releases(ns: argparse.Namespace) -> int:
    from release_health_ops.api.services.work_items import build_releases_response

    db_type = _resolve_db_type(ns.db, ns.db_type)
    _print_model(asyncio.run(_run_with_store(ns.db, db_type, build_releases_response)))
    return 0


def _cmd_serve(ns: argparse.Namespace) -> int:
    import uvicorn

    os.environ["DATABASE_URL"] = ns.db
    uvicorn.run(
        "release_health_ops.api.main:app",
        host=ns.host,
        port=ns.port,
        log_level=str(ns.log_level).lower(),
    )
    return 0


def _cmd_fixtures_generate(ns: argparse.Namespace) -> int:
    from fixtures.generator import SyntheticDataGenerator

    generator = SyntheticDataGenerator(
        release=ns.release, seed=ns.seed, item_count=ns.items
    )
    db_type = _resolve_db_type(ns.db, ns.db_type)

    async def _handler(store):
        await store.ensure_tables()
        batches = generator.generate_runs(runs=ns.runs, interval_days=ns.interval_days)
        for run_at, rows in batches:
            await store.append_run("synthetic", rows, run_at=run_at)
        logging.info(f"Generated synthetic data for release {ns.release}")
        logging.info(f"- Runs: {len(batches)}")
        logging.info(f"- Items in last run: {len(batches[-1][1]) if batches else 0}")

    asyncio.run(_run_with_store(ns.db, db_type, _handler))
    return 0


def _add_db_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        default=_default_db(),
        help="Database connection string (defaults to DATABASE_URL / DB_CONN_STRING).",
    )
    parser.add_argument(
        "--db-type",
        choices=["postgres", "sqlite"],
        help="Optional DB backend override.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-health-ops",
        description="Ingest work-item snapshots and report release health.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING). Defaults to env LOG_LEVEL or INFO.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # ---- init-db ----
    init_db = sub.add_parser("init-db", help="Create tables if they do not exist.")
    _add_db_args(init_db)
    init_db.set_defaults(func=_cmd_init_db)

    # ---- ingest ----
    ingest = sub.add_parser("ingest", help="Append one batch file as a snapshot run.")
    _add_db_args(ingest)
    ingest.add_argument("--file", required=True, help="JSON batch (object or rows array).")
    ingest.add_argument("--source", help="Override the batch source label.")
    ingest.add_argument("--synced-at", help="Override the run time (ISO-8601, UTC).")
    ingest.set_defaults(func=_cmd_ingest)

    # ---- report ----
    report = sub.add_parser("report", help="Print one release analytics report as JSON.")
    report.add_argument("analyzer", choices=ANALYZERS)
    report.add_argument("--release", required=True, help="Release name (exact match).")
    _add_db_args(report)
    report.add_argument("--bucket", help="Burnup bucket: hour, day or week.")
    report.add_argument("--stale-days", type=int, help="Aging stale threshold in days.")
    report.add_argument("--window-days", type=int, help="Flow lookback window in days.")
    report.add_argument(
        "--taxonomy",
        help="State taxonomy YAML (defaults to STATE_TAXONOMY_PATH or config/).",
    )
    report.set_defaults(func=_cmd_report)

    # ---- releases ----
    releases = sub.add_parser("releases", help="List known releases.")
    _add_db_args(releases)
    releases.set_defaults(func=_cmd_releases)

    # ---- serve ----
    serve = sub.add_parser("serve", help="Run the HTTP API.")
    _add_db_args(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=_cmd_serve)

    # ---- fixtures ----
    fix = sub.add_parser("fixtures", help="Data simulation and fixtures.")
    fix_sub = fix.add_subparsers(dest="fixtures_command", required=True)
    fix_gen = fix_sub.add_parser("generate", help="Generate synthetic snapshot runs.")
    _add_db_args(fix_gen)
    fix_gen.add_argument("--release", default="2026.1", help="Release name.")
    fix_gen.add_argument("--seed", type=int, help="Random seed (defaults to release).")
    fix_gen.add_argument("--items", type=int, default=30, help="Initial scope size.")
    fix_gen.add_argument("--runs", type=int, default=4, help="Number of snapshot runs.")
    fix_gen.add_argument(
        "--interval-days", type=int, default=7, help="Days between runs."
    )
    fix_gen.set_defaults(func=_cmd_fixtures_generate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if os.getenv("DISABLE_DOTENV", "").strip().lower() not in {
        "1",
        "true",
        "yes",
        "on",
    }:
        _load_dotenv(REPO_ROOT / ".env")

    parser = build_parser()
    ns = parser.parse_args(argv)

    level_name = str(getattr(ns, "log_level", "") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    try:
        return int(func(ns))
    except ReleaseHealthException as exc:
        logging.error("%s: %s", exc.code, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
