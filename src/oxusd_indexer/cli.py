from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Any

from oxusd_indexer.config import Settings
from oxusd_indexer.domain.entities import Entity, EntityType
from oxusd_indexer.domain.events import normalize_address, normalize_tx_hash
from oxusd_indexer.errors import EventDecodeError, ProjectorError
from oxusd_indexer.logging_utils import setup_logging
from oxusd_indexer.observability import configure_instrumentation, get_instrumentation
from oxusd_indexer.persistence.uow import UnitOfWorkFactory
from oxusd_indexer.services.event_source import load_events_jsonl
from oxusd_indexer.services.invariant_checker import InvariantChecker, InvariantReport
from oxusd_indexer.services.projection_service import BatchResult, ProjectionService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVARIANT_VIOLATION = 1
EXIT_FAILURE = 2


def _entity_type_arg(value: str) -> EntityType:
    for member in EntityType:
        if value in {member.value, member.name, member.name.lower()}:
            return member
    choices = ", ".join(member.value for member in EntityType)
    raise argparse.ArgumentTypeError(f"unknown entity type {value!r}; expected one of: {choices}")


def normalize_entity_key(entity_type: EntityType, key: str) -> str:
    # Stored ids use lowercased addresses and transaction hashes; param keys are stored verbatim.
    if entity_type is EntityType.PARAM:
        return key
    head, sep, tail = key.strip().partition("-")
    for normalize in (normalize_address, normalize_tx_hash):
        try:
            return normalize(head) + sep + tail
        except ValueError:
            continue
    return key


def _json_default(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    return str(value)


_SMALL_INT_FIELDS = frozenset(
    {"block_number", "log_index", "spread_bps", "decimals", "timestamp", "updated_at"}
)


def entity_payload(entity: Entity) -> dict[str, Any]:
    payload = dataclasses.asdict(entity)
    # uint256 amounts are rendered as decimal strings so JSON consumers keep precision.
    for key, value in payload.items():
        if isinstance(value, int) and not isinstance(value, bool) and key not in _SMALL_INT_FIELDS:
            payload[key] = str(value)
        elif isinstance(value, Enum):
            payload[key] = value.value
    return payload


def _report_payload(report: InvariantReport | None) -> dict[str, object] | None:
    if report is None:
        return None
    return {
        "ok": report.ok,
        "violations": [dataclasses.asdict(item) for item in report.violations],
        "warnings": [dataclasses.asdict(item) for item in report.warnings],
        "checked_counts": report.checked_counts,
    }


def _batch_payload(result: BatchResult) -> dict[str, object]:
    return {
        "batch_id": result.batch_id,
        "ok": result.ok,
        "applied": result.applied,
        "duplicates": result.duplicates,
        "unrouted": result.unrouted,
        "issues": len(result.issues),
        "failures": [dataclasses.asdict(failure) for failure in result.failures],
        "invariants": _report_payload(result.invariant_report),
    }


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=_json_default))


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="oxusd-indexer",
        epilog=(
            "Env overrides: STATE_DB_PATH, NEGATIVE_BALANCE_POLICY, PROJECTOR_WORKERS, "
            "CHECK_INVARIANTS_AFTER_BATCH, LOG_LEVEL."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    project_parser = subparsers.add_parser(
        "project", help="Project a JSON-lines file of decoded events"
    )
    project_parser.add_argument("--events", required=True, help="Path to events .jsonl")
    project_parser.add_argument(
        "--db", default=None, help="State sqlite DB path (defaults to env STATE_DB_PATH)"
    )
    project_parser.add_argument(
        "--check",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run invariant checks after the batch (defaults to CHECK_INVARIANTS_AFTER_BATCH)",
    )
    project_parser.add_argument("--workers", type=int, default=None)

    check_parser = subparsers.add_parser("check", help="Reconcile aggregates against records")
    check_parser.add_argument("--db", default=None)

    show_parser = subparsers.add_parser("show", help="Print one entity as JSON")
    show_parser.add_argument("entity", type=_entity_type_arg)
    show_parser.add_argument("key")
    show_parser.add_argument("--db", default=None)

    export_parser = subparsers.add_parser("export", help="Export all entities of a type as JSONL")
    export_parser.add_argument("entity", type=_entity_type_arg)
    export_parser.add_argument("--out", default=None, help="Output file (defaults to stdout)")
    export_parser.add_argument("--db", default=None)

    issues_parser = subparsers.add_parser("issues", help="List recorded integrity issues")
    issues_parser.add_argument("--limit", type=int, default=20)
    issues_parser.add_argument("--code", default=None)
    issues_parser.add_argument("--db", default=None)

    args = parser.parse_args()
    settings = Settings()
    if args.db:
        settings = settings.model_copy(update={"state_db_path": str(args.db)})
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
    )
    logger.info(
        "runtime_prepared",
        extra={"extra": {"command": args.command, "db_path": settings.state_db_path}},
    )

    try:
        if args.command == "project":
            return run_project(
                settings,
                events_path=args.events,
                check=args.check,
                workers=args.workers,
            )
        if args.command == "check":
            return run_check(settings)
        if args.command == "show":
            return run_show(settings, entity_type=args.entity, key=args.key)
        if args.command == "export":
            return run_export(settings, entity_type=args.entity, out=args.out)
        if args.command == "issues":
            return run_issues(settings, limit=args.limit, code=args.code)
    finally:
        get_instrumentation().flush()

    parser.error(f"unknown command: {args.command}")
    return EXIT_FAILURE


def run_project(
    settings: Settings,
    *,
    events_path: str,
    check: bool | None = None,
    workers: int | None = None,
) -> int:
    updates: dict[str, object] = {}
    if check is not None:
        updates["check_invariants_after_batch"] = check
    if workers is not None:
        updates["projector_workers"] = max(1, workers)
    if updates:
        settings = settings.model_copy(update=updates)

    try:
        events = load_events_jsonl(events_path)
    except (OSError, EventDecodeError) as exc:
        logger.error(
            "events_load_failed",
            extra={"extra": {"error_type": type(exc).__name__, "safe_message": str(exc)}},
        )
        print(f"failed to load events: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    service = ProjectionService.from_settings(settings)
    try:
        result = service.process_batch(events)
    except ProjectorError as exc:
        logger.exception("batch_failed", extra={"extra": {"error_type": type(exc).__name__}})
        return EXIT_FAILURE

    _print_json(_batch_payload(result))
    if result.failures:
        return EXIT_FAILURE
    if result.invariant_report is not None and not result.invariant_report.ok:
        return EXIT_INVARIANT_VIOLATION
    return EXIT_OK


def run_check(settings: Settings) -> int:
    checker = InvariantChecker()
    report = checker.run(UnitOfWorkFactory(settings.state_db_path, read_only=True))
    _print_json(_report_payload(report))
    return EXIT_OK if report.ok else EXIT_INVARIANT_VIOLATION


def run_show(settings: Settings, *, entity_type: EntityType, key: str) -> int:
    key = normalize_entity_key(entity_type, key)
    with UnitOfWorkFactory(settings.state_db_path, read_only=True)() as uow:
        entity = uow.entities.load(entity_type, key)
    if entity is None:
        print(f"{entity_type.value} {key!r} not found", file=sys.stderr)
        return EXIT_INVARIANT_VIOLATION
    _print_json(entity_payload(entity))
    return EXIT_OK


def run_export(settings: Settings, *, entity_type: EntityType, out: str | None = None) -> int:
    with UnitOfWorkFactory(settings.state_db_path, read_only=True)() as uow:
        lines = [
            json.dumps(entity_payload(entity), sort_keys=True)
            for entity in uow.entities.iter_entities(entity_type)
        ]
    if out is None:
        for line in lines:
            print(line)
    else:
        target = Path(out)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    logger.info(
        "entities_exported",
        extra={"extra": {"entity_type": entity_type.value, "count": len(lines), "out": out}},
    )
    return EXIT_OK


def run_issues(settings: Settings, *, limit: int = 20, code: str | None = None) -> int:
    with UnitOfWorkFactory(settings.state_db_path, read_only=True)() as uow:
        issues = uow.integrity.list_issues(limit=limit, code=code)
        counts = uow.integrity.count_by_code()
    _print_json({"counts": counts, "issues": issues})
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
