from __future__ import annotations

import argparse
import logging
import signal
import sys
from datetime import timedelta

from product_import.batch import ImportBatch
from product_import.config import ImportSettings, get_settings
from product_import.db import build_sessionmaker
from product_import.logging_config import configure_logging
from product_import.models import ensure_schema
from product_import.orchestrator import ImportOrchestrator, ImportResult
from product_import.staging import StagingStore

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "ok": 0,
    "failed": 1,
    "degraded": 2,
    "cancelled": 130,
}


def _interrupt(signum: int, _frame: object) -> None:
    raise KeyboardInterrupt(f"Received signal {signum}")


def run_once(
    file_path: str,
    batch_id: str | None = None,
    settings: ImportSettings | None = None,
    purge_stale_hours: float | None = None,
) -> ImportResult:
    settings = settings or get_settings()
    batch = ImportBatch.resume(batch_id, file_path) if batch_id else ImportBatch.create(file_path)
    SessionLocal = build_sessionmaker(settings.database_url)

    try:
        with SessionLocal() as db:
            if purge_stale_hours is not None:
                ensure_schema(db)
                StagingStore(db).purge_stale(timedelta(hours=purge_stale_hours))
                db.commit()

            result = ImportOrchestrator(db, settings=settings).run(batch)
    finally:
        SessionLocal.kw["bind"].dispose()

    report = result.report.to_dict() if result.report else {}
    print(
        f"batch={batch.batch_id} status={result.status} loaded={report.get('records_loaded', 0)} "
        f"new={report.get('new_products_created', 0)} updated={report.get('existing_products_updated', 0)} "
        f"total_time={report.get('total_time', 0.0):.3f}s"
    )
    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Bulk product catalog import")
    parser.add_argument("file", help="Delimited input file: barcode,price,stock,name,description with one header line")
    parser.add_argument("--batch-id", help="Reuse a batch id to retry a failed run")
    parser.add_argument("--database-url", help="Override PRODUCT_IMPORT_DATABASE_URL")
    parser.add_argument("--duplicate-policy", choices=["reject", "last_wins"])
    parser.add_argument("--keep-staging", action="store_true", help="Keep staged rows after a successful merge")
    parser.add_argument(
        "--purge-stale-hours",
        type=float,
        default=None,
        help="Before importing, delete staged rows of any batch older than this many hours",
    )
    args = parser.parse_args(argv)

    overrides: dict[str, object] = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.duplicate_policy:
        overrides["duplicate_policy"] = args.duplicate_policy
    if args.keep_staging:
        overrides["purge_staging_after_merge"] = False
    settings = get_settings().model_copy(update=overrides)

    if args.batch_id:
        try:
            ImportBatch.resume(args.batch_id, args.file)
        except ValueError as exc:
            parser.error(str(exc))

    configure_logging(settings.log_dir)
    previous_handler = signal.signal(signal.SIGTERM, _interrupt)

    try:
        result = run_once(
            args.file,
            batch_id=args.batch_id,
            settings=settings,
            purge_stale_hours=args.purge_stale_hours,
        )
    except KeyboardInterrupt:
        logger.error("Import cancelled; teardown completed")
        return EXIT_CODES["cancelled"]
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if result.outcome == "degraded":
        logger.warning(
            "batch=%s imported, but engine safety settings need operator attention: %s",
            result.batch.batch_id,
            result.tuning_error,
        )
    return EXIT_CODES[result.outcome]


if __name__ == "__main__":
    sys.exit(main())
