from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from product_import.batch import ImportBatch
from product_import.config import ImportSettings, get_settings
from product_import.errors import LoadError, ProductImportError, TuningRestoreError
from product_import.loader import BulkLoader
from product_import.merge import MergeEngine
from product_import.metrics import (
    LOAD_PHASE,
    MERGE_PHASE,
    NEW_PRODUCTS,
    RECORDS_LOADED,
    TOTAL_AFFECTED,
    UPDATED_PRODUCTS,
    MetricsCollector,
    MetricsReport,
    write_report,
)
from product_import.models import ensure_schema
from product_import.tuning import EngineTuner, TuningLock, store_key

logger = logging.getLogger(__name__)


class ImportState(str, Enum):
    INIT = "init"
    SCHEMA_READY = "schema_ready"
    LOADED = "loaded"
    MERGED = "merged"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ImportResult:
    batch: ImportBatch
    state: ImportState
    status: str = "running"
    report: MetricsReport | None = None
    error: dict[str, Any] | None = None
    failed_state: ImportState | None = None
    tuning_restored: bool = True
    tuning_error: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def outcome(self) -> str:
        if self.status != "completed":
            return self.status
        return "ok" if self.tuning_restored else "degraded"


class ImportOrchestrator:
    """Runs one batch: schema, relax, load, merge, then teardown.

    Teardown restores the engine settings and finalizes metrics, in that
    order, exactly once, whether the run succeeds, fails or is interrupted.
    """

    def __init__(
        self,
        db: Session,
        settings: ImportSettings | None = None,
        loader: BulkLoader | None = None,
        merger: MergeEngine | None = None,
        tuner: EngineTuner | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.loader = loader or BulkLoader(
            db,
            chunk_size=self.settings.load_chunk_size,
            use_load_data_infile=self.settings.use_load_data_infile,
            duplicate_policy=self.settings.duplicate_policy,
        )
        self.merger = merger or MergeEngine(db, purge_staging=self.settings.purge_staging_after_merge)
        self.tuner = tuner or EngineTuner(
            db,
            lock=TuningLock(
                self.settings.tuning_lock_name,
                redis_url=self.settings.redis_url,
                timeout_seconds=self.settings.tuning_lock_timeout_seconds,
                wait_seconds=self.settings.tuning_lock_wait_seconds,
                store=store_key(db),
            ),
            enabled=self.settings.tuning_enabled,
        )
        self.metrics = metrics or MetricsCollector()
        self.state = ImportState.INIT
        self._torn_down = False

    def run(self, batch: ImportBatch) -> ImportResult:
        if self.state is not ImportState.INIT:
            raise RuntimeError("ImportOrchestrator runs a single batch; create a new one per run")

        result = ImportResult(batch=batch, state=self.state)
        self.metrics.mark_start()
        self._log_banner(batch)

        try:
            self._prepare_schema(batch)
            self._load(batch)
            self._merge(batch)
            self._transition(batch, ImportState.DONE)
            result.status = "completed"
        except ProductImportError as exc:
            self._fail(batch, result, exc.to_dict())
        except Exception as exc:
            logger.exception("batch=%s unexpected failure in phase %s", batch.batch_id, self.state.value)
            self._fail(batch, result, {"code": "unexpected_error", "message": str(exc), "batch_id": batch.batch_id})
        except (KeyboardInterrupt, SystemExit):
            result.status = "cancelled"
            self._fail(batch, result, {"code": "cancelled", "message": "Import interrupted", "batch_id": batch.batch_id})
            raise
        finally:
            self._teardown(batch, result)

        return result

    def _prepare_schema(self, batch: ImportBatch) -> None:
        try:
            ensure_schema(self.db)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LoadError(f"Could not prepare import schema: {exc}", batch_id=batch.batch_id) from exc
        self._transition(batch, ImportState.SCHEMA_READY)

    def _load(self, batch: ImportBatch) -> None:
        self.tuner.relax()
        self.metrics.start_phase(LOAD_PHASE)
        loaded = self.loader.load(batch.batch_id, batch.source_path)
        self.metrics.record(RECORDS_LOADED, loaded)
        self.metrics.end_phase(LOAD_PHASE)
        self._transition(batch, ImportState.LOADED)

    def _merge(self, batch: ImportBatch) -> None:
        self.metrics.start_phase(MERGE_PHASE)
        merged = self.merger.merge(batch.batch_id)
        self.metrics.record(NEW_PRODUCTS, merged.inserted)
        self.metrics.record(UPDATED_PRODUCTS, merged.updated)
        self.metrics.record(TOTAL_AFFECTED, merged.total_affected)
        self.metrics.end_phase(MERGE_PHASE)
        self._transition(batch, ImportState.MERGED)

    def _transition(self, batch: ImportBatch, state: ImportState) -> None:
        self.state = state
        logger.info("batch=%s phase=%s", batch.batch_id, state.value)

    def _fail(self, batch: ImportBatch, result: ImportResult, error: dict[str, Any]) -> None:
        result.failed_state = self.state
        result.error = error
        if result.status == "running":
            result.status = "failed"
        logger.error(
            "batch=%s phase=%s failed: %s",
            batch.batch_id,
            self.state.value,
            error.get("message"),
        )
        self.state = ImportState.FAILED

    def _teardown(self, batch: ImportBatch, result: ImportResult) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        logger.info("batch=%s teardown", batch.batch_id)

        if not result.succeeded:
            try:
                self.db.rollback()
            except SQLAlchemyError as exc:
                logger.warning("batch=%s rollback during teardown failed: %s", batch.batch_id, exc)

        try:
            self.tuner.restore()
        except TuningRestoreError as exc:
            exc.batch_id = batch.batch_id
            result.tuning_restored = False
            result.tuning_error = exc.to_dict()
            logger.error(
                "batch=%s engine safety settings were NOT restored, store is in a degraded safety state: %s",
                batch.batch_id,
                exc.details,
            )

        report = self.metrics.finalize()
        result.report = report
        result.state = self.state
        logger.info("batch=%s metrics:\n%s", batch.batch_id, report.to_json())
        if self.settings.metrics_dir:
            try:
                target = write_report(report, self.settings.metrics_dir, batch.batch_id)
                logger.info("batch=%s metrics written to %s", batch.batch_id, target)
            except OSError as exc:
                logger.error("batch=%s could not write metrics report: %s", batch.batch_id, exc)

    def _log_banner(self, batch: ImportBatch) -> None:
        logger.info("Starting product import process")
        logger.info("Batch ID: %s", batch.batch_id)
        logger.info("Input File: %s", batch.source_path)
        logger.info("Started at: %s", batch.started_at.isoformat())
        if batch.source_path.is_file():
            logger.info("Input file size: %s bytes", batch.source_path.stat().st_size)
