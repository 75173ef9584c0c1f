from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

LOAD_PHASE = "load_temp_table"
MERGE_PHASE = "update_main_table"

RECORDS_LOADED = "records_loaded"
NEW_PRODUCTS = "new_products_created"
UPDATED_PRODUCTS = "existing_products_updated"
TOTAL_AFFECTED = "total_affected_records"
TOTAL_TIME = "total_time"

Metric = int | float


@dataclass
class MetricsReport:
    metrics: dict[str, Metric]
    incomplete_phases: list[str] = field(default_factory=list)

    def __getitem__(self, key: str) -> Metric:
        return self.metrics[key]

    def __contains__(self, key: object) -> bool:
        return key in self.metrics

    def get(self, key: str, default: Metric | None = None) -> Metric | None:
        return self.metrics.get(key, default)

    def to_dict(self) -> dict[str, Metric]:
        return dict(self.metrics)

    def to_json(self) -> str:
        return json.dumps(self.metrics, indent=2)


class MetricsCollector:
    """Phase timings and row counts for one import run.

    Timings use a monotonic clock. ``finalize`` never fails: phases that
    were started but not ended are closed at finalize time and reported as
    incomplete, and phases that never started are simply absent.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._first_start: float | None = None
        self._open: dict[str, float] = {}
        self._durations: dict[str, float] = {}
        self._values: dict[str, Metric] = {}
        self._report: MetricsReport | None = None

    def mark_start(self) -> None:
        self._note_start(self._clock())

    def start_phase(self, name: str) -> None:
        now = self._clock()
        self._note_start(now)
        self._open[name] = now

    def end_phase(self, name: str) -> float:
        started = self._open.pop(name, None)
        if started is None:
            raise KeyError(f"Phase {name} was never started")
        duration = self._clock() - started
        self._durations[name] = duration
        logger.info("%s: %.3f seconds", name, duration)
        return duration

    def record(self, key: str, value: Metric) -> None:
        self._values[key] = value

    def elapsed(self, name: str) -> float | None:
        if name in self._durations:
            return self._durations[name]
        if name in self._open:
            return self._clock() - self._open[name]
        return None

    def finalize(self) -> MetricsReport:
        if self._report is not None:
            return self._report

        now = self._clock()
        incomplete = list(self._open)
        for name, started in self._open.items():
            self._durations[name] = now - started
            logger.warning("Phase %s did not finish; reporting %.3f seconds elapsed", name, now - started)
        self._open.clear()

        metrics: dict[str, Metric] = {**self._durations, **self._values}
        metrics[TOTAL_TIME] = now - self._first_start if self._first_start is not None else 0.0
        self._report = MetricsReport(metrics=metrics, incomplete_phases=incomplete)
        return self._report

    def _note_start(self, at: float) -> None:
        if self._first_start is None or at < self._first_start:
            self._first_start = at


def write_report(report: MetricsReport, directory: str | Path, batch_id: str) -> Path:
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"metrics_{batch_id}.json"
    target.write_text(report.to_json() + "\n", encoding="utf-8")
    return target
