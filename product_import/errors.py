from __future__ import annotations

from typing import Any


class ProductImportError(Exception):
    code = "import_error"

    def __init__(self, message: str, batch_id: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.batch_id = batch_id
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.batch_id:
            payload["batch_id"] = self.batch_id
        if self.details:
            payload["details"] = self.details
        return payload


class InputError(ProductImportError):
    """Missing, unreadable or malformed input file. Needs operator correction."""

    code = "input_error"


class DuplicateKeyError(InputError):
    code = "duplicate_keys"


class LoadError(ProductImportError):
    """The store rejected the bulk load. Safe to retry with the same batch id."""

    code = "load_error"


class MergeError(ProductImportError):
    code = "merge_error"


class TuningRestoreError(ProductImportError):
    """Engine safety settings could not be restored; the store is left degraded."""

    code = "tuning_restore_error"
