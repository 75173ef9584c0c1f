from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from product_import.models import utc_now

BATCH_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,32}$")


def new_batch_id(now: datetime | None = None) -> str:
    stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class ImportBatch:
    batch_id: str
    source_path: Path
    started_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, source_path: str | Path) -> ImportBatch:
        started_at = utc_now()
        return cls(batch_id=new_batch_id(started_at), source_path=Path(source_path), started_at=started_at)

    @classmethod
    def resume(cls, batch_id: str, source_path: str | Path) -> ImportBatch:
        """Rebuild a batch with a known id so a failed run can be retried."""
        if not BATCH_ID_RE.match(batch_id):
            raise ValueError(f"Invalid batch id: {batch_id!r}")
        return cls(batch_id=batch_id, source_path=Path(source_path))
