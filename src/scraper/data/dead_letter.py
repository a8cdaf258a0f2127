"""Append-only JSONL sink for records the retry wrapper gave up on.

One line per record so the file can be replayed with a line reader. Decimal
and datetime values are written as strings to keep full precision.
"""

import dataclasses
import json
import os
from datetime import datetime, timezone
from typing import Any

from scraper.logging import get_logger

logger = get_logger(__name__)


def _to_jsonable(record: Any) -> Any:
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.asdict(record)
    return record


class DeadLetterSink:
    """Writes undeliverable records to a JSON-lines file.

    Usage:
        sink = DeadLetterSink("data/dead_letter.jsonl")
        sink.write("candles", batch, error="database is locked", context={...})
    """

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def write(
        self,
        kind: str,
        records: list[Any],
        error: str,
        context: dict[str, Any] | None = None,
    ) -> int:
        """Append one line per record. Returns the number of lines written."""
        if not records:
            return 0

        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        failed_at = datetime.now(timezone.utc).isoformat()
        with open(self._path, "a", encoding="utf-8") as fh:
            for record in records:
                line = {
                    "kind": kind,
                    "failed_at": failed_at,
                    "error": error,
                    "context": context or {},
                    "record": _to_jsonable(record),
                }
                fh.write(json.dumps(line, default=str) + "\n")

        logger.warning(
            "dead_letter_written",
            kind=kind,
            count=len(records),
            path=self._path,
        )
        return len(records)
