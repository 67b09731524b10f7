"""Record sinks for the storage collaborator.

The core never persists anything itself; it hands decision, override and
quality records to a sink. ``JsonlRecordSink`` appends them to a JSONL
file and keeps per-type counters.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel


class RecordSink(Protocol):
    def emit(self, record_type: str, record: BaseModel) -> None: ...


@dataclass
class MemoryRecordSink:
    """Keeps emitted records in memory (tests, CLI dry runs)."""

    records: list[tuple[str, BaseModel]] = field(default_factory=list)

    def emit(self, record_type: str, record: BaseModel) -> None:
        self.records.append((record_type, record))

    def of_type(self, record_type: str) -> list[BaseModel]:
        return [r for t, r in self.records if t == record_type]


@dataclass
class JsonlRecordSink:
    """Appends one JSON line per record and counts records per type."""

    jsonl_path: Path
    counters: dict[str, int] = field(default_factory=dict)

    def emit(self, record_type: str, record: BaseModel) -> None:
        self.counters[record_type] = self.counters.get(record_type, 0) + 1
        line = {
            "timestamp": datetime.now(UTC).isoformat(),
            "record_type": record_type,
            "payload": record.model_dump(mode="json"),
        }
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(line, ensure_ascii=True) + "\n")
