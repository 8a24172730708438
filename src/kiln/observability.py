"""Structured logging and observability helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

REDACTED = "***"


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    _redactions: list[str] = field(default_factory=list, repr=False)

    def redact(self, *values: str) -> None:
        """Register values that must never appear in a log record."""
        for value in values:
            if value and value not in self._redactions:
                self._redactions.append(value)

    def log(
        self,
        *,
        operation: str,
        stage: str | None,
        message: str,
        volume: str | None = None,
        builder: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "stage": stage,
            "volume": volume,
            "builder": builder,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(self.scrub(record))

    def records_for_stage(self, stage: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("stage") == stage]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def scrub(self, value: Any) -> Any:
        """Replace registered secret values anywhere inside *value*."""
        if not self._redactions:
            return value
        if isinstance(value, str):
            for secret in self._redactions:
                value = value.replace(secret, REDACTED)
            return value
        if isinstance(value, dict):
            return {key: self.scrub(item) for key, item in value.items()}
        if isinstance(value, list | tuple):
            return [self.scrub(item) for item in value]
        return value
