"""Run summary persisted next to the collected files as ``summary.json``."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from diag_collector.capture import CapturedFile, FailedFile
from diag_collector.utils import write_json

SUMMARY_FILE_NAME = "summary.json"


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class CollectionSummary:
    start_time: datetime
    end_time: datetime
    total_nodes_attempted: int
    number_nodes_contacted: int
    collected_files: list[CapturedFile] = field(default_factory=list)
    failed_files: list[FailedFile] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    coordinators: list[str] = field(default_factory=list)
    executors: list[str] = field(default_factory=list)

    @property
    def total_runtime_seconds(self) -> int:
        return int(self.end_time.timestamp()) - int(self.start_time.timestamp())

    @property
    def total_bytes_collected(self) -> int:
        return sum(f.size for f in self.collected_files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startTimeUTC": _iso(self.start_time),
            "endTimeUTC": _iso(self.end_time),
            "totalRuntimeSeconds": self.total_runtime_seconds,
            "clusterInfo": {
                "totalNodesAttempted": self.total_nodes_attempted,
                "numberNodesContacted": self.number_nodes_contacted,
            },
            "collectedFiles": [{"path": f.path, "size": f.size} for f in self.collected_files],
            "failedFiles": [{"path": f.path, "error": f.error} for f in self.failed_files],
            "skippedFiles": list(self.skipped_files),
            "totalBytesCollected": self.total_bytes_collected,
            "coordinators": list(self.coordinators),
            "executors": list(self.executors),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def write_summary(summary: CollectionSummary, output_dir: Path) -> CapturedFile:
    """Write ``summary.json`` into ``output_dir`` and return it as a collected file."""
    path = output_dir / SUMMARY_FILE_NAME
    size = write_json(path, summary.to_dict())
    return CapturedFile(path=str(path), size=size)
