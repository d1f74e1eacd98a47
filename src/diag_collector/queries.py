"""Readers for historical query records.

Two sources are understood:

- ``queries.json`` (optionally ``.gz``): one JSON object per line, camelCase
  fields as written by the coordinator.
- job history exports (``*history.jobs*.json``): ``{"rows": [...]}`` with
  snake_case columns.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from diag_collector.utils import read_jsonl, truncate

logger = logging.getLogger(__name__)

HISTORY_MARKER = "history.jobs"


@dataclass(frozen=True)
class QueryRecord:
    query_id: str
    outcome: str = ""
    query_cost: float = 0.0
    planning_time: float = 0.0
    execution_planning_time: float = 0.0
    running_time: float = 0.0
    submitted_time: float = 0.0
    query_type: str = ""


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_queries_line(row: Mapping[str, Any]) -> QueryRecord | None:
    query_id = row.get("queryId")
    if not query_id:
        logger.warning("skipping queries.json row without queryId: %s", truncate(json.dumps(row, default=str), 50))
        return None
    return QueryRecord(
        query_id=str(query_id),
        outcome=str(row.get("outcome") or ""),
        query_cost=_num(row.get("queryCost")),
        planning_time=_num(row.get("planningTime")),
        execution_planning_time=_num(row.get("executionPlanningTime")),
        running_time=_num(row.get("runningTime")),
        submitted_time=_num(row.get("start", row.get("submitted"))),
        query_type=str(row.get("queryType") or ""),
    )


def parse_history_row(row: Mapping[str, Any]) -> QueryRecord | None:
    query_id = row.get("job_id")
    if not query_id:
        logger.warning("skipping job history row without job_id")
        return None
    submitted = _num(row.get("submitted_epoch"))
    return QueryRecord(
        query_id=str(query_id),
        outcome=str(row.get("status") or ""),
        query_cost=_num(row.get("planner_estimated_cost")),
        execution_planning_time=_num(row.get("execution_start_epoch")) - _num(row.get("execution_planning_start_epoch")),
        running_time=_num(row.get("final_state_epoch")) - submitted,
        submitted_time=submitted,
        query_type=str(row.get("query_type") or ""),
    )


def read_queries_json(path: Path) -> list[QueryRecord]:
    records = [parse_queries_line(row) for row in read_jsonl(path)]
    return [r for r in records if r is not None]


def read_job_history_json(path: Path) -> list[QueryRecord]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    rows = data.get("rows", []) if isinstance(data, dict) else []
    records = [parse_history_row(row) for row in rows if isinstance(row, dict)]
    return [r for r in records if r is not None]


def collect_query_records(paths: Iterable[Path]) -> list[QueryRecord]:
    """Read every supported file; unreadable files are logged and skipped."""
    records: list[QueryRecord] = []
    for path in paths:
        name = path.name
        try:
            if HISTORY_MARKER in name and name.endswith(".json"):
                rows = read_job_history_json(path)
            elif name.endswith(".json") or name.endswith(".gz"):
                rows = read_queries_json(path)
            else:
                logger.error("file %s is neither JSON nor GZIP format", path)
                continue
        except (OSError, EOFError, json.JSONDecodeError) as exc:
            logger.error("failed to read %s due to error %s", path, exc)
            continue
        logger.info("found %d new rows in %s", len(rows), path)
        records.extend(rows)
    logger.debug("collected a total of %d query records", len(records))
    return records


def find_query_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file())
