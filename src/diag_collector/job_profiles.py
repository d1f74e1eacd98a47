"""Pick which job profiles to download and fetch them through the worker pool.

Four rankings feed the candidate set:

- slow execution: longest ``running_time``
- slow planning: longest ``execution_planning_time``
- high cost: largest ``query_cost``
- recent errors: most recently submitted ``FAILED`` queries

A query that ranks under several criteria is downloaded once.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import requests

from diag_collector.exceptions import CredentialsMissingError
from diag_collector.http import DEFAULT_TIMEOUT, create_retry_session
from diag_collector.queries import QueryRecord
from diag_collector.secrets import SecretStr
from diag_collector.shutdown import CancelToken
from diag_collector.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

SLOW_EXEC = "slow_exec"
SLOW_PLANNING = "slow_planning"
HIGH_COST = "high_cost"
RECENT_ERRORS = "recent_errors"

FAILED_OUTCOME = "FAILED"
DEFAULT_THREADS = 4
DOWNLOAD_LOGGING_FREQUENCY = 100


@dataclass(frozen=True)
class JobProfileBudget:
    slow_exec: int = 0
    slow_planning: int = 0
    high_cost: int = 0
    recent_errors: int = 0

    @property
    def total(self) -> int:
        return self.slow_exec + self.slow_planning + self.high_cost + self.recent_errors


@dataclass(frozen=True)
class JobProfileCandidate:
    query_id: str
    metric: str


@dataclass(frozen=True)
class JobProfileCollection:
    tried: int
    collected: int
    failed: int = 0
    cancelled: int = 0


def default_budget(total: int) -> JobProfileBudget:
    """Split ``total`` 40/20/20/20 with the rounding remainder going to slow execution."""
    if total <= 0:
        return JobProfileBudget()
    if total < 4:
        # so few that it is not worth splitting
        return JobProfileBudget(slow_exec=total)
    slow_exec = total * 40 // 100
    share = total * 20 // 100
    slow_exec += total - (slow_exec + 3 * share)
    return JobProfileBudget(slow_exec=slow_exec, slow_planning=share, high_cost=share, recent_errors=share)


def calculate_job_profile_settings(
    total: int,
    *,
    slow_exec: int | None = None,
    slow_planning: int | None = None,
    high_cost: int | None = None,
    recent_errors: int | None = None,
    has_credentials: bool = True,
    logger: logging.Logger | None = None,
) -> JobProfileBudget:
    """Derive the per-criterion budget from a total plus optional overrides.

    Without credentials nothing can be downloaded, so every count is zero.
    """
    log = logger or logging.getLogger(__name__)
    if not has_credentials:
        log.warning("no access token configured, job profile collection is disabled")
        return JobProfileBudget()

    defaults = default_budget(total)
    if defaults.total:
        log.info(
            "default job profile split: slow execution %d, recent errors %d, slow planning %d, high cost %d",
            defaults.slow_exec,
            defaults.recent_errors,
            defaults.slow_planning,
            defaults.high_cost,
        )
    overrides = {
        SLOW_EXEC: slow_exec,
        SLOW_PLANNING: slow_planning,
        HIGH_COST: high_cost,
        RECENT_ERRORS: recent_errors,
    }
    effective: dict[str, int] = {}
    for field in fields(JobProfileBudget):
        default = getattr(defaults, field.name)
        override = overrides[field.name]
        if override is None:
            effective[field.name] = default
            continue
        if override != default:
            log.warning("job profiles %s changed to %d by configuration", field.name, override)
        effective[field.name] = max(0, override)

    budget = JobProfileBudget(**effective)
    if budget.total != total:
        log.warning("due to configuration parameters the total job profiles collected is adjusted to %d", budget.total)
    return budget


def _top(records: Iterable[QueryRecord], limit: int, key: Callable[[QueryRecord], float]) -> list[QueryRecord]:
    if limit <= 0:
        return []
    return sorted(records, key=key, reverse=True)[:limit]


def select_slow_exec(records: Sequence[QueryRecord], limit: int) -> list[QueryRecord]:
    return _top(records, limit, lambda r: r.running_time)


def select_slow_planning(records: Sequence[QueryRecord], limit: int) -> list[QueryRecord]:
    return _top(records, limit, lambda r: r.execution_planning_time)


def select_high_cost(records: Sequence[QueryRecord], limit: int) -> list[QueryRecord]:
    return _top(records, limit, lambda r: r.query_cost)


def select_recent_errors(records: Sequence[QueryRecord], limit: int) -> list[QueryRecord]:
    failed = [r for r in records if r.outcome == FAILED_OUTCOME]
    return _top(failed, limit, lambda r: r.submitted_time)


def select_job_profile_candidates(records: Sequence[QueryRecord], budget: JobProfileBudget) -> list[JobProfileCandidate]:
    """Every (query, criterion) pair that made a top-N list; may repeat query ids."""
    selections = (
        (SLOW_PLANNING, select_slow_planning(records, budget.slow_planning)),
        (SLOW_EXEC, select_slow_exec(records, budget.slow_exec)),
        (HIGH_COST, select_high_cost(records, budget.high_cost)),
        (RECENT_ERRORS, select_recent_errors(records, budget.recent_errors)),
    )
    candidates: list[JobProfileCandidate] = []
    for metric, rows in selections:
        logger.debug("selected %d job profiles for %s", len(rows), metric)
        candidates.extend(JobProfileCandidate(query_id=r.query_id, metric=metric) for r in rows)
    return candidates


def unique_query_ids(candidates: Iterable[JobProfileCandidate]) -> list[str]:
    return list(dict.fromkeys(c.query_id for c in candidates))


def collect_job_profiles(
    records: Sequence[QueryRecord],
    budget: JobProfileBudget,
    download: Callable[[str], Any],
    *,
    threads: int = DEFAULT_THREADS,
    cancel_token: CancelToken | None = None,
    logger: logging.Logger | None = None,
) -> JobProfileCollection:
    """Download one profile per unique selected query.

    Individual download failures are logged by the pool and counted in
    ``failed``; they never make this call raise. Once ``cancel_token`` is
    cancelled, downloads that have not started yet are skipped and counted in
    ``cancelled``.
    """
    log = logger or logging.getLogger(__name__)
    query_ids = unique_query_ids(select_job_profile_candidates(records, budget))
    tried = len(query_ids)
    if not query_ids:
        log.info("no job profiles to collect")
        return JobProfileCollection(tried=0, collected=0)

    skipped: list[str] = []

    def job(query_id: str) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            skipped.append(query_id)
            return
        download(query_id)

    log.debug("downloading %d job profiles", tried)
    pool = WorkerPool(
        threads,
        queue_size=tried,
        logging_frequency=DOWNLOAD_LOGGING_FREQUENCY,
        logger=log,
    )
    for query_id in query_ids:
        pool.submit(lambda query_id=query_id: job(query_id))
    stats = pool.process_and_wait()
    if skipped:
        log.warning("job profile collection cancelled, %d downloads not started", len(skipped))
    log.info("after eliminating duplicates tried %d job profiles, %d failed", tried, stats.failed)
    return JobProfileCollection(
        tried=tried,
        collected=tried - len(skipped),
        failed=stats.failed,
        cancelled=len(skipped),
    )


class ProfileDownloader:
    """Callable that saves ``<output_dir>/<query_id>.zip`` from the support endpoint."""

    def __init__(
        self,
        endpoint: str,
        token: SecretStr | str,
        output_dir: Path,
        *,
        session: requests.Session | None = None,
        timeout: tuple[int, int] = DEFAULT_TIMEOUT,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.token = token if isinstance(token, SecretStr) else SecretStr(token)
        if not self.token:
            raise CredentialsMissingError("an access token is required to download job profiles")
        self.endpoint = endpoint.rstrip("/")
        self.output_dir = output_dir
        self.session = session or create_retry_session()
        self.timeout = timeout
        self.cancel_token = cancel_token or CancelToken()

    def url_for(self, query_id: str) -> str:
        return f"{self.endpoint}/apiv2/support/{query_id}/download"

    def __call__(self, query_id: str) -> Path:
        if not query_id or "/" in query_id or query_id in (".", ".."):
            raise ValueError(f"invalid query id {query_id!r}")
        headers = {
            "Authorization": f"Bearer {self.token.reveal()}",
            "Accept": "application/octet-stream",
        }
        target = self.output_dir / f"{query_id}.zip"
        tmp = target.with_suffix(".zip.part")
        what = f"job profile download {query_id}"
        self.cancel_token.raise_if_cancelled(what)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with self.session.post(self.url_for(query_id), headers=headers, timeout=self.timeout, stream=True) as resp:
            resp.raise_for_status()
            try:
                with open(tmp, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=1024 * 1024):
                        self.cancel_token.raise_if_cancelled(what)
                        if chunk:
                            f.write(chunk)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
        os.replace(tmp, target)
        return target
