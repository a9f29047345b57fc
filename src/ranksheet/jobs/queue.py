"""
RankSheet Job Queue
===================

Durable refresh-job queue stored in ``ranksheet.job_runs``.

Features:
    - Idempotent enqueue: an existing QUEUED/RUNNING job of the same kind
      inside its window is returned instead of inserting a new one
    - Single-statement claim with FOR UPDATE SKIP LOCKED, safe with
      several workers on one database
    - Stale RUNNING jobs are failed with ``stale_job``
    - Typed job details (tagged by job name)

Usage:
    queue = JobQueue(get_database())
    job_id = queue.enqueue_refresh_one("wireless-mouse")
    state = queue.get_job_state(job_id)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from psycopg2.extras import Json, RealDictCursor

from ..data.config import QueueConfig, get_settings
from ..db.pool import Database
from ..orchestrator.refresh import clamp_int

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10
DEFAULT_CONCURRENCY = 3
MIN_LIMIT = 1
MAX_LIMIT = 2000

JOB_COLUMNS = """
    id::text AS id, job_name, keyword_slug, status, queued_at,
    started_at, finished_at, duration_ms, detail
"""


class JobName(Enum):
    """Kinds of queued work."""
    REFRESH_ONE = "refresh_one"
    REFRESH_ALL = "refresh_all"


class JobStatus(Enum):
    """Job lifecycle: QUEUED -> RUNNING -> SUCCESS | FAILED."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ACTIVE_STATUSES = [JobStatus.QUEUED.value, JobStatus.RUNNING.value]


class JobEnqueueError(Exception):
    """Raised when the enqueue statement returns no row."""
    pass


# =============================================================================
# JOB DETAILS
# =============================================================================

@dataclass
class RefreshOneDetail:
    """Detail of a refresh_one job."""
    keyword: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"keyword": self.keyword}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RefreshAllDetail:
    """Detail of a refresh_all job."""
    concurrency: int = DEFAULT_CONCURRENCY
    limit: Optional[int] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"concurrency": self.concurrency}
        if self.limit is not None:
            data["limit"] = self.limit
        if self.summary is not None:
            data["summary"] = self.summary
        if self.error is not None:
            data["error"] = self.error
        return data


JobDetail = Union[RefreshOneDetail, RefreshAllDetail, Dict[str, Any]]


def parse_job_detail(job_name: str, raw: Any, keyword_slug: Optional[str] = None) -> JobDetail:
    """
    Decode a stored ``detail`` JSON object by job name.

    Unknown job names keep the raw mapping.
    """
    data = raw if isinstance(raw, dict) else {}

    if job_name == JobName.REFRESH_ONE.value:
        return RefreshOneDetail(
            keyword=str(data.get("keyword") or keyword_slug or ""),
            result=data.get("result"),
            error=data.get("error"),
        )

    if job_name == JobName.REFRESH_ALL.value:
        concurrency = data.get("concurrency")
        limit = data.get("limit")
        return RefreshAllDetail(
            concurrency=clamp_int(
                concurrency if isinstance(concurrency, (int, float)) else DEFAULT_CONCURRENCY,
                MIN_CONCURRENCY, MAX_CONCURRENCY,
            ),
            limit=int(limit) if isinstance(limit, (int, float)) else None,
            summary=data.get("summary"),
            error=data.get("error"),
        )

    return dict(data)


def _detail_to_dict(detail: JobDetail) -> Dict[str, Any]:
    if isinstance(detail, (RefreshOneDetail, RefreshAllDetail)):
        return detail.to_dict()
    return dict(detail)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class JobState:
    """Snapshot of one job row."""
    id: str
    job_name: str
    status: JobStatus
    queued_at: datetime
    keyword_slug: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    detail: JobDetail = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobState":
        return cls(
            id=str(row["id"]),
            job_name=row["job_name"],
            status=JobStatus(row["status"]),
            queued_at=row["queued_at"],
            keyword_slug=row.get("keyword_slug"),
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
            duration_ms=row.get("duration_ms"),
            detail=parse_job_detail(row["job_name"], row.get("detail"), row.get("keyword_slug")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.job_name,
            "status": self.status.value,
            "keyword": self.keyword_slug,
            "created_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "detail": _detail_to_dict(self.detail),
        }


# =============================================================================
# QUEUE
# =============================================================================

ENQUEUE_REFRESH_ONE_SQL = """
    WITH existing AS (
        SELECT id, FALSE AS is_new
        FROM ranksheet.job_runs
        WHERE job_name = 'refresh_one'
          AND keyword_slug = %(slug)s
          AND status = ANY(%(statuses)s)
          AND queued_at > NOW() - make_interval(mins => %(window)s)
        ORDER BY queued_at DESC
        LIMIT 1
    ),
    inserted AS (
        INSERT INTO ranksheet.job_runs (job_name, keyword_slug, status, detail)
        SELECT 'refresh_one', %(slug)s, 'QUEUED', %(detail)s
        WHERE NOT EXISTS (SELECT 1 FROM existing)
        RETURNING id, TRUE AS is_new
    )
    SELECT id::text AS id, is_new FROM existing
    UNION ALL
    SELECT id::text AS id, is_new FROM inserted
    LIMIT 1
"""

ENQUEUE_REFRESH_ALL_SQL = """
    WITH existing AS (
        SELECT id, FALSE AS is_new
        FROM ranksheet.job_runs
        WHERE job_name = 'refresh_all'
          AND status = ANY(%(statuses)s)
          AND queued_at > NOW() - make_interval(hours => %(window)s)
        ORDER BY queued_at DESC
        LIMIT 1
    ),
    inserted AS (
        INSERT INTO ranksheet.job_runs (job_name, status, detail)
        SELECT 'refresh_all', 'QUEUED', %(detail)s
        WHERE NOT EXISTS (SELECT 1 FROM existing)
        RETURNING id, TRUE AS is_new
    )
    SELECT id::text AS id, is_new FROM existing
    UNION ALL
    SELECT id::text AS id, is_new FROM inserted
    LIMIT 1
"""

CLAIM_NEXT_SQL = f"""
    UPDATE ranksheet.job_runs
    SET status = 'RUNNING', started_at = NOW()
    WHERE id = (
        SELECT id
        FROM ranksheet.job_runs
        WHERE status = 'QUEUED'
        ORDER BY queued_at ASC
        FOR UPDATE SKIP LOCKED
        LIMIT 1
    )
    RETURNING {JOB_COLUMNS}
"""

FAIL_STALE_SQL = """
    UPDATE ranksheet.job_runs
    SET status = 'FAILED',
        finished_at = NOW(),
        duration_ms = COALESCE(
            duration_ms,
            (EXTRACT(EPOCH FROM (NOW() - started_at)) * 1000)::int
        ),
        detail = COALESCE(detail, '{}'::jsonb) || jsonb_build_object('error', 'stale_job')
    WHERE status = 'RUNNING'
      AND started_at IS NOT NULL
      AND started_at < NOW() - make_interval(hours => %s)
"""


class JobQueue:
    """
    Postgres-backed queue of refresh jobs.

    All operations are single statements; the queue keeps no in-process state.
    """

    def __init__(self, db: Database, config: Optional[QueueConfig] = None):
        self.db = db
        self.config = config or get_settings().queue

    def _enqueue(self, sql: str, params: Dict[str, Any]) -> str:
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()

        if not row or not row.get("id"):
            raise JobEnqueueError("job_enqueue_failed")
        if row["is_new"]:
            logger.debug(f"Job enqueued: {row['id']}", extra={"job_id": row["id"]})
        else:
            logger.debug(f"Job already pending: {row['id']}", extra={"job_id": row["id"]})
        return row["id"]

    def enqueue_refresh_one(self, slug: str) -> str:
        """
        Queue a single-keyword refresh.

        Returns:
            Id of the new job, or of a QUEUED/RUNNING refresh of the same
            keyword queued within the dedup window

        Raises:
            ValueError: If ``slug`` is blank
        """
        keyword = (slug or "").strip()
        if not keyword:
            raise ValueError("invalid_slug")

        return self._enqueue(ENQUEUE_REFRESH_ONE_SQL, {
            "slug": keyword,
            "statuses": ACTIVE_STATUSES,
            "window": self.config.refresh_one_window_minutes,
            "detail": Json(RefreshOneDetail(keyword=keyword).to_dict()),
        })

    def enqueue_refresh_all(self, concurrency: int = DEFAULT_CONCURRENCY, limit: Optional[int] = None) -> str:
        """
        Queue a refresh of every active keyword.

        ``concurrency`` is clamped to 1..10 and ``limit`` (when given) to 1..2000.
        A pending refresh_all within the window is reused regardless of its
        arguments.
        """
        detail = RefreshAllDetail(
            concurrency=clamp_int(concurrency, MIN_CONCURRENCY, MAX_CONCURRENCY),
            limit=clamp_int(limit, MIN_LIMIT, MAX_LIMIT) if limit is not None else None,
        )
        return self._enqueue(ENQUEUE_REFRESH_ALL_SQL, {
            "statuses": ACTIVE_STATUSES,
            "window": self.config.refresh_all_window_hours,
            "detail": Json(detail.to_dict()),
        })

    def get_job_state(self, job_id: str) -> Optional[JobState]:
        """Current state of a job, or None when the id is unknown."""
        try:
            job_uuid = uuid.UUID(str(job_id).strip())
        except ValueError:
            return None

        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {JOB_COLUMNS} FROM ranksheet.job_runs WHERE id = %s::uuid LIMIT 1",
                    (str(job_uuid),),
                )
                row = cur.fetchone()
        return JobState.from_row(row) if row else None

    def list_recent(self, limit: int = 20) -> List[JobState]:
        """Most recently queued jobs, newest first."""
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {JOB_COLUMNS} FROM ranksheet.job_runs ORDER BY queued_at DESC LIMIT %s",
                    (clamp_int(limit, 1, 500),),
                )
                rows = cur.fetchall()
        return [JobState.from_row(row) for row in rows]

    def claim_next(self) -> Optional[JobState]:
        """Atomically move the oldest QUEUED job to RUNNING and return it."""
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(CLAIM_NEXT_SQL)
                row = cur.fetchone()
        return JobState.from_row(row) if row else None

    def mark_finished(self, job_id: str, status: JobStatus, duration_ms: int, detail: JobDetail) -> None:
        """Record a terminal status, duration and final detail."""
        if status not in (JobStatus.SUCCESS, JobStatus.FAILED):
            raise ValueError(f"Not a terminal job status: {status.value}")

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE ranksheet.job_runs
                    SET status = %s,
                        finished_at = NOW(),
                        duration_ms = %s,
                        detail = %s
                    WHERE id = %s::uuid
                    """,
                    (status.value, int(duration_ms), Json(_detail_to_dict(detail)), str(job_id)),
                )

    def fail_stale_jobs(self, max_age_hours: Optional[int] = None) -> int:
        """
        Fail RUNNING jobs started more than ``max_age_hours`` ago.

        Returns:
            Number of jobs failed
        """
        hours = self.config.stale_hours if max_age_hours is None else max_age_hours
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(FAIL_STALE_SQL, (int(hours),))
                count = cur.rowcount

        if count:
            logger.warning(f"Failed {count} stale jobs older than {hours}h")
        return count
