from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from applications.models import (
    Application,
    ApplicationStatus,
    Feedback,
    Job,
    RecommendationEntry,
    SavedJob,
)

LOGGER = logging.getLogger("application_service.repository")

APPLICATION_SORT_COLUMNS = {
    "created_at": "created_at",
    "createdAt": "created_at",
    "updated_at": "updated_at",
    "updatedAt": "updated_at",
    "applied_date": "applied_date",
    "appliedDate": "applied_date",
    "status": "status",
}


class UnitOfWork:
    """Collects callbacks that must only run once the enclosing transaction commits."""

    def __init__(self) -> None:
        self._after_commit: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def discard(self) -> None:
        self._after_commit = []

    def run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception(json.dumps({"event": "after_commit_callback_failed"}))


class ApplicationRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._active_unit: UnitOfWork | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    employer_id TEXT NOT NULL,
                    company_id TEXT,
                    title TEXT NOT NULL,
                    company TEXT,
                    status TEXT NOT NULL,
                    location TEXT,
                    description TEXT,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    seniority TEXT,
                    education_required TEXT,
                    is_remote INTEGER NOT NULL DEFAULT 0,
                    posted_date TEXT
                );

                CREATE TABLE IF NOT EXISTS applications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    applied_date TEXT NOT NULL,
                    resume_id TEXT,
                    resume_data BLOB,
                    resume_file_name TEXT,
                    resume_content_type TEXT,
                    cover_letter TEXT,
                    rejection_reason TEXT,
                    applicant_name TEXT,
                    applicant_email TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_applications_active
                    ON applications (user_id, job_id)
                    WHERE status != 'WITHDRAWN';

                CREATE INDEX IF NOT EXISTS ix_applications_job
                    ON applications (job_id, status);

                CREATE TABLE IF NOT EXISTS saved_jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    saved_at TEXT NOT NULL,
                    UNIQUE (user_id, job_id)
                );

                CREATE TABLE IF NOT EXISTS recommendation_cache (
                    user_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    match_score INTEGER NOT NULL,
                    match_reasons_json TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, job_id)
                );

                CREATE TABLE IF NOT EXISTS recommendation_feedback (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    feedback TEXT NOT NULL,
                    reason TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def _commit(self) -> None:
        self.connection.commit()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """Run a block as one storage transaction.

        Nested calls join the outermost transaction. After-commit callbacks
        registered on the yielded unit run only if the commit succeeds; on any
        failure the transaction is rolled back and the callbacks are dropped.
        """
        with self._lock:
            if self._active_unit is not None:
                yield self._active_unit
                return

            unit = UnitOfWork()
            self._active_unit = unit
            try:
                yield unit
                self._commit()
            except BaseException:
                self.connection.rollback()
                unit.discard()
                raise
            finally:
                self._active_unit = None
            unit.run_after_commit()

    # Jobs

    def upsert_job(self, job: Job) -> Job:
        with self.transaction():
            self.connection.execute(
                """
                INSERT INTO jobs (
                    id,
                    employer_id,
                    company_id,
                    title,
                    company,
                    status,
                    location,
                    description,
                    skills_json,
                    seniority,
                    education_required,
                    is_remote,
                    posted_date
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    employer_id = excluded.employer_id,
                    company_id = excluded.company_id,
                    title = excluded.title,
                    company = excluded.company,
                    status = excluded.status,
                    location = excluded.location,
                    description = excluded.description,
                    skills_json = excluded.skills_json,
                    seniority = excluded.seniority,
                    education_required = excluded.education_required,
                    is_remote = excluded.is_remote,
                    posted_date = excluded.posted_date
                """,
                (
                    job.id,
                    job.employer_id,
                    job.company_id,
                    job.title,
                    job.company,
                    job.status,
                    job.location,
                    job.description,
                    json.dumps(job.skills),
                    job.seniority,
                    job.education_required,
                    int(job.is_remote),
                    job.posted_date,
                ),
            )
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return None
            return self._to_job(row)

    def list_jobs_by_status(self, status: str) -> list[Job]:
        with self._lock:
            cursor = self.connection.execute(
                "SELECT * FROM jobs WHERE lower(status) = lower(?) ORDER BY rowid",
                (status,),
            )
            return [self._to_job(row) for row in cursor.fetchall()]

    # Applications

    def insert_application(self, application: Application, resume_data: bytes | None) -> None:
        with self.transaction():
            self.connection.execute(
                """
                INSERT INTO applications (
                    id,
                    user_id,
                    job_id,
                    status,
                    applied_date,
                    resume_id,
                    resume_data,
                    resume_file_name,
                    resume_content_type,
                    cover_letter,
                    rejection_reason,
                    applicant_name,
                    applicant_email,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    application.id,
                    application.user_id,
                    application.job_id,
                    application.status.value,
                    application.applied_date,
                    application.resume_id,
                    resume_data,
                    application.resume_file_name,
                    application.resume_content_type,
                    application.cover_letter,
                    application.rejection_reason,
                    application.applicant_name,
                    application.applicant_email,
                    application.created_at,
                    application.updated_at,
                ),
            )

    def get_application(self, application_id: str) -> Application | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {self._application_columns()} FROM applications WHERE id = ?",
                (application_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_application(row)

    def get_resume(self, application_id: str) -> tuple[bytes, str | None, str | None] | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT resume_data, resume_file_name, resume_content_type
                FROM applications
                WHERE id = ?
                """,
                (application_id,),
            ).fetchone()
            if row is None or row["resume_data"] is None:
                return None
            return bytes(row["resume_data"]), row["resume_file_name"], row["resume_content_type"]

    def has_active_application(self, user_id: str, job_id: str) -> bool:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT COUNT(1) AS c
                FROM applications
                WHERE user_id = ? AND job_id = ? AND status != ?
                """,
                (user_id, job_id, ApplicationStatus.WITHDRAWN.value),
            ).fetchone()
            return int(row["c"]) > 0

    def update_application_status(
        self,
        application_id: str,
        *,
        status: ApplicationStatus,
        updated_at: str,
        rejection_reason: str | None = None,
    ) -> None:
        with self.transaction():
            self.connection.execute(
                """
                UPDATE applications
                SET
                    status = ?,
                    updated_at = ?,
                    rejection_reason = COALESCE(?, rejection_reason)
                WHERE id = ?
                """,
                (status.value, updated_at, rejection_reason, application_id),
            )

    def list_applications(
        self,
        *,
        user_id: str | None = None,
        job_id: str | None = None,
        status: ApplicationStatus | None = None,
        offset: int,
        limit: int,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Application], int]:
        with self._lock:
            filters: list[str] = []
            params: list[Any] = []
            if user_id is not None:
                filters.append("user_id = ?")
                params.append(user_id)
            if job_id is not None:
                filters.append("job_id = ?")
                params.append(job_id)
            if status is not None:
                filters.append("status = ?")
                params.append(status.value)
            where = f" WHERE {' AND '.join(filters)}" if filters else ""
            total = int(
                self.connection.execute(
                    f"SELECT COUNT(1) AS c FROM applications{where}",
                    tuple(params),
                ).fetchone()["c"]
            )
            column = APPLICATION_SORT_COLUMNS.get(sort_by, "created_at")
            direction = "ASC" if sort_order.lower() == "asc" else "DESC"
            cursor = self.connection.execute(
                f"""
                SELECT {self._application_columns()}
                FROM applications{where}
                ORDER BY {column} {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            )
            return [self._to_application(row) for row in cursor.fetchall()], total

    def count_applications_by_status(self, user_id: str) -> dict[str, int]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT status, COUNT(1) AS c
                FROM applications
                WHERE user_id = ?
                GROUP BY status
                """,
                (user_id,),
            )
            return {row["status"]: int(row["c"]) for row in cursor.fetchall()}

    def count_applications_since(self, user_id: str, applied_after: str) -> int:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT COUNT(1) AS c
                FROM applications
                WHERE user_id = ? AND applied_date > ?
                """,
                (user_id, applied_after),
            ).fetchone()
            return int(row["c"])

    # Saved jobs

    def insert_saved_job(self, saved_job: SavedJob) -> None:
        with self.transaction():
            self.connection.execute(
                "INSERT INTO saved_jobs (id, user_id, job_id, saved_at) VALUES (?, ?, ?, ?)",
                (saved_job.id, saved_job.user_id, saved_job.job_id, saved_job.saved_at),
            )

    def get_saved_job(self, user_id: str, job_id: str) -> SavedJob | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM saved_jobs WHERE user_id = ? AND job_id = ?",
                (user_id, job_id),
            ).fetchone()
            if row is None:
                return None
            return SavedJob(**dict(row))

    def delete_saved_job(self, user_id: str, job_id: str) -> bool:
        with self.transaction():
            cursor = self.connection.execute(
                "DELETE FROM saved_jobs WHERE user_id = ? AND job_id = ?",
                (user_id, job_id),
            )
            return cursor.rowcount > 0

    def list_saved_jobs(
        self,
        user_id: str,
        *,
        offset: int,
        limit: int,
        sort_order: str = "desc",
    ) -> tuple[list[SavedJob], int]:
        with self._lock:
            total = self.count_saved_jobs(user_id)
            direction = "ASC" if sort_order.lower() == "asc" else "DESC"
            cursor = self.connection.execute(
                f"""
                SELECT id, user_id, job_id, saved_at
                FROM saved_jobs
                WHERE user_id = ?
                ORDER BY saved_at {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            )
            return [SavedJob(**dict(row)) for row in cursor.fetchall()], total

    def count_saved_jobs(self, user_id: str) -> int:
        with self._lock:
            row = self.connection.execute(
                "SELECT COUNT(1) AS c FROM saved_jobs WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            return int(row["c"])

    # Recommendation cache

    def replace_recommendations(self, user_id: str, entries: list[RecommendationEntry]) -> None:
        with self.transaction():
            self.connection.execute(
                "DELETE FROM recommendation_cache WHERE user_id = ?",
                (user_id,),
            )
            self.connection.executemany(
                """
                INSERT INTO recommendation_cache (
                    user_id,
                    job_id,
                    match_score,
                    match_reasons_json,
                    rank,
                    created_at,
                    expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id,
                        entry.job_id,
                        entry.match_score,
                        json.dumps(entry.match_reasons),
                        rank,
                        entry.created_at,
                        entry.expires_at,
                    )
                    for rank, entry in enumerate(entries, start=1)
                ],
            )

    def list_recommendations(
        self,
        user_id: str,
        *,
        now_iso: str,
        offset: int,
        limit: int,
    ) -> tuple[list[RecommendationEntry], int]:
        with self._lock:
            total = int(
                self.connection.execute(
                    """
                    SELECT COUNT(1) AS c
                    FROM recommendation_cache
                    WHERE user_id = ? AND expires_at > ?
                    """,
                    (user_id, now_iso),
                ).fetchone()["c"]
            )
            cursor = self.connection.execute(
                """
                SELECT user_id, job_id, match_score, match_reasons_json, created_at, expires_at
                FROM recommendation_cache
                WHERE user_id = ? AND expires_at > ?
                ORDER BY match_score DESC, rank ASC
                LIMIT ? OFFSET ?
                """,
                (user_id, now_iso, limit, offset),
            )
            return [self._to_recommendation(row) for row in cursor.fetchall()], total

    def delete_expired_recommendations(self, now_iso: str) -> int:
        with self.transaction():
            cursor = self.connection.execute(
                "DELETE FROM recommendation_cache WHERE expires_at <= ?",
                (now_iso,),
            )
            return cursor.rowcount

    # Feedback

    def insert_feedback(self, feedback: Feedback) -> None:
        with self.transaction():
            self.connection.execute(
                """
                INSERT INTO recommendation_feedback (id, user_id, job_id, feedback, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    feedback.id,
                    feedback.user_id,
                    feedback.job_id,
                    feedback.feedback.value,
                    feedback.reason,
                    feedback.created_at,
                ),
            )

    def list_feedback(self, user_id: str) -> list[Feedback]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id, user_id, job_id, feedback, reason, created_at
                FROM recommendation_feedback
                WHERE user_id = ?
                ORDER BY created_at, rowid
                """,
                (user_id,),
            )
            return [Feedback(**dict(row)) for row in cursor.fetchall()]

    @staticmethod
    def _application_columns() -> str:
        return """
            id,
            user_id,
            job_id,
            status,
            applied_date,
            resume_id,
            resume_file_name,
            resume_content_type,
            resume_data IS NOT NULL AS has_resume,
            cover_letter,
            rejection_reason,
            applicant_name,
            applicant_email,
            created_at,
            updated_at
        """

    def _to_application(self, row: sqlite3.Row) -> Application:
        values = dict(row)
        values["has_resume"] = bool(values["has_resume"])
        return Application(**values)

    def _to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            employer_id=row["employer_id"],
            company_id=row["company_id"],
            title=row["title"],
            company=row["company"],
            status=row["status"],
            location=row["location"],
            description=row["description"],
            skills=json.loads(row["skills_json"] or "[]"),
            seniority=row["seniority"],
            education_required=row["education_required"],
            is_remote=bool(row["is_remote"]),
            posted_date=row["posted_date"],
        )

    def _to_recommendation(self, row: sqlite3.Row) -> RecommendationEntry:
        return RecommendationEntry(
            user_id=row["user_id"],
            job_id=row["job_id"],
            match_score=int(row["match_score"]),
            match_reasons=json.loads(row["match_reasons_json"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
