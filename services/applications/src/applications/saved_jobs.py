from __future__ import annotations

import json
import logging
import sqlite3
import uuid

from common.utils import now_utc_iso, page_offset, total_pages

from applications.directories import JobDirectory
from applications.errors import JobAlreadySaved, JobNotFound, SavedJobNotFound
from applications.models import PaginationInfo, SavedJob, SavedJobPage
from applications.repository import ApplicationRepository

LOGGER = logging.getLogger("application_service.saved_jobs")


class SavedJobs:
    """Per-user job bookmarks."""

    def __init__(self, repository: ApplicationRepository, jobs: JobDirectory) -> None:
        self.repository = repository
        self.jobs = jobs

    def save(self, user_id: str, job_id: str) -> SavedJob:
        if self.jobs.get_job(job_id) is None:
            raise JobNotFound(f"Job not found with ID: {job_id}")

        saved_job = SavedJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            job_id=job_id,
            saved_at=now_utc_iso(),
        )
        try:
            with self.repository.transaction():
                if self.repository.get_saved_job(user_id, job_id) is not None:
                    raise JobAlreadySaved("Job is already saved")
                self.repository.insert_saved_job(saved_job)
        except sqlite3.IntegrityError as exc:
            raise JobAlreadySaved("Job is already saved") from exc

        LOGGER.info(json.dumps({"event": "job_saved", "user_id": user_id, "job_id": job_id}))
        return saved_job

    def unsave(self, user_id: str, job_id: str) -> None:
        if not self.repository.delete_saved_job(user_id, job_id):
            raise SavedJobNotFound("Job is not in saved list")
        LOGGER.info(json.dumps({"event": "job_unsaved", "user_id": user_id, "job_id": job_id}))

    def list_saved(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        sort_order: str = "desc",
    ) -> SavedJobPage:
        saved_jobs, total = self.repository.list_saved_jobs(
            user_id,
            offset=page_offset(page, limit),
            limit=limit,
            sort_order=sort_order,
        )
        return SavedJobPage(
            saved_jobs=saved_jobs,
            pagination=PaginationInfo(
                page=max(page, 1),
                limit=limit,
                total=total,
                total_pages=total_pages(total, limit),
            ),
        )

    def count(self, user_id: str) -> int:
        return self.repository.count_saved_jobs(user_id)
