from __future__ import annotations

import json
import logging
import sqlite3
from typing import Protocol

import httpx
from pydantic import ValidationError

from applications.errors import JobDirectoryUnavailable, ProfileNotFound, ProfileUnavailable
from applications.models import Job, JobStatus, Profile
from applications.repository import ApplicationRepository

LOGGER = logging.getLogger("application_service.directories")


class JobDirectory(Protocol):
    def get_job(self, job_id: str) -> Job | None: ...

    def list_published_jobs(self) -> list[Job]: ...


class ProfileDirectory(Protocol):
    def get_profile(self, user_id: str) -> Profile: ...


class StoredJobDirectory:
    """Job lookups against the job table owned by the job-posting side of the service."""

    def __init__(self, repository: ApplicationRepository) -> None:
        self.repository = repository

    def get_job(self, job_id: str) -> Job | None:
        try:
            return self.repository.get_job(job_id)
        except sqlite3.Error as exc:
            raise JobDirectoryUnavailable(f"Job lookup failed: {exc}") from exc

    def list_published_jobs(self) -> list[Job]:
        try:
            return self.repository.list_jobs_by_status(JobStatus.PUBLISHED.value)
        except sqlite3.Error as exc:
            raise JobDirectoryUnavailable(f"Job listing failed: {exc}") from exc


class HttpProfileDirectory:
    def __init__(self, base_url: str, *, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_profile(self, user_id: str) -> Profile:
        url = f"{self.base_url}/api/v1/auth/profile/full/{user_id}"
        try:
            response = httpx.get(url, timeout=self.timeout)
        except httpx.RequestError as exc:
            LOGGER.warning(
                json.dumps({"event": "profile_fetch_failed", "user_id": user_id, "error": str(exc)})
            )
            raise ProfileUnavailable("Profile service is unavailable") from exc

        if response.status_code == 404:
            raise ProfileNotFound(f"Profile not found for user: {user_id}")
        if response.status_code >= 400:
            raise ProfileUnavailable(
                f"Profile service returned status {response.status_code}"
            )

        try:
            profile = Profile.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProfileUnavailable("Profile service returned an invalid payload") from exc

        LOGGER.info(
            json.dumps(
                {
                    "event": "profile_fetched",
                    "user_id": user_id,
                    "skills": len(profile.skills),
                    "experience": len(profile.experience),
                    "education": len(profile.education),
                }
            )
        )
        return profile
