from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import date
from pathlib import Path
from typing import Any

import pytest
from applications.errors import ProfileNotFound, ProfileUnavailable
from applications.models import Job, Profile, ProfileEducation, ProfileSkill
from applications.repository import ApplicationRepository


class RecordingEventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.messages: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_with: Exception | None = None

    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.messages.append((topic, key, payload))

    def event_types(self) -> list[str]:
        return [payload["eventType"] for _, _, payload in self.messages]


class StaticProfileDirectory:
    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.unavailable = False
        self.calls = 0

    def add(self, profile: Profile) -> Profile:
        self.profiles[profile.id] = profile
        return profile

    def get_profile(self, user_id: str) -> Profile:
        self.calls += 1
        if self.unavailable:
            raise ProfileUnavailable("Profile service is unavailable")
        profile = self.profiles.get(user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile not found for user: {user_id}")
        return profile


def build_job(job_id: str = "job-1", **overrides: Any) -> Job:
    values: dict[str, Any] = {
        "id": job_id,
        "employer_id": "employer-1",
        "company_id": "company-1",
        "title": "Backend Engineer",
        "company": "Acme",
        "status": "published",
        "location": "NYC",
        "skills": ["java", "spring", "docker"],
        "seniority": "senior",
        "is_remote": False,
        "posted_date": date.today().isoformat(),
    }
    values.update(overrides)
    return Job(**values)


def build_profile(user_id: str = "user-1", **overrides: Any) -> Profile:
    values: dict[str, Any] = {
        "id": user_id,
        "name": "Ada Applicant",
        "email": "ada@example.com",
        "location": "NYC",
        "open_to_remote": False,
        "years_of_experience": 6,
        "skills": [ProfileSkill(name="Java"), ProfileSkill(name="Spring")],
        "education": [ProfileEducation(degree="BSc", field_of_study="Computer Science")],
    }
    values.update(overrides)
    return Profile(**values)


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def profile_directory() -> StaticProfileDirectory:
    return StaticProfileDirectory()


@pytest.fixture
def repository(tmp_path: Path) -> Iterator[ApplicationRepository]:
    repo = ApplicationRepository(database_path=str(tmp_path / "applications.sqlite3"))
    repo.connect()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture
def job_factory():
    return build_job


@pytest.fixture
def profile_factory():
    return build_profile
