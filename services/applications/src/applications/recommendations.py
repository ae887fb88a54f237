"""Recommendation cache and the service that keeps it current.

The cache is refreshed three ways: an explicit refresh, an inline recompute
when a read finds no live entries, and profile-change events. Entries expire
one hour after they are computed.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from common.utils import now_utc, page_offset, total_pages

from applications.directories import JobDirectory, ProfileDirectory
from applications.errors import InvalidFeedbackType, ProfileNotFound, Unavailable
from applications.models import (
    Feedback,
    FeedbackType,
    Job,
    MatchResult,
    PaginationInfo,
    ProfileChangeEvent,
    RecommendationEntry,
    RecommendationPage,
    RecommendedJob,
    RefreshResult,
)
from applications.repository import ApplicationRepository
from applications.scoring import rank_jobs

LOGGER = logging.getLogger("application_service.recommendations")

MIN_MATCH_THRESHOLD = 30
CACHE_TTL = timedelta(hours=1)

PROFILE_ENTITY_TYPES = frozenset({"SKILL", "EXPERIENCE", "EDUCATION"})
PROFILE_CHANGE_SUFFIXES = ("_ADDED", "_UPDATED", "_DELETED")


def is_recompute_trigger(event: ProfileChangeEvent) -> bool:
    event_type = (event.event_type or "").upper()
    entity_type = (event.entity_type or "").upper()
    return entity_type in PROFILE_ENTITY_TYPES and event_type.endswith(PROFILE_CHANGE_SUFFIXES)


class RecommendationCache:
    def __init__(self, repository: ApplicationRepository, *, ttl: timedelta = CACHE_TTL) -> None:
        self.repository = repository
        self.ttl = ttl

    def replace(
        self,
        user_id: str,
        ranked: list[tuple[Job, MatchResult]],
        computed_at: datetime,
    ) -> list[RecommendationEntry]:
        """Swap the user's entries for ``ranked`` in one transaction."""
        created_at = computed_at.isoformat()
        expires_at = (computed_at + self.ttl).isoformat()
        entries = [
            RecommendationEntry(
                user_id=user_id,
                job_id=job.id,
                match_score=result.score,
                match_reasons=result.reasons,
                created_at=created_at,
                expires_at=expires_at,
            )
            for job, result in ranked
        ]
        self.repository.replace_recommendations(user_id, entries)
        return entries

    def read(
        self,
        user_id: str,
        now: datetime,
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[RecommendationEntry], int]:
        return self.repository.list_recommendations(
            user_id,
            now_iso=now.isoformat(),
            offset=offset,
            limit=limit,
        )

    def purge_expired(self, now: datetime) -> int:
        return self.repository.delete_expired_recommendations(now.isoformat())


class RecommendationService:
    def __init__(
        self,
        repository: ApplicationRepository,
        profiles: ProfileDirectory,
        jobs: JobDirectory,
        *,
        cache: RecommendationCache | None = None,
        threshold: int = MIN_MATCH_THRESHOLD,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.repository = repository
        self.profiles = profiles
        self.jobs = jobs
        self.cache = cache or RecommendationCache(repository)
        self.threshold = threshold
        self.clock = clock
        self._locks_guard = threading.Lock()
        # user id -> [lock, number of threads holding or waiting on it]
        self._user_locks: dict[str, list] = {}

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            slot = self._user_locks.setdefault(user_id, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._user_locks[user_id]

    def recompute(self, user_id: str) -> int:
        """Rescore every published job for ``user_id`` and replace the cached set.

        Raises ``ProfileNotFound`` or ``Unavailable`` when a directory cannot
        answer; the existing cache is left untouched in that case.
        """
        with self._user_lock(user_id):
            profile = self.profiles.get_profile(user_id)
            jobs = self.jobs.list_published_jobs()
            now = self.clock()
            ranked = rank_jobs(profile, jobs, threshold=self.threshold, today=now.date())
            entries = self.cache.replace(user_id, ranked, now)
            purged = self.cache.purge_expired(now)

        LOGGER.info(
            json.dumps(
                {
                    "event": "recommendations_recomputed",
                    "user_id": user_id,
                    "jobs_scored": len(jobs),
                    "cached": len(entries),
                    "expired_purged": purged,
                }
            )
        )
        return len(entries)

    def refresh(self, user_id: str) -> RefreshResult:
        try:
            count = self.recompute(user_id)
        except (ProfileNotFound, Unavailable) as exc:
            LOGGER.warning(
                json.dumps(
                    {"event": "recommendation_refresh_failed", "user_id": user_id, "error": exc.message}
                )
            )
            return RefreshResult(
                success=False,
                count=0,
                message=f"Unable to refresh recommendations: {exc.message}",
                last_updated=self.clock().isoformat(),
            )
        return RefreshResult(
            success=True,
            count=count,
            message="Recommendations refreshed successfully",
            last_updated=self.clock().isoformat(),
        )

    def get_recommendations(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        refresh: bool = False,
    ) -> RecommendationPage:
        refresh_result = self.refresh(user_id) if refresh else None

        offset = page_offset(page, limit)
        entries, total = self.cache.read(user_id, self.clock(), offset=offset, limit=limit)
        if total == 0 and refresh_result is None:
            try:
                self.recompute(user_id)
            except (ProfileNotFound, Unavailable) as exc:
                LOGGER.warning(
                    json.dumps(
                        {"event": "inline_recompute_failed", "user_id": user_id, "error": exc.message}
                    )
                )
            else:
                entries, total = self.cache.read(user_id, self.clock(), offset=offset, limit=limit)

        return RecommendationPage(
            recommendations=[self._to_recommended_job(entry) for entry in entries],
            pagination=PaginationInfo(
                page=max(page, 1),
                limit=limit,
                total=total,
                total_pages=total_pages(total, limit),
            ),
            last_updated=max((entry.created_at for entry in entries), default=None),
            refresh=refresh_result,
        )

    def record_feedback(
        self,
        user_id: str,
        job_id: str,
        kind: str,
        reason: str | None = None,
    ) -> Feedback:
        try:
            feedback_type = FeedbackType((kind or "").strip().lower())
        except ValueError:
            allowed = ", ".join(item.value for item in FeedbackType)
            raise InvalidFeedbackType(
                f"Invalid feedback type: {kind}. Must be one of: {allowed}"
            ) from None

        feedback = Feedback(
            id=str(uuid.uuid4()),
            user_id=user_id,
            job_id=job_id,
            feedback=feedback_type,
            reason=reason,
            created_at=self.clock().isoformat(),
        )
        self.repository.insert_feedback(feedback)
        LOGGER.info(
            json.dumps(
                {
                    "event": "recommendation_feedback",
                    "user_id": user_id,
                    "job_id": job_id,
                    "feedback": feedback_type.value,
                }
            )
        )
        return feedback

    def handle_profile_event(self, event: ProfileChangeEvent) -> bool:
        """Recompute on skill, experience or education changes. Returns whether it did."""
        if not is_recompute_trigger(event):
            LOGGER.info(
                json.dumps(
                    {
                        "event": "profile_event_ignored",
                        "event_type": event.event_type,
                        "entity_type": event.entity_type,
                        "user_id": event.user_id,
                    }
                )
            )
            return False

        try:
            self.recompute(event.user_id)
        except (ProfileNotFound, Unavailable) as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "profile_event_recompute_failed",
                        "event_type": event.event_type,
                        "user_id": event.user_id,
                        "error": exc.message,
                    }
                )
            )
            return False
        return True

    def _to_recommended_job(self, entry: RecommendationEntry) -> RecommendedJob:
        try:
            job = self.jobs.get_job(entry.job_id)
        except Unavailable:
            job = None
        if job is None:
            return RecommendedJob(
                id=entry.job_id,
                match_score=entry.match_score,
                match_reasons=entry.match_reasons,
            )
        return RecommendedJob(
            id=job.id,
            title=job.title,
            company=job.company,
            company_id=job.company_id,
            location=job.location,
            is_remote=job.is_remote,
            experience_level=job.seniority,
            requirements=job.skills,
            posted_date=job.posted_date,
            match_score=entry.match_score,
            match_reasons=entry.match_reasons,
        )
