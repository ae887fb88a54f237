"""Application status state machine.

Every mutation runs inside one repository transaction. Lifecycle events are
staged on that transaction and handed to the event relay only after commit,
so a rolled back mutation never reaches the event bus.
"""

from __future__ import annotations

import base64
import binascii
import calendar
import json
import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta

from common.utils import now_utc, page_offset, total_pages

from applications.directories import JobDirectory
from applications.errors import (
    AlreadyApplied,
    ApplicationNotFound,
    CannotWithdraw,
    Forbidden,
    InvalidResumeData,
    InvalidStatus,
    InvalidTransition,
    JobNotActive,
    JobNotFound,
    ResumeNotFound,
    Unavailable,
)
from applications.events import (
    ApplicationStatusUpdated,
    ApplicationSubmitted,
    ApplicationWithdrawn,
    EventRelay,
    ResumeViewed,
    event_context,
)
from applications.models import (
    Application,
    ApplicationPage,
    ApplicationStats,
    ApplicationStatus,
    Job,
    PaginationInfo,
    ResumeFile,
    SubmitApplicationRequest,
)
from applications.repository import ApplicationRepository

LOGGER = logging.getLogger("application_service.lifecycle")

DEFAULT_RESUME_FILE_NAME = "resume.pdf"
DEFAULT_RESUME_CONTENT_TYPE = "application/pdf"

EMPLOYER_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.APPLIED: frozenset(
        {ApplicationStatus.IN_REVIEW, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.RESUME_VIEWED: frozenset(
        {ApplicationStatus.IN_REVIEW, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.IN_REVIEW: frozenset(
        {ApplicationStatus.SHORTLISTED, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.SHORTLISTED: frozenset(
        {ApplicationStatus.INTERVIEW, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.INTERVIEW: frozenset(
        {ApplicationStatus.OFFERED, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.OFFERED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.WITHDRAWN: frozenset(),
}
TERMINAL_STATUSES = frozenset(
    {ApplicationStatus.OFFERED, ApplicationStatus.REJECTED, ApplicationStatus.WITHDRAWN}
)


def parse_status(value: str | ApplicationStatus) -> ApplicationStatus:
    if isinstance(value, ApplicationStatus):
        return value
    try:
        return ApplicationStatus(value.strip().upper())
    except ValueError:
        raise InvalidTransition(f"Unknown application status: {value}") from None


def _status_filter(value: str | None) -> ApplicationStatus | None:
    if not value:
        return None
    try:
        return ApplicationStatus(value.strip().upper())
    except ValueError:
        raise InvalidStatus(f"Unknown application status: {value}") from None


def validate_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if target == ApplicationStatus.WITHDRAWN:
        raise InvalidTransition("Cannot set status to WITHDRAWN. Use the withdraw endpoint.")
    if target not in EMPLOYER_TRANSITIONS[current]:
        raise InvalidTransition(f"Invalid status transition from {current} to {target}")


def decode_resume(details: SubmitApplicationRequest) -> tuple[bytes | None, str | None, str | None]:
    if not details.resume_data:
        return None, None, None
    try:
        data = base64.b64decode(details.resume_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidResumeData("Failed to decode resume data") from exc
    return (
        data,
        details.resume_file_name or DEFAULT_RESUME_FILE_NAME,
        details.resume_content_type or DEFAULT_RESUME_CONTENT_TYPE,
    )


def _one_month_before(day: date) -> date:
    year, month = (day.year, day.month - 1) if day.month > 1 else (day.year - 1, 12)
    return day.replace(year=year, month=month, day=min(day.day, calendar.monthrange(year, month)[1]))


def _rate(count: int, total: int) -> float | None:
    if total == 0:
        return None
    return round(count / total * 100, 2)


class ApplicationLifecycle:
    def __init__(
        self,
        repository: ApplicationRepository,
        jobs: JobDirectory,
        relay: EventRelay,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.relay = relay
        self.clock = clock

    def submit(
        self,
        job_id: str,
        applicant_id: str,
        details: SubmitApplicationRequest,
    ) -> Application:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job not found with ID: {job_id}")
        if not job.is_published:
            raise JobNotActive("Cannot apply to job that is not active")

        resume_data, resume_file_name, resume_content_type = decode_resume(details)
        resume_id = details.resume_id
        if resume_data is not None and not resume_id:
            resume_id = str(uuid.uuid4())

        now = self.clock()
        application = Application(
            id=str(uuid.uuid4()),
            user_id=applicant_id,
            job_id=job_id,
            status=ApplicationStatus.APPLIED,
            applied_date=now.date().isoformat(),
            resume_id=resume_id,
            resume_file_name=resume_file_name,
            resume_content_type=resume_content_type,
            has_resume=resume_data is not None,
            cover_letter=details.cover_letter,
            applicant_name=details.applicant_name,
            applicant_email=str(details.applicant_email) if details.applicant_email else None,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        )

        try:
            with self.repository.transaction() as unit:
                if self.repository.has_active_application(applicant_id, job_id):
                    raise AlreadyApplied("User has already applied for this job")
                self.repository.insert_application(application, resume_data)
                self.relay.stage(
                    unit,
                    ApplicationSubmitted(
                        **event_context(application, job),
                        status=application.status,
                        resume_id=application.resume_id,
                        applied_date=application.applied_date,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise AlreadyApplied("User has already applied for this job") from exc

        LOGGER.info(
            json.dumps(
                {
                    "event": "application_submitted",
                    "application_id": application.id,
                    "job_id": job_id,
                    "user_id": applicant_id,
                }
            )
        )
        return application

    def view_resume(self, application_id: str, employer_id: str) -> ResumeFile:
        with self.repository.transaction() as unit:
            application = self._get_or_raise(application_id)
            job = self._owned_job(application, employer_id)

            resume = self.repository.get_resume(application_id)
            if resume is None:
                raise ResumeNotFound(f"No resume stored for application: {application_id}")

            if application.status == ApplicationStatus.APPLIED:
                application = self._transition(application, ApplicationStatus.RESUME_VIEWED)

            self.relay.stage(
                unit,
                ResumeViewed(**event_context(application, job), status=application.status),
            )

        data, file_name, content_type = resume
        return ResumeFile(
            data=data,
            file_name=file_name or DEFAULT_RESUME_FILE_NAME,
            content_type=content_type or DEFAULT_RESUME_CONTENT_TYPE,
        )

    def withdraw(self, application_id: str, applicant_id: str) -> Application:
        with self.repository.transaction() as unit:
            application = self._get_or_raise(application_id)
            if application.user_id != applicant_id:
                raise Forbidden("User does not have permission to withdraw this application")
            if application.status in TERMINAL_STATUSES:
                raise CannotWithdraw(
                    f"Cannot withdraw application in status: {application.status}"
                )

            job = self.jobs.get_job(application.job_id)
            application = self._transition(application, ApplicationStatus.WITHDRAWN)
            self.relay.stage(
                unit,
                ApplicationWithdrawn(**event_context(application, job), status=application.status),
            )
        return application

    def update_status(
        self,
        application_id: str,
        employer_id: str,
        target_status: str | ApplicationStatus,
        reason: str | None = None,
    ) -> Application:
        with self.repository.transaction() as unit:
            application = self._get_or_raise(application_id)
            job = self._owned_job(application, employer_id)
            target = parse_status(target_status)
            previous = application.status
            validate_transition(previous, target)

            rejection_reason = reason if target == ApplicationStatus.REJECTED else None
            application = self._transition(application, target, rejection_reason=rejection_reason)
            self.relay.stage(
                unit,
                ApplicationStatusUpdated(
                    **event_context(application, job),
                    status=target,
                    previous_status=previous,
                ),
            )
        return application

    def get_application(self, application_id: str, caller_id: str) -> Application:
        application = self._get_or_raise(application_id)
        if application.user_id == caller_id:
            return application
        try:
            job = self.jobs.get_job(application.job_id)
        except Unavailable:
            LOGGER.warning(
                json.dumps(
                    {"event": "employer_check_failed", "application_id": application_id}
                )
            )
            job = None
        if job is not None and job.employer_id == caller_id:
            return application
        raise Forbidden("User does not have access to this application")

    def list_for_applicant(
        self,
        user_id: str,
        *,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> ApplicationPage:
        applications, total = self.repository.list_applications(
            user_id=user_id,
            status=_status_filter(status),
            offset=page_offset(page, limit),
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return self._page(applications, total, page, limit)

    def list_for_job(
        self,
        job_id: str,
        employer_id: str,
        *,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> ApplicationPage:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job not found with ID: {job_id}")
        if job.employer_id != employer_id:
            raise Forbidden("Not authorized to view applications for this job")

        applications, total = self.repository.list_applications(
            job_id=job_id,
            status=_status_filter(status),
            offset=page_offset(page, limit),
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return self._page(applications, total, page, limit)

    def stats(self, user_id: str) -> ApplicationStats:
        by_status = self.repository.count_applications_by_status(user_id)
        total = sum(by_status.values())
        today = self.clock().date()
        this_week = self.repository.count_applications_since(
            user_id, (today - timedelta(weeks=1)).isoformat()
        )
        this_month = self.repository.count_applications_since(
            user_id, _one_month_before(today).isoformat()
        )
        return ApplicationStats(
            total=total,
            by_status=by_status,
            this_week=this_week,
            this_month=this_month,
            interview_rate=_rate(by_status.get(ApplicationStatus.INTERVIEW.value, 0), total),
            offer_rate=_rate(by_status.get(ApplicationStatus.OFFERED.value, 0), total),
        )

    def _get_or_raise(self, application_id: str) -> Application:
        application = self.repository.get_application(application_id)
        if application is None:
            raise ApplicationNotFound(f"Application not found with ID: {application_id}")
        return application

    def _owned_job(self, application: Application, employer_id: str) -> Job:
        job = self.jobs.get_job(application.job_id)
        if job is None:
            raise JobNotFound(f"Job not found with ID: {application.job_id}")
        if job.employer_id != employer_id:
            raise Forbidden("Employer does not own the job for this application")
        return job

    def _transition(
        self,
        application: Application,
        target: ApplicationStatus,
        *,
        rejection_reason: str | None = None,
    ) -> Application:
        updated_at = self.clock().isoformat()
        self.repository.update_application_status(
            application.id,
            status=target,
            updated_at=updated_at,
            rejection_reason=rejection_reason,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "application_status_changed",
                    "application_id": application.id,
                    "from": application.status.value,
                    "to": target.value,
                }
            )
        )
        changes: dict[str, object] = {"status": target, "updated_at": updated_at}
        if rejection_reason is not None:
            changes["rejection_reason"] = rejection_reason
        return application.model_copy(update=changes)

    @staticmethod
    def _page(applications: list[Application], total: int, page: int, limit: int) -> ApplicationPage:
        return ApplicationPage(
            applications=applications,
            pagination=PaginationInfo(
                page=max(page, 1),
                limit=limit,
                total=total,
                total_pages=total_pages(total, limit),
            ),
        )
