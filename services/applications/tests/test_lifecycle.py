from __future__ import annotations

import base64
from collections.abc import Iterator
from datetime import UTC, datetime

import pytest
from applications.directories import StoredJobDirectory
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
)
from applications.events import EventRelay
from applications.lifecycle import EMPLOYER_TRANSITIONS, ApplicationLifecycle
from applications.models import ApplicationStatus, SubmitApplicationRequest

pytestmark = pytest.mark.unit

RESUME_BYTES = b"%PDF-1.4 resume"


@pytest.fixture
def relay(event_bus) -> Iterator[EventRelay]:
    relay = EventRelay(event_bus)
    try:
        yield relay
    finally:
        relay.close()


@pytest.fixture
def lifecycle(repository, relay, job_factory) -> ApplicationLifecycle:
    repository.upsert_job(job_factory("job-1"))
    repository.upsert_job(job_factory("job-draft", status="DRAFT"))
    return ApplicationLifecycle(
        repository,
        StoredJobDirectory(repository),
        relay,
        clock=lambda: datetime(2026, 3, 10, 12, 0, tzinfo=UTC),
    )


def details(**overrides) -> SubmitApplicationRequest:
    values = {
        "job_id": "job-1",
        "applicant_name": "Ada Applicant",
        "applicant_email": "ada@example.com",
        "cover_letter": "Hello",
        "resume_data": base64.b64encode(RESUME_BYTES).decode(),
    }
    values.update(overrides)
    return SubmitApplicationRequest(**values)


def submit(lifecycle: ApplicationLifecycle, user_id: str = "user-1", **overrides):
    payload = details(**overrides)
    return lifecycle.submit(payload.job_id, user_id, payload)


def advance(lifecycle: ApplicationLifecycle, application_id: str, *statuses: ApplicationStatus) -> None:
    for status in statuses:
        lifecycle.update_status(application_id, "employer-1", status)


def test_submit_creates_applied_application_and_event(lifecycle, relay, event_bus) -> None:
    application = submit(lifecycle)
    relay.flush()

    assert application.status == ApplicationStatus.APPLIED
    assert application.applied_date == "2026-03-10"
    assert application.has_resume is True
    assert application.resume_file_name == "resume.pdf"
    assert application.resume_content_type == "application/pdf"
    assert application.resume_id

    [(topic, key, payload)] = event_bus.messages
    assert topic == "application-events"
    assert key == "user-1-job-1"
    assert payload["eventType"] == "APPLICATION_SUBMITTED"
    assert payload["applicationId"] == application.id
    assert payload["jobTitle"] == "Backend Engineer"
    assert payload["employerId"] == "employer-1"
    assert payload["applicantEmail"] == "ada@example.com"
    assert payload["appliedDate"] == "2026-03-10"


def test_submit_rejects_missing_and_inactive_jobs(lifecycle, event_bus, relay) -> None:
    with pytest.raises(JobNotFound):
        submit(lifecycle, job_id="job-missing")
    with pytest.raises(JobNotActive):
        submit(lifecycle, job_id="job-draft")
    relay.flush()

    assert event_bus.messages == []


def test_submit_rejects_undecodable_resume(lifecycle) -> None:
    with pytest.raises(InvalidResumeData):
        submit(lifecycle, resume_data="***not-base64***")


def test_double_submit_fails_and_publishes_once(lifecycle, relay, event_bus) -> None:
    submit(lifecycle)
    with pytest.raises(AlreadyApplied):
        submit(lifecycle)
    relay.flush()

    assert event_bus.event_types() == ["APPLICATION_SUBMITTED"]


def test_resubmit_allowed_after_withdrawal(lifecycle) -> None:
    first = submit(lifecycle)
    lifecycle.withdraw(first.id, "user-1")

    second = submit(lifecycle)

    assert second.id != first.id
    assert second.status == ApplicationStatus.APPLIED


def test_view_resume_moves_applied_to_resume_viewed_once(lifecycle, relay, event_bus, repository) -> None:
    application = submit(lifecycle)

    first = lifecycle.view_resume(application.id, "employer-1")
    second = lifecycle.view_resume(application.id, "employer-1")
    relay.flush()

    assert first.data == RESUME_BYTES == second.data
    assert first.file_name == "resume.pdf"
    assert repository.get_application(application.id).status == ApplicationStatus.RESUME_VIEWED
    assert event_bus.event_types() == ["APPLICATION_SUBMITTED", "RESUME_VIEWED", "RESUME_VIEWED"]


def test_view_resume_keeps_later_status(lifecycle, repository) -> None:
    application = submit(lifecycle)
    advance(lifecycle, application.id, ApplicationStatus.IN_REVIEW)

    lifecycle.view_resume(application.id, "employer-1")

    assert repository.get_application(application.id).status == ApplicationStatus.IN_REVIEW


def test_view_resume_checks_ownership_and_presence(lifecycle, relay, event_bus) -> None:
    application = submit(lifecycle)
    without_resume = submit(lifecycle, user_id="user-2", resume_data=None)

    with pytest.raises(Forbidden):
        lifecycle.view_resume(application.id, "employer-2")
    with pytest.raises(ApplicationNotFound):
        lifecycle.view_resume("missing", "employer-1")
    with pytest.raises(ResumeNotFound):
        lifecycle.view_resume(without_resume.id, "employer-1")
    relay.flush()

    assert "RESUME_VIEWED" not in event_bus.event_types()


def test_full_hiring_path_follows_transition_table(lifecycle, relay, event_bus) -> None:
    application = submit(lifecycle)
    advance(
        lifecycle,
        application.id,
        ApplicationStatus.IN_REVIEW,
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.INTERVIEW,
        ApplicationStatus.OFFERED,
    )
    relay.flush()

    updates = [payload for _, _, payload in event_bus.messages[1:]]
    assert [(item["previousStatus"], item["status"]) for item in updates] == [
        ("APPLIED", "IN_REVIEW"),
        ("IN_REVIEW", "SHORTLISTED"),
        ("SHORTLISTED", "INTERVIEW"),
        ("INTERVIEW", "OFFERED"),
    ]


@pytest.mark.parametrize("current", list(ApplicationStatus))
def test_only_table_transitions_are_accepted(lifecycle, repository, current: ApplicationStatus) -> None:
    application = submit(lifecycle)
    for target in ApplicationStatus:
        repository.update_application_status(
            application.id, status=current, updated_at="2026-03-10T00:00:00+00:00"
        )
        if target in EMPLOYER_TRANSITIONS[current]:
            updated = lifecycle.update_status(application.id, "employer-1", target)
            assert updated.status == target
        else:
            with pytest.raises(InvalidTransition):
                lifecycle.update_status(application.id, "employer-1", target)
            assert repository.get_application(application.id).status == current


def test_withdrawn_is_never_reachable_through_update_status(lifecycle) -> None:
    application = submit(lifecycle)

    with pytest.raises(InvalidTransition, match="withdraw endpoint"):
        lifecycle.update_status(application.id, "employer-1", "WITHDRAWN")


def test_unknown_status_name_is_an_invalid_transition(lifecycle) -> None:
    application = submit(lifecycle)

    with pytest.raises(InvalidTransition):
        lifecycle.update_status(application.id, "employer-1", "HIRED")


def test_update_status_checks_ownership_first(lifecycle) -> None:
    application = submit(lifecycle)

    with pytest.raises(Forbidden):
        lifecycle.update_status(application.id, "employer-2", "WITHDRAWN")
    with pytest.raises(ApplicationNotFound):
        lifecycle.update_status("missing", "employer-1", "IN_REVIEW")


def test_rejection_persists_reason(lifecycle, repository) -> None:
    application = submit(lifecycle)

    rejected = lifecycle.update_status(
        application.id, "employer-1", "rejected", reason="Position filled"
    )

    assert rejected.status == ApplicationStatus.REJECTED
    assert repository.get_application(application.id).rejection_reason == "Position filled"


def test_reason_is_ignored_for_non_rejections(lifecycle, repository) -> None:
    application = submit(lifecycle)

    lifecycle.update_status(application.id, "employer-1", "IN_REVIEW", reason="looks good")

    assert repository.get_application(application.id).rejection_reason is None


def test_withdraw_rules(lifecycle, relay, event_bus) -> None:
    application = submit(lifecycle)

    with pytest.raises(Forbidden):
        lifecycle.withdraw(application.id, "user-2")

    withdrawn = lifecycle.withdraw(application.id, "user-1")
    assert withdrawn.status == ApplicationStatus.WITHDRAWN

    with pytest.raises(CannotWithdraw):
        lifecycle.withdraw(application.id, "user-1")
    relay.flush()

    assert event_bus.event_types() == ["APPLICATION_SUBMITTED", "APPLICATION_WITHDRAWN"]


@pytest.mark.parametrize("terminal", ["OFFERED", "REJECTED"])
def test_cannot_withdraw_terminal_application(lifecycle, repository, terminal: str) -> None:
    application = submit(lifecycle)
    repository.update_application_status(
        application.id, status=ApplicationStatus(terminal), updated_at="2026-03-10T00:00:00+00:00"
    )

    with pytest.raises(CannotWithdraw):
        lifecycle.withdraw(application.id, "user-1")


def test_get_application_visible_to_applicant_and_owner_only(lifecycle) -> None:
    application = submit(lifecycle)

    assert lifecycle.get_application(application.id, "user-1").id == application.id
    assert lifecycle.get_application(application.id, "employer-1").id == application.id
    with pytest.raises(Forbidden):
        lifecycle.get_application(application.id, "someone-else")


def test_list_queries_paginate_and_filter(lifecycle) -> None:
    for index in range(3):
        submit(lifecycle, user_id=f"user-{index}")
    first = lifecycle.list_for_job("job-1", "employer-1", page=1, limit=2)
    second = lifecycle.list_for_job("job-1", "employer-1", page=2, limit=2)
    advance(lifecycle, first.applications[0].id, ApplicationStatus.IN_REVIEW)

    assert first.pagination.total == 3
    assert first.pagination.total_pages == 2
    assert len(first.applications) == 2
    assert len(second.applications) == 1
    assert lifecycle.list_for_job("job-1", "employer-1", status="in_review").pagination.total == 1
    assert lifecycle.list_for_applicant("user-0").pagination.total == 1

    with pytest.raises(Forbidden):
        lifecycle.list_for_job("job-1", "employer-2")
    with pytest.raises(InvalidStatus):
        lifecycle.list_for_job("job-1", "employer-1", status="HIRED")


def test_stats_report_counts_and_rates(lifecycle) -> None:
    empty = lifecycle.stats("user-1")
    assert empty.total == 0
    assert empty.interview_rate is None

    first = submit(lifecycle)
    lifecycle.withdraw(first.id, "user-1")
    second = submit(lifecycle)
    advance(
        lifecycle,
        second.id,
        ApplicationStatus.IN_REVIEW,
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.INTERVIEW,
    )

    stats = lifecycle.stats("user-1")

    assert stats.total == 2
    assert stats.by_status == {"WITHDRAWN": 1, "INTERVIEW": 1}
    assert stats.this_week == 2
    assert stats.this_month == 2
    assert stats.interview_rate == 50.0
    assert stats.offer_rate == 0.0
