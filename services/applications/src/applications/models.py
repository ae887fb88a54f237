from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class ApplicationStatus(StrEnum):
    APPLIED = "APPLIED"
    RESUME_VIEWED = "RESUME_VIEWED"
    IN_REVIEW = "IN_REVIEW"
    SHORTLISTED = "SHORTLISTED"
    INTERVIEW = "INTERVIEW"
    OFFERED = "OFFERED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class JobStatus(StrEnum):
    PUBLISHED = "published"
    DRAFT = "draft"
    CLOSED = "closed"


class FeedbackType(StrEnum):
    RELEVANT = "relevant"
    NOT_RELEVANT = "not_relevant"
    ALREADY_APPLIED = "already_applied"
    NOT_INTERESTED = "not_interested"


class Job(BaseModel):
    id: str
    employer_id: str
    company_id: str | None = None
    title: str
    company: str | None = None
    status: str = JobStatus.PUBLISHED.value
    location: str | None = None
    description: str | None = None
    skills: list[str] = Field(default_factory=list)
    seniority: str | None = None
    education_required: str | None = None
    is_remote: bool = False
    posted_date: str | None = None

    @property
    def is_published(self) -> bool:
        return self.status.strip().lower() == JobStatus.PUBLISHED.value


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class ProfileSkill(CamelModel):
    id: str | None = None
    name: str | None = None
    category: str | None = None
    proficiency_level: str | None = None
    years_of_experience: int | None = None


class ProfileExperience(CamelModel):
    id: str | None = None
    company_name: str | None = None
    job_title: str | None = None
    location: str | None = None
    is_remote: bool | None = None
    start_date: str | None = None
    end_date: str | None = None
    is_current_position: bool | None = None
    employment_type: str | None = None


class ProfileEducation(CamelModel):
    id: str | None = None
    institution_name: str | None = None
    degree: str | None = None
    field_of_study: str | None = None
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    gpa: float | None = None


class Profile(CamelModel):
    id: str
    name: str | None = None
    email: str | None = None
    location: str | None = None
    open_to_remote: bool = False
    years_of_experience: int | None = None
    skills: list[ProfileSkill] = Field(default_factory=list)
    experience: list[ProfileExperience] = Field(default_factory=list)
    education: list[ProfileEducation] = Field(default_factory=list)

    @field_validator("open_to_remote", mode="before")
    @classmethod
    def _null_flag_is_false(cls, value):
        return False if value is None else value

    @field_validator("skills", "experience", "education", mode="before")
    @classmethod
    def _null_list_is_empty(cls, value):
        return [] if value is None else value


class Application(BaseModel):
    id: str
    user_id: str
    job_id: str
    status: ApplicationStatus
    applied_date: str
    resume_id: str | None = None
    resume_file_name: str | None = None
    resume_content_type: str | None = None
    has_resume: bool = False
    cover_letter: str | None = None
    rejection_reason: str | None = None
    applicant_name: str | None = None
    applicant_email: str | None = None
    created_at: str
    updated_at: str


class ResumeFile(BaseModel):
    data: bytes
    file_name: str
    content_type: str


class SubmitApplicationRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    cover_letter: str | None = Field(default=None, max_length=10000)
    applicant_name: str | None = Field(default=None, max_length=200)
    applicant_email: EmailStr | None = None
    resume_id: str | None = None
    resume_data: str | None = Field(default=None, description="Base64 encoded resume file")
    resume_file_name: str | None = None
    resume_content_type: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=2000)


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ApplicationPage(BaseModel):
    applications: list[Application]
    pagination: PaginationInfo


class ApplicationStats(BaseModel):
    total: int
    by_status: dict[str, int]
    this_week: int
    this_month: int
    interview_rate: float | None = None
    offer_rate: float | None = None


class SavedJob(BaseModel):
    id: str
    user_id: str
    job_id: str
    saved_at: str


class SavedJobPage(BaseModel):
    saved_jobs: list[SavedJob]
    pagination: PaginationInfo


class MatchResult(BaseModel):
    score: int = Field(..., ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)


class RecommendationEntry(BaseModel):
    user_id: str
    job_id: str
    match_score: int
    match_reasons: list[str]
    created_at: str
    expires_at: str


class RecommendedJob(BaseModel):
    id: str
    title: str | None = None
    company: str | None = None
    company_id: str | None = None
    location: str | None = None
    is_remote: bool | None = None
    experience_level: str | None = None
    requirements: list[str] = Field(default_factory=list)
    posted_date: str | None = None
    match_score: int
    match_reasons: list[str] = Field(default_factory=list)


class RefreshResult(BaseModel):
    success: bool
    count: int = 0
    message: str
    last_updated: str


class RecommendationPage(BaseModel):
    recommendations: list[RecommendedJob]
    pagination: PaginationInfo
    last_updated: str | None = None
    refresh: RefreshResult | None = None


class FeedbackRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    feedback: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=2000)


class Feedback(BaseModel):
    id: str
    user_id: str
    job_id: str
    feedback: FeedbackType
    reason: str | None = None
    created_at: str


class ProfileChangeEvent(BaseModel):
    event_type: str = Field(..., alias="eventType")
    entity_type: str | None = Field(default=None, alias="entityType")
    user_id: str = Field(..., alias="userId")

    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)


class ProfileEventAccepted(BaseModel):
    status: Literal["queued"]
    queued_events: int
    received_at: str


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
