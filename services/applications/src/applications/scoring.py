"""Profile-to-job match scoring.

Five additive components: skills (40), experience (20), education (20),
location (15) and recency (10). Each component appends exactly one reason,
in that order.
"""

from __future__ import annotations

from datetime import date

from common.utils import casefold_set, now_utc, parse_iso_date

from applications.models import Job, MatchResult, Profile

SKILL_WEIGHT = 40
EXPERIENCE_WEIGHT = 20
EDUCATION_WEIGHT = 20
LOCATION_WEIGHT = 15
RECENCY_WEIGHT = 10
MAX_SCORE = 100


def _skill_score(profile: Profile, job: Job, reasons: list[str]) -> int:
    required = casefold_set(job.skills)
    if not required:
        reasons.append("No specific skills required")
        return SKILL_WEIGHT

    held = set(casefold_set([skill.name for skill in profile.skills if skill.name]))
    if not held:
        reasons.append("No skills on profile")
        return 0

    matched = sum(1 for skill in required if skill in held)
    ratio = matched / len(required)
    reasons.append(f"Skills match: {matched}/{len(required)} required ({ratio * 100:.0f}%)")
    return SKILL_WEIGHT * matched // len(required)


def _experience_points(seniority: str, years: int) -> int:
    if seniority == "entry":
        if years <= 2:
            return 20
        if years <= 5:
            return 15
        return 10 if years <= 8 else 5
    if seniority == "mid":
        if 2 <= years <= 5:
            return 20
        if 5 < years <= 10:
            return 15
        return 12 if years > 10 else 8
    if seniority == "senior":
        if 5 <= years <= 10:
            return 20
        return 18 if years > 10 else 6
    if seniority in ("lead", "executive"):
        if years >= 10:
            return 20
        return 12 if years >= 5 else 5
    return 10


def _experience_score(profile: Profile, job: Job, reasons: list[str]) -> int:
    seniority = (job.seniority or "").strip()
    if not seniority:
        reasons.append("No experience level specified")
        return EXPERIENCE_WEIGHT

    years = profile.years_of_experience or 0
    reasons.append(f"Experience level: {seniority} ({years} years)")
    return _experience_points(seniority.lower(), years)


def _education_score(profile: Profile, job: Job, reasons: list[str]) -> int:
    if not (job.education_required or "").strip():
        reasons.append("No education requirements")
        return EDUCATION_WEIGHT
    if not profile.education:
        reasons.append("No education on profile")
        return 0
    if any((entry.degree or "").strip() for entry in profile.education):
        reasons.append("Education requirements met")
        return EDUCATION_WEIGHT
    reasons.append("Missing education requirements")
    return 0


def _location_score(profile: Profile, job: Job, reasons: list[str]) -> int:
    if job.is_remote:
        if profile.open_to_remote:
            reasons.append("Remote position (matches your preference)")
            return LOCATION_WEIGHT
        reasons.append("Remote position")
        return 8

    user_location = profile.location
    job_location = job.location
    if user_location is not None and job_location is not None:
        if user_location.lower() == job_location.lower():
            reasons.append(f"Location match: {user_location}")
            return LOCATION_WEIGHT
        if job_location.lower() in user_location.lower():
            reasons.append(f"Location partial match: {user_location}")
            return 10

    reasons.append("Location mismatch")
    return 5


def _recency_score(job: Job, today: date, reasons: list[str]) -> int:
    posted = parse_iso_date(job.posted_date)
    if posted is None:
        reasons.append("Posting date unknown")
        return 0

    age_days = (today - posted).days
    if age_days <= 1:
        reasons.append("Posted today")
        return RECENCY_WEIGHT
    if age_days <= 7:
        reasons.append("Posted this week")
        return 8
    if age_days <= 14:
        reasons.append("Posted recently")
        return 5
    reasons.append("Posted over two weeks ago")
    return 2


def score_match(profile: Profile, job: Job, *, today: date | None = None) -> MatchResult:
    """Score how well ``profile`` fits ``job``.

    ``today`` anchors the recency component; it defaults to the current UTC
    date, so pass it explicitly when the result must be reproducible.
    """
    today = today or now_utc().date()
    reasons: list[str] = []
    total = (
        _skill_score(profile, job, reasons)
        + _experience_score(profile, job, reasons)
        + _education_score(profile, job, reasons)
        + _location_score(profile, job, reasons)
        + _recency_score(job, today, reasons)
    )
    return MatchResult(score=min(total, MAX_SCORE), reasons=reasons)


def rank_jobs(
    profile: Profile,
    jobs: list[Job],
    *,
    threshold: int = 0,
    today: date | None = None,
) -> list[tuple[Job, MatchResult]]:
    """Score every job, drop those under ``threshold`` and order by score, highest first.

    Ties keep the input order.
    """
    today = today or now_utc().date()
    ranked = [(job, score_match(profile, job, today=today)) for job in jobs]
    ranked = [item for item in ranked if item[1].score >= threshold]
    ranked.sort(key=lambda item: item[1].score, reverse=True)
    return ranked
