from __future__ import annotations

from pathlib import Path

import pytest
from applications.main import create_app
from applications.models import ProfileSkill
from fastapi.testclient import TestClient
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd


@scenario("features/recommendations.feature", "Recommendations are computed on a cold cache")
def test_recommendations_computed_on_cold_cache() -> None:
    pass


@scenario("features/recommendations.feature", "Unknown feedback is rejected")
def test_unknown_feedback_rejected() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path, event_bus, profile_directory):
    app = create_app(
        database_path=str(tmp_path / "applications.sqlite3"),
        event_bus=event_bus,
        profile_directory=profile_directory,
    )
    with TestClient(app) as test_client:
        yield test_client


@given(parsers.parse('an applicant profile for "{user_id}" with skills "{skills}"'))
def given_profile(profile_directory, profile_factory, user_id: str, skills: str) -> None:
    profile_directory.add(
        profile_factory(user_id, skills=[ProfileSkill(name=name) for name in skills.split(",")])
    )


@given(parsers.parse('published jobs requiring "{first}" and "{second}"'))
def given_jobs(client: TestClient, job_factory, first: str, second: str) -> None:
    repository = client.app.state.repository
    repository.upsert_job(job_factory("job-1", skills=first.split(",")))
    repository.upsert_job(job_factory("job-2", skills=second.split(",")))


@when(parsers.parse('"{user_id}" requests recommendations'), target_fixture="response")
def when_recommendations_requested(client: TestClient, user_id: str):
    return client.get("/api/v1/jobs/recommendations", headers={"x-user-id": user_id})


@when(
    parsers.parse('"{user_id}" sends feedback "{kind}" for the first job'),
    target_fixture="response",
)
def when_feedback_sent(client: TestClient, user_id: str, kind: str):
    return client.post(
        "/api/v1/jobs/recommendations/feedback",
        json={"job_id": "job-1", "feedback": kind},
        headers={"x-user-id": user_id},
    )


@then("the recommendations are sorted by match score")
def then_sorted_by_score(response) -> None:
    assert response.status_code == 200
    scores = [item["match_score"] for item in response.json()["recommendations"]]
    assert scores
    assert scores == sorted(scores, reverse=True)


@then(parsers.parse("the top recommendation scores {score:d}"))
def then_top_score(response, score: int) -> None:
    assert response.json()["recommendations"][0]["match_score"] == score


@then(parsers.parse('the request fails with status {status_code:d} and code "{code}"'))
def then_request_fails(response, status_code: int, code: str) -> None:
    assert response.status_code == status_code
    assert response.json()["code"] == code
