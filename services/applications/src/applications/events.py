from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any, Literal, Protocol

import httpx
from common.utils import now_utc_iso
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from applications.models import Application, ApplicationStatus, Job
from applications.repository import UnitOfWork

APPLICATION_EVENTS_TOPIC = "application-events"
LOGGER = logging.getLogger("application_service.events")


class BaseApplicationEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_type: str
    application_id: str
    job_id: str
    job_title: str | None = None
    company_name: str | None = None
    company_id: str | None = None
    employer_id: str | None = None
    user_id: str
    applicant_name: str | None = None
    applicant_email: str | None = None
    status: ApplicationStatus
    timestamp: str = Field(default_factory=now_utc_iso)

    @property
    def partition_key(self) -> str:
        return f"{self.user_id}-{self.job_id}"

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ApplicationSubmitted(BaseApplicationEvent):
    event_type: Literal["APPLICATION_SUBMITTED"] = "APPLICATION_SUBMITTED"
    resume_id: str | None = None
    applied_date: str


class ResumeViewed(BaseApplicationEvent):
    event_type: Literal["RESUME_VIEWED"] = "RESUME_VIEWED"


class ApplicationWithdrawn(BaseApplicationEvent):
    event_type: Literal["APPLICATION_WITHDRAWN"] = "APPLICATION_WITHDRAWN"


class ApplicationStatusUpdated(BaseApplicationEvent):
    event_type: Literal["APPLICATION_STATUS_UPDATED"] = "APPLICATION_STATUS_UPDATED"
    previous_status: ApplicationStatus


ApplicationEvent = Annotated[
    ApplicationSubmitted | ResumeViewed | ApplicationWithdrawn | ApplicationStatusUpdated,
    Field(discriminator="event_type"),
]
APPLICATION_EVENT_ADAPTER: TypeAdapter[ApplicationEvent] = TypeAdapter(ApplicationEvent)


def parse_application_event(payload: dict[str, Any]) -> BaseApplicationEvent:
    return APPLICATION_EVENT_ADAPTER.validate_python(payload)


def event_context(application: Application, job: Job | None) -> dict[str, Any]:
    """Shared event fields: job details plus the applicant snapshot stored on the application."""
    return {
        "application_id": application.id,
        "job_id": application.job_id,
        "job_title": job.title if job else None,
        "company_name": job.company if job else None,
        "company_id": job.company_id if job else None,
        "employer_id": job.employer_id if job else None,
        "user_id": application.user_id,
        "applicant_name": application.applicant_name,
        "applicant_email": application.applicant_email,
    }


class EventBus(Protocol):
    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> None: ...


class InMemoryEventBus:
    """Keeps published messages in process; used when no bus endpoint is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.messages.append((topic, key, payload))


class HttpEventBus:
    """Publishes through a Kafka REST proxy (``POST /topics/{topic}``)."""

    content_type = "application/vnd.kafka.json.v2+json"

    def __init__(self, base_url: str, *, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> None:
        response = httpx.post(
            f"{self.base_url}/topics/{topic}",
            json={"records": [{"key": key, "value": payload}]},
            headers={"content-type": self.content_type},
            timeout=self.timeout,
        )
        response.raise_for_status()


class EventRelay:
    """Dispatches staged events to the bus after the staging transaction commits.

    Dispatch runs on a single worker thread, so it never blocks the caller and
    events leave in commit order. Failures are logged and dropped; there is no
    retry.
    """

    def __init__(self, bus: EventBus, *, topic: str = APPLICATION_EVENTS_TOPIC) -> None:
        self.bus = bus
        self.topic = topic
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-relay")

    def stage(self, unit: UnitOfWork, event: BaseApplicationEvent) -> None:
        unit.after_commit(lambda: self._executor.submit(self._publish, event))

    def _publish(self, event: BaseApplicationEvent) -> None:
        try:
            self.bus.publish(self.topic, event.partition_key, event.payload())
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "event_publish_failed",
                        "event_type": event.event_type,
                        "application_id": event.application_id,
                        "error": str(exc),
                    }
                )
            )
            return
        LOGGER.info(
            json.dumps(
                {
                    "event": "event_published",
                    "event_type": event.event_type,
                    "application_id": event.application_id,
                    "partition_key": event.partition_key,
                }
            )
        )

    def flush(self, timeout: float = 5.0) -> None:
        """Block until everything submitted so far has been dispatched."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
