"""Shared pytest fixtures: in-memory Mongo, service wiring with a fake grader, API client."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from bson import ObjectId
from gridfs.errors import NoFile
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from main import create_app
from papertalk.models.grade import GradingResult
from papertalk.services import Services, build_services

ORG_ID = "org_test"
OTHER_ORG_ID = "org_other"
TEST_ID = "test_algebra"
TEACHER_TOKEN = "session_teacher"
STUDENT_TOKEN = "session_student"
VALID_LINK = "link_valid"
EXPIRED_LINK = "link_expired"
OPEN_LINK = "link_open"  # no expiry


class FakeGradingClient:
    """Stands in for AIGradingClient. Outcomes are consumed in order, then ``default`` repeats."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.outcomes: List[Any] = []
        self.default = GradingResult(feedback="Well done on the first section.", score=80)
        self.delay = 0.0
        self.active = 0
        self.peak = 0  # most grade() calls in flight at once

    async def grade(self, material_urls, student_name="Student", has_question_paper=False,
                    previous_feedback=None):
        self.calls.append({
            "material_urls": list(material_urls),
            "student_name": student_name,
            "has_question_paper": has_question_paper,
            "previous_feedback": previous_feedback,
        })
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGridOut:
    def __init__(self, data, filename, content_type):
        self._data = data
        self.filename = filename
        self.content_type = content_type

    def read(self):
        return self._data


class FakeGridFS:
    """The subset of gridfs.GridFS the object store uses."""

    def __init__(self):
        self.files = {}

    def put(self, data, filename=None, content_type=None, **metadata):
        oid = ObjectId()
        self.files[oid] = (FakeGridOut(data, filename, content_type), metadata)
        return oid

    def get(self, oid):
        if oid not in self.files:
            raise NoFile(f"no file {oid}")
        return self.files[oid][0]


def _ok_transport(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"\xff\xd8fake-jpeg", headers={"content-type": "image/jpeg"})


async def seed_database(db) -> None:
    now = datetime.now(timezone.utc)
    await db.organizations.insert_one({
        "organization_id": ORG_ID, "name": "Springfield High", "settings": {"auto_approve_feedback": True},
    })
    await db.tests.insert_one({
        "test_id": TEST_ID,
        "organization_id": ORG_ID,
        "teacher_id": "user_teacher",
        "name": "Algebra midterm",
        "test_paper_url": "https://cdn.example.com/papers/algebra.pdf",
    })
    await db.magic_links.insert_many([
        {"magic_link_id": "ml_valid", "token": VALID_LINK, "test_id": TEST_ID,
         "expires_at": (now + timedelta(days=1)).isoformat(), "used": False},
        {"magic_link_id": "ml_expired", "token": EXPIRED_LINK, "test_id": TEST_ID,
         "expires_at": (now - timedelta(hours=1)).isoformat(), "used": False},
        {"magic_link_id": "ml_open", "token": OPEN_LINK, "test_id": TEST_ID,
         "expires_at": None, "used": False},
    ])
    await db.users.insert_many([
        {"user_id": "user_teacher", "email": "teacher@example.com", "name": "Ms Krabappel",
         "role": "teacher", "organization_id": ORG_ID},
        {"user_id": "user_student", "email": "bart@example.com", "name": "Bart",
         "role": "student", "organization_id": ORG_ID},
        {"user_id": "user_outsider", "email": "outsider@example.com", "name": "Outsider",
         "role": "teacher", "organization_id": OTHER_ORG_ID},
    ])
    await db.user_sessions.insert_many([
        {"session_token": TEACHER_TOKEN, "user_id": "user_teacher",
         "expires_at": (now + timedelta(days=7)).isoformat()},
        {"session_token": STUDENT_TOKEN, "user_id": "user_student",
         "expires_at": (now + timedelta(days=7)).isoformat()},
        {"session_token": "session_outsider", "user_id": "user_outsider",
         "expires_at": (now + timedelta(days=7)).isoformat()},
        {"session_token": "session_stale", "user_id": "user_teacher",
         "expires_at": (now - timedelta(days=1)).isoformat()},
    ])


def submission_payload(email: str = "lisa@example.com", token: str = VALID_LINK,
                       name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "studentName": name or email.split("@")[0].title(),
        "studentEmail": email,
        "imageUrls": [f"https://cdn.example.com/{email}/page1.jpg", f"https://cdn.example.com/{email}/page2.jpg"],
        "magicLinkToken": token,
    }


@pytest.fixture()
def grader() -> FakeGradingClient:
    return FakeGradingClient()


@pytest_asyncio.fixture()
async def db():
    database = AsyncMongoMockClient()["papertalk_test"]
    await seed_database(database)
    return database


@pytest_asyncio.fixture()
async def services(db, grader) -> AsyncIterator[Services]:
    """Fully wired services with short queue delays and no object storage."""
    services = build_services(
        db,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_ok_transport)),
        grading_client=grader,
        full_retry_delay=0.01,
        overload_retry_delay=0.01,
        max_requeues=2,
        elevenlabs_api_key=None,
    )
    await services.ingestion.ensure_indexes()
    yield services
    await services.aclose()


@pytest_asyncio.fixture()
async def async_client(services) -> AsyncIterator[AsyncClient]:
    """HTTPX async client bound to the FastAPI app."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture()
def teacher_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {TEACHER_TOKEN}"}
