"""
Shared test configuration and fixtures for the Canvas MCP bridge tests.

Provides a throwaway SQLite database per test, the credential store on top of it, a fake
Canvas API served by a local aiohttp server, and a fully started bridge application with
mail captured in memory.
"""

from typing import Any, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from edu.canvasmcp.bridge.app.config import Settings
from edu.canvasmcp.bridge.app.server import start_web_server
from edu.canvasmcp.bridge.auth.cache import VerificationCache
from edu.canvasmcp.bridge.auth.gate import AuthenticationGate
from edu.canvasmcp.bridge.crypto.hashing import SecretHasher
from edu.canvasmcp.bridge.crypto.tokens import TokenCipher
from edu.canvasmcp.bridge.mail import Mailer, email_environment
from edu.canvasmcp.bridge.model.base import Base
from edu.canvasmcp.bridge.store.credentials import CredentialStore
from tests.test_helpers import CANVAS_TOKEN, CANVAS_USER, TEST_ENCRYPTION_KEY

CanvasCallsAppKey = web.AppKey("canvas_calls", list)


@pytest.fixture
def cipher():
    return TokenCipher.from_base64_key(TEST_ENCRYPTION_KEY)


@pytest.fixture
def hasher():
    """Argon2id at the minimum accepted parameters."""
    return SecretHasher()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create an async SQLAlchemy engine on a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_maker, cipher, hasher):
    return CredentialStore(session_maker, cipher, hasher)


@pytest.fixture
def verification_cache():
    return VerificationCache(ttl_seconds=900)


@pytest.fixture
def gate(store, verification_cache):
    return AuthenticationGate(store, verification_cache)


class RecordingTransport:
    """Mail transport that keeps messages in memory, or fails when told to."""

    def __init__(self) -> None:
        self.messages: List[Any] = []
        self.error = None

    def __call__(self, message) -> None:
        if self.error is not None:
            raise self.error
        self.messages.append(message)

    def bodies(self) -> List[str]:
        return [
            message.get_body(preferencelist=("plain",)).get_content()
            for message in self.messages
        ]


@pytest.fixture
def mail_transport():
    return RecordingTransport()


def build_canvas_app() -> web.Application:
    """
    A small stand-in for the Canvas REST API.

    Every request path is recorded under ``CanvasCallsAppKey``. Course 2 refuses
    assignment listings with a 403, like a course whose assignments the student may
    not read.
    """
    calls: List[str] = []
    courses = [
        {"id": 1, "name": "Biology 101", "course_code": "BIO101"},
        {"id": 2, "name": "History 210", "course_code": "HIS210"},
    ]
    assignments: Dict[int, List[Dict[str, Any]]] = {
        1: [
            {"id": 11, "name": "Cell Structure Essay", "description": "Write about cells"},
            {"id": 12, "name": "Lab Report", "description": "Photosynthesis lab"},
        ],
    }
    announcements: Dict[int, List[Dict[str, Any]]] = {
        1: [
            {"id": 101, "title": "Lab moved", "posted_at": "2026-10-01T09:00:00Z"},
            {"id": 102, "title": "Welcome", "posted_at": "2026-09-01T09:00:00Z"},
        ],
        2: [
            {"id": 201, "title": "Midterm notes", "posted_at": "2026-10-05T09:00:00Z"},
        ],
    }

    @web.middleware
    async def authorize(request: web.Request, handler):
        calls.append(request.path_qs)
        if request.headers.get("Authorization") != f"Bearer {CANVAS_TOKEN}":
            return web.json_response(
                {"errors": [{"message": "Invalid access token."}]}, status=401
            )
        return await handler(request)

    async def users_self(request: web.Request):
        return web.json_response(CANVAS_USER)

    async def list_courses(request: web.Request):
        return web.json_response(courses)

    async def course_assignments(request: web.Request):
        course_id = int(request.match_info["course_id"])
        if course_id == 2:
            return web.json_response({"status": "unauthorized"}, status=403)
        return web.json_response(assignments.get(course_id, []))

    async def assignment(request: web.Request):
        course_id = int(request.match_info["course_id"])
        assignment_id = int(request.match_info["assignment_id"])
        for item in assignments.get(course_id, []):
            if item["id"] == assignment_id:
                return web.json_response(item)
        return web.json_response({"errors": [{"message": "not found"}]}, status=404)

    async def discussion_topics(request: web.Request):
        course_id = int(request.match_info["course_id"])
        return web.json_response(announcements.get(course_id, []))

    async def enrollments(request: web.Request):
        course_id = int(request.match_info["course_id"])
        return web.json_response(
            [
                {
                    "course_id": course_id,
                    "grades": {
                        "current_grade": "A-",
                        "current_score": 91.5,
                        "final_grade": "B+",
                        "final_score": 88.0,
                    },
                }
            ]
        )

    async def planner_items(request: web.Request):
        return web.json_response(
            [{"plannable_type": "assignment", "plannable": {"title": "Lab Report"}}]
        )

    app = web.Application(middlewares=[authorize])
    app[CanvasCallsAppKey] = calls
    app.add_routes(
        [
            web.get("/api/v1/users/self", users_self),
            web.get("/api/v1/courses", list_courses),
            web.get("/api/v1/courses/{course_id}/assignments", course_assignments),
            web.get(
                "/api/v1/courses/{course_id}/assignments/{assignment_id}", assignment
            ),
            web.get("/api/v1/courses/{course_id}/discussion_topics", discussion_topics),
            web.get("/api/v1/courses/{course_id}/enrollments", enrollments),
            web.get("/api/v1/planner/items", planner_items),
        ]
    )
    return app


@pytest_asyncio.fixture
async def canvas_server():
    server = TestServer(build_canvas_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def canvas_domain(canvas_server):
    return f"{canvas_server.host}:{canvas_server.port}"


@pytest.fixture
def canvas_calls(canvas_server):
    return canvas_server.app[CanvasCallsAppKey]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=None,
        database_path=str(tmp_path / "bridge.db"),
        encryption_key=TEST_ENCRYPTION_KEY,
        base_url="http://bridge.test",
        canvas_scheme="http",
        metrics_backend="none",
        smtp_host="smtp.test",
        smtp_port=587,
        smtp_user="mailer",
        smtp_pass="secret",
        smtp_from="Canvas MCP <noreply@bridge.test>",
    )


@pytest.fixture
def mailer(settings, mail_transport):
    return Mailer(
        transport=mail_transport,
        sender=settings.smtp_from,
        base_url=settings.public_url,
        templates=email_environment(settings.templates_path),
        brand_name=settings.brand_name,
    )


@pytest_asyncio.fixture
async def client(settings, mailer, canvas_server):
    """A started bridge application; the fake Canvas server is already listening."""
    app = await start_web_server(settings, mailer=mailer)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def signed_in(client, canvas_domain):
    """
    Sign the test client in with the fake Canvas token.

    Returns the freshly issued API key, read once from ``/api/user/me``.
    """
    resp = await client.post(
        "/api/auth/token-login",
        json={"canvas_domain": canvas_domain, "access_token": CANVAS_TOKEN},
    )
    assert resp.status == 200

    resp = await client.get("/api/user/me")
    assert resp.status == 200
    return (await resp.json())["api_key"]
