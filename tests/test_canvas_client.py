import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest
import pytest_asyncio

from edu.canvasmcp.bridge.canvas.cache import ResponseCache
from edu.canvasmcp.bridge.canvas.client import CanvasClient, normalize_domain
from edu.canvasmcp.bridge.errors import UpstreamProviderError
from tests.test_helpers import CANVAS_TOKEN


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def response_cache():
    return ResponseCache()


@pytest.fixture
def canvas(http_session, canvas_domain, response_cache):
    return CanvasClient(
        http_session, canvas_domain, CANVAS_TOKEN, cache=response_cache, scheme="http"
    )


class TestNormalizeDomain:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("school.instructure.com", "school.instructure.com"),
            ("https://School.Instructure.com/", "school.instructure.com"),
            ("  canvas.example.edu/ ", "canvas.example.edu"),
            ("127.0.0.1:8080", "127.0.0.1:8080"),
        ],
    )
    def test_accepts_hosts(self, value, expected):
        assert normalize_domain(value) == expected

    @pytest.mark.parametrize(
        "value", ["", "not a host", "school.instructure.com/courses", "-bad.example"]
    )
    def test_rejects_everything_else(self, value):
        assert normalize_domain(value) is None


class TestCanvasClient:
    @pytest.mark.asyncio
    async def test_requests_carry_the_bearer_token(self, canvas, canvas_calls):
        user = await canvas.get_current_user()

        assert user["id"] == 4242
        assert canvas_calls == ["/api/v1/users/self"]

    @pytest.mark.asyncio
    async def test_rejected_token_raises_upstream_error(
        self, http_session, canvas_domain
    ):
        canvas = CanvasClient(http_session, canvas_domain, "wrong-token", scheme="http")

        with pytest.raises(UpstreamProviderError) as excinfo:
            await canvas.get_current_user()
        assert excinfo.value.status == 401

    @pytest.mark.asyncio
    async def test_unreachable_host_raises_upstream_error(self, http_session):
        canvas = CanvasClient(http_session, "127.0.0.1:1", CANVAS_TOKEN, scheme="http")

        with pytest.raises(UpstreamProviderError) as excinfo:
            await canvas.list_courses()
        assert excinfo.value.status == 502

    @pytest.mark.asyncio
    async def test_list_courses_filters_by_state(self, canvas, canvas_calls):
        courses = await canvas.list_courses(enrollment_state="active")

        assert [c["id"] for c in courses] == [1, 2]
        assert canvas_calls == ["/api/v1/courses?enrollment_state=active&per_page=100"]

    @pytest.mark.asyncio
    async def test_search_skips_forbidden_courses(self, canvas):
        """Course 2 answers 403; its assignments are left out rather than failing."""
        assignments = await canvas.search_assignments()

        assert [a["id"] for a in assignments] == [11, 12]
        assert {a["course_name"] for a in assignments} == {"Biology 101"}

    @pytest.mark.asyncio
    async def test_search_matches_name_and_description(self, canvas):
        by_name = await canvas.search_assignments(search_term="ESSAY")
        by_description = await canvas.search_assignments(search_term="photosynthesis")

        assert [a["id"] for a in by_name] == [11]
        assert [a["id"] for a in by_description] == [12]

    @pytest.mark.asyncio
    async def test_search_given_courses(self, canvas, canvas_calls):
        assignments = await canvas.search_assignments(course_ids=[1])

        assert len(assignments) == 2
        assert not any(call.startswith("/api/v1/courses?") for call in canvas_calls)

    @pytest.mark.asyncio
    async def test_announcements_newest_first_and_limited(self, canvas):
        announcements = await canvas.get_course_announcements(limit=2)

        assert [a["id"] for a in announcements] == [201, 101]
        assert announcements[0]["course_name"] == "History 210"

    @pytest.mark.asyncio
    async def test_announcements_for_one_course(self, canvas, canvas_calls):
        announcements = await canvas.get_course_announcements(course_id=1, limit=5)

        assert [a["id"] for a in announcements] == [101, 102]
        assert canvas_calls == [
            "/api/v1/courses/1/discussion_topics?only_announcements=true&per_page=5"
        ]

    @pytest.mark.asyncio
    async def test_grade_summary_per_course(self, canvas):
        summaries = await canvas.get_grades_and_submissions()

        assert [s["course_code"] for s in summaries] == ["BIO101", "HIS210"]
        assert summaries[0]["current_grade"] == "A-"
        assert summaries[0]["final_score"] == 88.0

    @pytest.mark.asyncio
    async def test_grades_for_one_course(self, canvas):
        result = await canvas.get_grades_and_submissions(course_id=1)

        assert result["enrollments"][0]["grades"]["current_score"] == 91.5
        assert [a["id"] for a in result["assignments"]] == [11, 12]

    @pytest.mark.asyncio
    async def test_upcoming_uses_a_thirty_day_window(self, canvas, canvas_calls):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)

        items = await canvas.get_upcoming_assignments(now=now)

        assert items[0]["plannable"]["title"] == "Lab Report"
        assert "start_date=2026-10-18T00%3A00%3A00%2B00%3A00" in canvas_calls[0]
        assert "end_date=2026-11-17T00%3A00%3A00%2B00%3A00" in canvas_calls[0]


class TestResponseCaching:
    @pytest.mark.asyncio
    async def test_repeated_reads_hit_the_cache(self, canvas, canvas_calls):
        await canvas.list_courses()
        await canvas.list_courses()

        assert len(canvas_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_request(self, canvas, canvas_calls):
        results = await asyncio.gather(*(canvas.get_current_user() for _ in range(5)))

        assert all(r["id"] == 4242 for r in results)
        assert len(canvas_calls) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(
        self, http_session, canvas_domain, response_cache, canvas_calls
    ):
        canvas = CanvasClient(
            http_session, canvas_domain, "wrong-token", cache=response_cache, scheme="http"
        )

        for _ in range(2):
            with pytest.raises(UpstreamProviderError):
                await canvas.get_current_user()

        assert len(canvas_calls) == 2
        assert len(response_cache) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_the_others(self, response_cache):
        release = asyncio.Event()
        calls = []

        async def loader():
            calls.append(1)
            await release.wait()
            return {"id": 4242}

        first = asyncio.create_task(response_cache.fetch("k", 300, loader))
        second = asyncio.create_task(response_cache.fetch("k", 300, loader))
        while not calls:
            await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        release.set()

        assert await second == {"id": 4242}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_load_finishes_after_every_waiter_leaves(self, response_cache):
        release = asyncio.Event()
        done = asyncio.Event()

        async def loader():
            await release.wait()
            done.set()
            return ["course"]

        waiter = asyncio.create_task(response_cache.fetch("k", 300, loader))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        release.set()
        await asyncio.wait_for(done.wait(), timeout=1)
        await asyncio.sleep(0)

        assert response_cache.get("k") == ["course"]
        assert response_cache.stats()["pending_requests"] == 0

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_token(self, canvas, canvas_calls):
        await canvas.get_current_user()

        assert ResponseCache.key("d", "token-a", "/p") != ResponseCache.key("d", "token-b", "/p")
        assert CANVAS_TOKEN not in next(iter(canvas.cache._entries))


class TestResponseCacheExpiry:
    def test_entries_expire(self):
        now = [0.0]
        cache = ResponseCache(clock=lambda: now[0])
        cache.set("k", {"v": 1}, ttl=300)

        now[0] = 300
        assert cache.get("k") == {"v": 1}
        now[0] = 300.5
        assert cache.cleanup() == 1
        assert cache.stats() == {"size": 0, "pending_requests": 0}
