"""
Canvas REST API client.

Every method is a GET against ``/api/v1`` on the user's Canvas domain. Methods that fan
out across courses (assignment search, announcements, grade summaries) issue the
per-course calls concurrently and leave out courses whose call fails, for example when
the user may not read a course's assignments.
"""

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlencode, urlsplit

import aiohttp
from aiohttp import ClientSession

from edu.canvasmcp.bridge.canvas.cache import ResponseCache
from edu.canvasmcp.bridge.errors import UpstreamProviderError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300
UPCOMING_WINDOW = timedelta(days=30)
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30)

GRADE_INCLUDES = [("include[]", "current_grading_period_scores"), ("include[]", "total_scores")]

DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?(?::\d{1,5})?$")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_domain(value: str) -> Optional[str]:
    """
    Reduce user input such as ``https://school.instructure.com/`` to a bare host.

    Returns None when the value is not a plausible hostname.
    """
    value = value.strip()
    if "://" in value:
        value = urlsplit(value).netloc
    value = value.rstrip("/").lower()
    if not DOMAIN_PATTERN.match(value):
        return None
    return value


def _with_query(path: str, params: Iterable) -> str:
    query = urlencode(list(params))
    return f"{path}?{query}" if query else path


def _posted_at(item: Dict[str, Any]) -> datetime:
    value = item.get("posted_at") or item.get("created_at")
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, TypeError, ValueError):
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CanvasClient:
    def __init__(
        self,
        http_session: ClientSession,
        domain: str,
        access_token: str,
        cache: Optional[ResponseCache] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        scheme: str = "https",
    ) -> None:
        self.http_session = http_session
        self.domain = domain
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.base_url = f"{scheme}://{domain}/api/v1"
        self._access_token = access_token

    def __repr__(self) -> str:
        return f"CanvasClient(domain={self.domain!r})"

    async def request(self, path: str) -> Any:
        if self.cache is None:
            return await self._get(path)
        key = ResponseCache.key(self.domain, self._access_token, path)
        return await self.cache.fetch(key, self.cache_ttl, lambda: self._get(path))

    async def _get(self, path: str) -> Any:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        try:
            async with self.http_session.get(
                f"{self.base_url}{path}", headers=headers, timeout=REQUEST_TIMEOUT
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise UpstreamProviderError(resp.status, resp.reason)
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise UpstreamProviderError(502, type(e).__name__) from e
        except asyncio.TimeoutError as e:
            raise UpstreamProviderError(504, "Gateway Timeout") from e

    async def _fan_out_item(self, course: Dict[str, Any], path: str) -> List[Any]:
        try:
            result = await self.request(path)
        except UpstreamProviderError as e:
            logger.warning("Skipping course %s in %s: %s", course.get("id"), self.domain, e)
            return []
        if not isinstance(result, list):
            logger.warning(
                "Skipping course %s in %s: unexpected response", course.get("id"), self.domain
            )
            return []
        return result

    async def _active_courses(self) -> List[Dict[str, Any]]:
        courses = await self.list_courses(enrollment_state="active")
        return [c for c in courses if isinstance(c, dict) and "id" in c]

    async def get_current_user(self) -> Dict[str, Any]:
        return await self.request("/users/self")

    async def list_courses(self, enrollment_state: Optional[str] = None) -> List[Any]:
        params = [("per_page", "100")]
        if enrollment_state:
            params.insert(0, ("enrollment_state", enrollment_state))
        return await self.request(_with_query("/courses", params))

    async def get_assignment(self, course_id: int, assignment_id: int) -> Dict[str, Any]:
        return await self.request(f"/courses/{course_id}/assignments/{assignment_id}")

    async def search_assignments(
        self,
        search_term: Optional[str] = None,
        course_ids: Optional[Sequence[int]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search assignments by name or description across courses.

        Searches the given courses, or every active course when none are given. Matching
        is a case-insensitive substring test; without a term every assignment is returned.
        """
        if course_ids:
            courses = [{"id": course_id} for course_id in course_ids]
        else:
            courses = await self._active_courses()

        async def course_assignments(course: Dict[str, Any]) -> List[Dict[str, Any]]:
            path = _with_query(f"/courses/{course['id']}/assignments", [("per_page", "100")])
            assignments = await self._fan_out_item(course, path)
            return [
                {**a, "course_id": course["id"], "course_name": course.get("name")}
                for a in assignments
                if isinstance(a, dict)
            ]

        results = await asyncio.gather(*(course_assignments(c) for c in courses))
        assignments = [a for result in results for a in result]

        if not search_term:
            return assignments
        needle = search_term.lower()
        return [
            a
            for a in assignments
            if needle in (a.get("name") or "").lower()
            or needle in (a.get("description") or "").lower()
        ]

    async def get_upcoming_assignments(self, now: Optional[datetime] = None) -> List[Any]:
        """Planner items due over the next 30 days."""
        start = now or datetime.now(timezone.utc)
        end = start + UPCOMING_WINDOW
        path = _with_query(
            "/planner/items",
            [("start_date", start.isoformat()), ("end_date", end.isoformat())],
        )
        return await self.request(path)

    async def get_course_announcements(
        self, course_id: Optional[int] = None, limit: int = 10
    ) -> List[Dict[str, Any]]:
        if course_id is not None:
            path = _with_query(
                f"/courses/{course_id}/discussion_topics",
                [("only_announcements", "true"), ("per_page", str(limit))],
            )
            return await self.request(path)

        courses = await self._active_courses()

        async def course_announcements(course: Dict[str, Any]) -> List[Dict[str, Any]]:
            path = _with_query(
                f"/courses/{course['id']}/discussion_topics",
                [("only_announcements", "true"), ("per_page", "5")],
            )
            announcements = await self._fan_out_item(course, path)
            return [
                {**a, "course_id": course["id"], "course_name": course.get("name")}
                for a in announcements
                if isinstance(a, dict)
            ]

        results = await asyncio.gather(*(course_announcements(c) for c in courses))
        announcements = [a for result in results for a in result]
        announcements.sort(key=_posted_at, reverse=True)
        return announcements[:limit]

    async def get_grades_and_submissions(self, course_id: Optional[int] = None) -> Any:
        """
        Grades for one course with its assignment submissions, or a grade summary per
        active course when no course is given.
        """
        if course_id is not None:
            enrollments, assignments = await asyncio.gather(
                self.request(
                    _with_query(
                        f"/courses/{course_id}/enrollments",
                        [("user_id", "self")] + GRADE_INCLUDES,
                    )
                ),
                self.request(
                    _with_query(
                        f"/courses/{course_id}/assignments",
                        [("include[]", "submission"), ("per_page", "100")],
                    )
                ),
            )
            return {"enrollments": enrollments, "assignments": assignments}

        courses = await self._active_courses()

        async def course_grades(course: Dict[str, Any]) -> List[Dict[str, Any]]:
            path = _with_query(
                f"/courses/{course['id']}/enrollments",
                [("user_id", "self")] + GRADE_INCLUDES,
            )
            enrollments = await self._fan_out_item(course, path)
            summaries = []
            for enrollment in enrollments:
                if not isinstance(enrollment, dict):
                    continue
                grades = enrollment.get("grades") or {}
                summaries.append(
                    {
                        "course_id": course["id"],
                        "course_name": course.get("name"),
                        "course_code": course.get("course_code"),
                        "current_grade": grades.get("current_grade"),
                        "current_score": grades.get("current_score"),
                        "final_grade": grades.get("final_grade"),
                        "final_score": grades.get("final_score"),
                    }
                )
            return summaries

        results = await asyncio.gather(*(course_grades(c) for c in courses))
        return [summary for result in results for summary in result]
