"""
Canvas tools exposed over MCP.

Each tool pairs a pydantic argument model, which doubles as the advertised input schema,
with a coroutine that calls the Canvas client. Tool results are the Canvas JSON rendered
as indented text. Invalid arguments, unknown tools and Canvas failures raise
``ToolCallError``, which the MCP SDK reports as an ``isError`` result rather than a
protocol error so the calling model can react to it.
"""

from dataclasses import dataclass
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from edu.canvasmcp.bridge.canvas.client import CanvasClient
from edu.canvasmcp.bridge.errors import UpstreamProviderError

logger = logging.getLogger(__name__)


class ToolCallError(Exception):
    """A per-call tool failure, shown to the model as the text of an error result."""


class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ListCoursesArguments(ToolArguments):
    enrollment_state: Optional[Literal["active", "completed", "invited", "rejected"]] = Field(
        None, description="Filter courses by enrollment state"
    )


class GetAssignmentArguments(ToolArguments):
    course_id: int = Field(description="The Canvas course ID")
    assignment_id: int = Field(description="The Canvas assignment ID")


class SearchAssignmentsArguments(ToolArguments):
    search_term: Optional[str] = Field(
        None, description="Case-insensitive text to match in assignment names and descriptions"
    )
    course_ids: Optional[List[int]] = Field(
        None, description="Courses to search. Defaults to all active courses."
    )


class GetUpcomingAssignmentsArguments(ToolArguments):
    pass


class GetAnnouncementsArguments(ToolArguments):
    course_id: Optional[int] = Field(
        None,
        description="Course to read announcements from. If not provided, returns "
        "announcements from all active courses.",
    )
    limit: int = Field(
        10, ge=1, le=50, description="Maximum number of announcements to return (1-50)"
    )


class GetGradesArguments(ToolArguments):
    course_id: Optional[int] = Field(
        None,
        description="Course to get detailed grades and submissions for. If not provided, "
        "returns summary grades for all active courses.",
    )


def input_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    schema.setdefault("properties", {})
    return schema


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    arguments: Type[ToolArguments]
    handler: Callable[[CanvasClient, Any], Awaitable[Any]]
    scope: str

    def schema(self) -> Dict[str, Any]:
        return input_schema(self.arguments)


async def _list_courses(client: CanvasClient, args: ListCoursesArguments) -> Any:
    return await client.list_courses(enrollment_state=args.enrollment_state)


async def _get_assignment(client: CanvasClient, args: GetAssignmentArguments) -> Any:
    return await client.get_assignment(args.course_id, args.assignment_id)


async def _search_assignments(client: CanvasClient, args: SearchAssignmentsArguments) -> Any:
    return await client.search_assignments(
        search_term=args.search_term, course_ids=args.course_ids
    )


async def _get_upcoming_assignments(
    client: CanvasClient, args: GetUpcomingAssignmentsArguments
) -> Any:
    return await client.get_upcoming_assignments()


async def _get_announcements(client: CanvasClient, args: GetAnnouncementsArguments) -> Any:
    return await client.get_course_announcements(course_id=args.course_id, limit=args.limit)


async def _get_grades(client: CanvasClient, args: GetGradesArguments) -> Any:
    return await client.get_grades_and_submissions(course_id=args.course_id)


TOOLS = (
    Tool(
        name="list_courses",
        description="List Canvas courses for the authenticated user. Can filter by "
        "enrollment state (active, completed, invited, rejected).",
        arguments=ListCoursesArguments,
        handler=_list_courses,
        scope="canvas:courses:read",
    ),
    Tool(
        name="get_assignment",
        description="Get detailed information about a specific assignment including "
        "description, due date, points, and submission details.",
        arguments=GetAssignmentArguments,
        handler=_get_assignment,
        scope="canvas:assignments:read",
    ),
    Tool(
        name="search_assignments",
        description="Search assignments by name or description across all active "
        "courses, or across the given courses.",
        arguments=SearchAssignmentsArguments,
        handler=_search_assignments,
        scope="canvas:assignments:read",
    ),
    Tool(
        name="get_upcoming_assignments",
        description="Get upcoming assignments and deadlines for the next 30 days across "
        "all courses. Returns assignments with due dates, to-do items, and calendar events.",
        arguments=GetUpcomingAssignmentsArguments,
        handler=_get_upcoming_assignments,
        scope="canvas:assignments:read",
    ),
    Tool(
        name="get_announcements",
        description="Get course announcements. Can retrieve announcements from a specific "
        "course or across all courses, sorted by most recent first.",
        arguments=GetAnnouncementsArguments,
        handler=_get_announcements,
        scope="canvas:announcements:read",
    ),
    Tool(
        name="get_grades",
        description="Get grades and submission information. Can retrieve grades for a "
        "specific course (including individual assignment submissions) or overall grades "
        "across all courses.",
        arguments=GetGradesArguments,
        handler=_get_grades,
        scope="canvas:grades:read",
    ),
)

TOOLS_BY_NAME: Dict[str, Tool] = {tool.name: tool for tool in TOOLS}


def describe_validation_error(e: ValidationError) -> str:
    problems = []
    for error in e.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)


def scope_allows(tool: Tool, granted: Optional[str]) -> bool:
    """None means unrestricted (API keys). ``canvas:read`` grants every tool."""
    if granted is None:
        return True
    scopes = granted.split()
    return "canvas:read" in scopes or tool.scope in scopes


async def call_tool(
    client: CanvasClient, tool: Tool, arguments: Optional[Dict[str, Any]]
) -> str:
    """Validate the arguments, run the tool and return its result as JSON text."""
    try:
        args = tool.arguments.model_validate(arguments or {})
    except ValidationError as e:
        raise ToolCallError(f"Invalid arguments: {describe_validation_error(e)}")

    try:
        data = await tool.handler(client, args)
    except UpstreamProviderError as e:
        logger.info("Tool %s failed upstream: %s", tool.name, e)
        raise ToolCallError(str(e))

    return json.dumps(data, indent=2)
