#!/usr/bin/env python3
"""
Pyrus MCP Server
Exposes Pyrus tasks, lists and comments as MCP tools over stdio.
"""

import asyncio
import json
import logging
import os
import re
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

import httpx
import typer
from dotenv import load_dotenv
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool, ToolAnnotations
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pyrus_client import (
    VERSION,
    CreateTaskRequest,
    ListTasksFilter,
    MoveTaskRequest,
    PyrusAuthenticationError,
    PyrusClient,
    PyrusConfig,
    TaskAction,
    UpdateTaskRequest,
)

# Load environment variables
load_dotenv()

# Logging configuration from environment variables
LOG_DIR = os.getenv('LOG_DIR', '/tmp/pyrus_mcp_logs')
LOG_RETENTION_DAYS = int(os.getenv('LOG_RETENTION_DAYS', '30'))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Response limits
CHARACTER_LIMIT = 25000  # Max characters in response (MCP best practice)

# Response format configuration
DEFAULT_RESPONSE_FORMAT = "markdown"  # "json" or "markdown"
ALLOWED_FORMATS = ["json", "markdown"]

logger = logging.getLogger(__name__)


class PyrusConfigError(Exception):
    """Raised when required Pyrus credentials are missing from the environment."""


def load_config_from_env() -> PyrusConfig:
    """Build the client configuration from PYRUS_* environment variables."""
    login = os.getenv('PYRUS_LOGIN')
    security_key = os.getenv('PYRUS_API_TOKEN')

    if not login:
        raise PyrusConfigError("PYRUS_LOGIN environment variable is required")
    if not security_key:
        raise PyrusConfigError("PYRUS_API_TOKEN environment variable is required")

    return PyrusConfig(
        login=login,
        security_key=security_key,
        domain=os.getenv('PYRUS_DOMAIN') or None,
        base_url=os.getenv('PYRUS_BASE_URL') or None,
    )


# Pydantic models for input validation
class ToolInput(BaseModel):
    """Parameters shared by every tool"""
    model_config = ConfigDict(extra="forbid")

    response_format: Literal["json", "markdown"] = Field(DEFAULT_RESPONSE_FORMAT, description="Response format (json or markdown)")

    def payload(self, *exclude: str) -> dict:
        return self.model_dump(exclude={"response_format", *exclude}, exclude_none=True)


class EmptyInput(ToolInput):
    pass


class TaskIdInput(ToolInput):
    task_id: int = Field(..., ge=1, description="Task ID")


class CreateTaskInput(ToolInput):
    """Input model for create_task"""
    text: str = Field(..., min_length=1, description="Task text")
    responsible: Optional[int] = Field(None, description="Responsible person ID")
    due_date: Optional[str] = Field(None, description="Due date in ISO format (YYYY-MM-DD)")
    participants: Optional[list[int]] = Field(None, description="Participant person IDs")
    list_ids: Optional[list[int]] = Field(None, description="List IDs to add the task to")


class UpdateTaskInput(TaskIdInput):
    """Input model for update_task"""
    text: Optional[str] = Field(None, description="Comment text")
    action: Optional[TaskAction] = Field(None, description="Task action")
    responsible: Optional[int] = Field(None, description="New responsible person ID")
    due_date: Optional[str] = Field(None, description="New due date in ISO format (YYYY-MM-DD)")
    participants: Optional[list[int]] = Field(None, description="Participant person IDs")
    list_ids: Optional[list[int]] = Field(None, description="List IDs to tag the task with")
    added_list_ids: Optional[list[int]] = Field(None, description="List IDs to add the task to")
    removed_list_ids: Optional[list[int]] = Field(None, description="List IDs to remove the task from")


class MoveTaskInput(TaskIdInput):
    """Input model for move_task"""
    list_id: int = Field(..., ge=1, description="Target list ID")
    responsible: Optional[int] = Field(None, description="New responsible person ID")


class FindListInput(ToolInput):
    name: str = Field(..., min_length=1, description="List name (or part of it) to search for")


class GetListTasksInput(ToolInput):
    """Input model for get_list_tasks"""
    list_id: int = Field(..., ge=1, description="List ID")
    item_count: Optional[int] = Field(None, ge=1, description="Maximum number of tasks")
    include_archived: Optional[bool] = Field(None, description="Include archived tasks")
    modified_after: Optional[str] = None
    modified_before: Optional[str] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    due_after: Optional[str] = None
    due_before: Optional[str] = None


class AddCommentInput(TaskIdInput):
    text: str = Field(..., min_length=1, description="Comment text")


# Utility functions for response formatting
def truncate_response(text: str, limit: int = CHARACTER_LIMIT) -> str:
    """Truncate response if it exceeds character limit"""
    if len(text) <= limit:
        return text

    truncated = text[:limit - 100]  # Leave room for truncation message
    return f"{truncated}\n\n... [Response truncated. Original length: {len(text)} characters, showing first {limit - 100} characters]"


def _person_name(person: Optional[dict]) -> str:
    if not person:
        return ""
    return " ".join(part for part in (person.get("first_name"), person.get("last_name")) if part) or f"#{person.get('id')}"


def _format_lists_inline(lists: list) -> str:
    return ", ".join(f"{item.get('name')} (ID: {item.get('id')})" for item in lists)


def _format_task(task: dict) -> list[str]:
    lines = [
        f"## Task #{task.get('id')}",
        f"- **Text:** {task.get('text', '')}",
        f"- **Status:** {task.get('task_status', 'N/A')}",
    ]
    if task.get("create_date"):
        lines.append(f"- **Created:** {task['create_date']}")
    if task.get("last_modified_date"):
        lines.append(f"- **Last Modified:** {task['last_modified_date']}")
    if task.get("author"):
        lines.append(f"- **Author:** {_person_name(task['author'])}")
    if task.get("responsible"):
        lines.append(f"- **Responsible:** {_person_name(task['responsible'])}")
    if task.get("due_date"):
        lines.append(f"- **Due:** {task['due_date']}")
    if task.get("participants"):
        lines.append(f"- **Participants:** {', '.join(_person_name(p) for p in task['participants'])}")
    if task.get("lists"):
        lines.append(f"- **Lists:** {_format_lists_inline(task['lists'])}")
    if task.get("comments"):
        lines.append(f"- **Comments:** {len(task['comments'])}")
    if task.get("related_tasks"):
        related_ids = ", ".join(str(t.get("id")) for t in task["related_tasks"])
        lines.append(f"- **Related Tasks:** {len(task['related_tasks'])} (IDs: {related_ids})")
    return lines


def _format_task_summary(index: int, task: dict) -> list[str]:
    lines = [f"{index}. Task #{task.get('id')}: {task.get('text', '')}"]
    lines.append(f"   - Status: {task.get('task_status', 'N/A')}")
    if task.get("responsible"):
        lines.append(f"   - Responsible: {_person_name(task['responsible'])}")
    if task.get("due_date"):
        lines.append(f"   - Due: {task['due_date']}")
    return lines


def _format_list(task_list: dict) -> list[str]:
    lines = [f"## {task_list.get('name', 'Untitled')}", f"- **ID:** {task_list.get('id')}"]
    if task_list.get("header"):
        lines.append(f"- **Header:** {task_list['header']}")
    if task_list.get("organization_id"):
        lines.append(f"- **Organization ID:** {task_list['organization_id']}")
    if task_list.get("create_date"):
        lines.append(f"- **Created:** {task_list['create_date']}")
    if task_list.get("last_modified_date"):
        lines.append(f"- **Last Modified:** {task_list['last_modified_date']}")
    if task_list.get("fields"):
        lines.append(f"- **Fields:** {len(task_list['fields'])}")
    return lines


def _format_comment(index: int, comment: dict) -> list[str]:
    lines = [f"{index}. Comment #{comment.get('id')} by {_person_name(comment.get('author'))} ({comment.get('create_date', 'N/A')})"]
    if comment.get("text"):
        lines.append(f"   {comment['text']}")
    if comment.get("action"):
        lines.append(f"   - Action: {comment['action']}")
    return lines


def format_response_as_markdown(data: dict) -> str:
    """Format response data as human-readable Markdown"""
    if not data.get("success", False):
        # Error responses stay as JSON for clarity
        return json.dumps(data, indent=2)

    lines = []
    if data.get("message"):
        lines.append(f"**{data['message']}**\n")

    if "task" in data:
        lines.extend(_format_task(data["task"]))

    elif "tasks" in data:
        tasks = data["tasks"]
        lines.append(f"Found {len(tasks)} task(s):\n")
        for index, task in enumerate(tasks, 1):
            lines.extend(_format_task_summary(index, task))

    elif "lists" in data:
        lists = data["lists"]
        lines.append(f"Found {len(lists)} list(s):\n")
        for task_list in lists:
            line = f"- {task_list.get('name', 'Untitled')} (ID: {task_list.get('id')})"
            if task_list.get("header"):
                line += f" - {task_list['header']}"
            lines.append(line)

    elif "list" in data:
        lines.extend(_format_list(data["list"]))

    elif "comments" in data:
        comments = data["comments"]
        lines.append(f"Found {len(comments)} comment(s):\n")
        for index, comment in enumerate(comments, 1):
            lines.extend(_format_comment(index, comment))

    elif "profile" in data:
        profile = data["profile"]
        organization = profile.get("organization") or {}
        lines.append(f"- **Name:** {_person_name(profile)}")
        lines.append(f"- **Email:** {profile.get('email', 'N/A')}")
        lines.append(f"- **ID:** {profile.get('person_id', 'N/A')}")
        lines.append(f"- **Locale:** {profile.get('locale', 'N/A')}")
        lines.append(f"- **Timezone Offset:** {profile.get('timezone_offset', 'N/A')}")
        lines.append(f"- **Organization:** {organization.get('name', 'N/A')} (ID: {profile.get('organization_id', 'N/A')})")

    return "\n".join(lines).rstrip()


def format_response(data: dict, response_format: str = DEFAULT_RESPONSE_FORMAT) -> str:
    """Format response based on format preference"""
    if response_format == "markdown":
        formatted = format_response_as_markdown(data)
    else:  # json
        formatted = json.dumps(data, indent=2)

    # Always truncate if needed
    return truncate_response(formatted)


# Error handling utilities
def create_error_response(
    error_message: str,
    suggestion: str = "",
    error_code: str = "",
    details: Optional[dict] = None
) -> dict:
    """
    Create a standardized, actionable error response.

    Args:
        error_message: Clear description of what went wrong
        suggestion: Actionable suggestion for how to fix it
        error_code: Machine-readable error code (e.g., "AUTH_FAILED", "INVALID_PARAMS")
        details: Additional context/details

    Returns:
        Standardized error response dict
    """
    response = {
        "success": False,
        "error": error_message
    }

    if suggestion:
        response["error"] = f"{error_message}. {suggestion}"

    if error_code:
        response["error_code"] = error_code

    if details:
        response["details"] = details

    return response


# Common error templates
ERROR_TEMPLATES = {
    "auth_failed": {
        "message": "Authentication failed",
        "suggestion": "Please check your credentials: PYRUS_LOGIN and PYRUS_API_TOKEN",
        "code": "AUTH_FAILED"
    },
    "timeout": {
        "message": "Request timed out",
        "suggestion": "The Pyrus API is not responding. Check PYRUS_DOMAIN/PYRUS_BASE_URL and your network connection",
        "code": "TIMEOUT"
    },
    "network_error": {
        "message": "Could not reach the Pyrus API",
        "suggestion": "Check PYRUS_DOMAIN/PYRUS_BASE_URL and your network connection",
        "code": "NETWORK_ERROR"
    },
}


def get_error_response(template_key: str, **kwargs) -> dict:
    """Get a standardized error response from a template."""
    template = ERROR_TEMPLATES.get(template_key, {})
    return create_error_response(
        error_message=template.get("message", "An error occurred"),
        suggestion=template.get("suggestion", ""),
        error_code=template.get("code", ""),
        details=kwargs
    )


def _http_error_suggestion(status: int) -> str:
    if status == 404:
        return "Check that the task or list ID exists"
    if status == 403:
        return "Your account has no access to this task or list"
    if status == 429:
        return "Pyrus is rate limiting requests, try again later"
    if status >= 500:
        return "Pyrus is having trouble, try again later"
    return "Check the tool parameters"


# Tool handlers
async def create_task(client: PyrusClient, params: CreateTaskInput) -> dict:
    """Create a new task"""
    logger.info(f"create_task called - list_ids={params.list_ids}, responsible={params.responsible}")
    request = CreateTaskRequest(**params.payload())
    task = await client.create_task(request)
    return {
        "success": True,
        "message": "Task created successfully!",
        "task_id": task.id,
        "task": _dump(task)
    }


async def get_task(client: PyrusClient, params: TaskIdInput) -> dict:
    """Get task details, with the lists that contain it when they can be resolved"""
    logger.info(f"get_task called - task_id={params.task_id}")
    task = await client.get_task(params.task_id)

    try:
        task.lists = await client.get_task_lists(params.task_id)
    except Exception as e:
        # Lists are decoration; the task itself was fetched
        logger.debug(f"Could not get lists for task {params.task_id}: {type(e).__name__}: {e}")

    return {
        "success": True,
        "message": "Task Details:",
        "task": _dump(task)
    }


async def update_task(client: PyrusClient, params: UpdateTaskInput) -> dict:
    """Update a task: comment, action, reassignment, due date, participants or lists"""
    logger.info(f"update_task called - task_id={params.task_id}, action={params.action}")
    request = UpdateTaskRequest(**params.payload("task_id"))
    task = await client.update_task(params.task_id, request)
    return {
        "success": True,
        "message": "Task updated successfully!",
        "task": _dump(task)
    }


async def move_task(client: PyrusClient, params: MoveTaskInput) -> dict:
    """Move a task to another list"""
    logger.info(f"move_task called - task_id={params.task_id}, list_id={params.list_id}")
    request = MoveTaskRequest(list_id=params.list_id, responsible=params.responsible)
    task = await client.move_task(params.task_id, request)
    return {
        "success": True,
        "message": "Task moved successfully!",
        "task": _dump(task)
    }


async def get_profile(client: PyrusClient, params: EmptyInput) -> dict:
    profile = await client.get_profile()
    return {
        "success": True,
        "message": "User Profile:",
        "profile": _dump(profile)
    }


async def get_lists(client: PyrusClient, params: EmptyInput) -> dict:
    lists = await client.get_lists()
    return {
        "success": True,
        "message": "Available Lists:",
        "lists": [_dump(task_list) for task_list in lists]
    }


async def find_list(client: PyrusClient, params: FindListInput) -> dict:
    """Find a list by name (case-insensitive substring)"""
    logger.info(f"find_list called - name='{params.name}'")
    task_list = await client.find_list(params.name)
    if task_list is None:
        return {
            "success": True,
            "found": False,
            "message": f'No list found with name containing: "{params.name}"'
        }

    return {
        "success": True,
        "found": True,
        "message": "Found List:",
        "list": _dump(task_list)
    }


async def get_list_tasks(client: PyrusClient, params: GetListTasksInput) -> dict:
    """Get tasks from a list with optional filters"""
    logger.info(f"get_list_tasks called - list_id={params.list_id}")
    filters = ListTasksFilter(**params.payload("list_id"))
    tasks = await client.get_list_tasks(params.list_id, filters)
    return {
        "success": True,
        "message": f"Tasks in List {params.list_id}:",
        "tasks": [_dump(task) for task in tasks]
    }


async def get_related_tasks(client: PyrusClient, params: TaskIdInput) -> dict:
    tasks = await client.get_related_tasks(params.task_id)
    return {
        "success": True,
        "message": f"Related Tasks for Task {params.task_id}:",
        "tasks": [_dump(task) for task in tasks]
    }


async def add_comment(client: PyrusClient, params: AddCommentInput) -> dict:
    logger.info(f"add_comment called - task_id={params.task_id}")
    task = await client.add_comment(params.task_id, params.text)
    return {
        "success": True,
        "message": "Comment added successfully!",
        "task": _dump(task)
    }


async def get_task_comments(client: PyrusClient, params: TaskIdInput) -> dict:
    comments = await client.get_task_comments(params.task_id)
    return {
        "success": True,
        "message": f"Comments for Task {params.task_id}:",
        "comments": [_dump(comment) for comment in comments]
    }


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", exclude_none=True, by_alias=True)


# Tool handlers mapping: name -> (input model, handler)
TOOL_HANDLERS = {
    "create_task": (CreateTaskInput, create_task),
    "get_task": (TaskIdInput, get_task),
    "update_task": (UpdateTaskInput, update_task),
    "move_task": (MoveTaskInput, move_task),
    "get_profile": (EmptyInput, get_profile),
    "get_lists": (EmptyInput, get_lists),
    "find_list": (FindListInput, find_list),
    "get_list_tasks": (GetListTasksInput, get_list_tasks),
    "get_related_tasks": (TaskIdInput, get_related_tasks),
    "add_comment": (AddCommentInput, add_comment),
    "get_task_comments": (TaskIdInput, get_task_comments),
}


async def dispatch_tool(name: str, arguments: Optional[dict], get_client) -> dict:
    """
    Validate arguments, run the named tool and convert failures into error responses.

    Raises:
        ValueError: If no tool with this name exists
    """
    entry = TOOL_HANDLERS.get(name)
    if entry is None:
        raise ValueError(f"Unknown tool: {name}")

    input_model, handler = entry
    try:
        params = input_model.model_validate(arguments or {})
    except ValidationError as e:
        return create_error_response(
            f"Invalid parameters for {name}",
            "Check the tool input schema",
            "INVALID_PARAMS",
            {"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]}
        )

    try:
        return await handler(get_client(), params)
    except PyrusConfigError as e:
        return create_error_response(str(e), "Set it in the environment or in a .env file", "CONFIG_MISSING")
    except PyrusAuthenticationError:
        return get_error_response("auth_failed")
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        logger.error(f"{name} failed: HTTP {status}")
        return create_error_response(
            f"Pyrus API returned HTTP {status}",
            _http_error_suggestion(status),
            "API_ERROR",
            {"http_status": status}
        )
    except httpx.TimeoutException:
        return get_error_response("timeout")
    except httpx.TransportError as e:
        logger.error(f"{name} failed: {type(e).__name__}")
        return get_error_response("network_error")
    except Exception as e:
        logger.error(f"{name} failed: {type(e).__name__}: {e}")
        return create_error_response(
            f"Failed to execute {name}",
            "Check the server log for details",
            "EXCEPTION"
        )


def _tool(name: str, description: str, properties: dict, required: list = (), read_only: bool = True, idempotent: bool = True) -> Tool:
    properties = {
        **properties,
        "response_format": {"type": "string", "enum": ALLOWED_FORMATS, "description": "Response format (default: markdown)"},
    }
    return Tool(
        name=name,
        description=description,
        inputSchema={
            "type": "object",
            "properties": properties,
            "required": list(required)
        },
        annotations=ToolAnnotations(
            readOnlyHint=read_only,
            destructiveHint=False,
            idempotentHint=idempotent,
            openWorldHint=True
        )
    )


TASK_ID_PROPERTY = {"task_id": {"type": "integer", "description": "Task ID"}}
PERSON_IDS = {"type": "array", "items": {"type": "integer"}}


def list_tool_definitions() -> list[Tool]:
    """All Pyrus tools with their input schemas."""
    return [
        _tool(
            "create_task",
            "Create a new task in Pyrus",
            {
                "text": {"type": "string", "description": "Task description/text (required)"},
                "responsible": {"type": "integer", "description": "ID of the person responsible for the task (optional)"},
                "due_date": {"type": "string", "description": "Due date in ISO format (YYYY-MM-DD) (optional)"},
                "participants": {**PERSON_IDS, "description": "Array of participant IDs (optional)"},
                "list_ids": {**PERSON_IDS, "description": "Array of list IDs to add task to (optional)"},
            },
            required=["text"],
            read_only=False,
            idempotent=False
        ),
        _tool(
            "get_task",
            "Get task details by ID, including the lists that contain it",
            TASK_ID_PROPERTY,
            required=["task_id"]
        ),
        _tool(
            "update_task",
            "Update existing task (add comment, change status, reassign, change lists, etc.)",
            {
                **TASK_ID_PROPERTY,
                "text": {"type": "string", "description": "Comment text (optional)"},
                "action": {"type": "string", "enum": ["approve", "reject", "reopen", "complete"], "description": "Action to perform on the task (optional)"},
                "responsible": {"type": "integer", "description": "New responsible person ID (optional)"},
                "due_date": {"type": "string", "description": "New due date in ISO format (YYYY-MM-DD) (optional)"},
                "participants": {**PERSON_IDS, "description": "Array of participant IDs (optional)"},
                "list_ids": {**PERSON_IDS, "description": "Array of list IDs to tag task with (optional)"},
                "added_list_ids": {**PERSON_IDS, "description": "Array of list IDs to add task to (optional)"},
                "removed_list_ids": {**PERSON_IDS, "description": "Array of list IDs to remove task from (optional)"},
            },
            required=["task_id"],
            read_only=False,
            idempotent=False
        ),
        _tool(
            "move_task",
            "Move task to different list/column",
            {
                **TASK_ID_PROPERTY,
                "list_id": {"type": "integer", "description": "Target list ID"},
                "responsible": {"type": "integer", "description": "New responsible person ID (optional)"},
            },
            required=["task_id", "list_id"],
            read_only=False
        ),
        _tool("get_profile", "Get current user profile information", {}),
        _tool("get_lists", "Get all lists/forms available to the user", {}),
        _tool(
            "find_list",
            "Find a list by name (case-insensitive search)",
            {"name": {"type": "string", "description": "List name to search for"}},
            required=["name"]
        ),
        _tool(
            "get_list_tasks",
            "Get tasks from a specific list with filtering options",
            {
                "list_id": {"type": "integer", "description": "List ID to get tasks from"},
                "item_count": {"type": "integer", "description": "Limit the number of tasks returned (optional)"},
                "include_archived": {"type": "boolean", "description": "Include archived tasks (optional)"},
                "modified_after": {"type": "string", "description": "Tasks modified after this date (YYYY-MM-DD) (optional)"},
                "modified_before": {"type": "string", "description": "Tasks modified before this date (YYYY-MM-DD) (optional)"},
                "created_after": {"type": "string", "description": "Tasks created after this date (YYYY-MM-DD) (optional)"},
                "created_before": {"type": "string", "description": "Tasks created before this date (YYYY-MM-DD) (optional)"},
                "due_after": {"type": "string", "description": "Tasks due after this date (YYYY-MM-DD) (optional)"},
                "due_before": {"type": "string", "description": "Tasks due before this date (YYYY-MM-DD) (optional)"},
            },
            required=["list_id"]
        ),
        _tool(
            "get_related_tasks",
            "Get tasks related to a specific task",
            TASK_ID_PROPERTY,
            required=["task_id"]
        ),
        _tool(
            "add_comment",
            "Add a comment to a task",
            {
                **TASK_ID_PROPERTY,
                "text": {"type": "string", "description": "Comment text"},
            },
            required=["task_id", "text"],
            read_only=False,
            idempotent=False
        ),
        _tool(
            "get_task_comments",
            "Get all comments for a specific task",
            TASK_ID_PROPERTY,
            required=["task_id"]
        ),
    ]


class LazyClient:
    """Holds the process's Pyrus client, created from the environment on first use"""

    def __init__(self, config_loader=load_config_from_env, **client_options):
        self._config_loader = config_loader
        self._client_options = client_options
        self._client: Optional[PyrusClient] = None

    def __call__(self) -> PyrusClient:
        if self._client is None:
            self._client = PyrusClient(self._config_loader(), **self._client_options)
            logger.debug("PyrusClient initialized")
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_server(get_client) -> Server:
    """Create the MCP server with the Pyrus tools registered."""
    server = Server("pyrus-mcp")

    @server.list_tools()
    async def handle_list_tools():
        """List available Pyrus tools."""
        return list_tool_definitions()

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict | None = None):
        """Handle tool execution."""
        if not arguments:
            arguments = {}

        response_format = arguments.get("response_format", DEFAULT_RESPONSE_FORMAT)
        if response_format not in ALLOWED_FORMATS:
            response_format = DEFAULT_RESPONSE_FORMAT

        result = await dispatch_tool(name, arguments, get_client)
        return [TextContent(type="text", text=format_response(result, response_format))]

    return server


# Logging
class SecretRedactingFilter(logging.Filter):
    """Mask credentials in log records before any handler writes them."""

    BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*")
    FIELD_PATTERN = re.compile(
        r"""((?:access_token|security_key|password)["']?\s*[:=]\s*["']?)[^"'\s,}]+""",
        re.IGNORECASE,
    )

    def __init__(self, secrets=()):
        super().__init__()
        self._secrets = [secret for secret in secrets if secret]

    def redact(self, message: str) -> str:
        for secret in self._secrets:
            message = message.replace(secret, "***")
        message = self.BEARER_PATTERN.sub(r"\1***", message)
        return self.FIELD_PATTERN.sub(r"\1***", message)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def cleanup_old_logs(log_dir, days_old=30) -> int:
    """Remove log files older than specified days. If days_old=0, delete all logs."""
    log_path = Path(log_dir)
    if not log_path.exists():
        return 0

    cutoff_time = time.time() - (days_old * 24 * 60 * 60)
    deleted_count = 0
    try:
        for log_file in log_path.glob("*.log"):
            if days_old == 0 or log_file.stat().st_mtime < cutoff_time:
                log_file.unlink()
                deleted_count += 1
    except OSError as e:
        logger.warning(f"⚠️ Log cleanup failed: {e}")
    return deleted_count


def setup_logging(log_dir: str = LOG_DIR, retention_days: int = LOG_RETENTION_DAYS, level: str = LOG_LEVEL, secrets=()) -> str:
    """Configure file + stderr logging; stdout is reserved for the MCP stdio transport."""
    os.makedirs(log_dir, exist_ok=True)

    # Clean up old logs on startup
    deleted_count = cleanup_old_logs(log_dir, days_old=retention_days)

    log_file = os.path.join(log_dir, f"mcp_server_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
    redactor = SecretRedactingFilter(secrets)
    handlers = [logging.FileHandler(log_file), logging.StreamHandler(sys.stderr)]
    for handler in handlers:
        handler.addFilter(redactor)

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    if deleted_count:
        logger.info(f"🧹 Cleaned up {deleted_count} old log files (retention: {retention_days} days)")
    logger.info(f"=== Pyrus MCP Server Starting - Log file: {log_file} ===")
    return log_file


# Click rewraps epilog paragraphs unless they start with a \b line
HELP_EPILOG = """\b
Environment Variables:
  PYRUS_LOGIN            Your Pyrus login (required)
  PYRUS_API_TOKEN        Your Pyrus API security key (required)
  PYRUS_BASE_URL         Custom Pyrus API base URL (optional)
  PYRUS_DOMAIN           Custom Pyrus domain (optional, default: pyrus.com)
  LOG_LEVEL              ERROR, WARNING, INFO or DEBUG (default: INFO)
  LOG_DIR                Log file directory (default: /tmp/pyrus_mcp_logs)
  LOG_RETENTION_DAYS     Days to keep log files, 0 clears them (default: 30)

\b
Available Tools:
  create_task, get_task, update_task, move_task, get_profile, get_lists,
  find_list, get_list_tasks, get_related_tasks, add_comment, get_task_comments
"""


async def main():
    """Run the Pyrus MCP server over stdio."""
    get_client = LazyClient()
    server = create_server(get_client)
    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.info(f"Pyrus MCP server running (v{VERSION}) with {len(TOOL_HANDLERS)} tools")
            await server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="pyrus-mcp",
                    server_version=VERSION,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={}
                    ),
                ),
            )
    finally:
        await get_client.aclose()
        logger.info("Server shutdown completed")


app = typer.Typer(name="pyrus-mcp", add_completion=False, rich_markup_mode=None)


def _version_callback(value: bool) -> None:
    """Print the version and exit when requested."""
    if value:
        typer.echo(f"pyrus-mcp v{VERSION}")
        raise typer.Exit()


VERSION_OPTION = typer.Option(
    False,
    "--version",
    "-v",
    help="Show version and exit.",
    callback=_version_callback,
    is_eager=True,
)


@app.command(
    help=f"Pyrus MCP Server v{VERSION} - MCP server for Pyrus API integration",
    epilog=HELP_EPILOG,
)
def cli(version: bool = VERSION_OPTION) -> None:
    """Console entry point: pyrus-mcp [--version]"""
    setup_logging(secrets=[os.getenv('PYRUS_API_TOKEN')])
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    app()
