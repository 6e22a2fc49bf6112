"""
Pyrus MCP - API client
Authenticated access to the Pyrus REST API: token lifecycle, response caching
and retry-governed execution of the task, list and comment operations.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from pyrus_executor import ResilientExecutor

logger = logging.getLogger(__name__)

VERSION = "1.3.0"
USER_AGENT = f"pyrus-mcp/{VERSION}"
DEFAULT_DOMAIN = "pyrus.com"

# HTTP configuration
HTTP_TIMEOUT = 30.0  # seconds

# Tokens nominally live ~60 minutes; re-authenticate 10 minutes early
TOKEN_LIFETIME = 60 * 60  # seconds
TOKEN_SAFETY_MARGIN = 10 * 60  # seconds

# Profile and list catalog are cached for 5 minutes
CACHE_TTL = 5 * 60  # seconds

Clock = Callable[[], float]


class PyrusAuthenticationError(Exception):
    """Raised when the auth endpoint rejects the login/security key pair or cannot be reached."""


# Configuration
class PyrusConfig(BaseModel):
    """Connection settings for a single Pyrus account"""
    model_config = ConfigDict(extra="forbid")

    login: str = Field(..., min_length=1, description="Pyrus login (email)")
    security_key: str = Field(..., min_length=1, description="Pyrus API security key")
    domain: Optional[str] = Field(None, description=f"Pyrus domain (default: {DEFAULT_DOMAIN})")
    base_url: Optional[str] = Field(None, description="Full API base URL override")

    @property
    def api_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"https://api.{self.domain or DEFAULT_DOMAIN}/v4"

    @property
    def auth_url(self) -> str:
        return f"https://accounts.{self.domain or DEFAULT_DOMAIN}/api/v4/auth"


# Upstream data models. Pyrus payloads carry many more fields than we read,
# so every model keeps the extras instead of dropping them.
class PyrusModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Person(PyrusModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Organization(PyrusModel):
    organization_id: Optional[int] = None
    name: Optional[str] = None


class Profile(PyrusModel):
    person_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    locale: Optional[str] = None
    timezone_offset: Optional[int] = None
    organization_id: Optional[int] = None
    organization: Optional[Organization] = None


class Comment(PyrusModel):
    id: int
    text: Optional[str] = None
    create_date: Optional[str] = None
    author: Optional[Person] = None
    action: Optional[str] = None


class TaskList(PyrusModel):
    """A Pyrus list (form/column) that tasks belong to"""
    id: int
    name: str = ""
    header: Optional[str] = None
    form_fields: Optional[list[dict[str, Any]]] = Field(None, alias="fields")
    organization_id: Optional[int] = None
    create_date: Optional[str] = None
    last_modified_date: Optional[str] = None


class Task(PyrusModel):
    id: int
    text: Optional[str] = None
    task_status: Optional[str] = None
    create_date: Optional[str] = None
    last_modified_date: Optional[str] = None
    due_date: Optional[str] = None
    author: Optional[Person] = None
    responsible: Optional[Person] = None
    participants: Optional[list[Person]] = None
    comments: Optional[list[Comment]] = None
    related_tasks: Optional[list["Task"]] = None
    list_ids: Optional[list[int]] = None
    # Filled in by callers that resolve list membership, never sent by Pyrus
    lists: Optional[list[TaskList]] = None


TaskAction = Literal["approve", "reject", "reopen", "complete"]


# Request payloads
class CreateTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1, description="Task text")
    responsible: Optional[int] = Field(None, description="Responsible person ID")
    due_date: Optional[str] = Field(None, description="Due date (YYYY-MM-DD)")
    participants: Optional[list[int]] = Field(None, description="Participant person IDs")
    list_ids: Optional[list[int]] = Field(None, description="Lists to add the task to")


class UpdateTaskRequest(BaseModel):
    """Fields posted as a task comment; every field is optional"""
    model_config = ConfigDict(extra="forbid")

    text: Optional[str] = Field(None, description="Comment text")
    action: Optional[TaskAction] = Field(None, description="Task action")
    responsible: Optional[int] = Field(None, description="New responsible person ID")
    due_date: Optional[str] = Field(None, description="New due date (YYYY-MM-DD)")
    participants: Optional[list[int]] = Field(None, description="Participant person IDs")
    list_ids: Optional[list[int]] = Field(None, description="Lists to tag the task with")
    added_list_ids: Optional[list[int]] = Field(None, description="Lists to add the task to")
    removed_list_ids: Optional[list[int]] = Field(None, description="Lists to remove the task from")


class MoveTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    list_id: int = Field(..., description="Target list ID")
    responsible: Optional[int] = Field(None, description="New responsible person ID")


class ListTasksFilter(BaseModel):
    """Query filters for /lists/{id}/tasks. Only modified_* is documented upstream."""
    model_config = ConfigDict(extra="forbid")

    item_count: Optional[int] = Field(None, ge=1)
    include_archived: Optional[bool] = None
    modified_after: Optional[str] = None
    modified_before: Optional[str] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    due_after: Optional[str] = None
    due_before: Optional[str] = None

    def to_params(self) -> dict:
        return self.model_dump(exclude_none=True)


@dataclass
class Credential:
    access_token: str
    expires_at: float

    def is_valid(self, now: float, margin: float = TOKEN_SAFETY_MARGIN) -> bool:
        return now < self.expires_at - margin


class TokenAuthenticator:
    """
    Obtains and caches the bearer token for one Pyrus account.

    A single token is held at a time. Concurrent callers that find no valid
    token wait on one shared authentication round trip.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        auth_url: str,
        login: str,
        security_key: str,
        executor: ResilientExecutor,
        clock: Optional[Clock] = None,
    ):
        self._http = http
        self.auth_url = auth_url
        self._login = login
        self._security_key = security_key
        self._executor = executor
        self._clock = clock or time.monotonic
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None and self._credential.is_valid(self._clock())

    async def ensure_authenticated(self) -> str:
        """Return a usable access token, authenticating only when none is valid."""
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential.access_token

        async with self._lock:
            # Another caller may have finished authenticating while we waited
            credential = self._credential
            if credential is None or not credential.is_valid(self._clock()):
                credential = await self._authenticate()
                self._credential = credential
            return credential.access_token

    def invalidate(self) -> None:
        self._credential = None

    async def _authenticate(self) -> Credential:
        async def login():
            response = await self._http.post(
                self.auth_url,
                json={"login": self._login, "security_key": self._security_key},
            )
            response.raise_for_status()
            return response.json()

        try:
            data = await self._executor.execute(login, "Authentication")
            access_token = data["access_token"]
        except Exception as e:
            logger.error(f"❌ Authentication failed for {_mask_login(self._login)}: {type(e).__name__}")
            raise PyrusAuthenticationError("Failed to authenticate with Pyrus API") from e

        logger.info(f"🔐 Successfully authenticated with Pyrus API as {_mask_login(self._login)}")
        return Credential(access_token=access_token, expires_at=self._clock() + TOKEN_LIFETIME)


def _mask_login(login: str) -> str:
    if "@" not in login:
        return "***"
    user, domain = login.split("@", 1)
    return f"{user[:3]}***@{domain}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResponseCache:
    """Single-value cache with a fixed time-to-live, refreshed by full replacement."""

    def __init__(self, name: str, ttl: float = CACHE_TTL, clock: Optional[Clock] = None):
        self.name = name
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entry: Optional[CacheEntry] = None
        self._lock = asyncio.Lock()

    def _fresh_value(self) -> tuple[bool, Any]:
        entry = self._entry
        if entry is not None and self._clock() < entry.expires_at:
            return True, entry.value
        return False, None

    async def get_or_fetch(self, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        hit, value = self._fresh_value()
        if hit:
            logger.debug(f"{self.name} cache hit")
            return value

        async with self._lock:
            hit, value = self._fresh_value()
            if hit:
                return value

            logger.debug(f"{self.name} cache miss - fetching")
            value = await fetcher()
            self._entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
            return value

    def clear(self) -> None:
        self._entry = None


class PyrusClient:
    """
    Client for the subset of the Pyrus API exposed as MCP tools.

    Every request runs through the retry executor and carries a bearer token
    from the authenticator. Profile and list catalog reads are cached for
    CACHE_TTL seconds; writes never invalidate those caches, so a list renamed
    through another channel can look stale for up to five minutes.

    Upstream errors (httpx.HTTPStatusError, httpx.TransportError) surface
    unchanged once retries are exhausted. Authentication problems surface as
    PyrusAuthenticationError.
    """

    def __init__(
        self,
        config: PyrusConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        executor: Optional[ResilientExecutor] = None,
        clock: Optional[Clock] = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.config = config
        self.api_url = config.api_url
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
        )
        self._executor = executor or ResilientExecutor()
        self.auth = TokenAuthenticator(
            self._http,
            config.auth_url,
            config.login,
            config.security_key,
            self._executor,
            clock=clock,
        )
        self._profile_cache = ResponseCache("Profile", clock=clock)
        self._lists_cache = ResponseCache("Lists", clock=clock)

    async def __aenter__(self) -> "PyrusClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        async def operation():
            token = await self.auth.ensure_authenticated()
            headers = {"Authorization": f"Bearer {token}"}
            if idempotency_key:
                headers["Idempotency-Key"] = idempotency_key

            response = await self._http.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                params=params,
                headers=headers,
            )
            if response.status_code == 401:
                # Token revoked before its expiry; the next call authenticates again
                self.auth.invalidate()
            response.raise_for_status()
            return response.json()

        return await self._executor.execute(operation, context)

    # Tasks
    async def create_task(self, request: CreateTaskRequest, idempotency_key: Optional[str] = None) -> Task:
        """Create a task. Without an idempotency key a retried timeout may create a duplicate."""
        data = await self._request(
            "POST",
            "/tasks",
            "Create task",
            json=request.model_dump(exclude_none=True),
            idempotency_key=idempotency_key,
        )
        return Task.model_validate(data["task"])

    async def get_task(self, task_id: int) -> Task:
        data = await self._request("GET", f"/tasks/{task_id}", f"Get task {task_id}")
        return Task.model_validate(data["task"])

    async def update_task(
        self,
        task_id: int,
        request: UpdateTaskRequest,
        idempotency_key: Optional[str] = None,
    ) -> Task:
        """
        Change a task by posting a comment carrying the changed fields.

        Pyrus models status changes, reassignment, list changes and plain
        comments as the same primitive.
        """
        return await self._post_comment(
            task_id,
            request.model_dump(exclude_none=True),
            f"Update task {task_id}",
            idempotency_key,
        )

    async def move_task(self, task_id: int, request: MoveTaskRequest) -> Task:
        """Add the task to the target list, optionally reassigning it."""
        update = UpdateTaskRequest(added_list_ids=[request.list_id], responsible=request.responsible)
        return await self._post_comment(
            task_id,
            update.model_dump(exclude_none=True),
            f"Move task {task_id} to list {request.list_id}",
        )

    async def add_comment(self, task_id: int, text: str) -> Task:
        return await self._post_comment(task_id, {"text": text}, f"Add comment to task {task_id}")

    async def _post_comment(
        self,
        task_id: int,
        payload: dict,
        context: str,
        idempotency_key: Optional[str] = None,
    ) -> Task:
        data = await self._request(
            "POST",
            f"/tasks/{task_id}/comments",
            context,
            json=payload,
            idempotency_key=idempotency_key,
        )
        return Task.model_validate(data["task"])

    async def get_related_tasks(self, task_id: int) -> list[Task]:
        task = await self.get_task(task_id)
        return task.related_tasks or []

    async def get_task_comments(self, task_id: int) -> list[Comment]:
        task = await self.get_task(task_id)
        return task.comments or []

    async def get_task_lists(self, task_id: int) -> list[TaskList]:
        """
        Find the lists containing a task by scanning every list in the catalog.

        Lists that cannot be read (e.g. permission denied) are skipped.
        """
        containing = []
        for task_list in await self.get_lists():
            try:
                tasks = await self.get_list_tasks(task_list.id)
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Skipping list {task_list.id} while resolving task {task_id}: {type(e).__name__}")
                continue
            if any(task.id == task_id for task in tasks):
                containing.append(task_list)
        return containing

    # Profile
    async def get_profile(self) -> Profile:
        async def fetch():
            data = await self._request("GET", "/profile", "Get profile")
            return Profile.model_validate(data)

        return await self._profile_cache.get_or_fetch(fetch)

    # Lists
    async def get_lists(self) -> list[TaskList]:
        async def fetch():
            data = await self._request("GET", "/lists", "Get lists")
            # /lists answers with {"lists": [...]}; tolerate a bare array too
            items = data.get("lists", []) if isinstance(data, dict) else data
            return [TaskList.model_validate(item) for item in items]

        # Callers get their own list; the cached catalog only changes by replacement
        return list(await self._lists_cache.get_or_fetch(fetch))

    async def find_list(self, name: str) -> Optional[TaskList]:
        """First list, in catalog order, whose name contains `name` (case-insensitive); None if absent."""
        needle = name.lower()
        for task_list in await self.get_lists():
            if needle in task_list.name.lower():
                return task_list
        return None

    async def get_list_tasks(self, list_id: int, filters: Optional[ListTasksFilter] = None) -> list[Task]:
        params = filters.to_params() if filters else None
        data = await self._request(
            "GET",
            f"/lists/{list_id}/tasks",
            f"Get tasks for list {list_id}",
            params=params or None,
        )
        return [Task.model_validate(item) for item in data.get("tasks", [])]
