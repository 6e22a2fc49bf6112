"""Tests for PyrusClient against a fake Pyrus API: auth lifecycle, caching and every operation."""

import asyncio

import httpx
import pytest

from conftest import AUTHOR, request_json
from pyrus_client import (
    CACHE_TTL,
    CreateTaskRequest,
    ListTasksFilter,
    MoveTaskRequest,
    PyrusAuthenticationError,
    PyrusConfig,
    Task,
    UpdateTaskRequest,
)

LISTS = [
    {"id": 1, "name": "Task Management"},
    {"id": 2, "name": "Project Planning", "header": "Q3 roadmap"},
]


class TestConfig:
    def test_default_domain(self, config):
        assert config.api_url == "https://api.pyrus.com/v4"
        assert config.auth_url == "https://accounts.pyrus.com/api/v4/auth"

    def test_custom_domain(self):
        config = PyrusConfig(login="a@b.c", security_key="k", domain="custom.com")
        assert config.api_url == "https://api.custom.com/v4"
        assert config.auth_url == "https://accounts.custom.com/api/v4/auth"

    def test_base_url_override(self):
        config = PyrusConfig(login="a@b.c", security_key="k", base_url="https://custom-api.com/v4/")
        assert config.api_url == "https://custom-api.com/v4"
        assert config.auth_url == "https://accounts.pyrus.com/api/v4/auth"


class TestAuthentication:
    async def test_valid_token_is_reused(self, client, api):
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1, "text": "One"}})

        await client.get_task(1)
        await client.get_task(1)

        assert api.auth_calls == 1
        assert api.count("GET", "/v4/tasks/1") == 2
        for request in api.requests_to("GET", "/v4/tasks/1"):
            assert request.headers["Authorization"] == "Bearer token-1"

    async def test_auth_request_carries_login_and_security_key(self, client, api):
        await client.auth.ensure_authenticated()

        [auth_request] = api.requests_to("POST", "/api/v4/auth")
        assert auth_request.url.host == "accounts.pyrus.com"
        assert request_json(auth_request) == {"login": "test@example.com", "security_key": "valid-key-123"}
        assert auth_request.headers["User-Agent"].startswith("pyrus-mcp/")

    async def test_token_is_refreshed_after_fifty_minutes(self, client, api, clock):
        api.on("POST", "/api/v4/auth", {"access_token": "token-1"}, {"access_token": "token-2"})
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1}})

        await client.get_task(1)
        clock.advance(49 * 60)
        await client.get_task(1)
        assert api.auth_calls == 1

        clock.advance(60)
        await client.get_task(1)
        assert api.auth_calls == 2
        assert api.requests_to("GET", "/v4/tasks/1")[-1].headers["Authorization"] == "Bearer token-2"

    async def test_unauthorized_response_drops_cached_token(self, client, api):
        api.on("GET", "/v4/profile", 401, {"person_id": 1})

        with pytest.raises(httpx.HTTPStatusError):
            await client.get_profile()
        assert api.auth_calls == 1
        assert not client.auth.is_authenticated

        profile = await client.get_profile()
        assert profile.person_id == 1
        assert api.auth_calls == 2

    async def test_ensure_authenticated_is_a_no_op_while_valid(self, client, api):
        first = await client.auth.ensure_authenticated()
        second = await client.auth.ensure_authenticated()

        assert first == second == "token-1"
        assert client.auth.is_authenticated
        assert api.auth_calls == 1

    async def test_concurrent_callers_share_one_authentication(self, client, api):
        tokens = await asyncio.gather(*(client.auth.ensure_authenticated() for _ in range(5)))

        assert set(tokens) == {"token-1"}
        assert api.auth_calls == 1

    async def test_rejected_credentials_raise_authentication_error(self, client, api):
        api.on("POST", "/api/v4/auth", 401)

        with pytest.raises(PyrusAuthenticationError) as exc_info:
            await client.get_task(1)

        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        assert api.auth_calls == 1
        assert api.count("GET", "/v4/tasks/1") == 0
        assert not client.auth.is_authenticated

    async def test_auth_server_errors_are_retried(self, client, api, sleeper):
        api.on("POST", "/api/v4/auth", 503, {"access_token": "token-1"})

        assert await client.auth.ensure_authenticated() == "token-1"
        assert api.auth_calls == 2
        assert sleeper.delays == [1.0]

    async def test_response_without_token_is_an_authentication_error(self, client, api):
        api.on("POST", "/api/v4/auth", {"api_url": "https://api.pyrus.com/v4/"})

        with pytest.raises(PyrusAuthenticationError):
            await client.auth.ensure_authenticated()

    async def test_invalidate_forces_new_authentication(self, client, api):
        await client.auth.ensure_authenticated()
        client.auth.invalidate()
        await client.auth.ensure_authenticated()

        assert api.auth_calls == 2


class TestCaches:
    async def test_profile_is_fetched_once_within_ttl(self, client, api, clock):
        api.on(
            "GET", "/v4/profile",
            {"person_id": 1, "first_name": "Test", "organization": {"organization_id": 5, "name": "Org"}},
            {"person_id": 1, "first_name": "Renamed"},
        )

        first = await client.get_profile()
        clock.advance(CACHE_TTL - 1)
        second = await client.get_profile()

        assert first is second
        assert first.organization.name == "Org"
        assert api.count("GET", "/v4/profile") == 1

        clock.advance(1)
        third = await client.get_profile()
        assert api.count("GET", "/v4/profile") == 2
        assert third.first_name == "Renamed"
        assert third.organization is None

    async def test_lists_are_cached(self, client, api, clock):
        api.on("GET", "/v4/lists", {"lists": LISTS}, {"lists": LISTS[:1]})

        assert [l.id for l in await client.get_lists()] == [1, 2]
        assert [l.id for l in await client.get_lists()] == [1, 2]
        assert api.count("GET", "/v4/lists") == 1

        clock.advance(CACHE_TTL)
        assert [l.id for l in await client.get_lists()] == [1]
        assert api.count("GET", "/v4/lists") == 2

    async def test_lists_accept_bare_array(self, client, api):
        api.on("GET", "/v4/lists", [{"id": 9, "name": "Inbox"}])

        lists = await client.get_lists()

        assert [(l.id, l.name) for l in lists] == [(9, "Inbox")]

    async def test_writes_do_not_invalidate_list_cache(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})
        api.on("POST", "/v4/tasks/1/comments", {"task": {"id": 1}})

        await client.get_lists()
        await client.move_task(1, MoveTaskRequest(list_id=2))
        await client.get_lists()

        assert api.count("GET", "/v4/lists") == 1

    async def test_concurrent_reads_share_one_fetch(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})

        results = await asyncio.gather(*(client.get_lists() for _ in range(3)))

        assert all(len(lists) == 2 for lists in results)
        assert api.count("GET", "/v4/lists") == 1

    async def test_mutating_returned_lists_leaves_cache_intact(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})

        lists = await client.get_lists()
        lists.clear()

        assert [l.id for l in await client.get_lists()] == [1, 2]
        assert api.count("GET", "/v4/lists") == 1


class TestFindList:
    async def test_matches_case_insensitive_substring(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})

        found = await client.find_list("task")

        assert found.id == 1
        assert found.name == "Task Management"
        assert (await client.find_list("PLANNING")).id == 2

    async def test_returns_first_match_in_catalog_order(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})

        assert (await client.find_list("an")).id == 1

    async def test_missing_list_returns_none(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS})

        assert await client.find_list("zzz") is None


class TestTasks:
    async def test_create_then_get_task(self, client, api):
        api.on("POST", "/v4/tasks", {"task": {"id": 42, "text": "Review report", "task_status": "new", "author": AUTHOR}})
        api.on("GET", "/v4/tasks/42", {"task": {"id": 42, "text": "Review report", "task_status": "new", "author": AUTHOR}})

        created = await client.create_task(CreateTaskRequest(text="Review report"))

        assert api.auth_calls == 1
        assert request_json(api.requests_to("POST", "/v4/tasks")[0]) == {"text": "Review report"}
        assert created.id == 42
        assert created.task_status == "new"

        fetched = await client.get_task(created.id)
        assert fetched.id == 42
        assert fetched.author.full_name == "Test User"
        assert fetched.responsible is None
        assert api.auth_calls == 1

    async def test_create_task_sends_optional_fields(self, client, api):
        api.on("POST", "/v4/tasks", {"task": {"id": 43}})

        await client.create_task(
            CreateTaskRequest(text="Plan", responsible=7, due_date="2024-12-31", participants=[7, 8], list_ids=[1]),
            idempotency_key="create-43",
        )

        [request] = api.requests_to("POST", "/v4/tasks")
        assert request_json(request) == {
            "text": "Plan",
            "responsible": 7,
            "due_date": "2024-12-31",
            "participants": [7, 8],
            "list_ids": [1],
        }
        assert request.headers["Idempotency-Key"] == "create-43"

    async def test_get_task_is_never_cached(self, client, api):
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1, "task_status": "new"}}, {"task": {"id": 1, "task_status": "closed"}})

        assert (await client.get_task(1)).task_status == "new"
        assert (await client.get_task(1)).task_status == "closed"

    async def test_unknown_task_fails_without_retry(self, client, api):
        api.on("GET", "/v4/tasks/999", 404)

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await client.get_task(999)

        assert exc_info.value.response.status_code == 404
        assert api.count("GET", "/v4/tasks/999") == 1

    async def test_server_errors_are_retried_four_times(self, client, api, sleeper):
        api.on("GET", "/v4/tasks/1", 503)

        with pytest.raises(httpx.HTTPStatusError):
            await client.get_task(1)

        assert api.count("GET", "/v4/tasks/1") == 4
        assert sleeper.delays == [1.0, 2.0, 4.0]

    async def test_update_task_posts_changed_fields_as_comment(self, client, api):
        api.on("POST", "/v4/tasks/5/comments", {"task": {"id": 5, "task_status": "closed"}})

        task = await client.update_task(5, UpdateTaskRequest(text="Done", action="complete", removed_list_ids=[2]))

        assert task.task_status == "closed"
        [request] = api.requests_to("POST", "/v4/tasks/5/comments")
        assert request_json(request) == {"text": "Done", "action": "complete", "removed_list_ids": [2]}
        assert "Idempotency-Key" not in request.headers

    async def test_move_task_adds_task_to_target_list(self, client, api):
        api.on("POST", "/v4/tasks/5/comments", {"task": {"id": 5, "list_ids": [2]}})

        task = await client.move_task(5, MoveTaskRequest(list_id=2, responsible=3))

        assert task.list_ids == [2]
        [request] = api.requests_to("POST", "/v4/tasks/5/comments")
        assert request_json(request) == {"added_list_ids": [2], "responsible": 3}

    async def test_add_comment(self, client, api):
        api.on("POST", "/v4/tasks/1/comments", {"task": {"id": 1, "text": "Task with new comment"}})

        task = await client.add_comment(1, "New comment")

        assert task.text == "Task with new comment"
        assert request_json(api.requests_to("POST", "/v4/tasks/1/comments")[0]) == {"text": "New comment"}


class TestDerivedProjections:
    async def test_related_tasks(self, client, api):
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1, "related_tasks": [{"id": 2, "text": "Related"}, {"id": 3}]}})

        related = await client.get_related_tasks(1)

        assert [task.id for task in related] == [2, 3]
        assert all(isinstance(task, Task) for task in related)

    async def test_comments(self, client, api):
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1, "comments": [
            {"id": 10, "text": "Comment 1", "author": AUTHOR, "create_date": "2024-01-01T00:00:00Z"},
            {"id": 11, "action": "approved", "author": AUTHOR},
        ]}})

        comments = await client.get_task_comments(1)

        assert [comment.id for comment in comments] == [10, 11]
        assert comments[1].action == "approved"
        assert comments[1].text is None

    async def test_missing_fields_project_to_empty_lists(self, client, api):
        api.on("GET", "/v4/tasks/1", {"task": {"id": 1, "text": "Main Task"}})

        assert await client.get_related_tasks(1) == []
        assert await client.get_task_comments(1) == []


class TestListTasks:
    async def test_no_filters_sends_no_query(self, client, api):
        api.on("GET", "/v4/lists/1/tasks", {"tasks": [{"id": 1, "text": "Task 1"}, {"id": 2, "text": "Task 2"}]})

        tasks = await client.get_list_tasks(1)

        assert [task.id for task in tasks] == [1, 2]
        assert api.requests_to("GET", "/v4/lists/1/tasks")[0].url.query == b""

    async def test_filters_become_query_parameters(self, client, api):
        api.on("GET", "/v4/lists/1/tasks", {"tasks": [{"id": 1}]})

        await client.get_list_tasks(1, ListTasksFilter(
            item_count=10,
            include_archived=True,
            created_after="2024-01-01",
            due_before="2024-12-31",
        ))

        [request] = api.requests_to("GET", "/v4/lists/1/tasks")
        assert str(request.url).endswith(
            "/lists/1/tasks?item_count=10&include_archived=true&created_after=2024-01-01&due_before=2024-12-31"
        )

    async def test_response_without_tasks_is_empty(self, client, api):
        api.on("GET", "/v4/lists/1/tasks", {})

        assert await client.get_list_tasks(1) == []

    async def test_task_lists_skips_unreadable_lists(self, client, api):
        api.on("GET", "/v4/lists", {"lists": LISTS + [{"id": 3, "name": "Archive"}]})
        api.on("GET", "/v4/lists/1/tasks", {"tasks": [{"id": 42}, {"id": 7}]})
        api.on("GET", "/v4/lists/2/tasks", 403)
        api.on("GET", "/v4/lists/3/tasks", {"tasks": [{"id": 8}]})

        lists = await client.get_task_lists(42)

        assert [task_list.id for task_list in lists] == [1]
        assert api.count("GET", "/v4/lists/2/tasks") == 1
