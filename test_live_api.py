#!/usr/bin/env python3
"""
Read-only smoke test against a real Pyrus account.
Configure PYRUS_LOGIN and PYRUS_API_TOKEN in .env.test to enable it.
"""

import os

import pytest
from dotenv import load_dotenv

# Load test environment configuration
load_dotenv('.env.test')

pytestmark = pytest.mark.skipif(
    not (os.getenv('PYRUS_LOGIN') and os.getenv('PYRUS_API_TOKEN')),
    reason="live Pyrus credentials not configured in .env.test",
)


@pytest.fixture
async def live_client():
    from pyrus_client import PyrusClient
    from pyrus_mcp_server import load_config_from_env

    async with PyrusClient(load_config_from_env()) as client:
        yield client


async def test_authentication(live_client):
    token = await live_client.auth.ensure_authenticated()

    assert token
    assert live_client.auth.is_authenticated


async def test_profile_and_lists(live_client):
    profile = await live_client.get_profile()
    assert profile.person_id

    lists = await live_client.get_lists()
    if not lists:
        pytest.skip("account has no lists")

    found = await live_client.find_list(lists[0].name[:3])
    assert found is not None


async def test_list_tasks_and_comments(live_client):
    lists = await live_client.get_lists()
    if not lists:
        pytest.skip("account has no lists")

    tasks = await live_client.get_list_tasks(lists[0].id)
    if not tasks:
        pytest.skip("first list is empty")

    comments = await live_client.get_task_comments(tasks[0].id)
    assert isinstance(comments, list)
