# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/services/test_protocol_client.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for the MCP protocol client.
"""

# Standard
import asyncio
from unittest.mock import AsyncMock, MagicMock

# Third-Party
import httpx
from mcp.types import CallToolResult, ListToolsResult, TextContent
from mcp.types import Tool as McpTool
import pytest

# First-Party
from mcpfixed.errors import NetworkError, RequestTimeoutError, UpstreamError
from mcpfixed.schemas import ToolEndpoint
from mcpfixed.services.protocol_client import _root_cause, McpProtocolClient, translate_error

ENDPOINT = ToolEndpoint(tool_id="t1", name="wiki", endpoint="https://mcp.example.com/mcp")


def _client_with_session(session):
    """Protocol client whose transport hands out the given session."""
    client = McpProtocolClient()

    async def _with_session(endpoint, headers, action):
        return await action(session)

    client._with_session = _with_session
    return client


class TestTranslateError:
    def test_http_status(self):
        request = httpx.Request("POST", "https://mcp.example.com/mcp")
        error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
        translated = translate_error(error, "search")
        assert isinstance(translated, UpstreamError)
        assert translated.status == 503
        assert translated.retryable is True

    def test_client_status_not_retryable(self):
        request = httpx.Request("POST", "https://mcp.example.com/mcp")
        error = httpx.HTTPStatusError("denied", request=request, response=httpx.Response(401, request=request))
        assert translate_error(error, "search").retryable is False

    def test_transport_error_hides_text(self):
        translated = translate_error(httpx.ConnectError("https://user:pw@host/"), "search")
        assert isinstance(translated, NetworkError)
        assert "pw" not in translated.message

    def test_os_error(self):
        assert isinstance(translate_error(ConnectionResetError(), "search"), NetworkError)

    def test_passthrough(self):
        error = UpstreamError("already typed")
        assert translate_error(error, "search") is error


def test_root_cause_unwraps_groups():
    inner = httpx.ReadTimeout("slow")
    group = ExceptionGroup("outer", [ExceptionGroup("inner", [inner])])
    assert _root_cause(group) is inner
    assert _root_cause(inner) is inner


@pytest.mark.asyncio
async def test_call_returns_structured_content():
    session = MagicMock()
    session.call_tool = AsyncMock(return_value=CallToolResult(content=[TextContent(type="text", text="2 results")], structuredContent={"items": [1, 2]}))
    client = _client_with_session(session)

    response = await client.call(ENDPOINT, "search_pages", {"query": "q"}, {}, 5.0)

    assert response.status == 200
    assert response.body == {"items": [1, 2]}
    session.call_tool.assert_awaited_once_with("search_pages", {"query": "q"})


@pytest.mark.asyncio
async def test_call_falls_back_to_content_blocks():
    session = MagicMock()
    session.call_tool = AsyncMock(return_value=CallToolResult(content=[TextContent(type="text", text="hello")]))
    client = _client_with_session(session)

    response = await client.call(ENDPOINT, "echo", {}, {}, 5.0)

    assert response.body[0]["text"] == "hello"


@pytest.mark.asyncio
async def test_call_error_result():
    session = MagicMock()
    session.call_tool = AsyncMock(return_value=CallToolResult(content=[TextContent(type="text", text="bad input")], isError=True))
    client = _client_with_session(session)

    with pytest.raises(UpstreamError) as exc:
        await client.call(ENDPOINT, "echo", {}, {}, 5.0)
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_list_tools():
    session = MagicMock()
    session.list_tools = AsyncMock(return_value=ListToolsResult(tools=[McpTool(name="search_pages", description="Search", inputSchema={"type": "object"})]))
    client = _client_with_session(session)

    tools = await client.list_tools(ENDPOINT, {"Authorization": "Bearer x"}, 5.0)

    assert tools[0]["name"] == "search_pages"
    assert tools[0]["inputSchema"] == {"type": "object"}


@pytest.mark.asyncio
async def test_timeout_is_translated():
    client = McpProtocolClient()

    async def _with_session(endpoint, headers, action):
        await asyncio.sleep(5)

    client._with_session = _with_session
    with pytest.raises(RequestTimeoutError):
        await client.call(ENDPOINT, "slow", {}, {}, 0.05)


@pytest.mark.asyncio
async def test_grouped_transport_failure_is_translated():
    client = McpProtocolClient()

    async def _with_session(endpoint, headers, action):
        raise ExceptionGroup("task group", [httpx.ConnectError("refused")])

    client._with_session = _with_session
    with pytest.raises(NetworkError):
        await client.list_tools(ENDPOINT, {}, 5.0)
