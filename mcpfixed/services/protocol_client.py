# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/protocol_client.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Protocol client.

Performs the remote MCP calls on behalf of the interface registry and the OAuth
engine: ``call`` invokes one tool operation and ``list_tools`` fetches the live
operation shapes used for auto-discovery and drift validation.

Transport failures are translated into the shared error taxonomy:
timeouts become ``RequestTimeoutError``, connection problems ``NetworkError``
and remote failures ``UpstreamError`` (retryable for HTTP 5xx).
"""

# Standard
from abc import ABC, abstractmethod
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

# Third-Party
import httpx
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

# First-Party
from mcpfixed.errors import FixedToolError, NetworkError, RequestTimeoutError, UpstreamError
from mcpfixed.schemas import ProtocolResponse, ToolEndpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProtocolClient(ABC):
    """Performs remote calls against tool endpoints."""

    @abstractmethod
    async def call(self, endpoint: ToolEndpoint, method: str, params: Dict[str, Any], headers: Dict[str, str], timeout: float) -> ProtocolResponse:
        """Invoke one remote operation.

        Args:
            endpoint: Resolved tool endpoint.
            method: Operation name.
            params: Validated parameters.
            headers: Authentication headers.
            timeout: Seconds before the call is abandoned.

        Returns:
            ProtocolResponse: Status and body.
        """

    @abstractmethod
    async def list_tools(self, endpoint: ToolEndpoint, headers: Dict[str, str], timeout: float) -> List[Dict[str, Any]]:
        """Fetch the live operation list.

        Args:
            endpoint: Resolved tool endpoint.
            headers: Authentication headers.
            timeout: Seconds before the call is abandoned.

        Returns:
            List[Dict[str, Any]]: One entry per operation with ``name``,
            ``description``, ``inputSchema`` and ``outputSchema``.
        """


def _root_cause(error: BaseException) -> BaseException:
    """Unwrap exception groups raised by the MCP SDK task groups.

    Args:
        error: Raised exception.

    Returns:
        BaseException: First leaf exception.
    """
    root = error
    while isinstance(root, BaseExceptionGroup) and root.exceptions:
        root = root.exceptions[0]
    return root


def translate_error(error: BaseException, method: str) -> FixedToolError:
    """Map a transport exception onto the error taxonomy.

    Exception text is not copied for transport errors since it can carry URLs
    with credentials in the query string.

    Args:
        error: Root cause.
        method: Operation name for the message.

    Returns:
        FixedToolError: Translated error.

    Examples:
        >>> translate_error(httpx.ConnectTimeout("x"), "search").error_type
        'Timeout'
        >>> translate_error(httpx.ConnectError("x"), "search").retryable
        True
        >>> translate_error(ValueError("x"), "search").error_type
        'UpstreamError'
    """
    if isinstance(error, FixedToolError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError(f"Call to {method} timed out ({type(error).__name__})")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return UpstreamError(f"Call to {method} failed with HTTP {status}", status=status, retryable=status >= 500)
    if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
        return NetworkError(f"Call to {method} failed: {type(error).__name__}")
    if isinstance(error, McpError):
        return UpstreamError(f"Call to {method} failed: {error.error.message}", body={"code": error.error.code})
    return UpstreamError(f"Call to {method} failed: {type(error).__name__}")


class McpProtocolClient(ProtocolClient):
    """Protocol client built on the MCP Python SDK (streamable HTTP and SSE)."""

    async def _with_session(self, endpoint: ToolEndpoint, headers: Dict[str, str], action: Callable[[ClientSession], Awaitable[T]]) -> T:
        """Open a session on the endpoint transport and run one action.

        Args:
            endpoint: Resolved tool endpoint.
            headers: Request headers.
            action: Coroutine function receiving the initialized session.

        Returns:
            T: Result of the action.
        """
        if endpoint.transport == "sse":
            async with sse_client(url=endpoint.endpoint, headers=headers) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    return await action(session)
        async with streamablehttp_client(url=endpoint.endpoint, headers=headers) as (read_stream, write_stream, _get_session_id):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                return await action(session)

    async def _run(self, endpoint: ToolEndpoint, headers: Dict[str, str], timeout: float, action: Callable[[ClientSession], Awaitable[T]], method: str) -> T:
        """Run an action under a timeout and translate failures.

        Args:
            endpoint: Resolved tool endpoint.
            headers: Request headers.
            timeout: Seconds before the call is abandoned.
            action: Coroutine function receiving the session.
            method: Operation name for messages.

        Returns:
            T: Result of the action.

        Raises:
            RequestTimeoutError: On timeout.
            FixedToolError: Translated transport or remote failure.
        """
        start = time.monotonic()
        try:
            return await asyncio.wait_for(self._with_session(endpoint, dict(headers), action), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Call to {method} timed out after {timeout}s") from e
        except Exception as e:
            root = _root_cause(e)
            logger.warning(f"MCP call {method} on {endpoint.name} failed after {(time.monotonic() - start) * 1000:.1f}ms: {type(root).__name__}")
            raise translate_error(root, method) from e

    async def call(self, endpoint: ToolEndpoint, method: str, params: Dict[str, Any], headers: Dict[str, str], timeout: float) -> ProtocolResponse:
        """Invoke one tool operation.

        Args:
            endpoint: Resolved tool endpoint.
            method: Tool name on the MCP server.
            params: Tool arguments.
            headers: Authentication headers.
            timeout: Seconds before the call is abandoned.

        Returns:
            ProtocolResponse: Status 200 and the structured content (or content blocks).

        Raises:
            UpstreamError: If the tool reports an error result.
        """

        async def _call_tool(session: ClientSession):
            return await session.call_tool(method, params)

        result = await self._run(endpoint, headers, timeout, _call_tool, method)
        dump = result.model_dump(by_alias=True, mode="json")
        is_err = getattr(result, "isError", False)
        if is_err:
            raise UpstreamError(f"Tool {method} reported an error", body=dump.get("content"))
        body = dump.get("structuredContent") or dump.get("content", [])
        return ProtocolResponse(status=200, body=body)

    async def list_tools(self, endpoint: ToolEndpoint, headers: Dict[str, str], timeout: float) -> List[Dict[str, Any]]:
        """Fetch the live operation list.

        Args:
            endpoint: Resolved tool endpoint.
            headers: Authentication headers.
            timeout: Seconds before the call is abandoned.

        Returns:
            List[Dict[str, Any]]: Tool descriptors as JSON dictionaries.
        """

        async def _list(session: ClientSession):
            return await session.list_tools()

        result = await self._run(endpoint, headers, timeout, _list, "tools/list")
        return [tool.model_dump(by_alias=True, mode="json", exclude_none=True) for tool in result.tools]
