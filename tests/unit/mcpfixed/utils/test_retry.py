# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/utils/test_retry.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for bounded retries with backoff.
"""

# Standard
import asyncio
from unittest.mock import AsyncMock, patch

# Third-Party
import pytest

# First-Party
from mcpfixed.config import get_settings
from mcpfixed.errors import AuthExpiredError, NetworkError, RequestTimeoutError, UpstreamError
from mcpfixed.utils.retry import is_retryable, retry_async


def test_only_flagged_errors_are_retryable():
    assert is_retryable(NetworkError("down"))
    assert is_retryable(UpstreamError("502", status=502, retryable=True))
    assert not is_retryable(UpstreamError("400", status=400))
    assert not is_retryable(asyncio.CancelledError())


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped(monkeypatch):
    monkeypatch.setattr(get_settings(), "retry_backoff_base", 1.0)
    monkeypatch.setattr(get_settings(), "retry_backoff_max", 5.0)
    operation = AsyncMock(side_effect=[NetworkError("down")] * 4 + ["ok"])
    with patch("mcpfixed.utils.retry._sleep", new=AsyncMock()) as sleep:
        assert await retry_async(operation, 4) == ("ok", 5)
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_success_first_try():
    operation = AsyncMock(return_value="ok")
    assert await retry_async(operation, 3) == ("ok", 1)


@pytest.mark.asyncio
async def test_retries_retryable_errors_then_succeeds():
    operation = AsyncMock(side_effect=[NetworkError("down"), RequestTimeoutError("slow"), "ok"])
    with patch("mcpfixed.utils.retry._sleep", new=AsyncMock()) as sleep:
        result = await retry_async(operation, 3)
    assert result == ("ok", 3)
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    operation = AsyncMock(side_effect=NetworkError("down"))
    with patch("mcpfixed.utils.retry._sleep", new=AsyncMock()):
        with pytest.raises(NetworkError):
            await retry_async(operation, 2)
    assert operation.await_count == 3


@pytest.mark.asyncio
async def test_non_retryable_errors_raise_immediately():
    operation = AsyncMock(side_effect=[AuthExpiredError("gone"), "ok"])
    with pytest.raises(AuthExpiredError):
        await retry_async(operation, 5)
    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_upstream_retryable_flag_is_honoured():
    operation = AsyncMock(side_effect=[UpstreamError("502", status=502, retryable=True), UpstreamError("400", status=400)])
    with patch("mcpfixed.utils.retry._sleep", new=AsyncMock()):
        with pytest.raises(UpstreamError) as exc_info:
            await retry_async(operation, 5)
    assert exc_info.value.status == 400
    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_cancellation_propagates():
    operation = AsyncMock(side_effect=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await retry_async(operation, 3)
    assert operation.await_count == 1
