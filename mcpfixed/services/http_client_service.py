# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/http_client_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Shared HTTP client.

One ``httpx.AsyncClient`` with connection pooling is shared by the OAuth token
exchange and refresh requests. It is created lazily and closed on shutdown.
"""

# Standard
import asyncio
import logging
from typing import Optional

# Third-Party
import httpx

# First-Party
from mcpfixed.config import settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None
_lock = asyncio.Lock()


async def get_http_client() -> httpx.AsyncClient:
    """Get the shared singleton HTTP client.

    Returns:
        Shared httpx.AsyncClient instance with connection pooling
    """
    global _client  # pylint: disable=global-statement
    async with _lock:
        if _client is None or _client.is_closed:
            _client = httpx.AsyncClient(
                timeout=httpx.Timeout(float(settings.oauth_request_timeout)),
                verify=not settings.skip_ssl_verify,
                follow_redirects=False,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            logger.debug("Created shared HTTP client")
        return _client


async def close_http_client() -> None:
    """Close the shared HTTP client if it was created."""
    global _client  # pylint: disable=global-statement
    async with _lock:
        if _client is not None and not _client.is_closed:
            await _client.aclose()
        _client = None
