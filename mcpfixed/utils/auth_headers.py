# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/utils/auth_headers.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Header builders for static tool credentials.

A credential is a tagged variant ``AuthCredential(kind, payload)``; each kind
has exactly one builder. OAuth headers are produced by the OAuth engine, so the
``oauth`` builder returns nothing here.

Examples:
    >>> from mcpfixed.schemas import AuthCredential
    >>> build_auth_headers(AuthCredential(kind="bearer", payload={"token": "abc"}))
    {'Authorization': 'Bearer abc'}
    >>> build_auth_headers(AuthCredential(kind="api_key", payload={"key": "k"}))
    {'X-API-Key': 'k'}
    >>> build_auth_headers(AuthCredential(kind="basic", payload={"username": "u", "password": "p"}))
    {'Authorization': 'Basic dTpw'}
    >>> build_auth_headers(None)
    {}
"""

# Standard
import base64
from typing import Callable, Dict, Optional

# First-Party
from mcpfixed.errors import InterfaceValidationError
from mcpfixed.schemas import AuthCredential


def _require(payload: Dict[str, str], kind: str, *keys: str) -> None:
    """Ensure a payload carries the keys its kind needs.

    Args:
        payload: Credential payload.
        kind: Credential kind (for the message).
        *keys: Required keys.

    Raises:
        InterfaceValidationError: If a key is missing. Values are never echoed.
    """
    missing = [key for key in keys if not payload.get(key)]
    if missing:
        raise InterfaceValidationError(f"{kind} credential is missing: {', '.join(missing)}", violations=[{"path": f"auth.{key}", "message": "required"} for key in missing])


def _api_key_headers(payload: Dict[str, str]) -> Dict[str, str]:
    """API key in a header (``X-API-Key`` unless ``header`` is given).

    Args:
        payload: ``key`` and optional ``header``.

    Returns:
        Dict[str, str]: Headers.
    """
    _require(payload, "api_key", "key")
    return {payload.get("header") or "X-API-Key": payload["key"]}


def _bearer_headers(payload: Dict[str, str]) -> Dict[str, str]:
    """Static bearer token.

    Args:
        payload: ``token``.

    Returns:
        Dict[str, str]: Headers.
    """
    _require(payload, "bearer", "token")
    return {"Authorization": f"Bearer {payload['token']}"}


def _basic_headers(payload: Dict[str, str]) -> Dict[str, str]:
    """HTTP basic authentication.

    Args:
        payload: ``username`` and ``password``.

    Returns:
        Dict[str, str]: Headers.
    """
    _require(payload, "basic", "username", "password")
    encoded = base64.b64encode(f"{payload['username']}:{payload['password']}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {encoded}"}


def _no_headers(_payload: Dict[str, str]) -> Dict[str, str]:
    """No static headers.

    Args:
        _payload: Ignored.

    Returns:
        Dict[str, str]: Empty mapping.
    """
    return {}


HEADER_BUILDERS: Dict[str, Callable[[Dict[str, str]], Dict[str, str]]] = {
    "none": _no_headers,
    "api_key": _api_key_headers,
    "bearer": _bearer_headers,
    "basic": _basic_headers,
    "oauth": _no_headers,
}


def build_auth_headers(credential: Optional[AuthCredential]) -> Dict[str, str]:
    """Build request headers for a static credential.

    Args:
        credential: Credential or None.

    Returns:
        Dict[str, str]: Headers to send.
    """
    if credential is None:
        return {}
    return HEADER_BUILDERS[credential.kind](credential.payload)
