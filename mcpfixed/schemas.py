# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/schemas.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

mcpfixed Schema Definitions.
This module provides Pydantic models for input validation and structured
results. It implements schemas for:
- Tool registration and static credentials
- Fixed interface registration, execution and validation results
- OAuth configurations, authentication results and token status
- Performance metrics, statistics and fixed-vs-dynamic comparisons

No model in this module ever carries a plaintext token or client secret in its
serialized output.
"""

# Standard
from datetime import datetime
from enum import Enum
import re
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

# Third-Party
from pydantic import BaseModel, computed_field, Field, field_validator, SecretStr

# First-Party
from mcpfixed.utils.base_models import BaseModelWithConfigDict

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")


def require_https(value: str) -> str:
    """Reject endpoint URLs that are not HTTPS.

    Args:
        value: URL to check.

    Returns:
        str: The unchanged URL.

    Raises:
        ValueError: If the scheme is not ``https`` or the host is missing.

    Examples:
        >>> require_https("https://auth.example.com/authorize")
        'https://auth.example.com/authorize'
        >>> require_https("http://auth.example.com/authorize")
        Traceback (most recent call last):
        ...
        ValueError: OAuth endpoints must use HTTPS: http://auth.example.com/authorize
    """
    parsed = urlparse(value)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValueError(f"OAuth endpoints must use HTTPS: {value}")
    return value


def parse_version(version: str) -> tuple:
    """Split a semantic version into a comparable tuple.

    Args:
        version: Version in ``x.y.z`` form.

    Returns:
        tuple: ``(x, y, z)`` as integers.

    Examples:
        >>> parse_version("1.10.0") > parse_version("1.9.3")
        True
    """
    return tuple(int(part) for part in version.split("."))


class AccessType(str, Enum):
    """How an operation was reached."""

    FIXED = "fixed"
    DYNAMIC = "dynamic"
    DISCOVERY = "discovery"


class ErrorCategory(str, Enum):
    """Coarse failure class recorded with performance metrics."""

    AUTH = "auth"
    NETWORK = "network"
    VALIDATION = "validation"
    SERVER = "server"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class TokenStatus(str, Enum):
    """Freshness of the current OAuth token."""

    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    NO_TOKEN = "no_token"


class AuthFlowState(str, Enum):
    """Position of a configuration in the authorization state machine."""

    NO_TOKEN = "no_token"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    MANUAL_INTERVENTION_PENDING = "manual_intervention_pending"
    TOKEN_ISSUED = "token_issued"
    TOKEN_VALID = "token_valid"
    TOKEN_EXPIRING = "token_expiring"
    REFRESHED = "refreshed"
    EXPIRED = "expired"
    REVOKED = "revoked"


AuthKind = Literal["none", "api_key", "bearer", "basic", "oauth"]
Transport = Literal["streamablehttp", "sse"]


# ---------------------------------------------------------------------------
# Errors and schema checks
# ---------------------------------------------------------------------------
class ErrorInfo(BaseModel):
    """Typed error carried by structured results."""

    type: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class SchemaViolation(BaseModel):
    """One violated JSON Schema constraint."""

    path: str = Field(..., description="Dotted path of the offending value ('' for the root)")
    message: str
    validator: Optional[str] = None


class SchemaCheck(BaseModel):
    """Outcome of validating a value against a schema."""

    valid: bool
    violations: List[SchemaViolation] = Field(default_factory=list)


class SchemaDiff(BaseModel):
    """Differences between a stored schema and the live operation shape."""

    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)
    breaking: List[str] = Field(default_factory=list)
    compatible: List[str] = Field(default_factory=list)

    @property
    def is_breaking(self) -> bool:
        """Whether any difference is breaking.

        Returns:
            bool: True if at least one breaking difference was found.
        """
        return bool(self.breaking)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
class AuthCredential(BaseModel):
    """Static credential of a tool as a closed tagged variant.

    Payload keys per kind: ``api_key`` -> ``key`` (+ optional ``header``),
    ``bearer`` -> ``token``, ``basic`` -> ``username``/``password``,
    ``oauth`` -> none (headers come from the OAuth engine).
    """

    kind: AuthKind = "none"
    payload: Dict[str, str] = Field(default_factory=dict)

    def __repr__(self) -> str:
        """Hide the payload.

        Returns:
            str: Representation without secret values.
        """
        return f"AuthCredential(kind={self.kind!r})"

    __str__ = __repr__


class ToolCreate(BaseModelWithConfigDict):
    """Schema for registering an MCP tool endpoint."""

    name: str = Field(..., min_length=1, max_length=255)
    endpoint: str = Field(..., description="MCP server URL")
    transport: Transport = "streamablehttp"
    description: Optional[str] = Field(None, max_length=1000)
    capabilities: List[str] = Field(default_factory=list)
    auth: Optional[AuthCredential] = None

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Require an absolute http(s) URL.

        Args:
            v: Endpoint URL.

        Returns:
            str: The endpoint.

        Raises:
            ValueError: If the URL is not absolute http(s).
        """
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Tool endpoint must be an http(s) URL: {v}")
        return v


class ToolRead(BaseModelWithConfigDict):
    """Schema for reading a registered tool (credentials omitted)."""

    id: str
    name: str
    endpoint: str
    transport: str
    description: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    auth_type: str
    status: str
    created_at: datetime


class ToolEndpoint(BaseModel):
    """Resolved tool as returned by a tool registry."""

    tool_id: str
    name: str
    endpoint: str
    transport: Transport = "streamablehttp"
    capabilities: List[str] = Field(default_factory=list)
    auth: Optional[AuthCredential] = None


class ProtocolResponse(BaseModel):
    """Result of a protocol call."""

    status: int
    body: Any = None


# ---------------------------------------------------------------------------
# Fixed interfaces
# ---------------------------------------------------------------------------
class FixedInterfaceCreate(BaseModelWithConfigDict):
    """Schema for registering a fixed interface.

    Examples:
        >>> spec = FixedInterfaceCreate(tool_id="t1", name="search_pages", parameters_json={"type": "object"})
        >>> spec.version, spec.display_name
        ('1.0.0', 'search_pages')
        >>> try:
        ...     FixedInterfaceCreate(tool_id="t1", name="x", version="1.0")
        ... except ValueError:
        ...     print('error')
        error
    """

    tool_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255, description="Operation name on the remote tool")
    display_name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    selector_schema: Dict[str, Any] = Field(default_factory=dict, description="Operation selector schema", alias="schema_json")
    parameters_json: Dict[str, Any] = Field(default_factory=dict, description="JSON Schema of the parameters")
    response_schema_json: Dict[str, Any] = Field(default_factory=dict, description="JSON Schema of the response")
    version: str = "1.0.0"
    is_active: bool = True

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Require ``x.y.z`` versions.

        Args:
            v: Version string.

        Returns:
            str: The version.

        Raises:
            ValueError: If the version is not ``x.y.z``.
        """
        if not _SEMVER_RE.match(v):
            raise ValueError("Version must be in format x.y.z")
        return v

    def model_post_init(self, __context: Any) -> None:
        """Default the display name to the operation name.

        Args:
            __context: Pydantic context (unused).
        """
        if not self.display_name:
            self.display_name = self.name


class FixedInterfaceUpdate(BaseModelWithConfigDict):
    """Schema for updating a fixed interface; unset fields stay unchanged."""

    display_name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    selector_schema: Optional[Dict[str, Any]] = Field(None, alias="schema_json")
    parameters_json: Optional[Dict[str, Any]] = None
    response_schema_json: Optional[Dict[str, Any]] = None
    version: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: Optional[str]) -> Optional[str]:
        """Require ``x.y.z`` versions.

        Args:
            v: Version string or None.

        Returns:
            Optional[str]: The version.

        Raises:
            ValueError: If the version is not ``x.y.z``.
        """
        if v is not None and not _SEMVER_RE.match(v):
            raise ValueError("Version must be in format x.y.z")
        return v


class FixedInterfaceRead(BaseModelWithConfigDict):
    """Schema for reading a fixed interface."""

    id: Optional[str] = None
    tool_id: str
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    selector_schema: Dict[str, Any] = Field(default_factory=dict, alias="schema_json")
    parameters_json: Dict[str, Any] = Field(default_factory=dict)
    response_schema_json: Dict[str, Any] = Field(default_factory=dict)
    version: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_validated: Optional[datetime] = None
    validation_errors: Optional[List[str]] = None
    performance_score: Optional[float] = None
    execution_count: int = 0
    success_count: int = 0
    average_response_time: Optional[float] = None

    @computed_field
    @property
    def is_valid(self) -> bool:
        """Whether the last validation found no breaking drift.

        Returns:
            bool: True unless breaking validation errors are stored.
        """
        return not self.validation_errors


class ExecutionResult(BaseModel):
    """Structured outcome of executing a fixed interface."""

    success: bool
    interface_id: Optional[str] = None
    interface_name: Optional[str] = None
    tool_id: Optional[str] = None
    data: Any = None
    error: Optional[ErrorInfo] = None
    response_time_ms: float = 0.0
    attempts: int = 0
    response_validation: Optional[SchemaCheck] = None


class ValidationResult(BaseModel):
    """Outcome of re-validating an interface against the live operation."""

    interface_id: str
    valid: bool
    breaking_changes: List[str] = Field(default_factory=list)
    compatible_changes: List[str] = Field(default_factory=list)
    diff: Optional[SchemaDiff] = None
    validated_at: Optional[datetime] = None
    error: Optional[ErrorInfo] = None


class InterfaceStats(BaseModel):
    """Registry-wide or per-interface aggregate report."""

    total_interfaces: int = 0
    active_interfaces: int = 0
    inactive_interfaces: int = 0
    invalid_interfaces: int = 0
    total_executions: int = 0
    performance: "PerformanceStats"


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------
class OAuthConfigurationCreate(BaseModelWithConfigDict):
    """Schema for setting up OAuth for a tool.

    Examples:
        >>> cfg = OAuthConfigurationCreate(tool_id="t1", client_id="abc", authorization_url="https://a.example/auth", token_url="https://a.example/token", redirect_uri="http://localhost:8765/cb")
        >>> cfg.pkce_enabled, cfg.provider
        (True, 'default')
    """

    tool_id: str = Field(..., min_length=1)
    provider: str = Field("default", min_length=1, max_length=100)
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: Optional[SecretStr] = None
    authorization_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)
    redirect_uri: str = Field(..., min_length=1)
    pkce_enabled: bool = True
    additional_params: Optional[Dict[str, str]] = None

    @field_validator("authorization_url", "token_url")
    @classmethod
    def validate_https(cls, v: str) -> str:
        """Reject non-HTTPS OAuth endpoints.

        Args:
            v: Endpoint URL.

        Returns:
            str: The URL.
        """
        return require_https(v)


class OAuthConfigurationUpdate(BaseModelWithConfigDict):
    """Correction of URLs, scopes or redirect of an existing configuration."""

    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    scopes: Optional[List[str]] = None
    redirect_uri: Optional[str] = None
    pkce_enabled: Optional[bool] = None

    @field_validator("authorization_url", "token_url")
    @classmethod
    def validate_https(cls, v: Optional[str]) -> Optional[str]:
        """Reject non-HTTPS OAuth endpoints.

        Args:
            v: Endpoint URL or None.

        Returns:
            Optional[str]: The URL.
        """
        return require_https(v) if v is not None else v


class OAuthConfigurationRead(BaseModelWithConfigDict):
    """Schema for reading an OAuth configuration (client secret omitted)."""

    id: str
    tool_id: str
    provider: str
    client_id: str
    authorization_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)
    redirect_uri: str
    pkce_enabled: bool
    additional_params: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OAuthTokenInfo(BaseModel):
    """Sanitized view of the current token."""

    token_type: str
    expires_at: Optional[datetime] = None
    scopes: Optional[List[str]] = None
    has_refresh_token: bool = False
    created_at: Optional[datetime] = None
    last_refreshed: Optional[datetime] = None
    status: TokenStatus


class ManualInterventionState(BaseModel):
    """Browser step the operator has to complete to resume the flow."""

    required: bool = True
    authorization_url: str
    state: str
    message: str
    instructions: List[str] = Field(default_factory=list)
    expires_at: datetime


class AuthenticationResult(BaseModel):
    """Structured outcome of an authorization step."""

    success: bool
    tool_id: Optional[str] = None
    flow_state: AuthFlowState
    requires_browser: bool = False
    manual_intervention: Optional[ManualInterventionState] = None
    token: Optional[OAuthTokenInfo] = None
    error: Optional[ErrorInfo] = None


class TokenRefreshResult(BaseModel):
    """Structured outcome of a token refresh."""

    success: bool
    refreshed: bool = False
    tool_id: str
    flow_state: AuthFlowState
    token: Optional[OAuthTokenInfo] = None
    error: Optional[ErrorInfo] = None
    should_retry: bool = False


class AuthStatus(BaseModel):
    """Read-only authentication status of a tool."""

    tool_id: str
    configured: bool
    authenticated: bool
    status: TokenStatus
    flow_state: AuthFlowState
    expires_at: Optional[datetime] = None
    expires_in_seconds: Optional[int] = None
    needs_refresh: bool = False
    pending_authorization: bool = False
    token: Optional[OAuthTokenInfo] = None


class AuthTestResult(BaseModel):
    """Outcome of testing the credentials of a tool."""

    tool_id: str
    authenticated: bool
    status: AuthStatus
    probe_ok: Optional[bool] = None
    probe_response_time_ms: Optional[float] = None
    error: Optional[ErrorInfo] = None


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------
class PerformanceMetricCreate(BaseModel):
    """One execution sample to record."""

    interface_id: Optional[str] = None
    tool_id: str
    access_type: AccessType
    operation_name: str
    response_time_ms: float = Field(..., ge=0)
    success: bool
    error_category: Optional[ErrorCategory] = None
    error_details: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PerformanceStats(BaseModel):
    """Latency and success aggregates over a time window."""

    window_hours: float
    sample_count: int = 0
    success_count: int = 0
    success_rate: Optional[float] = None
    avg_response_time_ms: Optional[float] = None
    median_response_time_ms: Optional[float] = None
    min_response_time_ms: Optional[float] = None
    max_response_time_ms: Optional[float] = None
    p95_response_time_ms: Optional[float] = None
    p99_response_time_ms: Optional[float] = None
    error_categories: Dict[str, int] = Field(default_factory=dict)


class PerformanceComparison(BaseModel):
    """Fixed interface versus dynamic discovery for one operation."""

    tool_id: str
    operation_name: str
    fixed: PerformanceStats
    dynamic: PerformanceStats
    improvement_percentage: Optional[float] = None
    target_ms: float
    target_met: Optional[bool] = None


InterfaceStats.model_rebuild()
