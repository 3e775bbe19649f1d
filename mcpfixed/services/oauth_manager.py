# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/oauth_manager.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

OAuth 2.0 Authorization Flow Engine.

This module drives the authorization-code flow with PKCE (RFC 7636) for tools
protected by OAuth 2.0:
- Configuration setup restricted to HTTPS endpoints
- Flow initiation that reports the browser step as manual intervention
- Callback handling with single-use state values
- Token refresh, status reporting, probing and logout
- A background task refreshing tokens close to expiry

Authorization is always completed by a human in a browser. The engine never
blocks waiting for it: it persists a pending flow keyed by ``state`` and returns
the authorization URL with resume instructions.
"""

# Standard
import asyncio
import base64
from datetime import timedelta
import hashlib
import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode

# Third-Party
import httpx
import orjson
from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

# First-Party
from mcpfixed.config import settings
from mcpfixed.db import ensure_utc, fresh_db_session, OAuthConfiguration, PendingAuthorizationFlow, Tool, utc_now
from mcpfixed.errors import AuthExpiredError, AuthRequiredError, ConflictError, FixedToolError, NetworkError, NotFoundError, RequestTimeoutError, UpstreamError
from mcpfixed.schemas import (
    AuthenticationResult,
    AuthFlowState,
    AuthStatus,
    AuthTestResult,
    ManualInterventionState,
    OAuthConfigurationCreate,
    OAuthConfigurationRead,
    OAuthConfigurationUpdate,
    require_https,
    TokenRefreshResult,
    TokenStatus,
)
from mcpfixed.services.encryption_service import EncryptionService, get_encryption_service
from mcpfixed.services.http_client_service import get_http_client
from mcpfixed.services.protocol_client import ProtocolClient
from mcpfixed.services.token_storage_service import TokenStorageService
from mcpfixed.services.tool_registry import ToolRegistry
from mcpfixed.utils.retry import retry_async

logger = logging.getLogger(__name__)

MANUAL_INTERVENTION_MESSAGE = "MANUAL INTERVENTION NEEDED: OAuth flow requires browser authentication"
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"

_FLOW_STATE_BY_STATUS = {
    TokenStatus.VALID: AuthFlowState.TOKEN_VALID,
    TokenStatus.EXPIRING_SOON: AuthFlowState.TOKEN_EXPIRING,
    TokenStatus.EXPIRED: AuthFlowState.EXPIRED,
    TokenStatus.NO_TOKEN: AuthFlowState.NO_TOKEN,
}


def generate_code_verifier(length: int = 128) -> str:
    """Generate a PKCE code verifier.

    Args:
        length: Verifier length (43 to 128 characters per RFC 7636).

    Returns:
        str: Random verifier from the unreserved character set.

    Examples:
        >>> v = generate_code_verifier()
        >>> len(v), set(v) <= set(_VERIFIER_ALPHABET)
        (128, True)
    """
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(length))


def code_challenge_s256(verifier: str) -> str:
    """Derive the S256 code challenge of a verifier.

    Args:
        verifier: PKCE code verifier.

    Returns:
        str: Unpadded base64url SHA-256 digest.

    Examples:
        >>> code_challenge_s256("dBjftJeZ4CVP-mJ92IZ1Lmt6qB3MbZ1uZwqIvsbk6K0")
        'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM'
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Generate an unguessable state value.

    Returns:
        str: 43 character URL-safe random string.

    Examples:
        >>> len(generate_state()) >= 32
        True
        >>> generate_state() != generate_state()
        True
    """
    return secrets.token_urlsafe(32)


def build_authorization_url(config: OAuthConfiguration, state: str, redirect_uri: str, scopes: List[str], code_challenge: Optional[str]) -> str:
    """Build the provider authorization URL.

    Args:
        config: OAuth configuration.
        state: State value.
        redirect_uri: Redirect URI.
        scopes: Requested scopes.
        code_challenge: PKCE challenge, or None without PKCE.

    Returns:
        str: Authorization URL.
    """
    params: Dict[str, str] = dict(config.additional_params or {})
    params.update(
        {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
    )
    if scopes:
        params["scope"] = " ".join(scopes)
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    separator = "&" if "?" in config.authorization_url else "?"
    return f"{config.authorization_url}{separator}{urlencode(params)}"


class OAuthManager:
    """Drives authorization, refresh and logout for OAuth protected tools."""

    def __init__(
        self,
        token_storage: Optional[TokenStorageService] = None,
        encryption: Optional[EncryptionService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        tool_registry: Optional[ToolRegistry] = None,
        protocol_client: Optional[ProtocolClient] = None,
    ):
        """Initialize the OAuth manager.

        Args:
            token_storage: Token persistence (defaults to one sharing ``encryption``).
            encryption: Cipher for client secrets and tokens.
            http_client: Client for token endpoint requests (defaults to the shared client).
            tool_registry: Registry used by :meth:`test_authentication` probes.
            protocol_client: Client used by :meth:`test_authentication` probes.
        """
        self._encryption = encryption
        self.token_storage = token_storage or TokenStorageService(encryption)
        self._http_client = http_client
        self.tool_registry = tool_registry
        self.protocol_client = protocol_client
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @property
    def encryption(self) -> EncryptionService:
        """Cipher used for client secrets.

        Returns:
            EncryptionService: The configured or shared service.
        """
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    async def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client for token requests.

        Returns:
            httpx.AsyncClient: Injected or shared client.
        """
        if self._http_client is not None:
            return self._http_client
        return await get_http_client()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def _resolve_tool_id(self, db: Session, tool_id: str) -> str:
        """Accept a tool id or unique tool name.

        Args:
            db: Database session.
            tool_id: Tool id or name.

        Returns:
            str: Tool id.

        Raises:
            NotFoundError: If the tool is unknown.
        """
        if db.get(Tool, tool_id) is not None:
            return tool_id
        found = db.execute(select(Tool.id).where(Tool.name == tool_id)).scalar_one_or_none()
        if found is None:
            raise NotFoundError(f"Tool not found: {tool_id}")
        return found

    def _find_config(self, db: Session, tool_id: str, provider: Optional[str] = None) -> Optional[OAuthConfiguration]:
        """Find the OAuth configuration of a tool.

        Without a provider, the ``default`` provider wins, then the oldest one.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            Optional[OAuthConfiguration]: Configuration, if any.
        """
        try:
            resolved = self._resolve_tool_id(db, tool_id)
        except NotFoundError:
            return None
        query = select(OAuthConfiguration).where(OAuthConfiguration.tool_id == resolved)
        if provider:
            return db.execute(query.where(OAuthConfiguration.provider == provider)).scalar_one_or_none()
        configs = db.execute(query.order_by(OAuthConfiguration.created_at)).scalars().all()
        for config in configs:
            if config.provider == "default":
                return config
        return configs[0] if configs else None

    def _get_config(self, db: Session, tool_id: str, provider: Optional[str] = None) -> OAuthConfiguration:
        """Find the OAuth configuration of a tool or fail.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            OAuthConfiguration: Configuration.

        Raises:
            NotFoundError: If the tool has no OAuth configuration.
        """
        config = self._find_config(db, tool_id, provider)
        if config is None:
            raise NotFoundError(f"No OAuth configuration for tool: {tool_id}")
        return config

    def create_configuration(self, db: Session, data: OAuthConfigurationCreate) -> OAuthConfigurationRead:
        """Set up OAuth for a tool.

        Args:
            db: Database session.
            data: Configuration.

        Returns:
            OAuthConfigurationRead: Stored configuration (no secret).

        Raises:
            ConflictError: If the tool already has a configuration for the provider.
        """
        # Re-checked here so callers constructing models without validation are covered
        require_https(data.authorization_url)
        require_https(data.token_url)
        tool_id = self._resolve_tool_id(db, data.tool_id)

        config = OAuthConfiguration(
            tool_id=tool_id,
            provider=data.provider,
            client_id=data.client_id,
            client_secret_encrypted=self.encryption.encrypt_secret(data.client_secret.get_secret_value()) if data.client_secret else None,
            authorization_url=data.authorization_url,
            token_url=data.token_url,
            scopes=list(data.scopes),
            redirect_uri=data.redirect_uri,
            pkce_enabled=data.pkce_enabled,
            additional_params=data.additional_params,
        )
        db.add(config)
        tool = db.get(Tool, tool_id)
        tool.auth_type = "oauth"
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"OAuth configuration already exists for tool {tool_id} and provider {data.provider}") from e
        db.refresh(config)
        logger.info(f"Created OAuth configuration for tool {tool_id} (provider {data.provider})")
        return OAuthConfigurationRead.model_validate(config)

    def update_configuration(self, db: Session, config_id: str, data: OAuthConfigurationUpdate) -> OAuthConfigurationRead:
        """Correct URLs, scopes, redirect or PKCE flag of a configuration.

        Args:
            db: Database session.
            config_id: Configuration id.
            data: Fields to change.

        Returns:
            OAuthConfigurationRead: Updated configuration.

        Raises:
            NotFoundError: If the configuration does not exist.
        """
        config = db.get(OAuthConfiguration, config_id)
        if config is None:
            raise NotFoundError(f"OAuth configuration not found: {config_id}")
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None:
                continue
            if field in ("authorization_url", "token_url"):
                require_https(value)
            setattr(config, field, value)
        db.commit()
        logger.info(f"Updated OAuth configuration {config_id}")
        return OAuthConfigurationRead.model_validate(config)

    def get_configuration(self, db: Session, tool_id: str, provider: Optional[str] = None) -> OAuthConfigurationRead:
        """Read the OAuth configuration of a tool.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            OAuthConfigurationRead: Configuration (no secret).
        """
        return OAuthConfigurationRead.model_validate(self._get_config(db, tool_id, provider))

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------
    async def initiate_auth_flow(self, db: Session, tool_id: str, redirect_uri: Optional[str] = None, scopes: Optional[List[str]] = None, provider: Optional[str] = None) -> AuthenticationResult:
        """Start an authorization-code flow.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            redirect_uri: Override of the configured redirect URI.
            scopes: Override of the configured scopes.
            provider: Provider label.

        Returns:
            AuthenticationResult: ``manual_intervention`` with the authorization
            URL and resume steps, or a NotFound error.
        """
        try:
            config = self._get_config(db, tool_id, provider)
        except NotFoundError as e:
            return AuthenticationResult(success=False, tool_id=tool_id, flow_state=AuthFlowState.NO_TOKEN, error=e.to_error_info())

        self.cleanup_expired_flows(db, commit=False)

        state = generate_state()
        verifier = challenge = None
        if config.pkce_enabled:
            verifier = generate_code_verifier()
            challenge = code_challenge_s256(verifier)
        redirect = redirect_uri or config.redirect_uri or settings.oauth_default_redirect_uri
        requested_scopes = list(scopes) if scopes else list(config.scopes or [])
        expires_at = utc_now() + timedelta(seconds=settings.oauth_manual_intervention_timeout)

        db.add(
            PendingAuthorizationFlow(
                config_id=config.id,
                state=state,
                code_verifier=verifier,
                code_challenge=challenge,
                redirect_uri=redirect,
                scopes=requested_scopes,
                expires_at=expires_at,
            )
        )
        db.commit()

        authorization_url = build_authorization_url(config, state, redirect, requested_scopes, challenge)
        tool_name = config.tool.name if config.tool else config.tool_id
        instructions = [
            f"Open the authorization URL in a browser: {authorization_url}",
            f"Sign in and approve access for provider '{config.provider}'",
            f"After the redirect to {redirect}, copy the 'code' and 'state' query parameters",
            f"Resume with: mcpfixed auth {tool_name} --callback <code> {state}",
            f"Complete the steps before {expires_at.isoformat()}",
        ]
        logger.info(f"Authorization flow started for tool {config.tool_id} (provider {config.provider}); waiting for browser callback")
        return AuthenticationResult(
            success=False,
            tool_id=config.tool_id,
            flow_state=AuthFlowState.MANUAL_INTERVENTION_PENDING,
            requires_browser=True,
            manual_intervention=ManualInterventionState(
                required=True,
                authorization_url=authorization_url,
                state=state,
                message=MANUAL_INTERVENTION_MESSAGE,
                instructions=instructions,
                expires_at=expires_at,
            ),
        )

    async def handle_callback(self, db: Session, code: str, state: str) -> AuthenticationResult:
        """Complete a flow from the browser callback parameters.

        Args:
            db: Database session.
            code: Authorization code.
            state: State value from the callback.

        Returns:
            AuthenticationResult: Issued token metadata, or a typed error.
            Unknown, expired or already used state values yield NotFound.
        """
        flow = db.execute(select(PendingAuthorizationFlow).where(PendingAuthorizationFlow.state == state)).scalar_one_or_none()
        if flow is None:
            logger.warning("OAuth callback with unknown or already used state rejected")
            return AuthenticationResult(success=False, flow_state=AuthFlowState.NO_TOKEN, error=NotFoundError("Unknown or already used authorization state").to_error_info())

        flow_id, config_id = flow.id, flow.config_id
        verifier, redirect_uri, requested_scopes = flow.code_verifier, flow.redirect_uri, list(flow.scopes or [])
        expired = ensure_utc(flow.expires_at) <= utc_now()
        db.expunge(flow)

        # Single use: only the caller whose delete removes the row may continue
        consumed = db.execute(delete(PendingAuthorizationFlow).where(PendingAuthorizationFlow.id == flow_id).execution_options(synchronize_session=False))
        db.commit()
        if consumed.rowcount != 1:
            logger.warning("OAuth callback lost the race for a state value")
            return AuthenticationResult(success=False, flow_state=AuthFlowState.NO_TOKEN, error=NotFoundError("Unknown or already used authorization state").to_error_info())

        config = db.get(OAuthConfiguration, config_id)
        if expired:
            logger.warning(f"OAuth callback for tool {config.tool_id} arrived after the authorization window closed")
            return AuthenticationResult(
                success=False,
                tool_id=config.tool_id,
                flow_state=AuthFlowState.NO_TOKEN,
                error=NotFoundError("Authorization state expired; start a new login").to_error_info(),
            )

        data = {"grant_type": "authorization_code", "client_id": config.client_id, "code": code, "redirect_uri": redirect_uri}
        if verifier:
            data["code_verifier"] = verifier
        try:
            payload = await self._request_tokens(config, data, "authorization code exchange")
        except FixedToolError as e:
            logger.error(f"Authorization code exchange failed for tool {config.tool_id}: {e.error_type}")
            return AuthenticationResult(success=False, tool_id=config.tool_id, flow_state=AuthFlowState.NO_TOKEN, error=e.to_error_info())

        row = self.token_storage.store_tokens(db, config, payload, requested_scopes)
        return AuthenticationResult(success=True, tool_id=config.tool_id, flow_state=AuthFlowState.TOKEN_ISSUED, token=self.token_storage.to_info(row))

    async def _request_tokens(self, config: OAuthConfiguration, data: Dict[str, str], description: str) -> Dict[str, Any]:
        """POST to the token endpoint with bounded retries for network failures.

        Args:
            config: OAuth configuration.
            data: Form fields.
            description: Label for logs and errors.

        Returns:
            Dict[str, Any]: Parsed token response.
        """
        form = dict(data)
        if config.client_secret_encrypted:
            form["client_secret"] = self.encryption.decrypt_secret(config.client_secret_encrypted)

        async def _post() -> Dict[str, Any]:
            client = await self._get_client()
            try:
                response = await client.post(config.token_url, data=form, headers={"Accept": "application/json"}, timeout=float(settings.oauth_request_timeout))
            except httpx.TimeoutException as e:
                raise RequestTimeoutError(f"OAuth {description} timed out") from e
            except httpx.TransportError as e:
                raise NetworkError(f"OAuth {description} failed: {type(e).__name__}") from e
            return self._parse_token_response(response, description)

        payload, _attempts = await retry_async(_post, settings.oauth_max_retries, f"OAuth {description}")
        return payload

    def _parse_token_response(self, response: httpx.Response, description: str) -> Dict[str, Any]:
        """Parse a token endpoint response.

        Args:
            response: HTTP response.
            description: Label for errors.

        Returns:
            Dict[str, Any]: Token response.

        Raises:
            AuthExpiredError: On ``invalid_grant``.
            UpstreamError: On any other provider error (retryable for 5xx).
        """
        try:
            payload = orjson.loads(response.content) if response.content else {}
        except orjson.JSONDecodeError:
            # Some providers answer form encoded
            payload = dict(parse_qsl(response.text))
        if not isinstance(payload, dict):
            payload = {}

        error = payload.get("error")
        if response.status_code >= 400 or error:
            if error == "invalid_grant":
                raise AuthExpiredError(f"OAuth {description} rejected with invalid_grant; re-authentication required")
            details = {"error": error, "error_description": payload.get("error_description")} if error else None
            raise UpstreamError(f"OAuth {description} failed with HTTP {response.status_code}", status=response.status_code, body=details, retryable=response.status_code >= 500)
        if not payload.get("access_token"):
            raise UpstreamError(f"OAuth {description} response did not include an access_token", status=response.status_code)
        return payload

    def _get_refresh_lock(self, config_id: str) -> asyncio.Lock:
        """Get or create the lock serializing token refreshes of one configuration.

        Args:
            config_id: Configuration id.

        Returns:
            asyncio.Lock: The lock for the configuration.

        Examples:
            >>> manager = OAuthManager()
            >>> manager._get_refresh_lock("c1") is manager._get_refresh_lock("c1")
            True
            >>> manager._get_refresh_lock("c1") is manager._get_refresh_lock("c2")
            False
        """
        if config_id not in self._refresh_locks:
            self._refresh_locks[config_id] = asyncio.Lock()
        return self._refresh_locks[config_id]

    async def refresh_token(self, db: Session, tool_id: str, force: bool = False, provider: Optional[str] = None) -> TokenRefreshResult:
        """Refresh the current token of a tool.

        Refreshes of one configuration run one at a time, each reading the
        token stored by the previous one.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            force: Refresh even if the token is still valid.
            provider: Provider label.

        Returns:
            TokenRefreshResult: Outcome; ``should_retry`` only for transient failures.
        """
        try:
            config = self._get_config(db, tool_id, provider)
        except NotFoundError as e:
            return TokenRefreshResult(success=False, tool_id=tool_id, flow_state=AuthFlowState.NO_TOKEN, error=e.to_error_info())

        async with self._get_refresh_lock(config.id):
            return await self._refresh_config_token(db, config, force)

    async def _refresh_config_token(self, db: Session, config: OAuthConfiguration, force: bool) -> TokenRefreshResult:
        """Refresh a configuration's token; the caller holds its refresh lock.

        Args:
            db: Database session.
            config: OAuth configuration.
            force: Refresh even if the token is still valid.

        Returns:
            TokenRefreshResult: Outcome.
        """
        row = self.token_storage.get_token_row(db, config.id)
        if row is None:
            error = AuthRequiredError("No OAuth token stored; log in first")
            return TokenRefreshResult(success=False, tool_id=config.tool_id, flow_state=AuthFlowState.NO_TOKEN, error=error.to_error_info())

        status = self.token_storage.token_status(row)
        if status == TokenStatus.VALID and not force:
            return TokenRefreshResult(success=True, refreshed=False, tool_id=config.tool_id, flow_state=AuthFlowState.TOKEN_VALID, token=self.token_storage.to_info(row))

        if not row.refresh_token:
            error = AuthExpiredError("No refresh token stored; re-authentication required")
            return TokenRefreshResult(success=False, tool_id=config.tool_id, flow_state=_FLOW_STATE_BY_STATUS[status], token=self.token_storage.to_info(row), error=error.to_error_info())

        sent = row.refresh_token
        try:
            data = {"grant_type": "refresh_token", "refresh_token": self.token_storage.decrypt_refresh_token(row), "client_id": config.client_id}
            payload = await self._request_tokens(config, data, "token refresh")
        except AuthExpiredError as e:
            self.token_storage.discard_refresh_token(db, row, sent)
            return TokenRefreshResult(success=False, tool_id=config.tool_id, flow_state=AuthFlowState.EXPIRED, token=self.token_storage.to_info(row), error=e.to_error_info())
        except FixedToolError as e:
            logger.warning(f"Token refresh for tool {config.tool_id} failed: {e.error_type}")
            return TokenRefreshResult(
                success=False,
                tool_id=config.tool_id,
                flow_state=_FLOW_STATE_BY_STATUS[status],
                token=self.token_storage.to_info(row),
                error=e.to_error_info(),
                should_retry=e.retryable,
            )

        row = self.token_storage.update_refreshed(db, row, payload)
        return TokenRefreshResult(success=True, refreshed=True, tool_id=config.tool_id, flow_state=AuthFlowState.REFRESHED, token=self.token_storage.to_info(row))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def _has_pending_flow(self, db: Session, config_id: str) -> bool:
        """Whether an unexpired authorization is waiting for its callback.

        Args:
            db: Database session.
            config_id: Configuration id.

        Returns:
            bool: True if a pending flow exists.
        """
        query = select(exists().where(PendingAuthorizationFlow.config_id == config_id, PendingAuthorizationFlow.expires_at > utc_now()))
        return bool(db.execute(query).scalar())

    def get_auth_status(self, db: Session, tool_id: str, provider: Optional[str] = None) -> AuthStatus:
        """Read-only authentication status.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            AuthStatus: Status without any secret values.
        """
        config = self._find_config(db, tool_id, provider)
        if config is None:
            return AuthStatus(tool_id=tool_id, configured=False, authenticated=False, status=TokenStatus.NO_TOKEN, flow_state=AuthFlowState.NO_TOKEN)

        pending = self._has_pending_flow(db, config.id)
        row = self.token_storage.get_token_row(db, config.id)
        if row is None:
            flow_state = AuthFlowState.MANUAL_INTERVENTION_PENDING if pending else AuthFlowState.NO_TOKEN
            return AuthStatus(tool_id=config.tool_id, configured=True, authenticated=False, status=TokenStatus.NO_TOKEN, flow_state=flow_state, pending_authorization=pending)

        status = self.token_storage.token_status(row)
        expires_at = ensure_utc(row.expires_at)
        return AuthStatus(
            tool_id=config.tool_id,
            configured=True,
            authenticated=status in (TokenStatus.VALID, TokenStatus.EXPIRING_SOON),
            status=status,
            flow_state=_FLOW_STATE_BY_STATUS[status],
            expires_at=expires_at,
            expires_in_seconds=int((expires_at - utc_now()).total_seconds()) if expires_at else None,
            needs_refresh=status != TokenStatus.VALID,
            pending_authorization=pending,
            token=self.token_storage.to_info(row),
        )

    async def test_authentication(self, db: Session, tool_id: str, provider: Optional[str] = None) -> AuthTestResult:
        """Check the credentials of a tool, probing the endpoint when possible.

        The probe lists the tool's operations with the current Authorization
        header; a 401/403 answer marks the tool unauthenticated.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            AuthTestResult: Status plus probe outcome.
        """
        status = self.get_auth_status(db, tool_id, provider)
        if not status.authenticated or self.tool_registry is None or self.protocol_client is None:
            return AuthTestResult(tool_id=status.tool_id, authenticated=status.authenticated, status=status)

        start = time.monotonic()
        try:
            headers = await self.get_auth_headers(db, status.tool_id, provider)
            endpoint = self.tool_registry.resolve(db, status.tool_id)
            await self.protocol_client.list_tools(endpoint, headers, float(settings.oauth_request_timeout))
        except FixedToolError as e:
            elapsed = (time.monotonic() - start) * 1000
            rejected = isinstance(e, (AuthExpiredError, AuthRequiredError)) or (isinstance(e, UpstreamError) and e.status in (401, 403))
            return AuthTestResult(
                tool_id=status.tool_id,
                authenticated=status.authenticated and not rejected,
                status=status,
                probe_ok=False,
                probe_response_time_ms=elapsed,
                error=e.to_error_info(),
            )
        return AuthTestResult(tool_id=status.tool_id, authenticated=True, status=status, probe_ok=True, probe_response_time_ms=(time.monotonic() - start) * 1000)

    def logout(self, db: Session, tool_id: str) -> int:
        """Delete every token and pending flow of a tool. Irreversible.

        Args:
            db: Database session.
            tool_id: Tool id or name.

        Returns:
            int: Number of deleted tokens.

        Raises:
            NotFoundError: If the tool has no OAuth configuration.
        """
        resolved = self._resolve_tool_id(db, tool_id)
        config_ids = list(db.execute(select(OAuthConfiguration.id).where(OAuthConfiguration.tool_id == resolved)).scalars().all())
        if not config_ids:
            raise NotFoundError(f"No OAuth configuration for tool: {tool_id}")
        deleted = self.token_storage.delete_tokens(db, config_ids)
        db.execute(delete(PendingAuthorizationFlow).where(PendingAuthorizationFlow.config_id.in_(config_ids)).execution_options(synchronize_session=False))
        db.commit()
        logger.info(f"Logged out tool {resolved}: {deleted} token(s) removed")
        return deleted

    async def get_auth_headers(self, db: Session, tool_id: str, provider: Optional[str] = None) -> Dict[str, str]:
        """Authorization header for a tool, refreshing a stale token once.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            provider: Provider label.

        Returns:
            Dict[str, str]: ``{}`` if the tool has no OAuth configuration,
            otherwise the Authorization header.

        Raises:
            AuthRequiredError: No token is stored; carries a freshly started
                manual intervention flow.
            AuthExpiredError: The token expired and could not be refreshed.
            NetworkError: The refresh failed transiently.
        """
        config = self._find_config(db, tool_id, provider)
        if config is None:
            return {}

        row = self.token_storage.get_token_row(db, config.id)
        if row is None:
            flow = await self.initiate_auth_flow(db, config.tool_id, provider=config.provider)
            raise AuthRequiredError(f"OAuth authorization required for tool {config.tool_id}", manual_intervention=flow.manual_intervention)

        status = self.token_storage.token_status(row)
        if status != TokenStatus.VALID and row.refresh_token:
            result = await self.refresh_token(db, config.tool_id, provider=config.provider)
            if not result.success and status == TokenStatus.EXPIRED:
                message = result.error.message if result.error else "token refresh failed"
                if result.should_retry:
                    raise NetworkError(f"OAuth token refresh failed transiently: {message}")
                raise AuthExpiredError(f"OAuth token expired and could not be refreshed: {message}")
            row = self.token_storage.get_token_row(db, config.id)
        elif status == TokenStatus.EXPIRED:
            raise AuthExpiredError("OAuth token expired and no refresh token is stored; re-authentication required")

        return {"Authorization": f"{row.token_type} {self.token_storage.decrypt_access_token(row)}"}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def cleanup_expired_flows(self, db: Session, commit: bool = True) -> int:
        """Discard pending flows whose authorization window closed.

        Args:
            db: Database session.
            commit: Commit the deletion.

        Returns:
            int: Number of discarded flows.
        """
        result = db.execute(delete(PendingAuthorizationFlow).where(PendingAuthorizationFlow.expires_at <= utc_now()).execution_options(synchronize_session=False))
        if commit:
            db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Discarded {removed} expired authorization flow(s)")
        return removed

    async def refresh_expiring_tokens(self, db: Session) -> Dict[str, int]:
        """Refresh, one at a time, every token inside the refresh threshold.

        Individual failures are logged and do not stop the scan.

        Args:
            db: Database session.

        Returns:
            Dict[str, int]: ``checked``, ``refreshed`` and ``failed`` counts.
        """
        counts = {"checked": 0, "refreshed": 0, "failed": 0}
        for row in self.token_storage.find_expiring(db, settings.oauth_token_refresh_threshold):
            counts["checked"] += 1
            try:
                result = await self.refresh_token(db, row.tool_id, provider=row.configuration.provider)
            except Exception as e:
                logger.error(f"Background refresh for tool {row.tool_id} raised {type(e).__name__}")
                db.rollback()
                counts["failed"] += 1
                continue
            if result.success:
                counts["refreshed"] += 1
            else:
                counts["failed"] += 1
                logger.warning(f"Background refresh for tool {row.tool_id} failed: {result.error.type if result.error else 'unknown'}")
        return counts

    async def run_refresh_loop(self, interval: Optional[float] = None, session_factory: Callable = fresh_db_session) -> None:
        """Periodically refresh expiring tokens and purge expired flows.

        Args:
            interval: Seconds between scans (defaults to settings).
            session_factory: Context manager yielding a database session.
        """
        delay = interval or settings.oauth_refresh_interval
        logger.info(f"Background token refresh started (every {delay}s)")
        while True:
            try:
                with session_factory() as db:
                    counts = await self.refresh_expiring_tokens(db)
                    self.cleanup_expired_flows(db)
                if counts["checked"]:
                    logger.info(f"Background token refresh: {counts}")
            except Exception as e:
                logger.error(f"Background token refresh iteration failed: {type(e).__name__}: {e}")
            await asyncio.sleep(delay)

    def start_background_refresh(self, interval: Optional[float] = None, session_factory: Callable = fresh_db_session) -> asyncio.Task:
        """Start the background refresh task (daemon deployments only).

        Args:
            interval: Seconds between scans.
            session_factory: Context manager yielding a database session.

        Returns:
            asyncio.Task: The running task.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self.run_refresh_loop(interval, session_factory))
        return self._refresh_task

    async def stop_background_refresh(self) -> None:
        """Cancel the background refresh task and wait for it to finish."""
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None
