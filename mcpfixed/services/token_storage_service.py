# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/token_storage_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

OAuth Token Storage Service.

Persists the single current token of each OAuth configuration. Access and
refresh tokens are encrypted before they reach the database and are only
decrypted when an Authorization header is built or a refresh is sent.
"""

# Standard
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional

# Third-Party
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

# First-Party
from mcpfixed.config import settings
from mcpfixed.db import ensure_utc, OAuthConfiguration, OAuthToken, utc_now
from mcpfixed.schemas import OAuthTokenInfo, TokenStatus
from mcpfixed.services.encryption_service import EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)


def normalize_token_type(token_type: Optional[str]) -> str:
    """Normalize the provider token type.

    Args:
        token_type: Raw ``token_type`` from the provider.

    Returns:
        str: ``Bearer`` or ``Basic``.

    Examples:
        >>> normalize_token_type("bearer")
        'Bearer'
        >>> normalize_token_type(None)
        'Bearer'
        >>> normalize_token_type("BASIC")
        'Basic'
    """
    if token_type and token_type.lower() == "basic":
        return "Basic"
    return "Bearer"


def parse_scopes(raw: Any, fallback: Optional[List[str]] = None) -> Optional[List[str]]:
    """Parse a granted scope value.

    Args:
        raw: Space separated string or list from the provider.
        fallback: Requested scopes when the provider echoes none.

    Returns:
        Optional[List[str]]: Granted scopes.

    Examples:
        >>> parse_scopes("read write")
        ['read', 'write']
        >>> parse_scopes(None, ["read"])
        ['read']
    """
    if isinstance(raw, str):
        return [s for s in raw.replace(",", " ").split() if s]
    if isinstance(raw, list):
        return [str(s) for s in raw]
    return fallback


class TokenStorageService:
    """Encrypted persistence of the current token per configuration."""

    def __init__(self, encryption: Optional[EncryptionService] = None):
        """Create the service.

        Args:
            encryption: Cipher (defaults to the shared service).
        """
        self._encryption = encryption

    @property
    def encryption(self) -> EncryptionService:
        """Cipher used for tokens.

        Returns:
            EncryptionService: The configured or shared service.
        """
        if self._encryption is None:
            self._encryption = get_encryption_service()
        return self._encryption

    def get_token_row(self, db: Session, config_id: str) -> Optional[OAuthToken]:
        """Load the current token of a configuration.

        The row is re-read from the store so a refresh committed by another
        session is visible.

        Args:
            db: Database session.
            config_id: Configuration id.

        Returns:
            Optional[OAuthToken]: The row, if any.
        """
        query = select(OAuthToken).where(OAuthToken.config_id == config_id).execution_options(populate_existing=True)
        return db.execute(query).scalar_one_or_none()

    def _expires_at(self, payload: Dict[str, Any]) -> Optional[datetime]:
        """Compute the absolute expiry from ``expires_in``.

        Args:
            payload: Provider token response.

        Returns:
            Optional[datetime]: Expiry, or None when the provider gave none or
            an unreadable value.
        """
        expires_in = payload.get("expires_in")
        if expires_in in (None, ""):
            return None
        try:
            return utc_now() + timedelta(seconds=int(float(expires_in)))
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Ignoring unreadable expires_in value of type {type(expires_in).__name__}")
            return None

    def store_tokens(self, db: Session, config: OAuthConfiguration, payload: Dict[str, Any], requested_scopes: Optional[List[str]] = None) -> OAuthToken:
        """Store the tokens of a code exchange, superseding any previous token.

        Args:
            db: Database session.
            config: Owning configuration.
            payload: Provider token response (``access_token`` required).
            requested_scopes: Scopes asked for in the authorization request.

        Returns:
            OAuthToken: The current token row.
        """
        values = {
            "access_token": self.encryption.encrypt_secret(payload["access_token"]),
            "refresh_token": self.encryption.encrypt_secret(payload["refresh_token"]) if payload.get("refresh_token") else None,
            "token_type": normalize_token_type(payload.get("token_type")),
            "expires_at": self._expires_at(payload),
            "scopes": parse_scopes(payload.get("scope"), requested_scopes or config.scopes),
            "last_refreshed": None,
        }

        row = self.get_token_row(db, config.id)
        if row is None:
            row = OAuthToken(tool_id=config.tool_id, config_id=config.id, **values)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent exchange stored a token first; supersede it.
                db.rollback()
                row = self.get_token_row(db, config.id)
                for key, value in values.items():
                    setattr(row, key, value)
                db.commit()
        else:
            for key, value in values.items():
                setattr(row, key, value)
            row.created_at = utc_now()
            db.commit()
        logger.info(f"Stored OAuth token for tool {config.tool_id} (provider {config.provider})")
        return row

    def update_refreshed(self, db: Session, row: OAuthToken, payload: Dict[str, Any]) -> OAuthToken:
        """Update a token in place after a refresh.

        Providers that do not rotate refresh tokens omit ``refresh_token``; the
        stored one is kept in that case.

        Args:
            db: Database session.
            row: Current token row.
            payload: Provider token response.

        Returns:
            OAuthToken: The updated row.
        """
        row.access_token = self.encryption.encrypt_secret(payload["access_token"])
        if payload.get("refresh_token"):
            row.refresh_token = self.encryption.encrypt_secret(payload["refresh_token"])
        row.token_type = normalize_token_type(payload.get("token_type") or row.token_type)
        row.expires_at = self._expires_at(payload)
        row.scopes = parse_scopes(payload.get("scope"), row.scopes)
        row.last_refreshed = utc_now()
        db.commit()
        logger.info(f"Refreshed OAuth token for tool {row.tool_id}")
        return row

    def discard_refresh_token(self, db: Session, row: OAuthToken, sent: Optional[str] = None) -> bool:
        """Forget a refresh token the provider declared dead.

        Only the rejected value is cleared: if the stored ciphertext no longer
        equals ``sent``, a concurrent refresh already rotated it and the new
        token is kept.

        Args:
            db: Database session.
            row: Token row.
            sent: Ciphertext of the refresh token that was rejected
                (defaults to the value currently on ``row``).

        Returns:
            bool: True if the refresh token was cleared.
        """
        rejected = row.refresh_token if sent is None else sent
        if rejected is None:
            return False
        result = db.execute(
            update(OAuthToken).where(OAuthToken.id == row.id, OAuthToken.refresh_token == rejected).values(refresh_token=None).execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(row)
        if not result.rowcount:
            logger.info(f"Kept the rotated refresh token of tool {row.tool_id}; only a superseded one was rejected")
            return False
        logger.warning(f"Discarded rejected refresh token for tool {row.tool_id}")
        return True

    def decrypt_access_token(self, row: OAuthToken) -> str:
        """Decrypt the access token.

        Args:
            row: Token row.

        Returns:
            str: Plaintext access token.
        """
        return self.encryption.decrypt_secret(row.access_token)

    def decrypt_refresh_token(self, row: OAuthToken) -> Optional[str]:
        """Decrypt the refresh token.

        Args:
            row: Token row.

        Returns:
            Optional[str]: Plaintext refresh token, if stored.
        """
        return self.encryption.decrypt_secret(row.refresh_token) if row.refresh_token else None

    def delete_tokens(self, db: Session, config_ids: List[str]) -> int:
        """Delete the tokens of the given configurations.

        Args:
            db: Database session (caller commits).
            config_ids: Configuration ids.

        Returns:
            int: Number of deleted tokens.
        """
        if not config_ids:
            return 0
        result = db.execute(delete(OAuthToken).where(OAuthToken.config_id.in_(config_ids)).execution_options(synchronize_session="fetch"))
        return result.rowcount or 0

    def token_status(self, row: Optional[OAuthToken], threshold: Optional[int] = None) -> TokenStatus:
        """Classify the freshness of a token.

        Args:
            row: Token row or None.
            threshold: Seconds before expiry that count as expiring soon.

        Returns:
            TokenStatus: Freshness.
        """
        if row is None:
            return TokenStatus.NO_TOKEN
        expires_at = ensure_utc(row.expires_at)
        if expires_at is None:
            return TokenStatus.VALID
        remaining = (expires_at - utc_now()).total_seconds()
        if remaining <= 0:
            return TokenStatus.EXPIRED
        if remaining <= (settings.oauth_token_refresh_threshold if threshold is None else threshold):
            return TokenStatus.EXPIRING_SOON
        return TokenStatus.VALID

    def to_info(self, row: OAuthToken) -> OAuthTokenInfo:
        """Sanitized view of a token row.

        Args:
            row: Token row.

        Returns:
            OAuthTokenInfo: Metadata without token values.
        """
        return OAuthTokenInfo(
            token_type=row.token_type,
            expires_at=ensure_utc(row.expires_at),
            scopes=row.scopes,
            has_refresh_token=bool(row.refresh_token),
            created_at=ensure_utc(row.created_at),
            last_refreshed=ensure_utc(row.last_refreshed),
            status=self.token_status(row),
        )

    def find_expiring(self, db: Session, within_seconds: int) -> List[OAuthToken]:
        """Tokens with a refresh token that expire within the window.

        Args:
            db: Database session.
            within_seconds: Window length.

        Returns:
            List[OAuthToken]: Candidate rows ordered by expiry.
        """
        cutoff = utc_now() + timedelta(seconds=within_seconds)
        query = select(OAuthToken).where(OAuthToken.refresh_token.is_not(None), OAuthToken.expires_at.is_not(None), OAuthToken.expires_at <= cutoff).order_by(OAuthToken.expires_at)
        return list(db.execute(query).scalars().all())
