# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/db.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

mcpfixed Database Models.
This module defines SQLAlchemy models for:
- Tools (the store-backed tool registry) with encrypted static credentials
- Fixed interfaces with parameter/response schemas and execution counters
- OAuth configurations, encrypted tokens and pending authorization flows
- Append-only performance metrics that survive interface removal

Examples:
    >>> from mcpfixed.db import connect_args
    >>> isinstance(connect_args, dict)
    True
    >>> sorted(Base.metadata.tables)[:3]
    ['fixed_interfaces', 'oauth_configurations', 'oauth_pending_flows']
"""

# Standard
from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Generator, List, Optional
import uuid

# Third-Party
from sqlalchemy import Boolean, CheckConstraint, create_engine, DateTime, event, Float, ForeignKey, Index, Integer, JSON, make_url, MetaData, String, Text, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, Session, sessionmaker

# First-Party
from mcpfixed.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 1. Parse the URL so we can inspect the backend ("sqlite", "postgresql", ...)
# ---------------------------------------------------------------------------
url = make_url(settings.database_url)
backend = url.get_backend_name()

connect_args: dict[str, object] = {}
if backend == "sqlite":
    # Allow pooled connections to hop across threads.
    connect_args["check_same_thread"] = False


def build_engine() -> Engine:
    """Build the SQLAlchemy engine for the configured database.

    Returns:
        Engine: Engine bound to ``settings.database_url``.
    """
    return create_engine(settings.database_url, pool_pre_ping=backend != "sqlite", connect_args=connect_args)


engine = build_engine()


def utc_now() -> datetime:
    """Return the current Coordinated Universal Time (UTC).

    Returns:
        datetime: A timezone-aware `datetime` whose `tzinfo` is
        `datetime.timezone.utc`.

    Examples:
        >>> now = utc_now()
        >>> str(now.tzinfo)
        'UTC'
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without timezone support.

    Args:
        value: Datetime loaded from the database, or None.

    Returns:
        Optional[datetime]: Timezone-aware datetime, or None.

    Examples:
        >>> ensure_utc(datetime(2025, 1, 1)).tzinfo is timezone.utc
        True
        >>> ensure_utc(None) is None
        True
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def set_sqlite_pragma(dbapi_conn, _connection_record):
    """Set SQLite pragmas.

    Foreign keys must be on for the cascade and set-null ownership rules.

    Args:
        dbapi_conn: The raw DBAPI connection.
        _connection_record: A SQLAlchemy-specific object that maintains
            information about the connection's context.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={settings.db_sqlite_busy_timeout}")
    cursor.execute("PRAGMA synchronous=NORMAL")
    # Enable foreign key constraints for ON DELETE CASCADE / SET NULL support
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


if backend == "sqlite":
    event.listen(engine, "connect", set_sqlite_pragma)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all models."""

    metadata = MetaData(
        naming_convention={
            "fk": "fk_%(table_name)s_%(column_0_name)s",
            "pk": "pk_%(table_name)s",
            "ix": "ix_%(table_name)s_%(column_0_name)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
        }
    )


class Tool(Base):
    """ORM model for a registered MCP tool endpoint."""

    __tablename__ = "tools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    endpoint: Mapped[str] = mapped_column(String(767), nullable=False)
    transport: Mapped[str] = mapped_column(String(20), nullable=False, default="streamablehttp")
    capabilities: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    # none | api_key | bearer | basic | oauth
    auth_type: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    # Encrypted JSON payload for static credentials
    auth_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    interfaces: Mapped[List["FixedInterface"]] = relationship("FixedInterface", back_populates="tool", cascade="all, delete-orphan", passive_deletes=True)
    oauth_configurations: Mapped[List["OAuthConfiguration"]] = relationship("OAuthConfiguration", back_populates="tool", cascade="all, delete-orphan", passive_deletes=True)


class FixedInterface(Base):
    """ORM model for a named, versioned snapshot of one remote operation."""

    __tablename__ = "fixed_interfaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    tool_id: Mapped[str] = mapped_column(String(36), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schema_json: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    parameters_json: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    response_schema_json: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[str] = mapped_column(String(50), nullable=False, default="1.0.0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    last_validated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Non-empty list means the live operation drifted in a breaking way
    validation_errors: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    performance_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_response_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    tool: Mapped["Tool"] = relationship("Tool", back_populates="interfaces")

    __table_args__ = (
        UniqueConstraint("name", "tool_id", name="uq_fixed_interface_name_tool"),
        Index("idx_fixed_interfaces_tool_active", "tool_id", "is_active"),
    )


class OAuthConfiguration(Base):
    """ORM model for the OAuth provider configuration of a tool."""

    __tablename__ = "oauth_configurations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    tool_id: Mapped[str] = mapped_column(String(36), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    client_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    authorization_url: Mapped[str] = mapped_column(String(767), nullable=False)
    token_url: Mapped[str] = mapped_column(String(767), nullable=False)
    scopes: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    redirect_uri: Mapped[str] = mapped_column(String(767), nullable=False)
    pkce_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    additional_params: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    tool: Mapped["Tool"] = relationship("Tool", back_populates="oauth_configurations")
    token: Mapped[Optional["OAuthToken"]] = relationship("OAuthToken", back_populates="configuration", uselist=False, cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("tool_id", "provider", name="uq_oauth_configuration_tool_provider"),
        CheckConstraint("authorization_url LIKE 'https://%' AND token_url LIKE 'https://%'", name="https_endpoints"),
    )


class OAuthToken(Base):
    """ORM model for the current OAuth token of a configuration (encrypted at rest)."""

    __tablename__ = "oauth_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    tool_id: Mapped[str] = mapped_column(String(36), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False)
    config_id: Mapped[str] = mapped_column(String(36), ForeignKey("oauth_configurations.id", ondelete="CASCADE"), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_type: Mapped[str] = mapped_column(String(20), nullable=False, default="Bearer")
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    last_refreshed: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    configuration: Mapped["OAuthConfiguration"] = relationship("OAuthConfiguration", back_populates="token")

    # One current token per configuration
    __table_args__ = (
        UniqueConstraint("config_id", name="uq_oauth_token_config"),
        CheckConstraint("token_type IN ('Bearer', 'Basic')", name="token_type"),
        Index("idx_oauth_tokens_expires_at", "expires_at"),
    )


class PendingAuthorizationFlow(Base):
    """ORM model for an authorization flow waiting for the browser callback."""

    __tablename__ = "oauth_pending_flows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    config_id: Mapped[str] = mapped_column(String(36), ForeignKey("oauth_configurations.id", ondelete="CASCADE"), nullable=False)
    state: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    code_verifier: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # PKCE code verifier (RFC 7636)
    code_challenge: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    redirect_uri: Mapped[str] = mapped_column(String(767), nullable=False)
    scopes: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    configuration: Mapped["OAuthConfiguration"] = relationship("OAuthConfiguration")

    __table_args__ = (Index("idx_oauth_pending_flows_expires_at", "expires_at"),)


class PerformanceMetric(Base):
    """ORM model for one execution sample. Rows are never updated."""

    __tablename__ = "performance_metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: uuid.uuid4().hex)
    interface_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("fixed_interfaces.id", ondelete="SET NULL"), nullable=True)
    tool_id: Mapped[str] = mapped_column(String(36), nullable=False)
    access_type: Mapped[str] = mapped_column(String(20), nullable=False)
    operation_name: Mapped[str] = mapped_column(String(255), nullable=False)
    response_time_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_category: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    metric_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        CheckConstraint("access_type IN ('fixed', 'dynamic', 'discovery')", name="access_type"),
        CheckConstraint("response_time_ms >= 0", name="response_time"),
        Index("idx_performance_metrics_tool_operation", "tool_id", "operation_name", "timestamp"),
        Index("idx_performance_metrics_interface", "interface_id"),
        Index("idx_performance_metrics_timestamp", "timestamp"),
    )


@event.listens_for(PerformanceMetric, "before_update")
def _reject_metric_update(_mapper, _connection, target: PerformanceMetric) -> None:
    """Keep performance metrics append-only.

    Args:
        _mapper: Mapper of the flushed class.
        _connection: Connection used for the flush.
        target: Metric being updated.

    Raises:
        ValueError: Always; metrics are immutable once written.
    """
    raise ValueError(f"Performance metric {target.id} is immutable")


@contextmanager
def fresh_db_session() -> Generator[Session, Any, None]:
    """Get a fresh database session for isolated operations.

    Used by the command surface and the background token refresh task. The
    session is committed on successful exit or rolled back on exception, then
    closed.

    Yields:
        Session: A fresh SQLAlchemy database session.

    Raises:
        Exception: Any exception raised during database operations is re-raised
            after rolling back the transaction.

    Examples:
        >>> from mcpfixed.db import fresh_db_session
        >>> with fresh_db_session() as db:
        ...     hasattr(db, 'query')
        True
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize database tables.

    Args:
        bind: Engine to initialize (defaults to the configured engine).

    Raises:
        Exception: If database initialization fails.
    """
    try:
        Base.metadata.create_all(bind=bind or engine)
    except SQLAlchemyError as e:
        raise Exception(f"Failed to initialize database: {str(e)}")
