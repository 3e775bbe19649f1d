# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/fixed_interface_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Fixed Interface Service Implementation.
This module implements the fixed interface registry and execution cache:
- Registration with schema checks, force overwrite and live auto-discovery
- Execution with parameter validation, authentication and bounded retries
- Drift detection against the live operation shape
- Statistics over execution metrics

Every execution records a performance sample, whether it succeeded or not.
"""

# Standard
import asyncio
from datetime import timedelta
import logging
import time
from typing import Any, Dict, List, Optional

# Third-Party
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

# First-Party
from mcpfixed.config import settings
from mcpfixed.db import ensure_utc, FixedInterface, utc_now
from mcpfixed.errors import ConflictError, FixedToolError, InterfaceValidationError, NotFoundError, RequestTimeoutError, UpstreamError
from mcpfixed.schemas import (
    AccessType,
    ExecutionResult,
    FixedInterfaceCreate,
    FixedInterfaceRead,
    FixedInterfaceUpdate,
    InterfaceStats,
    parse_version,
    PerformanceMetricCreate,
    ProtocolResponse,
    SchemaDiff,
    ToolEndpoint,
    ValidationResult,
)
from mcpfixed.services import schema_validator
from mcpfixed.services.oauth_manager import OAuthManager
from mcpfixed.services.performance_service import classify_error, PerformanceService
from mcpfixed.services.protocol_client import McpProtocolClient, ProtocolClient
from mcpfixed.services.tool_registry import DbToolRegistry, ToolRegistry
from mcpfixed.utils.auth_headers import build_auth_headers
from mcpfixed.utils.retry import retry_async

logger = logging.getLogger(__name__)

_SCHEMA_FIELDS = ("schema_json", "parameters_json", "response_schema_json")


class FixedInterfaceService:
    """Registry, cache and executor of fixed interfaces."""

    def __init__(
        self,
        tool_registry: Optional[ToolRegistry] = None,
        protocol_client: Optional[ProtocolClient] = None,
        oauth_manager: Optional[OAuthManager] = None,
        performance_service: Optional[PerformanceService] = None,
    ):
        """Initialize the service with its collaborators.

        Args:
            tool_registry: Resolves tool ids to endpoints.
            protocol_client: Performs remote calls.
            oauth_manager: Supplies OAuth headers.
            performance_service: Records execution samples.
        """
        self.tool_registry = tool_registry or DbToolRegistry()
        self.protocol_client = protocol_client or McpProtocolClient()
        self.oauth_manager = oauth_manager or OAuthManager(tool_registry=self.tool_registry, protocol_client=self.protocol_client)
        self.performance_service = performance_service or PerformanceService()
        self._cache: Dict[str, FixedInterfaceRead] = {}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def _cache_get(self, interface_id: str) -> Optional[FixedInterfaceRead]:
        """Return a cached interface.

        Entries live until a write replaces or invalidates them.

        Args:
            interface_id: Interface id.

        Returns:
            Optional[FixedInterfaceRead]: Cached record, if any.
        """
        return self._cache.get(interface_id)

    def _cache_put(self, record: FixedInterfaceRead) -> None:
        """Replace a cache entry. Only called after a successful commit.

        Args:
            record: Committed interface.
        """
        self._cache[record.id] = record

    def _cache_invalidate(self, interface_id: str) -> None:
        """Drop a cache entry.

        Args:
            interface_id: Interface id.
        """
        self._cache.pop(interface_id, None)

    def clear_cache(self) -> None:
        """Drop every cache entry."""
        self._cache.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def _get_row(self, db: Session, interface_id: str) -> FixedInterface:
        """Load an interface row.

        Args:
            db: Database session.
            interface_id: Interface id.

        Returns:
            FixedInterface: The row.

        Raises:
            NotFoundError: If the interface does not exist.
        """
        row = db.get(FixedInterface, interface_id)
        if row is None:
            raise NotFoundError(f"Fixed interface not found: {interface_id}")
        return row

    def _load(self, db: Session, interface_id: str) -> FixedInterfaceRead:
        """Cache lookup falling back to the store.

        Args:
            db: Database session.
            interface_id: Interface id.

        Returns:
            FixedInterfaceRead: The interface.
        """
        cached = self._cache_get(interface_id)
        if cached is not None:
            return cached
        record = FixedInterfaceRead.model_validate(self._get_row(db, interface_id))
        self._cache_put(record)
        return record

    def get(self, db: Session, interface_id: str) -> FixedInterfaceRead:
        """Get an interface by id.

        Args:
            db: Database session.
            interface_id: Interface id.

        Returns:
            FixedInterfaceRead: The interface.

        Raises:
            NotFoundError: If the interface does not exist.
        """
        return self._load(db, interface_id)

    def get_by_name(self, db: Session, name: str, tool_id: Optional[str] = None) -> FixedInterfaceRead:
        """Get an interface by name, optionally scoped to a tool.

        Args:
            db: Database session.
            name: Interface name.
            tool_id: Tool id or name.

        Returns:
            FixedInterfaceRead: The interface.

        Raises:
            NotFoundError: If no interface has that name.
            ConflictError: If the name exists on several tools and no tool was given.
        """
        query = select(FixedInterface).where(FixedInterface.name == name)
        if tool_id:
            query = query.where(FixedInterface.tool_id == self.tool_registry.resolve(db, tool_id).tool_id)
        rows = db.execute(query).scalars().all()
        if not rows:
            raise NotFoundError(f"Fixed interface not found: {name}")
        if len(rows) > 1:
            raise ConflictError(f"Interface name {name} exists on {len(rows)} tools; specify the tool")
        record = FixedInterfaceRead.model_validate(rows[0])
        self._cache_put(record)
        return record

    def list_interfaces(self, db: Session, tool_id: Optional[str] = None, is_active: Optional[bool] = None, name: Optional[str] = None, version: Optional[str] = None) -> List[FixedInterfaceRead]:
        """List interfaces with optional filters.

        Args:
            db: Database session.
            tool_id: Tool id or name.
            is_active: Active flag filter.
            name: Exact name filter.
            version: Exact version filter.

        Returns:
            List[FixedInterfaceRead]: Matching interfaces ordered by name.
        """
        query = select(FixedInterface)
        if tool_id:
            query = query.where(FixedInterface.tool_id == self.tool_registry.resolve(db, tool_id).tool_id)
        if is_active is not None:
            query = query.where(FixedInterface.is_active.is_(is_active))
        if name:
            query = query.where(FixedInterface.name == name)
        if version:
            query = query.where(FixedInterface.version == version)
        return [FixedInterfaceRead.model_validate(row) for row in db.execute(query.order_by(FixedInterface.name, FixedInterface.tool_id)).scalars().all()]

    # ------------------------------------------------------------------
    # Live operation shape
    # ------------------------------------------------------------------
    async def _auth_headers(self, db: Session, endpoint: ToolEndpoint) -> Dict[str, str]:
        """Authentication headers for a tool.

        Args:
            db: Database session.
            endpoint: Resolved tool.

        Returns:
            Dict[str, str]: OAuth header for ``oauth`` tools, static headers otherwise.
        """
        if endpoint.auth is not None and endpoint.auth.kind == "oauth":
            return await self.oauth_manager.get_auth_headers(db, endpoint.tool_id)
        return build_auth_headers(endpoint.auth)

    async def _live_operation(self, db: Session, endpoint: ToolEndpoint, name: str) -> Optional[Dict[str, Any]]:
        """Find an operation in the live tool listing.

        Args:
            db: Database session.
            endpoint: Resolved tool.
            name: Operation name.

        Returns:
            Optional[Dict[str, Any]]: The operation descriptor, or None if the
            listing does not contain it.
        """
        headers = await self._auth_headers(db, endpoint)
        operations = await self.protocol_client.list_tools(endpoint, headers, settings.tool_timeout)
        for operation in operations:
            if operation.get("name") == name:
                return operation
        return None

    # ------------------------------------------------------------------
    # Registration and maintenance
    # ------------------------------------------------------------------
    async def register(self, db: Session, spec: FixedInterfaceCreate, force: bool = False, validate_tool: bool = False, auto_discover: bool = False, dry_run: bool = False) -> FixedInterfaceRead:
        """Register a fixed interface.

        Args:
            db: Database session.
            spec: Interface definition.
            force: Overwrite a same-name interface in place, keeping its id.
            validate_tool: Require the operation to exist in the live listing.
            auto_discover: Fill empty schemas from the live listing.
            dry_run: Return the would-be record without persisting it.

        Returns:
            FixedInterfaceRead: The stored (or would-be) interface.

        Raises:
            ConflictError: If the name is taken on the tool and ``force`` is unset.
            InterfaceValidationError: If a schema is malformed or the version decreases.
            NotFoundError: If the tool or the live operation does not exist.
        """
        endpoint = self.tool_registry.resolve(db, spec.tool_id)
        data = spec.model_dump(by_alias=True)
        data["tool_id"] = endpoint.tool_id
        validated_live = False

        if auto_discover or validate_tool:
            operation = await self._live_operation(db, endpoint, spec.name)
            if operation is None:
                raise NotFoundError(f"Operation {spec.name} not offered by tool {endpoint.name}")
            validated_live = True
            if auto_discover:
                if not data["parameters_json"]:
                    data["parameters_json"] = operation.get("inputSchema") or {}
                if not data["response_schema_json"]:
                    data["response_schema_json"] = operation.get("outputSchema") or {}
                if not data["schema_json"]:
                    data["schema_json"] = {"title": operation["name"], "description": operation.get("description") or ""}
                data["description"] = data["description"] or operation.get("description")

        for field in _SCHEMA_FIELDS:
            schema_validator.check_schema(data[field], field)

        existing = db.execute(select(FixedInterface).where(FixedInterface.name == spec.name, FixedInterface.tool_id == endpoint.tool_id)).scalar_one_or_none()
        if existing is not None:
            if not force:
                raise ConflictError(f"Fixed interface {spec.name} already exists for tool {endpoint.name}")
            if parse_version(data["version"]) < parse_version(existing.version):
                raise InterfaceValidationError(f"Version {data['version']} is lower than stored version {existing.version}")

        if dry_run:
            return FixedInterfaceRead(id=existing.id if existing else None, **data)

        if existing is not None:
            row = existing
            for key, value in data.items():
                setattr(row, key, value)
            row.validation_errors = None
        else:
            row = FixedInterface(**data)
            db.add(row)
        if validated_live:
            row.last_validated = utc_now()

        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"Fixed interface {spec.name} already exists for tool {endpoint.name}") from e
        db.refresh(row)

        record = FixedInterfaceRead.model_validate(row)
        self._cache_put(record)
        logger.info(f"{'Updated' if existing is not None else 'Registered'} fixed interface {record.name} v{record.version} ({record.id})")
        return record

    def update(self, db: Session, interface_id: str, data: FixedInterfaceUpdate) -> FixedInterfaceRead:
        """Update an interface; unset fields stay unchanged.

        Args:
            db: Database session.
            interface_id: Interface id.
            data: Fields to change.

        Returns:
            FixedInterfaceRead: The updated interface.

        Raises:
            InterfaceValidationError: If a schema is malformed or the version decreases.
        """
        row = self._get_row(db, interface_id)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True, by_alias=True).items() if v is not None}
        for field in _SCHEMA_FIELDS:
            if field in changes:
                schema_validator.check_schema(changes[field], field)
        if "version" in changes and parse_version(changes["version"]) < parse_version(row.version):
            raise InterfaceValidationError(f"Version {changes['version']} is lower than stored version {row.version}")

        self._cache_invalidate(interface_id)
        for key, value in changes.items():
            setattr(row, key, value)
        db.commit()
        record = FixedInterfaceRead.model_validate(row)
        self._cache_put(record)
        logger.info(f"Updated fixed interface {row.name} ({row.id})")
        return record

    def deactivate(self, db: Session, interface_id: str) -> FixedInterfaceRead:
        """Soft-retire an interface.

        Args:
            db: Database session.
            interface_id: Interface id.

        Returns:
            FixedInterfaceRead: The deactivated interface.
        """
        return self.update(db, interface_id, FixedInterfaceUpdate(is_active=False))

    def delete(self, db: Session, interface_id: str) -> None:
        """Delete an interface. Its performance metrics are kept with a null interface id.

        Args:
            db: Database session.
            interface_id: Interface id.
        """
        row = self._get_row(db, interface_id)
        self._cache_invalidate(interface_id)
        db.delete(row)
        db.commit()
        logger.info(f"Deleted fixed interface {row.name} ({interface_id})")

    async def validate(self, db: Session, interface_id: str) -> ValidationResult:
        """Diff an interface against the live operation shape.

        Breaking drift is stored in ``validation_errors`` (the interface stays
        active but reports invalid); compatible drift clears it.

        Args:
            db: Database session.
            interface_id: Interface id.

        Returns:
            ValidationResult: Diff outcome, or the error that prevented
            fetching the live shape (stored state untouched in that case).
        """
        row = self._get_row(db, interface_id)
        try:
            endpoint = self.tool_registry.resolve(db, row.tool_id)
            operation = await self._live_operation(db, endpoint, row.name)
        except FixedToolError as e:
            logger.warning(f"Could not fetch live shape of {row.name}: {e.error_type}")
            return ValidationResult(interface_id=interface_id, valid=False, error=e.to_error_info())

        if operation is None:
            diff = SchemaDiff(removed=[row.name], breaking=[f"operation {row.name} is no longer offered by the tool"])
        else:
            diff = schema_validator.diff_operation(row.parameters_json, operation.get("inputSchema"), row.response_schema_json, operation.get("outputSchema"))

        now = utc_now()
        self._cache_invalidate(interface_id)
        row.validation_errors = list(diff.breaking) or None
        row.last_validated = now
        db.commit()
        self._cache_put(FixedInterfaceRead.model_validate(row))

        if diff.is_breaking:
            logger.warning(f"Fixed interface {row.name} has breaking drift: {'; '.join(diff.breaking)}")
        return ValidationResult(interface_id=interface_id, valid=not diff.is_breaking, breaking_changes=diff.breaking, compatible_changes=diff.compatible, diff=diff, validated_at=now)

    def _is_stale(self, record: FixedInterfaceRead) -> bool:
        """Whether the last validation is older than the validation interval.

        Interfaces never validated live count from their creation time.

        Args:
            record: Interface.

        Returns:
            bool: True if a re-validation is due.
        """
        reference = ensure_utc(record.last_validated or record.created_at)
        if reference is None or not settings.validation_interval:
            return False
        return utc_now() - reference > timedelta(seconds=settings.validation_interval)

    async def revalidate_stale(self, db: Session) -> List[ValidationResult]:
        """Validate every active interface whose validation is due.

        Args:
            db: Database session.

        Returns:
            List[ValidationResult]: One result per re-validated interface.
        """
        cutoff = utc_now() - timedelta(seconds=settings.validation_interval)
        query = select(FixedInterface.id).where(
            FixedInterface.is_active.is_(True),
            or_(FixedInterface.last_validated < cutoff, and_(FixedInterface.last_validated.is_(None), FixedInterface.created_at < cutoff)),
        )
        results = []
        for interface_id in db.execute(query).scalars().all():
            results.append(await self.validate(db, interface_id))
        return results

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(
        self,
        db: Session,
        interface_id: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        validate_response: bool = False,
        retry_attempts: Optional[int] = None,
        force: bool = False,
    ) -> ExecutionResult:
        """Execute a fixed interface with new parameters.

        Args:
            db: Database session.
            interface_id: Interface id.
            params: Operation arguments.
            timeout: Seconds per remote attempt (defaults to settings).
            validate_response: Check the response against the response schema.
            retry_attempts: Retries for retryable failures (defaults to settings).
            force: Execute even if the interface is inactive.

        Returns:
            ExecutionResult: Outcome; errors are reported, never raised.
        """
        params = params or {}
        start = time.monotonic()
        attempts = 0
        record: Optional[FixedInterfaceRead] = None
        response: Optional[ProtocolResponse] = None
        response_check = None

        try:
            record = self._load(db, interface_id)
            if not record.is_active and not force:
                raise InterfaceValidationError(f"Fixed interface {record.name} is inactive")
            schema_validator.validate_or_raise(params, record.parameters_json)

            endpoint = self.tool_registry.resolve(db, record.tool_id)
            headers = await self._auth_headers(db, endpoint)
            # Re-validation runs only once credentials are in hand
            if self._is_stale(record):
                await self._soft_validate(db, record)

            call_timeout = timeout or settings.tool_timeout
            operation_name = record.name

            async def _attempt() -> ProtocolResponse:
                nonlocal attempts
                attempts += 1
                try:
                    result = await asyncio.wait_for(self.protocol_client.call(endpoint, operation_name, params, headers, call_timeout), timeout=call_timeout)
                except asyncio.TimeoutError as e:
                    raise RequestTimeoutError(f"Call to {operation_name} timed out after {call_timeout}s") from e
                if result.status >= 400:
                    raise UpstreamError(f"Call to {operation_name} failed with status {result.status}", status=result.status, body=result.body, retryable=result.status >= 500)
                return result

            retries = settings.max_retries if retry_attempts is None else retry_attempts
            response, _ = await retry_async(_attempt, retries, f"Execution of {operation_name}")

            if validate_response and record.response_schema_json:
                response_check = schema_validator.check(response.body, record.response_schema_json)
                if not response_check.valid:
                    logger.warning(f"Response of {record.name} does not match its schema ({len(response_check.violations)} violations)")
            error = None
        except FixedToolError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected failure executing interface {interface_id}")
            error = FixedToolError(f"Unexpected failure: {type(e).__name__}: {e}")

        elapsed_ms = (time.monotonic() - start) * 1000
        if record is not None:
            self._record_execution(db, record, error is None, elapsed_ms, error)

        if error is not None:
            logger.info(f"Execution of {record.name if record else interface_id} failed with {error.error_type} after {attempts} attempt(s)")
            return ExecutionResult(
                success=False,
                interface_id=record.id if record else interface_id,
                interface_name=record.name if record else None,
                tool_id=record.tool_id if record else None,
                error=error.to_error_info(),
                response_time_ms=elapsed_ms,
                attempts=attempts,
            )
        return ExecutionResult(
            success=True,
            interface_id=record.id,
            interface_name=record.name,
            tool_id=record.tool_id,
            data=response.body,
            response_time_ms=elapsed_ms,
            attempts=attempts,
            response_validation=response_check,
        )

    async def execute_by_name(self, db: Session, name: str, params: Optional[Dict[str, Any]] = None, tool_id: Optional[str] = None, **kwargs: Any) -> ExecutionResult:
        """Execute an interface looked up by name.

        Args:
            db: Database session.
            name: Interface name.
            params: Operation arguments.
            tool_id: Tool id or name, when the name is ambiguous.
            **kwargs: Options passed to :meth:`execute`.

        Returns:
            ExecutionResult: Outcome; an unknown name yields a NotFound error.
        """
        try:
            record = self.get_by_name(db, name, tool_id)
        except FixedToolError as e:
            return ExecutionResult(success=False, interface_name=name, error=e.to_error_info())
        return await self.execute(db, record.id, params, **kwargs)

    async def _soft_validate(self, db: Session, record: FixedInterfaceRead) -> None:
        """Re-validate a stale interface; failures are only logged.

        Args:
            db: Database session.
            record: Interface due for validation.
        """
        logger.info(f"Fixed interface {record.name} is stale; re-validating before execution")
        try:
            result = await self.validate(db, record.id)
        except (FixedToolError, SQLAlchemyError) as e:
            db.rollback()
            logger.warning(f"Soft re-validation of {record.name} failed: {type(e).__name__}")
            return
        if result.error is not None:
            logger.warning(f"Soft re-validation of {record.name} could not reach the tool: {result.error.type}")

    def _record_execution(self, db: Session, record: FixedInterfaceRead, success: bool, elapsed_ms: float, error: Optional[FixedToolError]) -> None:
        """Record the metric and update the counters in one transaction.

        Args:
            db: Database session.
            record: Executed interface.
            success: Whether the execution succeeded.
            elapsed_ms: Response time.
            error: Failure, if any.
        """
        category = classify_error(error)
        try:
            row = db.get(FixedInterface, record.id)
            if row is not None:
                count = (row.execution_count or 0) + 1
                previous_avg = row.average_response_time or 0.0
                row.execution_count = count
                row.success_count = (row.success_count or 0) + (1 if success else 0)
                row.average_response_time = previous_avg + (elapsed_ms - previous_avg) / count
                row.performance_score = self.performance_service.performance_score(row)
            self.performance_service.record(
                db,
                PerformanceMetricCreate(
                    interface_id=record.id if row is not None else None,
                    tool_id=record.tool_id,
                    access_type=AccessType.FIXED,
                    operation_name=record.name,
                    response_time_ms=elapsed_ms,
                    success=success,
                    error_category=category,
                    error_details=error.message if error else None,
                ),
                commit=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record execution of {record.name}: {e}")
            return
        if row is not None:
            self._cache_put(FixedInterfaceRead.model_validate(row))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def get_stats(self, db: Session, interface_id: Optional[str] = None, tool_id: Optional[str] = None, hours: float = 24.0) -> InterfaceStats:
        """Interface counts plus fixed-access metric aggregates.

        Args:
            db: Database session.
            interface_id: Restrict to one interface.
            tool_id: Restrict to one tool (id or name).
            hours: Metric window.

        Returns:
            InterfaceStats: Counts and aggregates.
        """
        query = select(FixedInterface.is_active, FixedInterface.validation_errors, FixedInterface.execution_count)
        resolved_tool = self.tool_registry.resolve(db, tool_id).tool_id if tool_id else None
        if interface_id:
            self._get_row(db, interface_id)
            query = query.where(FixedInterface.id == interface_id)
        if resolved_tool:
            query = query.where(FixedInterface.tool_id == resolved_tool)

        total = active = invalid = executions = 0
        for is_active, validation_errors, execution_count in db.execute(query).all():
            total += 1
            active += 1 if is_active else 0
            invalid += 1 if validation_errors else 0
            executions += execution_count or 0

        performance = self.performance_service.get_stats(db, interface_id=interface_id, tool_id=resolved_tool, access_type=AccessType.FIXED, hours=hours)
        return InterfaceStats(
            total_interfaces=total,
            active_interfaces=active,
            inactive_interfaces=total - active,
            invalid_interfaces=invalid,
            total_executions=executions,
            performance=performance,
        )
