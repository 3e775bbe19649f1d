# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/services/performance_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Performance Telemetry Service.

This module records one sample per execution and aggregates them:
- Latency statistics (avg, median, min, max, p95, p99) and success rate
- Error category histograms
- Fixed interface versus dynamic discovery comparison
- Retention cleanup of old samples
"""

# Standard
from datetime import timedelta
import logging
import statistics
from typing import Any, Dict, List, Optional, Sequence, Union

# Third-Party
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

# First-Party
from mcpfixed.config import settings
from mcpfixed.db import FixedInterface, PerformanceMetric, utc_now
from mcpfixed.errors import FixedToolError
from mcpfixed.schemas import AccessType, ErrorCategory, ErrorInfo, PerformanceComparison, PerformanceMetricCreate, PerformanceStats

logger = logging.getLogger(__name__)

_CATEGORY_BY_TYPE = {
    "ValidationError": ErrorCategory.VALIDATION,
    "Conflict": ErrorCategory.VALIDATION,
    "AuthRequired": ErrorCategory.AUTH,
    "AuthExpired": ErrorCategory.AUTH,
    "SecurityError": ErrorCategory.AUTH,
    "Timeout": ErrorCategory.TIMEOUT,
    "NetworkError": ErrorCategory.NETWORK,
    "UpstreamError": ErrorCategory.SERVER,
}


def percentile(sorted_values: Sequence[float], pct: float) -> Optional[float]:
    """Linear-interpolated percentile of pre-sorted values.

    Args:
        sorted_values: Values in ascending order.
        pct: Percentile between 0 and 100.

    Returns:
        Optional[float]: The percentile, or None for no values.

    Examples:
        >>> percentile([10.0, 20.0, 30.0, 40.0], 50)
        25.0
        >>> percentile([5.0], 99)
        5.0
        >>> percentile(list(range(1, 101)), 95)
        95.05
        >>> percentile([], 95) is None
        True
    """
    if not sorted_values:
        return None
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    rank = (len(sorted_values) - 1) * (pct / 100.0)
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    fraction = rank - lower
    return round(float(sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction), 4)


def classify_error(error: Union[FixedToolError, ErrorInfo, None]) -> Optional[ErrorCategory]:
    """Map an error onto a metric error category.

    Args:
        error: Raised error or structured error info.

    Returns:
        Optional[ErrorCategory]: Category, or None without an error.

    Examples:
        >>> from mcpfixed.errors import RequestTimeoutError, UpstreamError
        >>> classify_error(RequestTimeoutError("t")).value
        'timeout'
        >>> classify_error(UpstreamError("denied", status=401)).value
        'auth'
        >>> classify_error(UpstreamError("boom", status=502)).value
        'server'
        >>> classify_error(None) is None
        True
    """
    if error is None:
        return None
    if isinstance(error, FixedToolError):
        error = error.to_error_info()
    if error.type == "UpstreamError" and error.details.get("status") in (401, 403):
        return ErrorCategory.AUTH
    return _CATEGORY_BY_TYPE.get(error.type, ErrorCategory.UNKNOWN)


def summarize(latencies: List[float], successes: int, categories: Dict[str, int], window_hours: float) -> PerformanceStats:
    """Build aggregate statistics from raw samples.

    Args:
        latencies: Response times in milliseconds.
        successes: Number of successful samples.
        categories: Error category counts.
        window_hours: Window the samples were drawn from.

    Returns:
        PerformanceStats: Aggregates (None where there are no samples).

    Examples:
        >>> s = summarize([10.0, 30.0, 20.0], 2, {"network": 1}, 24)
        >>> s.sample_count, s.avg_response_time_ms, s.median_response_time_ms, round(s.success_rate, 3)
        (3, 20.0, 20.0, 0.667)
    """
    if not latencies:
        return PerformanceStats(window_hours=window_hours)
    ordered = sorted(latencies)
    return PerformanceStats(
        window_hours=window_hours,
        sample_count=len(ordered),
        success_count=successes,
        success_rate=successes / len(ordered),
        avg_response_time_ms=round(statistics.fmean(ordered), 4),
        median_response_time_ms=round(float(statistics.median(ordered)), 4),
        min_response_time_ms=ordered[0],
        max_response_time_ms=ordered[-1],
        p95_response_time_ms=percentile(ordered, 95),
        p99_response_time_ms=percentile(ordered, 99),
        error_categories=categories,
    )


class PerformanceService:
    """Records execution samples and aggregates them."""

    def record(self, db: Session, metric: PerformanceMetricCreate, commit: bool = True) -> PerformanceMetric:
        """Append one sample.

        Args:
            db: Database session.
            metric: Sample to record.
            commit: Commit immediately; callers batching the sample with other
                writes pass False and commit themselves.

        Returns:
            PerformanceMetric: The added row.
        """
        row = PerformanceMetric(
            interface_id=metric.interface_id,
            tool_id=metric.tool_id,
            access_type=AccessType(metric.access_type).value,
            operation_name=metric.operation_name,
            response_time_ms=metric.response_time_ms,
            success=metric.success,
            error_category=ErrorCategory(metric.error_category).value if metric.error_category else None,
            error_details=metric.error_details,
            metric_metadata=metric.metadata,
        )
        db.add(row)
        if commit:
            db.commit()
        return row

    def get_stats(
        self,
        db: Session,
        interface_id: Optional[str] = None,
        tool_id: Optional[str] = None,
        access_type: Optional[AccessType] = None,
        operation_name: Optional[str] = None,
        hours: float = 24.0,
    ) -> PerformanceStats:
        """Aggregate samples over a time window.

        Args:
            db: Database session.
            interface_id: Restrict to one interface.
            tool_id: Restrict to one tool.
            access_type: Restrict to one access type.
            operation_name: Restrict to one operation.
            hours: Window length.

        Returns:
            PerformanceStats: Aggregates.
        """
        since = utc_now() - timedelta(hours=hours)
        query = select(PerformanceMetric.response_time_ms, PerformanceMetric.success, PerformanceMetric.error_category).where(PerformanceMetric.timestamp >= since)
        if interface_id:
            query = query.where(PerformanceMetric.interface_id == interface_id)
        if tool_id:
            query = query.where(PerformanceMetric.tool_id == tool_id)
        if access_type:
            query = query.where(PerformanceMetric.access_type == AccessType(access_type).value)
        if operation_name:
            query = query.where(PerformanceMetric.operation_name == operation_name)

        latencies: List[float] = []
        successes = 0
        categories: Dict[str, int] = {}
        for response_time, success, category in db.execute(query).all():
            latencies.append(response_time)
            if success:
                successes += 1
            elif category:
                categories[category] = categories.get(category, 0) + 1
        return summarize(latencies, successes, categories, hours)

    def compare_access_types(self, db: Session, tool_id: str, operation_name: str, hours: float = 24.0) -> PerformanceComparison:
        """Compare fixed interface latency against dynamic discovery.

        Args:
            db: Database session.
            tool_id: Tool id.
            operation_name: Operation name.
            hours: Window length.

        Returns:
            PerformanceComparison: Both aggregates, the improvement percentage
            ``(dynamic - fixed) / dynamic * 100`` and whether the fixed average
            meets the configured target.
        """
        fixed = self.get_stats(db, tool_id=tool_id, operation_name=operation_name, access_type=AccessType.FIXED, hours=hours)
        dynamic = self.get_stats(db, tool_id=tool_id, operation_name=operation_name, access_type=AccessType.DYNAMIC, hours=hours)
        improvement = None
        if fixed.avg_response_time_ms is not None and dynamic.avg_response_time_ms:
            improvement = round((dynamic.avg_response_time_ms - fixed.avg_response_time_ms) / dynamic.avg_response_time_ms * 100, 2)
        target = settings.performance_target_ms
        target_met = fixed.avg_response_time_ms <= target if fixed.avg_response_time_ms is not None else None
        return PerformanceComparison(
            tool_id=tool_id,
            operation_name=operation_name,
            fixed=fixed,
            dynamic=dynamic,
            improvement_percentage=improvement,
            target_ms=target,
            target_met=target_met,
        )

    def performance_score(self, interface: FixedInterface) -> Optional[float]:
        """Score an interface between 0 and 100 from its counters.

        The score is the success rate scaled by how close the average latency is
        to the configured target (full marks at or under the target).

        Args:
            interface: Interface with up to date counters.

        Returns:
            Optional[float]: Score, or None before the first execution.
        """
        if not interface.execution_count or interface.average_response_time is None:
            return None
        success_rate = interface.success_count / interface.execution_count
        speed = min(1.0, settings.performance_target_ms / max(interface.average_response_time, 0.001))
        return round(success_rate * speed * 100, 2)

    def count(self, db: Session, **filters: Any) -> int:
        """Count samples matching equality filters.

        Args:
            db: Database session.
            **filters: Column name to value.

        Returns:
            int: Matching rows.
        """
        query = select(func.count(PerformanceMetric.id))  # pylint: disable=not-callable
        for column, value in filters.items():
            query = query.where(getattr(PerformanceMetric, column) == value)
        return db.execute(query).scalar_one()

    def cleanup_old_metrics(self, db: Session, retention_days: Optional[int] = None) -> int:
        """Delete samples older than the retention period.

        Args:
            db: Database session.
            retention_days: Days to keep (defaults to settings).

        Returns:
            int: Number of deleted samples.
        """
        days = retention_days or settings.metrics_retention_days
        cutoff = utc_now() - timedelta(days=days)
        result = db.execute(delete(PerformanceMetric).where(PerformanceMetric.timestamp < cutoff).execution_options(synchronize_session=False))
        db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} performance metrics older than {days} days")
        return deleted
