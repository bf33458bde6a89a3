from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from sdr_ops.automation.models import AutomationLog, AutomationRule
from sdr_ops.automation.schemas import (
    ActionTypeCount,
    AnalyticsFilters,
    AnalyticsSnapshot,
    AnalyticsStats,
    HourlyCount,
    RecentError,
    RuleBreakdown,
    StatusCount,
    TagCount,
    TrendPoint,
)
from sdr_ops.core.config import get_settings
from sdr_ops.metrics import observe_analytics_cache


TOP_TAGS_LIMIT = 10
RECENT_ERRORS_LIMIT = 10


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_start(value: date) -> datetime:
    return datetime.combine(value, dt_time.min, tzinfo=timezone.utc)


def next_day_start(value: date) -> datetime:
    return day_start(value) + timedelta(days=1)


@dataclass
class _CacheEntry:
    snapshot: AnalyticsSnapshot
    expires_at: float


class AnalyticsCache:
    """Short-lived in-process cache of analytics snapshots per organization and filter set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, AnalyticsFilters], _CacheEntry] = {}

    def get(self, organization_id: str, filters: AnalyticsFilters) -> AnalyticsSnapshot | None:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get((organization_id, filters))
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._entries.pop((organization_id, filters), None)
                return None
            return entry.snapshot

    def put(self, organization_id: str, filters: AnalyticsFilters, snapshot: AnalyticsSnapshot, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[(organization_id, filters)] = _CacheEntry(snapshot=snapshot, expires_at=time.monotonic() + ttl_seconds)

    def invalidate(self, organization_id: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == organization_id]:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


analytics_cache = AnalyticsCache()


@dataclass(frozen=True)
class _LogRow:
    id: uuid.UUID
    rule_id: uuid.UUID | None
    export_id: str
    action_type: str
    status: str
    error_message: str | None
    created_at: datetime
    rule_name: str | None
    rule_action_type: str | None
    rule_enabled: bool | None
    rule_tags: tuple[str, ...]


class AutomationAnalyticsService:
    def __init__(self, cache: AnalyticsCache | None = None) -> None:
        self.cache = cache or analytics_cache

    def compute(self, session: Session, organization_id: str, filters: AnalyticsFilters) -> AnalyticsSnapshot:
        ttl = get_settings().analytics_cache_ttl_seconds
        if ttl > 0:
            cached = self.cache.get(organization_id, filters)
            observe_analytics_cache(hit=cached is not None)
            if cached is not None:
                return cached

        snapshot = self.summarize(self._load_rows(session, organization_id, filters), filters)
        self.cache.put(organization_id, filters, snapshot, ttl)
        return snapshot

    def _load_rows(self, session: Session, organization_id: str, filters: AnalyticsFilters) -> list[_LogRow]:
        stmt = (
            select(
                AutomationLog.id,
                AutomationLog.rule_id,
                AutomationLog.export_id,
                AutomationLog.action_type,
                AutomationLog.status,
                AutomationLog.error_message,
                AutomationLog.created_at,
                AutomationRule.name,
                AutomationRule.action_type,
                AutomationRule.enabled,
                AutomationRule.trigger_tags,
            )
            .outerjoin(
                AutomationRule,
                and_(AutomationRule.id == AutomationLog.rule_id, AutomationRule.organization_id == AutomationLog.organization_id),
            )
            .where(AutomationLog.organization_id == organization_id)
        )
        if filters.rule_id is not None:
            stmt = stmt.where(AutomationLog.rule_id == filters.rule_id)
        if filters.status is not None:
            stmt = stmt.where(AutomationLog.status == filters.status)
        if filters.date_from is not None:
            stmt = stmt.where(AutomationLog.created_at >= day_start(filters.date_from))
        if filters.date_to is not None:
            stmt = stmt.where(AutomationLog.created_at < next_day_start(filters.date_to))

        rows: list[_LogRow] = []
        for row in session.execute(stmt).all():
            tags = row[10] if isinstance(row[10], list) else []
            rows.append(
                _LogRow(
                    id=row[0],
                    rule_id=row[1],
                    export_id=row[2],
                    action_type=row[3],
                    status=row[4],
                    error_message=row[5],
                    created_at=as_utc(row[6]),
                    rule_name=row[7],
                    rule_action_type=row[8],
                    rule_enabled=row[9],
                    rule_tags=tuple(str(tag) for tag in tags),
                )
            )
        return rows

    def summarize(self, rows: list[_LogRow], filters: AnalyticsFilters) -> AnalyticsSnapshot:
        status_counts = Counter(row.status for row in rows)
        total = len(rows)
        success_count = status_counts.get("success", 0)

        stats = AnalyticsStats(
            total_executions=total,
            success_count=success_count,
            error_count=status_counts.get("error", 0),
            pending_count=status_counts.get("pending", 0),
            success_rate=(success_count / total) if total else 0.0,
            active_rules=len({row.rule_id for row in rows if row.rule_id is not None}),
            unique_exports=len({row.export_id for row in rows}),
        )

        return AnalyticsSnapshot(
            stats=stats,
            trend=self._trend(rows),
            status_breakdown=[
                StatusCount(status=status_value, count=count) for status_value, count in _ranked(status_counts)
            ],
            rule_breakdown=self._rule_breakdown(rows),
            action_type_breakdown=[
                ActionTypeCount(action_type=action_type, count=count)
                for action_type, count in _ranked(Counter(row.action_type for row in rows))
            ],
            top_tags=[
                TagCount(tag=tag, count=count)
                for tag, count in _ranked(Counter(tag for row in rows for tag in row.rule_tags))[:TOP_TAGS_LIMIT]
            ],
            recent_errors=self._recent_errors(rows),
            hourly_activity=self._hourly(rows),
            filters=filters,
        )

    def _trend(self, rows: list[_LogRow]) -> list[TrendPoint]:
        buckets: dict[date, dict[str, int]] = {}
        for row in rows:
            bucket = buckets.setdefault(row.created_at.date(), {"total": 0, "success": 0, "errors": 0, "pending": 0})
            bucket["total"] += 1
            if row.status == "success":
                bucket["success"] += 1
            elif row.status == "error":
                bucket["errors"] += 1
            elif row.status == "pending":
                bucket["pending"] += 1
        return [TrendPoint(date=day.isoformat(), **counts) for day, counts in sorted(buckets.items())]

    def _rule_breakdown(self, rows: list[_LogRow]) -> list[RuleBreakdown]:
        grouped: dict[uuid.UUID | None, dict[str, Any]] = {}
        for row in rows:
            entry = grouped.setdefault(
                row.rule_id,
                {
                    "rule_id": row.rule_id,
                    "rule_name": row.rule_name,
                    "action_type": row.rule_action_type or row.action_type,
                    "rule_enabled": row.rule_enabled,
                    "total": 0,
                    "success": 0,
                    "errors": 0,
                },
            )
            entry["total"] += 1
            if row.status == "success":
                entry["success"] += 1
            elif row.status == "error":
                entry["errors"] += 1

        ordered = sorted(grouped.values(), key=lambda item: (-item["total"], item["rule_name"] or ""))
        return [RuleBreakdown(**item) for item in ordered]

    def _recent_errors(self, rows: list[_LogRow]) -> list[RecentError]:
        errors = sorted((row for row in rows if row.status == "error"), key=lambda row: row.created_at, reverse=True)
        return [
            RecentError(
                id=row.id,
                rule_id=row.rule_id,
                export_id=row.export_id,
                action_type=row.action_type,
                error_message=row.error_message,
                created_at=row.created_at,
                rule_name=row.rule_name,
            )
            for row in errors[:RECENT_ERRORS_LIMIT]
        ]

    def _hourly(self, rows: list[_LogRow]) -> list[HourlyCount]:
        counts = Counter(row.created_at.hour for row in rows)
        return [HourlyCount(hour=hour, count=counts.get(hour, 0)) for hour in range(24)]


def _ranked(counts: Counter[str]) -> list[tuple[str, int]]:
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))
