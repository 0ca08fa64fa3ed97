"""Analytics rollup: dashboard metrics over enrollments, ledger and payments.

Every metric is a small table (fixed columns, deterministic row order)
computed read-only from the authoritative tables.  refresh() stores the
result as a snapshot keyed by (metric_type, dimension, period), and
compute_metric() serves that snapshot when one exists.  A snapshot older
than ANALYTICS_MAX_STALENESS_SECONDS is still served, flagged stale,
with a StaleDataWarning.

Money, rates and averages are Decimals rounded half-up to 2 places.
The same formatting is used for JSON (as strings) and CSV, so exports
over unchanged data are byte-identical.
"""

from __future__ import annotations

import csv
import datetime
import io
import json
import logging
import re
import time
import warnings
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from app.core.clock import SECONDS_PER_DAY, day_start, utc_now
from app.core.config import SETTINGS
from app.core.metrics import ANALYTICS_COMPUTE_DURATION, ANALYTICS_REQUESTS
from app.db.store import uow_factory as default_uow_factory
from app.models.analytics import AnalyticsSnapshot, MetricResult
from app.models.principal import Principal
from app.models.user import ROLES
from app.repos.analytics_repo import CourseStats
from app.repos.unit_of_work import UnitOfWork, UnitOfWorkFactory
from app.services.errors import StaleDataWarning, UnknownMetricError
from app.services.retry import run_in_unit_of_work

logger = logging.getLogger(__name__)

USER_GROWTH = "user_growth"
COURSE_PERFORMANCE = "course_performance"
INSTRUCTOR_DASHBOARD = "instructor_dashboard"
STUDENT_DASHBOARD = "student_dashboard"
PLATFORM_OVERVIEW = "platform_overview"

_COURSE_COLUMNS = (
    "course_id",
    "slug",
    "title",
    "enrollments",
    "completions",
    "completion_rate",
    "avg_progress",
    "avg_rating",
    "rating_count",
    "revenue",
)

METRIC_COLUMNS: dict[str, tuple[str, ...]] = {
    USER_GROWTH: ("day", "new_users", "cumulative_users"),
    COURSE_PERFORMANCE: _COURSE_COLUMNS,
    INSTRUCTOR_DASHBOARD: _COURSE_COLUMNS,
    STUDENT_DASHBOARD: (
        "course_id",
        "slug",
        "title",
        "status",
        "progress_percentage",
        "enrolled_at",
        "completed_at",
        "certificate_code",
    ),
    PLATFORM_OVERVIEW: ("metric", "value"),
}

METRIC_TYPES = tuple(METRIC_COLUMNS)

_DEFAULT_PERIOD = {USER_GROWTH: "30d"}

_DECIMAL_COLUMNS = frozenset(
    {"completion_rate", "avg_progress", "avg_rating", "revenue"}
)

# platform_overview rows whose value is a Decimal
_DECIMAL_OVERVIEW_METRICS = frozenset({"completion_rate", "revenue", "avg_rating"})

_PERIOD_RE = re.compile(r"^([1-9][0-9]{0,3})d$")

_CENT = Decimal("0.01")

EXPORT_FORMATS = ("json", "csv")


def quantize(value: Decimal | int) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def ratio(numerator: int | Decimal, denominator: int, scale: int = 1) -> Decimal:
    if denominator == 0:
        return quantize(0)
    return quantize(Decimal(numerator) * scale / Decimal(denominator))


def parse_period(period: str) -> int | None:
    """Days in an ``Nd`` period, None for ``all``.  ValueError otherwise."""
    if period == "all":
        return None
    m = _PERIOD_RE.match(period)
    if m is None:
        raise ValueError(f"invalid period {period!r}; use 'all' or e.g. '30d'")
    return int(m.group(1))


def _iso_day(ts: int) -> str:
    return datetime.datetime.fromtimestamp(ts, datetime.UTC).date().isoformat()


def _validate_dimension(metric_type: str, dimension: str) -> None:
    if metric_type == USER_GROWTH:
        if dimension != "all" and dimension not in ROLES:
            raise ValueError(f"user_growth dimension must be 'all' or a role, got {dimension!r}")
    elif metric_type == PLATFORM_OVERVIEW:
        if dimension != "all":
            raise ValueError("platform_overview only supports dimension 'all'")
    elif metric_type == COURSE_PERFORMANCE and dimension == "all":
        pass
    else:
        try:
            UUID(dimension)
        except ValueError:
            raise ValueError(
                f"{metric_type} dimension must be an id, got {dimension!r}"
            ) from None


def _encode_value(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


def _decode_row(metric_type: str, row: dict) -> dict:
    decoded = {}
    for key, value in row.items():
        if value is not None and (
            key in _DECIMAL_COLUMNS
            or (
                metric_type == PLATFORM_OVERVIEW
                and key == "value"
                and row["metric"] in _DECIMAL_OVERVIEW_METRICS
            )
        ):
            value = Decimal(value)
        decoded[key] = value
    return decoded


def _course_row(stats: CourseStats) -> dict:
    return {
        "course_id": str(stats.course_id),
        "slug": stats.slug,
        "title": stats.title,
        "enrollments": stats.enrollment_count,
        "completions": stats.completion_count,
        "completion_rate": ratio(stats.completion_count, stats.enrollment_count, 100),
        "avg_progress": ratio(stats.progress_sum, stats.enrollment_count),
        "avg_rating": (
            ratio(stats.rating_sum, stats.rating_count) if stats.rating_count else None
        ),
        "rating_count": stats.rating_count,
        "revenue": quantize(stats.revenue),
    }


def _course_summary(rows: list[dict]) -> dict:
    enrollments = sum(r["enrollments"] for r in rows)
    completions = sum(r["completions"] for r in rows)
    return {
        "courses": len(rows),
        "enrollments": enrollments,
        "completions": completions,
        "completion_rate": ratio(completions, enrollments, 100),
        "revenue": quantize(sum((r["revenue"] for r in rows), Decimal(0))),
    }


class AnalyticsRollup:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        max_staleness_seconds: int | None = None,
        clock: Callable[[], int] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._max_staleness = (
            max_staleness_seconds
            if max_staleness_seconds is not None
            else SETTINGS.analytics_max_staleness_seconds
        )
        self._clock = clock

    # --- public API -------------------------------------------------------

    async def compute_metric(
        self,
        metric_type: str,
        dimension: str = "all",
        period: str | None = None,
        *,
        live: bool = False,
    ) -> MetricResult:
        """Return a metric, from its snapshot unless ``live`` or none exists.

        Never writes.  Raises UnknownMetricError for an unknown metric type
        and ValueError for a bad dimension or period.
        """
        period = self._normalize(metric_type, dimension, period)

        if not live:

            async def read(uow: UnitOfWork) -> AnalyticsSnapshot | None:
                return await uow.snapshots.get(metric_type, dimension, period)

            snapshot = await run_in_unit_of_work(
                self._uow_factory, read, operation="analytics_snapshot_read"
            )
            if snapshot is not None:
                return self._from_snapshot(snapshot)

        ANALYTICS_REQUESTS.labels(metric_type=metric_type, source="live").inc()
        return await self._compute_live(metric_type, dimension, period)

    async def refresh(
        self, metric_type: str, dimension: str = "all", period: str | None = None
    ) -> MetricResult:
        """Recompute a metric and store it as the current snapshot."""
        period = self._normalize(metric_type, dimension, period)
        result = await self._compute_live(metric_type, dimension, period)
        snapshot = AnalyticsSnapshot(
            metric_type=metric_type,
            dimension=dimension,
            period=period,
            payload_json=json.dumps(
                {
                    "rows": [
                        {k: _encode_value(v) for k, v in row.items()}
                        for row in result.rows
                    ],
                    "summary": {k: _encode_value(v) for k, v in result.summary.items()},
                },
                sort_keys=True,
            ),
            computed_at=result.computed_at,
        )

        async def store(uow: UnitOfWork) -> None:
            await uow.snapshots.upsert(snapshot)

        await run_in_unit_of_work(
            self._uow_factory, store, operation="analytics_snapshot_write"
        )
        logger.info(
            "Refreshed snapshot %s/%s/%s",
            metric_type,
            dimension,
            period,
            extra={"metric_type": metric_type},
        )
        return result

    async def refresh_all(self) -> int:
        """Refresh every stored snapshot; returns how many were refreshed."""

        async def list_keys(uow: UnitOfWork) -> list[tuple[str, str, str]]:
            return await uow.snapshots.list_keys()

        keys = await run_in_unit_of_work(
            self._uow_factory, list_keys, operation="analytics_snapshot_read"
        )
        for metric_type, dimension, period in keys:
            await self.refresh(metric_type, dimension, period)
        return len(keys)

    async def invalidate(
        self, metric_type: str | None = None, dimension: str | None = None
    ) -> int:
        if metric_type is not None and metric_type not in METRIC_COLUMNS:
            raise UnknownMetricError(metric_type)

        async def drop(uow: UnitOfWork) -> int:
            return await uow.snapshots.delete(metric_type, dimension)

        dropped = await run_in_unit_of_work(
            self._uow_factory, drop, operation="analytics_snapshot_write"
        )
        logger.info("Dropped %d analytics snapshots", dropped)
        return dropped

    async def dashboard_for(
        self, principal: Principal, period: str | None = None, *, live: bool = False
    ) -> MetricResult:
        """The dashboard matching the caller's role, scoped to the caller."""
        if principal.is_admin():
            return await self.compute_metric(PLATFORM_OVERVIEW, "all", period, live=live)
        dimension = str(principal.user_id)
        if principal.is_instructor():
            return await self.compute_metric(
                INSTRUCTOR_DASHBOARD, dimension, period, live=live
            )
        return await self.compute_metric(STUDENT_DASHBOARD, dimension, period, live=live)

    async def export(
        self,
        metric_type: str,
        fmt: str,
        dimension: str = "all",
        period: str | None = None,
    ) -> bytes:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"unsupported export format {fmt!r}")
        result = await self.compute_metric(metric_type, dimension, period)
        if fmt == "csv":
            return to_csv(result)
        return to_json(result)

    # --- internals --------------------------------------------------------

    def _normalize(self, metric_type: str, dimension: str, period: str | None) -> str:
        if metric_type not in METRIC_COLUMNS:
            raise UnknownMetricError(f"unknown metric type {metric_type!r}")
        if period is None:
            period = _DEFAULT_PERIOD.get(metric_type, "all")
        parse_period(period)
        _validate_dimension(metric_type, dimension)
        return period

    def _from_snapshot(self, snapshot: AnalyticsSnapshot) -> MetricResult:
        payload = json.loads(snapshot.payload_json)
        age = self._clock() - snapshot.computed_at
        stale = age > self._max_staleness
        source = "stale" if stale else "cached"
        ANALYTICS_REQUESTS.labels(metric_type=snapshot.metric_type, source=source).inc()
        if stale:
            message = (
                f"{snapshot.metric_type}/{snapshot.dimension}/{snapshot.period} "
                f"snapshot is {age}s old"
            )
            logger.warning(
                "Serving stale analytics: %s",
                message,
                extra={"metric_type": snapshot.metric_type},
            )
            warnings.warn(message, StaleDataWarning, stacklevel=3)

        summary = payload.get("summary", {})
        return MetricResult(
            metric_type=snapshot.metric_type,
            dimension=snapshot.dimension,
            period=snapshot.period,
            columns=METRIC_COLUMNS[snapshot.metric_type],
            rows=tuple(_decode_row(snapshot.metric_type, r) for r in payload["rows"]),
            computed_at=snapshot.computed_at,
            cached=True,
            stale=stale,
            summary={
                k: Decimal(v) if k in _DECIMAL_COLUMNS else v for k, v in summary.items()
            },
        )

    async def _compute_live(
        self, metric_type: str, dimension: str, period: str
    ) -> MetricResult:
        now = self._clock()
        compute = {
            USER_GROWTH: self._user_growth,
            COURSE_PERFORMANCE: self._course_performance,
            INSTRUCTOR_DASHBOARD: self._instructor_dashboard,
            STUDENT_DASHBOARD: self._student_dashboard,
            PLATFORM_OVERVIEW: self._platform_overview,
        }[metric_type]

        async def work(uow: UnitOfWork) -> tuple[list[dict], dict]:
            return await compute(uow, dimension, parse_period(period), now)

        started = time.perf_counter()
        with ANALYTICS_COMPUTE_DURATION.labels(metric_type=metric_type).time():
            rows, summary = await run_in_unit_of_work(
                self._uow_factory, work, operation="analytics"
            )
        logger.debug(
            "Computed %s over %d rows",
            metric_type,
            len(rows),
            extra={
                "metric_type": metric_type,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return MetricResult(
            metric_type=metric_type,
            dimension=dimension,
            period=period,
            columns=METRIC_COLUMNS[metric_type],
            rows=tuple(rows),
            computed_at=now,
            summary=summary,
        )

    async def _user_growth(
        self, uow: UnitOfWork, dimension: str, days: int | None, now: int
    ) -> tuple[list[dict], dict]:
        role = None if dimension == "all" else dimension
        today = day_start(now)
        if days is None:
            signups = await uow.analytics.signups_by_day(0, role)
            start = min(signups, default=today)
        else:
            start = today - (days - 1) * SECONDS_PER_DAY
            signups = await uow.analytics.signups_by_day(start, role)

        cumulative = await uow.analytics.count_users(start, role)
        rows = []
        for day in range(start, today + 1, SECONDS_PER_DAY):
            new_users = signups.get(day, 0)
            cumulative += new_users
            rows.append(
                {
                    "day": _iso_day(day),
                    "new_users": new_users,
                    "cumulative_users": cumulative,
                }
            )
        summary = {
            "new_users": sum(r["new_users"] for r in rows),
            "total_users": cumulative,
        }
        return rows, summary

    async def _course_performance(
        self, uow: UnitOfWork, dimension: str, days: int | None, now: int
    ) -> tuple[list[dict], dict]:
        course_id = None if dimension == "all" else UUID(dimension)
        since = None if days is None else day_start(now) - (days - 1) * SECONDS_PER_DAY
        stats = await uow.analytics.course_stats(
            course_id=course_id, enrolled_since=since
        )
        rows = [_course_row(s) for s in stats]
        return rows, _course_summary(rows)

    async def _instructor_dashboard(
        self, uow: UnitOfWork, dimension: str, days: int | None, now: int
    ) -> tuple[list[dict], dict]:
        since = None if days is None else day_start(now) - (days - 1) * SECONDS_PER_DAY
        stats = await uow.analytics.course_stats(
            instructor_id=UUID(dimension), enrolled_since=since
        )
        rows = [_course_row(s) for s in stats]
        return rows, _course_summary(rows)

    async def _student_dashboard(
        self, uow: UnitOfWork, dimension: str, days: int | None, now: int
    ) -> tuple[list[dict], dict]:
        since = None if days is None else day_start(now) - (days - 1) * SECONDS_PER_DAY
        courses = [
            c
            for c in await uow.analytics.student_courses(UUID(dimension))
            if since is None or c.enrolled_at >= since
        ]
        rows = [
            {
                "course_id": str(c.course_id),
                "slug": c.slug,
                "title": c.title,
                "status": c.status,
                "progress_percentage": c.progress_percentage,
                "enrolled_at": c.enrolled_at,
                "completed_at": c.completed_at,
                "certificate_code": c.certificate_code,
            }
            for c in courses
        ]
        summary = {
            "enrollments": len(rows),
            "completed": sum(1 for r in rows if r["status"] == "completed"),
            "certificates": sum(1 for r in rows if r["certificate_code"]),
        }
        return rows, summary

    async def _platform_overview(
        self, uow: UnitOfWork, dimension: str, days: int | None, now: int
    ) -> tuple[list[dict], dict]:
        totals = await uow.analytics.platform_totals()
        values: list[tuple[str, int | Decimal | None]] = []
        for role in ROLES:
            values.append((f"users_{role}", totals.users_by_role.get(role, 0)))
        values.append(("users_total", sum(totals.users_by_role.values())))
        for status in ("draft", "published", "archived"):
            values.append((f"courses_{status}", totals.courses_by_status.get(status, 0)))
        values += [
            ("enrollments", totals.enrollment_count),
            ("completions", totals.completion_count),
            (
                "completion_rate",
                ratio(totals.completion_count, totals.enrollment_count, 100),
            ),
            ("revenue", quantize(totals.revenue)),
            (
                "avg_rating",
                ratio(totals.rating_sum, totals.rating_count)
                if totals.rating_count
                else None,
            ),
            ("rating_count", totals.rating_count),
        ]
        return [{"metric": k, "value": v} for k, v in values], {}


# ---------------------------------------------------------------------------
# Export encoders
# ---------------------------------------------------------------------------


def _csv_cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return str(quantize(value))
    return str(value)


def to_csv(result: MetricResult) -> bytes:
    """Header plus one line per row; no computation timestamp."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(result.columns)
    for row in result.rows:
        writer.writerow([_csv_cell(row.get(col)) for col in result.columns])
    return buf.getvalue().encode("utf-8")


def to_json(result: MetricResult) -> bytes:
    document = {
        "metric_type": result.metric_type,
        "dimension": result.dimension,
        "period": result.period,
        "columns": list(result.columns),
        "rows": [
            {col: _encode_value(row.get(col)) for col in result.columns}
            for row in result.rows
        ],
        "summary": {k: _encode_value(v) for k, v in result.summary.items()},
        "computed_at": result.computed_at,
        "cached": result.cached,
        "stale": result.stale,
    }
    return json.dumps(document, sort_keys=True).encode("utf-8")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

analytics_rollup = AnalyticsRollup(default_uow_factory)
