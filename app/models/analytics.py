from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class AnalyticsSnapshot:
    """Cached metric payload keyed by (metric_type, dimension, period).

    Non-authoritative: always recomputable from source tables.
    """

    metric_type: str
    dimension: str
    period: str
    payload_json: str
    computed_at: int


@dataclass(frozen=True, slots=True)
class MetricResult:
    """A computed metric as a small table.

    columns fixes the field order; every row is a dict keyed by those
    columns.  cached/stale tell callers whether they are looking at live
    data or a snapshot, and whether that snapshot is past the configured
    maximum staleness.
    """

    metric_type: str
    dimension: str
    period: str
    columns: tuple[str, ...]
    rows: tuple[dict, ...]
    computed_at: int
    cached: bool = False
    stale: bool = False
    summary: dict = field(default_factory=dict)
