"""Append-only clustering quality log, read back as rolling averages.

Nothing here feeds heat or ranking; every call is best effort.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import psycopg
from psycopg.rows import dict_row

from story_heat.errors import DEGRADABLE_ERRORS, log_degraded

logger = logging.getLogger(__name__)


class MetricType(str, Enum):
    precision = "PRECISION"
    recall = "RECALL"
    cohesion = "COHESION"
    separation = "SEPARATION"
    f1_score = "F1_SCORE"


class LabelType(str, Enum):
    topic = "TOPIC"
    category = "CATEGORY"
    sentiment = "SENTIMENT"
    urgency = "URGENCY"


class FeedbackSource(str, Enum):
    user = "USER"
    system = "SYSTEM"
    cross_check = "CROSS_CHECK"


@dataclass(frozen=True)
class QualitySummary:
    average: float
    sample_count: int


def _enum_value(value: Enum | str | None) -> str | None:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def record_clustering_metric(
    conn: psycopg.Connection[Any],
    *,
    metric_type: MetricType | str,
    value: float,
    category: str | None = None,
    sample_size: int | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> bool:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO clustering_metrics(
                  metric_type, category, value, sample_size, calculated_at, notes
                )
                VALUES (%s,%s,%s,%s,%s,%s);
                """,
                (_enum_value(metric_type), category, value, sample_size, now, notes),
            )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "record_clustering_metric", exc, metric_type=_enum_value(metric_type))
        return False
    return True


def record_label_quality(
    conn: psycopg.Connection[Any],
    *,
    article_id: str,
    label_type: LabelType | str,
    original_label: str,
    corrected_label: str | None = None,
    accuracy_score: float | None = None,
    feedback_source: FeedbackSource | str | None = None,
    now_utc: datetime | None = None,
) -> bool:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO label_quality_tracking(
                  article_id, label_type, original_label, corrected_label,
                  accuracy_score, feedback_source, created_at
                )
                VALUES (%s,%s,%s,%s,%s,%s,%s);
                """,
                (
                    article_id,
                    _enum_value(label_type),
                    original_label,
                    corrected_label,
                    accuracy_score,
                    _enum_value(feedback_source),
                    now,
                ),
            )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "record_label_quality", exc, article_id=article_id)
        return False
    return True


def get_clustering_quality_summary(
    conn: psycopg.Connection[Any],
    *,
    hours: float = 24,
    now_utc: datetime | None = None,
) -> dict[str, QualitySummary]:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT metric_type, avg(value) AS average, count(*) AS sample_count
                FROM clustering_metrics
                WHERE calculated_at > %s
                GROUP BY metric_type
                ORDER BY metric_type;
                """,
                (now - timedelta(hours=hours),),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_clustering_quality_summary", exc, hours=hours)
        return {}
    return {
        r["metric_type"]: QualitySummary(
            average=float(r["average"]), sample_count=int(r["sample_count"])
        )
        for r in rows
    }
