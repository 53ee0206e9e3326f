"""Composite ranking and statistical anomaly detection over cluster heat.

The composite score blends five signals, each normalized to [0, 1] against a
fixed reference maximum:

    0.30 heat + 0.25 article count + 0.15 |velocity| + 0.15 entity heat
        + 0.15 source authority

Anomalies are z-score outliers of the current heat against the last 24
snapshots, plus a velocity check that is compared against the standard
deviation of *heat* (see ``VELOCITY_ANOMALY_STDDEV_FACTOR``).
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import psycopg
from psycopg.rows import dict_row

from story_heat import metrics
from story_heat.cluster_store import get_hot_clusters
from story_heat.errors import DEGRADABLE_ERRORS, ErrorKind, log_degraded
from story_heat.heat_history import (
    HeatHistoryPoint,
    analyze_heat_trend,
    get_heat_history,
    update_heat_prediction,
)

logger = logging.getLogger(__name__)

MAX_HEAT = 1000.0
MAX_ARTICLE_COUNT = 50.0
MAX_VELOCITY = 100.0
MAX_ENTITY_HEAT = 100.0

RANK_WEIGHTS: dict[str, float] = {
    "heat": 0.30,
    "article_count": 0.25,
    "velocity": 0.15,
    "entity": 0.15,
    "authority": 0.15,
}

ANOMALY_WINDOW = 24
MIN_ANOMALY_POINTS = 5
Z_SCORE_THRESHOLD = 3.0
# Velocity deviation is measured in units of stddev(heat), not stddev(velocity).
VELOCITY_ANOMALY_STDDEV_FACTOR = 2.0
# Score for a velocity deviation against perfectly flat heat (unbounded ratio).
MAX_ANOMALY_SCORE = 10.0
MIN_PATTERN_POINTS = 10


class AnomalyType(str, Enum):
    sudden_spike = "SUDDEN_SPIKE"
    sudden_drop = "SUDDEN_DROP"
    velocity_anomaly = "VELOCITY_ANOMALY"
    cross_syndication = "CROSS_SYNDICATION"


class Severity(str, Enum):
    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"
    critical = "CRITICAL"


class HeatPattern(str, Enum):
    oscillating_heat = "OSCILLATING_HEAT"
    step_pattern = "STEP_PATTERN"
    linear_decay = "LINEAR_DECAY"
    linear_growth = "LINEAR_GROWTH"


@dataclass(frozen=True)
class CompositeRanking:
    cluster_id: str
    category: str
    heat_score: float
    article_count: int
    heat_velocity: float
    entity_heat_score: float
    source_authority_score: float
    components: dict[str, float]
    composite_score: float


@dataclass(frozen=True)
class AnomalyDetection:
    cluster_id: str
    is_anomaly: bool
    anomaly_score: float
    detected_at: datetime
    anomaly_type: AnomalyType | None = None
    z_score: float = 0.0
    severity: Severity | None = None
    error: ErrorKind | None = None


@dataclass(frozen=True)
class CrossSyndicationEvent:
    topic_key: str
    source_cluster_id: str
    source_category: str
    target_cluster_ids: list[str]
    categories: list[str]


@dataclass
class SweepResult:
    clusters_scanned: int = 0
    ranked: int = 0
    anomalies: int = 0
    predictions: int = 0
    anomaly_cluster_ids: list[str] = field(default_factory=list)


def _clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def compute_composite_score(
    *,
    heat_score: float,
    article_count: int,
    heat_velocity: float,
    entity_heat: float,
    source_authority: float | None,
) -> tuple[float, dict[str, float]]:
    """Return ``(score, normalized components)``; the score is always in [0, 1]."""
    # A missing or zero authority counts as fully trusted.
    authority = source_authority if source_authority else 1.0
    components = {
        "heat": _clamp01(heat_score / MAX_HEAT),
        "article_count": _clamp01(article_count / MAX_ARTICLE_COUNT),
        "velocity": _clamp01(abs(heat_velocity) / MAX_VELOCITY),
        "entity": _clamp01(entity_heat / MAX_ENTITY_HEAT),
        "authority": _clamp01(authority),
    }
    score = sum(RANK_WEIGHTS[k] * v for k, v in components.items())
    return _clamp01(score), components


def calculate_composite_rank(
    conn: psycopg.Connection[Any], *, cluster_id: str
) -> CompositeRanking | None:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT
                  sc.id, sc.category, sc.heat_score, sc.article_count, sc.heat_velocity,
                  sc.source_authority_score,
                  (
                    SELECT coalesce(sum(heat_contribution), 0)
                    FROM entity_cluster_links
                    WHERE cluster_id = sc.id
                  ) AS entity_heat
                FROM story_clusters sc
                WHERE sc.id = %s;
                """,
                (cluster_id,),
            )
            row = cur.fetchone()
            if not row:
                return None

            entity_heat = float(row["entity_heat"] or 0.0)
            score, components = compute_composite_score(
                heat_score=float(row["heat_score"] or 0.0),
                article_count=int(row["article_count"] or 0),
                heat_velocity=float(row["heat_velocity"] or 0.0),
                entity_heat=entity_heat,
                source_authority=row["source_authority_score"],
            )
            cur.execute(
                """
                UPDATE story_clusters
                SET composite_rank_score = %s,
                    entity_heat_score = %s
                WHERE id = %s;
                """,
                (score, entity_heat, cluster_id),
            )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "calculate_composite_rank", exc, cluster_id=cluster_id)
        return None

    return CompositeRanking(
        cluster_id=cluster_id,
        category=row["category"],
        heat_score=float(row["heat_score"] or 0.0),
        article_count=int(row["article_count"] or 0),
        heat_velocity=float(row["heat_velocity"] or 0.0),
        entity_heat_score=entity_heat,
        source_authority_score=components["authority"],
        components=components,
        composite_score=score,
    )


def severity_for(z_score: float) -> Severity:
    abs_z = abs(z_score)
    if abs_z < 2:
        return Severity.low
    if abs_z < 3:
        return Severity.medium
    if abs_z < 4:
        return Severity.high
    return Severity.critical


def _mean_std(values: Sequence[float]) -> tuple[float, float]:
    mean = sum(values) / len(values)
    return mean, math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def evaluate_heat_anomaly(
    cluster_id: str,
    history: Sequence[HeatHistoryPoint],
    *,
    now_utc: datetime | None = None,
) -> AnomalyDetection:
    """Classify the newest point of most-recent-first ``history``."""
    now = now_utc or datetime.now(timezone.utc)
    window = list(history[:ANOMALY_WINDOW])
    if len(window) < MIN_ANOMALY_POINTS:
        return AnomalyDetection(
            cluster_id=cluster_id, is_anomaly=False, anomaly_score=0.0, detected_at=now
        )

    heats = [p.heat_score for p in window]
    mean, std = _mean_std(heats)
    z_score = (heats[0] - mean) / std if std > 0 else 0.0

    is_anomaly = False
    anomaly_type: AnomalyType | None = None
    score = abs(z_score)
    if z_score > Z_SCORE_THRESHOLD:
        is_anomaly, anomaly_type = True, AnomalyType.sudden_spike
    elif z_score < -Z_SCORE_THRESHOLD:
        is_anomaly, anomaly_type = True, AnomalyType.sudden_drop

    velocities = [p.velocity for p in window]
    avg_velocity = sum(velocities) / len(velocities)
    deviation = abs(velocities[0] - avg_velocity)
    if deviation > VELOCITY_ANOMALY_STDDEV_FACTOR * std:
        is_anomaly = True
        anomaly_type = anomaly_type or AnomalyType.velocity_anomaly
        score = max(score, deviation / std if std > 0 else MAX_ANOMALY_SCORE)

    return AnomalyDetection(
        cluster_id=cluster_id,
        is_anomaly=is_anomaly,
        anomaly_score=score,
        detected_at=now,
        anomaly_type=anomaly_type,
        z_score=z_score,
        severity=severity_for(score) if is_anomaly else None,
    )


def detect_heat_anomalies(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    now_utc: datetime | None = None,
) -> AnomalyDetection:
    """Evaluate and persist the anomaly flags; flags are cleared when normal."""
    now = now_utc or datetime.now(timezone.utc)
    history = get_heat_history(conn, cluster_id=cluster_id, limit=ANOMALY_WINDOW)
    detection = evaluate_heat_anomaly(cluster_id, history, now_utc=now)
    if len(history) < MIN_ANOMALY_POINTS:
        return detection

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE story_clusters
                SET is_anomaly = %s,
                    anomaly_type = %s,
                    anomaly_score = %s
                WHERE id = %s;
                """,
                (
                    detection.is_anomaly,
                    detection.anomaly_type.value if detection.anomaly_type else None,
                    detection.anomaly_score if detection.is_anomaly else 0.0,
                    cluster_id,
                ),
            )
    except DEGRADABLE_ERRORS as exc:
        kind = log_degraded(logger, "detect_heat_anomalies", exc, cluster_id=cluster_id)
        return AnomalyDetection(
            cluster_id=cluster_id, is_anomaly=False, anomaly_score=0.0, detected_at=now, error=kind
        )

    if detection.is_anomaly and detection.anomaly_type is not None:
        metrics.record_anomaly_flagged(detection.anomaly_type.value)
        logger.warning(
            "Heat anomaly %s on cluster %s (score %.2f)",
            detection.anomaly_type.value,
            cluster_id,
            detection.anomaly_score,
            extra={"cluster_id": cluster_id, "anomaly_type": detection.anomaly_type.value},
        )
    return detection


def detect_pattern_anomalies(history: Sequence[HeatHistoryPoint]) -> list[HeatPattern]:
    """Shape-level patterns over at least ten most-recent-first points."""
    if len(history) < MIN_PATTERN_POINTS:
        return []
    heats = [p.heat_score for p in reversed(history)]  # oldest first
    patterns: list[HeatPattern] = []

    direction_changes = 0
    for i in range(1, len(heats) - 1):
        if (heats[i] - heats[i - 1]) * (heats[i + 1] - heats[i]) < 0:
            direction_changes += 1
    if direction_changes > len(heats) * 0.6:
        patterns.append(HeatPattern.oscillating_heat)

    # A large jump followed by a flat tail.
    jump_threshold = max(heats) * 0.3
    for i in range(1, len(heats)):
        if abs(heats[i] - heats[i - 1]) > jump_threshold:
            tail = heats[i:]
            _, tail_std = _mean_std(tail)
            if tail_std < jump_threshold * 0.1:
                patterns.append(HeatPattern.step_pattern)
                break

    ups = sum(1 for a, b in zip(heats, heats[1:]) if b > a)
    downs = sum(1 for a, b in zip(heats, heats[1:]) if b < a)
    if downs > ups * 2:
        patterns.append(HeatPattern.linear_decay)
    elif ups > downs * 2:
        patterns.append(HeatPattern.linear_growth)
    return patterns


def detect_cross_syndication(
    clusters: Sequence[Mapping[str, Any]],
) -> list[CrossSyndicationEvent]:
    """Find topic keys that appear under more than one category.

    Each input needs ``id``, ``category``, ``topic_key`` and ``heat_score``.
    The hottest cluster of each group is reported as the source.
    """
    groups: dict[str, list[Mapping[str, Any]]] = {}
    for c in clusters:
        key = (c.get("topic_key") or "").lower()
        if not key:
            continue
        groups.setdefault(key, []).append(c)

    events: list[CrossSyndicationEvent] = []
    for key, members in groups.items():
        categories = sorted({str(m["category"]) for m in members})
        if len(members) < 2 or len(categories) < 2:
            continue
        hottest = max(members, key=lambda m: float(m.get("heat_score") or 0.0))
        events.append(
            CrossSyndicationEvent(
                topic_key=key,
                source_cluster_id=str(hottest["id"]),
                source_category=str(hottest["category"]),
                target_cluster_ids=[str(m["id"]) for m in members if m["id"] != hottest["id"]],
                categories=categories,
            )
        )
    return events


def find_cross_syndication(
    conn: psycopg.Connection[Any],
    *,
    hours: float = 24,
    now_utc: datetime | None = None,
) -> list[CrossSyndicationEvent]:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, category, topic_key, heat_score
                FROM story_clusters
                WHERE updated_at > %s
                  AND topic_key IS NOT NULL
                ORDER BY id;
                """,
                (now - timedelta(hours=hours),),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "find_cross_syndication", exc, hours=hours)
        return []
    return detect_cross_syndication(rows)


def recommend_clusters(
    conn: psycopg.Connection[Any],
    *,
    category_weights: Mapping[str, float],
    limit: int = 20,
    hours: float = 24,
    now_utc: datetime | None = None,
) -> list[str]:
    """Cluster ids ordered by ``weight(category) * heat``.

    Categories absent from ``category_weights`` weigh 0. With no weights at
    all this is the plain hot-cluster order.
    """
    now = now_utc or datetime.now(timezone.utc)
    if not category_weights:
        return [c.id for c in get_hot_clusters(conn, limit=limit, since_hours=hours, now_utc=now)]

    categories = [str(k).upper() for k in category_weights]
    weights = [float(v) for v in category_weights.values()]
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT sc.id
                FROM story_clusters sc
                LEFT JOIN unnest(%s::text[], %s::float8[]) AS w(category, weight)
                  ON w.category = sc.category
                WHERE sc.updated_at > %s
                ORDER BY coalesce(w.weight, 0) * sc.heat_score DESC,
                         sc.heat_score DESC,
                         sc.id ASC
                LIMIT %s;
                """,
                (categories, weights, now - timedelta(hours=hours), limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "recommend_clusters", exc, category_count=len(categories))
        return []
    return [r["id"] for r in rows]


def run_ranking_sweep(
    conn: psycopg.Connection[Any],
    *,
    since_hours: float = 24,
    limit: int = 100,
    window_hours: float = 6,
    now_utc: datetime | None = None,
) -> SweepResult:
    """Refresh trend, prediction, composite rank and anomaly flags for hot clusters."""
    now = now_utc or datetime.now(timezone.utc)
    result = SweepResult()
    for cluster in get_hot_clusters(conn, limit=limit, since_hours=since_hours, now_utc=now):
        result.clusters_scanned += 1
        trend = analyze_heat_trend(
            conn, cluster_id=cluster.id, window_hours=window_hours, now_utc=now
        )
        if trend.error is not None:
            continue
        if update_heat_prediction(conn, cluster_id=cluster.id) is not None:
            result.predictions += 1
        if calculate_composite_rank(conn, cluster_id=cluster.id) is not None:
            result.ranked += 1
        detection = detect_heat_anomalies(conn, cluster_id=cluster.id, now_utc=now)
        if detection.is_anomaly:
            result.anomalies += 1
            result.anomaly_cluster_ids.append(cluster.id)

    logger.info(
        "Ranking sweep: %d scanned, %d ranked, %d anomalies",
        result.clusters_scanned,
        result.ranked,
        result.anomalies,
        extra={"operation": "run_ranking_sweep"},
    )
    return result
