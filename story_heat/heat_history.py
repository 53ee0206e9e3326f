"""Heat snapshots per cluster and the trend/lifecycle analysis built on them."""
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

from story_heat.errors import DEGRADABLE_ERRORS, ErrorKind, log_degraded
from story_heat.models import LifecycleStage

logger = logging.getLogger(__name__)

MIN_TREND_POINTS = 3
# Confidence saturates once a window holds a day of hourly snapshots.
FULL_CONFIDENCE_POINTS = 24
ACCELERATION_THRESHOLD = 0.5
SPIKE_ACCELERATION = 2.0
SPIKE_VELOCITY = 10.0
DEAD_HEAT = 5.0


class HeatTrend(str, Enum):
    accelerating = "ACCELERATING"
    decelerating = "DECELERATING"
    stable = "STABLE"


class Trajectory(str, Enum):
    spike = "SPIKE"
    sustained = "SUSTAINED"
    decay = "DECAY"


class PredictedTrajectory(str, Enum):
    spiking = "SPIKING"
    growing = "GROWING"
    stable = "STABLE"
    decaying = "DECAYING"
    crashing = "CRASHING"


@dataclass(frozen=True)
class HeatHistoryPoint:
    id: int
    cluster_id: str
    heat_score: float
    article_count: int
    unique_title_count: int
    velocity: float
    recorded_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> HeatHistoryPoint:
        return cls(
            id=int(row["id"]),
            cluster_id=row["cluster_id"],
            heat_score=float(row["heat_score"]),
            article_count=int(row["article_count"]),
            unique_title_count=int(row["unique_title_count"]),
            velocity=float(row["velocity"]),
            recorded_at=row["recorded_at"],
        )


@dataclass(frozen=True)
class HeatTrendAnalysis:
    cluster_id: str
    current_heat: float
    velocity: float
    acceleration: float
    trend: HeatTrend
    predicted_trajectory: Trajectory
    confidence: float
    lifecycle_stage: LifecycleStage
    point_count: int = 0
    peak_heat: float | None = None
    peak_time: datetime | None = None
    error: ErrorKind | None = None


def empty_trend_analysis(cluster_id: str, *, error: ErrorKind | None = None) -> HeatTrendAnalysis:
    return HeatTrendAnalysis(
        cluster_id=cluster_id,
        current_heat=0.0,
        velocity=0.0,
        acceleration=0.0,
        trend=HeatTrend.stable,
        predicted_trajectory=Trajectory.sustained,
        confidence=0.0,
        lifecycle_stage=LifecycleStage.sustained,
        error=error,
    )


def record_heat_history(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    heat_score: float,
    article_count: int,
    unique_title_count: int,
    now_utc: datetime | None = None,
) -> HeatHistoryPoint | None:
    """Append a snapshot; velocity is the delta from the previous snapshot."""
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT heat_score
                    FROM cluster_heat_history
                    WHERE cluster_id = %s
                    ORDER BY recorded_at DESC, id DESC
                    LIMIT 1;
                    """,
                    (cluster_id,),
                )
                last = cur.fetchone()
                velocity = heat_score - float(last["heat_score"]) if last else 0.0

                cur.execute(
                    """
                    INSERT INTO cluster_heat_history(
                      cluster_id, heat_score, article_count, unique_title_count,
                      velocity, recorded_at
                    )
                    VALUES (%s,%s,%s,%s,%s,%s)
                    RETURNING *;
                    """,
                    (cluster_id, heat_score, article_count, unique_title_count, velocity, now),
                )
                row = cur.fetchone()
                cur.execute(
                    "UPDATE story_clusters SET heat_velocity = %s WHERE id = %s;",
                    (velocity, cluster_id),
                )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "record_heat_history", exc, cluster_id=cluster_id)
        return None
    return HeatHistoryPoint.from_row(row) if row else None


def get_heat_history(
    conn: psycopg.Connection[Any], *, cluster_id: str, limit: int = 100
) -> list[HeatHistoryPoint]:
    """Most-recent-first snapshots."""
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT *
                FROM cluster_heat_history
                WHERE cluster_id = %s
                ORDER BY recorded_at DESC, id DESC
                LIMIT %s;
                """,
                (cluster_id, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_heat_history", exc, cluster_id=cluster_id)
        return []
    return [HeatHistoryPoint.from_row(r) for r in rows]


def classify_trend(acceleration: float) -> HeatTrend:
    if acceleration > ACCELERATION_THRESHOLD:
        return HeatTrend.accelerating
    if acceleration < -ACCELERATION_THRESHOLD:
        return HeatTrend.decelerating
    return HeatTrend.stable


def classify_trajectory(acceleration: float, recent_velocity: float) -> Trajectory:
    if acceleration > SPIKE_ACCELERATION and recent_velocity > SPIKE_VELOCITY:
        return Trajectory.spike
    if acceleration > 0 and recent_velocity > 0:
        return Trajectory.sustained
    return Trajectory.decay


def classify_lifecycle(current_heat: float, max_heat: float, trend: HeatTrend) -> LifecycleStage:
    heat_ratio = current_heat / (max_heat or 1.0)
    if heat_ratio < 0.3 and trend is HeatTrend.accelerating:
        return LifecycleStage.emerging
    if heat_ratio >= 0.7 and trend is HeatTrend.stable:
        return LifecycleStage.sustained
    if trend is HeatTrend.decelerating:
        return LifecycleStage.decaying
    if current_heat < DEAD_HEAT:
        return LifecycleStage.dead
    return LifecycleStage.sustained


def analyze_points(cluster_id: str, points: Sequence[HeatHistoryPoint]) -> HeatTrendAnalysis:
    """Trend analysis over window points in chronological order."""
    if len(points) < MIN_TREND_POINTS:
        return empty_trend_analysis(cluster_id)

    n = len(points)
    velocities = [p.velocity for p in points]
    acceleration = (velocities[-1] - velocities[0]) / n
    recent_velocity = velocities[-1]
    trend = classify_trend(acceleration)

    current_heat = points[-1].heat_score
    peak = max(points, key=lambda p: p.heat_score)

    return HeatTrendAnalysis(
        cluster_id=cluster_id,
        current_heat=current_heat,
        velocity=recent_velocity,
        acceleration=acceleration,
        trend=trend,
        predicted_trajectory=classify_trajectory(acceleration, recent_velocity),
        confidence=min(1.0, n / FULL_CONFIDENCE_POINTS),
        lifecycle_stage=classify_lifecycle(current_heat, peak.heat_score, trend),
        point_count=n,
        peak_heat=peak.heat_score,
        peak_time=peak.recorded_at,
    )


def analyze_heat_trend(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    window_hours: float = 6,
    now_utc: datetime | None = None,
) -> HeatTrendAnalysis:
    now = now_utc or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=window_hours)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT *
                FROM cluster_heat_history
                WHERE cluster_id = %s
                  AND recorded_at > %s
                  AND recorded_at <= %s
                ORDER BY recorded_at ASC, id ASC;
                """,
                (cluster_id, cutoff, now),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        kind = log_degraded(logger, "analyze_heat_trend", exc, cluster_id=cluster_id)
        return empty_trend_analysis(cluster_id, error=kind)

    analysis = analyze_points(cluster_id, [HeatHistoryPoint.from_row(r) for r in rows])
    if analysis.point_count:
        _persist_trend(conn, analysis)
    return analysis


def _persist_trend(conn: psycopg.Connection[Any], analysis: HeatTrendAnalysis) -> None:
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE story_clusters
                SET acceleration = %(acceleration)s,
                    lifecycle_stage = %(stage)s,
                    peak_time = CASE
                      WHEN peak_heat IS NULL OR %(peak)s > peak_heat THEN %(peak_time)s
                      ELSE peak_time
                    END,
                    peak_heat = CASE
                      WHEN peak_heat IS NULL OR %(peak)s > peak_heat THEN %(peak)s
                      ELSE peak_heat
                    END
                WHERE id = %(id)s;
                """,
                {
                    "acceleration": analysis.acceleration,
                    "stage": analysis.lifecycle_stage.value,
                    "peak": analysis.peak_heat,
                    "peak_time": analysis.peak_time,
                    "id": analysis.cluster_id,
                },
            )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "persist_heat_trend", exc, cluster_id=analysis.cluster_id)


# ─────────────────────────────────────────────────────────────────────────────
# Heat prediction
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HeatPredictionConfig:
    window_size: int = 24
    forecast_horizons: tuple[int, ...] = (1, 6, 24)


@dataclass(frozen=True)
class HorizonPrediction:
    hours_ahead: int
    predicted_heat: float
    confidence: float
    upper_bound: float
    lower_bound: float


@dataclass(frozen=True)
class PredictionFactors:
    trend_direction: float  # -1..1, positive when heat rises over time
    volatility: float  # coefficient of variation
    momentum: float  # relative change of the last 5 points vs the 5 before
    stage: str


@dataclass(frozen=True)
class HeatPrediction:
    cluster_id: str
    current_heat: float
    trajectory: PredictedTrajectory
    confidence: float
    factors: PredictionFactors
    predictions: list[HorizonPrediction] = field(default_factory=list)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float], mean: float) -> float:
    if not values:
        return 0.0
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _linear_trend(chronological: Sequence[float]) -> float:
    n = len(chronological)
    sum_x = n * (n - 1) / 2
    sum_y = sum(chronological)
    sum_xy = sum(i * y for i, y in enumerate(chronological))
    sum_xx = sum(i * i for i in range(n))
    denom = n * sum_xx - sum_x * sum_x
    if denom == 0:
        return 0.0
    slope = (n * sum_xy - sum_x * sum_y) / denom
    avg_y = sum_y / n
    normalized = slope / avg_y if avg_y > 0 else 0.0
    return max(-1.0, min(1.0, normalized))


def _prediction_stage(heats: Sequence[float]) -> str:
    # heats are most-recent-first
    current = heats[0]
    hi, lo = max(heats), min(heats)
    spread = hi - lo
    if spread < 1:
        return "STABLE"
    position = (current - lo) / spread
    recent_trend = heats[0] - heats[min(3, len(heats) - 1)]
    if position < 0.2 and recent_trend > 0:
        return "EMERGING"
    if position > 0.8 and recent_trend < 0:
        return "PEAK"
    if recent_trend < 0:
        return "DECAYING"
    if recent_trend > 0:
        return "GROWING"
    return "STABLE"


_STAGE_GROWTH = {"EMERGING": 1.05, "PEAK": 0.98, "DECAYING": 0.95, "GROWING": 1.02, "STABLE": 1.0}


def _factors(heats: Sequence[float]) -> PredictionFactors:
    mean = _mean(heats)
    std = _pstdev(heats, mean)
    recent = heats[:5]
    older = heats[5:10]
    older_avg = _mean(older)
    momentum = (_mean(recent) - older_avg) / older_avg if older_avg > 0 else 0.0
    return PredictionFactors(
        trend_direction=_linear_trend(list(reversed(heats))),
        volatility=std / mean if mean > 0 else 0.0,
        momentum=momentum,
        stage=_prediction_stage(heats),
    )


def _predict_at(
    heats: Sequence[float], hours: int, factors: PredictionFactors
) -> HorizonPrediction:
    current = heats[0]
    std = _pstdev(heats, _mean(heats))

    predicted = current + factors.trend_direction * std * hours * 0.5
    predicted *= _STAGE_GROWTH.get(factors.stage, 1.0) ** hours
    predicted *= 1 + factors.momentum * 0.1 * hours
    predicted = max(0.0, predicted)

    # Confidence halves roughly every 8h and shrinks with volatility.
    confidence = math.exp(-hours / 12) * math.exp(-factors.volatility * 2)
    margin = std * math.sqrt(hours) * (1 + factors.volatility) * 1.96
    return HorizonPrediction(
        hours_ahead=hours,
        predicted_heat=predicted,
        confidence=confidence,
        upper_bound=predicted + margin,
        lower_bound=max(0.0, predicted - margin),
    )


def _trajectory(
    current: float, predictions: Sequence[HorizonPrediction], factors: PredictionFactors
) -> PredictedTrajectory:
    by_hours = {p.hours_ahead: p.predicted_heat for p in predictions}
    base = current or 1.0
    change_1h = (by_hours.get(1, current) - current) / base
    change_24h = (by_hours.get(24, current) - current) / base

    if change_1h > 0.2 and change_24h > 0.5:
        return PredictedTrajectory.spiking
    if change_1h < -0.2 and change_24h < -0.5:
        return PredictedTrajectory.crashing
    if change_1h > 0.05 or (factors.trend_direction > 0.1 and factors.momentum > 0.1):
        return PredictedTrajectory.growing
    if change_1h < -0.05 or (factors.trend_direction < -0.1 and factors.momentum < -0.1):
        return PredictedTrajectory.decaying
    return PredictedTrajectory.stable


def predict_heat(
    cluster_id: str,
    history: Sequence[HeatHistoryPoint],
    config: HeatPredictionConfig | None = None,
) -> HeatPrediction | None:
    """Forecast heat at each horizon from most-recent-first history.

    Returns None until ``config.window_size`` snapshots exist.
    """
    cfg = config or HeatPredictionConfig()
    if len(history) < cfg.window_size or not cfg.forecast_horizons:
        return None

    heats = [p.heat_score for p in history[: cfg.window_size]]
    factors = _factors(heats)
    predictions = [_predict_at(heats, h, factors) for h in cfg.forecast_horizons]
    return HeatPrediction(
        cluster_id=cluster_id,
        current_heat=heats[0],
        trajectory=_trajectory(heats[0], predictions, factors),
        confidence=_mean([p.confidence for p in predictions]),
        factors=factors,
        predictions=predictions,
    )


def update_heat_prediction(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    config: HeatPredictionConfig | None = None,
) -> HeatPrediction | None:
    cfg = config or HeatPredictionConfig()
    history = get_heat_history(conn, cluster_id=cluster_id, limit=cfg.window_size)
    prediction = predict_heat(cluster_id, history, cfg)
    if prediction is None:
        return None

    nearest = min(prediction.predictions, key=lambda p: p.hours_ahead)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE story_clusters
                SET predicted_heat = %s,
                    prediction_confidence = %s
                WHERE id = %s;
                """,
                (nearest.predicted_heat, nearest.confidence, cluster_id),
            )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "update_heat_prediction", exc, cluster_id=cluster_id)
    return prediction
