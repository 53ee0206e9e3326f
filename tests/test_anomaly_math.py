from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import pytest

from story_heat.heat_history import HeatHistoryPoint
from story_heat.ranking import (
    MAX_ANOMALY_SCORE,
    AnomalyType,
    Severity,
    evaluate_heat_anomaly,
    severity_for,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _history(heats: Sequence[float], velocities: Sequence[float]) -> list[HeatHistoryPoint]:
    """Most-recent-first points, newest at ``NOW``."""
    return [
        HeatHistoryPoint(
            id=len(heats) - i,
            cluster_id="c1",
            heat_score=h,
            article_count=1,
            unique_title_count=1,
            velocity=v,
            recorded_at=NOW - timedelta(minutes=10 * i),
        )
        for i, (h, v) in enumerate(zip(heats, velocities))
    ]


def _spike(n: int, *, base: float = 10.0, newest: float = 100.0) -> list[HeatHistoryPoint]:
    heats = [newest] + [base] * (n - 1)
    velocities = [newest - base] + [0.0] * (n - 1)
    return _history(heats, velocities)


def test_fewer_than_five_points_is_never_anomalous() -> None:
    detection = evaluate_heat_anomaly("c1", _spike(4), now_utc=NOW)
    assert detection.is_anomaly is False
    assert detection.anomaly_score == 0.0
    assert detection.anomaly_type is None
    assert detection.detected_at == NOW


def test_five_point_spike_sits_exactly_on_the_velocity_threshold() -> None:
    detection = evaluate_heat_anomaly("c1", _spike(5), now_utc=NOW)
    assert detection.z_score == pytest.approx(2.0)
    assert detection.is_anomaly is False


def test_six_point_spike_is_a_velocity_anomaly() -> None:
    detection = evaluate_heat_anomaly("c1", _spike(6), now_utc=NOW)
    assert detection.is_anomaly is True
    assert detection.anomaly_type is AnomalyType.velocity_anomaly
    assert detection.anomaly_score == pytest.approx(5**0.5)
    assert detection.severity is Severity.medium


def test_full_window_spike_and_drop() -> None:
    spike = evaluate_heat_anomaly("c1", _spike(24), now_utc=NOW)
    assert spike.is_anomaly is True
    assert spike.anomaly_type is AnomalyType.sudden_spike
    assert spike.z_score > 3.0
    assert spike.severity is Severity.critical

    drop = evaluate_heat_anomaly("c1", _spike(24, base=100.0, newest=10.0), now_utc=NOW)
    assert drop.is_anomaly is True
    assert drop.anomaly_type is AnomalyType.sudden_drop
    assert drop.z_score < -3.0


def test_flat_history_is_normal() -> None:
    detection = evaluate_heat_anomaly("c1", _history([42.0] * 10, [0.0] * 10), now_utc=NOW)
    assert detection.is_anomaly is False
    assert detection.z_score == 0.0
    assert detection.severity is None


def test_velocity_jump_over_flat_heat_gets_the_capped_score() -> None:
    detection = evaluate_heat_anomaly(
        "c1", _history([42.0] * 8, [5.0] + [0.0] * 7), now_utc=NOW
    )
    assert detection.z_score == 0.0
    assert detection.is_anomaly is True
    assert detection.anomaly_type is AnomalyType.velocity_anomaly
    assert detection.anomaly_score == MAX_ANOMALY_SCORE
    assert detection.severity is Severity.critical


def test_only_the_latest_window_counts() -> None:
    # An old spike beyond the 24-point window does not influence the newest point.
    history = _history([10.0] * 24 + [1000.0], [0.0] * 24 + [990.0])
    detection = evaluate_heat_anomaly("c1", history, now_utc=NOW)
    assert detection.is_anomaly is False


def test_severity_bands() -> None:
    assert severity_for(1.5) is Severity.low
    assert severity_for(-2.5) is Severity.medium
    assert severity_for(3.5) is Severity.high
    assert severity_for(4.0) is Severity.critical
