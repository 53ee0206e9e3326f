from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
import pytest

from story_heat.quality_metrics import (
    FeedbackSource,
    LabelType,
    MetricType,
    get_clustering_quality_summary,
    record_clustering_metric,
    record_label_quality,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.integration
def test_quality_summary_averages_recent_metrics(db_conn: psycopg.Connection[Any]) -> None:
    assert record_clustering_metric(
        db_conn, metric_type=MetricType.precision, value=0.8, sample_size=50, now_utc=NOW
    )
    assert record_clustering_metric(
        db_conn,
        metric_type="PRECISION",
        value=0.6,
        category="CRYPTO",
        notes="nightly",
        now_utc=NOW - timedelta(hours=1),
    )
    assert record_clustering_metric(
        db_conn, metric_type=MetricType.recall, value=0.9, now_utc=NOW - timedelta(hours=48)
    )

    summary = get_clustering_quality_summary(db_conn, hours=24, now_utc=NOW)
    assert set(summary) == {"PRECISION"}
    assert summary["PRECISION"].average == pytest.approx(0.7)
    assert summary["PRECISION"].sample_count == 2

    wide = get_clustering_quality_summary(db_conn, hours=72, now_utc=NOW)
    assert set(wide) == {"PRECISION", "RECALL"}


@pytest.mark.integration
def test_record_label_quality(db_conn: psycopg.Connection[Any]) -> None:
    assert record_label_quality(
        db_conn,
        article_id="a1",
        label_type=LabelType.category,
        original_label="STOCKS",
        corrected_label="CRYPTO",
        accuracy_score=0.0,
        feedback_source=FeedbackSource.user,
        now_utc=NOW,
    )
    with db_conn.cursor() as cur:
        cur.execute(
            "SELECT label_type, corrected_label, feedback_source FROM label_quality_tracking;"
        )
        assert cur.fetchall() == [("CATEGORY", "CRYPTO", "USER")]
