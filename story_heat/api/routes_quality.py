from __future__ import annotations

from typing import Any

import psycopg
from fastapi import APIRouter, Depends, Query

from story_heat.api.deps import get_db
from story_heat.api.schemas import QualityMetricSummary, QualitySummaryResponse
from story_heat.quality_metrics import get_clustering_quality_summary

router = APIRouter()


@router.get("/quality/summary", response_model=QualitySummaryResponse)
def quality_summary(
    hours: float = Query(24, gt=0, le=24 * 90),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> QualitySummaryResponse:
    summary = get_clustering_quality_summary(conn, hours=hours)
    return QualitySummaryResponse(
        hours=hours,
        metrics={k: QualityMetricSummary.model_validate(v) for k, v in summary.items()},
    )
