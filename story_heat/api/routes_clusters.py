from __future__ import annotations

from dataclasses import asdict
from typing import Any

import psycopg
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from story_heat.api.deps import get_db
from story_heat.api.schemas import (
    AnomalyResponse,
    ClusterArticleOut,
    ClusterDetail,
    ClusterSummary,
    ClusterTitlesResponse,
    CompositeRankResponse,
    HeatHistoryPointOut,
    HeatHistoryResponse,
    HeatTrendResponse,
    HotClustersResponse,
    RelatedCluster,
    RelatedClustersResponse,
)
from story_heat.cache import (
    cache_get_json,
    cache_key_hot_clusters,
    cache_set_json,
    get_redis_client,
)
from story_heat.cluster_store import (
    cluster_exists,
    get_cluster_details,
    get_cluster_sample_titles,
    get_hot_clusters,
)
from story_heat.entity_graph import get_child_clusters, get_related_clusters
from story_heat.heat_history import analyze_heat_trend, get_heat_history
from story_heat.ranking import calculate_composite_rank, detect_heat_anomalies
from story_heat.settings import get_settings

router = APIRouter()


def _require_cluster(conn: psycopg.Connection[Any], cluster_id: str) -> None:
    if not cluster_exists(conn, cluster_id=cluster_id):
        raise HTTPException(status_code=404, detail="Not found")


@router.get("/clusters/hot", response_model=HotClustersResponse)
def hot_clusters(
    response: Response,
    limit: int = Query(20, ge=1, le=100),
    since_hours: float = Query(24, gt=0, le=24 * 30),
    category: str | None = None,
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> HotClustersResponse:
    r = get_redis_client()
    cache_key = cache_key_hot_clusters(category=category, since_hours=since_hours, limit=limit)
    if r:
        cached = cache_get_json(r, cache_key)
        if cached is not None:
            return JSONResponse(  # type: ignore[return-value]
                status_code=200,
                content=cached,
                headers={"X-Cache": "hit"},
            )
        response.headers["X-Cache"] = "miss"

    clusters = get_hot_clusters(conn, limit=limit, since_hours=since_hours, category=category)
    result = HotClustersResponse(results=[ClusterSummary.model_validate(c) for c in clusters])

    if r:
        cache_set_json(
            r,
            cache_key,
            result.model_dump(mode="json"),
            ttl_seconds=get_settings().hot_cluster_cache_ttl_seconds,
        )
    return result


@router.get("/clusters/{id}", response_model=ClusterDetail)
def cluster_detail(
    id: str,  # noqa: A002
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> ClusterDetail:
    details = get_cluster_details(conn, cluster_id=id)
    if details is None:
        raise HTTPException(status_code=404, detail="Not found")
    return ClusterDetail(
        **asdict(details.cluster),
        articles=[ClusterArticleOut.model_validate(a) for a in details.articles],
        child_cluster_ids=get_child_clusters(conn, parent_cluster_id=id),
    )


@router.get("/clusters/{id}/titles", response_model=ClusterTitlesResponse)
def cluster_titles(
    id: str,  # noqa: A002
    limit: int = Query(5, ge=1, le=20),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> ClusterTitlesResponse:
    _require_cluster(conn, id)
    return ClusterTitlesResponse(
        cluster_id=id, titles=get_cluster_sample_titles(conn, cluster_id=id, limit=limit)
    )


@router.get("/clusters/{id}/related", response_model=RelatedClustersResponse)
def related_clusters(
    id: str,  # noqa: A002
    limit: int = Query(10, ge=1, le=50),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> RelatedClustersResponse:
    _require_cluster(conn, id)
    refs = get_related_clusters(conn, cluster_id=id, limit=limit)
    return RelatedClustersResponse(
        cluster_id=id, results=[RelatedCluster.model_validate(ref) for ref in refs]
    )


@router.get("/clusters/{id}/heat_history", response_model=HeatHistoryResponse)
def heat_history(
    id: str,  # noqa: A002
    limit: int = Query(100, ge=1, le=500),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> HeatHistoryResponse:
    _require_cluster(conn, id)
    points = get_heat_history(conn, cluster_id=id, limit=limit)
    return HeatHistoryResponse(
        cluster_id=id, points=[HeatHistoryPointOut.model_validate(p) for p in points]
    )


@router.get("/clusters/{id}/heat_trend", response_model=HeatTrendResponse)
def heat_trend(
    id: str,  # noqa: A002
    window_hours: float = Query(6, gt=0, le=24 * 7),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> HeatTrendResponse:
    _require_cluster(conn, id)
    analysis = analyze_heat_trend(conn, cluster_id=id, window_hours=window_hours)
    if analysis.error is not None:
        raise HTTPException(status_code=503, detail=analysis.error.value)
    return HeatTrendResponse(
        cluster_id=analysis.cluster_id,
        current_heat=analysis.current_heat,
        velocity=analysis.velocity,
        acceleration=analysis.acceleration,
        trend=analysis.trend.value,
        predicted_trajectory=analysis.predicted_trajectory.value,
        confidence=analysis.confidence,
        lifecycle_stage=analysis.lifecycle_stage.value,
        point_count=analysis.point_count,
        peak_heat=analysis.peak_heat,
        peak_time=analysis.peak_time,
    )


@router.post("/clusters/{id}/rank", response_model=CompositeRankResponse)
def rank_cluster(
    id: str,  # noqa: A002
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> CompositeRankResponse:
    ranking = calculate_composite_rank(conn, cluster_id=id)
    if ranking is None:
        raise HTTPException(status_code=404, detail="Not found")
    return CompositeRankResponse.model_validate(ranking)


@router.post("/clusters/{id}/anomalies", response_model=AnomalyResponse)
def cluster_anomalies(
    id: str,  # noqa: A002
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> AnomalyResponse:
    _require_cluster(conn, id)
    detection = detect_heat_anomalies(conn, cluster_id=id)
    if detection.error is not None:
        raise HTTPException(status_code=503, detail=detection.error.value)
    return AnomalyResponse(
        cluster_id=detection.cluster_id,
        is_anomaly=detection.is_anomaly,
        anomaly_score=detection.anomaly_score,
        anomaly_type=detection.anomaly_type.value if detection.anomaly_type else None,
        z_score=detection.z_score,
        severity=detection.severity.value if detection.severity else None,
        detected_at=detection.detected_at,
    )
