from __future__ import annotations

from typing import Any

import psycopg
from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse

from story_heat.api.deps import get_db
from story_heat.api.schemas import TrendingEntitiesResponse, TrendingEntity
from story_heat.cache import (
    cache_get_json,
    cache_key_trending_entities,
    cache_set_json,
    get_redis_client,
)
from story_heat.entity_graph import get_trending_entities
from story_heat.settings import get_settings

router = APIRouter()


@router.get("/entities/trending", response_model=TrendingEntitiesResponse)
def trending_entities(
    response: Response,
    limit: int = Query(20, ge=1, le=100),
    hours: float = Query(24, gt=0, le=24 * 30),
    conn: psycopg.Connection[Any] = Depends(get_db),
) -> TrendingEntitiesResponse:
    r = get_redis_client()
    cache_key = cache_key_trending_entities(hours=hours, limit=limit)
    if r:
        cached = cache_get_json(r, cache_key)
        if cached is not None:
            return JSONResponse(  # type: ignore[return-value]
                status_code=200,
                content=cached,
                headers={"X-Cache": "hit"},
            )
        response.headers["X-Cache"] = "miss"

    entities = get_trending_entities(conn, limit=limit, hours=hours)
    result = TrendingEntitiesResponse(
        results=[TrendingEntity.model_validate(e) for e in entities]
    )
    if r:
        cache_set_json(
            r,
            cache_key,
            result.model_dump(mode="json"),
            ttl_seconds=get_settings().hot_cluster_cache_ttl_seconds,
        )
    return result
