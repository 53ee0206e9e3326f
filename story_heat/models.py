"""Typed records shared across the heat engine."""
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from story_heat.errors import QueryFailure

DEFAULT_CATEGORY = "GENERAL"
KEYWORDS_DOC_VERSION = 1


class Importance(str, Enum):
    critical = "CRITICAL"
    high = "HIGH"
    medium = "MEDIUM"
    low = "LOW"


class TrendDirection(str, Enum):
    up = "UP"
    down = "DOWN"
    neutral = "NEUTRAL"


class LifecycleStage(str, Enum):
    emerging = "EMERGING"
    sustained = "SUSTAINED"
    decaying = "DECAYING"
    dead = "DEAD"


class EntityType(str, Enum):
    person = "PERSON"
    organization = "ORGANIZATION"
    location = "LOCATION"
    token = "TOKEN"
    protocol = "PROTOCOL"
    country = "COUNTRY"
    government_body = "GOVERNMENT_BODY"


class ReferenceType(str, Enum):
    soft_ref = "SOFT_REF"
    related = "RELATED"
    part_of = "PART_OF"
    causes = "CAUSES"


class RelationshipType(str, Enum):
    parent = "PARENT"
    child = "CHILD"
    merged_into = "MERGED_INTO"
    split_from = "SPLIT_FROM"


@dataclass(frozen=True)
class ArticleRecord:
    """A classified article as handed over by the ingestion pipeline."""

    id: str
    title: str
    category: str = DEFAULT_CATEGORY
    tags: tuple[str, ...] = ()
    sentiment: str | None = None
    importance: str | None = None
    published_at: datetime | None = None
    content: str | None = None


@dataclass(frozen=True)
class StoryCluster:
    id: str
    topic: str
    topic_key: str | None
    summary: str | None
    category: str
    keywords: list[str]
    heat_score: float
    article_count: int
    unique_title_count: int
    trend_direction: str
    urgency: str
    sub_event_type: str | None
    first_seen: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    heat_velocity: float = 0.0
    acceleration: float = 0.0
    predicted_heat: float | None = None
    prediction_confidence: float | None = None
    is_cross_category: bool = False
    parent_cluster_id: str | None = None
    entity_heat_score: float = 0.0
    source_authority_score: float = 1.0
    composite_rank_score: float = 0.0
    is_anomaly: bool = False
    anomaly_type: str | None = None
    anomaly_score: float = 0.0
    lifecycle_stage: str | None = None
    peak_heat: float | None = None
    peak_time: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> StoryCluster:
        return cls(
            id=row["id"],
            topic=row["topic"],
            topic_key=row.get("topic_key"),
            summary=row.get("summary"),
            category=row.get("category") or DEFAULT_CATEGORY,
            keywords=decode_keywords(row.get("keywords")),
            heat_score=float(row.get("heat_score") or 0.0),
            article_count=int(row.get("article_count") or 0),
            unique_title_count=int(row.get("unique_title_count") or 0),
            trend_direction=row.get("trend_direction") or TrendDirection.neutral.value,
            urgency=row.get("urgency") or Importance.medium.value,
            sub_event_type=row.get("sub_event_type"),
            first_seen=row.get("first_seen"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            heat_velocity=float(row.get("heat_velocity") or 0.0),
            acceleration=float(row.get("acceleration") or 0.0),
            predicted_heat=_opt_float(row.get("predicted_heat")),
            prediction_confidence=_opt_float(row.get("prediction_confidence")),
            is_cross_category=bool(row.get("is_cross_category")),
            parent_cluster_id=row.get("parent_cluster_id"),
            entity_heat_score=float(row.get("entity_heat_score") or 0.0),
            source_authority_score=_authority(row.get("source_authority_score")),
            composite_rank_score=float(row.get("composite_rank_score") or 0.0),
            is_anomaly=bool(row.get("is_anomaly")),
            anomaly_type=row.get("anomaly_type"),
            anomaly_score=float(row.get("anomaly_score") or 0.0),
            lifecycle_stage=row.get("lifecycle_stage"),
            peak_heat=_opt_float(row.get("peak_heat")),
            peak_time=row.get("peak_time"),
        )


@dataclass(frozen=True)
class ClusterArticle:
    article_id: str
    title: str | None
    source: str | None
    url: str | None
    published_at: datetime | None
    added_at: datetime | None
    trend_direction: str


@dataclass(frozen=True)
class ClusterDetails:
    cluster: StoryCluster
    articles: list[ClusterArticle] = field(default_factory=list)


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _authority(value: Any) -> float:
    if value is None:
        return 1.0
    return float(value)


def encode_keywords(keywords: Sequence[str] | None) -> dict[str, Any]:
    cleaned = [str(k).strip() for k in (keywords or []) if str(k).strip()]
    return {"version": KEYWORDS_DOC_VERSION, "keywords": cleaned}


def decode_keywords(raw: Any) -> list[str]:
    """Decode a stored keyword document.

    Accepts the versioned object form and, for rows written before it existed,
    a bare JSON array. Anything else is a corrupt field and raises QueryFailure.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise QueryFailure(f"keywords is not valid JSON: {exc}") from exc
    if isinstance(raw, list):
        return _keyword_list(raw)
    if isinstance(raw, dict):
        version = raw.get("version")
        if version != KEYWORDS_DOC_VERSION:
            raise QueryFailure(f"unsupported keywords document version: {version!r}")
        return _keyword_list(raw.get("keywords") or [])
    raise QueryFailure(f"unexpected keywords payload type: {type(raw).__name__}")


def _keyword_list(items: Any) -> list[str]:
    if not isinstance(items, list) or not all(isinstance(k, str) for k in items):
        raise QueryFailure("keywords must be a list of strings")
    return list(items)
