from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ClusterSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    topic: str
    topic_key: str | None = None
    category: str
    keywords: list[str] = Field(default_factory=list)
    heat_score: float
    article_count: int
    unique_title_count: int
    trend_direction: str
    urgency: str
    heat_velocity: float = 0.0
    composite_rank_score: float = 0.0
    lifecycle_stage: str | None = None
    is_anomaly: bool = False
    anomaly_type: str | None = None
    updated_at: datetime | None = None


class HotClustersResponse(BaseModel):
    results: list[ClusterSummary]


class ClusterArticleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    article_id: str
    title: str | None = None
    source: str | None = None
    url: str | None = None
    published_at: datetime | None = None
    added_at: datetime | None = None
    trend_direction: str


class ClusterDetail(ClusterSummary):
    summary: str | None = None
    sub_event_type: str | None = None
    first_seen: datetime | None = None
    created_at: datetime | None = None
    acceleration: float = 0.0
    predicted_heat: float | None = None
    prediction_confidence: float | None = None
    is_cross_category: bool = False
    parent_cluster_id: str | None = None
    entity_heat_score: float = 0.0
    source_authority_score: float = 1.0
    anomaly_score: float = 0.0
    peak_heat: float | None = None
    peak_time: datetime | None = None
    articles: list[ClusterArticleOut] = Field(default_factory=list)
    child_cluster_ids: list[str] = Field(default_factory=list)


class ClusterTitlesResponse(BaseModel):
    cluster_id: str
    titles: list[str]


class RelatedCluster(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_cluster_id: str
    target_cluster_id: str
    reference_type: str
    confidence: float
    created_at: datetime


class RelatedClustersResponse(BaseModel):
    cluster_id: str
    results: list[RelatedCluster]


class HeatHistoryPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    heat_score: float
    article_count: int
    unique_title_count: int
    velocity: float
    recorded_at: datetime


class HeatHistoryResponse(BaseModel):
    cluster_id: str
    points: list[HeatHistoryPointOut]


class HeatTrendResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cluster_id: str
    current_heat: float
    velocity: float
    acceleration: float
    trend: str
    predicted_trajectory: str
    confidence: float
    lifecycle_stage: str
    point_count: int
    peak_heat: float | None = None
    peak_time: datetime | None = None


class CompositeRankResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cluster_id: str
    category: str
    heat_score: float
    article_count: int
    heat_velocity: float
    entity_heat_score: float
    source_authority_score: float
    components: dict[str, float]
    composite_score: float


class AnomalyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cluster_id: str
    is_anomaly: bool
    anomaly_score: float
    anomaly_type: str | None = None
    z_score: float = 0.0
    severity: str | None = None
    detected_at: datetime


class TrendingEntity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_id: int
    entity_name: str
    entity_type: str
    total_heat: float
    cluster_count: int
    trending_direction: str


class TrendingEntitiesResponse(BaseModel):
    results: list[TrendingEntity]


class QualityMetricSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    average: float
    sample_count: int


class QualitySummaryResponse(BaseModel):
    hours: float
    metrics: dict[str, QualityMetricSummary]
