"""Per-article ingest flow.

resolve/create cluster -> score heat -> attach (dedup penalty) -> snapshot
heat history -> register entities (extracted from the text unless supplied),
attribute the applied heat to them and cross-reference clusters sharing them.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import psycopg

from story_heat import metrics
from story_heat.cluster_store import (
    AttachResult,
    ClusterUpsert,
    add_article_to_cluster,
    get_cluster_by_id,
    get_cluster_id_by_topic_key,
    upsert_cluster,
)
from story_heat.decay_config import (
    DecayConfigProvider,
    HeatDecayConfig,
    default_decay_config,
    load_decay_config,
)
from story_heat.entity_extraction import extract_entities
from story_heat.entity_graph import (
    find_or_create_entity,
    link_clusters_sharing_entities,
    link_entity_to_article,
    update_entity_cluster_heat,
)
from story_heat.errors import DEGRADABLE_ERRORS, ErrorKind, log_degraded
from story_heat.heat_history import HeatHistoryPoint, record_heat_history
from story_heat.heat_scoring import DEFAULT_BASE_HEAT, calculate_heat
from story_heat.models import ArticleRecord, EntityType, Importance, StoryCluster
from story_heat.topic_keys import title_fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityMention:
    name: str
    entity_type: EntityType | str
    confidence: float = 1.0


@dataclass(frozen=True)
class IngestResult:
    article_id: str
    cluster_id: str | None
    created_cluster: bool = False
    heat_delta: float = 0.0
    attach: AttachResult | None = None
    history_point: HeatHistoryPoint | None = None
    entity_ids: list[int] = field(default_factory=list)
    related_cluster_ids: list[str] = field(default_factory=list)
    error: ErrorKind | None = None


def _decay_config_for(
    conn: psycopg.Connection[Any],
    category: str,
    provider: DecayConfigProvider | None,
) -> HeatDecayConfig:
    if provider is not None:
        return provider.get(category)
    try:
        return load_decay_config(conn, category=category.upper())
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_decay_config", exc, category=category)
        return default_decay_config(category)


def _extracted_mentions(article: ArticleRecord) -> list[EntityMention]:
    return [
        EntityMention(e.name, e.entity_type, e.confidence)
        for e in extract_entities(article.title, article.content)
    ]


def _urgency(importance: str | None) -> str | None:
    level = (importance or "").upper()
    return level if level in {i.value for i in Importance} else None


def _resolve_cluster(
    conn: psycopg.Connection[Any],
    article: ArticleRecord,
    *,
    cluster_id: str | None,
    topic: str | None,
    now: datetime,
) -> tuple[StoryCluster | None, bool]:
    if cluster_id:
        return get_cluster_by_id(conn, cluster_id=cluster_id), False
    if not topic:
        return None, False

    existing_id = get_cluster_id_by_topic_key(conn, topic=topic)
    if existing_id:
        return get_cluster_by_id(conn, cluster_id=existing_id), False

    created = upsert_cluster(
        conn,
        ClusterUpsert(
            id=str(uuid4()),
            topic=topic,
            category=article.category,
            keywords=list(article.tags),
            urgency=_urgency(article.importance),
        ),
        now_utc=now,
    )
    if created is not None:
        metrics.record_cluster_created(created.category)
        logger.info(
            "Created cluster %s for topic %r",
            created.id,
            topic,
            extra={"cluster_id": created.id, "category": created.category},
        )
    return created, created is not None


def ingest_article(
    conn: psycopg.Connection[Any],
    *,
    article: ArticleRecord,
    cluster_id: str | None = None,
    topic: str | None = None,
    entities: Sequence[EntityMention] | None = None,
    decay_provider: DecayConfigProvider | None = None,
    base_heat: float = DEFAULT_BASE_HEAT,
    now_utc: datetime | None = None,
) -> IngestResult:
    """Attach ``article`` to a resolved cluster, or to a new one for ``topic``.

    Without explicit ``entities`` the mentions are extracted from the article's
    title and content.
    """
    now = now_utc or datetime.now(timezone.utc)
    cluster, created = _resolve_cluster(
        conn, article, cluster_id=cluster_id, topic=topic, now=now
    )
    if cluster is None:
        return IngestResult(
            article_id=article.id, cluster_id=cluster_id, error=ErrorKind.not_found
        )

    config = _decay_config_for(conn, cluster.category or article.category, decay_provider)
    heat_delta = calculate_heat(
        article, cluster.updated_at, config=config, base_heat=base_heat, now_utc=now
    )
    attach = add_article_to_cluster(
        conn,
        cluster_id=cluster.id,
        article_id=article.id,
        title_fingerprint=title_fingerprint(article.title),
        heat_delta=heat_delta,
        now_utc=now,
    )
    if attach.error is not None:
        return IngestResult(
            article_id=article.id,
            cluster_id=cluster.id,
            created_cluster=created,
            heat_delta=heat_delta,
            attach=attach,
            error=attach.error,
        )
    metrics.record_article_attached(
        was_new=attach.was_new, duplicate_index=attach.duplicate_index
    )

    history_point = None
    entity_ids: list[int] = []
    related: list[str] = []
    if attach.was_new:
        refreshed = get_cluster_by_id(conn, cluster_id=cluster.id) or cluster
        history_point = record_heat_history(
            conn,
            cluster_id=cluster.id,
            heat_score=refreshed.heat_score,
            article_count=refreshed.article_count,
            unique_title_count=refreshed.unique_title_count,
            now_utc=now,
        )
        mentions = entities if entities is not None else _extracted_mentions(article)
        for mention in mentions:
            entity_id = find_or_create_entity(
                conn, name=mention.name, entity_type=mention.entity_type, now_utc=now
            )
            if entity_id is None:
                continue
            link_entity_to_article(
                conn,
                entity_id=entity_id,
                article_id=article.id,
                confidence=mention.confidence,
                now_utc=now,
            )
            update_entity_cluster_heat(
                conn,
                entity_id=entity_id,
                cluster_id=cluster.id,
                heat_contribution=attach.heat_added,
                now_utc=now,
            )
            entity_ids.append(entity_id)
        if entity_ids:
            related = link_clusters_sharing_entities(
                conn, cluster_id=cluster.id, entity_ids=entity_ids, now_utc=now
            )

    return IngestResult(
        article_id=article.id,
        cluster_id=cluster.id,
        created_cluster=created,
        heat_delta=heat_delta,
        attach=attach,
        history_point=history_point,
        entity_ids=entity_ids,
        related_cluster_ids=related,
    )
