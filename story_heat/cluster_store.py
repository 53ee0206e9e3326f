"""Durable story clusters, article links and title-fingerprint bookkeeping.

``article_count`` and ``unique_title_count`` are always recomputed from the
link and fingerprint tables inside the writing transaction, never incremented
in place, so retries and concurrent writers cannot drift them.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from story_heat import metrics
from story_heat.errors import DEGRADABLE_ERRORS, ErrorKind, log_degraded
from story_heat.heat_scoring import penalty_for_duplicate_index
from story_heat.models import (
    ClusterArticle,
    ClusterDetails,
    StoryCluster,
    TrendDirection,
    encode_keywords,
)
from story_heat.topic_keys import normalize_topic_key

logger = logging.getLogger(__name__)

# Heat is only bumped when the duplicate penalty is still meaningful.
MIN_EFFECTIVE_PENALTY = 0.01
MAX_SAMPLE_TITLES = 20


@dataclass(frozen=True)
class ClusterUpsert:
    """Partial cluster write; ``None`` fields keep their stored value."""

    id: str
    topic: str
    summary: str | None = None
    category: str | None = None
    keywords: Sequence[str] | None = None
    heat_score: float | None = None
    trend_direction: str | None = None
    urgency: str | None = None
    sub_event_type: str | None = None


@dataclass(frozen=True)
class AttachResult:
    was_new: bool
    duplicate_index: int
    penalty_multiplier: float
    heat_added: float = 0.0
    error: ErrorKind | None = None


@dataclass(frozen=True)
class MergeResult:
    moved: int
    deleted: bool
    error: ErrorKind | None = None


def upsert_cluster(
    conn: psycopg.Connection[Any],
    cluster: ClusterUpsert,
    *,
    now_utc: datetime | None = None,
) -> StoryCluster | None:
    now = now_utc or datetime.now(timezone.utc)
    params = {
        "id": cluster.id,
        "topic": cluster.topic,
        "topic_key": normalize_topic_key(cluster.topic),
        "summary": cluster.summary,
        "category": cluster.category.upper() if cluster.category else None,
        "keywords": (
            Jsonb(encode_keywords(cluster.keywords)) if cluster.keywords is not None else None
        ),
        "heat_score": cluster.heat_score,
        "trend_direction": cluster.trend_direction,
        "urgency": cluster.urgency,
        "sub_event_type": cluster.sub_event_type,
        "now": now,
    }
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                INSERT INTO story_clusters(
                  id, topic, topic_key, summary, category, keywords, heat_score,
                  article_count, unique_title_count, trend_direction, urgency,
                  sub_event_type, first_seen, created_at, updated_at
                )
                VALUES (
                  %(id)s, %(topic)s, %(topic_key)s, %(summary)s,
                  COALESCE(%(category)s, 'GENERAL'),
                  COALESCE(%(keywords)s, '{"version": 1, "keywords": []}'::jsonb),
                  COALESCE(%(heat_score)s, 0),
                  0, 0,
                  COALESCE(%(trend_direction)s, 'NEUTRAL'),
                  COALESCE(%(urgency)s, 'MEDIUM'),
                  %(sub_event_type)s, %(now)s, %(now)s, %(now)s
                )
                ON CONFLICT (id) DO UPDATE SET
                  topic = EXCLUDED.topic,
                  topic_key = EXCLUDED.topic_key,
                  summary = COALESCE(%(summary)s, story_clusters.summary),
                  category = COALESCE(%(category)s, story_clusters.category),
                  keywords = COALESCE(%(keywords)s, story_clusters.keywords),
                  heat_score = COALESCE(%(heat_score)s, story_clusters.heat_score),
                  trend_direction = COALESCE(%(trend_direction)s, story_clusters.trend_direction),
                  urgency = COALESCE(%(urgency)s, story_clusters.urgency),
                  sub_event_type = COALESCE(%(sub_event_type)s, story_clusters.sub_event_type),
                  updated_at = %(now)s
                RETURNING *;
                """,
                params,
            )
            row = cur.fetchone()
        return StoryCluster.from_row(row) if row else None
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "upsert_cluster", exc, cluster_id=cluster.id)
        return None


def get_cluster_id_by_topic_key(conn: psycopg.Connection[Any], *, topic: str) -> str | None:
    key = normalize_topic_key(topic)
    if not key:
        return None
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id
                FROM story_clusters
                WHERE topic_key = %s
                ORDER BY updated_at DESC
                LIMIT 1;
                """,
                (key,),
            )
            row = cur.fetchone()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_cluster_id_by_topic_key", exc, topic_key=key)
        return None
    return str(row["id"]) if row else None


def add_article_to_cluster(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    article_id: str,
    title_fingerprint: str | None,
    heat_delta: float = 0.0,
    trend_direction: str | None = None,
    now_utc: datetime | None = None,
) -> AttachResult:
    """Link an article and apply its (duplicate-penalised) heat in one transaction.

    Re-attaching the same article is a no-op for links, fingerprints and heat.
    Any failure rolls the whole unit back and is reported as a no-effect result
    carrying the error kind.
    """
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT id FROM story_clusters WHERE id = %s FOR UPDATE;",
                    (cluster_id,),
                )
                if cur.fetchone() is None:
                    return AttachResult(False, 0, 1.0, error=ErrorKind.not_found)

                cur.execute(
                    """
                    INSERT INTO cluster_articles(cluster_id, article_id, added_at, trend_direction)
                    VALUES (%s,%s,%s,%s)
                    ON CONFLICT (cluster_id, article_id) DO NOTHING;
                    """,
                    (cluster_id, article_id, now, trend_direction or TrendDirection.neutral.value),
                )
                was_new = cur.rowcount == 1

                duplicate_index = 0
                penalty = 1.0
                if was_new and title_fingerprint:
                    cur.execute(
                        """
                        INSERT INTO cluster_title_fingerprints(
                          cluster_id, title_fingerprint, count, first_seen
                        )
                        VALUES (%s,%s,1,%s)
                        ON CONFLICT (cluster_id, title_fingerprint) DO UPDATE SET
                          count = cluster_title_fingerprints.count + 1
                        RETURNING count;
                        """,
                        (cluster_id, title_fingerprint, now),
                    )
                    fp_row = cur.fetchone()
                    duplicate_index = int(fp_row["count"]) - 1 if fp_row else 0
                    penalty = penalty_for_duplicate_index(duplicate_index)

                heat_added = 0.0
                if was_new and penalty > MIN_EFFECTIVE_PENALTY:
                    heat_added = heat_delta * penalty

                cur.execute(
                    """
                    UPDATE story_clusters
                    SET article_count = (
                          SELECT count(*) FROM cluster_articles WHERE cluster_id = %(id)s
                        ),
                        unique_title_count = (
                          SELECT count(*) FROM cluster_title_fingerprints WHERE cluster_id = %(id)s
                        ),
                        heat_score = heat_score + %(heat)s,
                        updated_at = %(now)s
                    WHERE id = %(id)s;
                    """,
                    {"id": cluster_id, "heat": heat_added, "now": now},
                )
    except DEGRADABLE_ERRORS as exc:
        kind = log_degraded(
            logger, "add_article_to_cluster", exc, cluster_id=cluster_id, article_id=article_id
        )
        return AttachResult(False, 0, 1.0, error=kind)

    return AttachResult(
        was_new=was_new,
        duplicate_index=duplicate_index,
        penalty_multiplier=penalty,
        heat_added=heat_added,
    )


def get_hot_clusters(
    conn: psycopg.Connection[Any],
    *,
    limit: int = 20,
    since_hours: float = 24,
    category: str | None = None,
    now_utc: datetime | None = None,
) -> list[StoryCluster]:
    now = now_utc or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=since_hours)
    where = ["updated_at > %s"]
    params: list[Any] = [cutoff]
    if category and category.upper() != "ALL":
        where.append("category = %s")
        params.append(category.upper())
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                SELECT *
                FROM story_clusters
                WHERE {' AND '.join(where)}
                ORDER BY heat_score DESC, id ASC
                LIMIT %s;
                """,
                (*params, limit),
            )
            rows = cur.fetchall()
        return [StoryCluster.from_row(r) for r in rows]
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_hot_clusters", exc, category=category)
        return []


def _fetch_cluster(cur: psycopg.Cursor[Any], cluster_id: str) -> StoryCluster | None:
    cur.execute("SELECT * FROM story_clusters WHERE id = %s;", (cluster_id,))
    row = cur.fetchone()
    return StoryCluster.from_row(row) if row else None


def get_cluster_by_id(conn: psycopg.Connection[Any], *, cluster_id: str) -> StoryCluster | None:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            return _fetch_cluster(cur, cluster_id)
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_cluster_by_id", exc, cluster_id=cluster_id)
        return None


def get_cluster_details(conn: psycopg.Connection[Any], *, cluster_id: str) -> ClusterDetails | None:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cluster = _fetch_cluster(cur, cluster_id)
            if cluster is None:
                return None
            cur.execute(
                """
                SELECT ca.article_id, n.title, n.source, n.url, n.published_at,
                       ca.added_at, ca.trend_direction
                FROM cluster_articles ca
                LEFT JOIN news_articles n ON n.id = ca.article_id
                WHERE ca.cluster_id = %s
                ORDER BY coalesce(n.published_at, ca.added_at) DESC, ca.article_id ASC;
                """,
                (cluster_id,),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_cluster_details", exc, cluster_id=cluster_id)
        return None

    articles = [
        ClusterArticle(
            article_id=r["article_id"],
            title=r["title"],
            source=r["source"],
            url=r["url"],
            published_at=r["published_at"],
            added_at=r["added_at"],
            trend_direction=r["trend_direction"],
        )
        for r in rows
    ]
    return ClusterDetails(cluster=cluster, articles=articles)


def get_cluster_sample_titles(
    conn: psycopg.Connection[Any], *, cluster_id: str, limit: int = 5
) -> list[str]:
    limit = max(1, min(int(limit), MAX_SAMPLE_TITLES))
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT n.title
                FROM cluster_articles ca
                JOIN news_articles n ON n.id = ca.article_id
                WHERE ca.cluster_id = %s
                ORDER BY coalesce(n.published_at, n.created_at) DESC
                LIMIT %s;
                """,
                (cluster_id, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_cluster_sample_titles", exc, cluster_id=cluster_id)
        return []
    return [r["title"] for r in rows if r["title"]]


def merge_clusters(
    conn: psycopg.Connection[Any],
    *,
    target_id: str,
    source_id: str,
    now_utc: datetime | None = None,
) -> MergeResult:
    """Fold ``source_id`` into ``target_id`` and delete the source.

    Links, fingerprint counts and entity heat links move to the target
    (duplicates collapse), the source's heat is added to the target's, and the
    target's counters are recomputed. Missing or equal ids are a no-op.
    """
    if not target_id or not source_id or target_id == source_id:
        return MergeResult(moved=0, deleted=False)

    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                # Lock in id order so two opposite merges cannot deadlock.
                cur.execute(
                    """
                    SELECT id, heat_score
                    FROM story_clusters
                    WHERE id = ANY(%s)
                    ORDER BY id
                    FOR UPDATE;
                    """,
                    ([target_id, source_id],),
                )
                locked = {r["id"]: r for r in cur.fetchall()}
                if source_id not in locked or target_id not in locked:
                    return MergeResult(moved=0, deleted=False, error=ErrorKind.not_found)
                source_heat = float(locked[source_id]["heat_score"] or 0.0)

                cur.execute(
                    """
                    INSERT INTO cluster_articles(cluster_id, article_id, added_at, trend_direction)
                    SELECT %s, article_id, %s, trend_direction
                    FROM cluster_articles
                    WHERE cluster_id = %s
                    ON CONFLICT (cluster_id, article_id) DO NOTHING;
                    """,
                    (target_id, now, source_id),
                )
                moved = max(cur.rowcount, 0)

                cur.execute(
                    """
                    INSERT INTO cluster_title_fingerprints(
                      cluster_id, title_fingerprint, count, first_seen
                    )
                    SELECT %s, title_fingerprint, count, first_seen
                    FROM cluster_title_fingerprints
                    WHERE cluster_id = %s
                    ON CONFLICT (cluster_id, title_fingerprint) DO UPDATE SET
                      count = cluster_title_fingerprints.count + EXCLUDED.count,
                      first_seen = LEAST(cluster_title_fingerprints.first_seen, EXCLUDED.first_seen);
                    """,
                    (target_id, source_id),
                )

                cur.execute(
                    """
                    INSERT INTO entity_cluster_links(
                      entity_id, cluster_id, article_count, heat_contribution,
                      first_linked, last_linked
                    )
                    SELECT entity_id, %s, article_count, heat_contribution, first_linked, last_linked
                    FROM entity_cluster_links
                    WHERE cluster_id = %s
                    ON CONFLICT (entity_id, cluster_id) DO UPDATE SET
                      article_count = entity_cluster_links.article_count + EXCLUDED.article_count,
                      heat_contribution =
                        entity_cluster_links.heat_contribution + EXCLUDED.heat_contribution,
                      first_linked = LEAST(entity_cluster_links.first_linked, EXCLUDED.first_linked),
                      last_linked = GREATEST(entity_cluster_links.last_linked, EXCLUDED.last_linked);
                    """,
                    (target_id, source_id),
                )

                cur.execute("DELETE FROM story_clusters WHERE id = %s;", (source_id,))
                deleted = cur.rowcount > 0

                cur.execute(
                    """
                    UPDATE story_clusters
                    SET article_count = (
                          SELECT count(*) FROM cluster_articles WHERE cluster_id = %(id)s
                        ),
                        unique_title_count = (
                          SELECT count(*) FROM cluster_title_fingerprints WHERE cluster_id = %(id)s
                        ),
                        heat_score = heat_score + %(heat)s,
                        updated_at = %(now)s
                    WHERE id = %(id)s;
                    """,
                    {"id": target_id, "heat": source_heat, "now": now},
                )
    except DEGRADABLE_ERRORS as exc:
        kind = log_degraded(
            logger, "merge_clusters", exc, target_cluster_id=target_id, source_cluster_id=source_id
        )
        return MergeResult(moved=0, deleted=False, error=kind)

    if deleted:
        metrics.record_cluster_merged()
    logger.info(
        "Merged cluster %s into %s (%d articles moved)",
        source_id,
        target_id,
        moved,
        extra={"target_cluster_id": target_id, "source_cluster_id": source_id},
    )
    return MergeResult(moved=moved, deleted=deleted)


def cluster_exists(conn: psycopg.Connection[Any], *, cluster_id: str) -> bool:
    if not cluster_id:
        return False
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute("SELECT 1 AS ok FROM story_clusters WHERE id = %s LIMIT 1;", (cluster_id,))
            return cur.fetchone() is not None
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "cluster_exists", exc, cluster_id=cluster_id)
        return False


def find_cluster_ids_by_article_ids(
    conn: psycopg.Connection[Any], *, article_ids: Sequence[str]
) -> dict[str, str]:
    ids = list(dict.fromkeys(a for a in article_ids if a))
    if not ids:
        return {}
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            # Most recently attached link wins when an article sits in several clusters.
            cur.execute(
                """
                SELECT DISTINCT ON (article_id) article_id, cluster_id
                FROM cluster_articles
                WHERE article_id = ANY(%s)
                ORDER BY article_id, added_at DESC;
                """,
                (ids,),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "find_cluster_ids_by_article_ids", exc, article_count=len(ids))
        return {}
    return {r["article_id"]: r["cluster_id"] for r in rows}
