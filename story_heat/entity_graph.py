"""Named-entity registry, entity heat attribution and the cluster reference graph."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
from psycopg.rows import dict_row

from story_heat.errors import DEGRADABLE_ERRORS, log_degraded
from story_heat.models import EntityType, ReferenceType, RelationshipType, TrendDirection

logger = logging.getLogger(__name__)

# An entity linked to more than this many active clusters counts as trending up.
TRENDING_LINK_THRESHOLD = 5

# Clusters that mention the same entity are cross-referenced at this confidence.
SHARED_ENTITY_CONFIDENCE = 0.6
SHARED_ENTITY_WINDOW_HOURS = 24.0
MAX_SHARED_ENTITY_LINKS = 20


@dataclass(frozen=True)
class EntityHeat:
    entity_id: int
    entity_name: str
    entity_type: str
    total_heat: float
    cluster_count: int
    trending_direction: str


@dataclass(frozen=True)
class ClusterEntity:
    entity_id: int
    entity_name: str
    entity_type: str
    article_count: int
    heat_contribution: float


@dataclass(frozen=True)
class ClusterCrossRef:
    id: int
    source_cluster_id: str
    target_cluster_id: str
    reference_type: str
    confidence: float
    created_at: datetime


def normalize_entity_name(name: str) -> str:
    return " ".join(name.split()).lower()


def find_or_create_entity(
    conn: psycopg.Connection[Any],
    *,
    name: str,
    entity_type: EntityType | str,
    now_utc: datetime | None = None,
) -> int | None:
    """Return the entity id for ``name``, registering it on first sight.

    A re-observation bumps ``occurrence_count`` and ``last_seen``.
    """
    normalized = normalize_entity_name(name)
    if not normalized:
        return None
    now = now_utc or datetime.now(timezone.utc)
    etype = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type).upper()
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                INSERT INTO named_entities(
                  entity_name, entity_type, normalized_name, first_seen, last_seen, occurrence_count
                )
                VALUES (%s,%s,%s,%s,%s,1)
                ON CONFLICT (normalized_name) DO UPDATE SET
                  last_seen = EXCLUDED.last_seen,
                  occurrence_count = named_entities.occurrence_count + 1
                RETURNING id;
                """,
                (name.strip(), etype, normalized, now, now),
            )
            row = cur.fetchone()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "find_or_create_entity", exc, entity_name=normalized)
        return None
    return int(row["id"]) if row else None


def link_entity_to_article(
    conn: psycopg.Connection[Any],
    *,
    entity_id: int,
    article_id: str,
    confidence: float = 1.0,
    now_utc: datetime | None = None,
) -> bool:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO entity_article_links(entity_id, article_id, confidence, extracted_at)
                VALUES (%s,%s,%s,%s)
                ON CONFLICT (entity_id, article_id) DO NOTHING;
                """,
                (entity_id, article_id, confidence, now),
            )
            return cur.rowcount == 1
    except DEGRADABLE_ERRORS as exc:
        log_degraded(
            logger, "link_entity_to_article", exc, entity_id=entity_id, article_id=article_id
        )
        return False


def update_entity_cluster_heat(
    conn: psycopg.Connection[Any],
    *,
    entity_id: int,
    cluster_id: str,
    heat_contribution: float,
    now_utc: datetime | None = None,
) -> bool:
    now = now_utc or datetime.now(timezone.utc)
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO entity_cluster_links(
                      entity_id, cluster_id, article_count, heat_contribution,
                      first_linked, last_linked
                    )
                    VALUES (%s,%s,1,%s,%s,%s)
                    ON CONFLICT (entity_id, cluster_id) DO UPDATE SET
                      article_count = entity_cluster_links.article_count + 1,
                      heat_contribution =
                        entity_cluster_links.heat_contribution + EXCLUDED.heat_contribution,
                      last_linked = EXCLUDED.last_linked;
                    """,
                    (entity_id, cluster_id, heat_contribution, now, now),
                )
                cur.execute(
                    """
                    UPDATE story_clusters
                    SET entity_heat_score = (
                      SELECT coalesce(sum(heat_contribution), 0)
                      FROM entity_cluster_links
                      WHERE cluster_id = %s
                    )
                    WHERE id = %s;
                    """,
                    (cluster_id, cluster_id),
                )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(
            logger, "update_entity_cluster_heat", exc, entity_id=entity_id, cluster_id=cluster_id
        )
        return False
    return True


def get_trending_entities(
    conn: psycopg.Connection[Any],
    *,
    limit: int = 20,
    hours: float = 24,
    now_utc: datetime | None = None,
) -> list[EntityHeat]:
    now = now_utc or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=hours)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT
                  e.id AS entity_id,
                  e.entity_name,
                  e.entity_type,
                  sum(ecl.heat_contribution) AS total_heat,
                  count(DISTINCT ecl.cluster_id) AS cluster_count,
                  count(*) AS link_count
                FROM named_entities e
                JOIN entity_cluster_links ecl ON ecl.entity_id = e.id
                JOIN story_clusters sc ON sc.id = ecl.cluster_id
                WHERE sc.updated_at > %s
                GROUP BY e.id, e.entity_name, e.entity_type
                ORDER BY total_heat DESC, e.id ASC
                LIMIT %s;
                """,
                (cutoff, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_trending_entities", exc, hours=hours)
        return []

    return [
        EntityHeat(
            entity_id=int(r["entity_id"]),
            entity_name=r["entity_name"],
            entity_type=r["entity_type"],
            total_heat=float(r["total_heat"] or 0.0),
            cluster_count=int(r["cluster_count"]),
            trending_direction=(
                TrendDirection.up.value
                if int(r["link_count"]) > TRENDING_LINK_THRESHOLD
                else TrendDirection.neutral.value
            ),
        )
        for r in rows
    ]


def get_cluster_entities(
    conn: psycopg.Connection[Any], *, cluster_id: str, limit: int = 20
) -> list[ClusterEntity]:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT e.id AS entity_id, e.entity_name, e.entity_type,
                       ecl.article_count, ecl.heat_contribution
                FROM entity_cluster_links ecl
                JOIN named_entities e ON e.id = ecl.entity_id
                WHERE ecl.cluster_id = %s
                ORDER BY ecl.heat_contribution DESC, e.id ASC
                LIMIT %s;
                """,
                (cluster_id, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_cluster_entities", exc, cluster_id=cluster_id)
        return []
    return [
        ClusterEntity(
            entity_id=int(r["entity_id"]),
            entity_name=r["entity_name"],
            entity_type=r["entity_type"],
            article_count=int(r["article_count"]),
            heat_contribution=float(r["heat_contribution"]),
        )
        for r in rows
    ]


def create_cross_ref(
    conn: psycopg.Connection[Any],
    *,
    source_cluster_id: str,
    target_cluster_id: str,
    reference_type: ReferenceType | str = ReferenceType.related,
    confidence: float = 0.5,
    now_utc: datetime | None = None,
) -> bool:
    """Record a soft link between two clusters and flag both as cross-category.

    Self-references are rejected without touching the store.
    """
    if not source_cluster_id or source_cluster_id == target_cluster_id:
        return False
    now = now_utc or datetime.now(timezone.utc)
    rtype = reference_type.value if isinstance(reference_type, ReferenceType) else reference_type
    confidence = max(0.0, min(1.0, float(confidence)))
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO cluster_cross_refs(
                      source_cluster_id, target_cluster_id, reference_type, confidence, created_at
                    )
                    VALUES (%s,%s,%s,%s,%s)
                    ON CONFLICT (source_cluster_id, target_cluster_id) DO NOTHING;
                    """,
                    (source_cluster_id, target_cluster_id, rtype, confidence, now),
                )
                cur.execute(
                    "UPDATE story_clusters SET is_cross_category = TRUE WHERE id = ANY(%s);",
                    ([source_cluster_id, target_cluster_id],),
                )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(
            logger,
            "create_cross_ref",
            exc,
            source_cluster_id=source_cluster_id,
            target_cluster_id=target_cluster_id,
        )
        return False
    return True


def create_hierarchy(
    conn: psycopg.Connection[Any],
    *,
    parent_cluster_id: str,
    child_cluster_id: str,
    relationship_type: RelationshipType | str = RelationshipType.parent,
    now_utc: datetime | None = None,
) -> bool:
    if not parent_cluster_id or parent_cluster_id == child_cluster_id:
        return False
    now = now_utc or datetime.now(timezone.utc)
    rtype = (
        relationship_type.value
        if isinstance(relationship_type, RelationshipType)
        else relationship_type
    )
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO cluster_hierarchy(
                      parent_cluster_id, child_cluster_id, relationship_type, created_at
                    )
                    VALUES (%s,%s,%s,%s)
                    ON CONFLICT (parent_cluster_id, child_cluster_id) DO NOTHING;
                    """,
                    (parent_cluster_id, child_cluster_id, rtype, now),
                )
                cur.execute(
                    "UPDATE story_clusters SET parent_cluster_id = %s WHERE id = %s;",
                    (parent_cluster_id, child_cluster_id),
                )
    except DEGRADABLE_ERRORS as exc:
        log_degraded(
            logger,
            "create_hierarchy",
            exc,
            parent_cluster_id=parent_cluster_id,
            child_cluster_id=child_cluster_id,
        )
        return False
    return True


def get_related_clusters(
    conn: psycopg.Connection[Any], *, cluster_id: str, limit: int = 10
) -> list[ClusterCrossRef]:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, source_cluster_id, target_cluster_id, reference_type,
                       confidence, created_at
                FROM cluster_cross_refs
                WHERE source_cluster_id = %s OR target_cluster_id = %s
                ORDER BY confidence DESC, id ASC
                LIMIT %s;
                """,
                (cluster_id, cluster_id, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_related_clusters", exc, cluster_id=cluster_id)
        return []
    return [
        ClusterCrossRef(
            id=int(r["id"]),
            source_cluster_id=r["source_cluster_id"],
            target_cluster_id=r["target_cluster_id"],
            reference_type=r["reference_type"],
            confidence=float(r["confidence"]),
            created_at=r["created_at"],
        )
        for r in rows
    ]


def get_child_clusters(conn: psycopg.Connection[Any], *, parent_cluster_id: str) -> list[str]:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT child_cluster_id
                FROM cluster_hierarchy
                WHERE parent_cluster_id = %s
                ORDER BY created_at ASC, child_cluster_id ASC;
                """,
                (parent_cluster_id,),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "get_child_clusters", exc, parent_cluster_id=parent_cluster_id)
        return []
    return [r["child_cluster_id"] for r in rows]


def link_clusters_sharing_entities(
    conn: psycopg.Connection[Any],
    *,
    cluster_id: str,
    entity_ids: Sequence[int],
    since_hours: float = SHARED_ENTITY_WINDOW_HOURS,
    limit: int = MAX_SHARED_ENTITY_LINKS,
    now_utc: datetime | None = None,
) -> list[str]:
    """Cross-reference ``cluster_id`` with recently active clusters sharing an entity.

    Each pair is stored once, lowest id as the source. Returns the ids of the
    other clusters that were linked.
    """
    ids = sorted({int(e) for e in entity_ids})
    if not cluster_id or not ids:
        return []
    now = now_utc or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=since_hours)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT l.cluster_id, max(sc.updated_at) AS last_active
                FROM entity_cluster_links l
                JOIN story_clusters sc ON sc.id = l.cluster_id
                WHERE l.entity_id = ANY(%s)
                  AND l.cluster_id <> %s
                  AND sc.updated_at > %s
                GROUP BY l.cluster_id
                ORDER BY last_active DESC, l.cluster_id ASC
                LIMIT %s;
                """,
                (ids, cluster_id, cutoff, limit),
            )
            rows = cur.fetchall()
    except DEGRADABLE_ERRORS as exc:
        log_degraded(logger, "link_clusters_sharing_entities", exc, cluster_id=cluster_id)
        return []

    linked: list[str] = []
    for r in rows:
        other = r["cluster_id"]
        source, target = sorted((cluster_id, other))
        if create_cross_ref(
            conn,
            source_cluster_id=source,
            target_cluster_id=target,
            reference_type=ReferenceType.related,
            confidence=SHARED_ENTITY_CONFIDENCE,
            now_utc=now,
        ):
            linked.append(other)
    if linked:
        logger.info(
            "Linked cluster %s to %d clusters sharing entities",
            cluster_id,
            len(linked),
            extra={"cluster_id": cluster_id},
        )
    return linked
