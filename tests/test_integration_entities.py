from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
import pytest

from story_heat.cluster_store import ClusterUpsert, get_cluster_by_id, upsert_cluster
from story_heat.entity_graph import (
    create_cross_ref,
    create_hierarchy,
    find_or_create_entity,
    get_child_clusters,
    get_cluster_entities,
    get_related_clusters,
    get_trending_entities,
    link_clusters_sharing_entities,
    link_entity_to_article,
    update_entity_cluster_heat,
)
from story_heat.models import EntityType, ReferenceType

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _cluster(
    conn: psycopg.Connection[Any], cluster_id: str, *, now: datetime = NOW
) -> None:
    assert upsert_cluster(
        conn, ClusterUpsert(id=cluster_id, topic=f"topic {cluster_id}"), now_utc=now
    ) is not None


@pytest.mark.integration
def test_find_or_create_entity_dedupes_on_normalized_name(
    db_conn: psycopg.Connection[Any],
) -> None:
    first = find_or_create_entity(
        db_conn, name="Jerome  Powell", entity_type=EntityType.person, now_utc=NOW
    )
    again = find_or_create_entity(db_conn, name="jerome powell", entity_type="person", now_utc=NOW)
    assert first is not None
    assert again == first

    with db_conn.cursor() as cur:
        cur.execute(
            "SELECT entity_type, occurrence_count FROM named_entities WHERE id = %s;", (first,)
        )
        assert cur.fetchone() == ("PERSON", 2)

    assert find_or_create_entity(db_conn, name="   ", entity_type=EntityType.person) is None


@pytest.mark.integration
def test_entity_article_link_is_idempotent(db_conn: psycopg.Connection[Any]) -> None:
    entity_id = find_or_create_entity(db_conn, name="Federal Reserve", entity_type="ORGANIZATION")
    assert entity_id is not None
    assert link_entity_to_article(db_conn, entity_id=entity_id, article_id="a1", confidence=0.9)
    assert not link_entity_to_article(db_conn, entity_id=entity_id, article_id="a1")


@pytest.mark.integration
def test_entity_cluster_heat_accumulates(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1")
    fed = find_or_create_entity(db_conn, name="Federal Reserve", entity_type="ORGANIZATION")
    powell = find_or_create_entity(db_conn, name="Jerome Powell", entity_type="PERSON")
    assert fed is not None and powell is not None

    assert update_entity_cluster_heat(
        db_conn, entity_id=fed, cluster_id="c1", heat_contribution=26.0
    )
    assert update_entity_cluster_heat(
        db_conn, entity_id=fed, cluster_id="c1", heat_contribution=3.9
    )
    assert update_entity_cluster_heat(
        db_conn, entity_id=powell, cluster_id="c1", heat_contribution=10.0
    )

    entities = get_cluster_entities(db_conn, cluster_id="c1")
    assert [e.entity_name for e in entities] == ["Federal Reserve", "Jerome Powell"]
    assert entities[0].article_count == 2
    assert entities[0].heat_contribution == pytest.approx(29.9)

    cluster = get_cluster_by_id(db_conn, cluster_id="c1")
    assert cluster is not None
    assert cluster.entity_heat_score == pytest.approx(39.9)

    # Unknown cluster violates the link's foreign key and degrades to False.
    assert not update_entity_cluster_heat(
        db_conn, entity_id=fed, cluster_id="missing", heat_contribution=1.0
    )


@pytest.mark.integration
def test_trending_entities_window_and_direction(db_conn: psycopg.Connection[Any]) -> None:
    busy = find_or_create_entity(db_conn, name="Bitcoin", entity_type="TOKEN")
    quiet = find_or_create_entity(db_conn, name="Ethereum", entity_type="TOKEN")
    stale = find_or_create_entity(db_conn, name="Dogecoin", entity_type="TOKEN")
    assert busy is not None and quiet is not None and stale is not None

    for i in range(6):
        _cluster(db_conn, f"b{i}")
        update_entity_cluster_heat(
            db_conn, entity_id=busy, cluster_id=f"b{i}", heat_contribution=5.0
        )
    _cluster(db_conn, "q0")
    update_entity_cluster_heat(db_conn, entity_id=quiet, cluster_id="q0", heat_contribution=50.0)
    _cluster(db_conn, "old", now=NOW - timedelta(hours=72))
    update_entity_cluster_heat(db_conn, entity_id=stale, cluster_id="old", heat_contribution=999.0)

    trending = get_trending_entities(db_conn, limit=10, hours=24, now_utc=NOW)
    assert [e.entity_name for e in trending] == ["Ethereum", "Bitcoin"]
    by_name = {e.entity_name: e for e in trending}
    assert by_name["Bitcoin"].cluster_count == 6
    assert by_name["Bitcoin"].total_heat == pytest.approx(30.0)
    assert by_name["Bitcoin"].trending_direction == "UP"
    assert by_name["Ethereum"].trending_direction == "NEUTRAL"


@pytest.mark.integration
def test_cross_refs_reject_self_reference(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1")
    _cluster(db_conn, "c2")

    assert create_cross_ref(db_conn, source_cluster_id="c1", target_cluster_id="c1") is False
    assert get_related_clusters(db_conn, cluster_id="c1") == []

    assert create_cross_ref(
        db_conn,
        source_cluster_id="c1",
        target_cluster_id="c2",
        reference_type=ReferenceType.causes,
        confidence=1.5,
        now_utc=NOW,
    )
    # Repeat is accepted and stays a single edge.
    assert create_cross_ref(db_conn, source_cluster_id="c1", target_cluster_id="c2")

    related = get_related_clusters(db_conn, cluster_id="c2")
    assert len(related) == 1
    assert related[0].source_cluster_id == "c1"
    assert related[0].reference_type == "CAUSES"
    assert related[0].confidence == 1.0

    for cluster_id in ("c1", "c2"):
        cluster = get_cluster_by_id(db_conn, cluster_id=cluster_id)
        assert cluster is not None and cluster.is_cross_category


@pytest.mark.integration
def test_hierarchy_links_children(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "parent")
    _cluster(db_conn, "child1")
    _cluster(db_conn, "child2")

    assert create_hierarchy(db_conn, parent_cluster_id="parent", child_cluster_id="parent") is False
    assert create_hierarchy(
        db_conn, parent_cluster_id="parent", child_cluster_id="child1", now_utc=NOW
    )
    assert create_hierarchy(
        db_conn,
        parent_cluster_id="parent",
        child_cluster_id="child2",
        now_utc=NOW + timedelta(minutes=1),
    )

    assert get_child_clusters(db_conn, parent_cluster_id="parent") == ["child1", "child2"]
    child = get_cluster_by_id(db_conn, cluster_id="child1")
    assert child is not None
    assert child.parent_cluster_id == "parent"


@pytest.mark.integration
def test_clusters_sharing_an_entity_are_cross_referenced(
    db_conn: psycopg.Connection[Any],
) -> None:
    _cluster(db_conn, "c1")
    _cluster(db_conn, "c2")
    _cluster(db_conn, "stale", now=NOW - timedelta(hours=48))
    _cluster(db_conn, "unrelated")
    powell = find_or_create_entity(db_conn, name="Jerome Powell", entity_type="PERSON")
    btc = find_or_create_entity(db_conn, name="BTC", entity_type="TOKEN")
    assert powell is not None and btc is not None
    for cluster_id in ("c1", "c2", "stale"):
        update_entity_cluster_heat(
            db_conn, entity_id=powell, cluster_id=cluster_id, heat_contribution=1.0
        )
    update_entity_cluster_heat(
        db_conn, entity_id=btc, cluster_id="unrelated", heat_contribution=1.0
    )

    linked = link_clusters_sharing_entities(
        db_conn, cluster_id="c2", entity_ids=[powell], now_utc=NOW
    )
    assert linked == ["c1"]
    refs = get_related_clusters(db_conn, cluster_id="c2")
    assert [(r.source_cluster_id, r.target_cluster_id, r.reference_type) for r in refs] == [
        ("c1", "c2", "RELATED")
    ]
    assert refs[0].confidence == pytest.approx(0.6)
    assert get_related_clusters(db_conn, cluster_id="stale") == []
    assert get_related_clusters(db_conn, cluster_id="unrelated") == []

    # Linking again from the other side reuses the stored pair.
    assert link_clusters_sharing_entities(
        db_conn, cluster_id="c1", entity_ids=[powell], now_utc=NOW
    ) == ["c2"]
    assert len(get_related_clusters(db_conn, cluster_id="c1")) == 1

    assert link_clusters_sharing_entities(db_conn, cluster_id="c1", entity_ids=[]) == []
