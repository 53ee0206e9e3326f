from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
import pytest
from psycopg import sql

from story_heat.cluster_store import (
    ClusterUpsert,
    add_article_to_cluster,
    cluster_exists,
    find_cluster_ids_by_article_ids,
    get_cluster_by_id,
    get_cluster_details,
    get_cluster_id_by_topic_key,
    get_cluster_sample_titles,
    get_hot_clusters,
    merge_clusters,
    upsert_cluster,
)
from story_heat.errors import ErrorKind
from story_heat.metrics import get_counter

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _cluster(
    conn: psycopg.Connection[Any],
    cluster_id: str,
    topic: str,
    *,
    category: str = "ECONOMICS",
    heat_score: float | None = None,
    now: datetime = NOW,
) -> None:
    created = upsert_cluster(
        conn,
        ClusterUpsert(id=cluster_id, topic=topic, category=category, heat_score=heat_score),
        now_utc=now,
    )
    assert created is not None


def _article_ids(conn: psycopg.Connection[Any], cluster_id: str) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT article_id FROM cluster_articles WHERE cluster_id = %s;", (cluster_id,))
        return {row[0] for row in cur.fetchall()}


def _assert_counters_consistent(conn: psycopg.Connection[Any], cluster_id: str) -> None:
    cluster = get_cluster_by_id(conn, cluster_id=cluster_id)
    assert cluster is not None
    with conn.cursor() as cur:
        cur.execute("SELECT count(*) FROM cluster_articles WHERE cluster_id = %s;", (cluster_id,))
        links = cur.fetchone()[0]
        cur.execute(
            "SELECT count(*) FROM cluster_title_fingerprints WHERE cluster_id = %s;", (cluster_id,)
        )
        fingerprints = cur.fetchone()[0]
    assert cluster.article_count == links
    assert cluster.unique_title_count == fingerprints


@pytest.fixture()
def failing_trigger(
    db_conn: psycopg.Connection[Any],
) -> Generator[Callable[[str, str], None], None, None]:
    """Install a BEFORE trigger that aborts the statement; dropped after the test."""
    installed: list[tuple[str, str]] = []

    def install(table: str, event: str) -> None:
        name = f"fail_{table}_{event.lower()}"
        with db_conn.cursor() as cur:
            cur.execute(
                """
                CREATE OR REPLACE FUNCTION raise_injected_failure() RETURNS trigger AS $$
                BEGIN
                  RAISE EXCEPTION 'injected failure';
                END;
                $$ LANGUAGE plpgsql;
                """
            )
            cur.execute(
                sql.SQL(
                    "CREATE TRIGGER {} BEFORE {} ON {} "
                    "FOR EACH ROW EXECUTE FUNCTION raise_injected_failure();"
                ).format(sql.Identifier(name), sql.SQL(event), sql.Identifier(table))
            )
        installed.append((name, table))

    yield install

    with db_conn.cursor() as cur:
        for name, table in installed:
            cur.execute(
                sql.SQL("DROP TRIGGER IF EXISTS {} ON {};").format(
                    sql.Identifier(name), sql.Identifier(table)
                )
            )
        cur.execute("DROP FUNCTION IF EXISTS raise_injected_failure();")


@pytest.mark.integration
def test_upsert_cluster_and_topic_lookup(db_conn: psycopg.Connection[Any]) -> None:
    created = upsert_cluster(
        db_conn,
        ClusterUpsert(
            id="c1", topic="Fed Rate Decision", category="economics", keywords=["fed", "rates"]
        ),
        now_utc=NOW,
    )
    assert created is not None
    assert created.topic_key == "fed_rate_decision"
    assert created.category == "ECONOMICS"
    assert created.keywords == ["fed", "rates"]
    assert created.article_count == 0
    assert created.trend_direction == "NEUTRAL"
    assert created.urgency == "MEDIUM"
    assert created.source_authority_score == 1.0

    assert get_cluster_id_by_topic_key(db_conn, topic="fed  rate DECISION") == "c1"
    assert get_cluster_id_by_topic_key(db_conn, topic="ECB rate decision") is None

    later = NOW + timedelta(minutes=5)
    updated = upsert_cluster(
        db_conn,
        ClusterUpsert(id="c1", topic="Fed Rate Decision", summary="FOMC holds"),
        now_utc=later,
    )
    assert updated is not None
    assert updated.summary == "FOMC holds"
    assert updated.keywords == ["fed", "rates"]
    assert updated.category == "ECONOMICS"
    assert updated.updated_at == later


@pytest.mark.integration
def test_topic_key_follows_the_topic(db_conn: psycopg.Connection[Any]) -> None:
    with pytest.raises(TypeError):
        ClusterUpsert(  # type: ignore[call-arg]
            id="c1", topic="Fed Rate Decision", topic_key="custom"
        )

    upsert_cluster(db_conn, ClusterUpsert(id="c1", topic="Fed Rate Decision"), now_utc=NOW)
    renamed = upsert_cluster(
        db_conn,
        ClusterUpsert(id="c1", topic="Fed Rate Hike & Markets"),
        now_utc=NOW + timedelta(minutes=1),
    )
    assert renamed is not None
    assert renamed.topic_key == "fed_rate_hike_and_markets"
    assert get_cluster_id_by_topic_key(db_conn, topic="Fed Rate Decision") is None
    assert get_cluster_id_by_topic_key(db_conn, topic="fed rate hike & markets") == "c1"


@pytest.mark.integration
def test_upsert_with_corrupt_stored_keywords_degrades(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    with db_conn.cursor() as cur:
        cur.execute(
            """
            UPDATE story_clusters
            SET keywords = '{"version": 2, "keywords": []}'::jsonb
            WHERE id = 'c1';
            """
        )

    result = upsert_cluster(
        db_conn, ClusterUpsert(id="c1", topic="Fed Rate Decision", summary="s"), now_utc=NOW
    )
    assert result is None
    assert get_counter(
        "story_heat_degraded_operations_total",
        {"operation": "upsert_cluster", "error_kind": "query_failure"},
    ) == 1


@pytest.mark.integration
def test_duplicate_title_penalty_sequence(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")

    results = [
        add_article_to_cluster(
            db_conn,
            cluster_id="c1",
            article_id=f"a{i}",
            title_fingerprint="fed holds rates steady",
            heat_delta=10.0,
            now_utc=NOW,
        )
        for i in range(4)
    ]
    assert [r.duplicate_index for r in results] == [0, 1, 2, 3]
    assert [r.heat_added for r in results] == pytest.approx([10.0, 1.5, 0.5, 0.2])
    assert all(r.was_new and r.error is None for r in results)

    cluster = get_cluster_by_id(db_conn, cluster_id="c1")
    assert cluster is not None
    assert cluster.heat_score == pytest.approx(12.2)
    assert cluster.article_count == 4
    assert cluster.unique_title_count == 1
    _assert_counters_consistent(db_conn, "c1")


@pytest.mark.integration
def test_reattach_is_a_no_op(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    first = add_article_to_cluster(
        db_conn, cluster_id="c1", article_id="a1", title_fingerprint="fp", heat_delta=10.0
    )
    again = add_article_to_cluster(
        db_conn, cluster_id="c1", article_id="a1", title_fingerprint="fp", heat_delta=10.0
    )
    assert first.was_new is True
    assert again.was_new is False
    assert again.heat_added == 0.0

    cluster = get_cluster_by_id(db_conn, cluster_id="c1")
    assert cluster is not None
    assert cluster.heat_score == pytest.approx(10.0)
    assert cluster.article_count == 1
    with db_conn.cursor() as cur:
        cur.execute("SELECT count FROM cluster_title_fingerprints WHERE cluster_id = 'c1';")
        assert cur.fetchone()[0] == 1
    _assert_counters_consistent(db_conn, "c1")


@pytest.mark.integration
def test_attach_to_missing_cluster_has_no_effect(db_conn: psycopg.Connection[Any]) -> None:
    result = add_article_to_cluster(
        db_conn, cluster_id="missing", article_id="a1", title_fingerprint="fp", heat_delta=10.0
    )
    assert result.error is ErrorKind.not_found
    assert result.was_new is False
    assert result.heat_added == 0.0
    with db_conn.cursor() as cur:
        cur.execute("SELECT count(*) FROM cluster_articles;")
        assert cur.fetchone()[0] == 0


@pytest.mark.integration
def test_attach_failure_rolls_back_every_write(
    db_conn: psycopg.Connection[Any], failing_trigger: Callable[[str, str], None]
) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision", heat_score=5.0)
    failing_trigger("story_clusters", "UPDATE")

    result = add_article_to_cluster(
        db_conn,
        cluster_id="c1",
        article_id="a1",
        title_fingerprint="fed holds rates steady",
        heat_delta=10.0,
        now_utc=NOW,
    )
    assert result.error is ErrorKind.query_failure
    assert result.was_new is False
    assert result.heat_added == 0.0

    assert _article_ids(db_conn, "c1") == set()
    with db_conn.cursor() as cur:
        cur.execute("SELECT count(*) FROM cluster_title_fingerprints;")
        assert cur.fetchone()[0] == 0
    cluster = get_cluster_by_id(db_conn, cluster_id="c1")
    assert cluster is not None
    assert cluster.heat_score == pytest.approx(5.0)
    assert cluster.article_count == 0
    assert cluster.updated_at == NOW


@pytest.mark.integration
def test_merge_clusters_unions_articles_and_heat(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    _cluster(db_conn, "c2", "FOMC meeting")
    for cluster_id, article_id, fp in (
        ("c1", "a1", "alpha"),
        ("c1", "a2", "beta"),
        ("c2", "a2", "beta"),
        ("c2", "a3", "gamma"),
    ):
        add_article_to_cluster(
            db_conn,
            cluster_id=cluster_id,
            article_id=article_id,
            title_fingerprint=fp,
            heat_delta=10.0,
            now_utc=NOW,
        )

    result = merge_clusters(db_conn, target_id="c1", source_id="c2", now_utc=NOW)
    assert result.error is None
    assert result.deleted is True
    assert result.moved == 1

    assert _article_ids(db_conn, "c1") == {"a1", "a2", "a3"}
    assert not cluster_exists(db_conn, cluster_id="c2")
    merged = get_cluster_by_id(db_conn, cluster_id="c1")
    assert merged is not None
    assert merged.article_count == 3
    assert merged.unique_title_count == 3
    assert merged.heat_score == pytest.approx(40.0)
    _assert_counters_consistent(db_conn, "c1")
    assert get_counter("story_heat_cluster_merges_total") == 1


@pytest.mark.integration
def test_merge_clusters_degenerate_inputs(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")

    same = merge_clusters(db_conn, target_id="c1", source_id="c1")
    assert same.moved == 0 and same.deleted is False and same.error is None

    missing = merge_clusters(db_conn, target_id="c1", source_id="nope")
    assert missing.error is ErrorKind.not_found
    assert missing.deleted is False
    assert cluster_exists(db_conn, cluster_id="c1")


@pytest.mark.integration
def test_merge_failure_leaves_both_clusters_untouched(
    db_conn: psycopg.Connection[Any], failing_trigger: Callable[[str, str], None]
) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    _cluster(db_conn, "c2", "FOMC meeting")
    for cluster_id, article_id, fp in (("c1", "a1", "alpha"), ("c2", "a3", "gamma")):
        add_article_to_cluster(
            db_conn,
            cluster_id=cluster_id,
            article_id=article_id,
            title_fingerprint=fp,
            heat_delta=10.0,
            now_utc=NOW,
        )
    # The source row is deleted after links and fingerprints have been copied.
    failing_trigger("story_clusters", "DELETE")

    result = merge_clusters(db_conn, target_id="c1", source_id="c2", now_utc=NOW)
    assert result.error is ErrorKind.query_failure
    assert result.moved == 0
    assert result.deleted is False

    assert _article_ids(db_conn, "c1") == {"a1"}
    assert _article_ids(db_conn, "c2") == {"a3"}
    with db_conn.cursor() as cur:
        cur.execute(
            """
            SELECT cluster_id, title_fingerprint
            FROM cluster_title_fingerprints
            ORDER BY cluster_id;
            """
        )
        assert cur.fetchall() == [("c1", "alpha"), ("c2", "gamma")]
    for cluster_id in ("c1", "c2"):
        cluster = get_cluster_by_id(db_conn, cluster_id=cluster_id)
        assert cluster is not None
        assert cluster.heat_score == pytest.approx(10.0)
        assert cluster.article_count == 1
        _assert_counters_consistent(db_conn, cluster_id)
    assert get_counter("story_heat_cluster_merges_total") == 0


@pytest.mark.integration
def test_hot_clusters_window_category_and_order(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision", heat_score=50.0)
    _cluster(db_conn, "c2", "Bitcoin ETF", category="CRYPTO", heat_score=80.0)
    _cluster(db_conn, "c3", "Old story", heat_score=500.0, now=NOW - timedelta(hours=48))

    hot = get_hot_clusters(db_conn, limit=10, since_hours=24, now_utc=NOW)
    assert [c.id for c in hot] == ["c2", "c1"]

    crypto = get_hot_clusters(db_conn, category="crypto", now_utc=NOW)
    assert [c.id for c in crypto] == ["c2"]
    assert [c.id for c in get_hot_clusters(db_conn, category="ALL", now_utc=NOW)] == ["c2", "c1"]
    assert [c.id for c in get_hot_clusters(db_conn, limit=1, now_utc=NOW)] == ["c2"]


@pytest.mark.integration
def test_cluster_details_and_sample_titles(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    with db_conn.cursor() as cur:
        for i, title in enumerate(["Fed holds", "Powell speaks", "Markets react"]):
            cur.execute(
                """
                INSERT INTO news_articles(id, title, source, url, published_at)
                VALUES (%s,%s,%s,%s,%s);
                """,
                (f"a{i}", title, "wire", f"https://example.com/{i}", NOW + timedelta(minutes=i)),
            )
    for i in range(3):
        add_article_to_cluster(
            db_conn, cluster_id="c1", article_id=f"a{i}", title_fingerprint=f"t{i}", now_utc=NOW
        )
    # Linked article with no stored record.
    add_article_to_cluster(
        db_conn, cluster_id="c1", article_id="ghost", title_fingerprint="ghost", now_utc=NOW
    )

    details = get_cluster_details(db_conn, cluster_id="c1")
    assert details is not None
    assert details.cluster.id == "c1"
    assert len(details.articles) == 4
    titled = [a.title for a in details.articles if a.title]
    assert titled == ["Markets react", "Powell speaks", "Fed holds"]

    assert get_cluster_sample_titles(db_conn, cluster_id="c1", limit=2) == [
        "Markets react",
        "Powell speaks",
    ]
    assert len(get_cluster_sample_titles(db_conn, cluster_id="c1", limit=0)) == 1
    assert get_cluster_details(db_conn, cluster_id="missing") is None


@pytest.mark.integration
def test_find_cluster_ids_by_article_ids(db_conn: psycopg.Connection[Any]) -> None:
    _cluster(db_conn, "c1", "Fed Rate Decision")
    _cluster(db_conn, "c2", "Bitcoin ETF", category="CRYPTO")
    add_article_to_cluster(db_conn, cluster_id="c1", article_id="a1", title_fingerprint="x")
    add_article_to_cluster(db_conn, cluster_id="c2", article_id="a2", title_fingerprint="y")

    mapping = find_cluster_ids_by_article_ids(db_conn, article_ids=["a1", "a2", "a9", "a1"])
    assert mapping == {"a1": "c1", "a2": "c2"}
    assert find_cluster_ids_by_article_ids(db_conn, article_ids=[]) == {}
