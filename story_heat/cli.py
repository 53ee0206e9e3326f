from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from story_heat.cache import HOT_CLUSTERS_PREFIX, cache_delete_prefix, get_redis_client
from story_heat.cluster_store import get_hot_clusters
from story_heat.db import DB
from story_heat.decay_config import DecayConfigProvider, HeatDecayConfig
from story_heat.logging_config import setup_logging
from story_heat.migrations import migrate
from story_heat.quality_metrics import get_clustering_quality_summary
from story_heat.ranking import run_ranking_sweep
from story_heat.settings import get_settings


def _db() -> DB:
    settings = get_settings()
    setup_logging(log_format=settings.log_format, log_level=settings.log_level)
    return DB.from_settings(settings)


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def cmd_migrate(_: argparse.Namespace) -> int:
    with _db().connection() as conn:
        applied = migrate(conn)
    if applied:
        print("Applied migrations:")
        for name in applied:
            print(f"- {name}")
    else:
        print("No pending migrations.")
    return 0


def cmd_rank_sweep(args: argparse.Namespace) -> int:
    now = _parse_now(args.now)
    with _db().connection() as conn:
        result = run_ranking_sweep(
            conn,
            since_hours=float(args.since_hours),
            limit=int(args.limit),
            window_hours=float(args.window_hours),
            now_utc=now,
        )
    r = get_redis_client()
    if r:
        cache_delete_prefix(r, HOT_CLUSTERS_PREFIX)
    print(
        "Ranking sweep complete: "
        f"{result.ranked}/{result.clusters_scanned} ranked; "
        f"{result.predictions} predictions; {result.anomalies} anomalies."
    )
    for cluster_id in result.anomaly_cluster_ids:
        print(f"- anomaly: {cluster_id}")
    return 0


def cmd_hot(args: argparse.Namespace) -> int:
    now = _parse_now(args.now)
    with _db().connection() as conn:
        clusters = get_hot_clusters(
            conn,
            limit=int(args.limit),
            since_hours=float(args.since_hours),
            category=args.category,
            now_utc=now,
        )
    if not clusters:
        print("No hot clusters.")
        return 0
    for c in clusters:
        print(
            f"{c.heat_score:8.2f}  {c.category:<14} {c.article_count:>4} articles  "
            f"{c.topic} [{c.id}]"
        )
    return 0


def cmd_quality_summary(args: argparse.Namespace) -> int:
    now = _parse_now(args.now)
    with _db().connection() as conn:
        summary = get_clustering_quality_summary(conn, hours=float(args.hours), now_utc=now)
    payload = {
        metric: {"average": s.average, "sample_count": s.sample_count}
        for metric, s in summary.items()
    }
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def cmd_set_decay(args: argparse.Namespace) -> int:
    provider = DecayConfigProvider(_db())
    saved = provider.save(
        HeatDecayConfig(
            category=args.category,
            decay_constant=float(args.decay_constant),
            activity_boost_hours=float(args.activity_boost_hours),
            spike_multiplier=float(args.spike_multiplier),
            base_half_life_hours=float(args.base_half_life_hours),
            description=args.description,
        )
    )
    if saved is None:
        print(f"Failed to save decay config for {args.category.upper()}.")
        return 1
    print(
        f"Saved decay config for {saved.category}: "
        f"decay_constant={saved.decay_constant} spike_multiplier={saved.spike_multiplier}"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="story-heat")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_migrate = sub.add_parser("migrate", help="Apply SQL migrations from design_docs/migrations")
    p_migrate.set_defaults(func=cmd_migrate)

    p_sweep = sub.add_parser(
        "rank-sweep", help="Refresh trend, prediction, rank and anomaly flags for hot clusters"
    )
    p_sweep.add_argument("--since-hours", type=float, default=24)
    p_sweep.add_argument("--limit", type=int, default=100)
    p_sweep.add_argument("--window-hours", type=float, default=6)
    p_sweep.add_argument("--now", type=str, default=None, help="Override current time (ISO-8601)")
    p_sweep.set_defaults(func=cmd_rank_sweep)

    p_hot = sub.add_parser("hot", help="Print the hottest recently updated clusters")
    p_hot.add_argument("--limit", type=int, default=20)
    p_hot.add_argument("--since-hours", type=float, default=24)
    p_hot.add_argument("--category", type=str, default=None)
    p_hot.add_argument("--now", type=str, default=None, help="Override current time (ISO-8601)")
    p_hot.set_defaults(func=cmd_hot)

    p_quality = sub.add_parser("quality-summary", help="Average clustering quality metrics")
    p_quality.add_argument("--hours", type=float, default=24)
    p_quality.add_argument("--now", type=str, default=None, help="Override current time (ISO-8601)")
    p_quality.set_defaults(func=cmd_quality_summary)

    p_decay = sub.add_parser("set-decay", help="Create or replace a category's decay parameters")
    p_decay.add_argument("category", type=str)
    p_decay.add_argument("--decay-constant", type=float, required=True)
    p_decay.add_argument("--activity-boost-hours", type=float, default=2.0)
    p_decay.add_argument("--spike-multiplier", type=float, default=1.5)
    p_decay.add_argument("--base-half-life-hours", type=float, default=3.5)
    p_decay.add_argument("--description", type=str, default=None)
    p_decay.set_defaults(func=cmd_set_decay)

    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
