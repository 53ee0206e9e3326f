"""Heat contribution of a single article.

heat = base * importance * sentiment_boost * exp(-k * hours_since_published)
            * activity_boost

where ``k`` is the category's decay constant. The activity boost rewards
clusters that were touched recently.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone

from story_heat.decay_config import HeatDecayConfig
from story_heat.models import ArticleRecord, Importance

DEFAULT_BASE_HEAT = 10.0
SENTIMENT_BOOST = 1.1
ACTIVITY_BOOST = 1.3

# Indexed by min(duplicate_index, 3).
DUPLICATE_PENALTIES: tuple[float, ...] = (1.0, 0.15, 0.05, 0.02)


def penalty_for_duplicate_index(duplicate_index: int) -> float:
    idx = min(max(duplicate_index, 0), len(DUPLICATE_PENALTIES) - 1)
    return DUPLICATE_PENALTIES[idx]


def importance_multiplier(importance: str | None, config: HeatDecayConfig) -> float:
    level = (importance or Importance.medium.value).upper()
    if level == Importance.critical.value:
        return config.spike_multiplier * 3
    if level == Importance.high.value:
        return 2.0
    if level == Importance.medium.value:
        return 1.5
    return 1.0


def _hours_between(earlier: datetime, later: datetime) -> float:
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    return max(0.0, (later - earlier).total_seconds() / 3600.0)


def calculate_heat(
    article: ArticleRecord,
    cluster_last_updated_at: datetime | None,
    *,
    config: HeatDecayConfig,
    base_heat: float = DEFAULT_BASE_HEAT,
    now_utc: datetime | None = None,
) -> float:
    now = now_utc or datetime.now(timezone.utc)

    heat = base_heat * importance_multiplier(article.importance, config)

    if article.sentiment and article.sentiment.upper() != "NEUTRAL":
        heat *= SENTIMENT_BOOST

    # Future publish times count as "just published".
    published = article.published_at or now
    heat *= math.exp(-config.decay_constant * _hours_between(published, now))

    if cluster_last_updated_at is not None:
        if _hours_between(cluster_last_updated_at, now) < config.activity_boost_hours:
            heat *= ACTIVITY_BOOST

    return heat
