"""Pattern-based named-entity extraction for article titles and bodies.

Matching is case-sensitive: headlines capitalise proper nouns, and folding case
turns words like "us", "curve" or "fed up" into false entities.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from story_heat.entity_graph import normalize_entity_name
from story_heat.models import EntityType

BASE_CONFIDENCE = 0.5

_TOKENS = (
    "Bitcoin", "BTC", "Ethereum", "ETH", "Solana", "SOL", "Cardano", "ADA",
    "Polkadot", "DOT", "Avalanche", "AVAX", "Dogecoin", "DOGE", "Shiba Inu", "SHIB",
    "Chainlink", "LINK", "Polygon", "MATIC", "UNI", "AAVE", "CRV", "MKR",
    "COMP", "SNX", "YFI",
)
_PROTOCOLS = (
    "Uniswap", "Aave", "Compound", "Curve", "Maker", "Synthetix", "Yearn", "Sushi",
    "PancakeSwap", "Balancer", "1inch", "GMX", "dYdX", "Lido", "Osmosis", "Jupiter",
    "Orca", "Raydium", "DeFi", "DEX", "CEX", "NFT", "DAO", "Web3", "Layer 2", "AMM",
)
_ORGANIZATIONS = (
    "Apple", "Microsoft", "Google", "Alphabet", "Amazon", "Meta", "Facebook", "Twitter",
    "Tesla", "Nvidia", "Intel", "AMD", "Samsung", "Sony",
    "Binance", "Coinbase", "Kraken", "Gemini", "FTX", "Bitfinex", "OKX", "KuCoin",
    "Huobi", "Bybit", "BitMEX",
    "BlackRock", "Fidelity", "Invesco", "Ark Invest", "Grayscale", "VanEck", "WisdomTree",
    "MicroStrategy", "PayPal", "Visa", "Mastercard",
    "Goldman Sachs", "JPMorgan", "Morgan Stanley", "Bank of America", "Citigroup",
    "Federal Reserve", "Fed", "European Central Bank", "ECB", "Bank of England",
)
_LOCATIONS = (
    "United States", "USA", "US", "America", "United Kingdom", "UK", "Britain", "England",
    "European Union", "EU", "Eurozone", "China", "Beijing", "Shanghai", "Japan", "Tokyo",
    "South Korea", "Seoul", "Russia", "Moscow", "India", "New Delhi", "Brazil", "São Paulo",
    "Germany", "Berlin", "France", "Paris", "Italy", "Rome", "Spain", "Madrid",
    "Canada", "Ottawa", "Australia", "Sydney", "Mexico", "Mexico City", "Argentina",
    "Buenos Aires", "Saudi Arabia", "Riyadh", "United Arab Emirates", "Dubai", "Abu Dhabi",
    "Iran", "Tehran", "Israel", "Tel Aviv", "Ukraine", "Kyiv", "Turkey", "Istanbul",
)
_PEOPLE = (
    "Jerome Powell", "Jay Powell", "Janet Yellen", "Gary Gensler", "Joe Biden",
    "Donald Trump", "Elon Musk", "Jeff Bezos", "Mark Zuckerberg", "Tim Cook",
    "Sundar Pichai", "Satya Nadella", "Jensen Huang", "Sam Altman", "Vitalik Buterin",
    "Satoshi Nakamoto", "Changpeng Zhao", "Brian Armstrong", "Vladimir Tenev",
    "Sam Bankman-Fried", "Christine Lagarde", "Ursula von der Leyen",
)
_GOVERNMENT_BODIES = (
    "Securities and Exchange Commission", "SEC",
    "Commodity Futures Trading Commission", "CFTC",
    "Financial Conduct Authority", "FCA", "BaFin", "US Treasury", "Treasury Department",
    "Congress", "Senate", "House of Representatives", "European Commission",
)

COUNTRIES = frozenset(
    {
        "united states", "usa", "us", "america", "united kingdom", "uk", "britain",
        "european union", "eu", "eurozone", "china", "japan", "south korea", "russia",
        "india", "brazil", "germany", "france", "italy", "spain", "canada", "australia",
        "mexico", "argentina", "saudi arabia", "united arab emirates", "iran", "israel",
        "ukraine", "turkey",
    }
)

_ORG_SUFFIX_RE = re.compile(r"Inc|Corp|LLC|Ltd|Group|Bank")
_SYMBOL_RE = re.compile(r"[A-Z]{2,6}")
_WORD_START_RE = re.compile(r"\b\w")


def _alternation(names: Iterable[str]) -> re.Pattern[str]:
    # Longest first so "Mexico City" is preferred over "Mexico" at the same offset.
    ordered = sorted(set(names), key=len, reverse=True)
    return re.compile(r"(?<![\w-])(?:" + "|".join(re.escape(n) for n in ordered) + r")(?![\w-])")


# Scan order matters: on equal confidence the earlier type wins.
_PATTERNS: tuple[tuple[EntityType, re.Pattern[str]], ...] = (
    (EntityType.token, _alternation(_TOKENS)),
    (EntityType.protocol, _alternation(_PROTOCOLS)),
    (EntityType.organization, _alternation(_ORGANIZATIONS)),
    (EntityType.location, _alternation(_LOCATIONS)),
    (EntityType.person, _alternation(_PEOPLE)),
    (EntityType.government_body, _alternation(_GOVERNMENT_BODIES)),
)


@dataclass(frozen=True)
class ExtractedEntity:
    name: str
    entity_type: EntityType
    confidence: float
    normalized: str


def entity_confidence(name: str, entity_type: EntityType) -> float:
    confidence = BASE_CONFIDENCE
    if len(name.split()) > 1:
        confidence += 0.2
    if name == _WORD_START_RE.sub(lambda m: m.group(0).upper(), name):
        confidence += 0.1
    if entity_type is EntityType.token and _SYMBOL_RE.fullmatch(name):
        confidence += 0.2
    if entity_type is EntityType.organization and _ORG_SUFFIX_RE.search(name):
        confidence += 0.2
    return min(1.0, round(confidence, 4))


def classify_location(normalized: str) -> EntityType:
    return EntityType.country if normalized in COUNTRIES else EntityType.location


def extract_entities(title: str | None, text: str | None = None) -> list[ExtractedEntity]:
    """Entities mentioned in ``title`` and ``text``, one per normalized name.

    When a name matches several types the highest confidence wins. Results are
    ordered by when each name was first matched.
    """
    haystack = ". ".join(part for part in (title, text) if part)
    if not haystack:
        return []

    best: dict[str, ExtractedEntity] = {}
    for entity_type, pattern in _PATTERNS:
        for match in pattern.finditer(haystack):
            name = match.group(0)
            normalized = normalize_entity_name(name)
            etype = entity_type
            if entity_type is EntityType.location:
                etype = classify_location(normalized)
            candidate = ExtractedEntity(
                name=name,
                entity_type=etype,
                confidence=entity_confidence(name, entity_type),
                normalized=normalized,
            )
            existing = best.get(normalized)
            if existing is None or candidate.confidence > existing.confidence:
                best[normalized] = candidate
    return list(best.values())
