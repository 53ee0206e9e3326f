from __future__ import annotations

import re

TOPIC_KEY_MAX_LEN = 180
# Break on an underscore only if it keeps at least 80% of the allowed length.
_TOPIC_KEY_MIN_BREAK = int(TOPIC_KEY_MAX_LEN * 0.8)

_WS_RE = re.compile(r"\s+")
_STRIP_RE = re.compile(r"[\"'()/\\]")
_SEP_RE = re.compile(r"[,\s]+")
_MULTI_UNDERSCORE_RE = re.compile(r"_+")

_FP_PREFIX_RE = re.compile(
    r"^(breaking|urgent|alert|just in|update|developing|report):\s*", re.IGNORECASE
)
_FP_CLICKBAIT_RE = re.compile(
    r"\s[-–—]\s*(you won't believe|read more|click here|find out more)\s*$",
    re.IGNORECASE,
)
_FP_SOURCE_SUFFIX_RE = re.compile(r"\s+[-–—]\s+\w+\s*$")
_FP_PUNCT_RE = re.compile(r"[^\w\s]")


def normalize_topic_key(raw: str | None) -> str:
    """Deterministic matching key for a cluster topic.

    Hyphens, colons, periods and plus signs survive because they distinguish
    topics ("covid-19", "q3: earnings", "s&p 500" vs "s and p"). The function
    is idempotent.
    """
    if not raw:
        return ""
    key = raw.lower().replace("&", " and ")
    key = _WS_RE.sub(" ", key)
    key = _STRIP_RE.sub("", key)
    key = _SEP_RE.sub("_", key)
    key = _MULTI_UNDERSCORE_RE.sub("_", key).strip("_")
    if len(key) <= TOPIC_KEY_MAX_LEN:
        return key

    cut = key[:TOPIC_KEY_MAX_LEN]
    boundary = cut.rfind("_")
    if boundary > _TOPIC_KEY_MIN_BREAK:
        cut = cut[:boundary]
    return cut.strip("_")


def title_fingerprint(title: str | None) -> str:
    """Normalized title used to spot syndicated copies within a cluster."""
    if not title:
        return ""
    fp = title.lower()
    fp = _FP_PREFIX_RE.sub("", fp)
    fp = _FP_CLICKBAIT_RE.sub("", fp)
    fp = _FP_SOURCE_SUFFIX_RE.sub("", fp)
    fp = _FP_PUNCT_RE.sub(" ", fp)
    return _WS_RE.sub(" ", fp).strip()
