from __future__ import annotations

import json

import pytest

from story_heat.errors import ErrorKind, QueryFailure
from story_heat.models import decode_keywords, encode_keywords


def test_encode_keywords_is_versioned_and_trimmed() -> None:
    assert encode_keywords([" fed ", "", "rates", "  "]) == {
        "version": 1,
        "keywords": ["fed", "rates"],
    }
    assert encode_keywords(None) == {"version": 1, "keywords": []}


def test_decode_keywords_accepts_stored_forms() -> None:
    assert decode_keywords(None) == []
    assert decode_keywords({"version": 1, "keywords": ["fed", "rates"]}) == ["fed", "rates"]
    assert decode_keywords({"version": 1}) == []
    assert decode_keywords(json.dumps({"version": 1, "keywords": ["btc"]})) == ["btc"]
    assert decode_keywords(b'{"version": 1, "keywords": ["eth"]}') == ["eth"]
    # Rows written before the versioned document existed.
    assert decode_keywords(["legacy", "array"]) == ["legacy", "array"]
    assert decode_keywords('["legacy"]') == ["legacy"]


@pytest.mark.parametrize(
    "raw",
    [
        {"version": 2, "keywords": ["x"]},
        {"keywords": ["x"]},
        "{not json",
        42,
        [1, 2],
        {"version": 1, "keywords": "fed"},
    ],
)
def test_decode_keywords_rejects_corrupt_documents(raw: object) -> None:
    with pytest.raises(QueryFailure) as exc_info:
        decode_keywords(raw)
    assert exc_info.value.kind is ErrorKind.query_failure
