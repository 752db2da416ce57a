from __future__ import annotations

import pytest

from goi_engine.intent.fuzzy_matcher import (
    MatchStrategy,
    best_match,
    format_score,
    fuzzy_match_resource_type,
    highlight_match,
    initials,
    levenshtein,
    match,
    needs_disambiguation,
    rank,
    similarity,
)
from goi_engine.schemas.domain import ResourceRef


def test_levenshtein_and_similarity() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert similarity("Prompt", "prompt") == 1.0
    assert similarity("promt", "prompt") == pytest.approx(1 - 1 / 6)


def test_initials_cover_words_and_pinyin() -> None:
    assert initials("Customer Support Bot") == "csb"
    assert initials("情感分析") == "qgfx"
    assert initials("客服问答") == "kfwd"


@pytest.mark.parametrize(
    "query,candidate,strategy",
    [
        ("prompt", "Prompt", MatchStrategy.exact),
        ("prom", "prompt", MatchStrategy.prefix),
        ("abc", "prompt-abc", MatchStrategy.contains),
        ("kfwd", "客服问答", MatchStrategy.initials),
        ("promtp", "prompt", MatchStrategy.edit_distance),
    ],
)
def test_match_strategy(query: str, candidate: str, strategy: MatchStrategy) -> None:
    m = match(query, candidate)

    assert m is not None
    assert m.strategy == strategy


def test_score_bands_follow_strategy_order() -> None:
    exact = match("prompt", "prompt")
    prefix = match("prom", "prompt")
    contains = match("abc", "prompt-abc")
    abbr = match("kfwd", "客服问答")
    edit = match("promtp", "prompt")

    assert exact and prefix and contains and abbr and edit
    assert exact.score > prefix.score > contains.score > abbr.score > edit.score
    assert edit.score < 0.5


def test_word_boundary_contains_scores_higher() -> None:
    on_boundary = match("abc", "prompt-abc")
    glued = match("abc", "prompt-abcd")

    assert on_boundary is not None and glued is not None
    assert on_boundary.score == pytest.approx(0.756)
    assert glued.score == pytest.approx(0.6927, abs=1e-4)


def test_no_match_below_floor() -> None:
    assert match("zzzz", "prompt") is None
    assert match("", "prompt") is None


def test_rank_orders_by_strategy_then_score() -> None:
    hits = rank("prompt", ["my prompt", "prompt", "prompt-abc", "dataset"])

    assert [h.item for h in hits] == ["prompt", "prompt-abc", "my prompt"]
    assert [h.strategy for h in hits] == [MatchStrategy.exact, MatchStrategy.prefix, MatchStrategy.contains]


def test_rank_with_key_limit_and_min_score() -> None:
    resources = [
        ResourceRef(id="p1", type="prompt", name="prompt-abc"),
        ResourceRef(id="p2", type="prompt", name="prompt-abcd"),
        ResourceRef(id="p3", type="prompt", name="unrelated"),
    ]

    hits = rank("abc", resources, key=lambda r: r.name, limit=1)
    strong = rank("abc", resources, key=lambda r: r.name, min_score=0.7)

    assert [h.item.id for h in hits] == ["p1"]
    assert [h.item.id for h in strong] == ["p1"]
    assert best_match("abc", resources, key=lambda r: r.name).item.id == "p1"
    assert best_match("zzzz", resources, key=lambda r: r.name) is None


def test_close_matches_need_disambiguation() -> None:
    hits = rank("abc", ["prompt-abc", "prompt-abcd"])

    assert needs_disambiguation(hits) is True
    assert needs_disambiguation(hits[:1]) is False


def test_exact_match_never_needs_disambiguation() -> None:
    hits = rank("prompt", ["prompt", "prompts"])

    assert needs_disambiguation(hits) is False


def test_fuzzy_resource_type() -> None:
    hit = fuzzy_match_resource_type("promt")

    assert hit is not None
    assert hit.item == "prompt"
    assert fuzzy_match_resource_type("qqqqqq") is None


def test_highlight_and_format() -> None:
    assert highlight_match("Prompt-ABC", "abc") == "Prompt-[ABC]"
    assert highlight_match("Prompt", "zzz") == "Prompt"
    assert format_score(0.756) == "76%"
