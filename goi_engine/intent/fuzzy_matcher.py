from __future__ import annotations

"""String similarity primitives used to resolve resource references.

Strategies
----------

A query is compared with a candidate using five strategies, in order of
precedence:

1. ``exact``: case-insensitive equality, score ``1.0``.
2. ``prefix``: the candidate starts with the query, score ``0.85-0.99``.
3. ``contains``: the query occurs inside the candidate, score ``0.60-0.84``.
   Hits that sit on word boundaries (``"abc"`` in ``"prompt-abc"``) score
   higher than hits glued to other characters (``"prompt-abcd"``).
4. ``initials``: the query matches the initials of the candidate's words or
   the pinyin initials of its Chinese characters, score ``0.50-0.59``.
5. ``edit_distance``: Levenshtein similarity at or above a floor, score
   ``< 0.5``.

The score bands do not overlap, so sorting by score never contradicts the
strategy order. Within a strategy, ties are broken by the shorter candidate.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_SIMILARITY_FLOOR = 0.5
DISAMBIGUATION_THRESHOLD = 0.1
RESOURCE_TYPE_MIN_SCORE = 0.6

_WORD_SPLIT = re.compile(r"[\s\-_./:]+")

# Pinyin initials of the characters that commonly appear in resource names.
PINYIN_INITIALS = {
    "提": "t", "示": "s", "词": "c", "模": "m", "型": "x", "板": "b", "版": "b",
    "数": "s", "据": "j", "集": "j", "任": "r", "务": "w", "评": "p", "估": "g",
    "器": "q", "告": "g", "警": "j", "通": "t", "知": "z", "渠": "q", "道": "d",
    "定": "d", "时": "s", "监": "j", "控": "k", "设": "s", "置": "z", "情": "q",
    "感": "g", "分": "f", "析": "x", "测": "c", "试": "s", "创": "c", "建": "j",
    "编": "b", "辑": "j", "删": "s", "除": "c", "查": "c", "看": "k", "运": "y",
    "行": "x", "导": "d", "出": "c", "入": "r", "新": "x", "增": "z", "加": "j",
    "修": "x", "改": "g", "更": "g", "客": "k", "服": "f", "翻": "f", "译": "y",
    "问": "w", "答": "d", "摘": "z", "要": "y", "文": "w", "本": "b", "类": "l",
    "智": "z", "能": "n", "助": "z", "手": "s", "对": "d", "话": "h", "质": "z",
    "量": "l", "准": "z", "确": "q", "率": "l", "结": "j", "构": "g", "输": "s",
    "规": "g", "则": "z", "日": "r", "报": "b", "周": "z", "月": "y", "线": "x",
    "上": "s", "下": "x", "主": "z", "题": "t", "生": "s", "成": "c", "代": "d",
    "码": "m", "图": "t", "片": "p", "识": "s", "别": "b", "用": "y", "户": "h",
}


class MatchStrategy(str, Enum):
    exact = "exact"
    prefix = "prefix"
    contains = "contains"
    initials = "initials"
    edit_distance = "edit_distance"


STRATEGY_ORDER: List[MatchStrategy] = [
    MatchStrategy.exact,
    MatchStrategy.prefix,
    MatchStrategy.contains,
    MatchStrategy.initials,
    MatchStrategy.edit_distance,
]
_STRATEGY_RANK = {s: i for i, s in enumerate(STRATEGY_ORDER)}


@dataclass(frozen=True)
class FuzzyMatch(Generic[T]):
    """A successful match of a query against one candidate."""

    item: T
    text: str
    strategy: MatchStrategy
    score: float


def levenshtein(a: str, b: str) -> int:
    """Classic two-row Levenshtein distance."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[-1]


def similarity(a: str, b: str) -> float:
    """``1 - distance / max_len``, case-insensitive, in ``[0, 1]``."""
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def initials(text: str) -> str:
    """Initials of ASCII words plus pinyin initials of known Chinese characters."""
    out: List[str] = []
    for word in _WORD_SPLIT.split(text.strip()):
        if not word:
            continue
        ascii_pending = True
        for ch in word:
            if ch in PINYIN_INITIALS:
                out.append(PINYIN_INITIALS[ch])
                ascii_pending = True
            elif ch.isascii() and ch.isalnum():
                if ascii_pending:
                    out.append(ch.lower())
                    ascii_pending = False
            else:
                ascii_pending = True
    return "".join(out)


def _is_boundary(text: str, idx: int) -> bool:
    if idx <= 0 or idx >= len(text):
        return True
    return not text[idx].isalnum() or not text[idx - 1].isalnum()


def _score_exact(q: str, t: str) -> Optional[float]:
    return 1.0 if q == t else None


def _score_prefix(q: str, t: str) -> Optional[float]:
    if len(q) < len(t) and t.startswith(q):
        return 0.85 + 0.14 * (len(q) / len(t))
    return None


def _score_contains(q: str, t: str) -> Optional[float]:
    idx = t.find(q)
    if idx <= 0:
        return None
    end = idx + len(q)
    score = 0.60 + 0.12 * (len(q) / len(t))
    if _is_boundary(t, idx):
        score += 0.06
    if _is_boundary(t, end):
        score += 0.06
    return min(score, 0.84)


def _score_initials(q: str, t: str) -> Optional[float]:
    if len(q) < 2 or not (q.isascii() and q.isalnum()):
        return None
    abbr = initials(t)
    if len(abbr) < 2:
        return None
    if abbr == q:
        return 0.59
    if abbr.startswith(q):
        return 0.55 + 0.03 * (len(q) / len(abbr))
    if q in abbr:
        return 0.50 + 0.03 * (len(q) / len(abbr))
    return None


def _score_edit_distance(q: str, t: str, floor: float) -> Optional[float]:
    best = similarity(q, t)
    for token in _WORD_SPLIT.split(t):
        if token:
            best = max(best, similarity(q, token))
    if best >= floor:
        return round(0.49 * best, 6)
    return None


def match(query: str, candidate: str, *, floor: float = DEFAULT_SIMILARITY_FLOOR) -> Optional[FuzzyMatch[str]]:
    """Match ``query`` against one candidate using the first strategy that hits."""
    q = query.strip().lower()
    t = candidate.strip().lower()
    if not q or not t:
        return None
    for strategy in STRATEGY_ORDER:
        if strategy == MatchStrategy.exact:
            score = _score_exact(q, t)
        elif strategy == MatchStrategy.prefix:
            score = _score_prefix(q, t)
        elif strategy == MatchStrategy.contains:
            score = _score_contains(q, t)
        elif strategy == MatchStrategy.initials:
            score = _score_initials(q, t)
        else:
            score = _score_edit_distance(q, t, floor)
        if score is not None:
            return FuzzyMatch(item=candidate, text=candidate, strategy=strategy, score=score)
    return None


def rank(
    query: str,
    candidates: Sequence[T],
    *,
    key: Optional[Callable[[T], str]] = None,
    limit: Optional[int] = None,
    min_score: float = 0.0,
    floor: float = DEFAULT_SIMILARITY_FLOOR,
) -> List[FuzzyMatch[T]]:
    """Return all matching candidates, best first.

    Ordering is strategy precedence, then score (descending), then candidate
    length (ascending).
    """
    to_text: Callable[[Any], str] = key or str
    hits: List[FuzzyMatch[T]] = []
    for cand in candidates:
        text = to_text(cand)
        m = match(query, text, floor=floor)
        if m is None or m.score < min_score:
            continue
        hits.append(FuzzyMatch(item=cand, text=text, strategy=m.strategy, score=m.score))
    hits.sort(key=lambda h: (_STRATEGY_RANK[h.strategy], -h.score, len(h.text)))
    if limit is not None:
        return hits[:limit]
    return hits


def best_match(
    query: str,
    candidates: Sequence[T],
    *,
    key: Optional[Callable[[T], str]] = None,
    min_score: float = 0.0,
    floor: float = DEFAULT_SIMILARITY_FLOOR,
) -> Optional[FuzzyMatch[T]]:
    hits = rank(query, candidates, key=key, limit=1, min_score=min_score, floor=floor)
    return hits[0] if hits else None


def needs_disambiguation(matches: Sequence[FuzzyMatch[Any]], threshold: float = DISAMBIGUATION_THRESHOLD) -> bool:
    """True when the two best matches are too close to pick one automatically."""
    if len(matches) < 2:
        return False
    first, second = matches[0], matches[1]
    if first.strategy == MatchStrategy.exact and second.strategy != MatchStrategy.exact:
        return False
    return (first.score - second.score) < threshold


def fuzzy_match_resource_type(text: str) -> Optional[FuzzyMatch[str]]:
    """Resolve a possibly misspelled resource type alias, e.g. ``"promt"``."""
    from .aliases import RESOURCE_TYPE_ALIASES

    hit = best_match(text, list(RESOURCE_TYPE_ALIASES.keys()))
    if hit is None:
        return None
    # edit-distance scores live below 0.5, so compare the raw similarity instead
    strength = similarity(text, hit.text) if hit.strategy == MatchStrategy.edit_distance else hit.score
    if strength <= RESOURCE_TYPE_MIN_SCORE:
        return None
    resource_type = RESOURCE_TYPE_ALIASES[hit.text].value
    return FuzzyMatch(item=resource_type, text=hit.text, strategy=hit.strategy, score=hit.score)


def highlight_match(text: str, query: str, *, start: str = "[", end: str = "]") -> str:
    """Wrap the first case-insensitive occurrence of ``query`` in ``text``."""
    if not query:
        return text
    idx = text.lower().find(query.lower())
    if idx < 0:
        return text
    stop = idx + len(query)
    return f"{text[:idx]}{start}{text[idx:stop]}{end}{text[stop:]}"


def format_score(score: float) -> str:
    return f"{round(score * 100)}%"
