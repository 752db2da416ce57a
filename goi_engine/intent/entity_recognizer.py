"""Entity extraction from free text.

The recognizer finds four kinds of entities in a human command:

- the resource type (via the alias table, then fuzzy alias matching, then the
  page the human is on),
- the action verb,
- the resource name (quoted text first, otherwise what remains after removing
  verbs, aliases and modifiers), optionally resolved against a
  ``ResourceCatalog``,
- parameters such as quantities and time ranges.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from ..schemas.domain import ResourceRef
from ..schemas.intent import EntityMatch, EntityType, IntentContext
from .aliases import (
    ACTION_ALIASES_BY_LENGTH,
    RESOURCE_ALIASES_BY_LENGTH,
    RESOURCE_TYPE_ALIASES,
)
from .catalog import ResourceCatalog
from .fuzzy_matcher import (
    MatchStrategy,
    fuzzy_match_resource_type,
    needs_disambiguation,
    rank,
)

logger = logging.getLogger(__name__)

COMMON_VERBS = [
    "创建", "新建", "添加", "新增", "打开", "去", "进入", "跳转到", "跳转", "访问",
    "删除", "移除", "删掉", "去掉", "编辑", "修改", "更新", "改", "查看", "查询",
    "看看", "显示", "列出", "运行", "执行", "跑一下", "启动", "测试一下", "试试", "试一下",
    "导出", "下载", "保存", "对比", "比较", "发布", "配置",
    "create", "add", "new", "open", "go to", "goto", "visit", "delete", "remove",
    "edit", "update", "modify", "show", "list", "view", "get", "display", "run",
    "execute", "start", "test", "export", "download", "save", "compare",
]
MODIFIERS = ["的", "一个", "个", "这个", "那个", "所有", "全部", "the", "a", "an", "this", "that", "all", "every"]
PAGE_SUFFIXES = ["页面", "页", "page"]

_QUOTED = re.compile(r"[\"'“”‘’「『《](.+?)[\"'“”‘’」』》]")
_QUANTITY_PATTERNS = [
    re.compile(r"(\d+)\s*(个|条|项|份|次)"),
    re.compile(r"前\s*(\d+)"),
    re.compile(r"top\s*(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(items?|records?|rows?)", re.IGNORECASE),
]
_RELATIVE_DAYS = [
    re.compile(r"最近\s*(\d+)\s*天"),
    re.compile(r"(?:last|past)\s*(\d+)\s*days?", re.IGNORECASE),
]
_NAMED_RANGES = [
    ("今天", "today"),
    ("昨天", "yesterday"),
    ("本周", "this_week"),
    ("上周", "last_week"),
    ("本月", "this_month"),
    ("上月", "last_month"),
    ("today", "today"),
    ("yesterday", "yesterday"),
    ("this week", "this_week"),
    ("last week", "last_week"),
]

CATALOG_MIN_SCORE = 0.3
CATALOG_LIMIT = 5
RESOLVE_MIN_SCORE = 0.85


def _is_ascii_word(token: str) -> bool:
    return token.isascii()


def _alias_pattern(alias: str) -> re.Pattern[str]:
    escaped = re.escape(alias)
    if _is_ascii_word(alias):
        return re.compile(rf"(?<![A-Za-z0-9_]){escaped}(?![A-Za-z0-9_])", re.IGNORECASE)
    return re.compile(escaped, re.IGNORECASE)


_ALIAS_PATTERNS = [(alias, rtype, _alias_pattern(alias)) for alias, rtype in RESOURCE_ALIASES_BY_LENGTH]
_ACTION_PATTERNS = [(alias, action, _alias_pattern(alias)) for alias, action in ACTION_ALIASES_BY_LENGTH]


def resource_type_from_page(page: Optional[str]) -> Optional[str]:
    """Infer the resource type shown on a page path such as ``/prompts/123``."""
    if not page:
        return None
    for segment in re.split(r"[/?#&=]+", page.lower()):
        if not segment:
            continue
        rtype = RESOURCE_TYPE_ALIASES.get(segment) or RESOURCE_TYPE_ALIASES.get(segment.rstrip("s"))
        if rtype is not None:
            return rtype.value
        if segment.replace("-", "_") in RESOURCE_TYPE_ALIASES:
            return RESOURCE_TYPE_ALIASES[segment.replace("-", "_")].value
    return None


def recognize_resource_type(text: str, context: Optional[IntentContext] = None) -> Optional[EntityMatch]:
    stripped = text.strip()
    for alias, rtype, pattern in _ALIAS_PATTERNS:
        m = pattern.search(stripped)
        if m is None:
            continue
        exact = stripped.lower() == alias.lower()
        return EntityMatch(
            type=EntityType.resource_type,
            value=rtype.value,
            resource_type=rtype.value,
            confidence=1.0 if exact else 0.95,
            start=m.start(),
            end=m.end(),
        )

    for token in re.split(r"\s+", stripped):
        if len(token) < 4 or not token.isascii():
            continue
        hit = fuzzy_match_resource_type(token)
        if hit is not None:
            return EntityMatch(
                type=EntityType.resource_type,
                value=hit.item,
                resource_type=hit.item,
                confidence=0.8,
            )

    if context is not None:
        page_type = resource_type_from_page(context.current_page)
        if page_type is not None:
            return EntityMatch(
                type=EntityType.resource_type,
                value=page_type,
                resource_type=page_type,
                confidence=0.6,
            )
    return None


def recognize_action(text: str) -> Optional[EntityMatch]:
    best: Optional[tuple[int, int, str]] = None
    for alias, action, pattern in _ACTION_PATTERNS:
        m = pattern.search(text)
        if m is None:
            continue
        # earliest occurrence wins, longer alias breaks ties
        key = (m.start(), -len(alias))
        if best is None or key < (best[0], -best[1]):
            best = (m.start(), len(alias), action)
    if best is None:
        return None
    start, length, action = best
    return EntityMatch(type=EntityType.action, value=action, confidence=0.9, start=start, end=start + length)


def _strip_edges(text: str, words: Sequence[str]) -> str:
    changed = True
    while changed and text:
        changed = False
        for word in sorted(words, key=len, reverse=True):
            low = text.lower()
            w = word.lower()
            if low.startswith(w) and (not w.isascii() or len(text) == len(w) or not text[len(w)].isalnum()):
                text = text[len(w):].strip()
                changed = True
            elif low.endswith(w) and (not w.isascii() or len(text) == len(w) or not text[-len(w) - 1].isalnum()):
                text = text[: len(text) - len(w)].strip()
                changed = True
    return text


def extract_resource_name(text: str, resource_type: Optional[str] = None) -> Optional[EntityMatch]:
    """Extract the specific resource name a command refers to, if any."""
    quoted = _QUOTED.search(text)
    if quoted is not None and quoted.group(1).strip():
        return EntityMatch(
            type=EntityType.resource_name,
            value=quoted.group(1).strip(),
            resource_type=resource_type,
            confidence=0.95,
            start=quoted.start(1),
            end=quoted.end(1),
        )

    cleaned = _strip_edges(text.strip(), COMMON_VERBS)
    for _alias, _rtype, pattern in _ALIAS_PATTERNS:
        cleaned = pattern.sub(" ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    cleaned = _strip_edges(cleaned, MODIFIERS + PAGE_SUFFIXES)
    cleaned = cleaned.strip(" ,，。.!！?？:：")
    if len(cleaned) < 2:
        return None
    idx = text.find(cleaned)
    return EntityMatch(
        type=EntityType.resource_name,
        value=cleaned,
        resource_type=resource_type,
        confidence=0.7,
        start=idx if idx >= 0 else None,
        end=idx + len(cleaned) if idx >= 0 else None,
    )


def extract_parameters(text: str) -> List[EntityMatch]:
    """Extract quantity and time range parameters.

    Parameter values are encoded as ``key=value`` strings; see
    ``parameters_from_entities``.
    """
    results: List[EntityMatch] = []
    taken: List[range] = []

    for pattern in _RELATIVE_DAYS:
        m = pattern.search(text)
        if m is not None:
            results.append(
                EntityMatch(
                    type=EntityType.parameter,
                    value=f"time_range=last_{int(m.group(1))}_days",
                    confidence=0.85,
                    start=m.start(),
                    end=m.end(),
                )
            )
            taken.append(range(m.start(), m.end()))
            break
    else:
        lowered = text.lower()
        for phrase, value in _NAMED_RANGES:
            idx = lowered.find(phrase)
            if idx >= 0:
                results.append(
                    EntityMatch(
                        type=EntityType.parameter,
                        value=f"time_range={value}",
                        confidence=0.85,
                        start=idx,
                        end=idx + len(phrase),
                    )
                )
                break

    for pattern in _QUANTITY_PATTERNS:
        m = pattern.search(text)
        if m is None or any(m.start() in r for r in taken):
            continue
        results.append(
            EntityMatch(
                type=EntityType.parameter,
                value=f"quantity={int(m.group(1))}",
                confidence=0.9,
                start=m.start(),
                end=m.end(),
            )
        )
        break
    return results


def parameters_from_entities(entities: Iterable[EntityMatch]) -> Dict[str, object]:
    params: Dict[str, object] = {}
    for ent in entities:
        if ent.type != EntityType.parameter or "=" not in ent.value:
            continue
        key, _, raw = ent.value.partition("=")
        params[key] = int(raw) if raw.isdigit() else raw
    return params


def resolve_against_catalog(entity: EntityMatch, catalog: ResourceCatalog) -> EntityMatch:
    """Attach catalog candidates to a resource-name entity.

    A single strong hit resolves ``resource_id``; several close hits are kept
    as ``candidates`` so that the confidence evaluator can flag ambiguity.
    """
    pool: Sequence[ResourceRef] = catalog.list_resources(entity.resource_type)
    hits = rank(entity.value, pool, key=lambda r: r.name, limit=CATALOG_LIMIT, min_score=CATALOG_MIN_SCORE)
    if not hits:
        logger.debug(f"No catalog match for resource name '{entity.value}'")
        return entity

    candidates = [h.item.model_copy(update={"score": round(h.score, 4)}) for h in hits]
    top = hits[0]
    ambiguous = needs_disambiguation(hits)
    update: Dict[str, object] = {"candidates": candidates}
    if not ambiguous and (top.strategy == MatchStrategy.exact or top.score >= RESOLVE_MIN_SCORE):
        update["resource_id"] = top.item.id
        update["resource_type"] = entity.resource_type or top.item.type
        update["confidence"] = max(entity.confidence, top.score)
    else:
        update["confidence"] = min(entity.confidence, top.score)
    return entity.model_copy(update=update)


def recognize_entities(
    text: str,
    context: Optional[IntentContext] = None,
    catalog: Optional[ResourceCatalog] = None,
) -> List[EntityMatch]:
    entities: List[EntityMatch] = []

    rtype = recognize_resource_type(text, context)
    if rtype is not None:
        entities.append(rtype)

    action = recognize_action(text)
    if action is not None:
        entities.append(action)

    name = extract_resource_name(text, rtype.value if rtype is not None else None)
    if name is not None:
        if catalog is not None:
            name = resolve_against_catalog(name, catalog)
        entities.append(name)

    entities.extend(extract_parameters(text))
    return entities


def merge_entities(*groups: Iterable[EntityMatch]) -> List[EntityMatch]:
    """Merge entity lists, keeping the most confident entity per ``(type, value)``."""
    merged: Dict[tuple[EntityType, str], EntityMatch] = {}
    for group in groups:
        for ent in group:
            key = (ent.type, ent.value)
            if key not in merged or ent.confidence > merged[key].confidence:
                merged[key] = ent
    return list(merged.values())


def top_entity(entities: Iterable[EntityMatch], entity_type: Optional[EntityType] = None) -> Optional[EntityMatch]:
    pool = [e for e in entities if entity_type is None or e.type == entity_type]
    if not pool:
        return None
    return max(pool, key=lambda e: e.confidence)
