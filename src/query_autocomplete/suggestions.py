from __future__ import annotations

import enum
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from .logs_parser import BOOLEAN_OPERATORS, FACET_DESCRIPTIONS
from .query_context import ContextType, LogsFacet, QueryContext


MAX_SUGGESTIONS = 100

AGGREGATORS = {
    "avg": "Average of all values",
    "sum": "Sum of all values",
    "min": "Minimum value",
    "max": "Maximum value",
}

LEVEL_COMBINATIONS = {
    "(ERROR OR WARN)": "Error or warning logs",
    "(ERROR OR WARN OR FATAL)": "Error, warning, or fatal logs",
    "(INFO OR DEBUG)": "Info or debug logs",
}

OPERATOR_DESCRIPTIONS = {
    "AND": "Logical AND - both conditions must be true",
    "OR": "Logical OR - either condition can be true",
    "NOT": "Logical NOT - excludes matching logs",
}

_METRICS_VALUE_SPECIAL_RE = re.compile(r'([\s,{}()"\\])')
_LOGS_VALUE_SPECIAL_RE = re.compile(r'[\s():"\\]')


class Dataset(enum.StrEnum):
    METRICS = "metrics"
    TAGS = "tags"
    TAG_VALUES = "tag_values"
    SERVICES = "services"
    SOURCES = "sources"
    LEVELS = "levels"
    FIELDS = "fields"
    FIELD_VALUES = "field_values"


class SuggestionCategory(enum.StrEnum):
    AGGREGATORS = "aggregators"
    METRICS = "metrics"
    SERVICES = "services"
    SOURCES = "sources"
    LEVELS = "levels"
    TAGS = "tags"
    FACETS = "facets"
    TAG_VALUES = "tag_values"
    FACET_VALUES = "facet_values"
    OPERATORS = "operators"
    PATTERNS = "patterns"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class CompletionKind(enum.StrEnum):
    AGGREGATOR = "aggregator"
    METRIC = "metric"
    FILTER_TAG_KEY = "filter_tag_key"
    GROUPING_TAG = "grouping_tag"
    FILTER_TAG_VALUE = "filter_tag_value"
    LOGS_SERVICE = "logs_service"
    LOGS_SOURCE = "logs_source"
    LOGS_LEVEL = "logs_level"
    LOGS_FACET = "logs_facet"
    LOGS_FACET_VALUE = "logs_facet_value"
    LOGS_OPERATOR = "logs_operator"
    LOGS_PATTERN = "logs_pattern"

    @property
    def category(self) -> SuggestionCategory:
        return _KIND_CATEGORIES[self]


_KIND_CATEGORIES = {
    CompletionKind.AGGREGATOR: SuggestionCategory.AGGREGATORS,
    CompletionKind.METRIC: SuggestionCategory.METRICS,
    CompletionKind.FILTER_TAG_KEY: SuggestionCategory.TAGS,
    CompletionKind.GROUPING_TAG: SuggestionCategory.TAGS,
    CompletionKind.FILTER_TAG_VALUE: SuggestionCategory.TAG_VALUES,
    CompletionKind.LOGS_SERVICE: SuggestionCategory.SERVICES,
    CompletionKind.LOGS_SOURCE: SuggestionCategory.SOURCES,
    CompletionKind.LOGS_LEVEL: SuggestionCategory.LEVELS,
    CompletionKind.LOGS_FACET: SuggestionCategory.FACETS,
    CompletionKind.LOGS_FACET_VALUE: SuggestionCategory.FACET_VALUES,
    CompletionKind.LOGS_OPERATOR: SuggestionCategory.OPERATORS,
    CompletionKind.LOGS_PATTERN: SuggestionCategory.PATTERNS,
}


@dataclass(frozen=True)
class CompletionItem:
    label: str
    kind: CompletionKind
    insert_text: str
    sort_key: str = ""
    detail: str | None = None

    @property
    def category(self) -> SuggestionCategory:
        return self.kind.category


@dataclass(frozen=True)
class SuggestionGroup:
    category: SuggestionCategory
    label: str
    items: Sequence[CompletionItem]


@dataclass(frozen=True)
class CandidateSets:
    metrics: Sequence[str] = ()
    tags: Sequence[str] = ()
    tag_values: Sequence[str] = ()
    services: Sequence[str] = ()
    sources: Sequence[str] = ()
    levels: Sequence[str] = ()
    fields: Sequence[str] = ()
    field_values: Sequence[str] = ()
    errors: Mapping[Dataset, str] = field(default_factory=dict)


def extract_tag_keys(tags: Iterable[str]) -> list[str]:
    keys: dict[str, None] = {}
    for tag in tags:
        key = tag.partition(":")[0].strip()
        if key:
            keys[key] = None
    return list(keys)


def extract_tag_values(tags: Iterable[str], tag_key: str) -> list[str]:
    values: dict[str, None] = {}
    for tag in tags:
        key, sep, value = tag.partition(":")
        if sep and key.strip() == tag_key and value.strip():
            values[value.strip()] = None
    return list(values)


def escape_tag_value(value: str) -> str:
    return _METRICS_VALUE_SPECIAL_RE.sub(r"\\\1", value)


def quote_facet_value(value: str) -> str:
    if not _LOGS_VALUE_SPECIAL_RE.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _match_rank(text: str, token: str) -> int | None:
    text, token = text.lower(), token.lower()
    if not token:
        return 1
    if text == token:
        return 0
    if text.startswith(token):
        return 1
    if token in text:
        return 2
    return None


def _item(
    kind: CompletionKind,
    label: str,
    token: str,
    *,
    insert_text: str | None = None,
    detail: str | None = None,
    tier: int = 0,
    prefix_only: bool = False,
) -> CompletionItem | None:
    rank = _match_rank(label, token)
    if rank is None or (prefix_only and rank > 1):
        return None
    return CompletionItem(
        label=label,
        kind=kind,
        insert_text=label if insert_text is None else insert_text,
        sort_key=f"{rank}{tier}_{label.lower()}",
        detail=detail,
    )


def _metric_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    for metric in candidates.metrics:
        yield _item(CompletionKind.METRIC, metric, context.current_token)


def _aggregator_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    for aggregator, detail in AGGREGATORS.items():
        yield _item(
            CompletionKind.AGGREGATOR,
            aggregator,
            context.current_token.strip(),
            detail=detail,
            prefix_only=True,
        )


def _tag_key_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    token = context.current_token.lstrip("!-")
    for key in extract_tag_keys(candidates.tags):
        if key in context.existing_keys:
            continue
        yield _item(
            CompletionKind.FILTER_TAG_KEY,
            key,
            token,
            insert_text=f"{key}:",
            detail="Tag key",
        )


def _grouping_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    for key in extract_tag_keys(candidates.tags):
        if key in context.existing_keys:
            continue
        yield _item(
            CompletionKind.GROUPING_TAG,
            key,
            context.current_token,
            detail="Group by tag",
        )


def _tag_value_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    token = context.current_token.strip('"')
    for value in candidates.tag_values:
        yield _item(
            CompletionKind.FILTER_TAG_VALUE,
            value,
            token,
            insert_text=escape_tag_value(value),
            detail=f"Value for tag {context.tag_key}",
        )


def _facet_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    for name in candidates.fields:
        yield _item(
            CompletionKind.LOGS_FACET,
            f"{name}:",
            context.current_token,
            detail=FACET_DESCRIPTIONS.get(name, f"Filter by {name}"),
        )


def _operator_items(context: QueryContext) -> Iterable[CompletionItem | None]:
    if not context.line_text[: context.line_cursor].strip():
        return
    for operator in BOOLEAN_OPERATORS:
        yield _item(
            CompletionKind.LOGS_OPERATOR,
            operator,
            context.current_token,
            detail=OPERATOR_DESCRIPTIONS[operator],
        )


def _pattern_items(context: QueryContext) -> Iterable[CompletionItem | None]:
    token = context.current_token
    if "*" not in token:
        yield _item(
            CompletionKind.LOGS_PATTERN,
            "*",
            token,
            detail="Wildcard - matches any characters",
        )
    yield _item(
        CompletionKind.LOGS_PATTERN,
        '"exact phrase"',
        token,
        insert_text='""',
        detail="Exact phrase search",
    )
    yield _item(
        CompletionKind.LOGS_PATTERN,
        "-excluded",
        token,
        insert_text="-",
        detail="Exclude term",
    )


def _logs_search_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    if context.in_quotes:
        return
    yield from _facet_items(context, candidates)
    if not context.after_operator:
        yield from _operator_items(context)
        yield from _pattern_items(context)


def _logs_value_items(
    context: QueryContext, candidates: CandidateSets
) -> Iterable[CompletionItem | None]:
    token = context.current_token
    if context.facet is LogsFacet.SERVICE:
        kind, values = CompletionKind.LOGS_SERVICE, candidates.services
    elif context.facet is LogsFacet.SOURCE:
        kind, values = CompletionKind.LOGS_SOURCE, candidates.sources
    elif context.facet is LogsFacet.LEVEL:
        kind, values = CompletionKind.LOGS_LEVEL, candidates.levels
    else:
        kind, values = CompletionKind.LOGS_FACET_VALUE, candidates.field_values
    for value in values:
        yield _item(
            kind,
            value,
            token,
            insert_text=quote_facet_value(value),
            detail=f"{context.tag_key}: {value}",
        )
    if context.facet is LogsFacet.LEVEL and not context.in_group:
        for combination, detail in LEVEL_COMBINATIONS.items():
            yield _item(kind, combination, token, detail=detail, tier=1)


_GENERATORS: Mapping[
    ContextType,
    Callable[[QueryContext, CandidateSets], Iterable[CompletionItem | None]],
] = {
    ContextType.METRIC_NAME: _metric_items,
    ContextType.AGGREGATOR_PREFIX: _aggregator_items,
    ContextType.FILTER_TAG_KEY: _tag_key_items,
    ContextType.FILTER_TAG_VALUE: _tag_value_items,
    ContextType.GROUPING_TAG: _grouping_items,
    ContextType.LOGS_SEARCH: _logs_search_items,
    ContextType.LOGS_FACET_NAME: _logs_search_items,
    ContextType.LOGS_FACET_VALUE: _logs_value_items,
}


def generate_suggestions(
    context: QueryContext,
    candidates: CandidateSets,
    *,
    limit: int = MAX_SUGGESTIONS,
) -> list[CompletionItem]:
    generator = _GENERATORS[context.context_type]
    items = sorted(
        (item for item in generator(context, candidates) if item is not None),
        key=lambda item: item.sort_key,
    )
    result: list[CompletionItem] = []
    seen: set[str] = set()
    for item in items:
        if item.label in seen:
            continue
        seen.add(item.label)
        result.append(item)
        if len(result) >= limit:
            break
    return result


def group_suggestions(items: Iterable[CompletionItem]) -> list[SuggestionGroup]:
    buckets: dict[SuggestionCategory, list[CompletionItem]] = {}
    for item in items:
        buckets.setdefault(item.category, []).append(item)
    return [
        SuggestionGroup(
            category=category,
            label=category.label,
            items=tuple(sorted(buckets[category], key=lambda item: item.sort_key)),
        )
        for category in SuggestionCategory
        if buckets.get(category)
    ]
