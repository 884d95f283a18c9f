from __future__ import annotations

import logging
import string
from collections.abc import Collection
from dataclasses import dataclass

from .catalog_client import CatalogClient, CatalogError, CatalogUnauthorized
from .metrics_parser import DEFAULT_AGGREGATOR, split_metrics_expression
from .query_context import (
    ContextType,
    QueryContext,
    QueryLanguage,
    clamp_offset,
    locate_line,
)
from .suggestions import CompletionItem, CompletionKind


logger = logging.getLogger(__name__)


WORD_CHARS = frozenset(string.ascii_letters + string.digits + "_.-")
KEY_CHARS = WORD_CHARS | frozenset("!/@")
FACET_CHARS = frozenset(string.ascii_letters + string.digits + "_.@")
OPERATOR_CHARS = frozenset(string.ascii_letters)
METRICS_VALUE_STOPS = frozenset(string.whitespace + ",{}()")
LOGS_VALUE_STOPS = frozenset(string.whitespace + "()")

_VALUE_KINDS = frozenset(
    {
        CompletionKind.FILTER_TAG_VALUE,
        CompletionKind.LOGS_SERVICE,
        CompletionKind.LOGS_SOURCE,
        CompletionKind.LOGS_LEVEL,
        CompletionKind.LOGS_FACET_VALUE,
    }
)


@dataclass(frozen=True)
class Replacement:
    new_text: str
    new_cursor_offset: int


def _splice(text: str, start: int, end: int, insert: str) -> Replacement:
    return Replacement(
        new_text=text[:start] + insert + text[end:],
        new_cursor_offset=start + len(insert),
    )


def _run(text: str, pos: int, chars: Collection[str]) -> tuple[int, int]:
    start = pos
    while start > 0 and text[start - 1] in chars:
        start -= 1
    end = pos
    while end < len(text) and text[end] in chars:
        end += 1
    return start, end


def _consume_colon(text: str, end: int, insert: str) -> int:
    if insert.endswith(":") and text[end : end + 1] == ":":
        return end + 1
    return end


def _replace_metric_line(
    text: str, cursor: int, item: CompletionItem
) -> Replacement:
    line_text, line_offset = locate_line(text, cursor)
    expression = split_metrics_expression(line_text)
    remainder = expression.remainder
    if not remainder.startswith("{"):
        remainder = "{*}" + remainder
    aggregator = expression.aggregator or DEFAULT_AGGREGATOR
    new_line = f"{aggregator}:{item.insert_text}{remainder}"
    return _splice(text, line_offset, line_offset + len(line_text), new_line)


def _replace_list_entry(
    text: str, cursor: int, item: CompletionItem
) -> Replacement:
    line_text, line_offset = locate_line(text, cursor)
    pos = cursor - line_offset
    list_start = line_text.rfind("{", 0, pos) + 1
    start, end = _run(line_text, pos, KEY_CHARS)
    typed = line_text[start:pos]
    partial = typed.lstrip("!-")
    if partial and partial.lower() in item.label.lower():
        start += len(typed) - len(partial)
        end = _consume_colon(line_text, end, item.insert_text)
        return _splice(
            text, line_offset + start, line_offset + end, item.insert_text
        )
    before = line_text[list_start:end]
    insert = item.insert_text
    if before.strip() and before[-1] not in ",(" and not before[-1].isspace():
        insert = "," + insert
    return _splice(text, line_offset + end, line_offset + end, insert)


def _replace_value(
    text: str, cursor: int, item: CompletionItem, context: QueryContext
) -> Replacement:
    stops = METRICS_VALUE_STOPS
    if context.language == QueryLanguage.LOGS:
        stops = LOGS_VALUE_STOPS
    start: int | None = None
    if context.context_type in (
        ContextType.FILTER_TAG_VALUE,
        ContextType.LOGS_FACET_VALUE,
    ):
        token = context.current_token
        if text[cursor - len(token) : cursor] == token:
            start = cursor - len(token)
            if start > 0 and text[start - 1] == '"':
                start -= 1
    if start is None:
        start = cursor
        while start > 0 and text[start - 1] not in stops:
            if text[start - 1] == ":":
                break
            start -= 1
    end = cursor
    while end < len(text) and text[end] not in stops:
        end += 1
    return _splice(text, start, end, item.insert_text)


def _replace_operator(text: str, cursor: int, item: CompletionItem) -> Replacement:
    operator = item.insert_text.strip()
    start, end = _run(text, cursor, OPERATOR_CHARS)
    partial = text[start:cursor]
    if not partial or not operator.lower().startswith(partial.lower()):
        start = end = cursor
    insert = operator
    if start > 0 and not text[start - 1].isspace() and text[start - 1] != "(":
        insert = " " + insert
    if end >= len(text) or not text[end].isspace():
        insert += " "
    return _splice(text, start, end, insert)


def apply_completion(
    text: str, cursor_offset: int, item: CompletionItem, context: QueryContext
) -> Replacement:
    cursor = clamp_offset(text, cursor_offset)
    kind = item.kind
    if kind == CompletionKind.METRIC:
        return _replace_metric_line(text, cursor, item)
    if kind in (CompletionKind.GROUPING_TAG, CompletionKind.FILTER_TAG_KEY):
        return _replace_list_entry(text, cursor, item)
    if kind in _VALUE_KINDS:
        return _replace_value(text, cursor, item, context)
    if kind == CompletionKind.LOGS_OPERATOR:
        return _replace_operator(text, cursor, item)
    if kind == CompletionKind.LOGS_PATTERN:
        return _splice(text, cursor, cursor, item.insert_text)
    chars = FACET_CHARS if kind == CompletionKind.LOGS_FACET else WORD_CHARS
    start, end = _run(text, cursor, chars)
    end = _consume_colon(text, end, item.insert_text)
    return _splice(text, start, end, item.insert_text)


async def resolve_replacement(
    text: str,
    cursor_offset: int,
    item: CompletionItem,
    context: QueryContext,
    *,
    catalog: CatalogClient | None = None,
) -> Replacement:
    if catalog is not None:
        try:
            result = await catalog.complete(
                query=text,
                cursor_offset=cursor_offset,
                selected_item=item.insert_text,
                item_kind=item.kind.value,
            )
        except CatalogUnauthorized:
            raise
        except CatalogError as ex:
            logger.warning("Remote completion failed, applying locally: %s", ex)
        else:
            return Replacement(
                new_text=result.new_query,
                new_cursor_offset=clamp_offset(
                    result.new_query, result.new_cursor_offset
                ),
            )
    return apply_completion(text, cursor_offset, item, context)
