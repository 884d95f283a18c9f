from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterator
from dataclasses import dataclass, replace
from functools import cached_property

from lark import Lark, LarkError, Token

from .grammars import METRICS_TOKENS
from .query_context import (
    ContextType,
    QueryContext,
    QueryValidation,
    clamp_offset,
    locate_line,
    mask_placeholders,
)


logger = logging.getLogger(__name__)


metrics_lexer = Lark(METRICS_TOKENS, parser="lalr", lexer="basic")

DEFAULT_AGGREGATOR = "avg"

FILTER_TRIGGERS = frozenset({"LBRACE", "LPAR", "COMMA", "WS"})
GROUPING_TRIGGERS = frozenset({"LBRACE", "COMMA"})
IN_LIST_TRIGGERS = frozenset({"LPAR", "COMMA", "WS"})

_METRIC_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
_TAG_KEY_RE = re.compile(r"^[!-]?[A-Za-z0-9_.\-/@]+$")
_BOOLEAN_FILTER_RE = re.compile(r"\b(?:AND|OR|NOT|IN)\b")
_BY_RE = re.compile(r"\s+by\s+")
_GROUPING_RE = re.compile(r"\s+by\s+\{([^}]*)\}")
_UNESCAPED_COMMA_RE = re.compile(r"(?<!\\),")


def tokenize_metrics_line(line: str) -> list[Token]:
    tree = metrics_lexer.parse(mask_placeholders(line))
    return [token for token in tree.children if isinstance(token, Token)]


@dataclass(frozen=True)
class _Span:
    start: int
    end: int

    def contains(self, pos: int) -> bool:
        return self.start < pos <= self.end


@dataclass(frozen=True)
class MetricsExpression:
    aggregator: str | None
    metric_name: str | None
    remainder: str


class _MetricsLine:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize_metrics_line(text)

    def value(self, index: int) -> str:
        token = self.tokens[index]
        return self.text[token.start_pos : token.end_pos]

    def _type(self, index: int) -> str | None:
        if 0 <= index < len(self.tokens):
            return self.tokens[index].type
        return None

    def _is_by_keyword(self, index: int) -> bool:
        return (
            self._type(index) == "WORD"
            and self.value(index) == "by"
            and self._type(index - 1) == "WS"
            and self._type(index + 1) in ("WS", None)
        )

    def _span_from(self, open_index: int) -> _Span:
        depth = 0
        for token in self.tokens[open_index + 1 :]:
            if token.type == "LBRACE":
                depth += 1
            elif token.type == "RBRACE":
                if depth == 0:
                    return _Span(self.tokens[open_index].start_pos, token.start_pos)
                depth -= 1
        return _Span(self.tokens[open_index].start_pos, len(self.text))

    @cached_property
    def grouping_spans(self) -> list[_Span]:
        spans = []
        for index in range(len(self.tokens)):
            if (
                self._is_by_keyword(index)
                and self._type(index + 1) == "WS"
                and self._type(index + 2) == "LBRACE"
            ):
                spans.append(self._span_from(index + 2))
        return spans

    @cached_property
    def filter_span(self) -> _Span | None:
        for index, token in enumerate(self.tokens):
            if token.type != "LBRACE":
                continue
            if any(
                span.start == token.start_pos or span.contains(token.start_pos)
                for span in self.grouping_spans
            ):
                continue
            return self._span_from(index)
        return None

    @cached_property
    def metric_end(self) -> int:
        for index, token in enumerate(self.tokens):
            if token.type == "LBRACE":
                return token.start_pos
            if self._is_by_keyword(index):
                return self.tokens[index - 1].start_pos
        return len(self.text)

    @cached_property
    def aggregator_colon(self) -> int | None:
        for token in self.tokens:
            if token.start_pos >= self.metric_end:
                break
            if token.type == "COLON":
                return token.start_pos
        return None

    @cached_property
    def metric_name(self) -> str | None:
        start = 0 if self.aggregator_colon is None else self.aggregator_colon + 1
        return self.text[start : self.metric_end].strip() or None

    def token_before(self, pos: int) -> int | None:
        for index in range(len(self.tokens) - 1, -1, -1):
            if self.tokens[index].start_pos < pos:
                return index
        return None

    def _tokens_within(self, span: _Span) -> Iterator[int]:
        for index, token in enumerate(self.tokens):
            if token.start_pos <= span.start:
                continue
            if token.start_pos >= span.end:
                break
            yield index

    def _significant(self, index: int, step: int) -> int | None:
        index += step
        while 0 <= index < len(self.tokens):
            if self.tokens[index].type != "WS":
                return index
            index += step
        return None

    def _segment_start(self, lower: int, pos: int, triggers: Collection[str]) -> int:
        index = self.token_before(pos)
        while index is not None and index >= 0:
            token = self.tokens[index]
            if token.start_pos < lower:
                break
            if token.type in triggers:
                return min(token.end_pos, pos)
            index -= 1
        return min(lower + 1, pos)

    def word_fragment(self, pos: int) -> str:
        index = self.token_before(pos)
        if index is None or self._type(index) != "WORD":
            return ""
        return self.text[self.tokens[index].start_pos : pos]

    def _is_word(self, index: int | None, *values: str) -> bool:
        if index is None or self._type(index) != "WORD":
            return False
        return not values or self.value(index).upper() in values

    def filter_keys(self, span: _Span, pos: int) -> frozenset[str]:
        keys = set()
        depth = 0
        for index in self._tokens_within(span):
            token = self.tokens[index]
            if token.type == "LPAR":
                depth += 1
            elif token.type == "RPAR":
                depth = max(depth - 1, 0)
            if token.type != "WORD" or token.start_pos < pos <= token.end_pos:
                continue
            word = self.value(index)
            following = self._significant(index, 1)
            preceding = self._significant(index, -1)
            if self._type(index + 1) == "COLON" and self._type(index - 1) != "COLON":
                keys.add(word)
            elif self._is_word(following, "IN") and word.upper() != "NOT":
                keys.add(word)
            elif self._is_word(following, "NOT") and self._is_word(
                self._significant(following, 1), "IN"
            ):
                keys.add(word)
            elif (
                depth == 0
                and word != "*"
                and preceding is not None
                and self._type(preceding) in ("LBRACE", "COMMA")
                and (following is None or self._type(following) in ("COMMA", "RBRACE"))
            ):
                keys.add(word)
        return frozenset(key.lstrip("!-") for key in keys if key.lstrip("!-"))

    def grouping_keys(self, span: _Span, pos: int) -> frozenset[str]:
        bounds = [span.start]
        for index in self._tokens_within(span):
            if self.tokens[index].type == "COMMA":
                bounds.append(self.tokens[index].start_pos)
        bounds.append(span.end)
        keys = set()
        for start, end in zip(bounds, bounds[1:], strict=False):
            if start < pos <= end:
                continue
            entry = self.text[start + 1 : end].strip()
            if entry:
                keys.add(entry)
        return frozenset(keys)

    def _in_list(self, span: _Span, pos: int) -> tuple[str, int] | None:
        stack: list[int] = []
        for index in self._tokens_within(_Span(span.start, pos)):
            token_type = self.tokens[index].type
            if token_type == "LPAR":
                stack.append(index)
            elif token_type == "RPAR" and stack:
                stack.pop()
        if not stack:
            return None
        paren = stack[-1]
        operator = self._significant(paren, -1)
        if operator is None or not self._is_word(operator, "IN"):
            return None
        key = self._significant(operator, -1)
        if key is not None and self._is_word(key, "NOT"):
            key = self._significant(key, -1)
        if (
            key is None
            or not self._is_word(key)
            or self.tokens[key].start_pos <= span.start
        ):
            return None
        return self.value(key).lstrip("!-"), self.tokens[paren].start_pos

    def _filter_context(self, span: _Span, pos: int) -> QueryContext:
        context = QueryContext(
            ContextType.FILTER_TAG_KEY,
            metric_name=self.metric_name,
            existing_keys=self.filter_keys(span, pos),
        )
        in_list = self._in_list(span, pos)
        if in_list is not None:
            key, paren = in_list
            start = self._segment_start(paren, pos, IN_LIST_TRIGGERS)
            return replace(
                context,
                context_type=ContextType.FILTER_TAG_VALUE,
                current_token=self.text[start:pos],
                tag_key=key,
            )
        start = self._segment_start(span.start, pos, FILTER_TRIGGERS)
        colon = next(
            (
                token.start_pos
                for token in self.tokens
                if token.type == "COLON" and start <= token.start_pos < pos
            ),
            None,
        )
        if colon is None:
            return replace(context, current_token=self.text[start:pos])
        return replace(
            context,
            context_type=ContextType.FILTER_TAG_VALUE,
            current_token=self.text[colon + 1 : pos],
            tag_key=self.text[start:colon].strip().lstrip("!-") or None,
        )

    def _grouping_context(self, span: _Span, pos: int) -> QueryContext:
        start = self._segment_start(span.start, pos, GROUPING_TRIGGERS)
        end = next(
            (
                self.tokens[index].start_pos
                for index in self._tokens_within(span)
                if self.tokens[index].type == "COMMA"
                and self.tokens[index].start_pos >= pos
            ),
            span.end,
        )
        token = ""
        if self.text[pos - 1] not in "{,":
            token = self.text[start:end].strip()
        return QueryContext(
            ContextType.GROUPING_TAG,
            current_token=token,
            metric_name=self.metric_name,
            existing_keys=self.grouping_keys(span, pos),
        )

    def context_at(self, pos: int) -> QueryContext:
        for span in reversed(self.grouping_spans):
            if span.start < pos:
                if span.contains(pos):
                    return self._grouping_context(span, pos)
                break
        span = self.filter_span
        if span is not None and span.contains(pos):
            return self._filter_context(span, pos)
        existing_keys: frozenset[str] = frozenset()
        if span is not None:
            existing_keys = self.filter_keys(span, pos)
        context_type = ContextType.METRIC_NAME
        if self.aggregator_colon is not None and pos <= self.aggregator_colon:
            context_type = ContextType.AGGREGATOR_PREFIX
        return QueryContext(
            context_type,
            current_token=self.word_fragment(pos),
            metric_name=self.metric_name,
            existing_keys=existing_keys,
        )


def parse_metrics_context(text: str, cursor_offset: int) -> QueryContext:
    cursor_offset = clamp_offset(text, cursor_offset)
    line_text, line_offset = locate_line(text, cursor_offset)
    context = QueryContext(
        ContextType.METRIC_NAME,
        cursor_offset=cursor_offset,
        line_text=line_text,
        line_offset=line_offset,
    )
    if not line_text.strip():
        return context
    try:
        line = _MetricsLine(line_text)
    except LarkError as ex:
        logger.info("Failed to tokenize metrics query: %s", ex, exc_info=True)
        return context
    return replace(
        line.context_at(cursor_offset - line_offset),
        cursor_offset=cursor_offset,
        line_text=line_text,
        line_offset=line_offset,
    )


def split_metrics_expression(line: str) -> MetricsExpression:
    try:
        parsed = _MetricsLine(line)
    except LarkError as ex:
        logger.info("Failed to tokenize metrics query: %s", ex, exc_info=True)
        return MetricsExpression(None, line.strip() or None, "")
    aggregator = None
    if parsed.aggregator_colon is not None:
        aggregator = line[: parsed.aggregator_colon].strip() or None
    return MetricsExpression(
        aggregator=aggregator,
        metric_name=parsed.metric_name,
        remainder=line[parsed.metric_end :],
    )


def validate_metrics_query(query: str) -> QueryValidation:
    text = mask_placeholders(query).strip()
    if not text:
        return QueryValidation(errors=("Query cannot be empty",))
    errors = []
    opening, closing = text.count("{"), text.count("}")
    if opening != closing:
        errors.append(f"Unmatched braces: {opening} opening, {closing} closing")
    try:
        line = _MetricsLine(text)
    except LarkError as ex:
        logger.info("Failed to tokenize metrics query: %s", ex, exc_info=True)
        return QueryValidation(errors=(*errors, "Query could not be parsed"))
    if line.metric_name is None:
        errors.append("Metric name is required")
    elif not _METRIC_NAME_RE.match(line.metric_name):
        errors.append(f"Invalid metric name: {line.metric_name}")
    if line.filter_span is not None:
        errors.extend(_validate_filter(text, line.filter_span))
    errors.extend(_validate_grouping(text))
    return QueryValidation(errors=tuple(errors))


def _validate_filter(text: str, span: _Span) -> list[str]:
    content = text[span.start + 1 : span.end].strip()
    if not content or content == "*":
        return []
    if _BOOLEAN_FILTER_RE.search(content):
        if content.count("(") != content.count(")"):
            return ["Unmatched parentheses in tag filter"]
        return []
    errors = []
    entries = [entry.strip() for entry in _UNESCAPED_COMMA_RE.split(content)]
    for index, entry in enumerate(entries):
        if not entry or entry == "*":
            continue
        key, sep, value = entry.partition(":")
        key, value = key.strip(), value.strip()
        if not sep:
            errors.append(f"Incomplete tag: {entry} (missing ':value')")
            continue
        if not key:
            errors.append(f"Missing tag key in: {entry}")
            continue
        if not _TAG_KEY_RE.match(key):
            errors.append(f"Invalid tag key: {key}")
        is_last = index == len(entries) - 1
        if not value and not (is_last and text.endswith(":")):
            errors.append(f"Missing tag value for: {key}")
    return errors


def _validate_grouping(text: str) -> list[str]:
    by_match = _BY_RE.search(text)
    if by_match is None:
        return []
    grouping = _GROUPING_RE.search(text)
    if grouping is None:
        if not text[by_match.end() :].startswith("{"):
            return ["Invalid grouping syntax: expected 'by {tag1,tag2}'"]
        return []
    errors = []
    for tag in grouping.group(1).split(","):
        tag = tag.strip()
        if tag and not _TAG_KEY_RE.match(tag):
            errors.append(f"Invalid grouping tag: {tag}")
    return errors
