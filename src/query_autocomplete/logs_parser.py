from __future__ import annotations

import logging
import re
from dataclasses import replace

from lark import Lark, LarkError, Token

from .grammars import LOGS_TOKENS
from .query_context import (
    ContextType,
    LogsFacet,
    QueryContext,
    QueryValidation,
    clamp_offset,
    locate_line,
    mask_placeholders,
)


logger = logging.getLogger(__name__)


logs_lexer = Lark(LOGS_TOKENS, parser="lalr", lexer="basic")

BOOLEAN_OPERATORS = ("AND", "OR", "NOT")

FACET_DESCRIPTIONS = {
    "service": "Filter by service name (e.g., service:web-app)",
    "source": "Filter by log source (e.g., source:nginx)",
    "status": "Filter by log level (e.g., status:ERROR)",
    "level": "Filter by log level (e.g., level:WARN)",
    "host": "Filter by hostname (e.g., host:web-01)",
    "env": "Filter by environment (e.g., env:production)",
    "version": "Filter by application version (e.g., version:1.2.3)",
    "@timestamp": "Filter by timestamp range",
    "@message": "Filter by message content",
    "@severity": "Filter by severity level",
    "@source_category": "Filter by source category",
}
DEFAULT_FACETS = tuple(FACET_DESCRIPTIONS)

_SEARCH_TOKEN_RE = re.compile(r"[A-Za-z0-9_.\-]*$")
_FACET_TOKEN_RE = re.compile(r"[@\w.]*$")
_TIME_FILTER_RE = re.compile(r"@timestamp:|timestamp:|\btime:|\bdate:", re.IGNORECASE)
_RELATIVE_TIME_RE = re.compile(r"@timestamp:\s*[><]=?\s*now[-+]\w+", re.IGNORECASE)
_LEVEL_WORD_RE = re.compile(r"\b(?:error|warn|info|debug)\b", re.IGNORECASE)


def tokenize_logs_line(line: str) -> list[Token]:
    tree = logs_lexer.parse(mask_placeholders(line))
    return [token for token in tree.children if isinstance(token, Token)]


def _is_closed_string(value: str) -> bool:
    if len(value) < 2 or not value.endswith('"'):
        return False
    escapes = len(value[1:-1]) - len(value[1:-1].rstrip("\\"))
    return escapes % 2 == 0


class _LogsLine:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize_logs_line(text)

    def value(self, index: int) -> str:
        token = self.tokens[index]
        return self.text[token.start_pos : token.end_pos]

    def type_of(self, index: int | None) -> str | None:
        if index is not None and 0 <= index < len(self.tokens):
            return self.tokens[index].type
        return None

    def is_operator(self, index: int | None) -> bool:
        return (
            index is not None
            and self.type_of(index) == "WORD"
            and self.value(index) in BOOLEAN_OPERATORS
        )

    def token_before(self, pos: int) -> int | None:
        for index in range(len(self.tokens) - 1, -1, -1):
            if self.tokens[index].start_pos < pos:
                return index
        return None

    def significant(self, index: int, step: int) -> int | None:
        index += step
        while 0 <= index < len(self.tokens):
            if self.tokens[index].type != "WS":
                return index
            index += step
        return None

    def facet_names(self, pos: int) -> frozenset[str]:
        names = set()
        for index, token in enumerate(self.tokens):
            if token.start_pos < pos <= token.end_pos:
                continue
            if token.type == "WORD" and self.type_of(index + 1) == "COLON":
                name = self.value(index).lstrip("-")
                if name:
                    names.add(name)
        return frozenset(names)

    def open_group(self, pos: int) -> int | None:
        stack: list[int] = []
        for index, token in enumerate(self.tokens):
            if token.start_pos >= pos:
                break
            if token.type == "LPAR":
                stack.append(index)
            elif token.type == "RPAR" and stack:
                stack.pop()
        return stack[-1] if stack else None

    def _facet_value(
        self, context: QueryContext, facet_index: int, value: str
    ) -> QueryContext:
        name = self.value(facet_index).lstrip("-")
        return replace(
            context,
            context_type=ContextType.LOGS_FACET_VALUE,
            current_token=value,
            facet=LogsFacet.parse(name),
            tag_key=name,
        )

    def _is_facet_prefix(self, index: int, word: str) -> bool:
        if self.type_of(index + 1) == "COLON":
            return True
        word = word.lower()
        return any(facet.startswith(word) for facet in DEFAULT_FACETS)

    def context_at(self, pos: int) -> QueryContext:
        group = self.open_group(pos)
        context = QueryContext(
            ContextType.LOGS_SEARCH,
            existing_keys=self.facet_names(pos),
            in_group=group is not None,
        )
        index = self.token_before(pos)
        if index is None:
            return context
        token = self.tokens[index]
        fragment = self.text[token.start_pos : pos]

        if token.type == "COLON" and self.type_of(index - 1) == "WORD":
            return self._facet_value(context, index - 1, "")
        if (
            token.type in ("WORD", "STRING")
            and self.type_of(index - 1) == "COLON"
            and self.type_of(index - 2) == "WORD"
        ):
            value = fragment[1:] if token.type == "STRING" else fragment
            return self._facet_value(context, index - 2, value)
        if token.type == "STRING":
            in_quotes = pos < token.end_pos or not _is_closed_string(fragment)
            return replace(context, in_quotes=in_quotes)
        if (
            group is not None
            and self.type_of(group - 1) == "COLON"
            and self.type_of(group - 2) == "WORD"
        ):
            value = ""
            if token.type == "WORD" and not self.is_operator(index):
                value = fragment
            return self._facet_value(context, group - 2, value)

        if token.type == "WORD":
            previous = self.significant(index, -1)
            after_operator = self.is_operator(previous) or self.is_operator(index)
        elif token.type == "WS":
            after_operator = self.is_operator(self.significant(index, -1))
        else:
            after_operator = False
        context = replace(context, after_operator=after_operator)

        word = fragment.lstrip("-") if token.type == "WORD" else ""
        if word and not self.is_operator(index) and self._is_facet_prefix(index, word):
            facet_token = _FACET_TOKEN_RE.search(self.text[:pos])
            return replace(
                context,
                context_type=ContextType.LOGS_FACET_NAME,
                current_token=facet_token.group() if facet_token else "",
            )
        search_token = _SEARCH_TOKEN_RE.search(self.text[:pos])
        return replace(
            context, current_token=search_token.group() if search_token else ""
        )


def parse_logs_context(text: str, cursor_offset: int) -> QueryContext:
    cursor_offset = clamp_offset(text, cursor_offset)
    line_text, line_offset = locate_line(text, cursor_offset)
    context = QueryContext(
        ContextType.LOGS_SEARCH,
        cursor_offset=cursor_offset,
        line_text=line_text,
        line_offset=line_offset,
    )
    if not line_text.strip():
        return context
    try:
        line = _LogsLine(line_text)
    except LarkError as ex:
        logger.info("Failed to tokenize logs query: %s", ex, exc_info=True)
        return context
    return replace(
        line.context_at(cursor_offset - line_offset),
        cursor_offset=cursor_offset,
        line_text=line_text,
        line_offset=line_offset,
    )


def validate_logs_query(query: str) -> QueryValidation:
    text = mask_placeholders(query).strip()
    if not text:
        return QueryValidation()
    try:
        line = _LogsLine(text)
    except LarkError as ex:
        logger.info("Failed to tokenize logs query: %s", ex, exc_info=True)
        return QueryValidation(errors=("Query could not be parsed",))
    error = (
        _check_parentheses(line)
        or _check_quotes(line)
        or _check_facets(line)
        or _check_operators(line)
        or _check_wildcards(line)
    )
    if error:
        return QueryValidation(errors=(error,))
    return QueryValidation(warnings=tuple(_collect_warnings(text)))


def _check_parentheses(line: _LogsLine) -> str | None:
    depth = 0
    for token in line.tokens:
        if token.type == "LPAR":
            depth += 1
        elif token.type == "RPAR":
            depth -= 1
            if depth < 0:
                position = token.start_pos + 1
                return f"Unmatched closing parenthesis at position {position}"
    if depth > 0:
        noun = "parentheses" if depth > 1 else "parenthesis"
        return f"{depth} unmatched opening {noun}"
    return None


def _check_quotes(line: _LogsLine) -> str | None:
    for index, token in enumerate(line.tokens):
        if token.type == "STRING" and not _is_closed_string(line.value(index)):
            return f"Unmatched quote starting at position {token.start_pos + 1}"
    return None


def _check_facets(line: _LogsLine) -> str | None:
    for index, token in enumerate(line.tokens):
        if token.type != "COLON" or line.type_of(index - 1) != "WORD":
            continue
        if line.type_of(index + 1) in ("WORD", "STRING", "LPAR"):
            continue
        name = line.value(index - 1).lstrip("-")
        return (
            f'Empty value for facet "{name}". '
            "Use quotes for empty values or provide a value."
        )
    return None


def _check_operators(line: _LogsLine) -> str | None:
    for index in range(len(line.tokens)):
        if not line.is_operator(index):
            continue
        operator = line.value(index)
        previous = line.significant(index, -1)
        following = line.significant(index, 1)
        if following is not None and line.is_operator(following):
            next_operator = line.value(following)
            sequence = f"{operator} {next_operator}"
            if operator == "NOT" and next_operator != "NOT":
                return (
                    f'Invalid operator sequence: "{sequence}". '
                    'Use "NOT condition AND/OR" instead.'
                )
            if operator == "NOT" or next_operator != "NOT":
                return f'Invalid boolean operator usage: "{sequence}"'
        if following is None or line.type_of(following) == "RPAR":
            return f'Invalid boolean operator usage: "{operator}"'
        if operator != "NOT" and (
            previous is None or line.type_of(previous) == "LPAR"
        ):
            return f'Invalid boolean operator usage: "{operator}"'
    return None


def _check_wildcards(line: _LogsLine) -> str | None:
    for index, token in enumerate(line.tokens):
        if token.type != "WORD":
            continue
        value = line.value(index)
        if "**" in value:
            return (
                f'Invalid wildcard pattern: "{value}". '
                "Use single asterisk (*) for wildcards."
            )
        if (
            value.endswith("*")
            and line.type_of(index + 1) == "WS"
            and line.type_of(index + 2) == "WORD"
            and line.value(index + 2).startswith("*")
        ):
            return 'Invalid wildcard pattern: "* *"'
    return None


def _collect_warnings(text: str) -> list[str]:
    warnings = []
    if _TIME_FILTER_RE.search(text):
        warnings.append(
            "Found inline time filter in query. Consider using the dashboard "
            "time range picker instead for better integration."
        )
    if _RELATIVE_TIME_RE.search(text):
        warnings.append(
            "Relative time filters will be combined with the dashboard time "
            "range picker. Ensure this is intended."
        )
    if "*" in text and ":" not in text:
        warnings.append(
            "Wildcard searches without facets may be slow. "
            "Consider using facets like service:* or source:*"
        )
    if len(text) < 3 and ":" not in text:
        warnings.append(
            "Very short search terms may return too many results. "
            "Consider adding facets or longer terms."
        )
    if _LEVEL_WORD_RE.search(text) and "status:" not in text:
        warnings.append(
            "For log levels, consider using status:ERROR instead of "
            'searching for "error" in message text.'
        )
    return warnings
