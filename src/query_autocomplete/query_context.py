from __future__ import annotations

import enum
import re
from collections.abc import Sequence
from dataclasses import dataclass


PLACEHOLDER_RE = re.compile(
    r"\$\{[^{}\s]*\}|\$[A-Za-z_][A-Za-z0-9_]*|\[\[[A-Za-z0-9_:.]+\]\]"
)


class QueryLanguage(enum.StrEnum):
    METRICS = "metrics"
    LOGS = "logs"


class ContextType(enum.StrEnum):
    METRIC_NAME = "metric-name"
    AGGREGATOR_PREFIX = "aggregator-prefix"
    FILTER_TAG_KEY = "filter-tag-key"
    FILTER_TAG_VALUE = "filter-tag-value"
    GROUPING_TAG = "grouping-tag"
    LOGS_SEARCH = "logs-search"
    LOGS_FACET_NAME = "logs-facet-name"
    LOGS_FACET_VALUE = "logs-facet-value"

    @property
    def language(self) -> QueryLanguage:
        if self.value.startswith("logs-"):
            return QueryLanguage.LOGS
        return QueryLanguage.METRICS


class LogsFacet(enum.StrEnum):
    SERVICE = "service"
    SOURCE = "source"
    LEVEL = "level"
    HOST = "host"
    ENV = "env"

    @classmethod
    def parse(cls, name: str) -> LogsFacet | None:
        name = name.lower()
        if name == "status":
            return cls.LEVEL
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class QueryContext:
    context_type: ContextType
    current_token: str = ""
    cursor_offset: int = 0
    line_text: str = ""
    line_offset: int = 0
    metric_name: str | None = None
    tag_key: str | None = None
    existing_keys: frozenset[str] = frozenset()
    facet: LogsFacet | None = None
    after_operator: bool = False
    in_group: bool = False
    in_quotes: bool = False

    @property
    def line_cursor(self) -> int:
        return self.cursor_offset - self.line_offset

    @property
    def language(self) -> QueryLanguage:
        return self.context_type.language


@dataclass(frozen=True)
class QueryValidation:
    errors: Sequence[str] = ()
    warnings: Sequence[str] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def summary(self) -> str | None:
        if self.errors:
            return self.errors[0]
        if self.warnings:
            return self.warnings[0]
        return None


def clamp_offset(text: str, offset: int) -> int:
    return max(0, min(offset, len(text)))


def locate_line(text: str, offset: int) -> tuple[str, int]:
    offset = clamp_offset(text, offset)
    line_start = text.rfind("\n", 0, offset) + 1
    line_end = text.find("\n", offset)
    if line_end == -1:
        line_end = len(text)
    return text[line_start:line_end], line_start


def mask_placeholders(text: str) -> str:
    # Stand-ins keep the placeholder length so offsets stay valid.
    return PLACEHOLDER_RE.sub(lambda m: "x" * len(m.group()), text)


def from_utf16_offset(text: str, offset: int) -> int:
    units = 0
    for index, char in enumerate(text):
        if units >= offset:
            return index
        units += 2 if ord(char) > 0xFFFF else 1
    return len(text)


def to_utf16_offset(text: str, index: int) -> int:
    index = clamp_offset(text, index)
    return index + sum(1 for char in text[:index] if ord(char) > 0xFFFF)
