from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from .logs_parser import parse_logs_context, validate_logs_query
from .metrics_parser import parse_metrics_context, validate_metrics_query
from .orchestrator import RequestOrchestrator
from .query_context import QueryContext, QueryLanguage, QueryValidation
from .suggestions import (
    MAX_SUGGESTIONS,
    CompletionItem,
    Dataset,
    SuggestionGroup,
    generate_suggestions,
    group_suggestions,
)


logger = logging.getLogger(__name__)


def parse_query_context(
    language: QueryLanguage, text: str, cursor_offset: int
) -> QueryContext:
    if language == QueryLanguage.LOGS:
        return parse_logs_context(text, cursor_offset)
    return parse_metrics_context(text, cursor_offset)


def validate_query(language: QueryLanguage, text: str) -> QueryValidation:
    if language == QueryLanguage.LOGS:
        return validate_logs_query(text)
    return validate_metrics_query(text)


@dataclass(frozen=True)
class SuggestionResult:
    context: QueryContext
    groups: Sequence[SuggestionGroup]
    validation: QueryValidation
    errors: Mapping[Dataset, str] = field(default_factory=dict)

    @property
    def items(self) -> tuple[CompletionItem, ...]:
        return tuple(item for group in self.groups for item in group.items)

    @property
    def error_message(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(self.errors.values())


class CompletionEngine:
    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        *,
        max_suggestions: int = MAX_SUGGESTIONS,
    ) -> None:
        self._orchestrator = orchestrator
        self._max_suggestions = max_suggestions

    @property
    def orchestrator(self) -> RequestOrchestrator:
        return self._orchestrator

    async def suggest(
        self, language: QueryLanguage, text: str, cursor_offset: int
    ) -> SuggestionResult:
        context = parse_query_context(language, text, cursor_offset)
        validation = validate_query(language, text)
        logger.debug("Completing at %s", context)
        candidates = await self._orchestrator.resolve(context)
        items = generate_suggestions(
            context, candidates, limit=self._max_suggestions
        )
        return SuggestionResult(
            context=context,
            groups=group_suggestions(items),
            validation=validation,
            errors=candidates.errors,
        )
