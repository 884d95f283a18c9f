from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from marshmallow import Schema, fields, post_load
from marshmallow.validate import Range

from .query_context import ContextType, LogsFacet, QueryContext, QueryLanguage
from .suggestions import CompletionKind, SuggestionCategory


class ClientErrorSchema(Schema):
    error = fields.String(required=True)


@dataclass(frozen=True)
class SuggestRequest:
    query: str
    cursor_position: int
    language: QueryLanguage = QueryLanguage.METRICS


class SuggestRequestSchema(Schema):
    query = fields.String(required=True)
    cursor_position = fields.Integer(required=True, validate=[Range(min=0)])
    language = fields.Enum(QueryLanguage, by_value=True)

    @post_load
    def make_object(self, data: Mapping[str, Any], **kwargs: Any) -> SuggestRequest:
        return SuggestRequest(**data)


class CompletionItemSchema(Schema):
    label = fields.String(required=True)
    kind = fields.Enum(CompletionKind, by_value=True, required=True)
    insert_text = fields.String(required=True)
    sort_key = fields.String()
    detail = fields.String(allow_none=True)


class SuggestionGroupSchema(Schema):
    category = fields.Enum(SuggestionCategory, by_value=True, required=True)
    label = fields.String(required=True)
    items = fields.List(fields.Nested(CompletionItemSchema()), required=True)


class QueryContextSchema(Schema):
    context_type = fields.Enum(ContextType, by_value=True, required=True)
    current_token = fields.String(required=True)
    line_text = fields.String()
    metric_name = fields.String(allow_none=True)
    tag_key = fields.String(allow_none=True)
    existing_keys = fields.Method("get_existing_keys")
    facet = fields.Enum(LogsFacet, by_value=True, allow_none=True)
    after_operator = fields.Boolean()
    in_group = fields.Boolean()
    in_quotes = fields.Boolean()

    def get_existing_keys(self, context: QueryContext) -> list[str]:
        return sorted(context.existing_keys)


class QueryValidationSchema(Schema):
    is_valid = fields.Boolean(required=True)
    errors = fields.List(fields.String(), required=True)
    warnings = fields.List(fields.String(), required=True)


class SuggestResponseSchema(Schema):
    context = fields.Nested(QueryContextSchema(), required=True)
    groups = fields.List(fields.Nested(SuggestionGroupSchema()), required=True)
    validation = fields.Nested(QueryValidationSchema(), required=True)
    error = fields.String(attribute="error_message", allow_none=True)


@dataclass(frozen=True)
class CompleteRequest:
    query: str
    cursor_position: int
    selected_item: str
    item_kind: CompletionKind
    language: QueryLanguage = QueryLanguage.METRICS
    label: str | None = None


class CompleteRequestSchema(Schema):
    query = fields.String(required=True)
    cursor_position = fields.Integer(required=True, validate=[Range(min=0)])
    selected_item = fields.String(required=True)
    item_kind = fields.Enum(CompletionKind, by_value=True, required=True)
    language = fields.Enum(QueryLanguage, by_value=True)
    label = fields.String()

    @post_load
    def make_object(self, data: Mapping[str, Any], **kwargs: Any) -> CompleteRequest:
        return CompleteRequest(**data)


class CompleteResponseSchema(Schema):
    new_query = fields.String(required=True)
    new_cursor_position = fields.Integer(required=True)


class PatchCacheRequestSchema(Schema):
    ttl_s = fields.Float(required=True, validate=[Range(min=0)])


class CacheStatsSchema(Schema):
    in_flight = fields.Integer(required=True)
    pending = fields.Integer(required=True)
    cached = fields.Integer(required=True)
    cache_ttl_s = fields.Float(required=True)
    auth_blocked = fields.Boolean(required=True)
