from __future__ import annotations

from unittest import mock

import pytest

from query_autocomplete.catalog_client import (
    CatalogClient,
    CatalogError,
    CatalogUnauthorized,
    CompleteResult,
)
from query_autocomplete.logs_parser import parse_logs_context
from query_autocomplete.metrics_parser import parse_metrics_context
from query_autocomplete.replacement import (
    Replacement,
    apply_completion,
    resolve_replacement,
)
from query_autocomplete.suggestions import CompletionItem, CompletionKind


def _item(kind: CompletionKind, insert_text: str, label: str = "") -> CompletionItem:
    return CompletionItem(
        label=label or insert_text, kind=kind, insert_text=insert_text
    )


def _apply_metrics(text: str, cursor: int, item: CompletionItem) -> Replacement:
    return apply_completion(text, cursor, item, parse_metrics_context(text, cursor))


def _apply_logs(text: str, cursor: int, item: CompletionItem) -> Replacement:
    return apply_completion(text, cursor, item, parse_logs_context(text, cursor))


class TestApplyCompletionMetrics:
    def test_aggregator_keeps_colon(self) -> None:
        result = _apply_metrics(
            "a:system.cpu{*}", 1, _item(CompletionKind.AGGREGATOR, "avg")
        )

        assert result == Replacement("avg:system.cpu{*}", 3)

    @pytest.mark.parametrize(
        ("text", "cursor", "expected"),
        [
            ("sys", 3, Replacement("avg:system.cpu.user{*}", 22)),
            ("avg:sys", 7, Replacement("avg:system.cpu.user{*}", 22)),
            (
                "sum:sys{host:a} by {env}",
                7,
                Replacement("sum:system.cpu.user{host:a} by {env}", 36),
            ),
            (
                "max:sys by {env}",
                7,
                Replacement("max:system.cpu.user{*} by {env}", 31),
            ),
            (
                "avg:cpu{*}\nsys",
                14,
                Replacement("avg:cpu{*}\navg:system.cpu.user{*}", 33),
            ),
        ],
    )
    def test_metric_replaces_line(
        self, text: str, cursor: int, expected: Replacement
    ) -> None:
        result = _apply_metrics(
            text, cursor, _item(CompletionKind.METRIC, "system.cpu.user")
        )

        assert result == expected

    def test_filter_key_at_list_start(self) -> None:
        result = _apply_metrics(
            "system.cpu{", 11, _item(CompletionKind.FILTER_TAG_KEY, "host:", "host")
        )

        assert result == Replacement("system.cpu{host:", 16)

    def test_filter_key_partial(self) -> None:
        result = _apply_metrics(
            "system.cpu{host:a,en",
            20,
            _item(CompletionKind.FILTER_TAG_KEY, "env:", "env"),
        )

        assert result == Replacement("system.cpu{host:a,env:", 22)

    def test_filter_key_consumes_colon(self) -> None:
        result = _apply_metrics(
            "m{ho:web}", 4, _item(CompletionKind.FILTER_TAG_KEY, "host:", "host")
        )

        assert result == Replacement("m{host:web}", 7)

    def test_grouping_insertion(self) -> None:
        result = _apply_metrics(
            "m{} by {host}", 12, _item(CompletionKind.GROUPING_TAG, "env")
        )

        assert result == Replacement("m{} by {host,env}", 16)

    def test_grouping_after_comma(self) -> None:
        result = _apply_metrics(
            "m{} by {host,", 13, _item(CompletionKind.GROUPING_TAG, "env")
        )

        assert result == Replacement("m{} by {host,env", 16)

    def test_grouping_partial(self) -> None:
        result = _apply_metrics(
            "m{} by {ho", 10, _item(CompletionKind.GROUPING_TAG, "host")
        )

        assert result == Replacement("m{} by {host", 12)

    def test_filter_value(self) -> None:
        result = _apply_metrics(
            "avg:cpu{host:we", 15, _item(CompletionKind.FILTER_TAG_VALUE, "web-1")
        )

        assert result == Replacement("avg:cpu{host:web-1", 18)

    def test_filter_value_before_next_entry(self) -> None:
        result = _apply_metrics(
            "avg:cpu{host:we,env:prod}",
            15,
            _item(CompletionKind.FILTER_TAG_VALUE, "web-1"),
        )

        assert result == Replacement("avg:cpu{host:web-1,env:prod}", 18)


class TestApplyCompletionLogs:
    def test_facet_name(self) -> None:
        result = _apply_logs("serv", 4, _item(CompletionKind.LOGS_FACET, "service:"))

        assert result == Replacement("service:", 8)

    def test_facet_name_after_operator(self) -> None:
        result = _apply_logs(
            "error AND sta", 13, _item(CompletionKind.LOGS_FACET, "status:")
        )

        assert result == Replacement("error AND status:", 17)

    def test_facet_value(self) -> None:
        result = _apply_logs(
            "service:we AND x", 10, _item(CompletionKind.LOGS_SERVICE, "web-app")
        )

        assert result == Replacement("service:web-app AND x", 15)

    def test_quoted_facet_value(self) -> None:
        result = _apply_logs(
            'service:"my ap',
            14,
            _item(CompletionKind.LOGS_SERVICE, '"my app"', "my app"),
        )

        assert result == Replacement('service:"my app"', 16)

    @pytest.mark.parametrize(
        ("text", "cursor"),
        [("error ", 6), ("error", 5), ("error AN", 8)],
    )
    def test_operator(self, text: str, cursor: int) -> None:
        result = _apply_logs(text, cursor, _item(CompletionKind.LOGS_OPERATOR, "AND"))

        assert result == Replacement("error AND ", 10)

    def test_pattern(self) -> None:
        result = _apply_logs(
            "error ", 6, _item(CompletionKind.LOGS_PATTERN, '""', '"exact phrase"')
        )

        assert result == Replacement('error ""', 8)


class TestResolveReplacement:
    @pytest.fixture
    def catalog(self) -> mock.AsyncMock:
        return mock.AsyncMock(CatalogClient)

    async def test_local(self) -> None:
        text = "m{} by {host}"
        result = await resolve_replacement(
            text,
            12,
            _item(CompletionKind.GROUPING_TAG, "env"),
            parse_metrics_context(text, 12),
        )

        assert result == Replacement("m{} by {host,env}", 16)

    async def test_remote(self, catalog: mock.AsyncMock) -> None:
        catalog.complete.return_value = CompleteResult(
            new_query="avg:system.cpu{*}", new_cursor_offset=100
        )
        text = "a:system.cpu{*}"

        result = await resolve_replacement(
            text,
            1,
            _item(CompletionKind.AGGREGATOR, "avg"),
            parse_metrics_context(text, 1),
            catalog=catalog,
        )

        assert result == Replacement("avg:system.cpu{*}", 17)
        catalog.complete.assert_awaited_once_with(
            query=text, cursor_offset=1, selected_item="avg", item_kind="aggregator"
        )

    async def test_remote_failure_falls_back(self, catalog: mock.AsyncMock) -> None:
        catalog.complete.side_effect = CatalogError("Catalog error: boom")
        text = "a:system.cpu{*}"

        result = await resolve_replacement(
            text,
            1,
            _item(CompletionKind.AGGREGATOR, "avg"),
            parse_metrics_context(text, 1),
            catalog=catalog,
        )

        assert result == Replacement("avg:system.cpu{*}", 3)

    async def test_remote_unauthorized(self, catalog: mock.AsyncMock) -> None:
        catalog.complete.side_effect = CatalogUnauthorized("forbidden")
        text = "a:system.cpu{*}"

        with pytest.raises(CatalogUnauthorized):
            await resolve_replacement(
                text,
                1,
                _item(CompletionKind.AGGREGATOR, "avg"),
                parse_metrics_context(text, 1),
                catalog=catalog,
            )
