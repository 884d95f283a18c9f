from __future__ import annotations

import asyncio
from collections.abc import Sequence
from unittest import mock

import pytest

from query_autocomplete.catalog_client import (
    CatalogClient,
    CatalogError,
    CatalogNotFound,
    CatalogUnauthorized,
)
from query_autocomplete.config import OrchestratorConfig
from query_autocomplete.logs_parser import DEFAULT_FACETS
from query_autocomplete.orchestrator import (
    Lookup,
    OrchestratorStats,
    RequestOrchestrator,
    plan_lookups,
)
from query_autocomplete.query_context import ContextType, LogsFacet, QueryContext
from query_autocomplete.suggestions import Dataset
from tests.conftest import FakeClock


METRIC_CONTEXT = QueryContext(ContextType.METRIC_NAME)


async def _run_pending() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def catalog() -> mock.AsyncMock:
    client = mock.AsyncMock(CatalogClient)
    client.site = "datadoghq.com"
    client.fetch = mock.AsyncMock(return_value=["system.cpu.user"])
    return client


@pytest.fixture
def orchestrator(catalog: mock.AsyncMock, clock: FakeClock) -> RequestOrchestrator:
    return RequestOrchestrator(
        catalog,
        OrchestratorConfig(cache_ttl_s=30, max_concurrent_fetches=2),
        timer=clock,
    )


class TestPlanLookups:
    @pytest.mark.parametrize(
        ("context", "lookups"),
        [
            (METRIC_CONTEXT, [Lookup(Dataset.METRICS)]),
            (
                QueryContext(ContextType.FILTER_TAG_KEY, metric_name="cpu"),
                [Lookup(Dataset.TAGS, ("cpu",))],
            ),
            (
                QueryContext(ContextType.GROUPING_TAG, metric_name="cpu"),
                [Lookup(Dataset.TAGS, ("cpu",))],
            ),
            (QueryContext(ContextType.GROUPING_TAG), []),
            (
                QueryContext(
                    ContextType.FILTER_TAG_VALUE, metric_name="cpu", tag_key="host"
                ),
                [Lookup(Dataset.TAG_VALUES, ("cpu", "host"))],
            ),
            (QueryContext(ContextType.AGGREGATOR_PREFIX), []),
            (QueryContext(ContextType.LOGS_SEARCH), [Lookup(Dataset.FIELDS)]),
            (QueryContext(ContextType.LOGS_SEARCH, in_quotes=True), []),
            (QueryContext(ContextType.LOGS_FACET_NAME), [Lookup(Dataset.FIELDS)]),
            (
                QueryContext(ContextType.LOGS_FACET_VALUE, facet=LogsFacet.SERVICE),
                [Lookup(Dataset.SERVICES)],
            ),
            (
                QueryContext(ContextType.LOGS_FACET_VALUE, facet=LogsFacet.LEVEL),
                [Lookup(Dataset.LEVELS)],
            ),
            (
                QueryContext(
                    ContextType.LOGS_FACET_VALUE, facet=LogsFacet.HOST, tag_key="host"
                ),
                [Lookup(Dataset.FIELD_VALUES, ("host",))],
            ),
        ],
    )
    def test_plan(self, context: QueryContext, lookups: list[Lookup]) -> None:
        assert plan_lookups(context) == lookups

    def test_cache_key(self) -> None:
        lookup = Lookup(Dataset.TAG_VALUES, ("cpu", "host"))

        assert lookup.cache_key("datadoghq.eu") == "tag_values|datadoghq.eu|cpu|host"


class TestRequestOrchestrator:
    async def test_resolve(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        candidates = await orchestrator.resolve(METRIC_CONTEXT)

        assert list(candidates.metrics) == ["system.cpu.user"]
        assert candidates.errors == {}
        catalog.fetch.assert_awaited_once_with(Dataset.METRICS)

    async def test_nothing_to_resolve(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        candidates = await orchestrator.resolve(
            QueryContext(ContextType.AGGREGATOR_PREFIX)
        )

        assert candidates.errors == {}
        catalog.fetch.assert_not_awaited()

    async def test_cache_ttl(
        self,
        orchestrator: RequestOrchestrator,
        catalog: mock.AsyncMock,
        clock: FakeClock,
    ) -> None:
        await orchestrator.resolve(METRIC_CONTEXT)
        clock.advance(10)
        await orchestrator.resolve(METRIC_CONTEXT)

        assert catalog.fetch.await_count == 1

        clock.advance(30)
        await orchestrator.resolve(METRIC_CONTEXT)

        assert catalog.fetch.await_count == 2

    async def test_cache_is_per_scope(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        await orchestrator.resolve(
            QueryContext(ContextType.FILTER_TAG_KEY, metric_name="cpu")
        )
        await orchestrator.resolve(
            QueryContext(ContextType.FILTER_TAG_KEY, metric_name="mem")
        )

        assert catalog.fetch.await_args_list == [
            mock.call(Dataset.TAGS, "cpu"),
            mock.call(Dataset.TAGS, "mem"),
        ]

    async def test_concurrency_ceiling(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        release = asyncio.Event()
        running = 0
        peak = 0

        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1
            return [f"{scope[0]}:tag"]

        catalog.fetch.side_effect = fetch
        tasks = [
            asyncio.create_task(
                orchestrator.resolve(
                    QueryContext(ContextType.FILTER_TAG_KEY, metric_name=f"m{i}")
                )
            )
            for i in range(5)
        ]
        await _run_pending()

        assert orchestrator.in_flight == 2
        assert catalog.fetch.await_count == 2
        assert orchestrator.stats().pending == 5

        release.set()
        results = await asyncio.gather(*tasks)

        assert peak == 2
        assert catalog.fetch.await_count == 5
        assert [list(result.tags) for result in results] == [
            [f"m{i}:tag"] for i in range(5)
        ]
        assert orchestrator.in_flight == 0

    async def test_shares_in_flight_fetch(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        release = asyncio.Event()

        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            await release.wait()
            return ["cpu"]

        catalog.fetch.side_effect = fetch
        first = asyncio.create_task(orchestrator.resolve(METRIC_CONTEXT))
        second = asyncio.create_task(orchestrator.resolve(METRIC_CONTEXT))
        await _run_pending()
        release.set()

        results = await asyncio.gather(first, second)

        assert [list(result.metrics) for result in results] == [["cpu"], ["cpu"]]
        assert catalog.fetch.await_count == 1

    async def test_timeout(
        self, catalog: mock.AsyncMock, clock: FakeClock
    ) -> None:
        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            await asyncio.sleep(10)
            return []

        catalog.fetch.side_effect = fetch
        orchestrator = RequestOrchestrator(
            catalog, OrchestratorConfig(fetch_timeout_s=0.01), timer=clock
        )

        candidates = await orchestrator.resolve(METRIC_CONTEXT)

        assert list(candidates.metrics) == []
        assert "timed out" in candidates.errors[Dataset.METRICS]
        assert orchestrator.in_flight == 0

    async def test_fetch_error_degrades_field(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        catalog.fetch.side_effect = CatalogError("Catalog error: boom")

        candidates = await orchestrator.resolve(METRIC_CONTEXT)

        assert candidates.errors == {Dataset.METRICS: "Catalog error: boom"}
        assert len(orchestrator.cache) == 0

    async def test_auth_error_blocks_fetches(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        catalog.fetch.side_effect = CatalogUnauthorized("forbidden")

        with pytest.raises(CatalogUnauthorized):
            await orchestrator.resolve(METRIC_CONTEXT)

        assert orchestrator.is_auth_blocked

        with pytest.raises(CatalogUnauthorized, match="blocked"):
            await orchestrator.resolve(METRIC_CONTEXT)

        assert catalog.fetch.await_count == 1

        orchestrator.reset_auth()
        catalog.fetch.side_effect = None
        candidates = await orchestrator.resolve(METRIC_CONTEXT)

        assert list(candidates.metrics) == ["system.cpu.user"]
        assert not orchestrator.is_auth_blocked

    async def test_tag_values_fall_back_to_tags(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            if dataset == Dataset.TAG_VALUES:
                msg = "Catalog resource not found"
                raise CatalogNotFound(msg)
            return ["host:web-1", "host:web-2", "env:prod"]

        catalog.fetch.side_effect = fetch

        candidates = await orchestrator.resolve(
            QueryContext(
                ContextType.FILTER_TAG_VALUE, metric_name="cpu", tag_key="host"
            )
        )

        assert list(candidates.tag_values) == ["web-1", "web-2"]
        assert candidates.errors == {}

    async def test_fields_fall_back_to_defaults(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        catalog.fetch.side_effect = CatalogNotFound("not found")

        candidates = await orchestrator.resolve(QueryContext(ContextType.LOGS_SEARCH))

        assert tuple(candidates.fields) == DEFAULT_FACETS

    async def test_not_found_without_fallback(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        catalog.fetch.side_effect = CatalogNotFound("not found")

        candidates = await orchestrator.resolve(METRIC_CONTEXT)

        assert Dataset.METRICS in candidates.errors

    async def test_cancel_pending(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            await asyncio.Event().wait()
            return []

        catalog.fetch.side_effect = fetch
        task = asyncio.create_task(orchestrator.resolve(METRIC_CONTEXT))
        await _run_pending()

        await orchestrator.cancel_pending()
        candidates = await task

        assert candidates.errors == {Dataset.METRICS: "Request cancelled"}
        assert orchestrator.stats().pending == 0

    async def test_cancel_pending_releases_slot(
        self, catalog: mock.AsyncMock, clock: FakeClock
    ) -> None:
        blocked = True

        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            if blocked:
                await asyncio.Event().wait()
            return ["cpu"]

        catalog.fetch.side_effect = fetch
        orchestrator = RequestOrchestrator(
            catalog, OrchestratorConfig(max_concurrent_fetches=1), timer=clock
        )
        task = asyncio.create_task(orchestrator.resolve(METRIC_CONTEXT))
        await _run_pending()

        assert orchestrator.in_flight == 1

        await orchestrator.cancel_pending()
        await task
        blocked = False
        candidates = await asyncio.wait_for(
            orchestrator.resolve(METRIC_CONTEXT), timeout=1
        )

        assert list(candidates.metrics) == ["cpu"]
        assert orchestrator.in_flight == 0
        assert orchestrator.stats().pending == 0

    async def test_timeout_spares_concurrent_lookup(
        self, catalog: mock.AsyncMock, clock: FakeClock
    ) -> None:
        async def fetch(dataset: Dataset, *scope: str) -> Sequence[str]:
            if dataset == Dataset.TAGS:
                await asyncio.sleep(10)
            return ["host:web-1"]

        catalog.fetch.side_effect = fetch
        orchestrator = RequestOrchestrator(
            catalog,
            OrchestratorConfig(max_concurrent_fetches=1, fetch_timeout_s=0.05),
            timer=clock,
        )
        slow = asyncio.create_task(
            orchestrator.resolve(
                QueryContext(ContextType.FILTER_TAG_KEY, metric_name="cpu")
            )
        )
        await _run_pending()
        fast = asyncio.create_task(orchestrator.resolve(METRIC_CONTEXT))

        slow_candidates, fast_candidates = await asyncio.gather(slow, fast)

        assert slow_candidates.errors == {
            Dataset.TAGS: "Loading tags timed out (>0.05s)"
        }
        assert list(fast_candidates.metrics) == ["host:web-1"]
        assert fast_candidates.errors == {}
        assert orchestrator.in_flight == 0
        assert orchestrator.stats().pending == 0

    async def test_stats_and_ttl(
        self, orchestrator: RequestOrchestrator, clock: FakeClock
    ) -> None:
        await orchestrator.resolve(METRIC_CONTEXT)

        assert orchestrator.stats() == OrchestratorStats(
            in_flight=0, pending=0, cached=1, cache_ttl_s=30, auth_blocked=False
        )

        clock.advance(10)
        orchestrator.set_cache_ttl(5)

        assert orchestrator.stats().cached == 0
        assert orchestrator.stats().cache_ttl_s == 5

    async def test_clear_cache(
        self, orchestrator: RequestOrchestrator, catalog: mock.AsyncMock
    ) -> None:
        await orchestrator.resolve(METRIC_CONTEXT)
        orchestrator.clear_cache()
        await orchestrator.resolve(METRIC_CONTEXT)

        assert catalog.fetch.await_count == 2
