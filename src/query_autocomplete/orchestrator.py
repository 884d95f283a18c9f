from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .cache import CompletionCache
from .catalog_client import (
    CatalogClient,
    CatalogError,
    CatalogNotFound,
    CatalogTimeout,
    CatalogUnauthorized,
)
from .config import OrchestratorConfig
from .logs_parser import DEFAULT_FACETS
from .query_context import ContextType, LogsFacet, QueryContext
from .suggestions import CandidateSets, Dataset, extract_tag_values


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lookup:
    dataset: Dataset
    scope: tuple[str, ...] = ()

    def cache_key(self, site: str) -> str:
        return "|".join((self.dataset.value, site, *self.scope))


@dataclass(frozen=True)
class OrchestratorStats:
    in_flight: int
    pending: int
    cached: int
    cache_ttl_s: float
    auth_blocked: bool


_FACET_DATASETS = {
    LogsFacet.SERVICE: Dataset.SERVICES,
    LogsFacet.SOURCE: Dataset.SOURCES,
    LogsFacet.LEVEL: Dataset.LEVELS,
}


def plan_lookups(context: QueryContext) -> list[Lookup]:
    context_type = context.context_type
    if context_type == ContextType.METRIC_NAME:
        return [Lookup(Dataset.METRICS)]
    if context_type in (ContextType.FILTER_TAG_KEY, ContextType.GROUPING_TAG):
        if context.metric_name:
            return [Lookup(Dataset.TAGS, (context.metric_name,))]
        return []
    if context_type == ContextType.FILTER_TAG_VALUE:
        if context.metric_name and context.tag_key:
            return [
                Lookup(Dataset.TAG_VALUES, (context.metric_name, context.tag_key))
            ]
        return []
    if context_type in (ContextType.LOGS_SEARCH, ContextType.LOGS_FACET_NAME):
        if context.in_quotes:
            return []
        return [Lookup(Dataset.FIELDS)]
    if context_type == ContextType.LOGS_FACET_VALUE:
        if context.facet in _FACET_DATASETS:
            return [Lookup(_FACET_DATASETS[context.facet])]
        if context.tag_key:
            return [Lookup(Dataset.FIELD_VALUES, (context.tag_key,))]
    return []


class RequestOrchestrator:
    def __init__(
        self,
        catalog: CatalogClient,
        config: OrchestratorConfig | None = None,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._catalog = catalog
        self._config = config or OrchestratorConfig()
        self._cache = CompletionCache(
            ttl_s=self._config.cache_ttl_s,
            maxsize=self._config.cache_max_size,
            timer=timer,
        )
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_fetches)
        self._pending: dict[str, asyncio.Task[Sequence[str]]] = {}
        self._in_flight = 0
        self._auth_error: CatalogUnauthorized | None = None

    @property
    def cache(self) -> CompletionCache:
        return self._cache

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_auth_blocked(self) -> bool:
        return self._auth_error is not None

    def stats(self) -> OrchestratorStats:
        return OrchestratorStats(
            in_flight=self._in_flight,
            pending=len(self._pending),
            cached=len(self._cache),
            cache_ttl_s=self._cache.ttl_s,
            auth_blocked=self.is_auth_blocked,
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    def set_cache_ttl(self, ttl_s: float) -> None:
        self._cache.set_ttl(ttl_s)

    def reset_auth(self) -> None:
        if self._auth_error is not None:
            logger.info("Catalog authorization block reset")
        self._auth_error = None

    async def cancel_pending(self) -> None:
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("Cancelled %d pending catalog fetches", len(tasks))

    async def resolve(self, context: QueryContext) -> CandidateSets:
        lookups = plan_lookups(context)
        if not lookups:
            return CandidateSets()
        self._raise_if_auth_blocked()
        results = await asyncio.gather(
            *(self._lookup(lookup) for lookup in lookups), return_exceptions=True
        )
        data: dict[str, Sequence[str]] = {}
        errors: dict[Dataset, str] = {}
        for lookup, result in zip(lookups, results, strict=True):
            if isinstance(result, CatalogUnauthorized):
                raise result
            if isinstance(result, CatalogError):
                logger.warning("Failed to load %s: %s", lookup.dataset, result)
                errors[lookup.dataset] = str(result)
            elif isinstance(result, asyncio.CancelledError):
                errors[lookup.dataset] = "Request cancelled"
            elif isinstance(result, BaseException):
                raise result
            else:
                data[lookup.dataset.value] = result
        return CandidateSets(**data, errors=errors)  # type: ignore[arg-type]

    def _raise_if_auth_blocked(self) -> None:
        if self._auth_error is not None:
            msg = f"Catalog access is blocked: {self._auth_error}"
            raise CatalogUnauthorized(msg)

    async def _lookup(self, lookup: Lookup) -> Sequence[str]:
        key = lookup.cache_key(self._catalog.site)
        entry = self._cache.get(key)
        if entry is not None:
            logger.debug("Cache hit for %s", key)
            return entry.data
        try:
            return await asyncio.shield(self._get_fetch_task(key, lookup))
        except CatalogNotFound:
            return await self._fallback(lookup)

    async def _fallback(self, lookup: Lookup) -> Sequence[str]:
        if lookup.dataset == Dataset.TAG_VALUES:
            metric, tag_key = lookup.scope
            logger.info("Tag values of %s are not available, using tags", metric)
            tags = await self._lookup(Lookup(Dataset.TAGS, (metric,)))
            return extract_tag_values(tags, tag_key)
        if lookup.dataset == Dataset.FIELDS:
            logger.info("Logs fields are not available, using default facets")
            return DEFAULT_FACETS
        msg = f"Catalog has no {lookup.dataset} for {'/'.join(lookup.scope)}"
        raise CatalogNotFound(msg)

    def _get_fetch_task(
        self, key: str, lookup: Lookup
    ) -> asyncio.Task[Sequence[str]]:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(key, lookup))
            self._pending[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        return task

    def _forget(self, key: str, task: asyncio.Task[Sequence[str]]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()

    async def _fetch(self, key: str, lookup: Lookup) -> Sequence[str]:
        async with self._semaphore:
            self._raise_if_auth_blocked()
            self._in_flight += 1
            try:
                logger.debug("Fetching %s", key)
                data = await asyncio.wait_for(
                    self._catalog.fetch(lookup.dataset, *lookup.scope),
                    timeout=self._config.fetch_timeout_s,
                )
            except TimeoutError as ex:
                msg = (
                    f"Loading {lookup.dataset} timed out "
                    f"(>{self._config.fetch_timeout_s}s)"
                )
                raise CatalogTimeout(msg) from ex
            except CatalogUnauthorized as ex:
                logger.error("Catalog authorization failed: %s", ex)
                self._auth_error = ex
                self._cancel_other_fetches()
                raise
            finally:
                self._in_flight -= 1
        return self._cache.set(key, data).data

    def _cancel_other_fetches(self) -> None:
        current = asyncio.current_task()
        for task in self._pending.values():
            if task is not current:
                task.cancel()
