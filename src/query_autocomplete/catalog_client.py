from __future__ import annotations

import logging
from collections.abc import Sequence
from types import TracebackType
from typing import Any

import aiohttp
import pydantic
from yarl import URL

from .suggestions import Dataset


LOGGER = logging.getLogger(__name__)


class CatalogError(Exception):
    code = "generic_network_error"


class CatalogUnauthorized(CatalogError):
    code = "unauthorized"


class CatalogNotFound(CatalogError):
    code = "not_found"


class CatalogTimeout(CatalogError):
    code = "timeout"


class CompleteResult(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    new_query: str = pydantic.Field(alias="newQuery")
    new_cursor_offset: int = pydantic.Field(alias="newCursorPosition")


_NAMES = pydantic.TypeAdapter(list[str])


class CatalogClient:
    def __init__(
        self,
        url: URL,
        token: str | None = None,
        site: str = "",
        timeout: aiohttp.ClientTimeout = aiohttp.client.DEFAULT_TIMEOUT,
        trace_configs: Sequence[aiohttp.TraceConfig] = (),
    ) -> None:
        self._base_url = url / "autocomplete"
        self._token = token
        self._site = site
        self._timeout = timeout
        self._trace_configs = trace_configs
        self._client: aiohttp.ClientSession | None = None

    @property
    def site(self) -> str:
        return self._site

    async def __aenter__(self) -> CatalogClient:
        self._client = self._create_http_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _create_http_client(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            headers=self._create_default_headers(),
            timeout=self._timeout,
            trace_configs=list(self._trace_configs),
        )

    async def aclose(self) -> None:
        if self._client:
            await self._client.close()

    def _create_default_headers(self) -> dict[str, str]:
        result = {}
        if self._token:
            result["Authorization"] = f"Bearer {self._token}"
        return result

    async def _request(self, method: str, url: URL, **kwargs: Any) -> Any:
        LOGGER.debug("Catalog request: %s %s", method, url)
        assert self._client, "client is not initialized"
        try:
            async with self._client.request(method, url, **kwargs) as response:
                if response.status in (401, 403):
                    response_text = await response.text()
                    msg = f"Catalog authorization failed: {response_text}"
                    raise CatalogUnauthorized(msg)
                if response.status == 404:
                    msg = f"Catalog resource not found: {url.path}"
                    raise CatalogNotFound(msg)
                if response.status >= 400:
                    response_text = await response.text()
                    msg = f"Catalog error: {response_text}"
                    LOGGER.error(msg)
                    raise CatalogError(msg)
                return await response.json()
        except TimeoutError as ex:
            msg = f"Catalog request timed out: {url.path}"
            raise CatalogTimeout(msg) from ex
        except (aiohttp.ClientError, ValueError) as ex:
            msg = f"Catalog request failed: {ex}"
            raise CatalogError(msg) from ex

    async def _get_names(self, url: URL) -> list[str]:
        payload = await self._request("GET", url)
        try:
            return _NAMES.validate_python(payload)
        except pydantic.ValidationError as ex:
            msg = f"Unexpected catalog response from {url.path}"
            raise CatalogError(msg) from ex

    async def get_metrics(self) -> list[str]:
        return await self._get_names(self._base_url / "metrics")

    async def get_tags(self, metric: str) -> list[str]:
        return await self._get_names(self._base_url / "tags" / metric)

    async def get_tag_values(self, metric: str, tag_key: str) -> list[str]:
        return await self._get_names(self._base_url / "tag-values" / metric / tag_key)

    async def get_logs_services(self) -> list[str]:
        return await self._get_names(self._base_url / "logs/services")

    async def get_logs_sources(self) -> list[str]:
        return await self._get_names(self._base_url / "logs/sources")

    async def get_logs_levels(self) -> list[str]:
        return await self._get_names(self._base_url / "logs/levels")

    async def get_logs_fields(self) -> list[str]:
        return await self._get_names(self._base_url / "logs/fields")

    async def get_logs_field_values(self, field: str) -> list[str]:
        return await self._get_names(self._base_url / "logs/field-values" / field)

    async def fetch(self, dataset: Dataset, *scope: str) -> list[str]:
        if dataset == Dataset.METRICS:
            return await self.get_metrics()
        if dataset == Dataset.TAGS:
            return await self.get_tags(*scope)
        if dataset == Dataset.TAG_VALUES:
            return await self.get_tag_values(*scope)
        if dataset == Dataset.SERVICES:
            return await self.get_logs_services()
        if dataset == Dataset.SOURCES:
            return await self.get_logs_sources()
        if dataset == Dataset.LEVELS:
            return await self.get_logs_levels()
        if dataset == Dataset.FIELDS:
            return await self.get_logs_fields()
        if dataset == Dataset.FIELD_VALUES:
            return await self.get_logs_field_values(*scope)
        msg = f"Unknown catalog dataset: {dataset}"
        raise ValueError(msg)

    async def complete(
        self,
        *,
        query: str,
        cursor_offset: int,
        selected_item: str,
        item_kind: str,
    ) -> CompleteResult:
        payload = await self._request(
            "POST",
            self._base_url / "complete",
            json={
                "query": query,
                "cursorPosition": cursor_offset,
                "selectedItem": selected_item,
                "itemKind": item_kind,
            },
        )
        try:
            return CompleteResult.model_validate(payload)
        except pydantic.ValidationError as ex:
            msg = "Unexpected catalog completion response"
            raise CatalogError(msg) from ex

