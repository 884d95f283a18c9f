from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass

import aiohttp
import aiohttp.web
import pydantic
import pytest
from yarl import URL

from query_autocomplete.api import create_completion_api_app
from query_autocomplete.catalog_client import CatalogClient
from query_autocomplete.config import CompletionApiConfig


@dataclass(frozen=True)
class Address:
    host: str
    port: int

    @property
    def http_url(self) -> URL:
        return URL.build(scheme="http", host=self.host, port=self.port)


@asynccontextmanager
async def create_local_app_server(
    app: aiohttp.web.Application, port: int = 8080
) -> AsyncIterator[Address]:
    runner = aiohttp.web.AppRunner(app)
    try:
        await runner.setup()
        address = Address("127.0.0.1", port)
        site = aiohttp.web.TCPSite(runner, address.host, address.port)
        await site.start()
        yield address
    finally:
        await runner.shutdown()
        await runner.cleanup()


@pytest.fixture()
async def catalog_server(
    unused_tcp_port_factory: Callable[[], int],
    catalog_api_app: aiohttp.web.Application,
) -> AsyncIterator[URL]:
    async with create_local_app_server(
        app=catalog_api_app, port=unused_tcp_port_factory()
    ) as address:
        yield address.http_url


@pytest.fixture()
async def catalog_client(
    catalog_server: URL, catalog_token: str
) -> AsyncIterator[CatalogClient]:
    async with CatalogClient(
        url=catalog_server, token=catalog_token, site="datadoghq.com"
    ) as client:
        yield client


@pytest.fixture()
def completion_api_config(
    unused_tcp_port_factory: Callable[[], int],
    catalog_server: URL,
    catalog_token: str,
) -> CompletionApiConfig:
    return CompletionApiConfig(
        server=CompletionApiConfig.Server(port=unused_tcp_port_factory()),
        catalog=CompletionApiConfig.Catalog(
            url=pydantic.HttpUrl(str(catalog_server)), token=catalog_token
        ),
    )


@pytest.fixture()
async def completion_api_server_factory() -> Callable[
    [CompletionApiConfig], AbstractAsyncContextManager[URL]
]:
    @asynccontextmanager
    async def _create(config: CompletionApiConfig) -> AsyncIterator[URL]:
        app = create_completion_api_app(config)
        async with create_local_app_server(
            app=app, port=config.server.port
        ) as address:
            yield address.http_url

    return _create


@pytest.fixture()
async def completion_api_server(
    completion_api_server_factory: Callable[
        [CompletionApiConfig], AbstractAsyncContextManager[URL]
    ],
    completion_api_config: CompletionApiConfig,
) -> AsyncIterator[URL]:
    async with completion_api_server_factory(completion_api_config) as server:
        yield server


@pytest.fixture()
async def client() -> AsyncIterator[aiohttp.ClientSession]:
    async with aiohttp.ClientSession() as session:
        yield session
