from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack
from importlib.metadata import version

import aiohttp
import aiohttp.web
import uvloop
from aiohttp.web import (
    HTTPBadGateway,
    HTTPBadRequest,
    HTTPGatewayTimeout,
    HTTPInternalServerError,
    HTTPNoContent,
    HTTPOk,
    HTTPUnauthorized,
    Request,
    Response,
    StreamResponse,
    json_response,
    middleware,
)
from aiohttp.web_urldispatcher import AbstractRoute
from aiohttp_apispec import (
    docs,
    request_schema,
    response_schema,
    setup_aiohttp_apispec,
    validation_middleware,
)
from neuro_logging import init_logging, setup_sentry

from .catalog_client import (
    CatalogClient,
    CatalogError,
    CatalogTimeout,
    CatalogUnauthorized,
)
from .config import CompletionApiConfig
from .engine import CompletionEngine, parse_query_context
from .orchestrator import RequestOrchestrator
from .query_context import from_utf16_offset, to_utf16_offset
from .replacement import resolve_replacement
from .schema import (
    CacheStatsSchema,
    ClientErrorSchema,
    CompleteRequest,
    CompleteRequestSchema,
    CompleteResponseSchema,
    PatchCacheRequestSchema,
    SuggestRequest,
    SuggestRequestSchema,
    SuggestResponseSchema,
)
from .suggestions import CompletionItem


LOGGER = logging.getLogger(__name__)

COMPLETION_API_CONFIG_APP_KEY = aiohttp.web.AppKey("config", CompletionApiConfig)
CATALOG_CLIENT_APP_KEY = aiohttp.web.AppKey("catalog_client", CatalogClient)
COMPLETION_ENGINE_APP_KEY = aiohttp.web.AppKey("completion_engine", CompletionEngine)


class ProbesHandler:
    def __init__(self, app: aiohttp.web.Application) -> None:
        self._app = app

    def register(self) -> list[AbstractRoute]:
        return self._app.router.add_routes([aiohttp.web.get("/ping", self.handle_ping)])

    async def handle_ping(self, request: Request) -> Response:
        return Response(text="Pong")


_ERROR_RESPONSES = {
    HTTPUnauthorized.status_code: {
        "description": "Catalog rejected the credentials",
        "schema": ClientErrorSchema(),
    },
    HTTPInternalServerError.status_code: {
        "description": "Unhandled error",
        "schema": ClientErrorSchema(),
    },
}


class AutocompleteApiHandler:
    def __init__(self, app: aiohttp.web.Application) -> None:
        self._app = app

    def register(self) -> None:
        self._app.router.add_routes(
            [
                aiohttp.web.post("/v1/autocomplete/suggest", self.handle_suggest),
                aiohttp.web.post("/v1/autocomplete/complete", self.handle_complete),
                aiohttp.web.get("/v1/autocomplete/cache", self.handle_get_cache),
                aiohttp.web.patch("/v1/autocomplete/cache", self.handle_patch_cache),
                aiohttp.web.delete("/v1/autocomplete/cache", self.handle_delete_cache),
            ]
        )

    @property
    def _config(self) -> CompletionApiConfig:
        return self._app[COMPLETION_API_CONFIG_APP_KEY]

    @property
    def _catalog_client(self) -> CatalogClient:
        return self._app[CATALOG_CLIENT_APP_KEY]

    @property
    def _engine(self) -> CompletionEngine:
        return self._app[COMPLETION_ENGINE_APP_KEY]

    @property
    def _orchestrator(self) -> RequestOrchestrator:
        return self._engine.orchestrator

    @docs(
        tags=["Autocomplete"],
        summary="Suggest completions at a cursor position.",
        description=(
            "Cursor positions are counted in UTF-16 code units, "
            "as editors report them."
        ),
        responses={HTTPOk.status_code: {}, **_ERROR_RESPONSES},
    )
    @request_schema(SuggestRequestSchema())
    @response_schema(SuggestResponseSchema())
    async def handle_suggest(self, request: Request) -> Response:
        request_data: SuggestRequest = request["data"]
        query = request_data.query
        result = await self._engine.suggest(
            request_data.language,
            query,
            from_utf16_offset(query, request_data.cursor_position),
        )
        return json_response(
            SuggestResponseSchema().dump(result), status=HTTPOk.status_code
        )

    @docs(
        tags=["Autocomplete"],
        summary="Apply a selected completion to a query.",
        responses={HTTPOk.status_code: {}, **_ERROR_RESPONSES},
    )
    @request_schema(CompleteRequestSchema())
    @response_schema(CompleteResponseSchema())
    async def handle_complete(self, request: Request) -> Response:
        request_data: CompleteRequest = request["data"]
        query = request_data.query
        cursor_offset = from_utf16_offset(query, request_data.cursor_position)
        context = parse_query_context(request_data.language, query, cursor_offset)
        item = CompletionItem(
            label=request_data.label or request_data.selected_item,
            kind=request_data.item_kind,
            insert_text=request_data.selected_item,
        )
        catalog = None
        if self._config.catalog.delegate_completion:
            catalog = self._catalog_client
        result = await resolve_replacement(
            query, cursor_offset, item, context, catalog=catalog
        )
        payload = {
            "new_query": result.new_text,
            "new_cursor_position": to_utf16_offset(
                result.new_text, result.new_cursor_offset
            ),
        }
        return json_response(
            CompleteResponseSchema().dump(payload), status=HTTPOk.status_code
        )

    @docs(
        tags=["Autocomplete"],
        summary="Get catalog cache statistics.",
        responses={HTTPOk.status_code: {}},
    )
    @response_schema(CacheStatsSchema())
    async def handle_get_cache(self, request: Request) -> Response:
        stats = self._orchestrator.stats()
        return json_response(
            CacheStatsSchema().dump(stats), status=HTTPOk.status_code
        )

    @docs(
        tags=["Autocomplete"],
        summary="Change the catalog cache TTL.",
        responses={HTTPOk.status_code: {}},
    )
    @request_schema(PatchCacheRequestSchema())
    @response_schema(CacheStatsSchema())
    async def handle_patch_cache(self, request: Request) -> Response:
        self._orchestrator.set_cache_ttl(request["data"]["ttl_s"])
        stats = self._orchestrator.stats()
        return json_response(
            CacheStatsSchema().dump(stats), status=HTTPOk.status_code
        )

    @docs(
        tags=["Autocomplete"],
        summary="Drop cached catalog data and lift an authorization block.",
        responses={HTTPNoContent.status_code: {}},
    )
    async def handle_delete_cache(self, request: Request) -> Response:
        self._orchestrator.clear_cache()
        self._orchestrator.reset_auth()
        return Response(status=HTTPNoContent.status_code)


@middleware
async def handle_exceptions(
    request: Request, handler: Callable[[Request], Awaitable[StreamResponse]]
) -> StreamResponse:
    try:
        return await handler(request)
    except ValueError as e:
        payload = {"error": str(e)}
        return json_response(payload, status=HTTPBadRequest.status_code)
    except CatalogUnauthorized as e:
        payload = {"error": str(e)}
        return json_response(payload, status=HTTPUnauthorized.status_code)
    except CatalogTimeout as e:
        payload = {"error": str(e)}
        return json_response(payload, status=HTTPGatewayTimeout.status_code)
    except CatalogError as e:
        payload = {"error": str(e)}
        return json_response(payload, status=HTTPBadGateway.status_code)
    except aiohttp.web.HTTPException:
        raise
    except Exception as e:
        msg_str = (
            f"Unexpected exception: {str(e)}. " f"Path with query: {request.path_qs}."
        )
        logging.exception(msg_str)
        payload = {"error": msg_str}
        return json_response(payload, status=HTTPInternalServerError.status_code)


package_version = version(__package__)


async def add_version_to_header(request: Request, response: StreamResponse) -> None:
    response.headers["X-Service-Version"] = f"query-autocomplete/{package_version}"


def create_completion_api_app(config: CompletionApiConfig) -> aiohttp.web.Application:
    async def _init_app(app: aiohttp.web.Application) -> AsyncIterator[None]:
        async with AsyncExitStack() as exit_stack:
            app[COMPLETION_API_CONFIG_APP_KEY] = config

            LOGGER.info("Initializing Catalog client")
            catalog_client = await exit_stack.enter_async_context(
                CatalogClient(
                    url=config.catalog.yarl_url,
                    token=config.catalog.token,
                    site=config.catalog.site,
                )
            )
            app[CATALOG_CLIENT_APP_KEY] = catalog_client

            LOGGER.info("Initializing Completion engine")
            orchestrator = RequestOrchestrator(
                catalog_client, config.orchestrator.to_config()
            )
            exit_stack.push_async_callback(orchestrator.cancel_pending)
            app[COMPLETION_ENGINE_APP_KEY] = CompletionEngine(
                orchestrator,
                max_suggestions=config.autocomplete.max_suggestions,
            )

            yield

    app = aiohttp.web.Application(
        middlewares=[handle_exceptions, validation_middleware]
    )
    app.on_response_prepare.append(add_version_to_header)
    ProbesHandler(app).register()

    autocomplete_app = aiohttp.web.Application()
    autocomplete_app.cleanup_ctx.append(_init_app)
    AutocompleteApiHandler(autocomplete_app).register()

    app.add_subapp("/api", autocomplete_app)

    prefix = "/api/autocomplete/docs"
    setup_aiohttp_apispec(
        app=app,
        title="Query autocomplete API documentation",
        url=f"{prefix}/swagger.json",
        static_path=f"{prefix}/static",
        swagger_path=prefix,
    )

    return app


def run_completion_api() -> None:  # pragma: no coverage
    init_logging(health_check_url_path="/ping")
    config = CompletionApiConfig()  # type: ignore
    logging.info("Loaded config: %r", config)
    setup_sentry(health_check_url_path="/ping")
    loop = uvloop.new_event_loop()
    aiohttp.web.run_app(
        create_completion_api_app(config),
        host=config.server.host,
        port=config.server.port,
        handler_cancellation=True,
        loop=loop,
    )
