from __future__ import annotations

from dataclasses import dataclass

import pydantic
from pydantic_settings import BaseSettings, SettingsConfigDict
from yarl import URL


@dataclass(frozen=True)
class OrchestratorConfig:
    cache_ttl_s: float = 30
    cache_max_size: int = 1000
    max_concurrent_fetches: int = 5
    fetch_timeout_s: float = 2


@dataclass(frozen=True)
class AutocompleteConfig:
    debounce_s: float = 0.4
    max_suggestions: int = 100


class CompletionApiConfig(BaseSettings):
    model_config = SettingsConfigDict(env_nested_delimiter="__")

    class Server(pydantic.BaseModel):
        host: str = "0.0.0.0"
        port: int = 8080

    class Catalog(pydantic.BaseModel):
        url: pydantic.HttpUrl
        token: str = pydantic.Field(default="", repr=False)
        site: str = "datadoghq.com"
        delegate_completion: bool = False

        @property
        def yarl_url(self) -> URL:
            return URL(str(self.url))

    class Orchestrator(pydantic.BaseModel):
        cache_ttl_s: float = pydantic.Field(default=30, ge=0)
        cache_max_size: int = pydantic.Field(default=1000, gt=0)
        max_concurrent_fetches: int = pydantic.Field(default=5, gt=0)
        fetch_timeout_s: float = pydantic.Field(default=2, gt=0)

        def to_config(self) -> OrchestratorConfig:
            return OrchestratorConfig(
                cache_ttl_s=self.cache_ttl_s,
                cache_max_size=self.cache_max_size,
                max_concurrent_fetches=self.max_concurrent_fetches,
                fetch_timeout_s=self.fetch_timeout_s,
            )

    class Autocomplete(pydantic.BaseModel):
        debounce_s: float = pydantic.Field(default=0.4, ge=0)
        max_suggestions: int = pydantic.Field(default=100, gt=0)

        def to_config(self) -> AutocompleteConfig:
            return AutocompleteConfig(
                debounce_s=self.debounce_s, max_suggestions=self.max_suggestions
            )

    server: Server = Server()
    catalog: Catalog
    orchestrator: Orchestrator = Orchestrator()
    autocomplete: Autocomplete = Autocomplete()
