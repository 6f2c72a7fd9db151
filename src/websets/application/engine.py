# src/websets/application/engine.py
"""
Composition root shared by the API, the CLI and the arq worker.

Stores and services are created lazily on first access so an entry point
only pays for what it touches.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from websets.application.services.data_integrity import DataIntegrityChecker
from websets.application.services.provider_gateway import ProviderGateway
from websets.application.services.rate_limiter import RateLimiter
from websets.application.workflows.enrichment_orchestrator import EnrichmentOrchestrator
from websets.application.workflows.export_runner import ExportRunner
from websets.infrastructure.providers.registry import ProviderClientRegistry
from websets.infrastructure.stores.export_store import ExportJobStore
from websets.infrastructure.stores.job_store import EnrichmentJobStore
from websets.infrastructure.stores.provider_store import ProviderStore
from websets.infrastructure.stores.provider_usage_store import ProviderUsageStore
from websets.infrastructure.stores.rate_limit_store import RateLimitStore
from websets.infrastructure.stores.sqlalchemy_db import get_db_url
from websets.infrastructure.stores.webset_store import WebsetStore
from websets.utils.settings import EngineSettings


class WebsetsEngine:
    def __init__(
        self,
        db_url: Optional[str] = None,
        *,
        settings: Optional[EngineSettings] = None,
        registry: Optional[ProviderClientRegistry] = None,
        enrichment_launcher: Optional[Callable[[str], Any]] = None,
        export_launcher: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.db_url = db_url or get_db_url()
        self.settings = settings or EngineSettings.from_env()
        self._registry = registry
        self._enrichment_launcher = enrichment_launcher
        self._export_launcher = export_launcher
        self._clock = clock
        self._sleep = sleep

        self._webset_store: Optional[WebsetStore] = None
        self._job_store: Optional[EnrichmentJobStore] = None
        self._export_store: Optional[ExportJobStore] = None
        self._provider_store: Optional[ProviderStore] = None
        self._usage_store: Optional[ProviderUsageStore] = None
        self._rate_limit_store: Optional[RateLimitStore] = None
        self._rate_limiter: Optional[RateLimiter] = None
        self._gateway: Optional[ProviderGateway] = None
        self._orchestrator: Optional[EnrichmentOrchestrator] = None
        self._exporter: Optional[ExportRunner] = None
        self._integrity: Optional[DataIntegrityChecker] = None

    @property
    def webset_store(self) -> WebsetStore:
        if self._webset_store is None:
            self._webset_store = WebsetStore(
                self.db_url, max_commit_retries=self.settings.max_commit_retries
            )
        return self._webset_store

    @property
    def job_store(self) -> EnrichmentJobStore:
        if self._job_store is None:
            self._job_store = EnrichmentJobStore(self.db_url)
        return self._job_store

    @property
    def export_store(self) -> ExportJobStore:
        if self._export_store is None:
            self._export_store = ExportJobStore(self.db_url)
        return self._export_store

    @property
    def provider_store(self) -> ProviderStore:
        if self._provider_store is None:
            self._provider_store = ProviderStore(self.db_url)
        return self._provider_store

    @property
    def usage_store(self) -> ProviderUsageStore:
        if self._usage_store is None:
            self._usage_store = ProviderUsageStore(self.db_url)
        return self._usage_store

    @property
    def rate_limit_store(self) -> RateLimitStore:
        if self._rate_limit_store is None:
            self._rate_limit_store = RateLimitStore(self.db_url)
        return self._rate_limit_store

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = RateLimiter(self.rate_limit_store, clock=self._clock, sleep=self._sleep)
        return self._rate_limiter

    @property
    def gateway(self) -> ProviderGateway:
        if self._gateway is None:
            self._gateway = ProviderGateway(
                self.provider_store,
                self.rate_limiter,
                registry=self._registry,
                usage_store=self.usage_store,
                settings=self.settings,
                sleep=self._sleep,
            )
        return self._gateway

    @property
    def orchestrator(self) -> EnrichmentOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = EnrichmentOrchestrator(
                self.webset_store,
                self.job_store,
                self.gateway,
                settings=self.settings,
                launcher=self._enrichment_launcher,
                sleep=self._sleep,
            )
        return self._orchestrator

    @property
    def exporter(self) -> ExportRunner:
        if self._exporter is None:
            self._exporter = ExportRunner(
                self.webset_store,
                self.export_store,
                settings=self.settings,
                launcher=self._export_launcher,
            )
        return self._exporter

    @property
    def integrity(self) -> DataIntegrityChecker:
        if self._integrity is None:
            self._integrity = DataIntegrityChecker(self.webset_store)
        return self._integrity

    async def aclose(self) -> None:
        if self._gateway is not None:
            await self._gateway.close()
        self.close()

    def close(self) -> None:
        for store in (
            self._webset_store,
            self._job_store,
            self._export_store,
            self._provider_store,
            self._usage_store,
            self._rate_limit_store,
        ):
            if store is not None:
                store.close()
