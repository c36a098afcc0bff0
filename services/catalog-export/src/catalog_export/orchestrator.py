"""
Pipeline orchestration: authenticate, fetch, enrich, transform, export, store.

Stages run strictly in sequence. A fatal error in any stage moves the run to
FAILED and is reported together with the steps completed so far.
"""

import logging
import time
import tracemalloc
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from catalog_export.auth import AdminCredentials, AuthClient
from catalog_export.cache import CategoryMapCache
from catalog_export.config import ExportConfig
from catalog_export.csv_exporter import CsvExport, CsvExporter
from catalog_export.enricher import BatchEnricher, EnrichmentResult
from catalog_export.exceptions import ExportError, FetchError
from catalog_export.http_client import CommerceHttpClient
from catalog_export.logging_config import set_run_id
from catalog_export.paginator import PageResult, Paginator
from catalog_export.retry import RetryPolicy
from catalog_export.storage import StorageGateway, StorageResult, create_storage
from catalog_export.transformer import ProductTransformer, TransformationResult

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "Idle"
    AUTHENTICATING = "Authenticating"
    FETCHING = "Fetching"
    ENRICHING = "Enriching"
    TRANSFORMING = "Transforming"
    EXPORTING = "Exporting"
    STORING = "Storing"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class PipelineRun:
    """In-memory record of one export run."""
    run_id: str
    state: PipelineState = PipelineState.IDLE
    steps: list[str] = field(default_factory=list)
    transitions: list[str] = field(default_factory=list)
    checkpoints: dict[str, float] = field(default_factory=dict)
    memory: dict[str, dict] = field(default_factory=dict)
    counters: dict[str, Any] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    started_at: float = field(default_factory=time.perf_counter)
    _stage_started: float = field(default_factory=time.perf_counter)

    def transition(self, state: PipelineState) -> None:
        if state is PipelineState.FAILED:
            self.failed_stage = self.state.value
        logger.info(
            f"Pipeline {self.state.value} -> {state.value}",
            extra={"state": state.value},
        )
        self.state = state
        self.transitions.append(state.value)
        self._stage_started = time.perf_counter()

    def step(self, message: str) -> None:
        self.steps.append(message)

    def checkpoint(self, name: str) -> float:
        """Record stage duration and a memory snapshot."""
        elapsed_ms = round((time.perf_counter() - self._stage_started) * 1000, 2)
        self.checkpoints[name] = elapsed_ms
        if tracemalloc.is_tracing():
            current, peak = tracemalloc.get_traced_memory()
            self.memory[name] = {"currentBytes": current, "peakBytes": peak}
        return elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000, 2)


class PipelineOrchestrator:
    """
    Runs one catalog export.

    Collaborators that talk to the outside world (HTTP transport, storage,
    caches) can be injected; by default they are built from the config.
    """

    def __init__(
        self,
        config: ExportConfig,
        storage: Optional[StorageGateway] = None,
        auth_client: Optional[AuthClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        category_cache: Optional[CategoryMapCache] = None,
        retry_policies: Optional[dict[str, RetryPolicy]] = None,
    ):
        self.config = config
        self.transport = transport
        self.auth_client = auth_client or AuthClient(config.commerce, transport=transport)
        self.category_cache = category_cache
        self.retry_policies = retry_policies
        if storage is None and config.export.is_production:
            storage = create_storage(config.storage)
        self.storage = storage
        self.run_state: Optional[PipelineRun] = None
        self.last_export: Optional[CsvExport] = None

    async def run(self) -> tuple[int, dict]:
        """
        Execute the pipeline.

        Returns:
            (status code, envelope body). ExportErrors become error envelopes;
            any other exception propagates to the caller.
        """
        run = PipelineRun(run_id=str(uuid.uuid4()))
        self.run_state = run
        set_run_id(run.run_id)

        started_tracing = not tracemalloc.is_tracing()
        if started_tracing:
            tracemalloc.start()

        try:
            body = await self._execute(run)
            return 200, body
        except ExportError as e:
            run.transition(PipelineState.FAILED)
            if isinstance(e, FetchError):
                run.counters.update(product_count=e.fetched_count, pages_fetched=e.page - 1)
                run.step(
                    f"Fetched {e.fetched_count} products before failure on page {e.page}"
                )
            logger.error(f"Export pipeline failed: {e.message}", extra={"error": e.to_dict()})
            return e.status_code, self._error_body(run, e)
        except Exception:
            run.transition(PipelineState.FAILED)
            raise
        finally:
            if started_tracing:
                tracemalloc.stop()

    async def _execute(self, run: PipelineRun) -> dict:
        config = self.config
        credentials = AdminCredentials.from_settings(config.commerce)

        async with CommerceHttpClient(
            config,
            self.auth_client,
            credentials=credentials,
            transport=self.transport,
            retry_policies=self.retry_policies,
        ) as http_client:
            run.transition(PipelineState.AUTHENTICATING)
            await self.auth_client.get_token(credentials)
            run.step("Successfully authenticated with Commerce")
            run.checkpoint("authenticate")

            run.transition(PipelineState.FETCHING)
            page_result = await Paginator(http_client, config.pagination).fetch_all_products()
            self._record_fetch(run, page_result)

            run.transition(PipelineState.ENRICHING)
            enricher = BatchEnricher(http_client, config, cache=self.category_cache)
            enrichment = await enricher.enrich(page_result.products)
            self._record_enrichment(run, enrichment)

            run.counters["api_calls"] = http_client.api_calls

        run.transition(PipelineState.TRANSFORMING)
        transformer = ProductTransformer(config.commerce.media_url)
        transformation = transformer.transform_batch(enrichment.products, config.export.fields)
        self._record_transformation(run, transformation)

        run.transition(PipelineState.EXPORTING)
        export = CsvExporter().export(transformation.records, config.export.fields)
        self.last_export = export
        run.step(
            f"Generated CSV with {export.stats.record_count} records "
            f"({export.stats.savings_percent}% smaller compressed)"
        )
        run.checkpoint("export")

        stored: Optional[StorageResult] = None
        if config.export.is_production and self.storage is not None:
            run.transition(PipelineState.STORING)
            stored = await self._store(export)
            run.step(f"Stored {stored.file_name} in {stored.provider} storage")
            run.checkpoint("store")
        else:
            run.step("Skipped storage in dev mode")

        run.transition(PipelineState.DONE)
        return self._success_body(run, export, stored)

    def _record_fetch(self, run: PipelineRun, page_result: PageResult) -> None:
        run.counters.update(
            product_count=len(page_result.products),
            pages_fetched=page_result.pages_fetched,
            truncated=page_result.truncated,
        )
        run.step(f"Successfully fetched {len(page_result.products)} products")
        if page_result.truncated:
            run.step(
                f"Note: page limit of {self.config.pagination.max_pages} reached, "
                f"{page_result.total_count - len(page_result.products)} of "
                f"{page_result.total_count} products were not exported"
            )
        run.checkpoint("fetch")

    def _record_enrichment(self, run: PipelineRun, enrichment: EnrichmentResult) -> None:
        run.counters.update(
            category_count=enrichment.category_count,
            enrichment_warnings=enrichment.warning_count,
            category_cache_hit=enrichment.cache_hit,
        )
        passes = [
            name
            for name, enabled in (
                ("inventory", self.config.export.include_inventory),
                ("categories", self.config.export.include_categories),
            )
            if enabled
        ]
        if passes:
            run.step(f"Successfully enriched {len(enrichment.products)} products with {' and '.join(passes)}")
        else:
            run.step("Skipped enrichment, inventory and categories are disabled")
        if enrichment.warning_count:
            run.step(f"Note: {enrichment.warning_count} enrichment warnings")
        run.checkpoint("enrich")

    def _record_transformation(self, run: PipelineRun, transformation: TransformationResult) -> None:
        run.counters.update(
            record_count=transformation.record_count,
            quality_warnings=len(transformation.warnings),
        )
        run.step(f"Successfully transformed {transformation.record_count} products")
        run.checkpoint("transform")

    async def _store(self, export: CsvExport) -> StorageResult:
        file_name = self.config.storage.file_name
        if self.storage.supports_compression:
            return await self.storage.write(
                file_name, export.content, content_type="text/csv", content_encoding="gzip"
            )
        return await self.storage.write(file_name, export.csv_bytes, content_type="text/csv")

    def _success_body(
        self,
        run: PipelineRun,
        export: CsvExport,
        stored: Optional[StorageResult],
    ) -> dict:
        counters = run.counters
        body: dict[str, Any] = {
            "success": True,
            "message": f"Successfully exported {export.stats.record_count} products",
            "steps": list(run.steps),
            "performance": {
                "executionTime": run.elapsed_ms,
                "compression": export.stats.to_dict(),
                "memory": self._memory_summary(run),
                "checkpoints": dict(run.checkpoints),
                "productCount": counters.get("product_count", 0),
                "categoryCount": counters.get("category_count", 0),
                "apiCalls": counters.get("api_calls", 0),
                "enrichmentWarnings": counters.get("enrichment_warnings", 0),
                "truncated": counters.get("truncated", False),
            },
            "state": run.state.value,
            "runId": run.run_id,
        }
        if stored is not None:
            body["file"] = stored.to_dict()
        return body

    def _error_body(self, run: PipelineRun, error: ExportError) -> dict:
        counters = run.counters
        body: dict[str, Any] = {
            "success": False,
            "error": error.message,
            "steps": list(run.steps),
            "state": run.state.value,
            "failedStage": run.failed_stage,
            "completed": {
                "pagesFetched": counters.get("pages_fetched", 0),
                "productCount": counters.get("product_count", 0),
                "enrichmentWarnings": counters.get("enrichment_warnings", 0),
                "recordCount": counters.get("record_count", 0),
            },
            "runId": run.run_id,
        }
        if not self.config.export.is_production:
            body["details"] = error.to_dict()
        return body

    @staticmethod
    def _memory_summary(run: PipelineRun) -> dict:
        peak = max((m["peakBytes"] for m in run.memory.values()), default=0)
        return {"peakMB": round(peak / (1024 * 1024), 2), "stages": dict(run.memory)}
