"""
Pipeline Factory

Builds every pipeline component from a PastoralConfig with explicit
dependencies, so the server, the CLI and tests share one wiring.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .common.config import InChurchConfig, PastoralConfig, StoreConfig, load_config
from .common.errors import ValidationError
from .common.inchurch_client import InChurchClient
from .common.llm_client import LLMClient
from .common.rate_limiter import RateLimiter
from .common.schemas import Organization, PersonChange, utc_now
from .common.store import DataStore, InMemoryStore, JsonFileStore
from .enrichment import ChangeAnalyzer, EnrichmentService
from .ingest import (
    ChangeIngestor,
    ConflictPolicy,
    ConflictResolver,
    DeltaDetector,
    DirectorySyncService,
    HeuristicScorer,
)
from .ingest.handlers import InChurchHandler
from .ingest.sync import ClientFactory
from .initiatives import InitiativeGenerator
from .jobs import JobRunner

logger = logging.getLogger("pastoral.pipeline")


@dataclass
class Pipeline:
    """Fully wired components sharing one store."""
    config: PastoralConfig
    store: DataStore
    ingestor: ChangeIngestor
    sync_service: DirectorySyncService
    analyzer: ChangeAnalyzer
    enrichment: EnrichmentService
    generator: InitiativeGenerator
    jobs: JobRunner

    async def process_critical_change(self, change: PersonChange) -> None:
        """Score and generate right away for one person after a critical webhook change."""
        scoring = await self.enrichment.process_person_changes(
            change.person_id,
            include_historical_context=self.config.pipeline.include_historical_context,
        )
        generation = await self.generator.generate_for_person(
            change.person_id,
            max_initiatives=self.config.pipeline.max_initiatives_per_person,
        )
        logger.info(
            "Critical change %s processed inline: %d scored, %d initiative(s)",
            change.id, scoring.total_processed, generation.initiatives_generated,
        )

    async def aclose(self) -> None:
        await self.store.close()


def create_store(config: StoreConfig) -> DataStore:
    backend = (config.backend or "json").lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "json":
        return JsonFileStore(Path(config.path).expanduser())
    raise ValidationError(f"Unknown store backend: {config.backend}")


def create_llm_client(config: PastoralConfig) -> LLMClient:
    return LLMClient(
        provider=config.llm.provider,
        model=config.llm.model,
        anthropic_api_key=config.llm.anthropic_api_key,
        openai_api_key=config.llm.openai_api_key,
        google_api_key=config.llm.google_api_key,
    )


def inchurch_client_factory(config: InChurchConfig) -> ClientFactory:
    """One directory client per organization, using that organization's credentials."""

    def factory(organization: Organization) -> InChurchClient:
        return InChurchClient(
            api_key=organization.inchurch_api_key,
            api_secret=organization.inchurch_secret,
            base_url=config.api_url,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            requests_per_minute=config.rate_limit_requests,
            cache_ttl=config.cache_ttl,
        )

    return factory


async def create_pipeline(
    config: Optional[PastoralConfig] = None,
    store: Optional[DataStore] = None,
    llm_client: Optional[LLMClient] = None,
    client_factory: Optional[ClientFactory] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Pipeline:
    """
    Build the pipeline. Collaborators not passed in are created from config.

    Args:
        config: Configuration (loaded from disk and environment if None)
        store: Persistence backend (created from ``config.store`` if None)
        llm_client: Model client (created from ``config.llm`` if None)
        client_factory: Directory client factory (InChurch HTTP client if None)
        clock: Wall clock shared by every component

    Returns:
        Pipeline with the ingestor's critical-change hook attached
    """
    config = config or load_config()
    store = store or create_store(config.store)
    llm_client = llm_client or create_llm_client(config)
    client_factory = client_factory or inchurch_client_factory(config.inchurch)

    scorer = HeuristicScorer()
    delta = DeltaDetector()

    ingestor = ChangeIngestor(
        store=store,
        handler=InChurchHandler(config.webhook.signing_secret),
        scorer=scorer,
        delta_detector=delta,
        clock=clock,
    )
    sync_service = DirectorySyncService(
        store=store,
        client_factory=client_factory,
        scorer=scorer,
        delta_detector=delta,
        conflict_resolver=ConflictResolver(
            ConflictPolicy(review_window_hours=config.pipeline.conflict_review_hours)
        ),
        page_size=config.inchurch.page_size,
        birthday_lookahead_days=config.pipeline.birthday_lookahead_days,
        page_limiter=RateLimiter.fixed_delay(config.inchurch.page_delay),
        clock=clock,
    )
    analyzer = ChangeAnalyzer(
        llm_client,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
        timeout=config.llm.timeout,
    )
    enrichment = EnrichmentService(store, analyzer, clock=clock)
    generator = InitiativeGenerator(
        store,
        clock=clock,
        duplicate_window_days=config.pipeline.duplicate_window_days,
    )
    jobs = JobRunner(
        store=store,
        sync_service=sync_service,
        enrichment=enrichment,
        generator=generator,
        config=config.pipeline,
        clock=clock,
    )

    pipeline = Pipeline(
        config=config,
        store=store,
        ingestor=ingestor,
        sync_service=sync_service,
        analyzer=analyzer,
        enrichment=enrichment,
        generator=generator,
        jobs=jobs,
    )
    ingestor.set_critical_processor(pipeline.process_critical_change)

    logger.info(
        "Pipeline ready (store=%s, llm=%s/%s, available=%s)",
        type(store).__name__, llm_client.provider, llm_client.model or "-", llm_client.is_available,
    )
    return pipeline
