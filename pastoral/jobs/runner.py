"""
Orchestration Jobs

Scheduled entry points (daily directory sync, LLM scoring, initiative
generation). Each job discovers organizations with work, processes them one
at a time behind a rate limiter and a time budget, isolates per-organization
failures, and writes a single execution-log row for the run.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..common.config import PipelineConfig
from ..common.errors import JobFailedError, PastoralError, ValidationError
from ..common.rate_limiter import RateLimiter
from ..common.schemas import JobStatus, SyncExecutionLog, SyncType, summarize_errors, utc_now
from ..common.store import DataStore
from ..enrichment import EnrichmentService
from ..ingest import DirectorySyncService
from ..initiatives import InitiativeGenerator

logger = logging.getLogger("pastoral.jobs.runner")

LimiterFactory = Callable[[float], RateLimiter]

_JOB_TRANSITIONS = {
    JobStatus.NOT_STARTED: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.COMPLETED_WITH_ERRORS: set(),
    JobStatus.FAILED: set(),
}


class JobRun:
    """not_started -> running -> completed | completed_with_errors | failed"""

    def __init__(self, sync_type: SyncType, monotonic: Callable[[], float] = time.monotonic):
        self.sync_type = sync_type
        self.status = JobStatus.NOT_STARTED
        self._monotonic = monotonic
        self._started: Optional[float] = None
        self._finished: Optional[float] = None

    def _transition(self, status: JobStatus) -> None:
        if status not in _JOB_TRANSITIONS[self.status]:
            raise ValidationError(
                f"{self.sync_type.value} job: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def start(self) -> None:
        self._transition(JobStatus.RUNNING)
        self._started = self._monotonic()

    def finish(self, has_errors: bool) -> None:
        self._transition(JobStatus.COMPLETED_WITH_ERRORS if has_errors else JobStatus.COMPLETED)
        self._finished = self._monotonic()

    def fail(self) -> None:
        self._transition(JobStatus.FAILED)
        self._finished = self._monotonic()

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        end = self._finished if self._finished is not None else self._monotonic()
        return end - self._started

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed_seconds * 1000)


@dataclass
class JobReport:
    """Aggregated outcome of one job run, rendered as the cron response body."""
    sync_type: SyncType
    status: JobStatus = JobStatus.NOT_STARTED
    execution_time_ms: int = 0
    organizations_processed: int = 0
    totals: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def add_total(self, key: str, value: Any) -> None:
        self.totals[key] = self.totals.get(key, 0) + value

    @property
    def summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"organizationsProcessed": self.organizations_processed}
        for key, value in self.totals.items():
            summary[key] = round(value, 4) if isinstance(value, float) else value
        summary["errorsEncountered"] = len(self.errors)
        return summary

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.status != JobStatus.FAILED,
            "executionTime": self.execution_time_ms,
            "summary": self.summary,
            "results": self.results,
        }


# Per-organization processor: fills report totals, returns that organization's result entry
OrgProcessor = Callable[[str, JobReport], Awaitable[Dict[str, Any]]]


class JobRunner:
    """
    Runs the scheduled jobs against the pipeline components.

    Assumes no two runs of the same job overlap; the store's claim and link
    operations keep an accidental overlap from double-processing changes.
    """

    def __init__(
        self,
        store: DataStore,
        sync_service: DirectorySyncService,
        enrichment: EnrichmentService,
        generator: InitiativeGenerator,
        config: Optional[PipelineConfig] = None,
        limiter_factory: LimiterFactory = RateLimiter.fixed_delay,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._sync = sync_service
        self._enrichment = enrichment
        self._generator = generator
        self._config = config or PipelineConfig()
        self._limiter_factory = limiter_factory
        self._clock = clock
        self._monotonic = monotonic

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_daily_sync(self) -> JobReport:
        """Poll the directory of every organization with InChurch credentials."""

        async def discover() -> List[str]:
            organizations = await self._store.list_organizations()
            return [o.id for o in organizations if o.has_directory_credentials]

        async def process(organization_id: str, report: JobReport) -> Dict[str, Any]:
            organization = await self._store.get_organization(organization_id)
            if organization is None:
                raise PastoralError(f"Organization {organization_id} disappeared during sync")
            result = await self._sync.sync_organization(organization)
            report.add_total("totalRecordsSynced", result.total_records)
            report.add_total("totalChangesDetected", result.changes_recorded)
            report.add_total("totalConflicts", result.conflicts)
            report.add_total("totalSpecialDates", result.special_dates)
            report.errors.extend(result.errors)
            return {"organizationName": organization.name, **result.to_dict()}

        return await self._run(
            SyncType.DAILY_POLLING, "daily sync", discover, process, self._config.sync_org_delay,
            initial_totals={
                "totalRecordsSynced": 0,
                "totalChangesDetected": 0,
                "totalConflicts": 0,
                "totalSpecialDates": 0,
            },
            records_key="totalRecordsSynced",
        )

    async def run_llm_scoring(self) -> JobReport:
        """Score unprocessed changes for every organization that has any."""

        async def process(organization_id: str, report: JobReport) -> Dict[str, Any]:
            result = await self._enrichment.process_unprocessed_changes(
                organization_id=organization_id,
                batch_size=self._config.scoring_batch_size,
                include_historical_context=self._config.include_historical_context,
            )
            report.add_total("totalChangesProcessed", result.total_processed)
            report.add_total("totalCost", result.total_cost)
            report.errors.extend(result.errors)
            return {
                "organizationName": await self._organization_name(organization_id),
                "changesProcessed": result.total_processed,
                "cost": result.total_cost,
                "errors": len(result.errors),
                "processingTime": result.processing_time_ms,
            }

        return await self._run(
            SyncType.LLM_SCORING, "LLM scoring",
            self._store.organizations_with_unprocessed_changes, process,
            self._config.scoring_org_delay,
            initial_totals={"totalChangesProcessed": 0, "totalCost": 0.0},
            records_key="totalChangesProcessed",
        )

    async def run_initiative_generation(self) -> JobReport:
        """Generate initiatives for organizations with recent processed, unlinked changes."""

        async def discover() -> List[str]:
            since = self._clock() - timedelta(days=self._config.generation_window_days)
            return await self._store.organizations_with_generation_work(since=since)

        async def process(organization_id: str, report: JobReport) -> Dict[str, Any]:
            result = await self._generator.generate_from_processed_changes(
                organization_id=organization_id,
                max_initiatives_per_person=self._config.max_initiatives_per_person,
                batch_size=self._config.generation_batch_size,
                skip_duplicates=self._config.skip_duplicates,
            )
            report.add_total("totalInitiativesGenerated", result.initiatives_generated)
            report.add_total("totalChangesProcessed", result.changes_processed)
            report.errors.extend(result.errors)
            return {
                "organizationName": await self._organization_name(organization_id),
                "initiativesGenerated": result.initiatives_generated,
                "changesProcessed": result.changes_processed,
                "errors": len(result.errors),
                "processingTime": result.processing_time_ms,
            }

        return await self._run(
            SyncType.INITIATIVE_GENERATION, "initiative generation", discover, process,
            self._config.generation_org_delay,
            initial_totals={"totalInitiativesGenerated": 0, "totalChangesProcessed": 0},
            records_key="totalChangesProcessed",
        )

    # ------------------------------------------------------------------
    # Shared loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        sync_type: SyncType,
        name: str,
        discover: Callable[[], Awaitable[List[str]]],
        process: OrgProcessor,
        org_delay: float,
        initial_totals: Optional[Dict[str, Any]] = None,
        records_key: Optional[str] = None,
    ) -> JobReport:
        run = JobRun(sync_type, self._monotonic)
        report = JobReport(sync_type=sync_type, totals=dict(initial_totals or {}))
        started_at = self._clock()
        run.start()
        logger.info("Starting %s job", name)

        try:
            organization_ids = await discover()
            limiter = self._limiter_factory(org_delay)
            budget = self._config.job_time_budget

            for index, organization_id in enumerate(organization_ids):
                if run.elapsed_seconds >= budget:
                    skipped = organization_ids[index:]
                    logger.warning(
                        "%s job hit its %.0fs time budget, skipping %d organization(s)",
                        name, budget, len(skipped),
                    )
                    report.errors.extend(
                        f"Organization {s}: skipped, time budget exhausted" for s in skipped
                    )
                    break

                await limiter.acquire()
                report.organizations_processed += 1
                logger.info("Processing %s for organization: %s", name, organization_id)
                try:
                    report.results[organization_id] = await process(organization_id, report)
                except Exception as e:
                    if not isinstance(e, PastoralError):
                        logger.exception("Unexpected error processing organization %s", organization_id)
                    else:
                        logger.error("Error processing organization %s: %s", organization_id, e)
                    report.errors.append(f"Organization {organization_id}: {e}")
                    report.results[organization_id] = {
                        "organizationName": await self._organization_name(organization_id),
                        "error": str(e),
                    }
        except Exception as e:
            run.fail()
            report.status = run.status
            report.execution_time_ms = run.elapsed_ms
            logger.error("%s job failed: %s", name, e)
            await self._write_log(report, started_at, None, error_message=str(e))
            raise JobFailedError(f"{name} job failed: {e}", execution_time_ms=run.elapsed_ms) from e

        run.finish(has_errors=bool(report.errors))
        report.status = run.status
        report.execution_time_ms = run.elapsed_ms
        logger.info(
            "%s completed in %dms: %s",
            name, report.execution_time_ms, report.summary,
        )
        await self._write_log(report, started_at, records_key, error_message=summarize_errors(report.errors))
        return report

    async def _organization_name(self, organization_id: str) -> str:
        try:
            organization = await self._store.get_organization(organization_id)
        except PastoralError:
            return organization_id
        return organization.name if organization else organization_id

    async def _write_log(
        self,
        report: JobReport,
        started_at: datetime,
        records_key: Optional[str],
        error_message: Optional[str],
    ) -> None:
        records = report.totals.get(records_key, 0) if records_key else 0
        log = SyncExecutionLog(
            organization_id=None,
            sync_type=report.sync_type,
            status=report.status,
            records_processed=int(records),
            execution_time_ms=report.execution_time_ms,
            error_message=error_message,
            details=report.summary,
            started_at=started_at,
            completed_at=self._clock(),
        )
        try:
            await self._store.add_log(log)
        except PastoralError as e:
            logger.error("Failed to write %s execution log: %s", report.sync_type.value, e)
