"""Tests for the orchestration jobs: isolation, time budget, logs and state machine."""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

from pastoral.common.config import PipelineConfig
from pastoral.common.errors import JobFailedError, PersistenceError, ValidationError
from pastoral.common.rate_limiter import RateLimiter
from pastoral.common.schemas import JobStatus, Leader, Organization, SyncType
from pastoral.enrichment.scoring import BatchScoringResult, ScoringResult
from pastoral.ingest.sync import OrgSyncResult
from pastoral.jobs import JobReport, JobRun, JobRunner


class FakeMonotonic:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def limiter_delays():
    return []


@pytest.fixture
def make_runner(store, clock, monotonic, limiter_delays):
    def _make(sync_service=None, enrichment=None, generator=None, config=None):
        def limiter_factory(delay):
            limiter_delays.append(delay)
            return RateLimiter.unlimited()

        return JobRunner(
            store=store,
            sync_service=sync_service or Mock(),
            enrichment=enrichment or Mock(),
            generator=generator or Mock(),
            config=config or PipelineConfig(),
            limiter_factory=limiter_factory,
            clock=clock,
            monotonic=monotonic,
        )
    return _make


@pytest.fixture
def second_org(store):
    async def _add():
        await store.save_organization(Organization(
            id="org-2", name="Igreja Norte", inchurch_api_key="key-2", inchurch_secret="secret-2",
        ))
        await store.save_leader(Leader(id="leader-2", organization_id="org-2"))
    return _add


def _scoring_batch(count, cost=0.001, errors=()):
    return BatchScoringResult(
        results=[ScoringResult(f"chg_{i}", "per_1", 5, 6, {}, 10) for i in range(count)],
        total_cost=cost,
        processing_time_ms=25,
        errors=list(errors),
    )


class TestJobRun:
    def test_happy_path(self, monotonic):
        run = JobRun(SyncType.LLM_SCORING, monotonic)
        assert run.status == JobStatus.NOT_STARTED
        run.start()
        monotonic.now += 1.5
        run.finish(has_errors=False)
        monotonic.now += 10
        assert run.status == JobStatus.COMPLETED
        assert run.elapsed_ms == 1500

    def test_finish_with_errors(self, monotonic):
        run = JobRun(SyncType.LLM_SCORING, monotonic)
        run.start()
        run.finish(has_errors=True)
        assert run.status == JobStatus.COMPLETED_WITH_ERRORS

    @pytest.mark.parametrize("steps", [
        ["finish"],
        ["fail"],
        ["start", "start"],
        ["start", "fail", "finish"],
        ["start", "finish", "fail"],
    ])
    def test_illegal_transitions(self, monotonic, steps):
        run = JobRun(SyncType.DAILY_POLLING, monotonic)
        with pytest.raises(ValidationError):
            for step in steps:
                if step == "finish":
                    run.finish(has_errors=False)
                else:
                    getattr(run, step)()


class TestJobReport:
    def test_summary_and_response(self):
        report = JobReport(sync_type=SyncType.LLM_SCORING, status=JobStatus.COMPLETED_WITH_ERRORS)
        report.organizations_processed = 2
        report.add_total("totalCost", 0.000123456)
        report.add_total("totalCost", 0.001)
        report.add_total("totalChangesProcessed", 4)
        report.errors.append("Organization org-2: boom")

        assert report.summary == {
            "organizationsProcessed": 2,
            "totalCost": 0.0011,
            "totalChangesProcessed": 4,
            "errorsEncountered": 1,
        }
        response = report.to_response()
        assert response["success"] is True
        assert response["summary"] == report.summary

    def test_failed_report_is_unsuccessful(self):
        assert JobReport(sync_type=SyncType.LLM_SCORING, status=JobStatus.FAILED).to_response()["success"] is False


class TestLlmScoringJob:
    @pytest.mark.asyncio
    async def test_one_failing_organization_does_not_stop_the_other(
        self, store, make_runner, second_org, add_person, add_change, limiter_delays,
    ):
        await second_org()
        maria = await add_person("m-1")
        pedro = await add_person("m-2", organization_id="org-2", name="Pedro", leader_id="leader-2")
        await add_change(maria.id)
        await add_change(pedro.id, organization_id="org-2")

        async def process(organization_id, batch_size, include_historical_context):
            if organization_id == "org-1":
                raise RuntimeError("model quota exceeded")
            return _scoring_batch(3, cost=0.0042)

        enrichment = Mock()
        enrichment.process_unprocessed_changes = AsyncMock(side_effect=process)
        runner = make_runner(enrichment=enrichment, config=PipelineConfig(scoring_batch_size=9))

        report = await runner.run_llm_scoring()

        assert report.status == JobStatus.COMPLETED_WITH_ERRORS
        assert report.summary == {
            "organizationsProcessed": 2,
            "totalChangesProcessed": 3,
            "totalCost": 0.0042,
            "errorsEncountered": 1,
        }
        assert report.errors == ["Organization org-1: model quota exceeded"]
        assert report.results["org-1"] == {"organizationName": "Igreja Central", "error": "model quota exceeded"}
        assert report.results["org-2"]["changesProcessed"] == 3
        assert report.results["org-2"]["organizationName"] == "Igreja Norte"
        assert enrichment.process_unprocessed_changes.await_args.kwargs["batch_size"] == 9
        assert limiter_delays == [1.0]

        logs = await store.list_logs(sync_type=SyncType.LLM_SCORING)
        assert len(logs) == 1
        assert logs[0].status == JobStatus.COMPLETED_WITH_ERRORS
        assert logs[0].records_processed == 3
        assert logs[0].error_message == "Organization org-1: model quota exceeded"
        assert logs[0].organization_id is None

    @pytest.mark.asyncio
    async def test_item_errors_are_counted(self, store, make_runner, add_person, add_change):
        person = await add_person()
        await add_change(person.id)
        enrichment = Mock()
        enrichment.process_unprocessed_changes = AsyncMock(
            return_value=_scoring_batch(1, errors=["Error processing person per_1: timeout"]),
        )

        report = await make_runner(enrichment=enrichment).run_llm_scoring()

        assert report.status == JobStatus.COMPLETED_WITH_ERRORS
        assert report.summary["errorsEncountered"] == 1

    @pytest.mark.asyncio
    async def test_no_work(self, store, make_runner):
        enrichment = Mock()
        enrichment.process_unprocessed_changes = AsyncMock()

        report = await make_runner(enrichment=enrichment).run_llm_scoring()

        assert report.status == JobStatus.COMPLETED
        assert report.summary == {
            "organizationsProcessed": 0,
            "totalChangesProcessed": 0,
            "totalCost": 0.0,
            "errorsEncountered": 0,
        }
        enrichment.process_unprocessed_changes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_time_budget_skips_remaining_organizations(
        self, store, make_runner, second_org, add_person, add_change, monotonic,
    ):
        await second_org()
        maria = await add_person("m-1")
        pedro = await add_person("m-2", organization_id="org-2", name="Pedro", leader_id="leader-2")
        await add_change(maria.id)
        await add_change(pedro.id, organization_id="org-2")

        async def slow(organization_id, batch_size, include_historical_context):
            monotonic.now += 300
            return _scoring_batch(1)

        enrichment = Mock()
        enrichment.process_unprocessed_changes = AsyncMock(side_effect=slow)

        report = await make_runner(enrichment=enrichment).run_llm_scoring()

        assert report.organizations_processed == 1
        assert list(report.results) == ["org-1"]
        assert report.errors == ["Organization org-2: skipped, time budget exhausted"]
        assert report.status == JobStatus.COMPLETED_WITH_ERRORS
        assert report.execution_time_ms == 300000

    @pytest.mark.asyncio
    async def test_discovery_failure_fails_the_job(self, store, make_runner):
        store.organizations_with_unprocessed_changes = AsyncMock(side_effect=PersistenceError("db down"))

        with pytest.raises(JobFailedError) as exc_info:
            await make_runner().run_llm_scoring()

        assert "LLM scoring job failed: db down" == str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, PersistenceError)
        logs = await store.list_logs(sync_type=SyncType.LLM_SCORING)
        assert logs[0].status == JobStatus.FAILED
        assert logs[0].error_message == "db down"


class TestDailySyncJob:
    @pytest.mark.asyncio
    async def test_only_organizations_with_credentials(self, store, make_runner, limiter_delays):
        await store.save_organization(Organization(id="org-3", name="Sem Chave"))

        async def sync(organization):
            return OrgSyncResult(
                organization_id=organization.id,
                total_records=120, created=2, updated=3, conflicts=1, special_dates=1,
                changes_recorded=6, pages=2,
                errors=["Failed to sync member 7: member without id"],
            )

        sync_service = Mock()
        sync_service.sync_organization = AsyncMock(side_effect=sync)

        report = await make_runner(sync_service=sync_service).run_daily_sync()

        assert sync_service.sync_organization.await_count == 1
        assert report.summary == {
            "organizationsProcessed": 1,
            "totalRecordsSynced": 120,
            "totalChangesDetected": 6,
            "totalConflicts": 1,
            "totalSpecialDates": 1,
            "errorsEncountered": 1,
        }
        assert report.results["org-1"]["organizationName"] == "Igreja Central"
        assert report.results["org-1"]["pages"] == 2
        assert limiter_delays == [1.0]
        logs = await store.list_logs(sync_type=SyncType.DAILY_POLLING)
        assert logs[0].records_processed == 120


class TestInitiativeGenerationJob:
    @pytest.mark.asyncio
    async def test_generates_for_recent_work_only(self, store, make_runner, add_person, add_change, clock, limiter_delays):
        from pastoral.initiatives import InitiativeGenerator

        person = await add_person()
        recent = await add_change(person.id, urgency_score=8)
        await store.claim_change(recent.id, clock())

        generator = InitiativeGenerator(store, clock=clock)
        report = await make_runner(generator=generator).run_initiative_generation()

        assert report.status == JobStatus.COMPLETED
        assert report.summary["totalInitiativesGenerated"] == 1
        assert report.results["org-1"]["initiativesGenerated"] == 1
        assert limiter_delays == [0.5]

    @pytest.mark.asyncio
    async def test_old_changes_are_not_discovered(self, store, make_runner, add_person, add_change, clock):
        person = await add_person()
        old = await add_change(person.id, detected_at=clock() - timedelta(days=10))
        await store.claim_change(old.id, clock())
        generator = Mock()
        generator.generate_from_processed_changes = AsyncMock()

        report = await make_runner(generator=generator).run_initiative_generation()

        assert report.organizations_processed == 0
        generator.generate_from_processed_changes.assert_not_awaited()
