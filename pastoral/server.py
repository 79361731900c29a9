"""
Pastoral Pipeline Server

FastAPI app receiving InChurch webhooks and scheduler triggers.

Endpoints:
- POST /webhooks/inchurch: InChurch member/group webhook
- POST /cron/sync: Daily directory sync
- POST /cron/llm-scoring: LLM scoring of unprocessed changes
- POST /cron/initiative-generation: Initiative generation
- GET  /cron/*: Manual triggers and service stats (development or test key)
- GET  /inchurch/health: Directory API health check for one organization
- GET  /health: Health check
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .common.config import CronConfig, PastoralConfig, ensure_directories, load_config
from .common.errors import (
    AuthenticationError,
    JobFailedError,
    NotFoundError,
    PastoralError,
    ValidationError,
)
from .common.schemas import SyncType, utc_now
from .jobs import JobReport
from .pipeline import Pipeline, create_pipeline

logger = logging.getLogger("pastoral.server")


# =============================================================================
# Authorization
# =============================================================================

def _constant_time_equals(value: str, expected: str) -> bool:
    return hmac.compare_digest(value.encode(), expected.encode())


def is_authorized_cron_request(request: Request, cron: CronConfig) -> bool:
    """Bearer cron secret, the scheduler header, or a development environment."""
    authorization = request.headers.get("authorization")
    if cron.secret and authorization and _constant_time_equals(authorization, f"Bearer {cron.secret}"):
        return True
    if request.headers.get(cron.scheduler_header) == "1":
        return True
    return cron.is_development


def is_authorized_manual_request(test_key: Optional[str], cron: CronConfig) -> bool:
    if cron.is_development:
        return True
    return bool(cron.test_api_key and test_key and _constant_time_equals(test_key, cron.test_api_key))


# =============================================================================
# App factory
# =============================================================================

def create_app(pipeline: Optional[Pipeline] = None, config: Optional[PastoralConfig] = None) -> FastAPI:
    """
    Build the app. With ``pipeline`` the caller owns its lifecycle; otherwise
    one is created from ``config`` (or the loaded config) on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "pipeline", None) is None:
            logger.info("Starting up...")
            ensure_directories()
            owned = await create_pipeline(config or load_config())
            app.state.pipeline = owned
        logger.info("Ready to receive events")

        yield

        if owned is not None:
            logger.info("Shutting down...")
            await owned.aclose()
            app.state.pipeline = None

    app = FastAPI(
        title="Pastoral Care Pipeline",
        description="Change detection, urgency scoring and initiative generation for church leaders",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    def get_pipeline(request: Request) -> Pipeline:
        current = request.app.state.pipeline
        if current is None:
            raise HTTPException(status_code=503, detail="Pipeline not initialized")
        return current

    def require_manual_auth(pipeline: Pipeline, test_key: Optional[str]) -> None:
        if not is_authorized_manual_request(test_key, pipeline.config.cron):
            raise HTTPException(status_code=401, detail="Unauthorized")

    async def run_cron_job(
        request: Request,
        name: str,
        job: Callable[[Pipeline], Awaitable[JobReport]],
    ) -> JSONResponse:
        pipeline = get_pipeline(request)
        if not is_authorized_cron_request(request, pipeline.config.cron):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            report = await job(pipeline)
        except JobFailedError as e:
            cause = e.__cause__ or e
            return JSONResponse(
                {
                    "error": f"{name} job failed",
                    "executionTime": e.execution_time_ms,
                    "details": str(cause),
                },
                status_code=500,
            )
        return JSONResponse(report.to_response())

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint"""
        current = request.app.state.pipeline
        return {
            "status": "healthy",
            "service": "pastoral-pipeline",
            "initialized": current is not None,
            "llm_available": current.analyzer.is_available if current else False,
            "timestamp": utc_now().isoformat(),
        }

    @app.post("/webhooks/inchurch")
    async def inchurch_webhook(request: Request):
        """
        Handle InChurch webhook events.

        The signature is verified over the raw body before anything is parsed.
        """
        pipeline = get_pipeline(request)
        body = await request.body()
        signature = request.headers.get(pipeline.config.webhook.signature_header)

        try:
            result = await pipeline.ingestor.ingest_raw(body, signature)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except PastoralError as e:
            logger.error("Webhook processing failed: %s", e)
            raise HTTPException(status_code=500, detail="Internal server error")

        return JSONResponse({
            "success": True,
            "eventId": result.event_id,
            "processed": result.accepted,
        })

    @app.post("/cron/sync")
    async def cron_sync(request: Request):
        return await run_cron_job(request, "Sync", lambda p: p.jobs.run_daily_sync())

    @app.post("/cron/llm-scoring")
    async def cron_llm_scoring(request: Request):
        return await run_cron_job(request, "LLM scoring", lambda p: p.jobs.run_llm_scoring())

    @app.post("/cron/initiative-generation")
    async def cron_initiative_generation(request: Request):
        return await run_cron_job(
            request, "Initiative generation", lambda p: p.jobs.run_initiative_generation(),
        )

    # -- manual triggers ------------------------------------------------------

    @app.get("/cron/sync")
    async def manual_sync(
        request: Request,
        org_id: Optional[str] = None,
        member_id: Optional[str] = None,
        test_key: Optional[str] = None,
    ):
        """Sync one member or organization, or report sync stats"""
        pipeline = get_pipeline(request)
        require_manual_auth(pipeline, test_key)

        try:
            if org_id:
                organization = await pipeline.store.get_organization(org_id)
                if organization is None:
                    raise HTTPException(status_code=404, detail=f"Organization not found: {org_id}")
                if member_id:
                    result = await pipeline.sync_service.sync_member(organization, member_id)
                    return {
                        "success": True,
                        "organizationId": org_id,
                        "memberId": member_id,
                        "result": result.to_dict(),
                    }
                result = await pipeline.sync_service.sync_organization(organization)
                return {"success": True, "organizationId": org_id, "result": result.to_dict()}

            organizations = await pipeline.store.list_organizations()
            logs = await pipeline.store.list_logs(sync_type=SyncType.DAILY_POLLING)
            return {
                "success": True,
                "stats": {
                    "organizations": len(organizations),
                    "withDirectoryCredentials": sum(1 for o in organizations if o.has_directory_credentials),
                    "lastRun": logs[-1].model_dump(mode="json") if logs else None,
                },
            }
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except PastoralError as e:
            return JSONResponse({"error": "Manual sync failed", "details": str(e)}, status_code=500)

    @app.get("/cron/llm-scoring")
    async def manual_llm_scoring(request: Request, org_id: Optional[str] = None, test_key: Optional[str] = None):
        """Score one organization's changes, or report scoring stats"""
        pipeline = get_pipeline(request)
        require_manual_auth(pipeline, test_key)

        try:
            if org_id:
                result = await pipeline.enrichment.process_unprocessed_changes(
                    organization_id=org_id,
                    batch_size=5,
                    include_historical_context=True,
                )
                return {"success": True, "organizationId": org_id, "result": result.to_dict()}

            return {"success": True, "stats": pipeline.enrichment.get_stats()}
        except PastoralError as e:
            return JSONResponse({"error": "Manual scoring failed", "details": str(e)}, status_code=500)

    @app.get("/cron/initiative-generation")
    async def manual_initiative_generation(
        request: Request,
        org_id: Optional[str] = None,
        person_id: Optional[str] = None,
        test_key: Optional[str] = None,
    ):
        """Generate for one person or organization, or report generation stats"""
        pipeline = get_pipeline(request)
        require_manual_auth(pipeline, test_key)
        settings = pipeline.config.pipeline

        try:
            if person_id:
                result = await pipeline.generator.generate_for_person(
                    person_id, max_initiatives=settings.max_initiatives_per_person,
                )
                return {"success": True, "personId": person_id, "result": result.to_dict()}

            if org_id:
                result = await pipeline.generator.generate_from_processed_changes(
                    organization_id=org_id,
                    max_initiatives_per_person=settings.max_initiatives_per_person,
                    batch_size=10,
                    skip_duplicates=settings.skip_duplicates,
                )
                return {"success": True, "organizationId": org_id, "result": result.to_dict()}

            return {"success": True, "stats": await pipeline.generator.get_stats()}
        except PastoralError as e:
            return JSONResponse({"error": "Manual generation failed", "details": str(e)}, status_code=500)

    @app.get("/inchurch/health")
    async def inchurch_health(request: Request, org_id: str, test_key: Optional[str] = None):
        """Check an organization's InChurch directory API"""
        pipeline = get_pipeline(request)
        require_manual_auth(pipeline, test_key)

        organization = await pipeline.store.get_organization(org_id)
        if organization is None:
            raise HTTPException(status_code=404, detail=f"Organization not found: {org_id}")
        try:
            report = await pipeline.sync_service.check_directory(organization)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        status_code = 200 if report["healthy"] else 503
        return JSONResponse(report, status_code=status_code)

    return app


app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server(config: Optional[PastoralConfig] = None):
    """Run the pipeline server"""
    import uvicorn

    config = config or load_config()
    port = config.server_port

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        create_app(config=config),
        host="0.0.0.0",
        port=port,
        reload=False,
    )
