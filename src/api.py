from fastapi import FastAPI, APIRouter, Query, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
import os
from datetime import datetime
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from contextlib import asynccontextmanager
from pydantic import BaseModel, Field
import pytz

from src.completeness import completeness_report
from src.config import JobLimits, load_config
from src.database import count_draws, draws_frame, get_draw, initialize_database
from src.date_utils import DateManager
from src.errors import InvalidDate, LotterySyncError, NotADocument, PersistenceFailure
from src.orchestrator import DrawOrchestrator
from src.reconciler import DrawReconciler

SCHEDULER_TIMEZONE = "Asia/Bangkok"

# --- Scheduler and App Lifecycle ---
scheduler_db_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'data', 'scheduler.db')
scheduler_db_url = f'sqlite:///{scheduler_db_path}'

jobstores = {
    'default': SQLAlchemyJobStore(url=scheduler_db_url)
}

executors = {
    'default': AsyncIOExecutor()
}

job_defaults = {
    'coalesce': True,           # Merge multiple missed runs into one
    'max_instances': 1,         # Prevent overlapping executions
    'misfire_grace_time': 600   # 10 minutes tolerance for missed jobs
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=SCHEDULER_TIMEZONE,
)

SCHEDULER_START_TIME_UTC = None

_orchestrator: Optional[DrawOrchestrator] = None


def get_orchestrator() -> DrawOrchestrator:
    """Lazily build the orchestrator from config.ini and the environment."""
    global _orchestrator
    if _orchestrator is None:
        config = load_config()
        os.makedirs(os.path.dirname(config.database_file), exist_ok=True)
        initialize_database(config.database_file)
        _orchestrator = DrawOrchestrator(config, DrawReconciler.from_config(config))
    return _orchestrator


def set_orchestrator(orchestrator: Optional[DrawOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


# ============================================================================
# SCHEDULER JOB FUNCTIONS (must be module-level for serialization)
# ============================================================================

def run_live_sync():
    try:
        counters = get_orchestrator().sync_latest()
        logger.info(f"🔄 [scheduler] Live sync complete: updated={counters.updated} failed={counters.failed}")
    except Exception as e:
        logger.exception(f"🔄 [scheduler] Live sync exception: {e}")


def run_api_backfill():
    try:
        counters = get_orchestrator().backfill_from_api()
        logger.info(f"🔄 [scheduler] API backfill complete: updated={counters.updated} failed={counters.failed}")
    except Exception as e:
        logger.exception(f"🔄 [scheduler] API backfill exception: {e}")


def run_document_backfill():
    try:
        counters = get_orchestrator().backfill_documents()
        logger.info(f"🔄 [scheduler] Document backfill complete: updated={counters.updated} failed={counters.failed}")
    except Exception as e:
        logger.exception(f"🔄 [scheduler] Document backfill exception: {e}")

# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup...")

    try:
        get_orchestrator()
        logger.info("Record store initialized")
    except Exception as e:
        logger.error(f"Failed to initialize record store: {e}")
        raise

    # Job #1: live sync of the latest draw, every 30 minutes
    scheduler.add_job(
        func=run_live_sync,
        trigger="interval",
        minutes=30,
        id="live_sync",
        name="Latest draw sync every 30 min",
        replace_existing=True
    )

    # Job #2: structured API backfill, daily 03:30 Bangkok
    scheduler.add_job(
        func=run_api_backfill,
        trigger="cron",
        hour=3,
        minute=30,
        timezone=SCHEDULER_TIMEZONE,
        id="api_backfill",
        name="API backfill 03:30 ICT",
        replace_existing=True
    )

    # Job #3: mirror document backfill, daily 04:05 Bangkok
    scheduler.add_job(
        func=run_document_backfill,
        trigger="cron",
        hour=4,
        minute=5,
        timezone=SCHEDULER_TIMEZONE,
        id="document_backfill",
        name="Document backfill 04:05 ICT",
        replace_existing=True
    )

    try:
        os.makedirs(os.path.dirname(scheduler_db_path), exist_ok=True)
        scheduler.start()
        logger.info("✅ Scheduler started successfully with persistent jobstore (SQLite)")
        logger.info(f"📁 Jobstore location: {scheduler_db_path}")

        global SCHEDULER_START_TIME_UTC
        SCHEDULER_START_TIME_UTC = datetime.now(pytz.UTC)

        jobs = scheduler.get_jobs()
        logger.info(f"📋 Active scheduled jobs: {len(jobs)}")
        for job in jobs:
            logger.info(f"  • Job: {job.id} | Next run: {getattr(job, 'next_run_time', 'Unknown')}")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")

    current_bkk = DateManager.get_current_time(SCHEDULER_TIMEZONE)
    logger.info(f"Current time - UTC: {datetime.now(pytz.UTC).isoformat()} | ICT: {current_bkk.isoformat()}")

    yield
    logger.info("Application shutdown...")
    if scheduler.running:
        scheduler.shutdown()
    logger.info("Scheduler shut down.")


# --- Application Initialization ---
logger.info("Initializing FastAPI application...")
app = FastAPI(
    title="Lottery Draw Sync API",
    description="Reconciles Thai Government Lottery draw results from the official API and result sheets.",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# --- Request bodies ---

class JobRequest(BaseModel):
    days: Optional[int] = None
    limit: Optional[int] = None
    max_upserts: Optional[int] = None
    force: bool = False
    timeout_s: Optional[float] = None
    allow_fallbacks: bool = True

    def limits(self) -> JobLimits:
        return JobLimits(
            days=self.days,
            limit=self.limit,
            max_upserts=self.max_upserts,
            force=self.force,
            timeout_s=self.timeout_s,
        )


class DocumentBackfillRequest(JobRequest):
    date: Optional[str] = None


class StoredDocumentsRequest(JobRequest):
    prefix: Optional[str] = None
    report_only: bool = False
    report_limit: int = Field(100, ge=1, le=500)
    allow_fallbacks: bool = False


class RepairRequest(BaseModel):
    date: str
    force: bool = False
    allow_fallbacks: bool = True


class UploadRequest(BaseModel):
    pdf_base64: str
    date: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    filename: Optional[str] = None
    force: bool = False


def _run(job: str, fn, *args, **kwargs) -> dict:
    """Invoke an orchestrator entry point and map pipeline errors to HTTP codes."""
    try:
        result = fn(*args, **kwargs)
    except (InvalidDate, NotADocument, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LotterySyncError as e:
        logger.error(f"[{job}] failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    payload = result.to_dict() if hasattr(result, "to_dict") else result
    return {"success": True, "job": job, "result": payload}


# --- API Router ---
api_router = APIRouter(prefix="/api/v1")


@api_router.get("/health")
def health_check():
    """Health check with record counts and scheduler state."""
    orchestrator = get_orchestrator()
    try:
        total = count_draws(orchestrator.db_path)
        complete = count_draws(orchestrator.db_path, complete=True)
        database_status = "connected"
    except PersistenceFailure as e:
        logger.error(f"Health check database error: {e}")
        total = complete = None
        database_status = "error"

    return {
        "status": "ok" if database_status == "connected" else "degraded",
        "timestamp": datetime.now(pytz.UTC).isoformat(),
        "database_status": database_status,
        "draws_total": total,
        "draws_complete": complete,
        "scheduler_running": bool(scheduler.running),
        "scheduler_started_at": SCHEDULER_START_TIME_UTC.isoformat() if SCHEDULER_START_TIME_UTC else None,
    }


@api_router.post("/sync/latest")
def trigger_live_sync(force: bool = Query(False)):
    return _run("sync_latest", get_orchestrator().sync_latest, force=force)


@api_router.post("/sync/api-backfill")
def trigger_api_backfill(request: JobRequest):
    return _run("api_backfill", get_orchestrator().backfill_from_api, request.limits())


@api_router.post("/sync/document-backfill")
def trigger_document_backfill(request: DocumentBackfillRequest):
    return _run(
        "document_backfill",
        get_orchestrator().backfill_documents,
        request.limits(),
        date=request.date,
        allow_fallbacks=request.allow_fallbacks,
    )


@api_router.post("/sync/complete")
def trigger_complete(request: JobRequest):
    return _run("complete", get_orchestrator().complete_to_full, request.limits(),
                allow_fallbacks=request.allow_fallbacks)


@api_router.post("/sync/repair")
def trigger_repair(request: RepairRequest):
    return _run("repair", get_orchestrator().repair_date, request.date,
                force=request.force, allow_fallbacks=request.allow_fallbacks)


@api_router.post("/sync/stored-documents")
def trigger_stored_documents(request: StoredDocumentsRequest):
    return _run(
        "stored_documents",
        get_orchestrator().complete_from_stored_documents,
        request.limits(),
        prefix=request.prefix,
        report_only=request.report_only,
        report_limit=request.report_limit,
        allow_fallbacks=request.allow_fallbacks,
    )


@api_router.post("/uploads")
def upload_document(request: UploadRequest):
    return _run(
        "upload",
        get_orchestrator().ingest_upload,
        request.pdf_base64,
        date=request.date,
        start=request.start,
        end=request.end,
        filename=request.filename,
        force=request.force,
    )


@api_router.get("/draws/{date}/debug")
def draw_debug_summary(date: str):
    """Completeness summary of one stored draw."""
    try:
        date_iso = DateManager.normalize_date_input(date)
    except InvalidDate as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        record = get_draw(get_orchestrator().db_path, date_iso)
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail=f"No record for {date_iso}")

    return {
        "date": date_iso,
        "source": record.source.value if record.source else None,
        "document": record.document.to_dict() if record.document else None,
        "diagnostics": {"complete": record.diagnostics.complete, "warnings": record.diagnostics.warnings},
        "updated_at": record.updated_at,
        **completeness_report(record.prizes, record.amounts),
    }


@api_router.get("/draws/report")
def draws_report(days: int = Query(366, ge=1, le=370), incomplete_only: bool = Query(False)):
    """Per-draw category counts over the last `days` days."""
    orchestrator = get_orchestrator()
    cutoff = DateManager.cutoff_iso(days, tz_name=orchestrator.config.timezone)
    try:
        df = draws_frame(orchestrator.db_path, cutoff)
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    if incomplete_only:
        df = df[~df["complete"]]
    return {
        "cutoff_date": cutoff,
        "total": int(len(df)),
        "complete": int(df["complete"].sum()) if len(df) else 0,
        "draws": df.to_dict(orient="records"),
    }


# Simple health endpoint without prefix for easy access
@app.get("/health")
def health():
    """Simple health check"""
    return {"status": "ok"}


app.include_router(api_router)
