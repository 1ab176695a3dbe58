from dataclasses import asdict
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from report_ingest.app.stores import build_runtime
from report_ingest.config.settings import EngineSettings
from report_ingest.engine.batch import BatchEngine
from report_ingest.engine.errors import LedgerUnavailable
from report_ingest.scheduling.interfaces import Scheduler
from report_ingest.shared.logging import get_logger, log_event


def create_app(engine: Optional[BatchEngine] = None, scheduler: Optional[Scheduler] = None) -> FastAPI:
    app = FastAPI(title="Report Ingestion")
    logger = get_logger("report_ingest.api")

    if engine is None or scheduler is None:
        engine, scheduler = build_runtime(EngineSettings.from_env())
    app.state.engine = engine
    app.state.scheduler = scheduler

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.get("/v1/ingestion/status")
    def ingestion_status():
        try:
            state = app.state.engine.status()
            pending = app.state.scheduler.list_pending(app.state.engine.job_id)
        except LedgerUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        payload = state.to_dict()
        payload["pending_continuations"] = [asdict(handle) for handle in pending]
        return payload

    @app.post("/v1/ingestion/runs")
    def start_run(background_tasks: BackgroundTasks, force: bool = False):
        engine = app.state.engine
        if not force and engine.is_running():
            raise HTTPException(status_code=409, detail="ingestion run in progress")
        background_tasks.add_task(engine.start_fresh, force)
        log_event(logger, "api.run_accepted", job_id=engine.job_id, forced=force)
        return JSONResponse(status_code=202, content={"jobId": engine.job_id, "mode": "fresh"})

    @app.post("/v1/ingestion/continuations")
    def continue_run(background_tasks: BackgroundTasks):
        engine = app.state.engine
        background_tasks.add_task(engine.run)
        log_event(logger, "api.continuation_accepted", job_id=engine.job_id)
        return JSONResponse(status_code=202, content={"jobId": engine.job_id, "mode": "continuation"})

    return app
