import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config, get_config_section
from ingest.fetcher import FetchError, SeriesWindow
from monitoring.logging_utils import setup_logging


pipeline_service = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global pipeline_service
    from main import PipelineService
    pipeline_service = PipelineService()
    task = asyncio.create_task(pipeline_service.start())
    try:
        yield
    finally:
        if pipeline_service:
            await pipeline_service.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


api_cfg = get_config_section(config, 'api')

app = FastAPI(title="Cycle Watch API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_cfg.get('cors_origins', []),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_service():
    if not pipeline_service:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline_service


@app.get("/")
async def root():
    return {
        "service": "Cycle Watch",
        "version": "1.0.0",
        "status": "running" if pipeline_service and pipeline_service.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "pipeline": pipeline_service.status() if pipeline_service else None,
    }

@app.get("/api/history/{instrument_id}")
async def get_history(instrument_id: str, limit: int = 0):
    service = _require_service()
    samples = service.orchestrator.get_history(instrument_id)
    if limit > 0:
        samples = samples[-limit:]
    return {
        "instrument_id": instrument_id,
        "samples": [s.as_dict() for s in samples],
        "count": len(samples),
        "capacity": service.history.capacity,
    }

@app.get("/api/pi-cycle")
async def get_pi_cycle():
    service = _require_service()
    result = service.orchestrator.last_result
    indicator = result.indicator if result else None
    return {
        "reference_instrument": service.orchestrator.reference_instrument,
        "indicator": indicator.as_dict() if indicator else None,
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/alerts")
async def get_alerts():
    service = _require_service()
    result = service.orchestrator.last_result
    if result is None:
        return {"alerts": [], "count": 0, "failures": {}, "tick_started_at_ms": None}
    return {
        "alerts": [a.as_dict() for a in result.alerts],
        "count": len(result.alerts),
        "failures": dict(result.failures),
        "tick_started_at_ms": result.started_at_ms,
    }

@app.get("/api/series/{instrument_id}")
async def get_series(instrument_id: str, window: SeriesWindow = SeriesWindow.HOURLY):
    service = _require_service()
    try:
        samples = await service.fetcher.fetch_series(instrument_id, window)
    except FetchError as exc:
        raise HTTPException(status_code=502, detail={"kind": exc.kind, "message": str(exc)})
    return {
        "instrument_id": instrument_id,
        "window": window.value,
        "samples": [s.as_dict() for s in samples],
        "count": len(samples),
    }

if __name__ == "__main__":
    import uvicorn
    setup_logging(get_config_section(config, 'monitoring').get('log_level', 'INFO'))
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
