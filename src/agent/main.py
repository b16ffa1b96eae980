"""
Tracking Agent host surface
FastAPI application that runs the capture/flush pipeline in the background
and exposes health, metrics and on-demand cycle triggers.

Run with:
    uvicorn src.agent.main:app --port 8100
"""
from contextlib import asynccontextmanager
from dataclasses import asdict

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from src.agent.config import AgentConfig, MAIN_UPLOAD_TIMEOUT_SECONDS
from src.agent.logs import configure_logging
from src.agent.models import SessionState
from src.agent.scheduler import CycleScheduler, build_scheduler
from src.agent.store import StoreError


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = AgentConfig.from_env()
    log_buffer = configure_logging(config.log_level)

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(MAIN_UPLOAD_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_connections=5),
    )
    scheduler = build_scheduler(config, client, log_buffer=log_buffer)
    app.state.scheduler = scheduler

    if config.autostart:
        await scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await client.aclose()
        await scheduler.store.close()


# Initialize FastAPI application
app = FastAPI(
    title="Tracking Agent",
    description="Offline-resilient location capture, queueing and delivery",
    version="1.0.0",
    lifespan=lifespan,
)


def get_scheduler(request: Request) -> CycleScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Agent not initialized")
    return scheduler


def _serialize_report(report) -> dict:
    data = asdict(report)
    # LocationRecord is a pydantic model; asdict leaves it as-is
    if getattr(report, "reading", None) is not None:
        data["reading"] = report.reading.model_dump(by_alias=True)
    return data


@app.get("/metrics")
def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Response: Prometheus-formatted metrics
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health(request: Request):
    """
    Health check endpoint.

    Returns:
        dict: Heartbeat, queue sizes, session state and store status
    """
    scheduler = get_scheduler(request)
    store_ok = await scheduler.store.ping()
    if not store_ok:
        return {"status": "degraded", "store": "disconnected", "running": not scheduler.stopped}

    try:
        heartbeat = await scheduler.state.heartbeat()
        session = await scheduler.state.session()
        locations = await scheduler.location_queue.size()
        alerts = await scheduler.alert_queue.size()
    except StoreError as e:
        return {"status": "degraded", "store": "error", "detail": str(e)}

    if session is None:
        session_state = SessionState.NO_SESSION
    else:
        session_state = session.state_at(scheduler.clock())

    return {
        "status": "healthy",
        "store": "connected",
        "running": not scheduler.stopped,
        "session": session_state.value,
        "heartbeat": heartbeat.model_dump(),
        "queues": {"locations": locations, "alerts": alerts},
    }


@app.post("/v1/cycle")
async def trigger_cycle(request: Request):
    """Run one main capture cycle now and return its report."""
    report = await get_scheduler(request).run_cycle()
    return _serialize_report(report)


@app.post("/v1/watchdog")
async def trigger_watchdog(request: Request):
    """Run one watchdog cycle now and return its report."""
    report = await get_scheduler(request).run_watchdog_cycle()
    return asdict(report)


@app.post("/v1/stop")
async def stop_agent(request: Request):
    """Stop scheduling further cycles."""
    scheduler = get_scheduler(request)
    await scheduler.stop()
    return {"message": "Agent stopped"}
