import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aggregation import get_main_chart_data, get_recent_samples, get_today_consumption, resolve_timezone
from broadcast import BroadcastHub
from control import get_switch_state, set_switch
from database import SessionLocal, get_db, get_session_factory, init_db
from exceptions import (
    ControlError,
    StatusUnavailable,
    SwitchCodeNotFound,
    UpstreamAuthError,
    UpstreamRequestError,
)
from poller import TelemetryPoller
from tuya_client import TuyaClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Polling and restart policy (configurable via environment variables)
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))
FAILURE_THRESHOLD = int(os.getenv("FAILURE_THRESHOLD", "40"))
RESTART_DELAY_SECONDS = float(os.getenv("RESTART_DELAY_SECONDS", "10"))

# Consumption cost per kWh and the zone used when a request names none
RATE_PER_KWH = float(os.getenv("RATE_PER_KWH", "10"))
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "+05:30")

HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "60"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

tuya_client: TuyaClient = None
poller: TelemetryPoller = None
hub = BroadcastHub()
scheduler = AsyncIOScheduler()


class SwitchRequest(BaseModel):
    state: bool


def success(data) -> dict:
    return {"success": True, "data": data}


def failure(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def get_tuya_client() -> Optional[TuyaClient]:
    return tuya_client


def requested_timezone(
    timezone: Optional[str] = Query(None),
    x_timezone: Optional[str] = Header(None),
) -> str:
    return timezone or x_timezone or DEFAULT_TIMEZONE


@asynccontextmanager
async def lifespan(app: FastAPI):
    global tuya_client, poller

    # Initialize database
    await init_db()

    # Initialize Tuya client
    try:
        tuya_client = TuyaClient()
        logger.info("Tuya client initialized")
    except ValueError as e:
        logger.error(f"Tuya client initialization failed: {e}")
        logger.warning("Running without Tuya connection - configure TUYA_CLIENT_ID, TUYA_CLIENT_SECRET and TUYA_DEVICE_ID")

    # Start scheduler for periodic polling
    if tuya_client:
        poller = TelemetryPoller(
            tuya_client,
            SessionLocal,
            hub,
            failure_threshold=FAILURE_THRESHOLD,
            restart_delay=RESTART_DELAY_SECONDS,
        )
        poller.start(scheduler, POLL_INTERVAL_SECONDS)
    scheduler.start()

    yield

    # Shutdown
    if poller:
        poller.stop()
    if scheduler.running:
        scheduler.shutdown()
    if tuya_client:
        await tuya_client.close()


app = FastAPI(title="Tuya Energy Monitor", lifespan=lifespan)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return failure(400, "Invalid request", str(exc.errors()))


@app.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Stream live readings and error notices to the dashboard."""
    await hub.connect(websocket)
    try:
        while True:
            # Clients do not send anything, this only waits for the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)


@app.post("/switch")
async def switch(request: SwitchRequest, client: Optional[TuyaClient] = Depends(get_tuya_client)):
    """Turn the plug on or off."""
    if not client:
        return failure(503, "Tuya client not configured")

    try:
        return success(await set_switch(client, request.state))
    except ControlError as e:
        logger.error(f"Switch command failed: {e}")
        return failure(502, str(e), e.details)
    except UpstreamAuthError as e:
        logger.error(f"Switch command failed: {e}")
        return failure(502, "Failed to authenticate with Tuya", str(e))


@app.get("/switch-status")
async def switch_status(client: Optional[TuyaClient] = Depends(get_tuya_client)):
    """Get the current on/off state from the device."""
    if not client:
        return failure(503, "Tuya client not configured")

    try:
        return success({"state": await get_switch_state(client)})
    except SwitchCodeNotFound as e:
        return failure(404, "Switch state not found", str(e))
    except (StatusUnavailable, UpstreamAuthError, UpstreamRequestError) as e:
        logger.error(f"Failed to fetch switch status: {e}")
        return failure(502, "Failed to fetch device status", str(e))


@app.get("/main-chart/data")
async def main_chart_data(
    tz_name: str = Depends(requested_timezone),
    session_factory=Depends(get_session_factory),
):
    """Get today's hourly and the week's and month's daily averages."""
    try:
        tz = resolve_timezone(tz_name)
    except ValueError as e:
        return failure(400, "Invalid timezone", str(e))

    try:
        data = await get_main_chart_data(session_factory, tz)
    except SQLAlchemyError as e:
        logger.error(f"Failed to aggregate chart data: {e}")
        return failure(500, "Failed to load chart data", str(e))

    data["timezone"] = tz_name
    return success(data)


@app.get("/today-consumption")
async def today_consumption(
    tz_name: str = Depends(requested_timezone),
    db: AsyncSession = Depends(get_db),
):
    """Get energy used today while the plug was on, and its cost."""
    try:
        tz = resolve_timezone(tz_name)
    except ValueError as e:
        return failure(400, "Invalid timezone", str(e))

    try:
        data = await get_today_consumption(db, tz, RATE_PER_KWH)
    except SQLAlchemyError as e:
        logger.error(f"Failed to calculate consumption: {e}")
        return failure(500, "Failed to calculate consumption", str(e))

    data["rate"] = RATE_PER_KWH
    return success(data)


@app.get("/data")
async def recent_data(db: AsyncSession = Depends(get_db)):
    """Get the most recent raw samples, newest first."""
    try:
        return success(await get_recent_samples(db, HISTORY_LIMIT))
    except SQLAlchemyError as e:
        logger.error(f"Failed to load recent samples: {e}")
        return failure(500, "Failed to load recent samples", str(e))


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "tuya_connected": tuya_client is not None,
        "consecutive_failures": poller.consecutive_failures if poller else 0,
        "subscribers": hub.client_count,
    }
