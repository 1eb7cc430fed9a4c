# quakeapi/main.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from quakeapi import __version__
from quakeapi.db import QuakeStore, Ready, StoreState, open_store
from quakeapi.geo import filter_nearby
from quakeapi.ingest import IngestScheduler, run_ingestion_cycle
from quakeapi.settings import Settings, configure_logging
from quakeapi.stats import bucket_magnitudes, start_of_local_day_ms

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Database not configured. Please set DATABASE_PATH in the environment or .env"


def get_store(request: Request) -> QuakeStore:
    state: StoreState = request.app.state.store_state
    if isinstance(state, Ready):
        return state.store
    raise HTTPException(status_code=503, detail=NOT_CONFIGURED)


# ---------- earthquakes ----------
router = APIRouter(prefix="/api/earthquakes")


@router.get("")
def list_earthquakes(
    limit: int = Query(50, ge=0),
    offset: int = Query(0, ge=0),
    min_magnitude: Optional[float] = Query(None, alias="minMagnitude"),
    max_magnitude: Optional[float] = Query(None, alias="maxMagnitude"),
    store: QuakeStore = Depends(get_store),
):
    rows, total = store.list_quakes(limit, offset, min_magnitude, max_magnitude)
    return {
        "success": True,
        "data": rows,
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }


@router.get("/latest")
def latest_earthquake(store: QuakeStore = Depends(get_store)):
    quake = store.latest_quake()
    if quake is None:
        raise HTTPException(status_code=404, detail="No earthquakes found")
    return {"success": True, "data": quake}


@router.get("/nearby")
def nearby_earthquakes(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: float = 100.0,
    store: QuakeStore = Depends(get_store),
):
    if lat is None or lng is None:
        raise HTTPException(status_code=400, detail="Latitude and longitude are required")
    return {
        "success": True,
        "data": filter_nearby(store.all_quakes(), lat, lng, radius),
        "userLocation": {"latitude": lat, "longitude": lng},
        "radius": radius,
    }


@router.get("/stats")
def earthquake_stats(store: QuakeStore = Depends(get_store)):
    return {
        "success": True,
        "data": {
            "total": store.count_quakes(),
            "todayCount": store.count_quakes(since_ms=start_of_local_day_ms()),
            "strongest": store.strongest_quake(),
            "byMagnitude": bucket_magnitudes(store.list_magnitudes()),
        },
    }


@router.get("/{quake_id}")
def get_earthquake(quake_id: str, store: QuakeStore = Depends(get_store)):
    quake = store.get_quake(quake_id)
    if quake is None:
        raise HTTPException(status_code=404, detail="Earthquake not found")
    return {"success": True, "data": quake}


# ---------- app ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    state: StoreState = app.state.store_state
    if not isinstance(state, Ready):
        logger.warning("Storage is not configured (%s); scheduled ingestion is disabled. "
                       "The API answers 503 until restarted with DATABASE_PATH set.", state.reason)
        yield
        return

    client = httpx.AsyncClient(headers={"User-Agent": settings.user_agent})
    scheduler = IngestScheduler(
        lambda: run_ingestion_cycle(client, state.store,
                                    base_url=settings.bmkg_base_url,
                                    timeout=settings.fetch_timeout_seconds),
        interval_s=settings.fetch_interval_minutes * 60,
    )
    app.state.scheduler = scheduler
    scheduler_task = asyncio.create_task(scheduler.run_forever())
    try:
        yield
    finally:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
        await client.aclose()


def create_app(settings: Optional[Settings] = None,
               store_state: Optional[StoreState] = None) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(title="BMKG Earthquake API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store_state = store_state if store_state is not None else open_store(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{err['loc'][-1]}: {err['msg']}" for err in exc.errors() if err.get("loc")
        )
        return JSONResponse({"success": False, "error": f"Invalid request ({problems})"},
                            status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"success": False, "error": str(exc) or "Internal server error"},
                            status_code=500)

    @app.get("/")
    def index(request: Request):
        return {
            "message": "Earthquake Early Warning API - Indonesia",
            "version": __version__,
            "dataSource": "BMKG Indonesia",
            "database": "SQLite (Connected)" if isinstance(request.app.state.store_state, Ready)
                        else "Not Configured",
            "endpoints": {
                "earthquakes": "/api/earthquakes",
                "latest": "/api/earthquakes/latest",
                "nearby": "/api/earthquakes/nearby?lat=&lng=&radius=",
                "stats": "/api/earthquakes/stats",
                "byId": "/api/earthquakes/:id",
                "fetchLogs": "/api/fetch-logs",
            },
        }

    @app.get("/api/fetch-logs")
    def fetch_logs(limit: int = Query(20, ge=1, le=500), store: QuakeStore = Depends(get_store)):
        return {"success": True, "data": store.list_fetch_logs(limit)}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    settings = Settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
