"""LifeSign Server - FastAPI Application Entry Point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lifesign.config import settings
from lifesign.database import init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and survival monitor on startup."""
    init_db()

    from lifesign.api.deps import monitor_worker
    if settings.monitor_autostart:
        monitor_worker.start()

    yield

    monitor_worker.stop()


app = FastAPI(
    title="LifeSign",
    description="Family pairing and survival monitoring for a loved one's phone",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - mobile clients and local dashboards
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Register API routers ---
from lifesign.api.pairing import router as pairing_router  # noqa: E402
from lifesign.api.family import router as family_router  # noqa: E402
from lifesign.api.devices import router as devices_router  # noqa: E402
from lifesign.api.signals import router as signals_router  # noqa: E402
from lifesign.api.monitoring import router as monitoring_router  # noqa: E402

API_PREFIX = "/api/v1"

app.include_router(pairing_router, prefix=API_PREFIX)
app.include_router(family_router, prefix=API_PREFIX)
app.include_router(devices_router, prefix=API_PREFIX)
app.include_router(signals_router, prefix=API_PREFIX)
app.include_router(monitoring_router, prefix=API_PREFIX)


@app.get("/")
def root():
    """Health check / server info."""
    return {
        "name": settings.server_name,
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/api/v1/health")
def health():
    from lifesign.api.deps import monitor_worker
    return {"status": "ok", "monitor_running": monitor_worker.running}
