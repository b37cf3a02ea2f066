import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from log_utils import install_safe_logging

install_safe_logging()

import journal
from config import CONFIG_DIR, get_settings, get_log_level_from_env, set_log_level, log_config_status
from database import init_db
from recorder.sources import build_sources
from recorder.store import session_key_for_account
from recording_scheduler import build_scheduler
from routers import epg, recordings, series, settings as settings_router
from routers import journal as journal_router

logging.basicConfig(
    level=get_log_level_from_env(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_config_status()
    settings = get_settings()
    set_log_level(settings.backend_log_level)
    init_db(purge_days=settings.journal_retention_days)

    provider, resolver = build_sources(settings)
    if provider is not None and settings.session_key == "default":
        settings = settings.model_copy(update={
            "session_key": session_key_for_account(
                settings.xtream_host, settings.xtream_port, settings.xtream_username
            ),
        })

    scheduler = build_scheduler(
        settings,
        CONFIG_DIR,
        epg_provider=provider,
        stream_resolver=resolver,
        journal=journal.log_entry,
    )
    app.state.scheduler = scheduler
    await scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await scheduler.close_sources()
        app.state.scheduler = None


app = FastAPI(
    title="Recording Scheduler",
    description="Scheduled and series recording of live IPTV streams",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(recordings.router)
app.include_router(series.router)
app.include_router(epg.router)
app.include_router(settings_router.router)
app.include_router(journal_router.router)


# Health check
@app.get("/api/health")
async def health_check():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "service": "recording-scheduler",
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "active_recorders": len(scheduler.supervisor.active_handles()) if scheduler else 0,
    }


def run() -> None:
    """Serve the API with uvicorn (HOST/PORT from the environment)."""
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "6100")),
        log_level=get_log_level_from_env().lower(),
    )


if __name__ == "__main__":
    run()
