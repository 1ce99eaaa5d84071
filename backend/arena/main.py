import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

from arena.config import get_settings
from arena.database import engine, init_db
from arena.routes import admin, matches
from arena.services.deadline_worker import DeadlineWorker, rearm_pending_timers
from arena.services.timer_service import get_timer_service

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = "Arena Match Engine API"

app = FastAPI(title=APP_NAME)

_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_extra = os.getenv("CORS_ORIGINS", "")
if _extra:
    _cors_origins.extend(o.strip() for o in _extra.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Participant match lifecycle (handshake, report, confirm/dispute)
app.include_router(matches.router, prefix="/api", tags=["matches"])

# Admin arbitration and repair
app.include_router(admin.router, prefix="/api", tags=["admin"])

_deadline_worker = DeadlineWorker(engine)


@app.on_event("startup")
def on_startup():
    init_db()  # Imports models and creates tables

    if get_settings().deadline_worker_enabled:
        # Timers live in memory; pending reports need them back after a restart
        with Session(engine) as session:
            rearm_pending_timers(session)
        _deadline_worker.start()

    route_count = 0
    for r in app.routes:
        methods = getattr(r, "methods", None)
        path = getattr(r, "path", None)
        if path:
            methods_str = ", ".join(sorted(methods)) if methods else "N/A"
            logger.debug("%-20s %s", methods_str, path)
            route_count += 1
    logger.info("%s started with %d routes", APP_NAME, route_count)


@app.on_event("shutdown")
def on_shutdown():
    _deadline_worker.stop()
    get_timer_service().shutdown()


@app.get("/api/health")
def health_check():
    return {
        "app_name": APP_NAME,
        "status": "healthy",
        "deadline_worker": _deadline_worker.running,
        "pending_timers": len(get_timer_service().pending()),
    }
