from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, SQLModel, text

from database import create_db, engine
from errors import InternalError, WardflowError
import models
from repository import SqlRepository
from routers.admissions import router as admissions_router
from routers.auth import router as auth_router
from routers.discharges import router as discharges_router
from routers.lab import results_router, tests_router
from routers.patients import router as patients_router
from routers.transfers import router as transfers_router
from routers.wards import router as wards_router
from services.atd import AtdEngine
from services.lab import LabOrderTracker
from services.locks import LockManager

logger = logging.getLogger("wardflow")

ROUTERS = (
    auth_router,
    patients_router,
    admissions_router,
    wards_router,
    transfers_router,
    tests_router,
    results_router,
    discharges_router,
)


def build_services(db_engine) -> tuple[AtdEngine, LabOrderTracker]:
    """One lock manager shared by both services, so lab orders and discharges exclude each other."""
    repository = SqlRepository(db_engine)
    locks = LockManager()
    atd = AtdEngine(repository, locks)
    lab = LabOrderTracker(repository, locks, atd.ledger)
    return atd, lab


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db()
    app.state.atd, app.state.lab = build_services(engine)
    yield


app = FastAPI(title="Wardflow", version="0.1.0", lifespan=lifespan)


@app.exception_handler(WardflowError)
async def wardflow_error_handler(request: Request, exc: WardflowError):
    if isinstance(exc, InternalError):
        logger.error("Internal failure for %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def no_cache_api_responses(request: Request, call_next):
    response = await call_next(request)
    if request.url.path != "/":
        response.headers["Cache-Control"] = "no-store, max-age=0"
        response.headers["Pragma"] = "no-cache"
    return response


for _router in ROUTERS:
    app.include_router(_router)
    app.include_router(_router, prefix="/api")


@app.get("/")
def index():
    return {"message": "Server is running!"}


@app.get("/health")
def health():
    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
        return {
            "status": "ok",
            "database": "connected",
            "timestamp": models.utcnow().isoformat(),
        }
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "error"})


@app.get("/demo/reset")
def demo_reset(request: Request):
    if os.getenv("WARDFLOW_ENABLE_DEMO_RESET", "0") != "1":
        raise HTTPException(status_code=404, detail="Not found")

    logger.warning("[DEMO] Reset triggered")
    SQLModel.metadata.drop_all(engine)
    create_db()
    request.app.state.atd, request.app.state.lab = build_services(engine)

    from seed import run_seed
    run_seed()

    return {"status": "demo reset complete"}
