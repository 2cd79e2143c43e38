import logging
from datetime import datetime, timezone
from pathlib import Path

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lab_requests import __version__
from lab_requests.config import settings
from lab_requests.database import engine
from lab_requests.errors import LabRequestError, error_body
from lab_requests.models import lab, patient, user  # noqa: F401
from lab_requests.routers import auth, lab_views
from lab_requests.seed.demo_seed import seed_demo_data
from lab_requests.services.view_registry import view_registry

logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logging.getLogger("lab_requests").setLevel(settings.log_level.upper())
logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

app = FastAPI(title="Lab Request Console API", version=__version__)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _alembic_heads() -> set[str]:
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return set(ScriptDirectory.from_config(alembic_cfg).get_heads())


def _assert_database_at_head() -> None:
    expected_heads = _alembic_heads()
    with engine.connect() as connection:
        current_heads = set(MigrationContext.configure(connection).get_current_heads())

    if current_heads != expected_heads:
        raise RuntimeError(
            "Lab request schema is out of date; run `alembic upgrade head` first. "
            f"Current revisions: {sorted(current_heads) or ['<none>']}, expected: {sorted(expected_heads)}."
        )


@app.on_event("startup")
def startup_event():
    _assert_database_at_head()
    if settings.seed_demo_data:
        seed_demo_data()
    logger.info("Lab request console ready (env=%s)", settings.app_env)


@app.on_event("shutdown")
def shutdown_event():
    # Unmount every open view so late store answers are dropped.
    view_registry.clear()


@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "lab-requests",
        "open_views": len(view_registry),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(LabRequestError)
async def lab_request_exception_handler(_: Request, exc: LabRequestError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.status_code, exc.message, exc.error))


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    message = str(exc.detail) if exc.detail else "Request failed"
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.status_code, message))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=error_body(422, "Invalid request payload", details={"errors": exc.errors()}),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content=error_body(500, str(exc) or "An unexpected error occurred"))


app.include_router(auth.router)
app.include_router(lab_views.router)
