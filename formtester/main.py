import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
from sqlmodel import Session

from formtester.core.config import get_settings
from formtester.core.logging import setup_logging
from formtester.core.database import create_db_and_tables, engine
from formtester.core.exceptions import FormTesterError
from formtester.services import SchedulerService, cleanup_interrupted_runs

# Import Routers
from formtester.routers import core, tests as tests_router, schedules as schedules_router, analytics as analytics_router, fields as fields_router

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


def cors_headers() -> dict[str, str]:
    """Fixed header set carried by every response, errors and preflights included."""
    return {
        "Access-Control-Allow-Origin": settings.ALLOWED_ORIGINS,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Amz-Date, X-Api-Key, X-Amz-Security-Token",
        "Access-Control-Max-Age": "86400",
        "Cache-Control": "no-store",
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages FormTester application lifecycle events.

    On Startup:
    - Creates database tables if missing.
    - Fails test runs left in ``running`` by a previous crash.
    - Starts the background scheduler holding timer rules.

    On Shutdown:
    - Stops the scheduler.
    """
    # Startup
    logger.info("FormTester starting up...")
    create_db_and_tables()

    with Session(engine) as session:
        cleanup_interrupted_runs(session)

    SchedulerService.start()
    logger.info("FormTester started successfully.")

    yield
    # Shutdown
    logger.info("FormTester shutting down...")
    SchedulerService.shutdown()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# Global Exception Handlers
@app.exception_handler(FormTesterError)
async def formtester_exception_handler(request: Request, exc: FormTesterError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        body = exc.to_dict()
        if not settings.DEBUG:
            body = {"error": exc.title, "message": "An unexpected error occurred"}
        return JSONResponse(body, status_code=exc.status_code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)

@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters are input errors, reported as 400."""
    details = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        {"error": "Validation Error", "message": "Invalid request parameters", "details": details},
        status_code=400,
    )

@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catches unhandled exceptions and returns a redacted JSON error."""
    logger.exception("Unhandled exception")
    message = str(exc) if settings.DEBUG else "An unexpected error occurred"
    return JSONResponse(
        {"error": "Internal Server Error", "message": message},
        status_code=500,
        headers=cors_headers(),
    )

# CORS Headers Middleware
@app.middleware("http")
async def add_cors_headers(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=cors_headers())
    response = await call_next(request)
    response.headers.update(cors_headers())
    return response

# Local screenshot store is served directly
if settings.SCREENSHOT_BACKEND == "local":
    app.mount(
        "/screenshots",
        StaticFiles(directory=str(settings.SCREENSHOTS_DIR), check_dir=False),
        name="screenshots",
    )

# Include Routers
app.include_router(core.router)
app.include_router(tests_router.router)
app.include_router(schedules_router.router)
app.include_router(analytics_router.router)
app.include_router(fields_router.router)
