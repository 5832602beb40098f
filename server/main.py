from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import time
import logging

from timecards.core.config import settings
from timecards.core.database import AsyncSessionLocal
from timecards.core.immutability import register_immutability_listeners
from timecards.api.v1.router import api_router
from timecards.core.logging_config import setup_logging
from timecards.services.policy import TimecardPolicy
from timecards.services.shift_limit_service import run_shift_sweeper

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("access")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Timecard Engine API server...")
    # Tables are created via Alembic migrations
    register_immutability_listeners()

    sweeper = None
    if settings.SHIFT_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(
            run_shift_sweeper(
                AsyncSessionLocal,
                TimecardPolicy.from_settings(settings),
                settings.SHIFT_SWEEP_INTERVAL_SECONDS,
            )
        )
    logger.info("Timecard Engine API server started successfully")
    yield
    # Shutdown
    logger.info("Shutting down Timecard Engine API server...")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Timecard Engine API",
    description="Timecard lifecycle and audit trail API",
    version="1.0.0",
    lifespan=lifespan,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        access_logger.info(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Duration: {process_time:.3f}s - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        return response
    except Exception:
        process_time = time.time() - start_time
        logger.error(
            f"Unhandled exception in {request.method} {request.url.path}",
            exc_info=True,
            extra={
                "method": request.method,
                "path": str(request.url.path),
                "client": request.client.host if request.client else 'unknown',
                "duration": f"{process_time:.3f}s"
            }
        )
        raise

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom exception handler for validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return detailed validation errors to help callers fix their input."""
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        field = field.replace("body -> ", "").replace("query -> ", "").replace("path -> ", "")
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors,
            "message": "Please check your input and try again."
        }
    )

# Include routers
app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
