"""
rxflow — FastAPI ASGI Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from rxflow.api.deps import get_sink
from rxflow.api.v1.router import api_router
from rxflow.config import get_settings
from rxflow.core.auth_middleware import JWTAuthMiddleware
from rxflow.core.errors import ExternalServiceError, FulfillmentError
from rxflow.core.redis import close_redis
from rxflow.core.responses import error_response
from rxflow.services.incident_service import report_incident

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rxflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — Redis pool, startup/shutdown."""
    logger.info("rxflow starting (%s)", settings.ENVIRONMENT)
    yield
    await close_redis()


app = FastAPI(
    title="rxflow",
    description="Prescription order fulfillment: routing, status, cancellation, refunds and commissions",
    version="0.1.0",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)
app.add_middleware(JWTAuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    # Expected rejections are not incidents; external failures were reported where they happened
    if isinstance(exc, ExternalServiceError):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, meta={"details": exc.details} if exc.details else None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=error_response("VALIDATION_ERROR", "Request validation failed", field_errors),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "NOT_AUTHENTICATED" if exc.status_code == 401 else "HTTP_ERROR"
    return JSONResponse(status_code=exc.status_code, content=error_response(code, str(exc.detail)))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    sink_factory = app.dependency_overrides.get(get_sink, get_sink)
    report_incident(sink_factory(), f"api {request.method} {request.url.path}", exc)
    return JSONResponse(status_code=500, content=error_response("INTERNAL_ERROR", "Internal server error"))


@app.get("/health")
async def health():
    """Health check for load balancers and Docker."""
    return {"status": "ok", "service": "rxflow"}
