import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from tradehub.core.config import get_settings
from tradehub.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from tradehub.core.logging import bind_request_context, configure_logging, get_logger
from tradehub.core.observability import init_sentry
from tradehub.db.init import init_db
from tradehub.routers import admin, applications, credits, subscriptions, webhooks

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

# (router, prefix, tag)
ROUTES = [
    (applications.jobs_router, "/v1/jobs", "applications"),
    (applications.router, "/v1/applications", "applications"),
    (credits.router, "/v1/credits", "credits"),
    (subscriptions.router, "/v1/subscriptions", "subscriptions"),
    (webhooks.router, "/v1/webhooks", "webhooks"),
    (admin.router, "/v1/admin", "admin"),
]

app = FastAPI(
    title="TradeHub API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_context(request_id, method=request.method, path=request.url.path)
    start = time.perf_counter()
    response = await call_next(request)
    log.info(
        "request",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

for router, prefix, tag in ROUTES:
    app.include_router(router, prefix=prefix, tags=[tag])


@app.on_event("startup")
async def startup():
    init_sentry("api")
    await init_db()
    log.info("startup", msg="DB connected", transactions=settings.mongodb_transactions)


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
