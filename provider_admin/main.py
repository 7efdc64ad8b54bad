from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from provider_admin.core import config
from provider_admin.core.database.engine import init_db
from provider_admin.core.errors import (
    ActionForbidden,
    FieldValidationError,
    RuleViolation,
    TargetNotFound,
    action_forbidden_handler,
    field_validation_handler,
    rule_violation_handler,
    target_not_found_handler,
)
from provider_admin.core.rate_limit import limiter
from provider_admin.features.customers.routes import router as customer_router
from provider_admin.features.pcg.routes import router as pcg_router
from provider_admin.features.providers.routes import router as provider_router
from provider_admin.features.user_management.routes import router as user_management_router
from provider_admin.features.users.routes import router as user_router
from provider_admin.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Provider Admin",
    description="Customer, user and NPI administration with PCG eMDR registration",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.provider_admin.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1] if error["loc"] else "root"
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


app.add_exception_handler(FieldValidationError, field_validation_handler)
app.add_exception_handler(ActionForbidden, action_forbidden_handler)
app.add_exception_handler(TargetNotFound, target_not_found_handler)
app.add_exception_handler(RuleViolation, rule_violation_handler)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Provider Admin API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "public_endpoints": ["/", "/health", "/auth/login"],
        },
        "features": {
            "users": "Login, logout, password change and profile",
            "user_management": "Customer-scoped user, role and NPI assignment administration",
            "customers": "Customer directory and administration for system admins",
            "provider_groups": "Provider group management per customer",
            "providers": "Providers visible to the caller, and provider administration",
            "pcg": "PCG provider sync and eMDR registration",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Routers carry their full paths
app.include_router(user_router)
app.include_router(user_management_router)
app.include_router(customer_router)
app.include_router(provider_router)
app.include_router(pcg_router)
