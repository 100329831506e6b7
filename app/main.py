from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.cache import close_cache
from app.core.database.engine import init_db
from app.core.exceptions import ConflictError, CycleDetectedError, NotFoundError, RBACError, ValidationError
from app.core.rate_limit import limiter
from app.features.users.routes import router as user_router
from app.features.permissions.routes import router as permission_router
from app.features.api_keys.routes import router as api_key_router
from app.features.delegations.routes import router as delegation_router
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="RBAC Backend",
    description="Role-based access control with temporal grants and contextual policies",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


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
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


_STATUS_CODES = {
    ValidationError: 400,
    CycleDetectedError: 400,
    NotFoundError: 404,
    ConflictError: 409,
}


@app.exception_handler(RBACError)
async def rbac_exception_handler(_request: Request, exc: RBACError):
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status_code == 500:
        log.error("Unhandled %s: %s", type(exc).__name__, exc.message)
    else:
        log.info("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.on_event("shutdown")
async def shutdown():
    await close_cache()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "RBAC Backend API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require a Bearer token or an X-API-Key header",
            "protected_endpoints": ["/users/*", "/permissions/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Hierarchical roles with time-bounded grants, explicit denies and resource grants",
            "policies": "Time, location, attribute, contextual and hierarchical policies",
            "checks": "Permission decisions with a per-check audit trail",
            "delegations": "Time-bounded permission delegation between users",
            "api_keys": "Argon2-hashed API keys with IP allow-lists",
            "users": "Users mirrored from the identity provider"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Permission routes (RBAC with policies)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])

# API key routes live under the permissions namespace
app.include_router(api_key_router, prefix="/permissions", tags=["api-keys"])

# Delegations are permission records too
app.include_router(delegation_router, prefix="/permissions", tags=["delegations"])
