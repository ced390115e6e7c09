import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codepods.config import allowed_origins
from codepods.db import close_pool, get_pool
from codepods.routers import ai, github, github_auth, notifications, pods, rewards, tasks, users
from codepods.services.ratelimit import api_limit, reject_invalid_attempt

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-DNS-Prefetch-Control": "off",
}

# Validation failures here count against the failed-login budget
AUTH_PATHS = {"/api/users/signup", "/api/users/login"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup - initialize connection pool
    get_pool()
    logger.info("Database pool ready")

    yield

    close_pool()
    logger.info("Database pool closed")


app = FastAPI(
    title="CodePods API",
    description="API for pods, tasks, rewards and GitHub activity",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report invalid input as 400 with one entry per offending field."""
    if request.url.path in AUTH_PATHS:
        body = exc.body if isinstance(exc.body, dict) else {}
        email = body.get("email")
        limited = reject_invalid_attempt(request, email if isinstance(email, str) else None)
        if limited is not None:
            return JSONResponse(
                status_code=limited.status_code,
                content={"detail": limited.detail},
                headers=limited.headers,
            )

    details = []
    for error in exc.errors():
        location = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        message = error["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(location), "message": message})
    return JSONResponse(
        status_code=400, content={"error": "Validation failed", "details": details}
    )


# Include routers
api_dependencies = [Depends(api_limit)]
app.include_router(users.router, prefix="/api", dependencies=api_dependencies)
app.include_router(pods.router, prefix="/api", dependencies=api_dependencies)
app.include_router(tasks.router, prefix="/api", dependencies=api_dependencies)
app.include_router(rewards.router, prefix="/api", dependencies=api_dependencies)
app.include_router(github.router, prefix="/api", dependencies=api_dependencies)
app.include_router(github_auth.router, prefix="/api", dependencies=api_dependencies)
app.include_router(notifications.router, prefix="/api", dependencies=api_dependencies)
app.include_router(ai.router, prefix="/api", dependencies=api_dependencies)


@app.get("/")
def root():
    """Health check."""
    return {"message": "CodePods backend is running", "docs": "/docs"}
