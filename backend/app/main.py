import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.routes.leaks import router as leaks_router
from backend.app.api.routes.recoveries import router as recoveries_router
from backend.app.api.routes.system import router as system_router
from backend.app.api.routes.webhooks import router as webhooks_router
from backend.app.leaks.errors import LeakEngineError, RateLimitedError


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in ("http://localhost:3000", "http://127.0.0.1:3000")):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


app = FastAPI(title="RevPilot Leak Engine API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LeakEngineError)
async def leak_engine_error_handler(request: Request, exc: LeakEngineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


app.include_router(system_router)
app.include_router(webhooks_router)
app.include_router(leaks_router)
app.include_router(recoveries_router)
