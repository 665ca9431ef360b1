"""
CSR Agent - customer support agent with tools, approvals and RAG
FastAPI backend: REST + SSE under /api/csr, WebSocket at /csr
"""

from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from routers import csr, csr_ws
from routers.agent_orchestration import build_csr_orchestrator
from middleware.rate_limit import RateLimitMiddleware
from logging_config import setup_logging
from config import runtime_config

setup_logging()
logger = logging.getLogger(__name__)

# Instance ID - changes on every startup, used by clients to detect restarts
INSTANCE_ID = str(uuid.uuid4())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    # Startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_csr_orchestrator(runtime_config)
    await app.state.orchestrator.initialize()

    # Connect Redis (falls back to in-memory counters when unreachable)
    try:
        from services.redis_client import get_redis
        redis = await get_redis()
        health = await redis.health_check()
        logger.info(f"Redis: {health.get('status')}")
    except Exception as e:
        logger.warning(f"Redis unavailable at startup: {e}")

    logger.info(f"CSR agent ready (env={runtime_config.csr_env}, model={runtime_config.model_chat})")

    yield

    # Shutdown
    try:
        from services.redis_client import close_redis
        await close_redis()
        logger.info("Redis connection closed")
    except Exception as e:
        logger.debug(f"Redis close error: {e}")

    logger.info("CSR agent signing off")


app = FastAPI(
    title="CSR Agent API",
    description="AI-powered Customer Service Representative with RAG and Memory",
    version="1.0.0",
    lifespan=lifespan,
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


MAX_BODY_SIZE_INGEST = 5 * 1024 * 1024  # 5MB for knowledge documents
MAX_BODY_SIZE_API = 64 * 1024  # 64KB for chat and approvals


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests with bodies exceeding size limits."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            size = int(content_length)
            is_ingest = request.url.path.startswith("/api/csr/ingest")
            limit = MAX_BODY_SIZE_INGEST if is_ingest else MAX_BODY_SIZE_API
            if size > limit:
                return JSONResponse(
                    status_code=413,
                    content={"detail": f"Request body too large ({size} bytes, limit {limit} bytes)"},
                )
        return await call_next(request)


app.add_middleware(SecurityHeadersMiddleware)

# Request body size limit
app.add_middleware(RequestSizeLimitMiddleware)

# Rate limiting middleware (Redis-backed)
app.add_middleware(RateLimitMiddleware)

# CORS - restrict to localhost and private network IPs on port 3000
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|192\.168\.\d+\.\d+):3000$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Routers
app.include_router(csr.router)
# WebSocket router is mounted WITHOUT /api prefix so the socket is at /csr
app.include_router(csr_ws.router, tags=["csr-ws"])


@app.get("/health")
async def health():
    """Process health - pings Redis and summarizes the agent."""
    checks = {}

    try:
        from services.redis_client import get_redis
        redis = await get_redis()
        redis_health = await redis.health_check()
        checks["redis"] = "ok" if redis_health.get("status") in ("connected", "fallback") else "down"
    except Exception:
        checks["redis"] = "down"

    orchestrator = getattr(app.state, "orchestrator", None)
    checks["agent"] = orchestrator.health()["status"] if orchestrator is not None else "down"

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "healthy" if all_ok else "degraded", "checks": checks}


@app.get("/api/instance")
async def get_instance():
    """Return instance ID - changes on each startup."""
    return {"instance_id": INSTANCE_ID}


@app.get("/api/config")
async def get_config():
    """Current runtime configuration (credentials reported as set/unset)."""
    return runtime_config.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, ws_max_size=1048576)  # 1MB WS frame limit
