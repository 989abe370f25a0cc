from __future__ import annotations

import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from .config import get_settings
from .db import init_engine
from .observability import configure_logging, init_sentry
from .ratelimit import limiter
from .routes import health, mpesa
from .startup import validate_settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name)

    init_engine()

    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(mpesa.router, prefix=prefix)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("helmetpay.main:app", host="0.0.0.0", port=port, reload=False)
