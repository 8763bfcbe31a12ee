"""
FastAPI application serving the monitoring API.

Routers: ``/api/monitoring`` (runs and status), ``/api/jobs`` (queue,
tracking, per-job settings, snapshot content) and ``/api/changes``
(change feed).
"""

import os
from typing import List, Mapping, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute

from .routes import changes, jobs, monitoring

API_VERSION = "1.0.0"

DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def cors_origins(env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Allowed origins: local dev hosts, or MONITOR_ALLOWED_ORIGINS in production."""
    env = os.environ if env is None else env
    if env.get("MONITOR_ENV", "development").lower() != "production":
        return list(DEV_ORIGINS)
    raw = env.get("MONITOR_ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(
    title="Job Monitor API",
    description="Re-checks tracked job postings and reports what changed",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)

for router in (monitoring.router, jobs.router, changes.router):
    app.include_router(router)


@app.get("/api/health")
def health_check():
    return {"status": "ok", "version": API_VERSION}


@app.get("/api")
def api_info():
    """Entry points of the API."""
    endpoints = sorted(
        {route.path for route in app.routes if isinstance(route, APIRoute) and route.path != "/api"}
    )
    return {
        "name": app.title,
        "version": API_VERSION,
        "docs": app.docs_url,
        "endpoints": endpoints,
    }
