"""FastAPI app factory.

Run with ``uvicorn tarot_engine.main:create_app --factory``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import CacheUnavailable
from .routes.catalog_routes import router as catalog_router
from .routes.maintenance import router as maintenance_router
from .routes.persona_routes import router as persona_router
from .routes.reading_routes import router as reading_router
from .services import Services, build_services

log = logging.getLogger("tarot.main")


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services(Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        yield
        await services.close()

    app = FastAPI(title="Tarot Reading Engine", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.include_router(catalog_router)
    app.include_router(persona_router)
    app.include_router(reading_router)
    app.include_router(maintenance_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CacheUnavailable)
    async def cache_unavailable_handler(request: Request, exc: CacheUnavailable):
        log.error("Cache unavailable on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Cache unavailable"})

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "cache": type(services.cache.backend).__name__,
            "generator": type(services.generator).__name__,
        }

    return app
