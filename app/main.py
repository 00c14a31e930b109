from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import router
from datastore.factory import build_default_store
from exceptions import StoreUnavailableError
from logging_config import configure_logging
from services.deployments import build_default_deployment_service
from services.queue_consumer import build_default_consumer
from settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    store = build_default_store()
    consumer = None
    if get_settings().queue_consumer_enabled:
        consumer = build_default_consumer()
        consumer.start()
    app.state.consumer = consumer
    try:
        yield
    finally:
        if consumer is not None:
            consumer.stop(timeout=consumer.wait_seconds + 1.0)
            build_default_consumer.cache_clear()
        app.state.consumer = None
        store.close()
        build_default_deployment_service.cache_clear()
        build_default_store.cache_clear()


async def store_unavailable_handler(_request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"reason": "store_unavailable", "message": str(exc)}},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Buoy Telemetry Service",
        description="Ingests smart buoy readings over HTTP and a message queue.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(get_settings().cors_allow_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.include_router(router)
    return app

app = create_app()
