from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, FastAPI

from handshake.closure import scheduler
from handshake.config import engine, settings
from handshake.errors import ActionRejected, action_rejected_handler
from handshake.middleware import IdempotencyMiddleware, RequestIdMiddleware
from handshake.models import Base
from handshake.routes import feed, orders, tickets, users
from handshake.schemas import HealthResponse
from handshake.tasks import background_closure_loop, background_payment_loop, recover_on_startup


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    recover_on_startup()

    loops: list[asyncio.Task] = []
    if settings.background_tasks:
        loops.append(asyncio.create_task(background_payment_loop()))
        loops.append(asyncio.create_task(background_closure_loop()))
    try:
        yield
    finally:
        for task in loops:
            task.cancel()
        for task in loops:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        scheduler.shutdown()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Handshake Escrow",
        version="0.4.0",
        description=(
            "REST API for the Handshake peer-to-peer crypto escrow engine. "
            "Tickets walk two parties through roles, amount, fees, deposit, payout and closure."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Service health check"},
            {"name": "Users", "description": "Registration, profile and webhook management"},
            {"name": "Tickets", "description": "Escrow ticket workflow"},
            {"name": "Orders", "description": "Pass purchase orders"},
            {"name": "Feed", "description": "Public feed of completed trades"},
        ],
    )

    app.add_exception_handler(ActionRejected, action_rejected_handler)
    app.add_middleware(IdempotencyMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health() -> HealthResponse:
        return HealthResponse()

    api_router = APIRouter()
    api_router.include_router(users.router)
    api_router.include_router(tickets.router)
    api_router.include_router(orders.router)
    api_router.include_router(feed.router)

    app.include_router(api_router, prefix="/v1")
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "handshake.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
