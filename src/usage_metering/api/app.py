from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import settings
from ..container import MeteringServices, build_services
from ..errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidPackage,
    InvalidPurchaseState,
    MeteringError,
    NotAuthenticated,
    NotFound,
    StoreUnavailable,
    TransportDisconnected,
)
from .router import router


logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[MeteringError], int], ...] = (
    (InsufficientFunds, 402),
    (NotFound, 404),
    (InvalidAmount, 400),
    (InvalidPackage, 400),
    (InvalidPurchaseState, 400),
    (TransportDisconnected, 409),
    (NotAuthenticated, 401),
    (StoreUnavailable, 503),
)


def _status_for(exc: MeteringError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("Metering request %s failed: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code},
    )


def create_app(
    services: Optional[MeteringServices] = None,
    payment_secret: Optional[str] = None,
) -> FastAPI:
    """
    Build the HTTP app. ``payment_secret`` authenticates the payment
    processor on purchase completion; it defaults to ``PAYMENT_WEBHOOK_SECRET``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ensure_indexes = getattr(app.state.services.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        yield
        await app.state.services.engine.shutdown()

    app = FastAPI(title="Usage metering", lifespan=lifespan)
    app.state.services = services or build_services()
    app.state.payment_secret = (
        settings.PAYMENT_WEBHOOK_SECRET if payment_secret is None else payment_secret
    )
    app.add_exception_handler(MeteringError, metering_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
