"""Middleware registration."""

from fastapi import FastAPI

from ttg.config import Settings
from ttg.middleware.error_handler import setup_error_handlers
from ttg.middleware.logging import setup_logging
from ttg.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register logging, error handlers and the request id middleware.

    CORS and rate limiting are handled by the journal's gateway in front of this service.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
