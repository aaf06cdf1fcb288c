# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that loads the
service settings, starts every dispatcher listed in the ``[dispatchers]``
section and stops them on shutdown.

Usage:
    uvicorn async_push_service.server:app --host 0.0.0.0 --port 8000

Environment variables:
    APS_CONFIG: Path to config.ini (default: config.ini)
    APS_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import ServiceSettings, load_settings
from .registry import DispatcherRegistry


def configure_logging(level: str | None = None, *, force: bool = False) -> None:
    """Configure root logging unless the process already did.

    Under ``push-service serve`` the CLI group configures logging first, so
    this call leaves its ``--log-level`` in place. Pass ``force=True`` to
    replace existing handlers.
    """
    log_level = (level or os.getenv("APS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=force,
    )


def build_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the application together with its registry lifespan."""
    settings = settings or load_settings()
    registry = DispatcherRegistry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the dispatchers."""
        await registry.start_configured()
        yield
        await registry.stop_all()

    return create_app(registry, api_token=settings.api_token, lifespan=lifespan)


configure_logging()
app = build_app()
