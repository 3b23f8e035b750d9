from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import chronoseal.models  # noqa: F401 register SQLModel tables

from chronoseal import __version__
from chronoseal.config import get_settings
from chronoseal.db import create_db_and_tables
from chronoseal.routers import health, store


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger("chronoseal").setLevel(settings.log_level.upper())
    create_db_and_tables()
    logging.getLogger(__name__).info("Store database ready at %s", settings.db_url)
    yield


app = FastAPI(
    title="Chronoseal store",
    description="Encrypted document store with a searchable index",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(store.router)
