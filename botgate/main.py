"""
Botgate — edge bot classification in front of any route.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from botgate.api.notify import router as notify_router
from botgate.middleware.bot_gate import BotGateMiddleware, build_engine
from botgate.config import get_settings

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("botgate_starting",
                pattern_source=settings.pattern_source_url,
                forward_url=settings.forward_url or None)
    yield
    await engine.drain()
    logger.info("botgate_shutting_down")


app = FastAPI(
    title="Botgate",
    description="Edge bot classification — block, challenge or forward before the app runs.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

engine = build_engine(get_settings())
app.add_middleware(BotGateMiddleware, engine=engine)

# --- Routes ---
app.include_router(notify_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "botgate", "version": "0.1.0"}
