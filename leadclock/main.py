"""
LeadClock - FastAPI Application
Main entry point with all routes configured.
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from leadclock.config import settings
from leadclock.database import init_db
from leadclock.core.exceptions import LeadClockException, leadclock_exception_handler

# Import all API routers
from leadclock.api import leads, sla, autopilot, messaging

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await init_db()
    logger.info("LeadClock started")
    yield
    # Shutdown


app = FastAPI(
    title="LeadClock API",
    description="Lead response-time enforcement: SLA clocks, escalation and WhatsApp autopilot",
    version=VERSION,
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(LeadClockException, leadclock_exception_handler)

# Include all routers
app.include_router(leads.router)
app.include_router(sla.router)        # Breach / escalation runners
app.include_router(autopilot.router)
app.include_router(messaging.router)  # Dispatch, callbacks, inbound WhatsApp


@app.get("/")
async def root():
    return {
        "message": "LeadClock API is running",
        "version": VERSION,
        "docs": "/docs"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "version": VERSION
    }
