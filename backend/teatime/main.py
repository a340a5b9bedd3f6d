"""
Teatime Authority - FastAPI Application

Main entry point for the tea-time compliance backend.

Lifecycle:
- AWAITING_WINDOW -> WINDOW_OPEN when tea time starts
- WINDOW_OPEN -> PENDING_VERIFICATION on photo submission
- PENDING_VERIFICATION -> VERIFIED | REJECTED on the verifier's verdict
- anything short of VERIFIED -> MISSED at window close, issuing a fine
- fines settle by payment or a verified charity donation
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import LOG_LEVEL
from .database import SessionLocal, init_db
from .routers import fines_router, notifications_router, scheduler_router, submissions_router
from .services.compliance import WindowCloseTimer, get_verifier

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, verifier and window timer on startup."""
    init_db()
    app.state.verifier = get_verifier()
    app.state.window_timer = WindowCloseTimer(SessionLocal)
    logger.info(f"Verifier: {type(app.state.verifier).__name__}")
    yield
    app.state.window_timer.cancel_all()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Teatime Authority",
    description="""
    Teatime Authority - Tea-Time Compliance Backend

    Users submit a photo of themselves with a cup of tea during the daily
    tea-time window. Missing the window earns an escalating fine, settled
    by payment or by a verified donation to an approved charity.

    ## Key Principles
    - One record per user per day, changed only by the state machine
    - VERIFIED and MISSED are terminal for the day
    - Fine and donation amounts are computed in one place
    - Verification is a swappable boundary (mock or HTTP backend)
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(submissions_router)
app.include_router(fines_router)
app.include_router(notifications_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Teatime Authority",
        "version": "1.0.0",
        "description": "Tea-Time Compliance Backend",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m teatime.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
