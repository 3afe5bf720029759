# feerecon/main.py

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feerecon import __version__
from feerecon.config import get_settings
from feerecon.routers import health, payments, session, prescreening, sync

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.app_name,
    description="Fee reconciliation engine for bank payments against Zoho CRM expectations",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Local dev frontends (Vite and CRA ports) are always allowed
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({settings.frontend_url, "http://localhost:5173", "http://localhost:3000"}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# Routers
# ============================================

app.include_router(health.router, tags=["Health"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(session.router, prefix="/session", tags=["Session"])
app.include_router(prescreening.router, prefix="/prescreening", tags=["Prescreening"])
app.include_router(sync.router, prefix="/sync", tags=["Sync"])


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "zoho_api_domain": settings.zoho_api_domain,
    }
