"""
FastAPI Webhook Server
Receives payment gateway notifications and exposes health checks
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.midtrans_webhook import router as midtrans_router
from utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Config.validate()
    if not create_tables():
        logger.error("❌ STARTUP: database tables could not be created")
    logger.info("🚀 Webhook server started")
    yield
    logger.info("Webhook server stopped")


app = FastAPI(title="Marketplace Escrow Webhooks", lifespan=lifespan)
app.include_router(midtrans_router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Marketplace escrow webhook server is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint including database reachability"""
    database_ok = test_connection()
    return JSONResponse(
        content={"status": "healthy" if database_ok else "degraded", "database": database_ok},
        status_code=200 if database_ok else 503,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=Config.WEBHOOK_HOST, port=Config.WEBHOOK_PORT, log_config=None)
