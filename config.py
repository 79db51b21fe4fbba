"""Configuration management for the marketplace escrow engine"""

import os
import logging
from decimal import Decimal
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
    DB_ECHO = _env_bool("DB_ECHO")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Money is stored as integers in the smallest currency unit (IDR has no minor unit)
    CURRENCY = os.getenv("CURRENCY", "IDR")

    # Platform fee charged on escrow release, as a percentage of the order price
    PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("PLATFORM_FEE_PERCENTAGE", "10"))

    MIN_TRANSACTION_AMOUNT = int(os.getenv("MIN_TRANSACTION_AMOUNT", "10000"))
    MAX_TRANSACTION_AMOUNT = int(os.getenv("MAX_TRANSACTION_AMOUNT", "50000000"))
    PAYMENT_EXPIRY_MINUTES = int(os.getenv("PAYMENT_EXPIRY_MINUTES", "1440"))

    # Wallet & withdrawals
    WALLET_MIN_BALANCE = int(os.getenv("WALLET_MIN_BALANCE", "0"))
    MIN_WITHDRAWAL_AMOUNT = int(os.getenv("MIN_WITHDRAWAL_AMOUNT", "50000"))
    MAX_WITHDRAWAL_AMOUNT = int(os.getenv("MAX_WITHDRAWAL_AMOUNT", "10000000"))
    WITHDRAWAL_FEE_FIXED = int(os.getenv("WITHDRAWAL_FEE_FIXED", "5000"))
    WITHDRAWAL_FEE_PERCENTAGE = Decimal(os.getenv("WITHDRAWAL_FEE_PERCENTAGE", "0"))
    MAX_PENDING_WITHDRAWALS = int(os.getenv("MAX_PENDING_WITHDRAWALS", "3"))
    WITHDRAWAL_PROCESSING_DAYS_MIN = int(os.getenv("WITHDRAWAL_PROCESSING_DAYS_MIN", "1"))
    WITHDRAWAL_PROCESSING_DAYS_MAX = int(os.getenv("WITHDRAWAL_PROCESSING_DAYS_MAX", "3"))

    # Midtrans (Snap) payment gateway
    MIDTRANS_SERVER_KEY = os.getenv("MIDTRANS_SERVER_KEY", "")
    MIDTRANS_CLIENT_KEY = os.getenv("MIDTRANS_CLIENT_KEY", "")
    MIDTRANS_IS_PRODUCTION = _env_bool("MIDTRANS_IS_PRODUCTION")
    MIDTRANS_TIMEOUT_SECONDS = int(os.getenv("MIDTRANS_TIMEOUT_SECONDS", "30"))
    MIDTRANS_SNAP_URL = (
        "https://app.midtrans.com/snap/v1/transactions"
        if MIDTRANS_IS_PRODUCTION
        else "https://app.sandbox.midtrans.com/snap/v1/transactions"
    )

    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

    # Webhook server bind address
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8000"))

    # Outbound notification delivery; empty URL logs notifications instead
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    NOTIFICATION_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems; logs each one"""
        problems = []
        if not cls.MIDTRANS_SERVER_KEY:
            problems.append("MIDTRANS_SERVER_KEY is not set - payment sessions and webhooks will fail")
        if not cls.MIDTRANS_CLIENT_KEY:
            problems.append("MIDTRANS_CLIENT_KEY is not set")
        if cls.PLATFORM_FEE_PERCENTAGE < 0 or cls.PLATFORM_FEE_PERCENTAGE >= 100:
            problems.append(f"PLATFORM_FEE_PERCENTAGE must be in [0, 100), got {cls.PLATFORM_FEE_PERCENTAGE}")
        if cls.MIN_WITHDRAWAL_AMOUNT <= cls.WITHDRAWAL_FEE_FIXED:
            problems.append("MIN_WITHDRAWAL_AMOUNT must exceed WITHDRAWAL_FEE_FIXED")
        if cls.IS_PRODUCTION and cls.DATABASE_URL.startswith("sqlite"):
            problems.append("SQLite DATABASE_URL in production - row locking is not available")

        for problem in problems:
            logger.warning(f"⚠️ CONFIG: {problem}")
        return problems
